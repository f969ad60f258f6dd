"""광고 라이브러리 응답 → 후보 레코드 추출.

업스트림 스키마는 문서화되지 않았고 수시로 바뀐다. 여기 함수들은 절대 예외를
던지지 않는다. 실패하면 빈 리스트 + 진단 로그.
"""

from __future__ import annotations

import itertools
import json
import re
import time
from dataclasses import dataclass
from typing import Any

from loguru import logger

from processor.normalizer import DEFAULT_ADVERTISER_NAME

_GRAPHQL_PREFIX = "for (;;);"

# 응답이 달라도 프로세스 안에서는 합성 id가 겹치지 않도록
_synthetic_seq = itertools.count()


@dataclass(frozen=True)
class ExtractionContext:
    source: str = "ad_library"
    country: str | None = None
    search_term: str | None = None
    page_id: str | None = None


# ── 공통 헬퍼 ──

def _dig(data: Any, *path: str | int) -> Any:
    cur = data
    for key in path:
        if isinstance(key, int):
            if not isinstance(cur, list) or len(cur) <= key:
                return None
            cur = cur[key]
        else:
            if not isinstance(cur, dict):
                return None
            cur = cur.get(key)
        if cur is None:
            return None
    return cur


def _first(*values: Any) -> Any:
    for value in values:
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def _as_list(value: Any) -> list:
    return value if isinstance(value, list) else []


def extract_media_url(snapshot: dict) -> str | None:
    """영상 HD → 첫 이미지 → 첫 카드 이미지. SD/축소본은 셋 다 없을 때만."""
    videos = _as_list(snapshot.get("videos"))
    images = _as_list(snapshot.get("images"))
    cards = _as_list(snapshot.get("cards"))
    return _first(
        _dig(videos, 0, "video_hd_url"),
        _dig(images, 0, "original_image_url"),
        _dig(cards, 0, "original_image_url"),
        _dig(videos, 0, "video_sd_url"),
        _dig(images, 0, "resized_image_url"),
        _dig(cards, 0, "resized_image_url"),
    )


def detect_media_type(snapshot: dict) -> str:
    if _as_list(snapshot.get("videos")):
        return "video"
    if len(_as_list(snapshot.get("cards"))) > 1:
        return "carousel"
    return "image"


def _text(value: Any) -> str | None:
    if isinstance(value, dict):
        value = value.get("text")
    if isinstance(value, str):
        cleaned = " ".join(value.split()).strip()
        return cleaned or None
    return None


# ── 구조화 응답 (GraphQL) ──

def _decode_payload(raw: Any) -> list[Any]:
    """dict/str/bytes 어느 쪽이든 JSON 문서 리스트로."""
    if isinstance(raw, (dict, list)):
        return [raw]
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    if not isinstance(raw, str):
        return []

    text = raw.strip()
    if text.startswith(_GRAPHQL_PREFIX):
        text = text[len(_GRAPHQL_PREFIX):]
    try:
        doc = json.loads(text)
        return [doc] if isinstance(doc, (dict, list)) else []
    except ValueError:
        pass

    # 스트리밍 응답: 줄 단위로 JSON 문서가 여러 개
    docs = []
    for line in text.splitlines():
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            docs.append(json.loads(line))
        except ValueError:
            continue
    return docs


def _synthetic_id(prefix: str) -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{next(_synthetic_seq)}"


def _graphql_result_to_candidate(result: dict, context: ExtractionContext) -> dict:
    snapshot = result.get("snapshot") if isinstance(result.get("snapshot"), dict) else {}
    platforms = _as_list(result.get("publisher_platform"))
    platform = str(platforms[0]).lower() if platforms else "facebook"

    is_active = result.get("is_active")
    countries = result.get("reached_countries") or []
    if not countries and context.country and context.country != "ALL":
        countries = [context.country]

    return {
        "ad_library_id": _first(result.get("ad_archive_id"), result.get("id")) or _synthetic_id("gen"),
        "page_name": _first(snapshot.get("page_name"), result.get("page_name"), DEFAULT_ADVERTISER_NAME),
        "page_id": _first(result.get("page_id"), snapshot.get("page_id")),
        "primary_text": _text(snapshot.get("body")),
        "headline": _text(snapshot.get("title")),
        "cta": _first(snapshot.get("cta_text")),
        "media_url": extract_media_url(snapshot),
        "media_type": detect_media_type(snapshot),
        "start_date": _first(result.get("start_date"), result.get("ad_delivery_start_time")),
        "end_date": _first(result.get("end_date"), result.get("ad_delivery_stop_time")),
        "status": None if is_active is None else ("active" if is_active else "inactive"),
        "platform": platform,
        "countries": countries,
        "snapshot_url": _first(snapshot.get("link_url")),
    }


def extract_from_graphql(raw_payload: Any, context: ExtractionContext | None = None) -> list[dict]:
    """data.ad_library_main.search_results_connection.edges[].node.collated_results[]"""
    context = context or ExtractionContext()
    candidates: list[dict] = []
    try:
        for doc in _decode_payload(raw_payload):
            edges = _dig(doc, "data", "ad_library_main", "search_results_connection", "edges")
            for edge in _as_list(edges):
                for result in _as_list(_dig(edge, "node", "collated_results")):
                    if not isinstance(result, dict):
                        continue
                    candidates.append(_graphql_result_to_candidate(result, context))
    except Exception as exc:
        logger.warning("[extractor] GraphQL 파싱 실패 ({}): {}", context.source, exc)
        return []
    return candidates


# ── 비구조화 텍스트 (마크다운/페이지 텍스트) ──

_BLOCK_SPLIT = re.compile(r"(?=Started running on|Began running on|Rodou em)")
_BOLD_NAME = re.compile(r"\*\*([^*]+)\*\*")
_CAPS_LINE = re.compile(r"^([A-Z][^:\n]{3,50})$", re.MULTILINE)
_NOT_A_NAME = ("Started running", "Began running", "Rodou em", "Library ID", "Sponsored", "Active", "Ativo")
_DATE = re.compile(
    r"(?:Started running on|Began running on|Rodou em)\s*"
    r"([A-Za-z]{3,9}\.? \d{1,2},? \d{4}|\d{1,2}/\d{1,2}/\d{4}|\d{4}-\d{2}-\d{2})"
)
_PRIMARY_TEXT = re.compile(r"(?:Primary text|Body|Texto)[:\s]*\"?([^\"\n]{20,500})\"?", re.IGNORECASE)
_HEADLINE = re.compile(r"(?:Headline|Título)[:\s]*\"?([^\"\n]{10,200})\"?", re.IGNORECASE)
_LIBRARY_ID = re.compile(r"(?:Library ID|ID da biblioteca)[:\s#]*(\d{6,})|[?&]id=(\d{6,})", re.IGNORECASE)
_VIDEO_URL = re.compile(r"https?://[^\s\"')]+\.(?:mp4|mov|webm)(?:\?[^\s\"')]*)?", re.IGNORECASE)
_IMAGE_URL = re.compile(r"https?://[^\s\"')]+\.(?:jpe?g|png|webp|gif)(?:\?[^\s\"')]*)?", re.IGNORECASE)

MIN_BLOCK_LENGTH = 50
MAX_MARKUP_CANDIDATES = 50


def _find_page_name(block: str) -> str | None:
    bold = _BOLD_NAME.search(block)
    if bold and bold.group(1).strip():
        return bold.group(1).strip()
    for match in _CAPS_LINE.finditer(block):
        line = match.group(1).strip()
        if not line.startswith(_NOT_A_NAME):
            return line
    return None


def _markup_block_to_candidate(block: str, context: ExtractionContext) -> dict | None:
    page_name = _find_page_name(block)

    text_match = _PRIMARY_TEXT.search(block)
    headline_match = _HEADLINE.search(block)
    primary_text = text_match.group(1).strip() if text_match else None
    headline = headline_match.group(1).strip() if headline_match else None

    # 노이즈 블록은 조용히 버림
    if not (page_name or primary_text or headline):
        return None

    date_match = _DATE.search(block)
    video_match = _VIDEO_URL.search(block)
    image_match = _IMAGE_URL.search(block)
    id_match = _LIBRARY_ID.search(block)

    if id_match:
        external_id = id_match.group(1) or id_match.group(2)
    else:
        external_id = _synthetic_id("md")

    if video_match:
        media_url, media_type = video_match.group(0), "video"
    elif image_match:
        media_url, media_type = image_match.group(0), "image"
    else:
        media_url, media_type = None, "image"

    return {
        "ad_library_id": external_id,
        "page_name": page_name or DEFAULT_ADVERTISER_NAME,
        "primary_text": primary_text,
        "headline": headline,
        "start_date": date_match.group(1) if date_match else None,
        "media_url": media_url,
        "media_type": media_type,
        "countries": [context.country] if context.country and context.country != "ALL" else [],
        "platform": "facebook",
    }


def extract_from_markup(content: Any, context: ExtractionContext | None = None) -> list[dict]:
    """날짜 마커로 블록을 나누고 블록마다 정규식으로 필드 추출."""
    context = context or ExtractionContext()
    if isinstance(content, bytes):
        content = content.decode("utf-8", errors="replace")
    if not isinstance(content, str) or not content.strip():
        return []

    candidates: list[dict] = []
    try:
        for block in _BLOCK_SPLIT.split(content):
            if len(block) < MIN_BLOCK_LENGTH:
                continue
            candidate = _markup_block_to_candidate(block, context)
            if candidate:
                candidates.append(candidate)
            if len(candidates) >= MAX_MARKUP_CANDIDATES:
                break
    except Exception as exc:
        logger.warning("[extractor] 텍스트 파싱 실패 ({}): {}", context.source, exc)
        return []
    return candidates


def extract_ads(raw_payload: Any, context: ExtractionContext | None = None) -> list[dict]:
    """응답 형태를 보고 구조화/비구조화 경로를 선택."""
    context = context or ExtractionContext()
    try:
        docs = _decode_payload(raw_payload)
        if docs:
            candidates: list[dict] = []
            for doc in docs:
                candidates.extend(extract_from_graphql(doc, context))
            return candidates
        return extract_from_markup(raw_payload, context)
    except Exception as exc:
        logger.warning("[extractor] 추출 실패 ({}): {}", context.source, exc)
        return []
