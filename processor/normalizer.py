"""광고 데이터 정규화: 수집 원본(스크레이프/API/업로드/webhook) → AdRecord.

필드마다 "이름 붙은 추출기"의 순서 있는 리스트(FIELD_CHAINS)를 두고, 앞에서부터
평가해서 처음으로 비어있지 않은 값을 쓴다. 순수 함수만 있다 (I/O 없음).
"""

from __future__ import annotations

import csv
import io
import json
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Callable, Literal

from loguru import logger
from pydantic import BaseModel, Field, ValidationError, field_validator

MEDIA_TYPES = ("image", "video", "carousel")
STATUSES = ("active", "inactive")
DEFAULT_ADVERTISER_NAME = "Unknown Advertiser"


class SourceFormat(str, Enum):
    SCRAPE = "scrape"
    API = "api"
    JSON_UPLOAD = "json_upload"
    CSV_UPLOAD = "csv_upload"
    WEBHOOK = "webhook"


class AdRecord(BaseModel):
    """정규화된 광고 한 건. external_id가 없으면 만들어지지 않는다."""

    external_id: str
    advertiser_name: str = DEFAULT_ADVERTISER_NAME
    advertiser_external_id: str | None = None
    primary_text: str | None = None
    headline: str | None = None
    call_to_action: str | None = None
    media_url: str | None = None
    media_type: Literal["image", "video", "carousel"] = "image"
    start_date: date | None = None
    end_date: date | None = None
    countries: set[str] = Field(default_factory=set)
    status: Literal["active", "inactive"] = "active"
    platform: str | None = "facebook"
    snapshot_url: str | None = None

    @field_validator("external_id", mode="before")
    @classmethod
    def clean_external_id(cls, v: Any) -> str:
        cleaned = str(v).strip() if v is not None else ""
        if not cleaned:
            raise ValueError("external_id must not be empty")
        return cleaned

    @field_validator("advertiser_name", mode="before")
    @classmethod
    def clean_advertiser(cls, v: Any) -> str:
        if not v or not str(v).strip():
            return DEFAULT_ADVERTISER_NAME
        return " ".join(str(v).split())

    @field_validator("primary_text", "headline", "call_to_action", mode="before")
    @classmethod
    def clean_text(cls, v: Any) -> str | None:
        if v is None:
            return None
        cleaned = " ".join(str(v).split()).strip()
        return cleaned or None

    @field_validator("advertiser_external_id", "media_url", "snapshot_url", mode="before")
    @classmethod
    def clean_optional_id(cls, v: Any) -> str | None:
        if v is None:
            return None
        cleaned = str(v).strip()
        return cleaned or None

    @field_validator("countries", mode="before")
    @classmethod
    def clean_countries(cls, v: Any) -> set[str]:
        return _coerce_countries(v)


# ── 추출기 ──

Extractor = Callable[[dict], Any]


def _dig(data: Any, *path: str | int) -> Any:
    cur = data
    for step in path:
        if isinstance(step, int):
            if not isinstance(cur, list) or len(cur) <= step:
                return None
            cur = cur[step]
        elif isinstance(cur, dict):
            cur = cur.get(step)
        else:
            return None
        if cur is None:
            return None
    return cur


def key(*path: str | int) -> Extractor:
    return lambda raw: _dig(raw, *path)


def text_of(*path: str | int) -> Extractor:
    """문자열이거나 {"text": ...} 형태인 값."""

    def _extract(raw: dict) -> Any:
        value = _dig(raw, *path)
        if isinstance(value, dict):
            value = value.get("text")
        return value if isinstance(value, str) else None

    return _extract


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return False


FIELD_CHAINS: dict[str, list[tuple[str, Extractor]]] = {
    "external_id": [
        ("ad_library_id", key("ad_library_id")),
        ("id", key("id")),
        ("_id", key("_id")),
        ("ad_archive_id", key("ad_archive_id")),
    ],
    "advertiser_name": [
        ("page_name", key("page_name")),
        ("advertiser_name", key("advertiser_name")),
        ("snapshot.page_name", key("snapshot", "page_name")),
    ],
    "advertiser_external_id": [
        ("page_id", key("page_id")),
        ("advertiser_id", key("advertiser_id")),
        ("snapshot.page_id", key("snapshot", "page_id")),
    ],
    "primary_text": [
        ("primary_text", key("primary_text")),
        ("ad_creative_bodies[0]", key("ad_creative_bodies", 0)),
        ("body", text_of("body")),
        ("text", key("text")),
        ("snapshot.body", text_of("snapshot", "body")),
    ],
    "headline": [
        ("headline", key("headline")),
        ("ad_creative_link_titles[0]", key("ad_creative_link_titles", 0)),
        ("title", key("title")),
        ("snapshot.title", text_of("snapshot", "title")),
    ],
    "call_to_action": [
        ("cta", key("cta")),
        ("cta_text", key("cta_text")),
        ("call_to_action", key("call_to_action")),
        ("snapshot.cta_text", key("snapshot", "cta_text")),
    ],
    "media_url": [
        ("media_url", key("media_url")),
        ("snapshot.videos[0].video_hd_url", key("snapshot", "videos", 0, "video_hd_url")),
        ("snapshot.images[0].original_image_url", key("snapshot", "images", 0, "original_image_url")),
        ("snapshot.cards[0].original_image_url", key("snapshot", "cards", 0, "original_image_url")),
        ("snapshot.videos[0].video_sd_url", key("snapshot", "videos", 0, "video_sd_url")),
        ("snapshot.images[0].resized_image_url", key("snapshot", "images", 0, "resized_image_url")),
        ("snapshot.cards[0].resized_image_url", key("snapshot", "cards", 0, "resized_image_url")),
        ("video_url", key("video_url")),
        ("image_url", key("image_url")),
    ],
    "start_date": [
        ("start_date", key("start_date")),
        ("ad_delivery_start_time", key("ad_delivery_start_time")),
        ("ad_creation_time", key("ad_creation_time")),
    ],
    "end_date": [
        ("end_date", key("end_date")),
        ("ad_delivery_stop_time", key("ad_delivery_stop_time")),
    ],
    "countries": [
        ("countries", key("countries")),
        ("ad_reached_countries", key("ad_reached_countries")),
        ("reached_countries", key("reached_countries")),
    ],
    "platform": [
        ("platform", key("platform")),
        ("publisher_platforms[0]", key("publisher_platforms", 0)),
        ("publisher_platform[0]", key("publisher_platform", 0)),
    ],
    "snapshot_url": [
        ("snapshot_url", key("snapshot_url")),
        ("ad_snapshot_url", key("ad_snapshot_url")),
    ],
}


def resolve_field(raw: dict, field: str) -> Any:
    """FIELD_CHAINS[field]를 순서대로 평가, 처음 비어있지 않은 값."""
    for _name, extractor in FIELD_CHAINS[field]:
        try:
            value = extractor(raw)
        except (TypeError, AttributeError, KeyError, IndexError):
            continue
        if not _is_empty(value):
            return value
    return None


# ── 값 변환 ──

_DATE_FORMATS = ("%Y-%m-%d", "%b %d, %Y", "%B %d, %Y", "%b %d %Y", "%d %b %Y", "%m/%d/%Y")


def parse_date(value: Any) -> date | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, (int, float)):
        # epoch 초 (밀리초면 보정)
        seconds = value / 1000 if value > 10_000_000_000 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc).date()
        except (OverflowError, OSError, ValueError):
            return None

    text = str(value).strip()
    if not text:
        return None
    if text.isdigit():
        return parse_date(int(text))
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        pass
    # "2024-03-01T00:00:00+0000" (Graph API)
    if len(text) >= 10 and text[4] == "-" and text[7] == "-":
        try:
            return datetime.strptime(text[:10], "%Y-%m-%d").date()
        except ValueError:
            pass
    cleaned = text.replace(".", "")
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).date()
        except ValueError:
            continue
    return None


def _coerce_countries(value: Any) -> set[str]:
    if value is None:
        return set()
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple, set)):
        items = []
        for item in value:
            if isinstance(item, str):
                items.extend(item.split(","))
    else:
        return set()
    return {item.strip().upper() for item in items if item and item.strip()}


def _parse_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "1", "yes", "y"):
            return True
        if lowered in ("false", "0", "no", "n"):
            return False
    return None


def _resolve_status(raw: dict) -> str:
    status = raw.get("status") or raw.get("ad_active_status")
    if isinstance(status, str) and status.strip().lower() in STATUSES:
        return status.strip().lower()
    if _parse_bool(raw.get("is_active")) is False:
        return "inactive"
    return "active"


def infer_media_type(raw: dict) -> str:
    """명시값 → display_format → videos/cards 구조 → image."""
    explicit = raw.get("media_type")
    if isinstance(explicit, str) and explicit.strip().lower() in MEDIA_TYPES:
        return explicit.strip().lower()

    display_format = _dig(raw, "snapshot", "display_format") or raw.get("display_format")
    if isinstance(display_format, str) and display_format.strip().lower() in MEDIA_TYPES:
        return display_format.strip().lower()

    snapshot = raw.get("snapshot") if isinstance(raw.get("snapshot"), dict) else {}
    videos = snapshot.get("videos") or raw.get("videos")
    cards = snapshot.get("cards") or raw.get("cards")
    if isinstance(videos, list) and videos:
        return "video"
    if isinstance(cards, list) and len(cards) > 1:
        return "carousel"
    return "image"


# ── 진입점 ──

def normalize_ad(
    raw: Any,
    source_format: SourceFormat | str,
    default_country: str | None = None,
) -> AdRecord | None:
    """원본 후보 → AdRecord. 식별자를 못 찾으면 None (import 대상 아님)."""
    source = SourceFormat(source_format)
    if not isinstance(raw, dict):
        logger.debug("[normalizer] {} 후보가 dict가 아님: {}", source.value, type(raw).__name__)
        return None

    external_id = resolve_field(raw, "external_id")
    if _is_empty(external_id):
        logger.debug("[normalizer] {} 후보 거부: 식별자 없음", source.value)
        return None

    countries = _coerce_countries(resolve_field(raw, "countries"))
    if not countries and default_country and default_country.upper() != "ALL":
        countries = {default_country.upper()}

    platform = resolve_field(raw, "platform")
    try:
        return AdRecord(
            external_id=external_id,
            advertiser_name=resolve_field(raw, "advertiser_name"),
            advertiser_external_id=resolve_field(raw, "advertiser_external_id"),
            primary_text=resolve_field(raw, "primary_text"),
            headline=resolve_field(raw, "headline"),
            call_to_action=resolve_field(raw, "call_to_action"),
            media_url=resolve_field(raw, "media_url"),
            media_type=infer_media_type(raw),
            start_date=parse_date(resolve_field(raw, "start_date")),
            end_date=parse_date(resolve_field(raw, "end_date")),
            countries=countries,
            status=_resolve_status(raw),
            platform=str(platform).strip().lower() if platform else "facebook",
            snapshot_url=resolve_field(raw, "snapshot_url"),
        )
    except ValidationError as exc:
        logger.debug("[normalizer] {} 후보 거부 ({}): {}", source.value, external_id, exc)
        return None


def normalize_batch(
    raws: list[Any],
    source_format: SourceFormat | str,
    default_country: str | None = None,
) -> tuple[list[AdRecord], int]:
    """여러 후보 정규화. (수용된 레코드, 거부 건수)."""
    records: list[AdRecord] = []
    rejected = 0
    for raw in raws:
        record = normalize_ad(raw, source_format, default_country)
        if record is None:
            rejected += 1
        else:
            records.append(record)
    return records, rejected


# ── 업로드 파싱 ──

def parse_csv(text: str) -> list[dict]:
    """헤더 기반 CSV → dict 리스트. 헤더는 대소문자 무시."""
    if text.startswith("\ufeff"):
        text = text[1:]

    rows: list[dict] = []
    reader = csv.DictReader(io.StringIO(text))
    for row in reader:
        normalized: dict[str, str] = {}
        for column, value in row.items():
            if column is None:
                continue
            name = column.strip().lower()
            if not name or value is None:
                continue
            value = value.strip()
            if value:
                normalized[name] = value
        if normalized:
            rows.append(normalized)
    return rows


def parse_json_upload(data: Any) -> list[dict]:
    """배열 또는 단일 객체. 잘못된 JSON이면 ValueError."""
    parsed = json.loads(data) if isinstance(data, (str, bytes)) else data
    items = parsed if isinstance(parsed, list) else [parsed]
    return [item for item in items if isinstance(item, dict)]


def to_wire_dict(record: AdRecord) -> dict:
    """webhook 전송용 원본 형태. normalize_ad로 다시 읽으면 같은 레코드."""
    return {
        "ad_library_id": record.external_id,
        "page_name": record.advertiser_name,
        "page_id": record.advertiser_external_id,
        "primary_text": record.primary_text,
        "headline": record.headline,
        "cta": record.call_to_action,
        "media_url": record.media_url,
        "media_type": record.media_type,
        "start_date": record.start_date.isoformat() if record.start_date else None,
        "end_date": record.end_date.isoformat() if record.end_date else None,
        "countries": sorted(record.countries),
        "status": record.status,
        "platform": record.platform,
        "snapshot_url": record.snapshot_url,
    }
