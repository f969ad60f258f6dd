"""Meta Ad Library Graph API 클라이언트 + 외부 광고 아카이브 클라이언트.

모든 호출은 RateLimiter(요청 간 최소 간격) → run_with_retry(API 정책, 500ms 기반)
순서로 감싼다. 재시도를 다 쓴 transient 실패는 다음 API 버전으로 넘어간다.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Callable

import httpx
from loguru import logger

from crawler.config import MetaApiSettings, meta_api_settings
from crawler.errors import MetaApiError, UnsupportedOperationError, classify_error
from crawler.retry import API_RETRY_POLICY, RateLimiter, RetryPolicy, run_with_retry

GRAPH_API_BASE = "https://graph.facebook.com"

AD_ARCHIVE_FIELDS = [
    "id", "page_id", "page_name",
    "ad_creation_time", "ad_delivery_start_time", "ad_delivery_stop_time",
    "ad_creative_bodies", "ad_creative_link_captions",
    "ad_creative_link_titles", "ad_creative_link_descriptions",
    "ad_snapshot_url", "publisher_platforms", "languages",
    "estimated_audience_size", "spend", "impressions", "bylines",
]

PAGE_IMPORT_UNSUPPORTED = (
    "Page import requires verified API access. "
    "The Ad Library API only allows page-level queries for verified apps."
)
PAGE_IMPORT_SUGGESTION = "Use manual JSON/CSV import for bulk data"


def mask_token(token: str) -> str:
    if not token:
        return "(empty)"
    if len(token) <= 12:
        return "***"
    return f"{token[:6]}...{token[-4:]}"


@dataclass
class AdSearchParams:
    search_terms: str | None = None
    search_page_ids: list[str] = field(default_factory=list)
    ad_reached_countries: list[str] = field(default_factory=lambda: ["US"])
    ad_active_status: str = "ALL"
    ad_type: str = "ALL"
    limit: int = 100
    after: str | None = None

    def to_query(self, access_token: str) -> dict:
        query = {
            "access_token": access_token,
            "ad_type": self.ad_type,
            "ad_active_status": self.ad_active_status,
            "limit": self.limit,
            "fields": ",".join(AD_ARCHIVE_FIELDS),
        }
        if self.search_terms:
            query["search_terms"] = self.search_terms
        if self.ad_reached_countries:
            query["ad_reached_countries"] = json.dumps(self.ad_reached_countries)
        if self.search_page_ids:
            query["search_page_ids"] = ",".join(self.search_page_ids)
        if self.after:
            query["after"] = self.after
        return query


@dataclass
class FetchResult:
    ads: list[dict]
    partial: bool = False
    error: MetaApiError | Exception | None = None


@dataclass
class TokenInfo:
    is_valid: bool
    has_ads_read: bool
    app_id: str | None = None
    token_type: str | None = None
    expires_at: int | None = None
    scopes: list[str] = field(default_factory=list)

    @property
    def usable(self) -> bool:
        return self.is_valid and self.has_ads_read


def _parse_response(response: httpx.Response) -> dict:
    """200 + dict → payload, 나머지는 MetaApiError."""
    payload: dict | None = None
    try:
        parsed = response.json()
        if isinstance(parsed, dict):
            payload = parsed
    except ValueError:
        payload = None

    if response.status_code == 200 and payload is not None and "error" not in payload:
        return payload
    raise MetaApiError.from_response(response.status_code, payload, response.text[:500])


class MetaAdLibraryClient:
    """Graph API ads_archive 호출. 레이트리미터는 인스턴스가 소유한다."""

    channel = "facebook_api"

    def __init__(
        self,
        settings: MetaApiSettings | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        rate_limiter: RateLimiter | None = None,
        retry_policy: RetryPolicy = API_RETRY_POLICY,
        sleep=None,
    ):
        self.settings = settings or meta_api_settings
        self.access_token = self.settings.resolved_token
        self.rate_limiter = rate_limiter or RateLimiter(self.settings.min_request_interval_ms)
        self.retry_policy = retry_policy
        self._sleep = sleep
        self._client = client
        self._owns_client = client is None

    # ── Lifecycle ──

    async def start(self):
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.settings.request_timeout_sec, connect=10.0),
            )
        logger.info(
            "[{}] API client started (versions={}, token={})",
            self.channel, self.settings.versions, mask_token(self.access_token),
        )

    async def stop(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
        logger.info("[{}] API client stopped", self.channel)

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, *args):
        await self.stop()

    # ── 호출 ──

    async def _get(self, url: str, params: dict) -> dict:
        if self._client is None:
            raise RuntimeError("MetaAdLibraryClient is not started")

        async def _call() -> dict:
            await self.rate_limiter.acquire()
            response = await self._client.get(url, params=params)
            return _parse_response(response)

        kwargs = {"policy": self.retry_policy, "label": f"GET {url}"}
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep
        return await run_with_retry(_call, classify_error, **kwargs)

    async def search_ads(self, params: AdSearchParams) -> dict:
        """ads_archive 한 페이지. {"data": [...], "paging": {...}}."""
        if not self.access_token:
            raise MetaApiError("Access token is not configured", code=190)

        logger.info(
            "[{}] searchAds token={} terms='{}' pages={} countries={} limit={}",
            self.channel, mask_token(self.access_token), params.search_terms or "",
            params.search_page_ids, params.ad_reached_countries, params.limit,
        )

        query = params.to_query(self.access_token)
        versions = self.settings.versions
        last_error: Exception | None = None
        for index, version in enumerate(versions):
            url = f"{GRAPH_API_BASE}/{version}/ads_archive"
            try:
                payload = await self._get(url, query)
            except Exception as exc:
                info = classify_error(exc)
                last_error = exc
                if info.transient and index < len(versions) - 1:
                    logger.warning(
                        "[{}] {} 재시도 소진, 다음 버전으로: {}", self.channel, version, info.message,
                    )
                    continue
                raise
            logger.info("[{}] {} fetched {} ads", self.channel, version, len(payload.get("data") or []))
            return {"data": payload.get("data") or [], "paging": payload.get("paging") or {}}

        # versions가 비어있는 설정
        raise last_error or MetaApiError("No Graph API version configured")

    async def fetch_all_ads(
        self,
        params: AdSearchParams,
        max_ads: int = 1000,
        on_progress: Callable[[int], object] | None = None,
    ) -> FetchResult:
        """커서 페이지네이션. 중간 실패 시 이미 받은 광고는 partial로 반환."""
        ads: list[dict] = []
        page_size = max(1, params.limit or self.settings.page_size)
        max_pages = max(1, -(-max_ads // page_size))
        cursor: str | None = None

        for page in range(1, max_pages + 1):
            page_params = AdSearchParams(
                search_terms=params.search_terms,
                search_page_ids=params.search_page_ids,
                ad_reached_countries=params.ad_reached_countries,
                ad_active_status=params.ad_active_status,
                ad_type=params.ad_type,
                limit=page_size,
                after=cursor,
            )
            try:
                result = await self.search_ads(page_params)
            except Exception as exc:
                if ads:
                    logger.warning(
                        "[{}] partial fetch: {} ads after error: {}", self.channel, len(ads), exc,
                    )
                    return FetchResult(ads=ads[:max_ads], partial=True, error=exc)
                raise

            ads.extend(result["data"])
            if on_progress is not None:
                on_progress(len(ads))
            logger.debug("[{}] fetchAllAds page={} total={}", self.channel, page, len(ads))

            cursor = ((result.get("paging") or {}).get("cursors") or {}).get("after")
            if not cursor or not result["data"] or len(ads) >= max_ads:
                break

        return FetchResult(ads=ads[:max_ads])

    async def validate_token(self) -> TokenInfo:
        """debug_token으로 유효성 + ads_read 권한 확인."""
        if not self.access_token:
            raise MetaApiError("Access token is not configured", code=190)

        version = self.settings.versions[0] if self.settings.versions else "v24.0"
        payload = await self._get(
            f"{GRAPH_API_BASE}/{version}/debug_token",
            {"input_token": self.access_token, "access_token": self.access_token},
        )
        data = payload.get("data") or {}
        scopes = list(data.get("scopes") or [])
        info = TokenInfo(
            is_valid=bool(data.get("is_valid")),
            has_ads_read="ads_read" in scopes,
            app_id=data.get("app_id"),
            token_type=data.get("type"),
            expires_at=data.get("expires_at"),
            scopes=scopes,
        )
        logger.info(
            "[{}] token valid={} ads_read={} app_id={}",
            self.channel, info.is_valid, info.has_ads_read, info.app_id,
        )
        return info

    async def test_connection(self) -> int:
        """1건 검색으로 연결 확인. 받은 광고 수 반환, 실패는 예외."""
        result = await self.search_ads(
            AdSearchParams(search_terms="test", ad_reached_countries=["US"], limit=1)
        )
        return len(result["data"])


class ExternalAdArchiveClient:
    """외부 광고 아카이브 REST API (단건 조회만 지원)."""

    channel = "ad_archive"

    def __init__(
        self,
        base_url: str | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        retry_policy: RetryPolicy = API_RETRY_POLICY,
        sleep=None,
    ):
        self.base_url = (base_url or meta_api_settings.ad_archive_base_url).rstrip("/")
        self.retry_policy = retry_policy
        self._sleep = sleep
        self._client = client

    async def fetch_ad(self, ad_id: str) -> dict:
        if not ad_id or not str(ad_id).strip():
            raise ValueError("ad_id is required")
        url = f"{self.base_url}/ad/{str(ad_id).strip()}"

        async def _call() -> dict:
            if self._client is not None:
                response = await self._client.get(url, headers={"Accept": "application/json"})
            else:
                async with httpx.AsyncClient(timeout=httpx.Timeout(20.0, connect=10.0)) as client:
                    response = await client.get(url, headers={"Accept": "application/json"})
            return _parse_response(response)

        kwargs = {"policy": self.retry_policy, "label": f"GET {url}"}
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep
        payload = await run_with_retry(_call, classify_error, **kwargs)
        logger.info("[{}] fetched ad {}", self.channel, ad_id)
        return payload

    async def fetch_page(self, page_id: str, limit: int = 50) -> list[dict]:
        raise UnsupportedOperationError(PAGE_IMPORT_UNSUPPORTED, PAGE_IMPORT_SUGGESTION)
