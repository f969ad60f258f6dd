"""Meta 광고 라이브러리 수집기: 검색어/페이지 단위 브라우저 수집.

수집 흐름:
  - 광고 라이브러리 검색 페이지를 열고 graphql 응답을 가로채서 광고 추출
  - 스크롤로 다음 결과 로드, progressbar가 사라지면 종료
  - 정규화된 배치는 싱크(DB 또는 원격 webhook)로 전달

참고: https://www.facebook.com/ads/library/
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable
from urllib.parse import urlencode

from loguru import logger

from crawler.base_crawler import BaseCrawler
from crawler.errors import describe_failure
from crawler.harvest_session import HarvestController, HarvestOutcome, HarvestRequest, HarvestState
from crawler.retry import RetryEvent
from processor.job_recorder import JobRecorder, RunSummary
from processor.sinks import ImportSink

# ── 설정 ──

META_AD_LIBRARY_URL = "https://www.facebook.com/ads/library/"


def build_search_url(term: str, country: str = "US") -> str:
    params = {
        "active_status": "all",
        "ad_type": "all",
        "country": (country or "ALL").upper(),
        "q": term,
        "media_type": "all",
        "search_type": "keyword_unordered",
    }
    return f"{META_AD_LIBRARY_URL}?{urlencode(params)}"


def build_page_url(page_id: str, country: str = "ALL") -> str:
    params = {
        "active_status": "all",
        "ad_type": "all",
        "country": (country or "ALL").upper(),
        "media_type": "all",
        "search_type": "page",
        "view_all_page_id": page_id,
    }
    return f"{META_AD_LIBRARY_URL}?{urlencode(params)}"


# ── 수집기 ──

class AdLibraryScraper(BaseCrawler):
    """광고 라이브러리 브라우저 수집기. 런마다 새 브라우저 컨텍스트."""

    channel = "facebook"

    def __init__(
        self,
        sink: ImportSink,
        *,
        recorder: JobRecorder | None = None,
        tenant_id: int | None = None,
        schedule_type: str = "manual",
        on_retry: Callable[[RetryEvent], object] | None = None,
        controller_options: dict | None = None,
    ):
        super().__init__()
        self.sink = sink
        self.recorder = recorder
        self.tenant_id = tenant_id
        self.schedule_type = schedule_type
        self.on_retry = on_retry
        self.controller_options = controller_options or {}
        self.last_outcome: HarvestOutcome | None = None

    # ── 메인 진입점 ──

    async def scrape_by_term(self, term: str, country: str = "US", limit: int = 100) -> int:
        term = (term or "").strip()
        if not term:
            raise ValueError("search term is required")
        request = HarvestRequest(
            url=build_search_url(term, country),
            limit=limit,
            country=(country or "US").upper(),
            search_term=term,
        )
        outcome = await self._harvest(request)
        return outcome.harvested

    async def scrape_by_page_id(self, page_id: str, limit: int = 100) -> int:
        page_id = (page_id or "").strip()
        if not page_id:
            raise ValueError("page id is required")
        request = HarvestRequest(
            url=build_page_url(page_id),
            limit=limit,
            page_id=page_id,
        )
        outcome = await self._harvest(request)
        return outcome.harvested

    async def ping(self) -> bool:
        """싱크(webhook/DB) 헬스체크."""
        ok = await self.sink.ping()
        logger.info("[{}] sink '{}' ping → {}", self.channel, self.sink.name, ok)
        return ok

    # ── 내부 ──

    async def _harvest(self, request: HarvestRequest) -> HarvestOutcome:
        logger.info("[{}] 수집 시작 {} (limit={})", self.channel, request.label, request.limit)
        started_at = datetime.utcnow()
        job_name = f"Ad Library Scrape - {request.label}"
        run_id = None
        if self.recorder is not None:
            run_id = await self.recorder.start_run(
                job_name,
                "scrape",
                tenant_id=self.tenant_id,
                schedule_type=self.schedule_type,
                metadata={"url": request.url, "sink": self.sink.name},
            )

        controller = HarvestController(
            self.open_session,
            self.sink,
            on_retry=self.on_retry,
            **self.controller_options,
        )
        try:
            outcome = await controller.run(request)
        except Exception as exc:
            if self.recorder is not None:
                await self.recorder.finish_run(run_id, RunSummary(
                    job_name=job_name,
                    task_type="scrape",
                    tenant_id=self.tenant_id,
                    schedule_type=self.schedule_type,
                    status="failed",
                    errors=1,
                    started_at=started_at,
                    metadata={"error": describe_failure(exc)},
                ))
            raise
        self.last_outcome = outcome

        if self.recorder is not None:
            result = outcome.import_result
            failed = outcome.state == HarvestState.FAILED
            await self.recorder.finish_run(run_id, RunSummary(
                job_name=job_name,
                task_type="scrape",
                tenant_id=self.tenant_id,
                schedule_type=self.schedule_type,
                imported=result.imported,
                updated=result.updated,
                errors=result.errors + (1 if failed else 0),
                started_at=started_at,
                metadata={
                    "url": request.url,
                    "sink": self.sink.name,
                    "harvested": outcome.harvested,
                    "rejected": outcome.rejected,
                    "duplicates": outcome.duplicates,
                    "rounds": outcome.rounds,
                    "error": outcome.error,
                    "error_details": result.error_details[:20],
                },
            ))
        return outcome
