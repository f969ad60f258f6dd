"""Harvest Session Controller -- 검색 대상 하나에 대한 수집 런 1회.

상태: IDLE → SESSION_OPENING → PAGINATING ⇄ DRAINING → FINALIZING → COMPLETED | FAILED

- 응답 리스너는 navigate 전에 붙이고, 가로챈 응답은 도착 즉시 추출해서 큐에 넣는다.
- DRAINING은 큐에서 한 건씩 꺼내 정규화 → 런 내 중복 제거 → 버퍼링,
  batch_size가 차면 싱크로 넘긴다.
- FINALIZING은 남은 버퍼를 성공 경로에서도 반드시 flush.
- 세션은 모든 종료 경로에서 닫힌다. 세션 레벨 실패는 예외 대신 FAILED 결과로 돌려준다.
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol

from loguru import logger

from crawler.config import crawler_settings
from crawler.errors import SessionOpenError, describe_failure
from crawler.extractor import ExtractionContext, extract_ads, extract_from_markup
from crawler.retry import BROWSER_RETRY_POLICY, RetryEvent, RetryPolicy, run_with_retry
from processor.importer import ImportResult
from processor.normalizer import AdRecord, SourceFormat, normalize_ad
from processor.sinks import ImportSink


class HarvestState(str, Enum):
    IDLE = "idle"
    SESSION_OPENING = "session_opening"
    PAGINATING = "paginating"
    DRAINING = "draining"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"


ResponseHandler = Callable[[str, Any], None]


class BrowserSession(Protocol):
    """브라우저 드라이버 추상화 (Playwright 구현은 crawler.base_crawler)."""

    def on_response(self, handler: ResponseHandler) -> None: ...

    async def navigate(self, url: str) -> None: ...

    async def scroll(self) -> None: ...

    async def wait(self, ms: int) -> None: ...

    async def has_more(self) -> bool: ...

    async def page_text(self) -> str: ...

    async def close(self) -> None: ...


@dataclass
class HarvestRequest:
    url: str
    limit: int = 100
    country: str | None = None
    search_term: str | None = None
    page_id: str | None = None

    @property
    def label(self) -> str:
        if self.page_id:
            return f"page:{self.page_id}"
        return f"term:{self.search_term or ''}"


@dataclass
class HarvestOutcome:
    state: HarvestState
    harvested: int = 0
    rejected: int = 0
    duplicates: int = 0
    rounds: int = 0
    import_result: ImportResult = field(default_factory=ImportResult)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.state == HarvestState.COMPLETED


class HarvestController:
    channel = "harvest"

    def __init__(
        self,
        open_session: Callable[[], Awaitable[BrowserSession]],
        sink: ImportSink,
        *,
        batch_size: int | None = None,
        max_idle_rounds: int | None = None,
        initial_wait_ms: int | None = None,
        round_wait_ms: int | None = None,
        markup_fallback: bool | None = None,
        retry_policy: RetryPolicy = BROWSER_RETRY_POLICY,
        on_retry: Callable[[RetryEvent], object] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        s = crawler_settings
        self._open_session = open_session
        self.sink = sink
        self.batch_size = max(1, batch_size or s.batch_size)
        self.max_idle_rounds = max(1, max_idle_rounds or s.max_idle_rounds)
        self.initial_wait_ms = s.initial_wait_ms if initial_wait_ms is None else initial_wait_ms
        self.round_wait_ms = s.request_delay_ms if round_wait_ms is None else round_wait_ms
        self.markup_fallback = s.markup_fallback if markup_fallback is None else markup_fallback
        self.retry_policy = retry_policy
        self.on_retry = on_retry
        self._sleep = sleep

        self.state = HarvestState.IDLE
        self.history: list[HarvestState] = [HarvestState.IDLE]
        self._queue: deque[dict] = deque()
        self._buffer: list[AdRecord] = []
        self._seen: set[str] = set()
        self._sink_failed = False

    # ── 상태 ──

    def _transition(self, state: HarvestState):
        if self.state != state:
            logger.debug("[{}] {} → {}", self.channel, self.state.value, state.value)
            self.state = state
            self.history.append(state)

    async def _retry(self, operation, label: str):
        return await run_with_retry(
            operation,
            on_retry=self.on_retry,
            policy=self.retry_policy,
            sleep=self._sleep,
            label=label,
        )

    # ── 진입점 ──

    async def run(self, request: HarvestRequest) -> HarvestOutcome:
        if self.state != HarvestState.IDLE:
            raise RuntimeError("HarvestController instances are single-use")

        outcome = HarvestOutcome(state=HarvestState.IDLE)
        context = ExtractionContext(
            source="ad_library",
            country=request.country,
            search_term=request.search_term,
            page_id=request.page_id,
        )

        self._transition(HarvestState.SESSION_OPENING)
        try:
            session = await self._open_session()
        except Exception as exc:
            # 세션을 못 열면 재시도 없이 실패
            error = SessionOpenError(f"Cannot open browsing session: {exc}")
            logger.error("[{}] {} {}", self.channel, request.label, error)
            self._transition(HarvestState.FAILED)
            outcome.state = self.state
            outcome.error = str(error)
            return outcome

        def _on_response(url: str, body: Any):
            candidates = extract_ads(body, context)
            if candidates:
                self._queue.extend(candidates)
                logger.debug("[{}] +{} candidates from {}", self.channel, len(candidates), url[:80])

        try:
            session.on_response(_on_response)
            self._transition(HarvestState.PAGINATING)
            await self._retry(lambda: session.navigate(request.url), f"navigate {request.label}")
            await session.wait(self.initial_wait_ms)

            idle_rounds = 0
            markup_tried = False
            while True:
                outcome.rounds += 1
                before = len(self._seen)
                await self._drain(request, outcome)

                if (
                    self.markup_fallback
                    and not markup_tried
                    and outcome.rounds == 1
                    and not self._seen
                ):
                    # 구조화 응답을 못 잡았으면 렌더된 페이지 텍스트로 한 번 시도
                    markup_tried = True
                    text = await session.page_text()
                    self._queue.extend(extract_from_markup(text, context))
                    await self._drain(request, outcome)

                if len(self._seen) >= request.limit:
                    logger.info("[{}] {} 목표 수량 도달 ({})", self.channel, request.label, request.limit)
                    break

                new_records = len(self._seen) - before
                more = await session.has_more()
                idle_rounds = 0 if new_records else idle_rounds + 1
                if not new_records and not more:
                    logger.info("[{}] {} 더 이상 결과 없음", self.channel, request.label)
                    break
                if idle_rounds >= self.max_idle_rounds:
                    logger.info(
                        "[{}] {} {}라운드 연속 신규 없음, 종료", self.channel, request.label, idle_rounds,
                    )
                    break

                self._transition(HarvestState.PAGINATING)
                await self._retry(session.scroll, f"scroll {request.label}")
                await session.wait(self.round_wait_ms)

            self._transition(HarvestState.FINALIZING)
            await self._flush(outcome)
            self._transition(HarvestState.COMPLETED)
        except Exception as exc:
            outcome.error = describe_failure(exc)
            logger.error("[{}] {} 수집 실패: {}", self.channel, request.label, outcome.error)
            if self._buffer and not self._sink_failed:
                try:
                    await self._flush(outcome)
                except Exception as flush_exc:
                    logger.error("[{}] 잔여 버퍼 flush 실패: {}", self.channel, flush_exc)
            self._transition(HarvestState.FAILED)
        finally:
            try:
                await session.close()
            except Exception as exc:
                logger.warning("[{}] 세션 종료 중 에러: {}", self.channel, exc)

        outcome.state = self.state
        outcome.harvested = len(self._seen)
        logger.info(
            "[{}] {} {}: harvested={} rejected={} dup={} imported={} updated={} errors={}",
            self.channel, request.label, outcome.state.value, outcome.harvested,
            outcome.rejected, outcome.duplicates, outcome.import_result.imported,
            outcome.import_result.updated, outcome.import_result.errors,
        )
        return outcome

    # ── DRAINING / FINALIZING ──

    async def _drain(self, request: HarvestRequest, outcome: HarvestOutcome):
        self._transition(HarvestState.DRAINING)
        while self._queue and len(self._seen) < request.limit:
            raw = self._queue.popleft()
            record = normalize_ad(raw, SourceFormat.SCRAPE, request.country)
            if record is None:
                outcome.rejected += 1
                continue
            if record.external_id in self._seen:
                outcome.duplicates += 1
                continue
            self._seen.add(record.external_id)
            self._buffer.append(record)
            if len(self._buffer) >= self.batch_size:
                await self._flush(outcome)

    async def _flush(self, outcome: HarvestOutcome):
        if not self._buffer:
            return
        batch, self._buffer = self._buffer, []
        try:
            result = await self._retry(lambda: self.sink.deliver(batch), f"deliver {len(batch)} ads")
        except Exception:
            self._sink_failed = True
            raise
        outcome.import_result.merge(result)
