"""재시도/백오프 실행기 + 요청 간격 제한기."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from loguru import logger

from crawler.config import crawler_settings
from crawler.errors import Classification, classify_error

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay_ms: int = 2_000

    def delay_ms(self, attempt: int) -> int:
        """attempt(0부터) 이후 대기 시간: base * 2^attempt."""
        return self.base_delay_ms * (2 ** attempt)


# UI/브라우저 경로와 서버측 API 경로는 지연 예산이 다르다
BROWSER_RETRY_POLICY = RetryPolicy(
    max_retries=crawler_settings.max_retries,
    base_delay_ms=crawler_settings.browser_retry_base_ms,
)
API_RETRY_POLICY = RetryPolicy(
    max_retries=crawler_settings.max_retries,
    base_delay_ms=crawler_settings.api_retry_base_ms,
)


@dataclass(frozen=True)
class RetryEvent:
    attempt: int  # 1부터, 방금 실패한 시도 번호
    max_retries: int
    delay_ms: int
    error: BaseException
    classification: Classification


def format_retry_message(event: RetryEvent) -> str:
    seconds = event.delay_ms / 1000
    delay = f"{seconds:g}s"
    return f"attempt {event.attempt}/{event.max_retries}, retrying in {delay}"


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    classify: Callable[[BaseException], Classification] = classify_error,
    on_retry: Callable[[RetryEvent], object] | None = None,
    *,
    policy: RetryPolicy = BROWSER_RETRY_POLICY,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "operation",
) -> T:
    """operation을 transient 실패에 한해 최대 max_retries번 재시도.

    최종 실패 시 원래 예외를 그대로 전파한다. on_retry는 관찰용 훅이며
    훅 안에서 난 예외는 로그만 남기고 흐름에 영향을 주지 않는다.
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as exc:
            info = classify(exc)
            if not info.transient or attempt >= policy.max_retries:
                if info.transient:
                    logger.error(
                        "[retry] {} 최대 재시도 초과 ({}): {}", label, info.category.value, exc,
                    )
                raise

            delay_ms = policy.delay_ms(attempt)
            attempt += 1
            event = RetryEvent(
                attempt=attempt,
                max_retries=policy.max_retries,
                delay_ms=delay_ms,
                error=exc,
                classification=info,
            )
            logger.warning(
                "[retry] {} [{}] {}: {}",
                label, info.category.value, format_retry_message(event), exc,
            )
            if on_retry is not None:
                try:
                    result = on_retry(event)
                    if asyncio.iscoroutine(result):
                        await result
                except Exception as hook_exc:
                    logger.debug("[retry] on_retry hook failed: {}", hook_exc)

            await sleep(delay_ms / 1000)


class RateLimiter:
    """최소 요청 간격 보장. clock/sleep 주입으로 테스트에서 가짜 시계 사용."""

    def __init__(
        self,
        min_interval_ms: int = 200,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.min_interval_ms = min_interval_ms
        self._clock = clock
        self._sleep = sleep
        self._last_request: float | None = None
        self._lock = asyncio.Lock()

    async def acquire(self) -> float:
        """필요하면 대기 후 요청 시각을 기록. 실제로 기다린 초를 반환."""
        async with self._lock:
            waited = 0.0
            now = self._clock()
            if self._last_request is not None:
                elapsed = now - self._last_request
                remaining = self.min_interval_ms / 1000 - elapsed
                if remaining > 0:
                    await self._sleep(remaining)
                    waited = remaining
                    now = self._clock()
            self._last_request = now
            return waited
