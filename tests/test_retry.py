"""재시도 실행기 + 요청 간격 제한기 테스트."""

from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import httpx
import pytest

from crawler.errors import ErrorCategory, MetaApiError
from crawler.retry import RateLimiter, RetryPolicy, format_retry_message, run_with_retry


class _Sleeps:
    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float):
        self.calls.append(seconds)


def _failing(exc: Exception, calls: list):
    async def _op():
        calls.append(1)
        raise exc

    return _op


@pytest.mark.asyncio
async def test_transient_failure_stops_at_retry_ceiling():
    calls: list = []
    sleeps = _Sleeps()
    policy = RetryPolicy(max_retries=3, base_delay_ms=500)

    with pytest.raises(httpx.ConnectError):
        await run_with_retry(
            _failing(httpx.ConnectError("connection reset"), calls),
            policy=policy,
            sleep=sleeps,
        )

    assert len(calls) == 4
    assert sleeps.calls == [0.5, 1.0, 2.0]


@pytest.mark.asyncio
async def test_fatal_error_is_attempted_once():
    calls: list = []
    sleeps = _Sleeps()

    with pytest.raises(MetaApiError) as exc_info:
        await run_with_retry(
            _failing(MetaApiError("Invalid OAuth access token", code=190), calls),
            policy=RetryPolicy(max_retries=3, base_delay_ms=500),
            sleep=sleeps,
        )

    assert len(calls) == 1
    assert sleeps.calls == []
    assert exc_info.value.code == 190


@pytest.mark.asyncio
async def test_unknown_error_is_not_retried():
    calls: list = []

    with pytest.raises(ValueError):
        await run_with_retry(_failing(ValueError("boom"), calls), sleep=_Sleeps())

    assert len(calls) == 1


@pytest.mark.asyncio
async def test_succeeds_after_transient_failures():
    attempts = {"n": 0}

    async def _op():
        attempts["n"] += 1
        if attempts["n"] < 3:
            raise MetaApiError("Service temporarily unavailable", code=2)
        return "ok"

    sleeps = _Sleeps()
    result = await run_with_retry(_op, policy=RetryPolicy(max_retries=3, base_delay_ms=2000), sleep=sleeps)

    assert result == "ok"
    assert sleeps.calls == [2.0, 4.0]


@pytest.mark.asyncio
async def test_on_retry_receives_events_and_its_errors_are_ignored():
    events = []

    def _hook(event):
        events.append(event)
        raise RuntimeError("hook exploded")

    calls: list = []
    with pytest.raises(MetaApiError):
        await run_with_retry(
            _failing(MetaApiError("Too many calls", code=4), calls),
            on_retry=_hook,
            policy=RetryPolicy(max_retries=2, base_delay_ms=500),
            sleep=_Sleeps(),
        )

    assert len(calls) == 3
    assert [e.attempt for e in events] == [1, 2]
    assert events[0].classification.category == ErrorCategory.RATE_LIMIT
    assert format_retry_message(events[1]) == "attempt 2/2, retrying in 1s"


@pytest.mark.asyncio
async def test_async_on_retry_hook_is_awaited():
    seen = []

    async def _hook(event):
        seen.append(event.delay_ms)

    with pytest.raises(httpx.ReadTimeout):
        await run_with_retry(
            _failing(httpx.ReadTimeout("slow"), []),
            on_retry=_hook,
            policy=RetryPolicy(max_retries=1, base_delay_ms=500),
            sleep=_Sleeps(),
        )

    assert seen == [500]


# ── RateLimiter ──

class _FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_rate_limiter_spaces_requests_with_fake_clock():
    clock = _FakeClock()
    waits: list[float] = []

    async def _sleep(seconds: float):
        waits.append(seconds)
        clock.now += seconds

    limiter = RateLimiter(min_interval_ms=200, clock=clock, sleep=_sleep)

    assert await limiter.acquire() == 0.0
    clock.now += 0.05
    waited = await limiter.acquire()
    assert waited == pytest.approx(0.15)

    clock.now += 0.5
    assert await limiter.acquire() == 0.0
    assert waits == [pytest.approx(0.15)]
