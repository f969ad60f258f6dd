"""Harvest Session Controller -- 가짜 브라우저 세션 + 가짜 싱크."""

from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import httpx
import pytest

from crawler.harvest_session import HarvestController, HarvestRequest, HarvestState
from crawler.retry import RetryPolicy
from processor.importer import ImportResult


def _page(*ids, page_name="Acme"):
    """GraphQL 응답 한 페이지."""
    results = [{"ad_archive_id": i, "snapshot": {"page_name": page_name}} for i in ids]
    return {
        "data": {
            "ad_library_main": {
                "search_results_connection": {"edges": [{"node": {"collated_results": results}}]}
            }
        }
    }


class FakeSession:
    """navigate/scroll마다 준비된 응답을 핸들러에 흘려준다."""

    def __init__(self, pages, *, more=True, fail_on=None, text=""):
        self.pages = list(pages)
        self.more = more
        self.fail_on = fail_on or {}
        self.text = text
        self.handler = None
        self.closed = False
        self.calls = []

    def on_response(self, handler):
        self.handler = handler

    def _emit(self):
        if self.pages:
            self.handler("https://www.facebook.com/api/graphql/", self.pages.pop(0))

    async def _maybe_fail(self, name):
        self.calls.append(name)
        remaining = self.fail_on.get(name)
        if remaining:
            exc = remaining.pop(0)
            if exc is not None:
                raise exc

    async def navigate(self, url):
        assert self.handler is not None, "listener must be attached before navigation"
        await self._maybe_fail("navigate")
        self._emit()

    async def scroll(self):
        await self._maybe_fail("scroll")
        self._emit()

    async def wait(self, ms):
        pass

    async def has_more(self):
        return self.more and bool(self.pages)

    async def page_text(self):
        return self.text

    async def close(self):
        self.closed = True


class FakeSink:
    name = "fake"

    def __init__(self, fail=False):
        self.batches = []
        self.fail = fail

    async def deliver(self, records):
        if self.fail:
            raise ValueError("sink rejected batch")
        self.batches.append([r.external_id for r in records])
        return ImportResult(imported=len(records))

    async def ping(self):
        return True


async def _no_sleep(_seconds):
    pass


def _controller(session, sink, **kwargs):
    async def _open():
        return session

    options = dict(
        batch_size=2,
        max_idle_rounds=3,
        initial_wait_ms=0,
        round_wait_ms=0,
        markup_fallback=False,
        retry_policy=RetryPolicy(max_retries=2, base_delay_ms=10),
        sleep=_no_sleep,
    )
    options.update(kwargs)
    return HarvestController(_open, sink, **options)


@pytest.mark.asyncio
async def test_stops_at_limit_and_flushes_remaining_buffer():
    session = FakeSession([_page("1", "2", "3"), _page("4", "5", "6")])
    sink = FakeSink()

    outcome = await _controller(session, sink).run(HarvestRequest(url="https://x", limit=5, search_term="shoes"))

    assert outcome.state == HarvestState.COMPLETED
    assert outcome.harvested == 5
    assert sink.batches == [["1", "2"], ["3", "4"], ["5"]]
    assert outcome.import_result.imported == 5
    assert session.closed is True


@pytest.mark.asyncio
async def test_final_flush_happens_when_results_run_out():
    session = FakeSession([_page("1", "2", "3")])
    sink = FakeSink()
    controller = _controller(session, sink, batch_size=50)

    outcome = await controller.run(HarvestRequest(url="https://x", limit=100))

    assert outcome.ok
    assert sink.batches == [["1", "2", "3"]]
    assert HarvestState.FINALIZING in controller.history
    assert controller.history[-1] == HarvestState.COMPLETED


@pytest.mark.asyncio
async def test_duplicates_within_a_run_are_skipped():
    dup_page = _page("1", "2")
    no_id = {"data": {"ad_library_main": {"search_results_connection": {"edges": []}}}}
    session = FakeSession([dup_page, _page("2", "3"), no_id])
    sink = FakeSink()

    outcome = await _controller(session, sink, batch_size=10).run(HarvestRequest(url="https://x", limit=10))

    assert outcome.harvested == 3
    assert outcome.duplicates == 1
    assert sink.batches == [["1", "2", "3"]]


@pytest.mark.asyncio
async def test_idle_round_cap_terminates_run():
    # has_more는 계속 True인데 새 광고가 없는 경우
    session = FakeSession([_page("1")] + [_page("1")] * 10)
    sink = FakeSink()

    outcome = await _controller(session, sink, max_idle_rounds=3).run(HarvestRequest(url="https://x", limit=100))

    assert outcome.ok
    assert outcome.harvested == 1
    assert outcome.rounds == 4


@pytest.mark.asyncio
async def test_transient_navigation_failure_is_retried():
    session = FakeSession([_page("1")], fail_on={"navigate": [httpx.ConnectError("reset")]})
    events = []

    outcome = await _controller(session, FakeSink(), on_retry=events.append).run(
        HarvestRequest(url="https://x", limit=10)
    )

    assert outcome.ok
    assert session.calls.count("navigate") == 2
    assert len(events) == 1


@pytest.mark.asyncio
async def test_session_closed_and_buffer_flushed_on_fatal_failure():
    session = FakeSession(
        [_page("1"), _page("2")],
        fail_on={"scroll": [RuntimeError("page crashed")]},
    )
    sink = FakeSink()

    outcome = await _controller(session, sink, batch_size=10).run(HarvestRequest(url="https://x", limit=10))

    assert outcome.state == HarvestState.FAILED
    assert "page crashed" in outcome.error
    assert session.closed is True
    assert sink.batches == [["1"]]


@pytest.mark.asyncio
async def test_sink_failure_fails_run_and_still_closes_session():
    session = FakeSession([_page("1", "2")])

    outcome = await _controller(session, FakeSink(fail=True)).run(HarvestRequest(url="https://x", limit=10))

    assert outcome.state == HarvestState.FAILED
    assert session.closed is True


@pytest.mark.asyncio
async def test_session_open_failure_is_reported_without_retry():
    attempts = []

    async def _open():
        attempts.append(1)
        raise RuntimeError("browser binary missing")

    controller = HarvestController(_open, FakeSink(), sleep=_no_sleep)
    outcome = await controller.run(HarvestRequest(url="https://x"))

    assert outcome.state == HarvestState.FAILED
    assert "browser binary missing" in outcome.error
    assert attempts == [1]


@pytest.mark.asyncio
async def test_markup_fallback_when_no_structured_responses():
    text = (
        "Started running on Mar 1, 2024\n**Acme Shoes**\nLibrary ID: 123456789\n"
        'Primary text: "Our lightest running shoe ever, now in five colours"\n'
    )
    session = FakeSession([], text=text)
    sink = FakeSink()

    outcome = await _controller(session, sink, markup_fallback=True).run(
        HarvestRequest(url="https://x", limit=10, country="US")
    )

    assert outcome.ok
    assert sink.batches == [["123456789"]]


@pytest.mark.asyncio
async def test_controller_is_single_use():
    controller = _controller(FakeSession([]), FakeSink())
    await controller.run(HarvestRequest(url="https://x"))
    with pytest.raises(RuntimeError):
        await controller.run(HarvestRequest(url="https://x"))
