"""AdLibraryScraper -- 런 기록(시작 시 running 행 → 종료 시 갱신)."""

from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import pytest
from sqlalchemy import select

from crawler.meta_library import AdLibraryScraper, build_page_url, build_search_url
from database.models import Ad, HarvestJobRun
from processor.job_recorder import JobRecorder
from processor.sinks import DatabaseSink


def _page(*ids):
    results = [{"ad_archive_id": i, "snapshot": {"page_name": "Acme"}} for i in ids]
    return {
        "data": {
            "ad_library_main": {
                "search_results_connection": {"edges": [{"node": {"collated_results": results}}]}
            }
        }
    }


class WatchingSession:
    """navigate 도중 HarvestJobRun 테이블 상태를 찍어둔다."""

    def __init__(self, session_factory, pages):
        self.session_factory = session_factory
        self.pages = list(pages)
        self.handler = None
        self.statuses_during_run = None

    def on_response(self, handler):
        self.handler = handler

    async def navigate(self, url):
        async with self.session_factory() as session:
            runs = (await session.scalars(select(HarvestJobRun))).all()
        self.statuses_during_run = [r.status for r in runs]
        if self.pages:
            self.handler("https://www.facebook.com/api/graphql/", self.pages.pop(0))

    async def scroll(self):
        pass

    async def wait(self, ms):
        pass

    async def has_more(self):
        return False

    async def page_text(self):
        return ""

    async def close(self):
        pass


async def _no_sleep(_seconds):
    pass


def _scraper(session_factory, tenant_id, open_session):
    scraper = AdLibraryScraper(
        DatabaseSink(session_factory, tenant_id),
        recorder=JobRecorder(session_factory),
        tenant_id=tenant_id,
        controller_options=dict(initial_wait_ms=0, round_wait_ms=0, markup_fallback=False, sleep=_no_sleep),
    )
    scraper.open_session = open_session
    return scraper


def test_urls():
    assert "q=running+shoes" in build_search_url("running shoes", "br")
    assert "country=BR" in build_search_url("running shoes", "br")
    assert "view_all_page_id=42" in build_page_url("42")


@pytest.mark.asyncio
async def test_run_row_is_running_during_harvest_then_completed(session_factory, tenant_id):
    session = WatchingSession(session_factory, [_page("1", "2")])

    async def _open():
        return session

    scraper = _scraper(session_factory, tenant_id, _open)
    harvested = await scraper.scrape_by_term("shoes", "us", limit=10)

    assert harvested == 2
    assert session.statuses_during_run == ["running"]
    async with session_factory() as db:
        runs = (await db.scalars(select(HarvestJobRun))).all()
        ads = (await db.scalars(select(Ad))).all()
    assert len(runs) == 1
    run = runs[0]
    assert run.status == "completed"
    assert run.job_name == "Ad Library Scrape - term:shoes"
    assert run.tenant_id == tenant_id
    assert run.ads_processed == 2
    assert run.completed_at is not None
    assert run.run_metadata["url"].startswith("https://www.facebook.com/ads/library/")
    assert len(ads) == 2


@pytest.mark.asyncio
async def test_failed_session_open_closes_the_same_run_row(session_factory, tenant_id):
    async def _open():
        raise RuntimeError("browser binary missing")

    scraper = _scraper(session_factory, tenant_id, _open)
    assert await scraper.scrape_by_page_id("42") == 0

    async with session_factory() as db:
        runs = (await db.scalars(select(HarvestJobRun))).all()
    assert [r.status for r in runs] == ["failed"]
    assert "browser binary missing" in runs[0].run_metadata["error"]


@pytest.mark.asyncio
async def test_blank_term_is_rejected_before_any_run_is_recorded(session_factory, tenant_id):
    async def _open():
        raise AssertionError("session must not open")

    scraper = _scraper(session_factory, tenant_id, _open)
    with pytest.raises(ValueError):
        await scraper.scrape_by_term("  ")

    async with session_factory() as db:
        assert (await db.scalars(select(HarvestJobRun))).all() == []
