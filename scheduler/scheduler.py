"""APScheduler runner: 활성 HarvestSchedule 주기 실행 + Graph API 헬스체크."""

import asyncio
import os
from datetime import datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from crawler.config import crawler_settings
from crawler.errors import describe_failure
from crawler.facebook_api import AdSearchParams, MetaAdLibraryClient
from crawler.meta_library import AdLibraryScraper
from database import async_session
from database.models import HarvestSchedule
from processor.api_health import run_health_check
from processor.importer import ImportReconciler
from processor.job_recorder import JobRecorder, RunSummary
from processor.manual_import import import_from_ad_library
from processor.sinks import DatabaseSink


def _env_bool(name: str, default: bool = True) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw.strip())
    except ValueError:
        return default
    return max(minimum, parsed)


def split_terms(raw: str | None) -> list[str]:
    """'a, b,,c' → ['a', 'b', 'c'] (순서 유지, 중복 제거)."""
    if not raw:
        return []
    return list(dict.fromkeys(t.strip() for t in raw.split(",") if t.strip()))


def schedule_to_params(schedule: HarvestSchedule) -> AdSearchParams:
    return AdSearchParams(
        search_terms=", ".join(split_terms(schedule.search_terms)) or None,
        search_page_ids=[str(p) for p in (schedule.page_ids or []) if str(p).strip()],
        ad_reached_countries=[c.upper() for c in (schedule.countries or [])] or ["US"],
        ad_active_status=schedule.active_status or "ALL",
        limit=min(schedule.import_limit or 50, 100),
    )


class HarvestScheduler:
    """HarvestSchedule 테이블 기반 스케줄러."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = async_session,
        *,
        client_factory=MetaAdLibraryClient,
        scraper_factory=AdLibraryScraper,
        max_concurrent: int | None = None,
        timezone: str | None = None,
    ):
        self.session_factory = session_factory
        self.client_factory = client_factory
        self.scraper_factory = scraper_factory
        self.recorder = JobRecorder(session_factory)
        self.timezone = timezone or os.getenv("SCHEDULER_TIMEZONE", "UTC")
        self.scheduler = AsyncIOScheduler(timezone=self.timezone)
        self._semaphore = asyncio.Semaphore(max_concurrent or crawler_settings.max_concurrent_browsers)
        self.harvest_interval_hours = _env_int("HARVEST_INTERVAL_HOURS", default=6, minimum=1)
        self.health_interval_minutes = _env_int("HEALTH_CHECK_INTERVAL_MINUTES", default=30, minimum=5)
        self.enable_health_check = _env_bool("ENABLE_HEALTH_CHECK", default=True)

    def setup_schedules(self):
        self.scheduler.add_job(
            self.run_all_schedules,
            CronTrigger(hour=f"*/{self.harvest_interval_hours}", minute=0, timezone=self.timezone),
            id="harvest_schedules",
            replace_existing=True,
            max_instances=1,
        )
        if self.enable_health_check:
            self.scheduler.add_job(
                self.run_health_check,
                CronTrigger(minute=f"*/{self.health_interval_minutes}", timezone=self.timezone),
                id="api_health_check",
                replace_existing=True,
                max_instances=1,
            )
        logger.info(
            "[schedule] harvest every {}h, health check {}",
            self.harvest_interval_hours,
            f"every {self.health_interval_minutes}m" if self.enable_health_check else "disabled",
        )

    # ── 스케줄 실행 ──

    async def _load_active(self) -> list[HarvestSchedule]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(HarvestSchedule)
                .where(HarvestSchedule.is_active.is_(True))
                .order_by(HarvestSchedule.id)
            )
            return list(result.scalars().all())

    async def run_all_schedules(self) -> dict:
        schedules = await self._load_active()
        logger.info("[schedule] 활성 스케줄 {}개", len(schedules))
        results = await asyncio.gather(*(self._run_bounded(s) for s in schedules))

        totals = {"schedules_processed": 0, "total_imported": 0, "total_updated": 0, "total_errors": 0}
        for result in results:
            if result.get("ok"):
                totals["schedules_processed"] += 1
            totals["total_imported"] += result.get("imported", 0)
            totals["total_updated"] += result.get("updated", 0)
            totals["total_errors"] += result.get("errors", 0)
        logger.info("[schedule] 스케줄 실행 완료: {}", totals)
        await self.recorder.drain()
        return totals

    async def _run_bounded(self, schedule: HarvestSchedule) -> dict:
        async with self._semaphore:
            return await self.run_schedule(schedule)

    async def run_schedule(self, schedule: HarvestSchedule) -> dict:
        """스케줄 하나 실행. 실패는 failed 런으로 남기고 다음 스케줄로."""
        started_at = datetime.utcnow()
        browser = (schedule.mode or "api") == "browser"
        job_name = f"Scheduled Import: {schedule.name}"
        logger.info("[schedule] '{}' 시작 (tenant={}, mode={})", schedule.name, schedule.tenant_id, schedule.mode)

        # 브라우저 모드는 검색어/페이지별 런을 수집기가 직접 남긴다
        run_id = None
        if not browser:
            run_id = await self.recorder.start_run(
                job_name,
                "ad_import",
                tenant_id=schedule.tenant_id,
                schedule_type="scheduled",
                metadata={"schedule_id": schedule.id},
            )
        try:
            if browser:
                result = await self._run_browser(schedule)
            else:
                result = await self._run_api(schedule, run_id, started_at)
        except Exception as exc:
            error = describe_failure(exc)
            logger.error("[schedule] '{}' 실패: {}", schedule.name, error)
            await self.recorder.finish_run(run_id, RunSummary(
                job_name=job_name,
                task_type="ad_import",
                tenant_id=schedule.tenant_id,
                schedule_type="scheduled",
                status="failed",
                errors=1,
                started_at=started_at,
                metadata={"schedule_id": schedule.id, "error": error},
            ))
            return {"ok": False, "errors": 1}

        await self._touch(schedule.id)
        return {"ok": True, **result}

    async def _run_api(self, schedule: HarvestSchedule, run_id: int | None, started_at: datetime) -> dict:
        params = schedule_to_params(schedule)
        reconciler = ImportReconciler(self.session_factory)
        async with self.client_factory() as client:
            fetched, outcome = await import_from_ad_library(
                client, reconciler, schedule.tenant_id, params, schedule.import_limit or 50,
            )
        errors = outcome.errors + (1 if fetched.partial else 0)
        await self.recorder.finish_run(run_id, RunSummary(
            job_name=f"Scheduled Import: {schedule.name}",
            task_type="ad_import",
            tenant_id=schedule.tenant_id,
            schedule_type="scheduled",
            imported=outcome.imported,
            updated=outcome.updated,
            errors=errors,
            started_at=started_at,
            metadata={
                "schedule_id": schedule.id,
                "fetched": len(fetched.ads),
                "partial": fetched.partial,
                "rejected": outcome.rejected,
            },
        ))
        return {"imported": outcome.imported, "updated": outcome.updated, "errors": errors}

    async def _run_browser(self, schedule: HarvestSchedule) -> dict:
        """브라우저 모드: 검색어/페이지마다 수집 런 1회 (런 기록은 수집기가 남긴다)."""
        sink = DatabaseSink(self.session_factory, schedule.tenant_id)
        country = (schedule.countries or [crawler_settings.default_country])[0]
        limit = schedule.import_limit or crawler_settings.default_limit
        totals = {"imported": 0, "updated": 0, "errors": 0}

        async with self.scraper_factory(
            sink, recorder=self.recorder, tenant_id=schedule.tenant_id, schedule_type="scheduled",
        ) as scraper:
            targets = [("term", t) for t in split_terms(schedule.search_terms)]
            targets += [("page", str(p)) for p in (schedule.page_ids or [])]
            for kind, value in targets:
                if kind == "term":
                    await scraper.scrape_by_term(value, country, limit)
                else:
                    await scraper.scrape_by_page_id(value, limit)
                outcome = scraper.last_outcome
                if outcome is not None:
                    totals["imported"] += outcome.import_result.imported
                    totals["updated"] += outcome.import_result.updated
                    totals["errors"] += outcome.import_result.errors + (0 if outcome.ok else 1)
        return totals

    async def _touch(self, schedule_id: int):
        async with self.session_factory() as session:
            schedule = await session.get(HarvestSchedule, schedule_id)
            if schedule is not None:
                schedule.last_run_at = datetime.utcnow()
                await session.commit()

    # ── 헬스체크 ──

    async def run_health_check(self):
        async with self.client_factory() as client:
            result = await run_health_check(client, self.session_factory, self.recorder, schedule_type="scheduled")
        if result.alerts_task is not None:
            await result.alerts_task
        return result

    def start(self):
        """Start scheduler."""
        self.scheduler.start()
        logger.info("AdHarvest scheduler started")

    def stop(self):
        """Stop scheduler."""
        self.scheduler.shutdown(wait=False)
        logger.info("AdHarvest scheduler stopped")
