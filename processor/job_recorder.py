"""Job Provenance Recorder -- 수집/적재 런마다 HarvestJobRun 한 행.

기록 실패는 로그만 남기고 파이프라인 에러로 전파하지 않는다.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.models import HarvestJobRun

TERMINAL_STATUSES = {"completed", "failed", "partial", "cancelled"}


def derive_status(imported: int, updated: int, errors: int) -> str:
    if errors > 0 and imported + updated > 0:
        return "partial"
    if errors > 0:
        return "failed"
    return "completed"


@dataclass
class RunSummary:
    job_name: str
    task_type: str
    tenant_id: int | None = None
    schedule_type: str = "manual"
    imported: int = 0
    updated: int = 0
    errors: int = 0
    started_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: datetime | None = None
    status: str | None = None  # None이면 카운트로 유도
    metadata: dict = field(default_factory=dict)

    @property
    def ads_processed(self) -> int:
        return self.imported + self.updated

    def resolved_status(self) -> str:
        if self.status in TERMINAL_STATUSES:
            return self.status
        return derive_status(self.imported, self.updated, self.errors)


class JobRecorder:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory
        self._pending: set[asyncio.Task] = set()

    # ── 한 번에 기록 (fire-and-forget 경로) ──

    async def record(self, summary: RunSummary) -> int | None:
        """종료 상태의 런 한 행을 기록. 실패하면 None."""
        completed_at = summary.completed_at or datetime.utcnow()
        status = summary.resolved_status()
        metadata = dict(summary.metadata)
        metadata.setdefault("imported", summary.imported)
        metadata.setdefault("updated", summary.updated)
        metadata.setdefault(
            "duration_ms", int((completed_at - summary.started_at).total_seconds() * 1000),
        )
        try:
            async with self.session_factory() as session:
                run = HarvestJobRun(
                    tenant_id=summary.tenant_id,
                    job_name=summary.job_name,
                    task_type=summary.task_type,
                    schedule_type=summary.schedule_type,
                    status=status,
                    started_at=summary.started_at,
                    completed_at=completed_at,
                    ads_processed=summary.ads_processed,
                    errors_count=summary.errors,
                    run_metadata=metadata,
                )
                session.add(run)
                await session.commit()
                return run.id
        except Exception as exc:
            logger.error("[job_recorder] '{}' 기록 실패: {}", summary.job_name, exc)
            return None

    def record_in_background(self, summary: RunSummary) -> asyncio.Task:
        """이벤트 루프에 기록을 맡기고 바로 반환."""
        task = asyncio.create_task(self.record(summary))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self):
        """대기 중인 백그라운드 기록 완료까지 대기 (종료 시)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ── 시작 시 생성 → 종료 시 갱신 ──

    async def start_run(
        self,
        job_name: str,
        task_type: str,
        tenant_id: int | None = None,
        schedule_type: str = "manual",
        metadata: dict | None = None,
    ) -> int | None:
        try:
            async with self.session_factory() as session:
                run = HarvestJobRun(
                    tenant_id=tenant_id,
                    job_name=job_name,
                    task_type=task_type,
                    schedule_type=schedule_type,
                    status="running",
                    started_at=datetime.utcnow(),
                    run_metadata=metadata or {},
                )
                session.add(run)
                await session.commit()
                return run.id
        except Exception as exc:
            logger.error("[job_recorder] '{}' 시작 기록 실패: {}", job_name, exc)
            return None

    async def finish_run(self, run_id: int | None, summary: RunSummary) -> bool:
        """start_run으로 만든 행을 종료 상태로. run_id가 없으면 새 행으로 기록."""
        if run_id is None:
            return await self.record(summary) is not None
        try:
            async with self.session_factory() as session:
                run = await session.get(HarvestJobRun, run_id)
                if run is None:
                    logger.warning("[job_recorder] run {} 없음, 새로 기록", run_id)
                else:
                    completed_at = summary.completed_at or datetime.utcnow()
                    started_at = run.started_at or summary.started_at
                    metadata = dict(run.run_metadata or {})
                    metadata.update(summary.metadata)
                    metadata.update({
                        "imported": summary.imported,
                        "updated": summary.updated,
                        "duration_ms": int((completed_at - started_at).total_seconds() * 1000),
                    })
                    run.status = summary.resolved_status()
                    run.completed_at = completed_at
                    run.ads_processed = summary.ads_processed
                    run.errors_count = summary.errors
                    run.run_metadata = metadata
                    await session.commit()
                    return True
        except Exception as exc:
            logger.error("[job_recorder] run {} 종료 기록 실패: {}", run_id, exc)
            return False
        return await self.record(summary) is not None
