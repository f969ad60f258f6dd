"""Graph API 헬스체크 + 복구 알림 fan-out.

직전 체크가 failed였고 이번 체크가 성공하면 테넌트마다 Alert 한 건을 만든다
(알림 생성은 백그라운드, 실패해도 체크 결과에는 영향 없음).
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from crawler.errors import classify_error
from crawler.facebook_api import MetaAdLibraryClient
from database.models import Alert, HarvestJobRun, Tenant
from processor.job_recorder import JobRecorder, RunSummary

HEALTH_CHECK_JOB_NAME = "facebook_api_health_check"


@dataclass
class HealthStatus:
    success: bool
    checked_at: datetime = field(default_factory=datetime.utcnow)
    category: str | None = None
    message: str | None = None
    suggestion: str | None = None
    diagnostics: dict = field(default_factory=dict)

    def to_metadata(self) -> dict:
        return {
            "success": self.success,
            "checked_at": self.checked_at.isoformat(),
            "category": self.category,
            "message": self.message,
            "suggestion": self.suggestion,
            "diagnostics": self.diagnostics,
        }


@dataclass
class HealthCheckResult:
    status: HealthStatus
    previous_status: str
    recovered: bool
    alerts_task: asyncio.Task | None = None


async def probe_api(client: MetaAdLibraryClient) -> HealthStatus:
    """debug_token(ads_read) → ads_archive 1건 순서로 확인."""
    diagnostics: dict = {"token_configured": bool(client.access_token)}
    if not client.access_token:
        return HealthStatus(
            success=False,
            category="TOKEN_ERROR",
            message="Access token is not configured",
            suggestion="Set FACEBOOK_APP_ID/FACEBOOK_APP_SECRET or FACEBOOK_ACCESS_TOKEN",
            diagnostics=diagnostics,
        )
    try:
        token = await client.validate_token()
        diagnostics.update({
            "token_type": token.token_type,
            "app_id": token.app_id,
            "is_valid": token.is_valid,
            "has_ads_read": token.has_ads_read,
        })
        if not token.is_valid:
            return HealthStatus(
                success=False, category="TOKEN_ERROR",
                message="Token is invalid or expired",
                suggestion="Regenerate the access token", diagnostics=diagnostics,
            )
        if not token.has_ads_read:
            return HealthStatus(
                success=False, category="PERMISSION_ERROR",
                message="Token does not have the ads_read permission",
                suggestion="Regenerate the token with ads_read", diagnostics=diagnostics,
            )

        diagnostics["test_ads_returned"] = await client.test_connection()
        diagnostics["ad_library_working"] = True
        return HealthStatus(success=True, message="Token valid and Ad Library working", diagnostics=diagnostics)
    except Exception as exc:
        info = classify_error(exc)
        return HealthStatus(
            success=False,
            category=info.category.value,
            message=info.message,
            suggestion=info.suggestion,
            diagnostics=diagnostics,
        )


async def _previous_status(session_factory: async_sessionmaker[AsyncSession]) -> str:
    async with session_factory() as session:
        stmt = (
            select(HarvestJobRun.status)
            .where(HarvestJobRun.job_name == HEALTH_CHECK_JOB_NAME)
            .order_by(HarvestJobRun.started_at.desc(), HarvestJobRun.id.desc())
            .limit(1)
        )
        return (await session.scalar(stmt)) or "unknown"


async def create_recovery_alerts(
    session_factory: async_sessionmaker[AsyncSession], recovered_at: datetime,
) -> int:
    """테넌트마다 복구 알림 한 건."""
    try:
        async with session_factory() as session:
            tenant_ids = (await session.scalars(select(Tenant.id))).all()
            for tenant_id in tenant_ids:
                session.add(Alert(
                    tenant_id=tenant_id,
                    title="Facebook API recovered",
                    message=(
                        "The Facebook Ad Library API is working again. "
                        "Imports and ad searches are available."
                    ),
                    alert_type="api_status",
                    severity="info",
                    alert_metadata={
                        "api": "facebook",
                        "previous_status": "error",
                        "current_status": "working",
                        "recovered_at": recovered_at.isoformat(),
                    },
                ))
            await session.commit()
        logger.info("[api_health] 복구 알림 {}건 생성", len(tenant_ids))
        return len(tenant_ids)
    except Exception as exc:
        logger.error("[api_health] 복구 알림 생성 실패: {}", exc)
        return 0


async def run_health_check(
    client: MetaAdLibraryClient,
    session_factory: async_sessionmaker[AsyncSession],
    recorder: JobRecorder | None = None,
    schedule_type: str = "manual",
) -> HealthCheckResult:
    status = await probe_api(client)
    previous = await _previous_status(session_factory)

    recorder = recorder or JobRecorder(session_factory)
    await recorder.record(RunSummary(
        job_name=HEALTH_CHECK_JOB_NAME,
        task_type="health_check",
        schedule_type=schedule_type,
        status="completed" if status.success else "failed",
        started_at=status.checked_at,
        metadata=status.to_metadata(),
    ))

    recovered = previous == "failed" and status.success
    alerts_task = None
    if recovered:
        logger.info("[api_health] Facebook API 복구 감지")
        alerts_task = asyncio.create_task(create_recovery_alerts(session_factory, status.checked_at))
    elif not status.success:
        logger.warning("[api_health] API 이상 [{}] {}", status.category, status.message)

    return HealthCheckResult(
        status=status, previous_status=previous, recovered=recovered, alerts_task=alerts_task,
    )
