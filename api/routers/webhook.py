"""외부 스크레이퍼 push 수신 -- POST /api/scraper-webhook."""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.deps import get_job_recorder, get_reconciler, get_session_factory, webhook_secret_matches
from database.models import Tenant
from database.schemas import PongResponse, WebhookImportResponse, WebhookRequest
from processor.importer import ImportReconciler
from processor.job_recorder import JobRecorder, RunSummary
from processor.manual_import import ingest_raw_ads
from processor.normalizer import SourceFormat

logger = logging.getLogger("adharvest.api")

router = APIRouter(prefix="/api", tags=["webhook"])


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


async def _resolve_tenant(
    session_factory: async_sessionmaker[AsyncSession], metadata: dict,
) -> int | None:
    raw = metadata.get("tenant_id")
    try:
        tenant_id = int(raw)
    except (TypeError, ValueError):
        return None
    async with session_factory() as session:
        found = await session.scalar(select(Tenant.id).where(Tenant.id == tenant_id))
    return found


@router.post("/scraper-webhook")
async def scraper_webhook(
    request: Request,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    reconciler: ImportReconciler = Depends(get_reconciler),
    recorder: JobRecorder = Depends(get_job_recorder),
):
    # 인증이 body 파싱보다 먼저
    if not webhook_secret_matches(request.headers.get("x-webhook-secret")):
        logger.warning("Webhook rejected: invalid secret from %s", request.client.host if request.client else "?")
        return _error(401, "Unauthorized")

    try:
        body = await request.json()
    except ValueError:
        return _error(400, "Invalid JSON body")
    try:
        payload = WebhookRequest.model_validate(body)
    except ValidationError as exc:
        return _error(400, f"Invalid request: {exc.errors()[0].get('msg', 'validation error')}")

    now = datetime.now(timezone.utc)
    if payload.action == "ping":
        return PongResponse(timestamp=now)

    if payload.action == "batch_import":
        raws = payload.ads or []
        if not raws:
            return _error(400, "ads array is required for batch_import")
    else:
        if not payload.ad:
            return _error(400, "ad object is required for single_import")
        raws = [payload.ad]

    tenant_id = await _resolve_tenant(session_factory, payload.metadata)
    if tenant_id is None:
        return _error(400, "metadata.tenant_id is required and must reference an existing tenant")

    scraper_id = payload.scraper_id or "unknown"
    started_at = datetime.utcnow()
    logger.info("Webhook %s from %s: %d ads for tenant %d", payload.action, scraper_id, len(raws), tenant_id)

    outcome = await ingest_raw_ads(reconciler, tenant_id, raws, SourceFormat.WEBHOOK)

    recorder.record_in_background(RunSummary(
        job_name=f"Webhook Import - {scraper_id}",
        task_type="webhook_import",
        tenant_id=tenant_id,
        schedule_type="external",
        imported=outcome.imported,
        updated=outcome.updated,
        errors=outcome.errors,
        started_at=started_at,
        metadata={
            "scraper_id": scraper_id,
            "action": payload.action,
            "total": outcome.total,
            "rejected": outcome.rejected,
            "error_details": outcome.error_details[:20],
        },
    ))

    return WebhookImportResponse(
        success=True,
        total=outcome.total,
        imported=outcome.imported,
        updated=outcome.updated,
        errors=outcome.errors,
        rejected=outcome.rejected,
        details=outcome.error_details,
        timestamp=now,
    )
