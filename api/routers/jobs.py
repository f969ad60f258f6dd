"""수집/적재 런 이력 조회."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.config import api_settings
from api.deps import get_current_tenant, get_db
from database.models import HarvestJobRun
from database.schemas import JobRunOut

router = APIRouter(prefix="/api/jobs", tags=["jobs"])


@router.get("", response_model=list[JobRunOut])
async def list_jobs(
    task_type: str | None = Query(None),
    status: str | None = Query(None),
    limit: int | None = Query(None, ge=1, le=500),
    tenant_id: int = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
):
    """테넌트의 최근 런 (테넌트 없는 시스템 런 포함)."""
    stmt = select(HarvestJobRun).where(
        (HarvestJobRun.tenant_id == tenant_id) | (HarvestJobRun.tenant_id.is_(None))
    )
    if task_type:
        stmt = stmt.where(HarvestJobRun.task_type == task_type)
    if status:
        stmt = stmt.where(HarvestJobRun.status == status)
    stmt = stmt.order_by(HarvestJobRun.started_at.desc(), HarvestJobRun.id.desc()).limit(limit or api_settings.jobs_page_size)
    result = await db.execute(stmt)
    return result.scalars().all()
