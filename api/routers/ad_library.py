"""Graph API 기반 Ad Library 검색/적재/상태 API."""

import logging
from datetime import datetime

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.deps import (
    classified_error_response,
    get_current_tenant,
    get_job_recorder,
    get_meta_client,
    get_reconciler,
    get_session_factory,
)
from crawler.facebook_api import AdSearchParams, MetaAdLibraryClient
from database.schemas import AdLibrarySearchRequest, AdLibrarySearchResponse, ApiStatusResponse, ImportSummary
from processor.api_health import run_health_check
from processor.importer import ImportReconciler
from processor.job_recorder import JobRecorder, RunSummary
from processor.manual_import import import_from_ad_library
from processor.normalizer import SourceFormat, normalize_ad, to_wire_dict

logger = logging.getLogger("adharvest.api")

router = APIRouter(prefix="/api/ad-library", tags=["ad-library"])


def _search_params(body: AdLibrarySearchRequest) -> AdSearchParams:
    return AdSearchParams(
        search_terms=(body.search_terms or "").strip() or None,
        search_page_ids=[p.strip() for p in body.search_page_ids if p.strip()],
        ad_reached_countries=[c.upper() for c in body.countries] or ["US"],
        ad_active_status=body.ad_active_status,
        limit=min(body.limit, 100),
    )


@router.post("/search", response_model=AdLibrarySearchResponse)
async def search_ads(
    body: AdLibrarySearchRequest,
    tenant_id: int = Depends(get_current_tenant),
    client: MetaAdLibraryClient = Depends(get_meta_client),
):
    """미리보기: 적재하지 않고 정규화 결과만 반환."""
    params = _search_params(body)
    try:
        fetched = await client.fetch_all_ads(params, max_ads=body.limit)
    except Exception as exc:
        return classified_error_response(exc)

    country = params.ad_reached_countries[0] if len(params.ad_reached_countries) == 1 else None
    previews = []
    for raw in fetched.ads:
        record = normalize_ad(raw, SourceFormat.API, country)
        if record is not None:
            previews.append(to_wire_dict(record))
    return AdLibrarySearchResponse(
        total=len(previews),
        ads=previews,
        partial=fetched.partial,
        error=str(fetched.error) if fetched.error else None,
    )


@router.post("/import")
async def import_ads(
    body: AdLibrarySearchRequest,
    tenant_id: int = Depends(get_current_tenant),
    client: MetaAdLibraryClient = Depends(get_meta_client),
    reconciler: ImportReconciler = Depends(get_reconciler),
    recorder: JobRecorder = Depends(get_job_recorder),
):
    params = _search_params(body)
    started_at = datetime.utcnow()
    try:
        fetched, outcome = await import_from_ad_library(client, reconciler, tenant_id, params, body.limit)
    except Exception as exc:
        recorder.record_in_background(RunSummary(
            job_name="Import Manual - Facebook Ad Library",
            task_type="ad_import",
            tenant_id=tenant_id,
            status="failed",
            errors=1,
            started_at=started_at,
            metadata={"search_terms": params.search_terms, "error": str(exc)},
        ))
        return classified_error_response(exc)

    recorder.record_in_background(RunSummary(
        job_name="Import Manual - Facebook Ad Library",
        task_type="ad_import",
        tenant_id=tenant_id,
        imported=outcome.imported,
        updated=outcome.updated,
        errors=outcome.errors + (1 if fetched.partial else 0),
        started_at=started_at,
        metadata={
            "search_terms": params.search_terms,
            "page_ids": params.search_page_ids,
            "countries": params.ad_reached_countries,
            "fetched": len(fetched.ads),
            "partial": fetched.partial,
            "rejected": outcome.rejected,
        },
    ))
    return ImportSummary(
        total=outcome.total,
        imported=outcome.imported,
        updated=outcome.updated,
        errors=outcome.errors,
        rejected=outcome.rejected,
        error_details=outcome.error_details,
    ).model_dump(by_alias=True)


@router.get("/status", response_model=ApiStatusResponse)
async def api_status(
    tenant_id: int = Depends(get_current_tenant),
    client: MetaAdLibraryClient = Depends(get_meta_client),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    recorder: JobRecorder = Depends(get_job_recorder),
):
    result = await run_health_check(client, session_factory, recorder)
    status = result.status
    return ApiStatusResponse(
        success=status.success,
        category=status.category,
        message=status.message,
        suggestion=status.suggestion,
        recovered=result.recovered,
    )
