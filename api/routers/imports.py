"""외부 광고 import -- POST /api/import-external-ads.

actions:
  fetch_ad       외부 아카이브에서 단건 조회 후 적재
  fetch_page     미지원 (수동 import 안내)
  import_manual  사용자 업로드 JSON/CSV 적재
"""

import logging
from datetime import datetime

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from api.deps import (
    classified_error_response,
    get_archive_client,
    get_current_tenant,
    get_job_recorder,
    get_reconciler,
)
from crawler.errors import UnsupportedOperationError
from crawler.facebook_api import ExternalAdArchiveClient
from database.schemas import ExternalImportRequest, ImportSummary
from processor.importer import ImportReconciler
from processor.job_recorder import JobRecorder, RunSummary
from processor.manual_import import ManualImportError, import_manual
from processor.normalizer import SourceFormat, normalize_ad, to_wire_dict

logger = logging.getLogger("adharvest.api")

router = APIRouter(prefix="/api", tags=["imports"])


def _bad_request(message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=400, content={"success": False, "error": message, **extra})


@router.post("/import-external-ads")
async def import_external_ads(
    body: ExternalImportRequest,
    tenant_id: int = Depends(get_current_tenant),
    reconciler: ImportReconciler = Depends(get_reconciler),
    recorder: JobRecorder = Depends(get_job_recorder),
    archive: ExternalAdArchiveClient = Depends(get_archive_client),
):
    started_at = datetime.utcnow()

    if body.action == "fetch_ad":
        if not body.ad_id:
            return _bad_request("ad_id is required")
        try:
            raw = await archive.fetch_ad(body.ad_id)
        except Exception as exc:
            return classified_error_response(exc)
        if isinstance(raw.get("data"), dict):
            raw = raw["data"]

        record = normalize_ad(raw, SourceFormat.API)
        if record is None:
            return _bad_request("Could not parse ad data")

        result = await reconciler.import_batch([record], tenant_id)
        recorder.record_in_background(RunSummary(
            job_name=f"External Import - ad {body.ad_id}",
            task_type="ad_import",
            tenant_id=tenant_id,
            imported=result.imported,
            updated=result.updated,
            errors=result.errors,
            started_at=started_at,
            metadata={"action": "fetch_ad", "ad_id": body.ad_id},
        ))
        summary = ImportSummary(
            total=1,
            imported=result.imported,
            updated=result.updated,
            errors=result.errors,
            error_details=result.error_details,
        )
        return {"ad": to_wire_dict(record), **summary.model_dump(by_alias=True)}

    if body.action == "fetch_page":
        try:
            await archive.fetch_page(body.page_id or "", body.limit)
        except UnsupportedOperationError as exc:
            return _bad_request(str(exc), suggestion=exc.suggestion)
        return _bad_request("Page import is not available")

    # import_manual
    try:
        outcome = await import_manual(reconciler, tenant_id, body.format, body.data)
    except ManualImportError as exc:
        return _bad_request(str(exc))

    logger.info(
        "Manual import tenant=%d format=%s total=%d imported=%d updated=%d errors=%d",
        tenant_id, body.format, outcome.total, outcome.imported, outcome.updated, outcome.errors,
    )
    recorder.record_in_background(RunSummary(
        job_name=f"Manual Import - {body.format.upper()}",
        task_type="ad_import",
        tenant_id=tenant_id,
        imported=outcome.imported,
        updated=outcome.updated,
        errors=outcome.errors,
        started_at=started_at,
        metadata={
            "action": "import_manual",
            "format": body.format,
            "total": outcome.total,
            "rejected": outcome.rejected,
            "error_details": outcome.error_details[:20],
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
