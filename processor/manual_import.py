"""원본 광고 dict 묶음 → 정규화 → Import Reconciler.

webhook push, 외부 API 단건 조회, 사용자 업로드(JSON/CSV)가 모두 여기를 지난다.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from loguru import logger

from crawler.facebook_api import AdSearchParams, FetchResult, MetaAdLibraryClient
from processor.importer import MAX_ERROR_DETAILS, ImportReconciler
from processor.normalizer import SourceFormat, normalize_ad, parse_csv, parse_json_upload, resolve_field

MANUAL_FORMATS = ("json", "csv")


class ManualImportError(ValueError):
    """사용자 입력 문제 (400으로 응답)."""


@dataclass
class IngestOutcome:
    total: int = 0
    imported: int = 0
    updated: int = 0
    errors: int = 0
    rejected: int = 0
    error_details: list[str] = field(default_factory=list)

    def note(self, detail: str):
        if len(self.error_details) < MAX_ERROR_DETAILS:
            self.error_details.append(detail)


async def ingest_raw_ads(
    reconciler: ImportReconciler,
    tenant_id: int,
    raws: list[dict],
    source_format: SourceFormat,
    *,
    default_country: str | None = None,
    require_page_name: bool = False,
) -> IngestOutcome:
    """정규화 실패(식별자 없음)는 rejected, page_name 누락은 errors로 센다."""
    outcome = IngestOutcome(total=len(raws))
    records = []
    for index, raw in enumerate(raws, start=1):
        if require_page_name and isinstance(raw, dict) and not resolve_field(raw, "advertiser_name"):
            outcome.errors += 1
            outcome.note(f"Row {index}: page_name is required")
            continue
        record = normalize_ad(raw, source_format, default_country)
        if record is None:
            outcome.rejected += 1
            outcome.note(f"Row {index}: missing ad_library_id")
            continue
        records.append(record)

    if records:
        result = await reconciler.import_batch(records, tenant_id)
        outcome.imported = result.imported
        outcome.updated = result.updated
        outcome.errors += result.errors
        for detail in result.error_details:
            outcome.note(detail)

    logger.info(
        "[ingest] {} tenant={} total={} imported={} updated={} errors={} rejected={}",
        SourceFormat(source_format).value, tenant_id, outcome.total, outcome.imported,
        outcome.updated, outcome.errors, outcome.rejected,
    )
    return outcome


def parse_manual_payload(fmt: str | None, data) -> list[dict]:
    """format + data → 원본 dict 리스트. 잘못된 입력은 ManualImportError."""
    fmt = (fmt or "").strip().lower()
    if fmt not in MANUAL_FORMATS:
        raise ManualImportError("format must be json or csv")
    if data is None or (isinstance(data, str) and not data.strip()):
        raise ManualImportError("data is required")

    if fmt == "json":
        try:
            rows = parse_json_upload(data)
        except ValueError as exc:
            raise ManualImportError(f"Invalid JSON: {exc}") from exc
    else:
        if not isinstance(data, str):
            raise ManualImportError("CSV data must be text")
        rows = parse_csv(data)

    if not rows:
        raise ManualImportError("No valid ads found")
    return rows


async def import_manual(
    reconciler: ImportReconciler,
    tenant_id: int,
    fmt: str | None,
    data,
) -> IngestOutcome:
    rows = parse_manual_payload(fmt, data)
    source = SourceFormat.JSON_UPLOAD if fmt.strip().lower() == "json" else SourceFormat.CSV_UPLOAD
    outcome = await ingest_raw_ads(reconciler, tenant_id, rows, source, require_page_name=True)
    if outcome.imported + outcome.updated + outcome.errors == 0:
        raise ManualImportError("No valid ads found")
    return outcome


async def import_from_ad_library(
    client: MetaAdLibraryClient,
    reconciler: ImportReconciler,
    tenant_id: int,
    params: AdSearchParams,
    max_ads: int,
) -> tuple[FetchResult, IngestOutcome]:
    """Graph API fetch → 정규화 → import. fetch가 중간에 끊겨도 받은 만큼은 적재."""
    fetched = await client.fetch_all_ads(params, max_ads=max_ads)
    country = params.ad_reached_countries[0] if len(params.ad_reached_countries) == 1 else None
    outcome = await ingest_raw_ads(
        reconciler, tenant_id, fetched.ads, SourceFormat.API, default_country=country,
    )
    if fetched.partial:
        outcome.note(f"Fetch stopped early: {fetched.error}")
    return fetched, outcome
