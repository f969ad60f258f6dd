from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import json

import pytest
from sqlalchemy import select

from database.models import Ad
from processor.importer import ImportReconciler
from processor.manual_import import (
    ManualImportError,
    import_manual,
    ingest_raw_ads,
    parse_manual_payload,
)
from processor.normalizer import SourceFormat


@pytest.mark.parametrize(
    "fmt, data, message",
    [
        ("xml", "<ads/>", "format must be json or csv"),
        (None, "[]", "format must be json or csv"),
        ("json", None, "data is required"),
        ("csv", "   ", "data is required"),
        ("json", "{oops", "Invalid JSON"),
        ("csv", "ad_library_id,page_name\n", "No valid ads found"),
        ("json", "[]", "No valid ads found"),
    ],
)
def test_bad_manual_payloads(fmt, data, message):
    with pytest.raises(ManualImportError, match=message):
        parse_manual_payload(fmt, data)


def test_format_is_case_insensitive():
    assert parse_manual_payload(" JSON ", '[{"id": "1"}]') == [{"id": "1"}]


@pytest.mark.asyncio
async def test_csv_import(session_factory, tenant_id):
    csv_text = (
        "ad_library_id,page_name,primary_text,countries,start_date\n"
        '1,Acme,"Hello, world","US,BR",2024-03-01\n'
        "2,Acme,Second ad,US,\n"
    )
    outcome = await import_manual(ImportReconciler(session_factory), tenant_id, "csv", csv_text)

    assert (outcome.total, outcome.imported, outcome.errors) == (2, 2, 0)
    async with session_factory() as session:
        ad = await session.scalar(select(Ad).where(Ad.external_id == "1"))
    assert ad.primary_text == "Hello, world"
    assert set(ad.countries) == {"US", "BR"}


@pytest.mark.asyncio
async def test_missing_page_name_counts_as_error(session_factory, tenant_id):
    rows = [{"ad_library_id": "1", "page_name": "Acme"}, {"ad_library_id": "2"}]
    outcome = await import_manual(ImportReconciler(session_factory), tenant_id, "json", json.dumps(rows))

    assert outcome.imported == 1
    assert outcome.errors == 1
    assert outcome.error_details == ["Row 2: page_name is required"]


@pytest.mark.asyncio
async def test_rows_without_identifier_only(session_factory, tenant_id):
    rows = [{"page_name": "Acme"}, {"page_name": "Other"}]
    with pytest.raises(ManualImportError, match="No valid ads found"):
        await import_manual(ImportReconciler(session_factory), tenant_id, "json", json.dumps(rows))


@pytest.mark.asyncio
async def test_webhook_ingest_counts_rejections_separately(session_factory, tenant_id):
    raws = [{"ad_library_id": "1", "page_name": "Acme"}, {"page_name": "no id"}]
    outcome = await ingest_raw_ads(
        ImportReconciler(session_factory), tenant_id, raws, SourceFormat.WEBHOOK, default_country="US",
    )
    assert (outcome.imported, outcome.rejected, outcome.errors) == (1, 1, 0)
