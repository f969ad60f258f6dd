from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import pytest
from sqlalchemy import select

from crawler.errors import MetaApiError
from crawler.facebook_api import TokenInfo
from database.models import Alert, HarvestJobRun
from processor.api_health import HEALTH_CHECK_JOB_NAME, probe_api, run_health_check


class FakeApiClient:
    def __init__(self, token="tok", *, valid=True, ads_read=True, connection_error=None):
        self.access_token = token
        self.valid = valid
        self.ads_read = ads_read
        self.connection_error = connection_error

    async def validate_token(self):
        return TokenInfo(is_valid=self.valid, has_ads_read=self.ads_read, app_id="123", token_type="APP")

    async def test_connection(self):
        if self.connection_error is not None:
            raise self.connection_error
        return 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "client, category",
    [
        (FakeApiClient(token=""), "TOKEN_ERROR"),
        (FakeApiClient(valid=False), "TOKEN_ERROR"),
        (FakeApiClient(ads_read=False), "PERMISSION_ERROR"),
        (FakeApiClient(connection_error=MetaApiError("limit", code=17)), "RATE_LIMIT"),
    ],
)
async def test_probe_failures_are_classified(client, category):
    status = await probe_api(client)
    assert status.success is False
    assert status.category == category
    assert status.suggestion


@pytest.mark.asyncio
async def test_probe_success():
    status = await probe_api(FakeApiClient())
    assert status.success
    assert status.diagnostics["ad_library_working"] is True
    assert status.diagnostics["test_ads_returned"] == 1


@pytest.mark.asyncio
async def test_recovery_creates_one_alert_per_tenant(session_factory, tenant_id, tenant_factory):
    other_tenant = await tenant_factory("tenant-b")

    failed = await run_health_check(FakeApiClient(valid=False), session_factory)
    assert failed.recovered is False
    assert failed.previous_status == "unknown"

    ok = await run_health_check(FakeApiClient(), session_factory)
    assert ok.previous_status == "failed"
    assert ok.recovered is True
    assert await ok.alerts_task == 2

    async with session_factory() as session:
        alerts = (await session.scalars(select(Alert))).all()
        runs = (await session.scalars(
            select(HarvestJobRun).where(HarvestJobRun.job_name == HEALTH_CHECK_JOB_NAME)
        )).all()
    assert {a.tenant_id for a in alerts} == {tenant_id, other_tenant}
    assert all(a.alert_type == "api_status" and a.severity == "info" for a in alerts)
    assert alerts[0].alert_metadata["current_status"] == "working"
    assert sorted(r.status for r in runs) == ["completed", "failed"]


@pytest.mark.asyncio
async def test_no_alerts_when_already_healthy(session_factory, tenant_id):
    await run_health_check(FakeApiClient(), session_factory)
    again = await run_health_check(FakeApiClient(), session_factory)

    assert again.previous_status == "completed"
    assert again.recovered is False
    assert again.alerts_task is None
