"""수집 런이 정규화 배치를 넘기는 목적지 (로컬 DB 또는 원격 webhook)."""

from __future__ import annotations

from typing import Protocol

import httpx
from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from crawler.config import crawler_settings
from database.models import Tenant
from processor.importer import ImportReconciler, ImportResult
from processor.normalizer import AdRecord, to_wire_dict


class ImportSink(Protocol):
    name: str

    async def deliver(self, records: list[AdRecord]) -> ImportResult: ...

    async def ping(self) -> bool: ...


class DatabaseSink:
    """Import Reconciler 직접 호출."""

    name = "db"

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], tenant_id: int):
        self._session_factory = session_factory
        self.reconciler = ImportReconciler(session_factory)
        self.tenant_id = tenant_id

    async def deliver(self, records: list[AdRecord]) -> ImportResult:
        return await self.reconciler.import_batch(records, self.tenant_id)

    async def ping(self) -> bool:
        try:
            async with self._session_factory() as session:
                tenant = await session.scalar(select(Tenant.id).where(Tenant.id == self.tenant_id))
                return tenant is not None
        except Exception as exc:
            logger.warning("[sink:db] ping 실패: {}", exc)
            return False


class WebhookSink:
    """원격 scraper-webhook 엔드포인트로 batch_import 전송."""

    name = "webhook"

    def __init__(
        self,
        url: str | None = None,
        secret: str | None = None,
        scraper_id: str | None = None,
        tenant_id: int | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        timeout_sec: float | None = None,
    ):
        self.url = url or crawler_settings.webhook_url
        self.secret = secret if secret is not None else crawler_settings.webhook_secret
        self.scraper_id = scraper_id or crawler_settings.scraper_id
        self.tenant_id = tenant_id
        self._client = client
        self._timeout = timeout_sec or crawler_settings.webhook_timeout_sec
        if not self.url:
            raise ValueError("Webhook URL is not configured (CRAWLER_WEBHOOK_URL)")

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.secret:
            headers["x-webhook-secret"] = self.secret
        return headers

    async def _post(self, body: dict) -> dict:
        if self._client is not None:
            response = await self._client.post(self.url, json=body, headers=self._headers())
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(self.url, json=body, headers=self._headers())
        response.raise_for_status()
        return response.json()

    async def deliver(self, records: list[AdRecord]) -> ImportResult:
        body = {
            "action": "batch_import",
            "scraper_id": self.scraper_id,
            "ads": [to_wire_dict(r) for r in records],
            "metadata": {"tenant_id": self.tenant_id},
        }
        data = await self._post(body)
        result = ImportResult(
            imported=int(data.get("imported") or 0),
            updated=int(data.get("updated") or 0),
            errors=int(data.get("errors") or 0),
            error_details=list(data.get("details") or [])[:50],
        )
        logger.info(
            "[sink:webhook] sent {} ads → imported={} updated={} errors={}",
            len(records), result.imported, result.updated, result.errors,
        )
        return result

    async def ping(self) -> bool:
        try:
            data = await self._post({"action": "ping", "scraper_id": self.scraper_id})
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("[sink:webhook] ping 실패: {}", exc)
            return False
        return bool(data.get("success"))
