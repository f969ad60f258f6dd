"""Import Reconciler -- 정규화된 AdRecord 배치를 테넌트 스코프로 upsert.

레코드마다 자기 세션/트랜잭션에서 처리한다. 한 건의 실패(제약 위반 등)는
rollback + 에러 카운트로 끝나고 다음 레코드는 계속 진행된다.

존재 확인 후 쓰기(check-then-write)는 직렬화되지 않는다. 같은 테넌트에 대해
동시에 돌아가는 두 런이 같은 external_id를 동시에 insert하면 한쪽은
uq_ads_tenant_external 위반으로 해당 레코드 에러가 된다 (허용된 경합 구간).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.models import Ad
from processor.dedup import find_existing_ad, resolve_advertiser
from processor.normalizer import AdRecord

# update 경로에서 덮어쓰는 필드
MUTABLE_FIELDS = (
    "advertiser_name",
    "primary_text",
    "headline",
    "call_to_action",
    "media_url",
    "media_type",
    "start_date",
    "end_date",
    "countries",
    "status",
    "platform",
    "snapshot_url",
)

MAX_ERROR_DETAILS = 50


@dataclass
class ImportResult:
    imported: int = 0
    updated: int = 0
    errors: int = 0
    error_details: list[str] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return self.imported + self.updated

    def merge(self, other: "ImportResult") -> "ImportResult":
        self.imported += other.imported
        self.updated += other.updated
        self.errors += other.errors
        room = MAX_ERROR_DETAILS - len(self.error_details)
        if room > 0:
            self.error_details.extend(other.error_details[:room])
        return self

    def add_error(self, detail: str):
        self.errors += 1
        if len(self.error_details) < MAX_ERROR_DETAILS:
            self.error_details.append(detail)

    def to_dict(self) -> dict:
        return {
            "imported": self.imported,
            "updated": self.updated,
            "errors": self.errors,
            "error_details": list(self.error_details),
        }


def _column_values(record: AdRecord) -> dict:
    def _as_datetime(value):
        return datetime.combine(value, datetime.min.time()) if value else None

    return {
        "advertiser_name": record.advertiser_name,
        "primary_text": record.primary_text,
        "headline": record.headline,
        "call_to_action": record.call_to_action,
        "media_url": record.media_url,
        "media_type": record.media_type,
        "start_date": _as_datetime(record.start_date),
        "end_date": _as_datetime(record.end_date),
        "countries": sorted(record.countries or ()),
        "status": record.status,
        "platform": record.platform,
        "snapshot_url": record.snapshot_url,
    }


class ImportReconciler:
    """upsert-by-natural-key. 같은 배치를 두 번 넣어도 ad는 늘지 않는다."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def import_batch(self, records: list[AdRecord], tenant_id: int) -> ImportResult:
        result = ImportResult()
        for record in records:
            try:
                created = await self._import_one(record, tenant_id)
            except Exception as exc:
                external_id = getattr(record, "external_id", None) or "?"
                result.add_error(f"Ad {external_id}: {_short_error(exc)}")
                logger.warning("[importer] tenant={} ad={} 실패: {}", tenant_id, external_id, exc)
                continue
            if created:
                result.imported += 1
            else:
                result.updated += 1

        logger.info(
            "[importer] tenant={} batch={} imported={} updated={} errors={}",
            tenant_id, len(records), result.imported, result.updated, result.errors,
        )
        return result

    async def _import_one(self, record: AdRecord, tenant_id: int) -> bool:
        """한 레코드를 자기 트랜잭션에서 처리. 새로 insert면 True."""
        async with self._session_factory() as session:
            async with session.begin():
                existing = await find_existing_ad(session, tenant_id, record.external_id)
                advertiser, _ = await resolve_advertiser(
                    session,
                    tenant_id,
                    record.advertiser_external_id,
                    record.advertiser_name,
                )
                values = _column_values(record)

                if existing is not None:
                    for name in MUTABLE_FIELDS:
                        setattr(existing, name, values[name])
                    if existing.advertiser_id is None:
                        existing.advertiser_id = advertiser.id
                    existing.updated_at = datetime.utcnow()
                    return False

                session.add(Ad(
                    tenant_id=tenant_id,
                    advertiser_id=advertiser.id,
                    external_id=record.external_id,
                    **values,
                ))
                advertiser.total_ads = (advertiser.total_ads or 0) + 1
                await session.flush()
                return True


def _short_error(exc: Exception) -> str:
    message = str(getattr(exc, "orig", None) or exc).strip().splitlines()
    return (message[0] if message else type(exc).__name__)[:200]
