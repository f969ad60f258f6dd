"""Natural-key lookups for ads and advertisers -- the dedup half of the import upsert.

Used by processor.importer.ImportReconciler for every record.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import Ad, Advertiser


async def find_existing_ad(
    session: AsyncSession,
    tenant_id: int,
    external_id: str,
) -> Ad | None:
    """Find the ad row for (tenant_id, external_id), None if absent."""
    stmt = (
        select(Ad)
        .where(Ad.tenant_id == tenant_id, Ad.external_id == external_id)
        .limit(1)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def find_advertiser(
    session: AsyncSession,
    tenant_id: int,
    external_page_id: str | None,
    name: str | None,
) -> Advertiser | None:
    """Match priority:
    1. (tenant_id, external_page_id) if the record carries a page id
    2. (tenant_id, name)
    """
    if external_page_id:
        stmt = (
            select(Advertiser)
            .where(
                Advertiser.tenant_id == tenant_id,
                Advertiser.external_page_id == external_page_id,
            )
            .order_by(Advertiser.id)
            .limit(1)
        )
        result = await session.execute(stmt)
        found = result.scalar_one_or_none()
        if found:
            return found

    if not name:
        return None

    stmt = (
        select(Advertiser)
        .where(Advertiser.tenant_id == tenant_id, Advertiser.name == name)
        .order_by(Advertiser.id)
        .limit(1)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def resolve_advertiser(
    session: AsyncSession,
    tenant_id: int,
    external_page_id: str | None,
    name: str,
) -> tuple[Advertiser, bool]:
    """Look up or lazily create the advertiser. Returns (advertiser, created)."""
    advertiser = await find_advertiser(session, tenant_id, external_page_id, name)
    if advertiser is not None:
        # name으로 매칭됐는데 page id가 비어있으면 채워둔다
        if external_page_id and not advertiser.external_page_id:
            advertiser.external_page_id = external_page_id
        return advertiser, False

    advertiser = Advertiser(
        tenant_id=tenant_id,
        name=name,
        external_page_id=external_page_id,
        total_ads=0,
    )
    session.add(advertiser)
    await session.flush()
    return advertiser, True
