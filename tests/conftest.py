from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import pytest_asyncio

from database import build_engine, build_sessionmaker, init_db
from database.models import Tenant


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """임시 SQLite 파일 DB."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(engine)
    yield build_sessionmaker(engine)
    await engine.dispose()


async def make_tenant(session_factory, name: str) -> int:
    async with session_factory() as session:
        tenant = Tenant(name=name)
        session.add(tenant)
        await session.commit()
        return tenant.id


@pytest_asyncio.fixture
async def tenant_id(session_factory):
    return await make_tenant(session_factory, "tenant-a")


@pytest_asyncio.fixture
async def tenant_factory(session_factory):
    async def _make(name: str) -> int:
        return await make_tenant(session_factory, name)

    return _make
