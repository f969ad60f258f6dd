"""Database session/engine bootstrap for AdHarvest."""

import os

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from database.models import Base

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    "sqlite+aiosqlite:///adharvest.db",
)


def build_engine(url: str = DATABASE_URL) -> AsyncEngine:
    connect_args = {"timeout": 30} if url.startswith("sqlite") else {}
    return create_async_engine(url, echo=False, connect_args=connect_args)


def build_sessionmaker(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


engine = build_engine()
async_session = build_sessionmaker(engine)


async def init_db(bind: AsyncEngine | None = None):
    """Create tables (idempotent)."""
    bind = bind or engine
    async with bind.begin() as conn:
        if bind.dialect.name == "sqlite":
            # SQLite performance pragmas
            await conn.exec_driver_sql("PRAGMA journal_mode=WAL")
            await conn.exec_driver_sql("PRAGMA synchronous=NORMAL")
        await conn.run_sync(Base.metadata.create_all)
