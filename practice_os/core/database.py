"""Database engine and async session factory."""

from __future__ import annotations

import logging
from functools import lru_cache

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from practice_os.config import get_settings
from practice_os.core.models import Base

logger = logging.getLogger(__name__)


def get_database_url() -> str:
    return get_settings().core_database_url


@lru_cache
def _get_engine() -> AsyncEngine:
    settings = get_settings()
    url = get_database_url()
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=False)
    return create_async_engine(
        url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_pre_ping=True,
        echo=False,
    )


@lru_cache
def _get_session_factory() -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(_get_engine(), class_=AsyncSession, expire_on_commit=False)


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """FastAPI dependency returning the shared session factory.

    Stores open their own short-lived sessions so per-practitioner reads can
    run concurrently.
    """
    return _get_session_factory()


async def init_db() -> None:
    """Create all tables (dev only; production uses migrations)."""
    engine = _get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema created")


async def ping(factory: async_sessionmaker[AsyncSession] | None = None) -> bool:
    """Return True if the database answers a trivial query."""
    factory = factory or _get_session_factory()
    async with factory() as session:
        await session.execute(text("SELECT 1"))
    return True


async def dispose_engine() -> None:
    if _get_engine.cache_info().currsize:
        await _get_engine().dispose()
