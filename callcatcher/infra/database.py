"""
Database engine and session factory.

Every scheduling component receives an ``async_sessionmaker`` and opens
its own short transactions, so the module-level factory here is only the
default wiring. Tests build their own through the same helpers.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from callcatcher.config import settings
from callcatcher.models.database import Base

logger = logging.getLogger(__name__)

# SQLite serialises writers; wait for the lock instead of failing fast
SQLITE_BUSY_TIMEOUT = 15


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    """
    Create an async engine for ``url``.

    Connections are not pooled: booking transactions are short and the
    process may run several workers against one database.
    """
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args["timeout"] = SQLITE_BUSY_TIMEOUT
    return create_async_engine(url, echo=echo, poolclass=NullPool, connect_args=connect_args)


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory whose objects stay readable after commit."""
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = build_engine(settings.database_url, echo=settings.debug)
async_session_factory = build_session_factory(engine)


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncGenerator[AsyncSession, None]:
    """
    One unit of work: commit on success, roll back on error.

    Usage:
        async with session_scope() as db:
            db.add(slot)
    """
    session = (factory or async_session_factory)()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def init_db(bind: AsyncEngine | None = None) -> None:
    """
    Create missing tables.

    Development convenience only; production schemas are migrated.
    """
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    await engine.dispose()


async def check_db_health(factory: async_sessionmaker[AsyncSession] | None = None) -> bool:
    """True when a trivial query round-trips."""
    try:
        async with session_scope(factory) as db:
            await db.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning(f"Database health check failed: {e}")
        return False
