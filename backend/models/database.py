"""
Database engine and session management for the task store.

One async engine per process. Every storage call opens its own short
session, so a sync run never holds a transaction across tasks:

    async with get_session() as session:
        await session.execute(stmt)
        await session.commit()

Behind an external pooler (``DATABASE_NULL_POOL``) the engine keeps no
connections of its own and asyncpg's statement cache is disabled.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

from config import settings

logger = logging.getLogger(__name__)

Base = declarative_base()

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def _async_url(url: str) -> str:
    """Force the asyncpg driver onto a plain ``postgresql://`` URL."""
    if url.startswith("postgresql://"):
        return "postgresql+asyncpg://" + url[len("postgresql://"):]
    return url


def _engine_options() -> dict[str, Any]:
    if settings.DATABASE_NULL_POOL:
        return {
            "poolclass": NullPool,
            "connect_args": {"statement_cache_size": 0, "prepared_statement_cache_size": 0},
        }
    return {
        "pool_size": settings.DATABASE_POOL_SIZE,
        "max_overflow": settings.DATABASE_MAX_OVERFLOW,
        "pool_recycle": 300,
        "pool_pre_ping": True,
    }


def get_engine() -> AsyncEngine:
    """Create the engine on first use."""
    global _engine
    if _engine is None:
        options = _engine_options()
        _engine = create_async_engine(_async_url(settings.DATABASE_URL), **options)
        logger.info(
            "Database engine created (%s)",
            "NullPool" if settings.DATABASE_NULL_POOL else f"pool_size={options['pool_size']}",
        )
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield a session; roll back on error and always return the connection."""
    session: AsyncSession = get_session_factory()()
    try:
        yield session
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def init_db() -> None:
    """Create all tables (development only)."""
    import models  # noqa: F401  register every mapped class on Base.metadata

    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose the engine on application shutdown."""
    global _engine, _session_factory
    if _engine is None:
        return
    status = get_pool_status()
    logger.info(
        "Closing database pool (%s checked out)",
        status["checked_out"],
    )
    await _engine.dispose()
    _engine = None
    _session_factory = None


def dispose_engine() -> None:
    """
    Drop the engine without awaiting pooled connections.

    Celery tasks run each coroutine on a fresh event loop; connections made
    on an earlier loop cannot be reused, so the next get_engine() call must
    build a new pool.
    """
    global _engine, _session_factory
    if _engine is not None:
        _engine.sync_engine.dispose(close=False)
    _engine = None
    _session_factory = None


def get_pool_status() -> dict[str, int | str]:
    """Pool counters for the /health/db endpoint."""
    empty: dict[str, int | str] = {"pool_size": 0, "checked_in": 0, "checked_out": 0, "overflow": 0}
    if _engine is None:
        return {"pool_type": "not_initialized", **empty}

    pool = _engine.pool
    if isinstance(pool, NullPool):
        return {"pool_type": "NullPool", **empty}

    return {
        "pool_type": type(pool).__name__,
        "pool_size": pool.size(),
        "checked_in": pool.checkedin(),
        "checked_out": pool.checkedout(),
        "overflow": pool.overflow(),
    }
