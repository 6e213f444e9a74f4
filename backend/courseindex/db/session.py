"""
Database session management for the system of record.

Flow:
  1. The API process builds one engine + session factory lazily from
     settings; services open a transaction per operation through
     db.documents.repository_scope().
  2. Each Celery task builds its own NullPool engine with
     create_task_session_factory() and disposes it before returning.

The engine is built lazily from settings so tests (and the Celery worker,
which forks) can install their own engine with configure_engine().
"""

from __future__ import annotations

import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from courseindex.core.config import settings
from courseindex.models.documents import Base

logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

def _build_engine(url: str) -> AsyncEngine:
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=settings.db_echo_sql)
    return create_async_engine(
        url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=True,          # detect stale connections before use
        pool_recycle=3600,           # recycle connections every hour
        echo=settings.db_echo_sql,   # log SQL in dev; disable in prod
    )


def configure_engine(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Install an engine (and matching session factory) for the process."""
    global _engine, _session_factory
    _engine = engine
    # expire_on_commit=False keeps ORM objects usable after commit
    _session_factory = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    return _session_factory


def get_engine() -> AsyncEngine:
    if _engine is None:
        configure_engine(_build_engine(settings.database_url))
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        configure_engine(_build_engine(settings.database_url))
    return _session_factory


# ---------------------------------------------------------------------------
# Schema bootstrap
# ---------------------------------------------------------------------------

async def create_schema(engine: AsyncEngine | None = None) -> None:
    """Create uploaded_files if missing. Existing tables are left untouched."""
    async with (engine or get_engine()).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ensured")


# ---------------------------------------------------------------------------
# Health check helper
# ---------------------------------------------------------------------------

async def check_db_health(engine: AsyncEngine | None = None) -> dict:
    """Ping the database; used by /ready."""
    try:
        async with (engine or get_engine()).connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        logger.error("DB health check failed: %s", exc)
        return {"status": "error", "detail": str(exc)}


async def dispose_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


def create_task_session_factory(url: str | None = None) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """
    Engine + factory scoped to one Celery task.

    Each task runs its coroutine on a fresh event loop (run_async), and pooled
    asyncpg connections cannot cross loops, so tasks use NullPool and
    dispose the engine when they finish.
    """
    engine = create_async_engine(
        url or settings.database_url,
        poolclass=NullPool,
        echo=settings.db_echo_sql,
    )
    return engine, async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
