"""
Database session management.

Two engine flavours share one configuration:

  API process   get_engine() / get_session_factory() — a pooled engine created
                lazily on first use and reused for the lifetime of the process.

  Celery worker worker_session_factory() — each task runs on a fresh event
                loop (see workers.tasks.run_async), so it gets a NullPool engine
                bound to that loop and disposed when the task finishes.

Services never open sessions on their own engine: they receive an
async_sessionmaker and open one short transaction per state change, so
progress is visible to operators while a job is still running.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from book_pipeline.core.config import settings

logger = logging.getLogger(__name__)

SessionFactory = async_sessionmaker[AsyncSession]


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

def _pool_options(database_url: str) -> dict:
    # SQLite (local runs, tests) uses its own single-file pool; sizing args
    # are only valid for server databases.
    if make_url(database_url).get_backend_name() == "sqlite":
        return {}
    return {
        "pool_size":     settings.db_pool_size,
        "max_overflow":  settings.db_max_overflow,
        "pool_pre_ping": True,   # detect stale connections before use
        "pool_recycle":  3600,   # recycle connections every hour
    }


@lru_cache(maxsize=1)
def get_engine() -> AsyncEngine:
    return create_async_engine(
        settings.database_url,
        echo=settings.db_echo_sql,
        **_pool_options(settings.database_url),
    )


def make_session_factory(engine: AsyncEngine) -> SessionFactory:
    # expire_on_commit=False keeps ORM objects usable after commit
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@lru_cache(maxsize=1)
def get_session_factory() -> SessionFactory:
    return make_session_factory(get_engine())


# ---------------------------------------------------------------------------
# Worker sessions
# ---------------------------------------------------------------------------

@asynccontextmanager
async def worker_session_factory() -> AsyncGenerator[SessionFactory, None]:
    """
    Session factory for a single Celery task.

    Connections are not pooled across tasks because every task owns its own
    event loop; the engine is disposed on exit.
    """
    engine = create_async_engine(
        settings.database_url,
        echo=settings.db_echo_sql,
        poolclass=NullPool,
    )
    try:
        yield make_session_factory(engine)
    finally:
        await engine.dispose()


# ---------------------------------------------------------------------------
# Health check helper
# ---------------------------------------------------------------------------

async def check_db_health(engine: AsyncEngine | None = None) -> dict:
    """Ping the database; used by /ready and at startup."""
    try:
        async with (engine or get_engine()).connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        logger.error("DB health check failed: %s", exc)
        return {"status": "error", "detail": str(exc)}
