"""Async engine and session factory shared by the API, worker and scripts.

Postgres (asyncpg) is the production target. sqlite+aiosqlite is accepted for
local runs and tests; there row locks degrade to sqlite's database-wide write
lock, so concurrent signers wait on the busy timeout instead of failing.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import Any, AsyncIterator

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from signflow.core.config import get_settings


logger = logging.getLogger(__name__)


def _is_sqlite(database_url: str) -> bool:
    return database_url.startswith("sqlite")


def build_engine_kwargs(database_url: str) -> dict[str, Any]:
    settings = get_settings()
    kwargs: dict[str, Any] = {"pool_pre_ping": True}
    if _is_sqlite(database_url):
        # Seconds to wait on another connection's write lock.
        kwargs["connect_args"] = {"timeout": max(1, settings.api_db_statement_timeout_ms // 1000)}
        return kwargs
    kwargs["pool_size"] = max(1, int(settings.api_db_pool_size))
    kwargs["max_overflow"] = max(0, int(settings.api_db_max_overflow))
    kwargs["pool_timeout"] = 30
    kwargs["pool_recycle"] = 1800
    if settings.api_db_statement_timeout_ms > 0:
        kwargs["connect_args"] = {
            "server_settings": {"statement_timeout": str(int(settings.api_db_statement_timeout_ms))}
        }
    return kwargs


_database_url = get_settings().database_url
engine: AsyncEngine = create_async_engine(_database_url, **build_engine_kwargs(_database_url))
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session


async def ping_database() -> bool:
    """Return True when a trivial query round-trips; used by the health route."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("database_ping_failed error=%s", exc)
        return False
    return True


async def dispose_engine() -> None:
    # Drop pooled connections; called on shutdown and between test event loops.
    await engine.dispose()
