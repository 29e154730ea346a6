from __future__ import annotations

import asyncio
from pathlib import Path

from alembic import command
from alembic.config import Config
import pytest
from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import create_async_engine

from signflow.domain.models import Base


REPO_ROOT = Path(__file__).resolve().parents[3]


def _alembic_config(database_url: str) -> Config:
    config = Config(str(REPO_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(REPO_ROOT / "signflow" / "persistence" / "alembic"))
    config.set_main_option("sqlalchemy.url", database_url)
    return config


def _describe(connection) -> dict[str, set[str]]:
    inspector = inspect(connection)
    return {
        table: {column["name"] for column in inspector.get_columns(table)}
        for table in inspector.get_table_names()
    }


@pytest.mark.asyncio
async def test_migrations_match_models(tmp_path) -> None:
    # env.py drives its own event loop, so upgrade runs off the test loop.
    database_url = f"sqlite+aiosqlite:///{tmp_path / 'migrated.db'}"
    await asyncio.to_thread(command.upgrade, _alembic_config(database_url), "head")

    engine = create_async_engine(database_url)
    try:
        async with engine.connect() as conn:
            migrated = await conn.run_sync(_describe)
    finally:
        await engine.dispose()

    assert migrated.pop("alembic_version") == {"version_num"}
    expected = {table.name: {column.name for column in table.columns} for table in Base.metadata.sorted_tables}
    assert migrated == expected
