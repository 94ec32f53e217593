from __future__ import annotations

import os
from pathlib import Path

from sqlalchemy import inspect as sa_inspect
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from resourcesql.domain.models import Base
from resourcesql.persistence.db import is_sqlite_url


# Tables created through raw statements in provisioning tests.
RAW_TABLES = ("raw_first", "raw_after")


def database_url_for(tmp_path: Path) -> str:
    # Point TEST_DATABASE_URL at PostgreSQL to run the suite against the real target.
    return os.getenv("TEST_DATABASE_URL") or f"sqlite+aiosqlite:///{tmp_path / 'resourcesql.db'}"


def uses_postgres() -> bool:
    return not is_sqlite_url(os.getenv("TEST_DATABASE_URL") or "sqlite")


async def has_table(engine: AsyncEngine, name: str) -> bool:
    async with engine.connect() as conn:
        return await conn.run_sync(lambda sync_conn: sa_inspect(sync_conn).has_table(name))


async def drop_everything(engine: AsyncEngine) -> None:
    # A shared PostgreSQL database keeps state between tests; sqlite files do not.
    async with engine.begin() as conn:
        for name in RAW_TABLES:
            await conn.execute(text(f"DROP TABLE IF EXISTS {name}"))
        await conn.run_sync(Base.metadata.drop_all)
