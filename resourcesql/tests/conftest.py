from __future__ import annotations

from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine

from resourcesql.core.config import get_settings
from resourcesql.persistence.db import build_engine, is_sqlite_url
from resourcesql.persistence.store import ResourceStore
from resourcesql.tests.utils.db import database_url_for, drop_everything
from resourcesql.tests.utils.models import ALL_MODELS


@pytest.fixture(autouse=True)
def reset_settings_cache() -> None:
    # Settings are cached per process; drop them so env overrides stay test-local.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def engine(tmp_path: Path) -> AsyncEngine:
    url = database_url_for(tmp_path)
    engine = build_engine(get_settings(), database_url=url)
    if not is_sqlite_url(url):
        await drop_everything(engine)
    yield engine
    if not is_sqlite_url(url):
        await drop_everything(engine)
    await engine.dispose()


@pytest.fixture
async def bare_store(engine: AsyncEngine) -> ResourceStore:
    # Store without provisioned tables for schema tests.
    store = await ResourceStore.open(engine)
    yield store
    await store.close()


@pytest.fixture
async def store(bare_store: ResourceStore) -> ResourceStore:
    await bare_store.create_tables(ALL_MODELS)
    yield bare_store
