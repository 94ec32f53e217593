from __future__ import annotations

import asyncio
import os
from pathlib import Path

import pytest
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine

from resourcesql.core.config import Settings, get_settings
from resourcesql.core.errors import InitializationError, NotifyUnavailableError
from resourcesql.persistence.db import build_engine
from resourcesql.persistence.store import ResourceStore
from resourcesql.tests.utils.db import uses_postgres


@pytest.mark.asyncio
async def test_notify_channel_comes_from_settings(monkeypatch: pytest.MonkeyPatch, engine: AsyncEngine) -> None:
    monkeypatch.setenv("NOTIFY_CHANNEL", "resource_changes")
    get_settings.cache_clear()

    store = ResourceStore(engine)

    assert store.notify_channel == "resource_changes"
    assert ResourceStore(engine, notify_channel="audit").notify_channel == "audit"


@pytest.mark.asyncio
@pytest.mark.skipif(uses_postgres(), reason="exercises dialects without LISTEN/NOTIFY")
async def test_notify_unavailable_without_postgres(engine: AsyncEngine) -> None:
    store = ResourceStore(engine)

    with pytest.raises(NotifyUnavailableError):
        await store.notify("payload")


@pytest.mark.asyncio
@pytest.mark.skipif(not uses_postgres(), reason="needs TEST_DATABASE_URL pointing at PostgreSQL")
async def test_empty_channel_fails_construction(engine: AsyncEngine) -> None:
    with pytest.raises(InitializationError):
        ResourceStore(engine, notify_channel="")


@pytest.mark.asyncio
@pytest.mark.skipif(not uses_postgres(), reason="needs TEST_DATABASE_URL pointing at PostgreSQL")
async def test_notify_reaches_listener(engine: AsyncEngine) -> None:
    import asyncpg

    dsn = make_url(os.environ["TEST_DATABASE_URL"]).set(drivername="postgresql")
    listener = await asyncpg.connect(dsn.render_as_string(hide_password=False))
    received: asyncio.Queue[str] = asyncio.Queue()
    store = ResourceStore(engine)
    try:
        await listener.add_listener(
            store.notify_channel, lambda _conn, _pid, _channel, payload: received.put_nowait(payload)
        )
        await store.notify('{"resource": "widgets"}')
        payload = await asyncio.wait_for(received.get(), timeout=5)
    finally:
        await listener.close()
        await store.close()

    assert payload == '{"resource": "widgets"}'


@pytest.mark.asyncio
async def test_closed_store_rejects_notify(engine: AsyncEngine) -> None:
    store = ResourceStore(engine)
    await store.close()

    with pytest.raises(InitializationError):
        await store.notify("payload")


@pytest.mark.asyncio
async def test_open_fails_when_postgres_is_unreachable() -> None:
    # Nothing listens on port 1, so the connection is refused straight away.
    engine = build_engine(Settings(db_pool_timeout_s=1), database_url="postgresql+asyncpg://u:p@127.0.0.1:1/nowhere")
    try:
        with pytest.raises(InitializationError):
            await ResourceStore.open(engine)
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_open_fails_when_database_file_cannot_be_created(tmp_path: Path) -> None:
    engine = build_engine(database_url=f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'store.db'}")
    try:
        with pytest.raises(InitializationError):
            await ResourceStore.open(engine)
    finally:
        await engine.dispose()


@pytest.mark.asyncio
@pytest.mark.skipif(not uses_postgres(), reason="needs TEST_DATABASE_URL pointing at PostgreSQL")
async def test_open_runs_notify_without_delivering(engine: AsyncEngine) -> None:
    import asyncpg

    dsn = make_url(os.environ["TEST_DATABASE_URL"]).set(drivername="postgresql")
    listener = await asyncpg.connect(dsn.render_as_string(hide_password=False))
    received: asyncio.Queue[str] = asyncio.Queue()
    try:
        await listener.add_listener("opened", lambda _conn, _pid, _channel, payload: received.put_nowait(payload))
        store = await ResourceStore.open(engine, notify_channel="opened")
        await asyncio.sleep(0.2)
        await store.close()
    finally:
        await listener.close()

    assert received.empty()
