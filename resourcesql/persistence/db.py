from __future__ import annotations

from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from resourcesql.core.config import Settings, get_settings


def is_sqlite_url(database_url: str) -> bool:
    return database_url.startswith("sqlite")


def enable_sqlite_transactional_ddl(engine: AsyncEngine) -> None:
    # pysqlite defers BEGIN until the first DML statement, which leaves DDL and
    # SAVEPOINTs outside the transaction; take over BEGIN so both roll back.
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN")


def build_engine(settings: Settings | None = None, *, database_url: str | None = None) -> AsyncEngine:
    settings = settings or get_settings()
    url = database_url or settings.database_url
    engine_kwargs: dict[str, Any] = {"pool_pre_ping": True, "echo": settings.db_echo}
    # Configure bounded asyncpg pools for predictable latency under load.
    if not is_sqlite_url(url):
        engine_kwargs["pool_size"] = max(1, int(settings.db_pool_size))
        engine_kwargs["max_overflow"] = max(0, int(settings.db_max_overflow))
        engine_kwargs["pool_timeout"] = settings.db_pool_timeout_s
        engine_kwargs["pool_recycle"] = settings.db_pool_recycle_s
        if settings.db_statement_timeout_ms > 0:
            engine_kwargs["connect_args"] = {
                "server_settings": {"statement_timeout": str(int(settings.db_statement_timeout_ms))}
            }
    engine = create_async_engine(url, **engine_kwargs)
    if is_sqlite_url(url):
        enable_sqlite_transactional_ddl(engine)
    return engine


def build_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Keep loaded rows readable after commit; every call uses a fresh session anyway.
    return async_sessionmaker(engine, expire_on_commit=False)

