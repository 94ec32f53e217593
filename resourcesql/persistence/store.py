"""Generic CRUD persistence for resources mapped with SQLAlchemy.

Every write runs in its own transaction and is rolled back as a whole on failure
or cancellation. A query that matches no row is not an error: the operation
returns ``None`` and callers decide what absence means to them.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Iterable, Sequence, TypeVar

from sqlalchemy import Table, bindparam, delete, select, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine
from sqlalchemy.schema import sort_tables
from sqlalchemy.sql.elements import TextClause

from resourcesql.core.config import Settings, get_settings
from resourcesql.core.errors import (
    DatabaseError,
    InitializationError,
    NotifyUnavailableError,
    ReadError,
    SchemaError,
    WriteError,
)
from resourcesql.domain.models import (
    IMMUTABLE_COLUMNS,
    Resource,
    column_attribute,
    mapper_for,
    model_of,
    primary_key_criteria,
    soft_delete_attribute,
    table_name_of,
    utcnow,
)
from resourcesql.persistence.db import build_engine, build_sessionmaker
from resourcesql.persistence.hooks import QueryHook, apply_show_deleted


logger = logging.getLogger(__name__)

R = TypeVar("R", bound=Resource)

# Connectivity problems can surface from the driver before SQLAlchemy wraps them.
_DRIVER_ERRORS = (SQLAlchemyError, OSError)

NOTIFY_SQL = "SELECT pg_notify(:channel, :payload)"


@dataclass(frozen=True)
class RawStatement:
    # Literal SQL run after table creation; nothing is parameterised or escaped.
    sql: str
    # Log and skip failures of this statement instead of aborting provisioning.
    error_ok: bool = False


def _table_of(model: Any) -> Table:
    if isinstance(model, Table):
        return model
    table = mapper_for(model).local_table
    if not isinstance(table, Table):
        raise TypeError(f"{model!r} is not mapped to a table")
    return table


class ResourceStore:
    """Persistence façade binding one engine and one prepared notify statement."""

    def __init__(
        self,
        engine: AsyncEngine,
        *,
        notify_channel: str | None = None,
        owns_engine: bool = False,
    ) -> None:
        self._engine = engine
        self._sessions = build_sessionmaker(engine)
        self._owns_engine = owns_engine
        self._channel = notify_channel if notify_channel is not None else get_settings().notify_channel
        self._notify_stmt = self._prepare_notify()
        self._closed = False

    @classmethod
    async def open(
        cls,
        engine: AsyncEngine,
        *,
        notify_channel: str | None = None,
        owns_engine: bool = False,
    ) -> ResourceStore:
        """Build a store and check it against the server before handing it out.

        A connection is checked out and, on PostgreSQL, the notify statement is run
        once inside a transaction that is rolled back, so listeners receive nothing.
        An unreachable database or a statement the server rejects raises
        ``InitializationError``.
        """
        store = cls(engine, notify_channel=notify_channel, owns_engine=owns_engine)
        try:
            await store._verify()
        except InitializationError:
            await store.close()
            raise
        return store

    @classmethod
    async def from_settings(cls, settings: Settings | None = None) -> ResourceStore:
        # Build and own the engine so close() also releases the pool.
        settings = settings or get_settings()
        try:
            engine = build_engine(settings)
        except (SQLAlchemyError, ImportError) as exc:
            raise InitializationError(f"build engine: {exc}") from exc
        return await cls.open(engine, notify_channel=settings.notify_channel, owns_engine=True)

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    @property
    def notify_channel(self) -> str:
        return self._channel

    @property
    def closed(self) -> bool:
        return self._closed

    async def __aenter__(self) -> ResourceStore:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def _prepare_notify(self) -> TextClause | None:
        dialect = self._engine.dialect
        if dialect.name != "postgresql":
            # LISTEN/NOTIFY is PostgreSQL-only; notify() reports this instead of failing construction.
            logger.debug("notify_statement_skipped", extra={"dialect": dialect.name})
            return None
        if not self._channel:
            raise InitializationError("prepare notify statement: channel name is empty")
        return text(NOTIFY_SQL).bindparams(
            bindparam("channel", value=self._channel),
            bindparam("payload"),
        )

    async def _verify(self) -> None:
        try:
            async with self._engine.connect() as conn:
                if self._notify_stmt is not None:
                    # NOTIFY is delivered on commit only; the rollback below discards it.
                    await conn.execute(self._notify_stmt, {"payload": ""})
                await conn.rollback()
        except _DRIVER_ERRORS as exc:
            logger.warning("resource_store_open_failed", extra={"error": str(exc)})
            raise InitializationError(f"open resource store: {exc}") from exc
        logger.debug("resource_store_opened", extra={"dialect": self._engine.dialect.name})

    def _ensure_open(self) -> None:
        if self._closed:
            raise InitializationError("resource store is closed")

    def _failed(
        self, error_cls: type[DatabaseError], operation: str, resource: Any, exc: BaseException
    ) -> DatabaseError:
        table = table_name_of(resource)
        logger.warning(
            "resource_operation_failed",
            extra={"operation": operation, "table": table, "error": str(exc)},
        )
        return error_cls(f"{operation}({table}): {exc}")

    async def close(self) -> None:
        # Idempotent; owned engines are disposed so pooled connections close now.
        if self._closed:
            return
        self._closed = True
        self._notify_stmt = None
        if self._owns_engine:
            await self._engine.dispose()
        logger.debug("resource_store_closed", extra={"owns_engine": self._owns_engine})

    async def create_tables(
        self, models: Iterable[Any], raw_statements: Sequence[RawStatement] | None = None
    ) -> None:
        """Create missing tables for ``models`` and then run ``raw_statements`` in order.

        Everything happens in one transaction. Each raw statement runs inside its own
        savepoint, so a tolerated failure discards only that statement. Any other
        failure rolls back every table and statement of the call.
        """
        self._ensure_open()
        tables = sort_tables([_table_of(model) for model in models])
        try:
            async with self._engine.begin() as conn:
                for table in tables:
                    await conn.run_sync(table.create, checkfirst=True)
                for statement in raw_statements or ():
                    await self._run_raw_statement(conn, statement)
        except _DRIVER_ERRORS as exc:
            logger.warning("create_tables_failed", extra={"error": str(exc)})
            raise SchemaError(f"create_tables: {exc}") from exc
        logger.debug(
            "tables_created",
            extra={"tables": [table.name for table in tables], "raw_statements": len(raw_statements or ())},
        )

    async def _run_raw_statement(self, conn: AsyncConnection, statement: RawStatement) -> None:
        try:
            async with conn.begin_nested():
                await conn.exec_driver_sql(statement.sql)
        except _DRIVER_ERRORS as exc:
            if not statement.error_ok:
                raise
            logger.warning("raw_statement_failed_tolerated", extra={"sql": statement.sql, "error": str(exc)})

    async def create_resource(self, resource: R) -> R:
        """Insert one row and return the same instance with defaults populated."""
        self._ensure_open()
        mapper_for(resource)
        try:
            async with self._sessions.begin() as session:
                session.add(resource)
                await session.flush()
                await session.refresh(resource)
        except _DRIVER_ERRORS as exc:
            raise self._failed(WriteError, "create_resource", resource, exc) from exc
        logger.debug("resource_created", extra={"table": table_name_of(resource)})
        return resource

    async def get_resource(self, resource: R, show_deleted: bool, query_hook: QueryHook) -> R | None:
        """Select one row of the resource's table.

        The base query has no WHERE clause; ``query_hook`` runs after the soft-delete
        filter is set and is expected to narrow it, typically with ``where_pk``.
        """
        self._ensure_open()
        model = model_of(resource)
        stmt = apply_show_deleted(select(model), model, show_deleted)
        stmt = query_hook(stmt)
        try:
            async with self._sessions() as session:
                result = await session.execute(stmt)
                row = result.scalars().first()
        except _DRIVER_ERRORS as exc:
            raise self._failed(ReadError, "get_resource", resource, exc) from exc
        return row

    def _update_values(self, resource: Any, fields: Iterable[str]) -> dict[Any, Any]:
        table = table_name_of(resource)
        values: dict[Any, Any] = {}
        for name in fields:
            try:
                attribute = column_attribute(resource, name)
            except KeyError as exc:
                raise WriteError(f"update_resource({table}): unknown column {name!r}") from exc
            if attribute.key in IMMUTABLE_COLUMNS:
                raise WriteError(f"update_resource({table}): column {name!r} is immutable")
            values[attribute] = getattr(resource, attribute.key)
        try:
            values[column_attribute(resource, "update_time")] = utcnow()
        except KeyError:
            pass
        return values

    async def update_resource(
        self, resource: R, fields: Iterable[str], query_hook: QueryHook | None = None
    ) -> R | None:
        """Write ``fields`` (plus ``update_time``) of ``resource`` and return the updated row.

        ``query_hook`` supplies the row-targeting predicate. When it adds none, the
        update is scoped to the resource's primary key. The active-row filter is added
        after the hook, so soft-deleted rows never match and a hook cannot widen the
        update to them; bring a row back with ``undelete_resource`` first.
        """
        self._ensure_open()
        model = model_of(resource)
        try:
            values = self._update_values(resource, fields)
        except SQLAlchemyError as exc:
            raise self._failed(WriteError, "update_resource", resource, exc) from exc
        stmt = update(model).values(values).returning(model)
        if query_hook is not None:
            stmt = query_hook(stmt)
        if stmt.whereclause is None:
            stmt = stmt.where(primary_key_criteria(resource))
        stmt = apply_show_deleted(stmt, model, False)
        try:
            async with self._sessions.begin() as session:
                result = await session.execute(stmt)
                row = result.scalars().first()
        except _DRIVER_ERRORS as exc:
            raise self._failed(WriteError, "update_resource", resource, exc) from exc
        logger.debug("resource_updated", extra={"table": table_name_of(resource), "matched": row is not None})
        return row

    async def delete_resource(self, resource: R, query_hook: QueryHook | None = None) -> R | None:
        """Delete the row with the resource's primary key and return it as it was written.

        Models carrying a delete marker are soft-deleted (marker set, row kept); other
        models are removed with a native DELETE. Already-deleted rows match nothing, and
        the hook only narrows: a soft-delete model can never be removed physically
        through this call.
        """
        self._ensure_open()
        model = model_of(resource)
        marker = soft_delete_attribute(model)
        if marker is None:
            stmt = delete(model).where(primary_key_criteria(resource)).returning(model)
        else:
            stmt = (
                update(model)
                .where(primary_key_criteria(resource))
                .where(marker.is_(None))
                .values({marker: utcnow()})
                .returning(model)
            )
        if query_hook is not None:
            stmt = query_hook(stmt)
        try:
            async with self._sessions.begin() as session:
                result = await session.execute(stmt)
                row = result.scalars().first()
        except _DRIVER_ERRORS as exc:
            raise self._failed(WriteError, "delete_resource", resource, exc) from exc
        logger.debug(
            "resource_deleted",
            extra={"table": table_name_of(resource), "soft": marker is not None, "matched": row is not None},
        )
        return row

    async def undelete_resource(self, resource: R, query_hook: QueryHook | None = None) -> R | None:
        """Clear the delete marker of a soft-deleted row; active rows are left untouched."""
        self._ensure_open()
        model = model_of(resource)
        marker = soft_delete_attribute(model)
        if marker is None:
            raise WriteError(f"undelete_resource({table_name_of(resource)}): model has no soft-delete column")
        stmt = (
            update(model)
            .where(primary_key_criteria(resource))
            .where(marker.is_not(None))
            .values({marker: None})
            .returning(model)
        )
        if query_hook is not None:
            stmt = query_hook(stmt)
        try:
            async with self._sessions.begin() as session:
                result = await session.execute(stmt)
                row = result.scalars().first()
        except _DRIVER_ERRORS as exc:
            raise self._failed(WriteError, "undelete_resource", resource, exc) from exc
        logger.debug("resource_undeleted", extra={"table": table_name_of(resource), "matched": row is not None})
        return row

    async def notify(self, payload: str) -> None:
        """Publish ``payload`` on the store's channel; listeners see it once the transaction commits."""
        self._ensure_open()
        if self._notify_stmt is None:
            raise NotifyUnavailableError(
                f"notify({self._channel}): dialect {self._engine.dialect.name} has no LISTEN/NOTIFY"
            )
        try:
            async with self._engine.begin() as conn:
                await conn.execute(self._notify_stmt, {"payload": payload})
        except _DRIVER_ERRORS as exc:
            logger.warning("notify_failed", extra={"channel": self._channel, "error": str(exc)})
            raise WriteError(f"notify({self._channel}): {exc}") from exc
