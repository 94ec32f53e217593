from __future__ import annotations

from typing import Any, Callable, Union

from sqlalchemy import Delete, Select, Update
from sqlalchemy.sql.elements import ColumnElement

from resourcesql.domain.models import column_attribute, primary_key_criteria, soft_delete_attribute


Statement = Union[Select, Update, Delete]

# A hook receives the statement built so far and returns the statement to execute.
# Statements are generative, so hooks build a new one instead of mutating in place;
# they never see a session and cannot run I/O.
QueryHook = Callable[[Statement], Statement]


def apply_show_deleted(stmt: Statement, model: Any, show_deleted: bool) -> Statement:
    """Hide soft-deleted rows unless ``show_deleted`` is set.

    Models without a delete marker have nothing to hide and pass through unchanged.
    """
    marker = soft_delete_attribute(model)
    if marker is None or show_deleted:
        return stmt
    return stmt.where(marker.is_(None))


def where(*criteria: ColumnElement[bool]) -> QueryHook:
    def hook(stmt: Statement) -> Statement:
        return stmt.where(*criteria)

    return hook


def where_pk(resource: Any) -> QueryHook:
    # Capture the key now so later edits to the instance cannot retarget the query.
    return where(primary_key_criteria(resource))


def expect_version(resource: Any, version: int | None = None) -> QueryHook:
    """Optimistic concurrency check on the envelope ``version`` column.

    Matches only the resource's own row, and only while it is still at ``version``
    (defaults to the instance's current value). UPDATE statements also bump the
    column, so a stale writer matches zero rows.
    """
    identity = primary_key_criteria(resource)
    column = column_attribute(resource, "version")
    expected = version if version is not None else getattr(resource, "version")
    if expected is None:
        raise ValueError("expect_version needs a version to compare against")

    def hook(stmt: Statement) -> Statement:
        stmt = stmt.where(identity, column == expected)
        if isinstance(stmt, Update):
            stmt = stmt.values({column: column + 1})
        return stmt

    return hook


def order_by(*clauses: Any) -> QueryHook:
    def hook(stmt: Statement) -> Statement:
        if not isinstance(stmt, Select):
            raise TypeError("order_by only applies to SELECT statements")
        return stmt.order_by(*clauses)

    return hook


def chain(*hooks: QueryHook | None) -> QueryHook:
    # Apply hooks left to right; None entries are skipped so optional hooks compose cleanly.
    active = [hook for hook in hooks if hook is not None]

    def hook(stmt: Statement) -> Statement:
        for step in active:
            stmt = step(stmt)
        return stmt

    return hook
