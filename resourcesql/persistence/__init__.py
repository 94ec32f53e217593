from __future__ import annotations

# Re-export the persistence surface for centralized imports.

from resourcesql.persistence.hooks import (
    QueryHook,
    apply_show_deleted,
    chain,
    expect_version,
    order_by,
    where,
    where_pk,
)
from resourcesql.persistence.store import RawStatement, ResourceStore

__all__ = [
    "ResourceStore",
    "RawStatement",
    "QueryHook",
    "apply_show_deleted",
    "chain",
    "expect_version",
    "order_by",
    "where",
    "where_pk",
]
