from __future__ import annotations


class ResourceSQLError(Exception):
    """Base error for resourcesql."""


class DatabaseError(ResourceSQLError):
    """Database layer failure."""


class InitializationError(DatabaseError):
    """Store construction failed or the store was already closed."""


class SchemaError(DatabaseError):
    """Table creation or a non-tolerated raw statement failed; nothing was applied."""


class WriteError(DatabaseError):
    """Insert, update, delete, undelete or notify failed; the transaction was rolled back."""


class ReadError(DatabaseError):
    """Select failed for a reason other than matching zero rows."""


class NotifyUnavailableError(DatabaseError):
    """The bound database dialect has no LISTEN/NOTIFY support."""
