from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, ClassVar, Protocol, runtime_checkable
from uuid import UUID, uuid4

from sqlalchemy import BigInteger, DateTime, Table, Uuid, and_, text
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.exc import NoInspectionAvailable
from sqlalchemy.orm import DeclarativeBase, InstrumentedAttribute, Mapped, Mapper, mapped_column
from sqlalchemy.sql.elements import ColumnElement


# Column.info flag marking the nullable timestamp that drives soft deletes.
SOFT_DELETE_INFO_KEY = "soft_delete"

# Envelope columns that must never be rewritten after insert.
IMMUTABLE_COLUMNS = frozenset({"id", "create_time"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


@runtime_checkable
class Resource(Protocol):
    """Anything persisted as one table row: a mapped class with a table and a primary key.

    ``__tablename__`` names the table and ``__mapper__.primary_key`` lists the key columns.
    """

    __tablename__: ClassVar[str]
    __table__: ClassVar[Table]
    __mapper__: ClassVar[Mapper[Any]]


@dataclass(frozen=True)
class CommonFields:
    # Detached snapshot of the envelope so callers never reach into mapped state.
    id: UUID | None
    create_time: datetime | None
    update_time: datetime | None
    delete_time: datetime | None
    version: int | None

    @property
    def is_deleted(self) -> bool:
        return self.delete_time is not None


class Common:
    """Envelope columns mixed into every resource table.

    ``delete_time`` is the soft-delete marker: rows where it is set are hidden from
    default reads and writes and are brought back only through the undelete path.
    ``version`` starts at 1 and is bumped by callers that want optimistic concurrency.
    """

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    create_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    update_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    delete_time: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, default=None, info={SOFT_DELETE_INFO_KEY: True}
    )
    version: Mapped[int] = mapped_column(BigInteger, default=1, server_default=text("1"), nullable=False)

    @property
    def common(self) -> CommonFields:
        return CommonFields(
            id=self.id,
            create_time=self.create_time,
            update_time=self.update_time,
            delete_time=self.delete_time,
            version=self.version,
        )

    @property
    def is_deleted(self) -> bool:
        return self.delete_time is not None


def mapper_for(resource: Any) -> Mapper[Any]:
    # Accept a mapped instance or a mapped class; anything else is a caller bug.
    try:
        inspected = sa_inspect(resource)
    except NoInspectionAvailable as exc:
        raise TypeError(f"{type(resource).__name__} is not a mapped resource") from exc
    if isinstance(inspected, Mapper):
        return inspected
    mapper = getattr(inspected, "mapper", None)
    if not isinstance(mapper, Mapper):
        raise TypeError(f"{type(resource).__name__} is not a mapped resource")
    return mapper


def model_of(resource: Any) -> type[Any]:
    return mapper_for(resource).class_


def table_name_of(resource: Any) -> str:
    return mapper_for(resource).persist_selectable.name


def soft_delete_attribute(resource: Any) -> InstrumentedAttribute[Any] | None:
    """Return the delete-marker attribute of a resource model, or None for hard-delete models."""
    mapper = mapper_for(resource)
    for prop in mapper.column_attrs:
        if any(column.info.get(SOFT_DELETE_INFO_KEY) for column in prop.columns):
            return getattr(mapper.class_, prop.key)
    return None


def column_attribute(resource: Any, name: str) -> InstrumentedAttribute[Any]:
    # Resolve a column by attribute key or by database column name.
    mapper = mapper_for(resource)
    for prop in mapper.column_attrs:
        if prop.key == name or any(getattr(column, "name", None) == name for column in prop.columns):
            return getattr(mapper.class_, prop.key)
    raise KeyError(f"{mapper.class_.__name__} has no column {name!r}")


def primary_key_criteria(resource: Any) -> ColumnElement[bool]:
    """Build ``pk_col = value`` predicates from a mapped instance."""
    mapper = mapper_for(resource)
    if isinstance(resource, type):
        raise TypeError("primary key criteria need a resource instance, not a class")
    identity = mapper.primary_key_from_instance(resource)
    if any(value is None for value in identity):
        raise ValueError(f"{mapper.class_.__name__} instance has no primary key value")
    return and_(*(column == value for column, value in zip(mapper.primary_key, identity)))
