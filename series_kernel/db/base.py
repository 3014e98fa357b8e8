"""
Declarative base for the scheduler's tables.

Every mapped class gets a ``uuid4`` primary key named ``id`` stored as
text, so the same schema runs on SQLite and PostgreSQL.  Prices annotated
as ``Decimal`` map to ``Numeric(12, 2)``; datetimes are stored with a zone.

SQLite drops the zone on the way back, which is why models pass stored
timestamps through ``from_storage`` before handing them to domain code.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import ClassVar
from uuid import UUID, uuid4

from sqlalchemy import DateTime, Numeric, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class UUIDString(TypeDecorator):
    """``uuid.UUID`` in Python, 36-character text in the database."""

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return None if value is None else str(UUID(str(value)))

    def process_result_value(self, value, dialect):
        return None if value is None else UUID(value)


def as_utc(value: datetime | None) -> datetime | None:
    """Convert an aware datetime to UTC before it is written."""
    if value is None:
        return None
    if value.tzinfo is None:
        raise ValueError(f"naive datetime cannot be stored: {value!r}")
    return value.astimezone(timezone.utc)


def from_storage(value: datetime | None) -> datetime | None:
    """Stored timestamps are UTC; put the zone back when the driver dropped it."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class Base(DeclarativeBase):
    type_annotation_map: ClassVar[dict] = {
        UUID: UUIDString(),
        Decimal: Numeric(12, 2),
        datetime: DateTime(timezone=True),
    }

    id: Mapped[UUID] = mapped_column(UUIDString(), primary_key=True, default=uuid4)


class TrackedBase(Base):
    """Adds row-level ``created_at``/``updated_at`` stamped by the database."""

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(), onupdate=func.now()
    )
