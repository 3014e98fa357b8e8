"""
ORM model for materialized bookings.

Invariants enforced:
    - ``(series_id, visit_number)`` is UNIQUE: one booking per visit slot no
      matter how many times its batch passes through ``processing``.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from series_kernel.db.base import TrackedBase, UUIDString, as_utc, from_storage

if TYPE_CHECKING:
    from series_batch.domain.types import BookingRecord


class BookingModel(TrackedBase):
    """One billable visit created from an approved batch."""

    __tablename__ = "bookings"

    __table_args__ = (
        UniqueConstraint("series_id", "visit_number", name="uq_bookings_series_visit"),
        Index("ix_bookings_batch", "batch_id"),
        Index("ix_bookings_client_date", "client_id", "scheduled_date"),
    )

    series_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    batch_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    visit_number: Mapped[int] = mapped_column(Integer, nullable=False)
    scheduled_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    client_id: Mapped[str] = mapped_column(String(100), nullable=False)
    service_type: Mapped[str] = mapped_column(String(100), nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    price: Mapped[Decimal] = mapped_column(nullable=False)
    pets: Mapped[list | None] = mapped_column(JSON, nullable=True)
    sitter_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    special_instructions: Mapped[str | None] = mapped_column(Text, nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def to_dto(self) -> BookingRecord:
        from series_batch.domain.types import BookingRecord

        return BookingRecord(
            booking_id=self.id,
            series_id=self.series_id,
            batch_id=self.batch_id,
            visit_number=self.visit_number,
            scheduled_date=from_storage(self.scheduled_date),
            client_id=self.client_id,
            service_type=self.service_type,
            duration_minutes=self.duration_minutes,
            price=Decimal(self.price),
            pets=tuple(self.pets or ()),
            sitter_id=self.sitter_id,
            special_instructions=self.special_instructions,
            address=self.address,
            status=self.status,
            is_recurring=self.is_recurring,
            created_at=from_storage(self.created_at),
        )

    @classmethod
    def from_dto(cls, dto: BookingRecord) -> BookingModel:
        model = cls(
            id=dto.booking_id,
            series_id=dto.series_id,
            batch_id=dto.batch_id,
            visit_number=dto.visit_number,
            scheduled_date=as_utc(dto.scheduled_date),
            client_id=dto.client_id,
            service_type=dto.service_type,
            duration_minutes=dto.duration_minutes,
            price=dto.price,
            pets=list(dto.pets) or None,
            sitter_id=dto.sitter_id,
            special_instructions=dto.special_instructions,
            address=dto.address,
            status=dto.status,
            is_recurring=dto.is_recurring,
        )
        if dto.created_at is not None:
            model.created_at = as_utc(dto.created_at)
            model.updated_at = as_utc(dto.created_at)
        return model
