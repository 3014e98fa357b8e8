"""
ORM model for the batch audit trail.

Append-only: one row per transition (approve, retry/resume, complete,
fail, reject, snooze).  Rows are never updated or deleted.  ``sequence``
numbers a batch's events 1..n and is UNIQUE per batch.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from series_kernel.db.base import TrackedBase, UUIDString, as_utc, from_storage

if TYPE_CHECKING:
    from series_batch.domain.types import BatchEvent


class BatchEventModel(TrackedBase):
    """Audit record of one batch status transition."""

    __tablename__ = "recurring_batch_events"

    __table_args__ = (
        UniqueConstraint("batch_id", "sequence", name="uq_recurring_batch_events_seq"),
        Index("ix_recurring_batch_events_batch", "batch_id", "occurred_at"),
    )

    batch_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("recurring_batches.id"),
        nullable=False,
    )
    series_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    from_status: Mapped[str] = mapped_column(String(20), nullable=False)
    to_status: Mapped[str] = mapped_column(String(20), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    actor_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    detail: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    def to_dto(self) -> BatchEvent:
        from series_batch.domain.types import BatchAction, BatchEvent, BatchStatus

        return BatchEvent(
            batch_id=self.batch_id,
            series_id=self.series_id,
            action=BatchAction(self.action),
            from_status=BatchStatus(self.from_status),
            to_status=BatchStatus(self.to_status),
            occurred_at=from_storage(self.occurred_at),
            actor_id=self.actor_id,
            detail=dict(self.detail or {}),
            sequence=self.sequence,
        )

    @classmethod
    def from_dto(cls, dto: BatchEvent) -> BatchEventModel:
        return cls(
            batch_id=dto.batch_id,
            series_id=dto.series_id,
            sequence=dto.sequence,
            action=dto.action.value,
            from_status=dto.from_status.value,
            to_status=dto.to_status.value,
            occurred_at=as_utc(dto.occurred_at),
            actor_id=dto.actor_id,
            detail=dict(dto.detail) or None,
        )
