"""
ORM model for approval batches.

Contract:
    ``RecurringBatchModel`` persists one batch with its visits embedded as a
    JSON list (visits never exist apart from their batch).  ``to_dto()`` /
    ``from_dto()`` round-trip; ``apply_dto()`` copies the mutable fields of
    a successor snapshot onto a loaded row.

Invariants enforced:
    - ``(series_id, batch_index)`` is UNIQUE, so concurrent series creation
      cannot store the same window twice.
    - ``version`` is the mapper's version counter; a write against a stale
      row fails with ``StaleDataError``.
    - Secondary indexes on ``series_id``, ``status`` and
      ``(status, scheduled_for)`` back the approval queue listing.
    - Visit datetimes are stored as ISO-8601 with their UTC offset.
    - ``claim_token``/``claimed_at`` identify the approval that owns a
      ``processing`` batch; both are cleared when it finishes.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from series_kernel.db.base import TrackedBase, UUIDString, as_utc, from_storage

if TYPE_CHECKING:
    from series_batch.domain.types import RecurringBatch, RecurringBatchVisit


def visits_to_json(visits: tuple[RecurringBatchVisit, ...]) -> list[dict]:
    return [
        {
            "visit_number": v.visit_number,
            "scheduled_date": v.scheduled_date.isoformat(),
            "booking_id": str(v.booking_id) if v.booking_id is not None else None,
        }
        for v in visits
    ]


def visits_from_json(data: Any) -> tuple[RecurringBatchVisit, ...]:
    from series_batch.domain.types import RecurringBatchVisit

    if not isinstance(data, list):
        raise ValueError(f"stored visits must be a list, got {type(data).__name__}")
    visits = []
    for item in data:
        scheduled = datetime.fromisoformat(item["scheduled_date"])
        if scheduled.tzinfo is None:
            raise ValueError(f"stored visit date has no UTC offset: {item['scheduled_date']!r}")
        booking_id = item.get("booking_id")
        visits.append(
            RecurringBatchVisit(
                visit_number=int(item["visit_number"]),
                scheduled_date=scheduled,
                booking_id=UUID(booking_id) if booking_id else None,
            )
        )
    return tuple(visits)


class RecurringBatchModel(TrackedBase):
    """Persistent approval batch with embedded visits."""

    __tablename__ = "recurring_batches"

    __table_args__ = (
        UniqueConstraint("series_id", "batch_index", name="uq_recurring_batches_series_index"),
        Index("ix_recurring_batches_series", "series_id"),
        Index("ix_recurring_batches_status", "status"),
        Index("ix_recurring_batches_status_scheduled", "status", "scheduled_for"),
    )

    series_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("recurring_series.id"),
        nullable=False,
    )
    client_id: Mapped[str] = mapped_column(String(100), nullable=False)
    service_type: Mapped[str] = mapped_column(String(100), nullable=False)
    batch_index: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    scheduled_for: Mapped[date] = mapped_column(Date, nullable=False)
    time_zone: Mapped[str] = mapped_column(String(64), nullable=False)
    visits: Mapped[list] = mapped_column(JSON, nullable=False)
    visit_count: Mapped[int] = mapped_column(Integer, nullable=False)
    materialized_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    pending_count: Mapped[int] = mapped_column(Integer, nullable=False)
    approval_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    invoice_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    invoice_due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    buffer_days: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    claim_token: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def to_dto(self) -> RecurringBatch:
        from series_batch.domain.types import BatchStatus, RecurringBatch

        return RecurringBatch(
            batch_id=self.id,
            series_id=self.series_id,
            client_id=self.client_id,
            service_type=self.service_type,
            batch_index=self.batch_index,
            status=BatchStatus(self.status),
            scheduled_for=self.scheduled_for,
            time_zone=self.time_zone,
            visits=visits_from_json(self.visits),
            approval_date=from_storage(self.approval_date),
            invoice_date=self.invoice_date,
            invoice_due_date=self.invoice_due_date,
            rejection_reason=self.rejection_reason,
            failure_reason=self.failure_reason,
            buffer_days=self.buffer_days,
            claim_token=self.claim_token,
            claimed_at=from_storage(self.claimed_at),
            version=self.version,
        )

    @classmethod
    def from_dto(cls, dto: RecurringBatch) -> RecurringBatchModel:
        model = cls(
            id=dto.batch_id,
            series_id=dto.series_id,
            client_id=dto.client_id,
            service_type=dto.service_type,
            batch_index=dto.batch_index,
        )
        model.apply_dto(dto)
        return model

    def apply_dto(self, dto: RecurringBatch) -> None:
        """Copy the mutable fields of ``dto`` onto this row."""
        self.status = dto.status.value
        self.scheduled_for = dto.scheduled_for
        self.time_zone = dto.time_zone
        self.visits = visits_to_json(dto.visits)
        self.visit_count = dto.visit_count
        self.materialized_count = dto.materialized_count
        self.pending_count = dto.pending_count
        self.approval_date = as_utc(dto.approval_date)
        self.invoice_date = dto.invoice_date
        self.invoice_due_date = dto.invoice_due_date
        self.rejection_reason = dto.rejection_reason
        self.failure_reason = dto.failure_reason
        self.buffer_days = dto.buffer_days
        self.claim_token = dto.claim_token
        self.claimed_at = as_utc(dto.claimed_at)
