"""
BatchRepository -- storage adapter for series, batches, events and bookings.

Contract:
    Wraps one SQLAlchemy session.  Reads return frozen DTOs; writes take
    DTOs.  ORM rows never leave this module.

Architecture: series_batch/services.  Imports from series_batch.models and
    series_batch.domain.types.

Invariants enforced:
    - ``save_batch`` refuses to write a snapshot whose ``version`` differs
      from the stored row (OptimisticLockError); the mapper's version
      counter catches writers that race between read and flush.
    - ``get_batch(for_update=True)`` issues SELECT ... FOR UPDATE, which
      serializes the short claim and finalize transactions on PostgreSQL.
      It does not span an approval; across processes the batch's
      ``claim_token`` and its lease keep a second approval out.

Non-goals:
    - Does NOT call ``session.commit()``; the caller owns transaction
      boundaries.
"""

from __future__ import annotations

from dataclasses import replace
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from series_kernel.exceptions import (
    BatchNotFoundError,
    OptimisticLockError,
    SeriesNotFoundError,
)
from series_kernel.logging_config import get_logger
from series_batch.domain.types import (
    BatchEvent,
    BatchFilter,
    BookingRecord,
    RecurringBatch,
    RecurringSeries,
)
from series_batch.models import (
    BatchEventModel,
    BookingModel,
    RecurringBatchModel,
    RecurringSeriesModel,
)

logger = get_logger("batch.repository")


class BatchRepository:
    """Typed persistence operations over a single session."""

    def __init__(self, session: Session):
        self._session = session

    @property
    def session(self) -> Session:
        return self._session

    # -------------------------------------------------------------------------
    # Series
    # -------------------------------------------------------------------------

    def find_series(self, series_id: UUID) -> RecurringSeries | None:
        model = self._session.get(RecurringSeriesModel, series_id)
        return model.to_dto() if model is not None else None

    def get_series(self, series_id: UUID) -> RecurringSeries:
        series = self.find_series(series_id)
        if series is None:
            raise SeriesNotFoundError(str(series_id))
        return series

    def add_series(self, series: RecurringSeries) -> RecurringSeries:
        model = RecurringSeriesModel.from_dto(series)
        self._session.add(model)
        self._session.flush()
        return model.to_dto()

    def update_series_fields(self, series_id: UUID, **fields) -> RecurringSeries:
        """Update the narrow set of series fields that may change."""
        model = self._session.get(RecurringSeriesModel, series_id, with_for_update=True)
        if model is None:
            raise SeriesNotFoundError(str(series_id))
        for name, value in fields.items():
            setattr(model, name, value)
        self._session.flush()
        return model.to_dto()

    # -------------------------------------------------------------------------
    # Batches
    # -------------------------------------------------------------------------

    def _batch_model(self, batch_id: UUID, for_update: bool = False) -> RecurringBatchModel:
        stmt = select(RecurringBatchModel).where(RecurringBatchModel.id == batch_id)
        if for_update:
            stmt = stmt.with_for_update()
        model = self._session.execute(stmt).scalar_one_or_none()
        if model is None:
            raise BatchNotFoundError(str(batch_id))
        return model

    def get_batch(self, batch_id: UUID, for_update: bool = False) -> RecurringBatch:
        return self._batch_model(batch_id, for_update=for_update).to_dto()

    def batches_for_series(self, series_id: UUID) -> list[RecurringBatch]:
        rows = self._session.execute(
            select(RecurringBatchModel)
            .where(RecurringBatchModel.series_id == series_id)
            .order_by(RecurringBatchModel.batch_index)
        ).scalars().all()
        return [row.to_dto() for row in rows]

    def get_next_batch(self, batch: RecurringBatch) -> RecurringBatch | None:
        """The batch that follows ``batch`` in its series, if any."""
        row = self._session.execute(
            select(RecurringBatchModel)
            .where(
                RecurringBatchModel.series_id == batch.series_id,
                RecurringBatchModel.batch_index > batch.batch_index,
            )
            .order_by(RecurringBatchModel.batch_index)
            .limit(1)
        ).scalar_one_or_none()
        return row.to_dto() if row is not None else None

    def list_batches(self, batch_filter: BatchFilter | None = None) -> list[RecurringBatch]:
        """Batches matching ``batch_filter``, ordered by scheduled_for then index."""
        f = batch_filter or BatchFilter()
        stmt = select(RecurringBatchModel)
        if f.series_id is not None:
            stmt = stmt.where(RecurringBatchModel.series_id == f.series_id)
        if f.client_id is not None:
            stmt = stmt.where(RecurringBatchModel.client_id == f.client_id)
        if f.statuses:
            stmt = stmt.where(RecurringBatchModel.status.in_([s.value for s in f.statuses]))
        if f.scheduled_from is not None:
            stmt = stmt.where(RecurringBatchModel.scheduled_for >= f.scheduled_from)
        if f.scheduled_to is not None:
            stmt = stmt.where(RecurringBatchModel.scheduled_for <= f.scheduled_to)
        stmt = stmt.order_by(
            RecurringBatchModel.scheduled_for,
            RecurringBatchModel.batch_index,
            RecurringBatchModel.id,
        )
        if f.limit is not None:
            stmt = stmt.limit(f.limit)
        return [row.to_dto() for row in self._session.execute(stmt).scalars().all()]

    def add_batches(self, batches: list[RecurringBatch]) -> list[RecurringBatch]:
        models = [RecurringBatchModel.from_dto(b) for b in batches]
        self._session.add_all(models)
        self._session.flush()
        return [m.to_dto() for m in models]

    def save_batch(self, batch: RecurringBatch) -> RecurringBatch:
        """Persist a successor snapshot and return it with its new version.

        Raises:
            BatchNotFoundError: No stored row for ``batch.batch_id``.
            OptimisticLockError: The stored row moved past ``batch.version``.
        """
        model = self._batch_model(batch.batch_id)
        if model.version != batch.version:
            logger.warning(
                "batch_version_conflict",
                extra={
                    "batch_id": str(batch.batch_id),
                    "expected_version": batch.version,
                    "stored_version": model.version,
                },
            )
            raise OptimisticLockError("RecurringBatch", str(batch.batch_id))
        model.apply_dto(batch)
        try:
            self._session.flush()
        except StaleDataError as exc:
            raise OptimisticLockError("RecurringBatch", str(batch.batch_id)) from exc
        return model.to_dto()

    # -------------------------------------------------------------------------
    # Audit events
    # -------------------------------------------------------------------------

    def record_event(self, event: BatchEvent) -> BatchEvent:
        """Append ``event`` as the next entry in its batch's trail.

        Callers hold the batch row, so the sequence read here cannot race.
        """
        last = self._session.execute(
            select(func.max(BatchEventModel.sequence))
            .where(BatchEventModel.batch_id == event.batch_id)
        ).scalar_one()
        model = BatchEventModel.from_dto(replace(event, sequence=(last or 0) + 1))
        self._session.add(model)
        self._session.flush()
        return model.to_dto()

    def events_for_batch(self, batch_id: UUID) -> list[BatchEvent]:
        rows = self._session.execute(
            select(BatchEventModel)
            .where(BatchEventModel.batch_id == batch_id)
            .order_by(BatchEventModel.sequence)
        ).scalars().all()
        return [row.to_dto() for row in rows]

    # -------------------------------------------------------------------------
    # Bookings
    # -------------------------------------------------------------------------

    def find_booking(self, series_id: UUID, visit_number: int) -> BookingRecord | None:
        row = self._session.execute(
            select(BookingModel).where(
                BookingModel.series_id == series_id,
                BookingModel.visit_number == visit_number,
            )
        ).scalar_one_or_none()
        return row.to_dto() if row is not None else None

    def add_booking(self, booking: BookingRecord) -> BookingRecord:
        model = BookingModel.from_dto(booking)
        self._session.add(model)
        self._session.flush()
        return model.to_dto()

    def bookings_for_series(self, series_id: UUID) -> list[BookingRecord]:
        rows = self._session.execute(
            select(BookingModel)
            .where(BookingModel.series_id == series_id)
            .order_by(BookingModel.visit_number)
        ).scalars().all()
        return [row.to_dto() for row in rows]
