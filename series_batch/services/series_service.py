"""
SeriesService -- recurring series lifecycle.

Contract:
    - ``create_series()`` validates a request, stores the series, expands
      it and stores its batches in ONE transaction.  Re-invoking with an
      existing ``series_id`` returns the stored series untouched.
    - ``generate_batches()`` is idempotent: when batches already exist for
      the series it returns them instead of grouping again.
    - ``cancel_series()`` is a soft state change.  Existing batches are not
      touched; each must be rejected individually.
    - ``check_coverage()`` verifies at read time that the series' batches
      account for every visit exactly once.

Architecture: series_batch/services.  Runs the pure domain pipeline
    (validation -> expander -> grouper) and persists through
    ``BatchRepository``.  All timestamps come from the injected Clock.
"""

from __future__ import annotations

from collections import Counter
from typing import Callable
from uuid import UUID, uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from series_config.schema import SchedulingConfig
from series_kernel.db.engine import session_scope
from series_kernel.domain.clock import Clock, SystemClock
from series_kernel.exceptions import SeriesCancelledError, ValidationError
from series_kernel.logging_config import LogContext, get_logger
from series_batch.domain.expander import expand_series
from series_batch.domain.grouper import group_visit_slots
from series_batch.domain.types import (
    BookingRecord,
    RecurringBatch,
    RecurringSeries,
    SeriesCoverage,
    SeriesRequest,
    SeriesStatus,
)
from series_batch.domain.validation import build_series
from series_batch.services.repository import BatchRepository

logger = get_logger("batch.series_service")


class SeriesService:
    """Creates series and their batches; answers series-level queries."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        config: SchedulingConfig | None = None,
        clock: Clock | None = None,
    ):
        self._session_factory = session_factory
        self._config = config or SchedulingConfig()
        self._clock = clock or SystemClock()

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    def create_series(
        self,
        request: SeriesRequest,
        series_id: UUID | None = None,
    ) -> RecurringSeries:
        """Validate, persist and batch a new series.

        Raises:
            ValidationError: The request is invalid.  Nothing is stored.
        """
        series_id = series_id or uuid4()
        series = build_series(
            request,
            series_id=series_id,
            config=self._config,
            created_at=self._clock.now(),
        )

        with LogContext.bind(series_id=series_id):
            try:
                with session_scope(self._session_factory) as session:
                    repo = BatchRepository(session)
                    existing = repo.find_series(series_id)
                    if existing is not None:
                        logger.info("series_already_exists")
                        return existing
                    stored = repo.add_series(series)
                    batches = self._group_and_store(repo, stored)
            except IntegrityError:
                # Lost a race with a concurrent create of the same id.
                with session_scope(self._session_factory) as session:
                    return BatchRepository(session).get_series(series_id)

            logger.info(
                "series_created",
                extra={
                    "client_id": stored.client_id,
                    "frequency": stored.frequency.value,
                    "number_of_visits": stored.number_of_visits,
                    "batch_count": len(batches),
                    "total_price": stored.total_price,
                },
            )
        return stored

    def generate_batches(self, series_id: UUID) -> list[RecurringBatch]:
        """Return the series' batches, grouping them first if none exist.

        Raises:
            SeriesNotFoundError: Unknown series.
            SeriesCancelledError: The series is cancelled.
        """
        with LogContext.bind(series_id=series_id):
            with session_scope(self._session_factory) as session:
                repo = BatchRepository(session)
                series = repo.get_series(series_id)
                if series.status is SeriesStatus.CANCELLED:
                    raise SeriesCancelledError(str(series_id))
                existing = repo.batches_for_series(series_id)
                if existing:
                    logger.debug("batches_already_generated", extra={"batch_count": len(existing)})
                    return existing
                return self._group_and_store(repo, series)

    def _group_and_store(
        self, repo: BatchRepository, series: RecurringSeries
    ) -> list[RecurringBatch]:
        slots = expand_series(series)
        batches = group_visit_slots(series, slots, self._config.window_days)
        stored = repo.add_batches(batches)
        logger.info(
            "batches_generated",
            extra={"visit_count": len(slots), "batch_count": len(stored)},
        )
        return stored

    # -------------------------------------------------------------------------
    # Mutations permitted after creation
    # -------------------------------------------------------------------------

    def assign_sitter(self, series_id: UUID, sitter_id: str) -> RecurringSeries:
        if not isinstance(sitter_id, str) or not sitter_id.strip():
            raise ValidationError("sitter_id", "must be a non-empty string")
        with session_scope(self._session_factory) as session:
            repo = BatchRepository(session)
            if repo.get_series(series_id).status is SeriesStatus.CANCELLED:
                raise SeriesCancelledError(str(series_id))
            series = repo.update_series_fields(series_id, assigned_sitter_id=sitter_id.strip())
        logger.info(
            "series_sitter_assigned",
            extra={"series_id": str(series_id), "sitter_id": series.assigned_sitter_id},
        )
        return series

    def cancel_series(self, series_id: UUID) -> RecurringSeries:
        """Mark a series cancelled. Idempotent; batches are left as they are."""
        with session_scope(self._session_factory) as session:
            repo = BatchRepository(session)
            series = repo.get_series(series_id)
            if series.status is SeriesStatus.CANCELLED:
                return series
            series = repo.update_series_fields(
                series_id,
                status=SeriesStatus.CANCELLED.value,
                cancelled_at=self._clock.now(),
            )
        logger.info("series_cancelled", extra={"series_id": str(series_id)})
        return series

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_series(self, series_id: UUID) -> RecurringSeries:
        with session_scope(self._session_factory) as session:
            return BatchRepository(session).get_series(series_id)

    def get_series_batches(self, series_id: UUID) -> list[RecurringBatch]:
        with session_scope(self._session_factory) as session:
            repo = BatchRepository(session)
            repo.get_series(series_id)
            return repo.batches_for_series(series_id)

    def get_series_bookings(self, series_id: UUID) -> list[BookingRecord]:
        with session_scope(self._session_factory) as session:
            repo = BatchRepository(session)
            repo.get_series(series_id)
            return repo.bookings_for_series(series_id)

    def check_coverage(self, series_id: UUID) -> SeriesCoverage:
        """Compare stored batches against the series' visit count."""
        with session_scope(self._session_factory) as session:
            repo = BatchRepository(session)
            series = repo.get_series(series_id)
            batches = repo.batches_for_series(series_id)

        counts = Counter(v.visit_number for b in batches for v in b.visits)
        expected = range(1, series.number_of_visits + 1)
        coverage = SeriesCoverage(
            series_id=series_id,
            number_of_visits=series.number_of_visits,
            batch_count=len(batches),
            batched_visits=sum(b.visit_count for b in batches),
            missing_visit_numbers=tuple(n for n in expected if n not in counts),
            duplicate_visit_numbers=tuple(sorted(n for n, c in counts.items() if c > 1)),
        )
        if not coverage.is_complete:
            logger.warning(
                "series_coverage_incomplete",
                extra={
                    "series_id": str(series_id),
                    "batched_visits": coverage.batched_visits,
                    "number_of_visits": coverage.number_of_visits,
                    "missing": list(coverage.missing_visit_numbers),
                    "duplicates": list(coverage.duplicate_visit_numbers),
                },
            )
        return coverage
