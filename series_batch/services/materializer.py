"""
Booking Materializer -- outbound port that turns visits into bookings.

Contract:
    ``BookingMaterializer.materialize(request)`` creates the booking for one
    ``(series_id, visit_number)`` or reports that it already exists.  The
    orchestrator treats "already exists" as success.

Architecture: series_batch/services.  ``SqlBookingMaterializer`` is the
    default implementation over the ``bookings`` table; other deployments
    plug in their own object satisfying the protocol.

Invariants enforced:
    - One booking per ``(series_id, visit_number)``: booking ids are
      derived from that key and the table carries a UNIQUE constraint, so a
      losing concurrent insert re-reads the winner's row.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Protocol, runtime_checkable
from uuid import UUID, uuid5

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from series_kernel.domain.clock import Clock, SystemClock
from series_kernel.logging_config import get_logger
from series_batch.domain.types import BookingRecord, SeriesMetadata
from series_batch.services.repository import BatchRepository

logger = get_logger("batch.materializer")


@dataclass(frozen=True)
class MaterializeRequest:
    """Everything needed to create the booking for one visit."""

    series_id: UUID
    batch_id: UUID
    visit_number: int
    scheduled_date: datetime
    metadata: SeriesMetadata


@dataclass(frozen=True)
class MaterializeOutcome:
    booking_id: UUID
    already_existed: bool = False


@runtime_checkable
class BookingMaterializer(Protocol):
    """Creates bookings. Must be idempotent per ``(series_id, visit_number)``."""

    def materialize(self, request: MaterializeRequest) -> MaterializeOutcome:
        ...


def booking_id_for(series_id: UUID, visit_number: int) -> UUID:
    """Deterministic booking identifier for a visit slot."""
    return uuid5(series_id, f"visit-{visit_number}")


class SqlBookingMaterializer:
    """Writes bookings to the ``bookings`` table, one transaction per visit.

    Each visit commits on its own so a later failure in the same batch
    leaves earlier bookings in place for the resume path to skip.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        clock: Clock | None = None,
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()

    def materialize(self, request: MaterializeRequest) -> MaterializeOutcome:
        with self._session_factory() as session:
            repo = BatchRepository(session)
            existing = repo.find_booking(request.series_id, request.visit_number)
            if existing is not None:
                return MaterializeOutcome(existing.booking_id, already_existed=True)

            meta = request.metadata
            booking = BookingRecord(
                booking_id=booking_id_for(request.series_id, request.visit_number),
                series_id=request.series_id,
                batch_id=request.batch_id,
                visit_number=request.visit_number,
                scheduled_date=request.scheduled_date,
                client_id=meta.client_id,
                service_type=meta.service_type,
                duration_minutes=meta.duration_minutes,
                price=meta.price,
                pets=meta.pets,
                sitter_id=meta.sitter_id,
                special_instructions=meta.special_instructions,
                address=meta.address,
                created_at=self._clock.now(),
            )
            try:
                repo.add_booking(booking)
                session.commit()
            except IntegrityError:
                session.rollback()
                existing = repo.find_booking(request.series_id, request.visit_number)
                if existing is None:
                    raise
                logger.info(
                    "booking_already_materialized",
                    extra={
                        "series_id": str(request.series_id),
                        "visit_number": request.visit_number,
                    },
                )
                return MaterializeOutcome(existing.booking_id, already_existed=True)

        logger.info(
            "booking_materialized",
            extra={
                "series_id": str(request.series_id),
                "visit_number": request.visit_number,
                "booking_id": str(booking.booking_id),
            },
        )
        return MaterializeOutcome(booking.booking_id)
