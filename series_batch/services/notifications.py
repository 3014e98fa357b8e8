"""
Client notification port.

Notifications are fire-and-forget: the orchestrator calls
``notify_bookings_created`` after a batch completes and logs any exception
as ``notification_failed`` without touching the approval result.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from series_kernel.logging_config import get_logger
from series_batch.domain.types import RecurringBatch

logger = get_logger("batch.notifications")


@runtime_checkable
class BookingNotifier(Protocol):
    def notify_bookings_created(self, batch: RecurringBatch) -> None:
        ...


class LoggingNotifier:
    """Records the notification as a structured log line."""

    def notify_bookings_created(self, batch: RecurringBatch) -> None:
        logger.info(
            "client_notified_bookings_created",
            extra={
                "client_id": batch.client_id,
                "series_id": str(batch.series_id),
                "batch_id": str(batch.batch_id),
                "booking_count": len(batch.booking_ids),
            },
        )


class NullNotifier:
    def notify_bookings_created(self, batch: RecurringBatch) -> None:
        return None
