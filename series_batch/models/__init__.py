"""
series_batch.models -- ORM models for series, batches, events and bookings.

Architecture: series_batch/models. Imports from series_kernel.db.base only.
These classes are the single strict deserialization boundary; services
hand DTOs to the domain, never rows.
"""

from series_batch.models.bookings import BookingModel
from series_batch.models.recurring_batch_events import BatchEventModel
from series_batch.models.recurring_batches import RecurringBatchModel
from series_batch.models.recurring_series import RecurringSeriesModel


def import_all_orm_models() -> tuple[type, ...]:
    """Return every mapped class so ``Base.metadata`` is fully populated."""
    return (
        RecurringSeriesModel,
        RecurringBatchModel,
        BatchEventModel,
        BookingModel,
    )


__all__ = [
    "BatchEventModel",
    "BookingModel",
    "RecurringBatchModel",
    "RecurringSeriesModel",
    "import_all_orm_models",
]
