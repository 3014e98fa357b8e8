"""
series_batch.services -- persistence and collaborator adapters.

Architecture: imports from series_batch.domain and series_batch.models.
Nothing here is imported by the domain layer.
"""

from series_batch.services.locks import BatchLockRegistry
from series_batch.services.materializer import (
    BookingMaterializer,
    MaterializeOutcome,
    MaterializeRequest,
    SqlBookingMaterializer,
)
from series_batch.services.notifications import (
    BookingNotifier,
    LoggingNotifier,
    NullNotifier,
)
from series_batch.services.repository import BatchRepository
from series_batch.services.series_service import SeriesService

__all__ = [
    "BatchLockRegistry",
    "BatchRepository",
    "BookingMaterializer",
    "BookingNotifier",
    "LoggingNotifier",
    "MaterializeOutcome",
    "MaterializeRequest",
    "NullNotifier",
    "SeriesService",
    "SqlBookingMaterializer",
]
