"""
Injectable clocks.

Approval instants, invoice dates, cancellation stamps and audit
timestamps all come from a ``Clock`` handed to the service at
construction.  Core code never calls ``datetime.now()``.

Every clock returns timezone-aware UTC datetimes; local calendar dates are
derived by the caller in the batch's own zone.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone


def _require_aware(value: datetime) -> datetime:
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValueError(f"clock time must be timezone-aware, got {value!r}")
    return value.astimezone(timezone.utc)


class Clock(ABC):
    """Source of the current instant."""

    @abstractmethod
    def now(self) -> datetime:
        """Current instant, aware, in UTC."""


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """Frozen clock for tests and replays.

    Time only moves when ``advance``, ``advance_days`` or ``set_time`` is
    called, so repeated ``now()`` calls within one operation agree.
    """

    def __init__(self, start: datetime | None = None):
        self._current = _require_aware(
            start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        )

    def now(self) -> datetime:
        return self._current

    def set_time(self, value: datetime) -> None:
        self._current = _require_aware(value)

    def advance(self, seconds: int = 1) -> datetime:
        self._current += timedelta(seconds=seconds)
        return self._current

    def advance_days(self, days: int) -> datetime:
        self._current += timedelta(days=days)
        return self._current
