"""
series_batch.domain.types -- Pure frozen dataclasses for recurring series.

ZERO I/O.  Frozen dataclasses with enum status fields and tuples for
immutable collections.  State changes produce new instances via
``dataclasses.replace``; only the orchestrator persists them.

Weekday indices follow the booking UI convention: 0 = Sunday ... 6 = Saturday.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Union
from uuid import UUID
from zoneinfo import ZoneInfo


# =============================================================================
# Enums
# =============================================================================


class Frequency(str, Enum):
    """Recurrence unit of a series."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class SeriesStatus(str, Enum):
    """Series-level soft state."""

    ACTIVE = "active"
    CANCELLED = "cancelled"  # Halts further expansion; batches untouched


class BatchStatus(str, Enum):
    """Approval batch lifecycle status."""

    SCHEDULED = "scheduled"  # Awaiting administrator review
    PROCESSING = "processing"  # Approval in flight, bookings materializing
    COMPLETED = "completed"  # All visits materialized
    REJECTED = "rejected"  # Administrator declined the window
    FAILED = "failed"  # Materialization stopped partway

    @property
    def is_terminal(self) -> bool:
        return self in (BatchStatus.COMPLETED, BatchStatus.REJECTED, BatchStatus.FAILED)


class BatchAction(str, Enum):
    """Actions recorded against a batch."""

    APPROVE = "approve"
    RETRY = "retry"
    RESUME = "resume"
    COMPLETE = "complete"
    FAIL = "fail"
    REJECT = "reject"
    SNOOZE = "snooze"


# =============================================================================
# Schedules (tagged variant, chosen once at validation time)
# =============================================================================


@dataclass(frozen=True)
class DaySchedule:
    """One enabled weekday with its visit times in ascending order."""

    day_of_week: int
    visit_times: tuple[time, ...]


@dataclass(frozen=True)
class DaySchedules:
    """Weekly schedule with per-weekday visit times."""

    days: tuple[DaySchedule, ...]

    kind = "day_schedules"


@dataclass(frozen=True)
class SimpleDays:
    """Weekly schedule: the same visit times on every preferred weekday."""

    days: tuple[int, ...]
    visit_times: tuple[time, ...]

    kind = "simple_days"


@dataclass(frozen=True)
class CalendarCadence:
    """Daily or monthly schedule: visit times repeated once per step."""

    visit_times: tuple[time, ...]

    kind = "calendar"


WeeklySchedule = Union[DaySchedules, SimpleDays]
Schedule = Union[DaySchedules, SimpleDays, CalendarCadence]


# =============================================================================
# Series
# =============================================================================


@dataclass(frozen=True)
class DayScheduleRequest:
    """Raw per-weekday configuration as submitted by the booking form."""

    day_of_week: int
    enabled: bool = True
    visit_times: tuple[str, ...] = ()


@dataclass(frozen=True)
class SeriesRequest:
    """Administrative request to create a recurring series.

    Loosely typed on purpose: times are strings, days are raw ints.
    ``series_batch.domain.validation.build_series`` turns it into a
    ``RecurringSeries`` or raises ``ValidationError``.
    """

    client_id: str
    service_type: str
    number_of_visits: int
    frequency: str
    start_date: date
    preferred_time: str
    base_price: Decimal
    duration_minutes: int = 30
    preferred_days: tuple[int, ...] = ()
    visits_per_day: int = 1
    day_schedules: tuple[DayScheduleRequest, ...] = ()
    pets: tuple[str, ...] = ()
    preferred_sitter_id: str | None = None
    assigned_sitter_id: str | None = None
    special_instructions: str | None = None
    address: str | None = None
    time_zone: str | None = None


@dataclass(frozen=True)
class RecurringSeries:
    """Immutable recurring-visit agreement.

    Only ``assigned_sitter_id`` and ``status`` change after creation.
    """

    series_id: UUID
    client_id: str
    service_type: str
    number_of_visits: int
    frequency: Frequency
    start_date: date
    preferred_time: time
    time_zone: str
    schedule: Schedule
    duration_minutes: int
    base_price: Decimal
    total_price: Decimal
    visits_per_day: int = 1
    pets: tuple[str, ...] = ()
    preferred_sitter_id: str | None = None
    assigned_sitter_id: str | None = None
    special_instructions: str | None = None
    address: str | None = None
    status: SeriesStatus = SeriesStatus.ACTIVE
    created_at: datetime | None = None

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.time_zone)

    @property
    def sitter_id(self) -> str | None:
        """Sitter to put on materialized bookings."""
        return self.assigned_sitter_id or self.preferred_sitter_id


# =============================================================================
# Slots and batches
# =============================================================================


@dataclass(frozen=True)
class VisitSlot:
    """One dated occurrence produced by expansion. Never persisted alone."""

    series_id: UUID
    visit_number: int
    scheduled_date: datetime  # aware, in the series' time zone

    @property
    def local_date(self) -> date:
        return self.scheduled_date.date()


@dataclass(frozen=True)
class RecurringBatchVisit:
    """A visit embedded in a batch; ``booking_id`` is set once materialized."""

    visit_number: int
    scheduled_date: datetime
    booking_id: UUID | None = None

    @property
    def is_materialized(self) -> bool:
        return self.booking_id is not None


@dataclass(frozen=True)
class RecurringBatch:
    """Immutable snapshot of an approval batch.

    ``scheduled_for`` is the window start boundary, not the first visit.
    The batch occupies ``[scheduled_for, last_visit_date]``.
    """

    batch_id: UUID
    series_id: UUID
    client_id: str
    service_type: str
    batch_index: int
    status: BatchStatus
    scheduled_for: date
    time_zone: str
    visits: tuple[RecurringBatchVisit, ...]
    approval_date: datetime | None = None
    invoice_date: date | None = None
    invoice_due_date: date | None = None
    rejection_reason: str | None = None
    failure_reason: str | None = None
    buffer_days: int = 0
    claim_token: UUID | None = None  # set by the approval that owns a processing batch
    claimed_at: datetime | None = None
    version: int = 0

    @property
    def visit_count(self) -> int:
        return len(self.visits)

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.time_zone)

    @property
    def first_visit_date(self) -> date:
        return self.visits[0].scheduled_date.astimezone(self.tz).date()

    @property
    def last_visit_date(self) -> date:
        return self.visits[-1].scheduled_date.astimezone(self.tz).date()

    @property
    def materialized_count(self) -> int:
        return sum(1 for v in self.visits if v.is_materialized)

    @property
    def pending_count(self) -> int:
        return self.visit_count - self.materialized_count

    @property
    def booking_ids(self) -> tuple[UUID, ...]:
        return tuple(v.booking_id for v in self.visits if v.booking_id is not None)


@dataclass(frozen=True)
class InvoiceTiming:
    """Approval and invoice dates derived for a batch."""

    approval_date: datetime
    invoice_date: date
    invoice_due_date: date
    floor_applied: bool = False  # due date pushed to last visit + 1 day


# =============================================================================
# Results and queries
# =============================================================================


@dataclass(frozen=True)
class BatchResult:
    """Outcome of one orchestrator action on one batch.

    ``ok=False`` results only appear in bulk responses; single-batch
    operations raise instead.
    """

    batch_id: UUID
    action: BatchAction
    status: BatchStatus | None
    ok: bool = True
    already_applied: bool = False
    booking_ids: tuple[UUID, ...] = ()
    approval_date: datetime | None = None
    invoice_due_date: date | None = None
    scheduled_for: date | None = None
    materialized_count: int = 0
    pending_count: int = 0
    error_code: str | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class BatchFilter:
    """Filter for ``list_batches``. Unset fields do not constrain."""

    series_id: UUID | None = None
    client_id: str | None = None
    statuses: tuple[BatchStatus, ...] = ()
    scheduled_from: date | None = None
    scheduled_to: date | None = None
    limit: int | None = None


@dataclass(frozen=True)
class SeriesCoverage:
    """Read-time check that a series' batches account for every visit."""

    series_id: UUID
    number_of_visits: int
    batch_count: int
    batched_visits: int
    missing_visit_numbers: tuple[int, ...] = ()
    duplicate_visit_numbers: tuple[int, ...] = ()

    @property
    def is_complete(self) -> bool:
        return (
            self.batched_visits == self.number_of_visits
            and not self.missing_visit_numbers
            and not self.duplicate_visit_numbers
        )


# =============================================================================
# Bookings
# =============================================================================


@dataclass(frozen=True)
class SeriesMetadata:
    """Series attributes copied onto every materialized booking."""

    client_id: str
    service_type: str
    duration_minutes: int
    price: Decimal
    pets: tuple[str, ...] = ()
    sitter_id: str | None = None
    special_instructions: str | None = None
    address: str | None = None


@dataclass(frozen=True)
class BookingRecord:
    """A materialized booking for one visit slot."""

    booking_id: UUID
    series_id: UUID
    batch_id: UUID
    visit_number: int
    scheduled_date: datetime
    client_id: str
    service_type: str
    duration_minutes: int
    price: Decimal
    pets: tuple[str, ...] = ()
    sitter_id: str | None = None
    special_instructions: str | None = None
    address: str | None = None
    status: str = "approved"
    is_recurring: bool = True
    created_at: datetime | None = None


@dataclass(frozen=True)
class BatchEvent:
    """One audit-trail entry for a batch transition."""

    batch_id: UUID
    series_id: UUID
    action: BatchAction
    from_status: BatchStatus
    to_status: BatchStatus
    occurred_at: datetime
    actor_id: str | None = None
    detail: dict = field(default_factory=dict)
    sequence: int = 0  # 1-based position in the batch's trail, assigned on write
