"""
Typed exception hierarchy for the recurring booking scheduler.

Every error carries a class-level ``code`` (machine-readable, API-safe) and
structured attributes so callers can render a precise message without
parsing strings:

    try:
        orchestrator.snooze_batch(batch_id, days=5)
    except SnoozeConflictError as e:
        api_response(code=e.code, max_days=e.max_allowed_days)

Hierarchy::

    SeriesKernelError (base)
    |
    +-- ValidationError
    |
    +-- InvalidStateTransitionError
    |   +-- ApprovalInProgressError
    |
    +-- ConflictError
    |   +-- SnoozeConflictError
    |
    +-- MaterializationFailureError
    |
    +-- NotFoundError
    |   +-- BatchNotFoundError
    |   +-- SeriesNotFoundError
    |
    +-- SeriesCancelledError
    |
    +-- ConcurrencyError
        +-- OptimisticLockError

Nothing in the core retries on its own.  What a caller should do:

    ValidationError              fix the input
    InvalidStateTransitionError  re-read the batch; its status moved on
    ApprovalInProgressError      let the running approval finish; retry later
    SnoozeConflictError          snooze by at most ``max_allowed_days``
    MaterializationFailureError  approve again; finished visits are kept
    NotFoundError                check the identifier
    ConcurrencyError             retry the request
"""

from __future__ import annotations

from datetime import date, datetime


class SeriesKernelError(Exception):
    """
    Base exception for all scheduler errors.

    All subclasses must define a ``code`` class attribute.
    """

    code: str = "SERIES_KERNEL_ERROR"


class ValidationError(SeriesKernelError):
    """Input failed validation. Caller's fault; never retried."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid {field}: {reason}")


class InvalidStateTransitionError(SeriesKernelError):
    """An action was requested that the batch's current status forbids."""

    code: str = "INVALID_STATE_TRANSITION"

    def __init__(self, batch_id: str, current_status: str, requested_action: str):
        self.batch_id = batch_id
        self.current_status = current_status
        self.requested_action = requested_action
        super().__init__(
            f"Cannot {requested_action} batch {batch_id}: "
            f"batch is {current_status}"
        )


class ApprovalInProgressError(InvalidStateTransitionError):
    """Another approval holds the batch's claim and its lease is still live.

    ``lease_expires_at`` is when a stalled claim may be taken over; ``None``
    when the claim was lost rather than refused.
    """

    code: str = "APPROVAL_IN_PROGRESS"

    def __init__(
        self,
        batch_id: str,
        current_status: str = "processing",
        lease_expires_at: datetime | None = None,
    ):
        self.lease_expires_at = lease_expires_at
        super().__init__(batch_id, current_status, "approve")


# Window conflicts


class ConflictError(SeriesKernelError):
    """Base exception for date-window collisions."""

    code: str = "CONFLICT"


class SnoozeConflictError(ConflictError):
    """Snoozing would push a batch into the next batch's window."""

    code: str = "SNOOZE_CONFLICT"

    def __init__(
        self,
        batch_id: str,
        requested_days: int,
        conflicting_batch_id: str,
        conflicting_window_start: date,
        conflicting_window_end: date,
        max_allowed_days: int,
    ):
        self.batch_id = batch_id
        self.requested_days = requested_days
        self.conflicting_batch_id = conflicting_batch_id
        self.conflicting_window_start = conflicting_window_start
        self.conflicting_window_end = conflicting_window_end
        self.max_allowed_days = max_allowed_days
        super().__init__(
            f"Snoozing batch {batch_id} by {requested_days} day(s) overlaps "
            f"batch {conflicting_batch_id} "
            f"({conflicting_window_start.isoformat()} to "
            f"{conflicting_window_end.isoformat()}); "
            f"at most {max_allowed_days} day(s) allowed"
        )


class MaterializationFailureError(SeriesKernelError):
    """Approval failed partway through booking materialization.

    The batch is left ``failed``; re-invoking approve resumes by skipping
    visits that already have a booking.
    """

    code: str = "MATERIALIZATION_FAILURE"

    def __init__(
        self,
        batch_id: str,
        materialized_count: int,
        pending_count: int,
        cause: str,
    ):
        self.batch_id = batch_id
        self.materialized_count = materialized_count
        self.pending_count = pending_count
        self.cause = cause
        super().__init__(
            f"Materialization failed for batch {batch_id}: "
            f"{materialized_count} materialized, {pending_count} pending ({cause})"
        )


# Lookup failures


class NotFoundError(SeriesKernelError):
    """Base exception for unknown identifiers."""

    code: str = "NOT_FOUND"


class BatchNotFoundError(NotFoundError):
    """Batch with given ID was not found."""

    code: str = "BATCH_NOT_FOUND"

    def __init__(self, batch_id: str):
        self.batch_id = batch_id
        super().__init__(f"Batch not found: {batch_id}")


class SeriesNotFoundError(NotFoundError):
    """Series with given ID was not found."""

    code: str = "SERIES_NOT_FOUND"

    def __init__(self, series_id: str):
        self.series_id = series_id
        super().__init__(f"Recurring series not found: {series_id}")


class SeriesCancelledError(SeriesKernelError):
    """The series is cancelled; no further expansion is performed."""

    code: str = "SERIES_CANCELLED"

    def __init__(self, series_id: str):
        self.series_id = series_id
        super().__init__(f"Recurring series is cancelled: {series_id}")


# Concurrency


class ConcurrencyError(SeriesKernelError):
    code: str = "CONCURRENCY_ERROR"


class OptimisticLockError(ConcurrencyError):
    """A row changed between this request's read and its write."""

    code: str = "OPTIMISTIC_LOCK_CONFLICT"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"{entity_type} {entity_id} was updated concurrently; "
            "re-read it and retry"
        )
