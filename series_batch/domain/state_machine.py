"""
Batch State Machine -- pure lifecycle transitions for approval batches.

Responsibility
--------------
Decide whether an action is legal for a batch's current status and produce
the successor snapshot.  Every function takes a ``RecurringBatch`` and
returns a new one (``dataclasses.replace``); persistence, locking and
booking materialization belong to the orchestrator.

Lifecycle
---------
::

    scheduled --approve--> processing --complete--> completed
        |                      |
        |                      +--fail--> failed --retry--> processing
        +--reject--> rejected
        +--snooze--> scheduled   (dates shift, status does not)

``completed`` and ``rejected`` are terminal with no way out.  ``failed`` is
terminal for every action except ``retry``, which is only offered when the
``retry_failed_batches`` flag is on.  A crash can strand a batch in
``processing``; ``resume`` re-enters materialization under the same flag
once the stranded claim's lease has run out.

Invariants enforced
-------------------
* Re-approving a ``completed`` batch is a no-op, never an error.
* A rejected batch is never approved later.
* A ``processing`` batch belongs to the approval whose ``claim_token`` it
  records; a second approval is refused until that claim's lease ends.
* Reject requires a non-empty reason.
* Snooze is 1..max days and never pushes a batch's last visit onto or past
  the next batch's ``scheduled_for``.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta
from enum import Enum
from uuid import UUID, uuid4

from series_kernel.domain.workflow import Guard, Transition, Workflow
from series_kernel.exceptions import (
    ApprovalInProgressError,
    InvalidStateTransitionError,
    SnoozeConflictError,
    ValidationError,
)
from series_batch.domain.invoice_timing import compute_invoice_timing
from series_batch.domain.types import (
    BatchAction,
    BatchStatus,
    RecurringBatch,
    RecurringBatchVisit,
)

# =============================================================================
# Workflow declaration
# =============================================================================

_S = BatchStatus
_A = BatchAction

REASON_REQUIRED = Guard("reason_required", "Rejection carries a non-empty reason")
SNOOZE_WINDOW_FREE = Guard(
    "snooze_window_free",
    "Shifted window ends before the next batch's window starts",
)
ALL_VISITS_MATERIALIZED = Guard(
    "all_visits_materialized", "Every visit in the batch has a booking"
)
RETRY_ENABLED = Guard("retry_enabled", "retry_failed_batches flag is on")
CLAIM_LEASE_EXPIRED = Guard(
    "claim_lease_expired",
    "retry_failed_batches flag is on and the stranded claim's lease has run out",
)

BATCH_WORKFLOW = Workflow(
    name="recurring_batch",
    description="Administrator review of one window of recurring visits",
    initial_state=_S.SCHEDULED.value,
    states=tuple(s.value for s in BatchStatus),
    transitions=(
        Transition(_S.SCHEDULED.value, _S.PROCESSING.value, _A.APPROVE.value),
        Transition(_S.SCHEDULED.value, _S.REJECTED.value, _A.REJECT.value, REASON_REQUIRED),
        Transition(_S.SCHEDULED.value, _S.SCHEDULED.value, _A.SNOOZE.value, SNOOZE_WINDOW_FREE),
        Transition(
            _S.PROCESSING.value, _S.COMPLETED.value, _A.COMPLETE.value, ALL_VISITS_MATERIALIZED
        ),
        Transition(_S.PROCESSING.value, _S.FAILED.value, _A.FAIL.value),
        Transition(
            _S.PROCESSING.value, _S.PROCESSING.value, _A.RESUME.value, CLAIM_LEASE_EXPIRED
        ),
        Transition(_S.FAILED.value, _S.PROCESSING.value, _A.RETRY.value, RETRY_ENABLED),
    ),
    terminal_states=(_S.COMPLETED.value, _S.REJECTED.value),
)


def _transition(batch: RecurringBatch, action: BatchAction) -> BatchStatus:
    t = BATCH_WORKFLOW.find_transition(batch.status.value, action.value)
    if t is None:
        raise InvalidStateTransitionError(
            str(batch.batch_id), batch.status.value, action.value
        )
    return BatchStatus(t.to_state)


# =============================================================================
# Approval
# =============================================================================


class ApprovalPlan(str, Enum):
    """What an approve request does given the batch's current status."""

    ALREADY_COMPLETED = "already_completed"
    START = "start"
    RESUME = "resume"


DEFAULT_APPROVAL_LEASE_SECONDS = 900


def claim_expires_at(batch: RecurringBatch, lease_seconds: int) -> datetime | None:
    if batch.claimed_at is None:
        return None
    return batch.claimed_at + timedelta(seconds=lease_seconds)


def plan_approval(
    batch: RecurringBatch,
    retry_enabled: bool,
    now: datetime | None = None,
    lease_seconds: int = DEFAULT_APPROVAL_LEASE_SECONDS,
) -> ApprovalPlan:
    """Classify an approve request.

    A ``processing`` batch is resumed only when its claim is missing or
    older than ``lease_seconds`` at ``now``.  Without ``now`` any recorded
    claim counts as live.

    Raises:
        ApprovalInProgressError: Another approval's claim is still live.
        InvalidStateTransitionError: Batch is rejected, or failed/processing
            while retries are disabled.
    """
    if batch.status is BatchStatus.COMPLETED:
        return ApprovalPlan.ALREADY_COMPLETED
    if batch.status is BatchStatus.SCHEDULED:
        return ApprovalPlan.START
    if batch.status in (BatchStatus.FAILED, BatchStatus.PROCESSING) and retry_enabled:
        if batch.status is BatchStatus.PROCESSING:
            expires = claim_expires_at(batch, lease_seconds)
            if expires is not None and (now is None or now < expires):
                raise ApprovalInProgressError(
                    str(batch.batch_id), batch.status.value, lease_expires_at=expires,
                )
        return ApprovalPlan.RESUME
    raise InvalidStateTransitionError(
        str(batch.batch_id), batch.status.value, BatchAction.APPROVE.value
    )


def begin_approval(
    batch: RecurringBatch,
    now: datetime,
    grace_period_days: int,
    retry_enabled: bool = False,
    claim_token: UUID | None = None,
    lease_seconds: int = DEFAULT_APPROVAL_LEASE_SECONDS,
) -> RecurringBatch:
    """Move ``batch`` into ``processing`` under a fresh claim.

    A fresh approval stamps the approval and invoice dates.  A resumed
    approval keeps the dates from the first attempt and clears the
    previous failure reason.  Either way the batch records
    ``claim_token`` (a new one when omitted) and ``claimed_at = now``.
    """
    plan = plan_approval(batch, retry_enabled, now, lease_seconds)
    if plan is ApprovalPlan.ALREADY_COMPLETED:
        raise InvalidStateTransitionError(
            str(batch.batch_id), batch.status.value, BatchAction.APPROVE.value
        )
    claim = {"claim_token": claim_token or uuid4(), "claimed_at": now}

    if plan is ApprovalPlan.START:
        _transition(batch, BatchAction.APPROVE)
        timing = compute_invoice_timing(batch, now, grace_period_days)
        return replace(
            batch,
            status=BatchStatus.PROCESSING,
            approval_date=timing.approval_date,
            invoice_date=timing.invoice_date,
            invoice_due_date=timing.invoice_due_date,
            **claim,
        )

    action = BatchAction.RETRY if batch.status is BatchStatus.FAILED else BatchAction.RESUME
    _transition(batch, action)
    if batch.approval_date is None:
        timing = compute_invoice_timing(batch, now, grace_period_days)
        batch = replace(
            batch,
            approval_date=timing.approval_date,
            invoice_date=timing.invoice_date,
            invoice_due_date=timing.invoice_due_date,
        )
    return replace(batch, status=BatchStatus.PROCESSING, failure_reason=None, **claim)


def holds_claim(batch: RecurringBatch, claim_token: UUID) -> bool:
    return batch.status is BatchStatus.PROCESSING and batch.claim_token == claim_token


def record_materialized(
    batch: RecurringBatch, visit_number: int, booking_id: UUID
) -> RecurringBatch:
    """Attach ``booking_id`` to the visit numbered ``visit_number``."""
    if batch.status is not BatchStatus.PROCESSING:
        raise InvalidStateTransitionError(
            str(batch.batch_id), batch.status.value, "materialize"
        )
    visits = []
    found = False
    for visit in batch.visits:
        if visit.visit_number == visit_number:
            found = True
            if visit.booking_id is not None and visit.booking_id != booking_id:
                raise ValidationError(
                    "booking_id",
                    f"visit {visit_number} already linked to booking {visit.booking_id}",
                )
            visit = replace(visit, booking_id=booking_id)
        visits.append(visit)
    if not found:
        raise ValidationError(
            "visit_number", f"visit {visit_number} is not in batch {batch.batch_id}"
        )
    return replace(batch, visits=tuple(visits))


def complete_approval(batch: RecurringBatch) -> RecurringBatch:
    status = _transition(batch, BatchAction.COMPLETE)
    if batch.pending_count:
        raise ValidationError(
            "visits", f"{batch.pending_count} visit(s) still pending in batch {batch.batch_id}"
        )
    return replace(batch, status=status, failure_reason=None, claim_token=None, claimed_at=None)


def fail_approval(batch: RecurringBatch, reason: str) -> RecurringBatch:
    status = _transition(batch, BatchAction.FAIL)
    return replace(
        batch,
        status=status,
        failure_reason=reason or "unknown error",
        claim_token=None,
        claimed_at=None,
    )


# =============================================================================
# Reject and snooze
# =============================================================================


def reject_batch(batch: RecurringBatch, reason: str) -> RecurringBatch:
    """Reject a scheduled batch. Dates are left as they are."""
    if not isinstance(reason, str) or not reason.strip():
        raise ValidationError("reason", "a rejection reason is required")
    status = _transition(batch, BatchAction.REJECT)
    return replace(batch, status=status, rejection_reason=reason.strip())


def validate_snooze_days(days: object, max_snooze_days: int) -> int:
    if not isinstance(days, int) or isinstance(days, bool) or not 1 <= days <= max_snooze_days:
        raise ValidationError(
            "days", f"must be between 1 and {max_snooze_days}, got {days!r}"
        )
    return days


def max_snooze_before(batch: RecurringBatch, next_batch: RecurringBatch | None, cap: int) -> int:
    """Largest snooze that keeps ``batch`` clear of ``next_batch``'s window."""
    if next_batch is None:
        return cap
    room = (next_batch.scheduled_for - batch.last_visit_date).days - 1
    return max(0, min(cap, room))


def snooze_batch(
    batch: RecurringBatch,
    days: int,
    next_batch: RecurringBatch | None,
    max_snooze_days: int = 14,
) -> RecurringBatch:
    """Shift a scheduled batch and its visits forward by ``days``.

    Visits keep their local wall-clock time in the batch's zone.

    Raises:
        ValidationError: ``days`` outside ``[1, max_snooze_days]``.
        InvalidStateTransitionError: Batch is not ``scheduled``.
        SnoozeConflictError: The shifted last visit would fall on or after
            ``next_batch.scheduled_for``.  Neither batch is modified.
    """
    validate_snooze_days(days, max_snooze_days)
    _transition(batch, BatchAction.SNOOZE)

    shift = timedelta(days=days)
    if next_batch is not None and batch.last_visit_date + shift >= next_batch.scheduled_for:
        raise SnoozeConflictError(
            batch_id=str(batch.batch_id),
            requested_days=days,
            conflicting_batch_id=str(next_batch.batch_id),
            conflicting_window_start=next_batch.scheduled_for,
            conflicting_window_end=next_batch.last_visit_date,
            max_allowed_days=max_snooze_before(batch, next_batch, max_snooze_days),
        )

    tz = batch.tz
    visits = tuple(
        RecurringBatchVisit(
            visit_number=v.visit_number,
            scheduled_date=v.scheduled_date.astimezone(tz) + shift,
            booking_id=v.booking_id,
        )
        for v in batch.visits
    )
    return replace(
        batch,
        scheduled_for=batch.scheduled_for + shift,
        visits=visits,
        buffer_days=batch.buffer_days + days,
    )
