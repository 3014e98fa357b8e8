"""
BatchOrchestrator -- the approve / reject / snooze / bulk-approve facade.

Contract:
    - ``approve_batch()`` claims a batch (scheduled -> processing), creates
      one booking per visit that does not have one yet, then completes it.
      A materialization error leaves the batch ``failed`` and raises
      ``MaterializationFailureError``.  Re-approving a completed batch is a
      no-op returning the existing bookings.
    - ``reject_batch()`` / ``snooze_batch()`` act on ``scheduled`` batches.
    - ``bulk_approve()`` runs ``approve_batch`` per batch in parallel and
      reports one ``BatchResult`` per distinct id, in request order.
    - ``get_batch()``, ``list_batches()``, ``get_batch_events()`` and
      ``preview_invoice_timing()`` are read-only.

Architecture: series_batch (top-level).  Composes the pure state machine
    with BatchRepository, BookingMaterializer and BookingNotifier.  Opens
    one session per phase from the injected factory.

Invariants enforced:
    - One approval per batch: the claim committed in phase 1 records a
      fresh ``claim_token`` and ``claimed_at``.  Any other approval, in this
      process or another, is refused with ``ApprovalInProgressError`` until
      that claim's ``approval_lease_seconds`` have passed.  Phase 3 writes
      only while the row still carries this approval's token; if a stalled
      claim was taken over and the batch is ``completed``, the late
      approval reports ``already_applied``.
    - Within one process every mutating call also holds the batch's entry
      in BatchLockRegistry; different batches never share a lock.  Rows are
      read FOR UPDATE and written through the version counter.
    - The ``processing`` claim is committed before any booking is created,
      so a crash mid-approval leaves a resumable batch, never a silent
      ``scheduled`` one with orphan bookings.
    - Bookings are keyed by ``(series_id, visit_number)``; visits that
      already carry a booking id are skipped on resume.
    - Notification failures are logged and never fail an approval.
    - All timestamps come from the injected Clock.

Failure modes:
    - Single-batch operations raise SeriesKernelError subclasses after
      rolling back; ``bulk_approve`` converts them to ``ok=False`` results.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Callable, Iterable
from uuid import UUID, uuid4

from sqlalchemy.orm import Session

from series_config.schema import RETRY_FAILED_BATCHES, FeatureFlags, SchedulingConfig
from series_kernel.db.engine import session_scope
from series_kernel.domain.clock import Clock, SystemClock
from series_kernel.exceptions import (
    ApprovalInProgressError,
    InvalidStateTransitionError,
    MaterializationFailureError,
    OptimisticLockError,
    SeriesKernelError,
    SnoozeConflictError,
    ValidationError,
)
from series_kernel.logging_config import LogContext, get_logger
from series_batch.domain.invoice_timing import compute_invoice_timing
from series_batch.domain.pricing import per_visit_price
from series_batch.domain.state_machine import (
    ApprovalPlan,
    begin_approval,
    complete_approval,
    fail_approval,
    holds_claim,
    plan_approval,
    record_materialized,
    reject_batch,
    snooze_batch,
    validate_snooze_days,
)
from series_batch.domain.types import (
    BatchAction,
    BatchEvent,
    BatchFilter,
    BatchResult,
    BatchStatus,
    InvoiceTiming,
    RecurringBatch,
    RecurringSeries,
    SeriesMetadata,
)
from series_batch.services.locks import BatchLockRegistry
from series_batch.services.materializer import (
    BookingMaterializer,
    MaterializeRequest,
    SqlBookingMaterializer,
)
from series_batch.services.notifications import BookingNotifier, LoggingNotifier
from series_batch.services.repository import BatchRepository

logger = get_logger("batch.orchestrator")

UNHANDLED_EXCEPTION = "UNHANDLED_EXCEPTION"
CLAIM_ATTEMPTS = 3


def _result(
    batch: RecurringBatch,
    action: BatchAction,
    already_applied: bool = False,
) -> BatchResult:
    return BatchResult(
        batch_id=batch.batch_id,
        action=action,
        status=batch.status,
        already_applied=already_applied,
        booking_ids=batch.booking_ids,
        approval_date=batch.approval_date,
        invoice_due_date=batch.invoice_due_date,
        scheduled_for=batch.scheduled_for,
        materialized_count=batch.materialized_count,
        pending_count=batch.pending_count,
    )


def _metadata(series: RecurringSeries, config: SchedulingConfig) -> SeriesMetadata:
    return SeriesMetadata(
        client_id=series.client_id,
        service_type=series.service_type,
        duration_minutes=series.duration_minutes,
        price=per_visit_price(
            series.base_price, config.discount_for(series.frequency.value)
        ),
        pets=series.pets,
        sitter_id=series.sitter_id,
        special_instructions=series.special_instructions,
        address=series.address,
    )


class BatchOrchestrator:
    """Administrative actions on recurring batches.

    Non-goals:
        - Does NOT retry materialization on its own; the caller re-invokes
          ``approve_batch``.
        - Does NOT cascade series cancellation to batches.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        materializer: BookingMaterializer | None = None,
        notifier: BookingNotifier | None = None,
        config: SchedulingConfig | None = None,
        clock: Clock | None = None,
        lock_registry: BatchLockRegistry | None = None,
        flags: FeatureFlags | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._config = config or SchedulingConfig()
        self._clock = clock or SystemClock()
        self._materializer = materializer or SqlBookingMaterializer(
            session_factory, clock=self._clock,
        )
        self._notifier = notifier or LoggingNotifier()
        self._locks = lock_registry or BatchLockRegistry()
        self._flags = flags or self._config.flags

    @classmethod
    def from_session_factory(
        cls,
        session_factory: Callable[[], Session],
        config: SchedulingConfig | None = None,
        clock: Clock | None = None,
    ) -> BatchOrchestrator:
        """Create an orchestrator wired with the SQL materializer and logging notifier."""
        effective_clock = clock or SystemClock()
        return cls(
            session_factory=session_factory,
            materializer=SqlBookingMaterializer(session_factory, clock=effective_clock),
            notifier=LoggingNotifier(),
            config=config,
            clock=effective_clock,
        )

    @property
    def retry_enabled(self) -> bool:
        return self._flags.is_enabled(RETRY_FAILED_BATCHES)

    # -------------------------------------------------------------------------
    # Approve
    # -------------------------------------------------------------------------

    def approve_batch(self, batch_id: UUID, actor_id: str | None = None) -> BatchResult:
        """Approve one batch and materialize its bookings.

        Raises:
            BatchNotFoundError: Unknown batch.
            ApprovalInProgressError: Another approval owns the batch and its
                lease has not run out.
            InvalidStateTransitionError: Batch is rejected, or failed while
                retries are disabled.
            MaterializationFailureError: A booking could not be created; the
                batch is now ``failed`` and may be approved again to resume.
        """
        with LogContext.bind(batch_id=batch_id, actor_id=actor_id):
            with self._locks.hold(batch_id):
                try:
                    return self._approve_locked(batch_id, actor_id)
                except MaterializationFailureError:
                    raise
                except SeriesKernelError as exc:
                    logger.warning(
                        "batch_action_refused",
                        extra={"action": BatchAction.APPROVE.value, "error_code": exc.code},
                    )
                    raise

    def _approve_locked(self, batch_id: UUID, actor_id: str | None) -> BatchResult:
        claim_token = uuid4()
        batch, claimed, plan, metadata = self._claim(batch_id, actor_id, claim_token)
        if claimed is None:
            logger.info("batch_already_approved")
            return _result(batch, BatchAction.APPROVE, already_applied=True)

        if plan is ApprovalPlan.RESUME:
            logger.info(
                "batch_approval_resumed",
                extra={
                    "from_status": batch.status.value,
                    "materialized_count": claimed.materialized_count,
                    "pending_count": claimed.pending_count,
                },
            )

        # Phase 2: materialize visits that have no booking yet
        working = claimed
        failure: Exception | None = None
        for visit in claimed.visits:
            if visit.is_materialized:
                continue
            try:
                outcome = self._materializer.materialize(
                    MaterializeRequest(
                        series_id=claimed.series_id,
                        batch_id=claimed.batch_id,
                        visit_number=visit.visit_number,
                        scheduled_date=visit.scheduled_date,
                        metadata=metadata,
                    )
                )
            except Exception as exc:
                failure = exc
                break
            working = record_materialized(working, visit.visit_number, outcome.booking_id)

        # Phase 3: finalize, only while this approval still owns the claim
        finished_at = self._clock.now()
        final: RecurringBatch | None
        with session_scope(self._session_factory) as session:
            repo = BatchRepository(session)
            stored = repo.get_batch(batch_id, for_update=True)
            if not holds_claim(stored, claim_token):
                final = None
            elif failure is not None:
                cause = f"{type(failure).__name__}: {failure}"
                final = repo.save_batch(fail_approval(working, cause))
                self._record(repo, working, final, BatchAction.FAIL, finished_at, actor_id, {
                    "materialized_count": final.materialized_count,
                    "pending_count": final.pending_count,
                    "cause": cause,
                })
            else:
                final = repo.save_batch(complete_approval(working))
                self._record(repo, working, final, BatchAction.COMPLETE, finished_at, actor_id, {
                    "booking_count": len(final.booking_ids),
                })

        if final is None:
            return self._claim_superseded(stored, failure)

        if failure is not None:
            logger.error(
                "batch_materialization_failed",
                extra={
                    "materialized_count": final.materialized_count,
                    "pending_count": final.pending_count,
                    "cause": final.failure_reason,
                },
            )
            raise MaterializationFailureError(
                str(batch_id),
                final.materialized_count,
                final.pending_count,
                final.failure_reason or "unknown error",
            ) from failure

        logger.info(
            "batch_approved",
            extra={
                "series_id": str(final.series_id),
                "visit_count": final.visit_count,
                "approval_date": final.approval_date,
                "invoice_due_date": final.invoice_due_date,
            },
        )
        self._notify(final)
        return _result(final, BatchAction.APPROVE)

    def _claim(
        self, batch_id: UUID, actor_id: str | None, claim_token: UUID,
    ) -> tuple[RecurringBatch, RecurringBatch | None, ApprovalPlan, SeriesMetadata | None]:
        """Phase 1: move the batch to ``processing`` under ``claim_token`` and commit.

        Returns ``(before, claimed, plan, metadata)``; ``claimed`` is ``None``
        when the batch is already completed.  A claim that loses a version
        race is re-planned from a fresh read, which normally turns into
        ``ApprovalInProgressError`` or an already-applied result.
        """
        lease = self._config.approval_lease_seconds
        attempt = 0
        while True:
            attempt += 1
            now = self._clock.now()
            try:
                with session_scope(self._session_factory) as session:
                    repo = BatchRepository(session)
                    batch = repo.get_batch(batch_id, for_update=True)
                    plan = plan_approval(batch, self.retry_enabled, now, lease)
                    if plan is ApprovalPlan.ALREADY_COMPLETED:
                        return batch, None, plan, None

                    claimed = repo.save_batch(
                        begin_approval(
                            batch,
                            now,
                            self._config.grace_period_days,
                            retry_enabled=self.retry_enabled,
                            claim_token=claim_token,
                            lease_seconds=lease,
                        )
                    )
                    action = BatchAction.APPROVE
                    if plan is ApprovalPlan.RESUME:
                        action = (
                            BatchAction.RETRY if batch.status is BatchStatus.FAILED
                            else BatchAction.RESUME
                        )
                    self._record(repo, batch, claimed, action, now, actor_id, {
                        "invoice_due_date": claimed.invoice_due_date,
                        "materialized_count": claimed.materialized_count,
                        "previous_claimed_at": batch.claimed_at,
                    })
                    metadata = _metadata(repo.get_series(batch.series_id), self._config)
                return batch, claimed, plan, metadata
            except OptimisticLockError:
                if attempt == CLAIM_ATTEMPTS:
                    raise
                logger.info("batch_claim_raced", extra={"attempt": attempt})

    def _claim_superseded(
        self, stored: RecurringBatch, failure: Exception | None,
    ) -> BatchResult:
        """This approval's claim was taken over after its lease ran out."""
        logger.warning(
            "batch_claim_superseded",
            extra={"status": stored.status.value, "had_failure": failure is not None},
        )
        if stored.status is BatchStatus.COMPLETED:
            return _result(stored, BatchAction.APPROVE, already_applied=True)
        raise ApprovalInProgressError(str(stored.batch_id), stored.status.value) from failure

    def _notify(self, batch: RecurringBatch) -> None:
        try:
            self._notifier.notify_bookings_created(batch)
        except Exception as exc:
            logger.warning(
                "notification_failed",
                extra={"error_type": type(exc).__name__, "error": str(exc)},
            )

    # -------------------------------------------------------------------------
    # Reject / snooze
    # -------------------------------------------------------------------------

    def reject_batch(
        self, batch_id: UUID, reason: str, actor_id: str | None = None,
    ) -> BatchResult:
        """Reject a scheduled batch with a reason. Terminal.

        Raises:
            ValidationError: Empty reason.
            BatchNotFoundError: Unknown batch.
            InvalidStateTransitionError: Batch is not ``scheduled``.
        """
        if not isinstance(reason, str) or not reason.strip():
            raise ValidationError("reason", "a rejection reason is required")

        with LogContext.bind(batch_id=batch_id, actor_id=actor_id):
            with self._locks.hold(batch_id):
                now = self._clock.now()
                try:
                    with session_scope(self._session_factory) as session:
                        repo = BatchRepository(session)
                        batch = repo.get_batch(batch_id, for_update=True)
                        rejected = repo.save_batch(reject_batch(batch, reason))
                        self._record(repo, batch, rejected, BatchAction.REJECT, now, actor_id, {
                            "reason": rejected.rejection_reason,
                        })
                except SeriesKernelError as exc:
                    logger.warning(
                        "batch_action_refused",
                        extra={"action": BatchAction.REJECT.value, "error_code": exc.code},
                    )
                    raise

            logger.info("batch_rejected", extra={"reason": rejected.rejection_reason})
            return _result(rejected, BatchAction.REJECT)

    def snooze_batch(
        self, batch_id: UUID, days: int, actor_id: str | None = None,
    ) -> BatchResult:
        """Shift a scheduled batch and its visits forward by ``days``.

        Raises:
            ValidationError: ``days`` outside ``[1, max_snooze_days]``.
            BatchNotFoundError: Unknown batch.
            InvalidStateTransitionError: Batch is not ``scheduled``.
            SnoozeConflictError: The shifted window reaches the next batch;
                carries the next batch's window and the largest allowed shift.
        """
        validate_snooze_days(days, self._config.max_snooze_days)

        with LogContext.bind(batch_id=batch_id, actor_id=actor_id):
            with self._locks.hold(batch_id):
                now = self._clock.now()
                try:
                    with session_scope(self._session_factory) as session:
                        repo = BatchRepository(session)
                        batch = repo.get_batch(batch_id, for_update=True)
                        next_batch = repo.get_next_batch(batch)
                        snoozed = snooze_batch(
                            batch, days, next_batch, self._config.max_snooze_days,
                        )
                        snoozed = repo.save_batch(snoozed)
                        self._record(repo, batch, snoozed, BatchAction.SNOOZE, now, actor_id, {
                            "days": days,
                            "previous_scheduled_for": batch.scheduled_for,
                            "scheduled_for": snoozed.scheduled_for,
                        })
                except SnoozeConflictError as exc:
                    logger.warning(
                        "batch_snooze_conflict",
                        extra={
                            "requested_days": exc.requested_days,
                            "conflicting_batch_id": exc.conflicting_batch_id,
                            "max_allowed_days": exc.max_allowed_days,
                        },
                    )
                    raise
                except SeriesKernelError as exc:
                    logger.warning(
                        "batch_action_refused",
                        extra={"action": BatchAction.SNOOZE.value, "error_code": exc.code},
                    )
                    raise

            logger.info(
                "batch_snoozed",
                extra={
                    "days": days,
                    "scheduled_for": snoozed.scheduled_for,
                    "buffer_days": snoozed.buffer_days,
                },
            )
            return _result(snoozed, BatchAction.SNOOZE)

    # -------------------------------------------------------------------------
    # Bulk approve
    # -------------------------------------------------------------------------

    def bulk_approve(
        self, batch_ids: Iterable[UUID], actor_id: str | None = None,
    ) -> list[BatchResult]:
        """Approve each batch independently; one result per distinct id.

        A failure in one batch never rolls back another.  Duplicate ids are
        collapsed to their first occurrence.
        """
        unique_ids = list(dict.fromkeys(batch_ids))
        if not unique_ids:
            return []

        context = LogContext.get_all()
        workers = min(self._config.bulk_max_workers, len(unique_ids))
        logger.info(
            "bulk_approve_started",
            extra={"batch_count": len(unique_ids), "max_workers": workers},
        )

        def run(batch_id: UUID) -> BatchResult:
            with LogContext.bind(**context):
                return self._approve_for_bulk(batch_id, actor_id)

        with ThreadPoolExecutor(max_workers=workers) as pool:
            results = list(pool.map(run, unique_ids))

        succeeded = sum(1 for r in results if r.ok)
        logger.info(
            "bulk_approve_completed",
            extra={
                "batch_count": len(results),
                "succeeded": succeeded,
                "failed": len(results) - succeeded,
            },
        )
        return results

    def _approve_for_bulk(self, batch_id: UUID, actor_id: str | None) -> BatchResult:
        try:
            return self.approve_batch(batch_id, actor_id=actor_id)
        except MaterializationFailureError as exc:
            return BatchResult(
                batch_id=batch_id,
                action=BatchAction.APPROVE,
                status=BatchStatus.FAILED,
                ok=False,
                materialized_count=exc.materialized_count,
                pending_count=exc.pending_count,
                error_code=exc.code,
                error_message=str(exc),
            )
        except SeriesKernelError as exc:
            status = None
            if isinstance(exc, InvalidStateTransitionError):
                status = BatchStatus(exc.current_status)
            return BatchResult(
                batch_id=batch_id,
                action=BatchAction.APPROVE,
                status=status,
                ok=False,
                error_code=exc.code,
                error_message=str(exc),
            )
        except Exception as exc:
            logger.exception(
                "bulk_approve_item_crashed", extra={"failed_batch_id": str(batch_id)},
            )
            return BatchResult(
                batch_id=batch_id,
                action=BatchAction.APPROVE,
                status=None,
                ok=False,
                error_code=UNHANDLED_EXCEPTION,
                error_message=f"{type(exc).__name__}: {exc}",
            )

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_batch(self, batch_id: UUID) -> RecurringBatch:
        with session_scope(self._session_factory) as session:
            return BatchRepository(session).get_batch(batch_id)

    def list_batches(self, batch_filter: BatchFilter | None = None) -> list[RecurringBatch]:
        with session_scope(self._session_factory) as session:
            return BatchRepository(session).list_batches(batch_filter)

    def get_batch_events(self, batch_id: UUID) -> list[BatchEvent]:
        with session_scope(self._session_factory) as session:
            repo = BatchRepository(session)
            repo.get_batch(batch_id)
            return repo.events_for_batch(batch_id)

    def preview_invoice_timing(
        self, batch_id: UUID, approval_date: datetime | None = None,
    ) -> InvoiceTiming:
        """Invoice dates the batch would get if approved at ``approval_date``.

        Computed from the batch's current visit dates, so a snoozed batch
        shows its shifted floor.
        """
        batch = self.get_batch(batch_id)
        return compute_invoice_timing(
            batch, approval_date or self._clock.now(), self._config.grace_period_days,
        )

    # -------------------------------------------------------------------------
    # Audit
    # -------------------------------------------------------------------------

    @staticmethod
    def _record(
        repo: BatchRepository,
        before: RecurringBatch,
        after: RecurringBatch,
        action: BatchAction,
        occurred_at: datetime,
        actor_id: str | None,
        detail: dict,
    ) -> None:
        repo.record_event(
            BatchEvent(
                batch_id=after.batch_id,
                series_id=after.series_id,
                action=action,
                from_status=before.status,
                to_status=after.status,
                occurred_at=occurred_at,
                actor_id=actor_id,
                detail={k: _json_value(v) for k, v in detail.items()},
            )
        )


def _json_value(value: object) -> object:
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value
