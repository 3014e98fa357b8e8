"""
Tests for BatchOrchestrator.

Covers approve (including resume after a partial materialization failure),
reject, snooze, bulk approve, notification isolation, the audit trail and
the read-only queries.
"""

from datetime import date, datetime, timezone
from uuid import uuid4

import pytest

from series_batch.domain.types import BatchAction, BatchFilter, BatchStatus
from series_batch.orchestrator import UNHANDLED_EXCEPTION, BatchOrchestrator
from series_batch.services.materializer import SqlBookingMaterializer, booking_id_for
from series_config.schema import RETRY_FAILED_BATCHES, FeatureFlags, SchedulingConfig
from series_kernel.exceptions import (
    BatchNotFoundError,
    InvalidStateTransitionError,
    MaterializationFailureError,
    SnoozeConflictError,
    ValidationError,
)


class FlakyMaterializer:
    """Delegates to the SQL materializer but fails for chosen visit numbers."""

    def __init__(self, inner, fail_on=()):
        self.inner = inner
        self.fail_on = set(fail_on)
        self.calls = []

    def materialize(self, request):
        self.calls.append(request.visit_number)
        if request.visit_number in self.fail_on:
            raise RuntimeError("booking store down")
        return self.inner.materialize(request)


class ExplodingNotifier:
    def notify_bookings_created(self, batch):
        raise ConnectionError("mail relay unreachable")


class RecordingNotifier:
    def __init__(self):
        self.batches = []

    def notify_bookings_created(self, batch):
        self.batches.append(batch)


@pytest.fixture
def flaky(session_factory, clock):
    return FlakyMaterializer(SqlBookingMaterializer(session_factory, clock=clock))


@pytest.fixture
def flaky_orchestrator(session_factory, flaky, config, clock):
    return BatchOrchestrator(
        session_factory, materializer=flaky, notifier=RecordingNotifier(),
        config=config, clock=clock,
    )


# =============================================================================
# Approve
# =============================================================================


class TestApprove:
    def test_approve_materializes_every_visit(self, orchestrator, series_service, weekly_series):
        series, batches = weekly_series
        result = orchestrator.approve_batch(batches[0].batch_id, actor_id="admin-1")

        assert result.ok
        assert result.status is BatchStatus.COMPLETED
        assert result.already_applied is False
        assert result.booking_ids == tuple(
            booking_id_for(series.series_id, n) for n in (1, 2)
        )
        bookings = series_service.get_series_bookings(series.series_id)
        assert [b.visit_number for b in bookings] == [1, 2]
        assert [b.scheduled_date for b in bookings] == [v.scheduled_date for v in batches[0].visits]

    def test_approve_stamps_invoice_dates(self, orchestrator, weekly_series, clock):
        _, batches = weekly_series
        result = orchestrator.approve_batch(batches[1].batch_id)

        # Approved Jan 1 with 3 days grace, but the window runs to Jan 10.
        assert result.approval_date == clock.now()
        assert result.invoice_due_date == date(2024, 1, 11)
        stored = orchestrator.get_batch(batches[1].batch_id)
        assert stored.invoice_date == date(2024, 1, 1)
        assert stored.invoice_due_date == date(2024, 1, 11)

    def test_reapprove_is_a_noop(self, orchestrator, series_service, weekly_series, clock):
        series, batches = weekly_series
        first = orchestrator.approve_batch(batches[0].batch_id)
        clock.advance_days(2)
        second = orchestrator.approve_batch(batches[0].batch_id)

        assert second.ok
        assert second.already_applied is True
        assert second.booking_ids == first.booking_ids
        assert second.approval_date == first.approval_date
        assert len(series_service.get_series_bookings(series.series_id)) == 2

    def test_booking_price_and_sitter(self, orchestrator, series_service, weekly_series):
        series, batches = weekly_series
        series_service.assign_sitter(series.series_id, "sitter-9")
        orchestrator.approve_batch(batches[0].batch_id)
        bookings = series_service.get_series_bookings(series.series_id)
        assert {b.sitter_id for b in bookings} == {"sitter-9"}
        assert {str(b.price) for b in bookings} == {"25.00"}

    def test_unknown_batch(self, orchestrator):
        with pytest.raises(BatchNotFoundError):
            orchestrator.approve_batch(uuid4())

    def test_rejected_batch_never_approved(self, orchestrator, series_service, weekly_series):
        series, batches = weekly_series
        orchestrator.reject_batch(batches[0].batch_id, "client travelling")
        with pytest.raises(InvalidStateTransitionError) as exc_info:
            orchestrator.approve_batch(batches[0].batch_id)
        assert exc_info.value.current_status == "rejected"
        assert series_service.get_series_bookings(series.series_id) == []

    def test_notifier_receives_completed_batch(self, session_factory, config, clock, weekly_series):
        _, batches = weekly_series
        notifier = RecordingNotifier()
        orch = BatchOrchestrator(session_factory, notifier=notifier, config=config, clock=clock)
        orch.approve_batch(batches[0].batch_id)
        assert [b.batch_id for b in notifier.batches] == [batches[0].batch_id]
        assert notifier.batches[0].status is BatchStatus.COMPLETED

    def test_notification_failure_does_not_fail_approval(
        self, session_factory, config, clock, weekly_series, captured_logs
    ):
        _, batches = weekly_series
        orch = BatchOrchestrator(
            session_factory, notifier=ExplodingNotifier(), config=config, clock=clock,
        )
        result = orch.approve_batch(batches[0].batch_id)

        assert result.status is BatchStatus.COMPLETED
        failures = [r for r in captured_logs() if r["message"] == "notification_failed"]
        assert len(failures) == 1
        assert failures[0]["error_type"] == "ConnectionError"
        assert failures[0]["batch_id"] == str(batches[0].batch_id)


class TestPartialFailure:
    def test_failure_leaves_batch_failed(self, flaky_orchestrator, flaky, weekly_series):
        _, batches = weekly_series
        flaky.fail_on = {2}

        with pytest.raises(MaterializationFailureError) as exc_info:
            flaky_orchestrator.approve_batch(batches[0].batch_id)

        err = exc_info.value
        assert err.materialized_count == 1
        assert err.pending_count == 1
        assert "booking store down" in err.cause
        stored = flaky_orchestrator.get_batch(batches[0].batch_id)
        assert stored.status is BatchStatus.FAILED
        assert stored.visits[0].is_materialized
        assert not stored.visits[1].is_materialized
        assert stored.approval_date is not None

    def test_reapprove_resumes_without_duplicates(
        self, flaky_orchestrator, flaky, series_service, weekly_series, clock
    ):
        series, batches = weekly_series
        flaky.fail_on = {2}
        with pytest.raises(MaterializationFailureError):
            flaky_orchestrator.approve_batch(batches[0].batch_id)
        first_approval = flaky_orchestrator.get_batch(batches[0].batch_id).approval_date

        flaky.fail_on = set()
        flaky.calls.clear()
        clock.advance_days(1)
        result = flaky_orchestrator.approve_batch(batches[0].batch_id)

        assert result.status is BatchStatus.COMPLETED
        assert flaky.calls == [2]
        assert result.approval_date == first_approval
        bookings = series_service.get_series_bookings(series.series_id)
        assert [b.visit_number for b in bookings] == [1, 2]

    def test_trail_records_fail_and_retry(self, flaky_orchestrator, flaky, weekly_series):
        _, batches = weekly_series
        flaky.fail_on = {1}
        with pytest.raises(MaterializationFailureError):
            flaky_orchestrator.approve_batch(batches[0].batch_id, actor_id="admin-1")
        flaky.fail_on = set()
        flaky_orchestrator.approve_batch(batches[0].batch_id, actor_id="admin-2")

        trail = flaky_orchestrator.get_batch_events(batches[0].batch_id)
        assert [(e.action, e.from_status, e.to_status) for e in trail] == [
            (BatchAction.APPROVE, BatchStatus.SCHEDULED, BatchStatus.PROCESSING),
            (BatchAction.FAIL, BatchStatus.PROCESSING, BatchStatus.FAILED),
            (BatchAction.RETRY, BatchStatus.FAILED, BatchStatus.PROCESSING),
            (BatchAction.COMPLETE, BatchStatus.PROCESSING, BatchStatus.COMPLETED),
        ]
        assert [e.actor_id for e in trail] == ["admin-1", "admin-1", "admin-2", "admin-2"]
        assert [e.sequence for e in trail] == [1, 2, 3, 4]

    def test_retry_disabled_by_flag(self, session_factory, flaky, clock, weekly_series):
        _, batches = weekly_series
        config = SchedulingConfig(flags=FeatureFlags({RETRY_FAILED_BATCHES: False}))
        orch = BatchOrchestrator(session_factory, materializer=flaky, config=config, clock=clock)
        assert orch.retry_enabled is False

        flaky.fail_on = {1}
        with pytest.raises(MaterializationFailureError):
            orch.approve_batch(batches[0].batch_id)
        flaky.fail_on = set()
        with pytest.raises(InvalidStateTransitionError):
            orch.approve_batch(batches[0].batch_id)
        assert orch.get_batch(batches[0].batch_id).status is BatchStatus.FAILED

    def test_failed_batch_refuses_reject_and_snooze(self, flaky_orchestrator, flaky, weekly_series):
        _, batches = weekly_series
        batch_id = batches[0].batch_id
        flaky.fail_on = {1}
        with pytest.raises(MaterializationFailureError):
            flaky_orchestrator.approve_batch(batch_id)
        failed = flaky_orchestrator.get_batch(batch_id)

        with pytest.raises(InvalidStateTransitionError) as rejected:
            flaky_orchestrator.reject_batch(batch_id, "client cancelled")
        with pytest.raises(InvalidStateTransitionError) as snoozed:
            flaky_orchestrator.snooze_batch(batch_id, 1)

        assert (rejected.value.current_status, rejected.value.requested_action) == (
            "failed", "reject",
        )
        assert (snoozed.value.current_status, snoozed.value.requested_action) == (
            "failed", "snooze",
        )
        assert flaky_orchestrator.get_batch(batch_id) == failed
        assert [e.action for e in flaky_orchestrator.get_batch_events(batch_id)] == [
            BatchAction.APPROVE, BatchAction.FAIL,
        ]

    def test_claim_cleared_once_finished(self, orchestrator, weekly_series):
        batch_id = weekly_series[1][0].batch_id
        orchestrator.approve_batch(batch_id)
        stored = orchestrator.get_batch(batch_id)
        assert stored.claim_token is None
        assert stored.claimed_at is None


# =============================================================================
# Reject
# =============================================================================


class TestReject:
    def test_reject(self, orchestrator, weekly_series):
        _, batches = weekly_series
        result = orchestrator.reject_batch(batches[0].batch_id, "client on holiday")

        assert result.status is BatchStatus.REJECTED
        stored = orchestrator.get_batch(batches[0].batch_id)
        assert stored.rejection_reason == "client on holiday"
        assert stored.approval_date is None
        assert stored.scheduled_for == batches[0].scheduled_for

    def test_reason_required(self, orchestrator, weekly_series):
        _, batches = weekly_series
        with pytest.raises(ValidationError):
            orchestrator.reject_batch(batches[0].batch_id, " ")
        assert orchestrator.get_batch(batches[0].batch_id).status is BatchStatus.SCHEDULED

    def test_completed_batch_cannot_be_rejected(self, orchestrator, weekly_series):
        _, batches = weekly_series
        orchestrator.approve_batch(batches[0].batch_id)
        with pytest.raises(InvalidStateTransitionError):
            orchestrator.reject_batch(batches[0].batch_id, "changed mind")

    def test_logs_refusal(self, orchestrator, weekly_series, captured_logs):
        _, batches = weekly_series
        orchestrator.reject_batch(batches[0].batch_id, "first")
        with pytest.raises(InvalidStateTransitionError):
            orchestrator.reject_batch(batches[0].batch_id, "second")
        refused = [r for r in captured_logs() if r["message"] == "batch_action_refused"]
        assert refused[-1]["error_code"] == "INVALID_STATE_TRANSITION"


# =============================================================================
# Snooze
# =============================================================================


class TestSnooze:
    def test_snooze_moves_batch(self, orchestrator, weekly_series):
        _, batches = weekly_series
        result = orchestrator.snooze_batch(batches[0].batch_id, 3)

        assert result.status is BatchStatus.SCHEDULED
        assert result.scheduled_for == date(2024, 1, 4)
        stored = orchestrator.get_batch(batches[0].batch_id)
        assert [v.scheduled_date.date() for v in stored.visits] == [
            date(2024, 1, 4),
            date(2024, 1, 6),
        ]
        assert stored.buffer_days == 3

    def test_conflict_leaves_both_batches_unchanged(self, orchestrator, weekly_series):
        _, batches = weekly_series
        before = [orchestrator.get_batch(b.batch_id) for b in batches[:2]]

        with pytest.raises(SnoozeConflictError) as exc_info:
            orchestrator.snooze_batch(batches[0].batch_id, 7)

        assert exc_info.value.conflicting_batch_id == str(batches[1].batch_id)
        assert exc_info.value.max_allowed_days == 4
        after = [orchestrator.get_batch(b.batch_id) for b in batches[:2]]
        assert after == before

    @pytest.mark.parametrize("days", [0, 15])
    def test_days_bounds(self, orchestrator, weekly_series, days):
        _, batches = weekly_series
        with pytest.raises(ValidationError):
            orchestrator.snooze_batch(batches[0].batch_id, days)

    def test_last_batch_snoozes_to_the_cap(self, orchestrator, weekly_series):
        _, batches = weekly_series
        result = orchestrator.snooze_batch(batches[-1].batch_id, 14)
        assert result.scheduled_for == date(2024, 1, 29)

    def test_snoozed_batch_moves_invoice_floor(self, orchestrator, weekly_series, clock):
        _, batches = weekly_series
        orchestrator.snooze_batch(batches[0].batch_id, 3)
        timing = orchestrator.preview_invoice_timing(batches[0].batch_id)
        assert timing.invoice_due_date == date(2024, 1, 7)
        assert timing.floor_applied is True

        result = orchestrator.approve_batch(batches[0].batch_id)
        assert result.invoice_due_date == date(2024, 1, 7)

    def test_snooze_after_approval_refused(self, orchestrator, weekly_series):
        _, batches = weekly_series
        orchestrator.approve_batch(batches[0].batch_id)
        with pytest.raises(InvalidStateTransitionError):
            orchestrator.snooze_batch(batches[0].batch_id, 1)


# =============================================================================
# Bulk approve
# =============================================================================


class TestBulkApprove:
    def test_partial_results_in_request_order(self, orchestrator, weekly_series):
        _, batches = weekly_series
        orchestrator.reject_batch(batches[2].batch_id, "skip week three")
        missing = uuid4()

        results = orchestrator.bulk_approve(
            [batches[0].batch_id, batches[2].batch_id, missing, batches[1].batch_id,
             batches[0].batch_id]
        )

        assert [r.batch_id for r in results] == [
            batches[0].batch_id, batches[2].batch_id, missing, batches[1].batch_id,
        ]
        assert [r.ok for r in results] == [True, False, False, True]
        assert results[1].status is BatchStatus.REJECTED
        assert results[1].error_code == "INVALID_STATE_TRANSITION"
        assert results[2].status is None
        assert results[2].error_code == "BATCH_NOT_FOUND"
        assert orchestrator.get_batch(batches[1].batch_id).status is BatchStatus.COMPLETED

    def test_materialization_failure_is_isolated(self, flaky_orchestrator, flaky, weekly_series):
        _, batches = weekly_series
        flaky.fail_on = {3}
        results = flaky_orchestrator.bulk_approve([b.batch_id for b in batches])

        assert [r.status for r in results] == [
            BatchStatus.COMPLETED, BatchStatus.FAILED, BatchStatus.COMPLETED,
        ]
        assert results[1].error_code == "MATERIALIZATION_FAILURE"
        assert results[1].materialized_count == 0
        assert results[1].pending_count == 2

    def test_unexpected_error_becomes_result(self, orchestrator, weekly_series, monkeypatch):
        _, batches = weekly_series
        original = orchestrator.approve_batch
        bad_id = batches[1].batch_id

        def approve(batch_id, actor_id=None):
            if batch_id == bad_id:
                raise RuntimeError("boom")
            return original(batch_id, actor_id=actor_id)

        monkeypatch.setattr(orchestrator, "approve_batch", approve)
        results = orchestrator.bulk_approve([b.batch_id for b in batches])

        assert [r.ok for r in results] == [True, False, True]
        assert results[1].error_code == UNHANDLED_EXCEPTION
        assert "boom" in results[1].error_message

    def test_empty_request(self, orchestrator):
        assert orchestrator.bulk_approve([]) == []


# =============================================================================
# Queries
# =============================================================================


class TestQueries:
    def test_list_batches_filters(self, orchestrator, series_service, make_request, weekly_series):
        series, batches = weekly_series
        other = series_service.create_series(make_request(client_id="client-2"))
        orchestrator.reject_batch(batches[0].batch_id, "no")

        scheduled = orchestrator.list_batches(
            BatchFilter(series_id=series.series_id, statuses=(BatchStatus.SCHEDULED,))
        )
        assert [b.batch_index for b in scheduled] == [1, 2]

        theirs = orchestrator.list_batches(BatchFilter(client_id="client-2"))
        assert {b.series_id for b in theirs} == {other.series_id}

        window = orchestrator.list_batches(
            BatchFilter(scheduled_from=date(2024, 1, 8), scheduled_to=date(2024, 1, 8))
        )
        assert len(window) == 2
        assert {b.scheduled_for for b in window} == {date(2024, 1, 8)}

        assert len(orchestrator.list_batches(BatchFilter(limit=2))) == 2

    def test_list_orders_by_schedule(self, orchestrator, weekly_series):
        listed = orchestrator.list_batches()
        assert [b.scheduled_for for b in listed] == sorted(b.scheduled_for for b in listed)

    def test_preview_with_explicit_date(self, orchestrator, weekly_series):
        _, batches = weekly_series
        timing = orchestrator.preview_invoice_timing(
            batches[0].batch_id, datetime(2024, 1, 20, 9, 0, tzinfo=timezone.utc)
        )
        assert timing.invoice_date == date(2024, 1, 20)
        assert timing.invoice_due_date == date(2024, 1, 23)
        assert orchestrator.get_batch(batches[0].batch_id).approval_date is None

    def test_events_for_unknown_batch(self, orchestrator):
        with pytest.raises(BatchNotFoundError):
            orchestrator.get_batch_events(uuid4())

    def test_snooze_event_detail(self, orchestrator, weekly_series):
        _, batches = weekly_series
        orchestrator.snooze_batch(batches[0].batch_id, 2, actor_id="admin-3")
        (event,) = orchestrator.get_batch_events(batches[0].batch_id)
        assert event.action is BatchAction.SNOOZE
        assert event.detail == {
            "days": 2,
            "previous_scheduled_for": "2024-01-01",
            "scheduled_for": "2024-01-03",
        }
