"""Tests for invoice date derivation."""

from datetime import date, datetime, timezone
from uuid import uuid4

import pytest

from series_batch.domain.expander import expand_series
from series_batch.domain.grouper import group_visit_slots
from series_batch.domain.invoice_timing import compute_invoice_timing
from series_batch.domain.validation import build_series
from series_kernel.exceptions import ValidationError


def _first_batch(request):
    series = build_series(request, series_id=uuid4())
    return group_visit_slots(series, expand_series(series))[0]


class TestDueDate:
    def test_grace_period_wins_after_window(self, make_request):
        batch = _first_batch(make_request())  # visits Jan 1 and Jan 3
        timing = compute_invoice_timing(
            batch, datetime(2024, 1, 5, 10, 0, tzinfo=timezone.utc), grace_period_days=3
        )
        assert timing.invoice_date == date(2024, 1, 5)
        assert timing.invoice_due_date == date(2024, 1, 8)
        assert timing.floor_applied is False

    def test_floor_is_day_after_last_visit(self, make_request):
        batch = _first_batch(make_request(preferred_days=(1, 5)))  # Jan 1 and Jan 5
        timing = compute_invoice_timing(
            batch, datetime(2023, 12, 30, 10, 0, tzinfo=timezone.utc), grace_period_days=3
        )
        assert timing.invoice_due_date == date(2024, 1, 6)
        assert timing.floor_applied is True

    def test_due_date_never_before_last_visit(self, make_request):
        batch = _first_batch(make_request(preferred_days=(0, 1, 2, 3, 4, 5, 6)))
        for grace in (1, 3, 10):
            timing = compute_invoice_timing(
                batch, datetime(2023, 12, 25, tzinfo=timezone.utc), grace
            )
            assert timing.invoice_due_date > batch.last_visit_date

    def test_approval_instant_is_kept(self, make_request):
        batch = _first_batch(make_request())
        approved = datetime(2024, 1, 2, 8, 30, tzinfo=timezone.utc)
        assert compute_invoice_timing(batch, approved).approval_date == approved


class TestTimeZones:
    def test_invoice_date_uses_batch_zone(self, make_request):
        batch = _first_batch(make_request(time_zone="America/Los_Angeles"))
        # 02:00 UTC on Jan 10 is still Jan 9 in Los Angeles.
        timing = compute_invoice_timing(
            batch, datetime(2024, 1, 10, 2, 0, tzinfo=timezone.utc), grace_period_days=3
        )
        assert timing.invoice_date == date(2024, 1, 9)
        assert timing.invoice_due_date == date(2024, 1, 12)


class TestInputChecks:
    def test_naive_approval_rejected(self, make_request):
        batch = _first_batch(make_request())
        with pytest.raises(ValidationError, match="timezone-aware"):
            compute_invoice_timing(batch, datetime(2024, 1, 5))

    def test_zero_grace_rejected(self, make_request):
        batch = _first_batch(make_request())
        with pytest.raises(ValidationError):
            compute_invoice_timing(batch, datetime(2024, 1, 5, tzinfo=timezone.utc), 0)
