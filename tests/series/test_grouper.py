"""Tests for the Batch Grouper (series_batch/domain/grouper.py)."""

from dataclasses import replace
from datetime import date
from uuid import uuid4

import pytest

from series_batch.domain.expander import expand_series
from series_batch.domain.grouper import batch_id_for, group_visit_slots
from series_batch.domain.types import BatchStatus
from series_batch.domain.validation import build_series
from series_kernel.exceptions import ValidationError


def _grouped(request, window_days=7):
    series = build_series(request, series_id=uuid4())
    slots = expand_series(series)
    return series, slots, group_visit_slots(series, slots, window_days)


class TestGrouping:
    def test_mon_wed_series_gives_three_weekly_batches(self, make_request):
        series, _, batches = _grouped(make_request())
        assert [b.scheduled_for for b in batches] == [
            date(2024, 1, 1),
            date(2024, 1, 8),
            date(2024, 1, 15),
        ]
        assert [b.visit_count for b in batches] == [2, 2, 2]
        assert [b.batch_index for b in batches] == [0, 1, 2]
        assert [[v.visit_number for v in b.visits] for b in batches] == [[1, 2], [3, 4], [5, 6]]

    def test_new_batches_are_scheduled_without_dates(self, make_request):
        _, _, batches = _grouped(make_request())
        for batch in batches:
            assert batch.status is BatchStatus.SCHEDULED
            assert batch.approval_date is None
            assert batch.invoice_date is None
            assert batch.invoice_due_date is None
            assert batch.pending_count == batch.visit_count

    def test_batches_copy_series_identity(self, make_request):
        series, _, batches = _grouped(make_request(client_id="c-9", time_zone="Europe/Paris"))
        assert {b.series_id for b in batches} == {series.series_id}
        assert {b.client_id for b in batches} == {"c-9"}
        assert {b.time_zone for b in batches} == {"Europe/Paris"}

    def test_window_measured_from_first_slot_not_calendar_week(self, make_request):
        # Wednesday start with Wed/Mon visits: windows are Wed..Tue.
        _, _, batches = _grouped(
            make_request(start_date=date(2024, 1, 3), number_of_visits=4)
        )
        assert [b.scheduled_for for b in batches] == [date(2024, 1, 3), date(2024, 1, 10)]
        assert [b.visit_count for b in batches] == [2, 2]
        assert batches[0].first_visit_date == date(2024, 1, 3)
        assert batches[0].last_visit_date == date(2024, 1, 8)

    def test_empty_windows_produce_no_batch(self, make_request):
        # Monthly visits with a 7-day window: one batch per visit, dense indexes.
        _, _, batches = _grouped(
            make_request(frequency="monthly", preferred_days=(), number_of_visits=3)
        )
        assert [b.batch_index for b in batches] == [0, 1, 2]
        assert [b.scheduled_for for b in batches] == [
            date(2024, 1, 1),
            date(2024, 1, 29),
            date(2024, 2, 26),
        ]

    def test_custom_window_size(self, make_request):
        _, _, batches = _grouped(make_request(), window_days=14)
        assert [b.visit_count for b in batches] == [4, 2]
        assert [b.scheduled_for for b in batches] == [date(2024, 1, 1), date(2024, 1, 15)]

    def test_coverage_and_ordering(self, make_request):
        _, slots, batches = _grouped(make_request(number_of_visits=25, preferred_days=(0, 2, 4)))
        assert sum(b.visit_count for b in batches) == len(slots) == 25
        for earlier, later in zip(batches, batches[1:]):
            assert earlier.scheduled_for < later.scheduled_for
            assert earlier.last_visit_date < later.scheduled_for


class TestIdentity:
    def test_batch_ids_are_deterministic(self, make_request):
        series = build_series(make_request(), series_id=uuid4())
        slots = expand_series(series)
        first = group_visit_slots(series, slots)
        second = group_visit_slots(series, slots)
        assert [b.batch_id for b in first] == [b.batch_id for b in second]
        assert first[1].batch_id == batch_id_for(series.series_id, 1)

    def test_ids_differ_across_series(self, make_request):
        a, _, batches_a = _grouped(make_request())
        b, _, batches_b = _grouped(make_request())
        assert batches_a[0].batch_id != batches_b[0].batch_id


class TestInputChecks:
    def test_no_slots_no_batches(self, make_request):
        series = build_series(make_request(), series_id=uuid4())
        assert group_visit_slots(series, []) == []

    def test_gap_in_visit_numbers_rejected(self, make_request):
        series = build_series(make_request(), series_id=uuid4())
        slots = expand_series(series)
        with pytest.raises(ValidationError, match="without gaps"):
            group_visit_slots(series, [slots[0], slots[2]])

    def test_zero_window_rejected(self, make_request):
        series = build_series(make_request(), series_id=uuid4())
        with pytest.raises(ValidationError):
            group_visit_slots(series, expand_series(series), window_days=0)

    def test_renumbered_slots_rejected(self, make_request):
        series = build_series(make_request(), series_id=uuid4())
        slots = expand_series(series)
        shuffled = [replace(slots[0], visit_number=2), replace(slots[1], visit_number=1)]
        with pytest.raises(ValidationError):
            group_visit_slots(series, shuffled)
