"""
Series Expander -- recurring series to ordered visit slots.

Contract:
    ``expand_series(series)`` returns exactly ``series.number_of_visits``
    slots, numbered 1..N in chronological order.  Output depends only on
    the series; the wall clock is never consulted.

Architecture:
    Pure domain function, ZERO I/O.  Dispatches once on the schedule
    variant chosen by ``validation.build_series``.

Invariants enforced:
    - Visit numbers are contiguous from 1 with no duplicates.
    - Date arithmetic is calendar-based (days, weeks, months).  Each slot is
      the local wall-clock time in the series' zone, so DST changes never
      drift a 09:00 visit to 08:00 or 10:00.
    - Monthly steps are computed from ``start_date`` and clamped to the
      month's last day (Jan 31 -> Feb 29 -> Mar 31).

Failure modes:
    - ValidationError when a weekly schedule has no enabled weekday or
      ``number_of_visits`` < 1.  ``build_series`` rejects both earlier; the
      checks here guard against hand-built series.
"""

from __future__ import annotations

import calendar
from datetime import date, datetime, time, timedelta
from itertools import count, islice
from typing import Iterator
from zoneinfo import ZoneInfo

from series_kernel.exceptions import ValidationError
from series_batch.domain.types import (
    CalendarCadence,
    DaySchedules,
    Frequency,
    RecurringSeries,
    SimpleDays,
    VisitSlot,
)


def ui_weekday(day: date) -> int:
    """Weekday index with 0 = Sunday ... 6 = Saturday."""
    return (day.weekday() + 1) % 7


def add_months(start: date, months: int) -> date:
    """``start`` plus ``months`` calendar months, clamped to the month end."""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(start.day, last_day))


# ---------------------------------------------------------------------------
# Occurrence generators (unbounded; the caller slices)
# ---------------------------------------------------------------------------


def _weekly_occurrences(
    start: date, times_by_weekday: dict[int, tuple[time, ...]]
) -> Iterator[tuple[date, time]]:
    for offset in count():
        day = start + timedelta(days=offset)
        for visit_time in times_by_weekday.get(ui_weekday(day), ()):
            yield day, visit_time


def _calendar_occurrences(
    start: date, frequency: Frequency, visit_times: tuple[time, ...]
) -> Iterator[tuple[date, time]]:
    for step in count():
        if frequency is Frequency.MONTHLY:
            day = add_months(start, step)
        else:
            day = start + timedelta(days=step)
        for visit_time in visit_times:
            yield day, visit_time


def _occurrences(series: RecurringSeries) -> Iterator[tuple[date, time]]:
    schedule = series.schedule
    if isinstance(schedule, DaySchedules):
        times_by_weekday = {d.day_of_week: d.visit_times for d in schedule.days if d.visit_times}
    elif isinstance(schedule, SimpleDays):
        times_by_weekday = {day: schedule.visit_times for day in schedule.days}
    elif isinstance(schedule, CalendarCadence):
        if not schedule.visit_times:
            raise ValidationError("schedule", "no visit times configured")
        return _calendar_occurrences(series.start_date, series.frequency, schedule.visit_times)
    else:
        raise ValidationError("schedule", f"unsupported schedule {type(schedule).__name__}")

    if not times_by_weekday:
        raise ValidationError("schedule", "weekly series has no enabled weekday")
    return _weekly_occurrences(series.start_date, times_by_weekday)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def expand_series(series: RecurringSeries) -> list[VisitSlot]:
    """Expand ``series`` into its ordered, numbered visit slots."""
    if series.number_of_visits < 1:
        raise ValidationError("number_of_visits", "must be at least 1")

    tz = ZoneInfo(series.time_zone)
    return [
        VisitSlot(
            series_id=series.series_id,
            visit_number=number,
            scheduled_date=datetime.combine(day, visit_time, tzinfo=tz),
        )
        for number, (day, visit_time) in enumerate(
            islice(_occurrences(series), series.number_of_visits), start=1
        )
    ]
