"""
Series validation -- the single gate between a raw request and a series.

Contract:
    ``build_series(request, series_id=..., config=...)`` returns a fully
    typed ``RecurringSeries`` or raises ``ValidationError`` naming the
    offending field.  The schedule variant (``DaySchedules``,
    ``SimpleDays`` or ``CalendarCadence``) is chosen here, once, so the
    expander never inspects optional fields.

Invariants enforced:
    - A weekly series has at least one enabled weekday.  This is checked at
      creation time, never deferred to expansion.
    - A day schedule counts as enabled only when its flag is set and it
      lists at least one visit time.  When no day schedule is enabled the
      request falls back to ``preferred_days``.
    - Multiple simple visits per day are spaced ``visit_interval_minutes``
      apart and must all fall on the same calendar day.
    - The time zone resolves to a real IANA zone.
"""

from __future__ import annotations

import re
from dataclasses import MISSING, fields
from datetime import date, datetime, time, timedelta
from typing import Any, Mapping
from uuid import UUID
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from series_config.schema import SchedulingConfig
from series_kernel.exceptions import ValidationError
from series_batch.domain.pricing import series_total, to_price
from series_batch.domain.types import (
    CalendarCadence,
    DaySchedule,
    DayScheduleRequest,
    DaySchedules,
    Frequency,
    RecurringSeries,
    Schedule,
    SeriesRequest,
    SimpleDays,
)

_TIME_24H = re.compile(r"^(\d{1,2}):(\d{2})$")
_TIME_12H = re.compile(r"^(\d{1,2}):(\d{2})\s*([AaPp][Mm])$")


def parse_visit_time(value: str, field: str = "preferred_time") -> time:
    """Parse ``HH:MM`` (24h) or ``H:MM AM/PM`` into a ``time``."""
    if isinstance(value, time):
        return value
    if not isinstance(value, str):
        raise ValidationError(field, f"expected a time string, got {value!r}")
    text = value.strip()

    match = _TIME_12H.match(text)
    if match:
        hour, minute, meridiem = int(match.group(1)), int(match.group(2)), match.group(3).upper()
        if not 1 <= hour <= 12 or minute > 59:
            raise ValidationError(field, f"invalid time {value!r}")
        hour = hour % 12 + (12 if meridiem == "PM" else 0)
        return time(hour, minute)

    match = _TIME_24H.match(text)
    if match:
        hour, minute = int(match.group(1)), int(match.group(2))
        if hour > 23 or minute > 59:
            raise ValidationError(field, f"invalid time {value!r}")
        return time(hour, minute)

    raise ValidationError(field, f"expected HH:MM or H:MM AM/PM, got {value!r}")


def spaced_times(first: time, count: int, interval_minutes: int) -> tuple[time, ...]:
    """``count`` times starting at ``first``, ``interval_minutes`` apart, same day."""
    anchor = datetime.combine(date(2000, 1, 1), first)
    times = []
    for k in range(count):
        moment = anchor + timedelta(minutes=interval_minutes * k)
        if moment.date() != anchor.date():
            raise ValidationError(
                "visits_per_day",
                f"{count} visits {interval_minutes} minutes apart from "
                f"{first.strftime('%H:%M')} cross midnight",
            )
        times.append(moment.time())
    return tuple(times)


# ---------------------------------------------------------------------------
# Field checks
# ---------------------------------------------------------------------------


def _require_text(value: object, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(field, "must be a non-empty string")
    return value.strip()


def _require_positive_int(value: object, field: str) -> int:
    if not isinstance(value, int) or isinstance(value, bool) or value < 1:
        raise ValidationError(field, f"must be an integer >= 1, got {value!r}")
    return value


def _require_weekday(value: object, field: str) -> int:
    if not isinstance(value, int) or isinstance(value, bool) or not 0 <= value <= 6:
        raise ValidationError(field, f"weekday must be 0 (Sunday) to 6 (Saturday), got {value!r}")
    return value


def _resolve_time_zone(name: str | None, default: str) -> str:
    candidate = name or default
    try:
        ZoneInfo(candidate)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError("time_zone", f"unknown time zone {candidate!r}") from None
    return candidate


def _enabled_day_schedules(
    requests: tuple[DayScheduleRequest, ...],
) -> tuple[DaySchedule, ...]:
    seen: set[int] = set()
    enabled = []
    for req in requests:
        day = _require_weekday(req.day_of_week, "day_schedules.day_of_week")
        if day in seen:
            raise ValidationError("day_schedules", f"weekday {day} listed more than once")
        seen.add(day)
        if not req.enabled or not req.visit_times:
            continue
        times = sorted(
            parse_visit_time(t, f"day_schedules[{day}].visit_times") for t in req.visit_times
        )
        if len(set(times)) != len(times):
            raise ValidationError(f"day_schedules[{day}].visit_times", "duplicate visit time")
        enabled.append(DaySchedule(day_of_week=day, visit_times=tuple(times)))
    return tuple(sorted(enabled, key=lambda d: d.day_of_week))


def _choose_schedule(
    request: SeriesRequest,
    frequency: Frequency,
    preferred_time: time,
    visits_per_day: int,
    config: SchedulingConfig,
) -> Schedule:
    day_schedules = _enabled_day_schedules(tuple(request.day_schedules))
    simple_times = spaced_times(preferred_time, visits_per_day, config.visit_interval_minutes)

    if frequency is not Frequency.WEEKLY:
        return CalendarCadence(visit_times=simple_times)

    if day_schedules:
        return DaySchedules(days=day_schedules)

    days = tuple(sorted({_require_weekday(d, "preferred_days") for d in request.preferred_days}))
    if not days:
        raise ValidationError(
            "preferred_days", "a weekly series needs at least one enabled weekday"
        )
    return SimpleDays(days=days, visit_times=simple_times)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_series(
    request: SeriesRequest,
    *,
    series_id: UUID,
    config: SchedulingConfig | None = None,
    created_at: datetime | None = None,
) -> RecurringSeries:
    """Validate ``request`` and return the immutable series it describes."""
    config = config or SchedulingConfig()

    client_id = _require_text(request.client_id, "client_id")
    service_type = _require_text(request.service_type, "service_type")
    number_of_visits = _require_positive_int(request.number_of_visits, "number_of_visits")
    duration_minutes = _require_positive_int(request.duration_minutes, "duration_minutes")
    visits_per_day = _require_positive_int(request.visits_per_day, "visits_per_day")

    try:
        frequency = Frequency(request.frequency)
    except ValueError:
        raise ValidationError(
            "frequency", f"must be one of daily, weekly, monthly, got {request.frequency!r}"
        ) from None

    if not isinstance(request.start_date, date) or isinstance(request.start_date, datetime):
        raise ValidationError("start_date", f"must be a calendar date, got {request.start_date!r}")

    preferred_time = parse_visit_time(request.preferred_time)
    time_zone = _resolve_time_zone(request.time_zone, config.default_time_zone)
    base_price = to_price(request.base_price)
    schedule = _choose_schedule(request, frequency, preferred_time, visits_per_day, config)

    return RecurringSeries(
        series_id=series_id,
        client_id=client_id,
        service_type=service_type,
        number_of_visits=number_of_visits,
        frequency=frequency,
        start_date=request.start_date,
        preferred_time=preferred_time,
        time_zone=time_zone,
        schedule=schedule,
        duration_minutes=duration_minutes,
        base_price=base_price,
        total_price=series_total(
            base_price, number_of_visits, config.discount_for(frequency.value)
        ),
        visits_per_day=visits_per_day,
        pets=tuple(str(p) for p in request.pets),
        preferred_sitter_id=request.preferred_sitter_id or None,
        assigned_sitter_id=request.assigned_sitter_id or None,
        special_instructions=request.special_instructions or None,
        address=request.address or None,
        created_at=created_at,
    )


def request_from_mapping(data: Mapping[str, Any]) -> SeriesRequest:
    """Build a ``SeriesRequest`` from a plain mapping (YAML or JSON payload).

    Only shape is checked here; ``build_series`` validates the values.
    """
    if not isinstance(data, Mapping):
        raise ValidationError("request", f"expected a mapping, got {type(data).__name__}")
    known = {f.name for f in fields(SeriesRequest)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValidationError("request", f"unknown field(s): {', '.join(unknown)}")

    values = dict(data)
    start = values.get("start_date")
    if isinstance(start, str):
        try:
            values["start_date"] = date.fromisoformat(start)
        except ValueError:
            raise ValidationError("start_date", f"expected YYYY-MM-DD, got {start!r}") from None
    if "base_price" in values:
        values["base_price"] = to_price(values["base_price"])
    for name in ("preferred_days", "pets"):
        if name in values:
            values[name] = tuple(values[name] or ())
    if "day_schedules" in values:
        values["day_schedules"] = tuple(
            DayScheduleRequest(
                day_of_week=entry.get("day_of_week"),
                enabled=bool(entry.get("enabled", True)),
                visit_times=tuple(entry.get("visit_times") or ()),
            )
            for entry in values["day_schedules"] or ()
        )
    missing = [
        f.name for f in fields(SeriesRequest)
        if f.name not in values and f.default is MISSING
    ]
    if missing:
        raise ValidationError("request", f"missing field(s): {', '.join(missing)}")
    return SeriesRequest(**values)
