"""
ORM model for recurring series.

Contract:
    ``RecurringSeriesModel`` persists one series.  ``to_dto()`` is the
    strict deserialization boundary: a stored schedule that does not parse
    into exactly one schedule variant raises ``ValueError`` instead of being
    coerced.

Architecture: series_batch/models. Imports from series_kernel.db.base only
(plus the domain types it converts to).
"""

from __future__ import annotations

from datetime import date, datetime, time
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import JSON, Date, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from series_kernel.db.base import TrackedBase, as_utc, from_storage

if TYPE_CHECKING:
    from series_batch.domain.types import RecurringSeries, Schedule


def _fmt_time(value: time) -> str:
    return value.strftime("%H:%M")


def _parse_time(value: Any) -> time:
    if not isinstance(value, str):
        raise ValueError(f"stored visit time must be a string, got {value!r}")
    return time.fromisoformat(value)


def schedule_to_json(schedule: Schedule) -> dict:
    from series_batch.domain.types import CalendarCadence, DaySchedules, SimpleDays

    if isinstance(schedule, DaySchedules):
        return {
            "kind": DaySchedules.kind,
            "days": [
                {
                    "day_of_week": d.day_of_week,
                    "visit_times": [_fmt_time(t) for t in d.visit_times],
                }
                for d in schedule.days
            ],
        }
    if isinstance(schedule, SimpleDays):
        return {
            "kind": SimpleDays.kind,
            "days": list(schedule.days),
            "visit_times": [_fmt_time(t) for t in schedule.visit_times],
        }
    if isinstance(schedule, CalendarCadence):
        return {
            "kind": CalendarCadence.kind,
            "visit_times": [_fmt_time(t) for t in schedule.visit_times],
        }
    raise ValueError(f"unsupported schedule type {type(schedule).__name__}")


def schedule_from_json(data: Any) -> Schedule:
    from series_batch.domain.types import (
        CalendarCadence,
        DaySchedule,
        DaySchedules,
        SimpleDays,
    )

    if not isinstance(data, dict):
        raise ValueError(f"stored schedule must be an object, got {type(data).__name__}")
    kind = data.get("kind")
    if kind == DaySchedules.kind:
        return DaySchedules(
            days=tuple(
                DaySchedule(
                    day_of_week=int(d["day_of_week"]),
                    visit_times=tuple(_parse_time(t) for t in d["visit_times"]),
                )
                for d in data["days"]
            )
        )
    if kind == SimpleDays.kind:
        return SimpleDays(
            days=tuple(int(d) for d in data["days"]),
            visit_times=tuple(_parse_time(t) for t in data["visit_times"]),
        )
    if kind == CalendarCadence.kind:
        return CalendarCadence(
            visit_times=tuple(_parse_time(t) for t in data["visit_times"])
        )
    raise ValueError(f"unknown stored schedule kind {kind!r}")


class RecurringSeriesModel(TrackedBase):
    """Persistent recurring series. Write-once apart from sitter and status."""

    __tablename__ = "recurring_series"

    __table_args__ = (
        Index("ix_recurring_series_client", "client_id"),
        Index("ix_recurring_series_status", "status"),
    )

    client_id: Mapped[str] = mapped_column(String(100), nullable=False)
    service_type: Mapped[str] = mapped_column(String(100), nullable=False)
    number_of_visits: Mapped[int] = mapped_column(Integer, nullable=False)
    frequency: Mapped[str] = mapped_column(String(20), nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    preferred_time: Mapped[str] = mapped_column(String(5), nullable=False)
    time_zone: Mapped[str] = mapped_column(String(64), nullable=False)
    visits_per_day: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    schedule: Mapped[dict] = mapped_column(JSON, nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    base_price: Mapped[Decimal] = mapped_column(nullable=False)
    total_price: Mapped[Decimal] = mapped_column(nullable=False)
    pets: Mapped[list | None] = mapped_column(JSON, nullable=True)
    preferred_sitter_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    assigned_sitter_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    special_instructions: Mapped[str | None] = mapped_column(Text, nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    cancelled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    def to_dto(self) -> RecurringSeries:
        from series_batch.domain.types import Frequency, RecurringSeries, SeriesStatus

        return RecurringSeries(
            series_id=self.id,
            client_id=self.client_id,
            service_type=self.service_type,
            number_of_visits=self.number_of_visits,
            frequency=Frequency(self.frequency),
            start_date=self.start_date,
            preferred_time=_parse_time(self.preferred_time),
            time_zone=self.time_zone,
            schedule=schedule_from_json(self.schedule),
            duration_minutes=self.duration_minutes,
            base_price=Decimal(self.base_price),
            total_price=Decimal(self.total_price),
            visits_per_day=self.visits_per_day,
            pets=tuple(self.pets or ()),
            preferred_sitter_id=self.preferred_sitter_id,
            assigned_sitter_id=self.assigned_sitter_id,
            special_instructions=self.special_instructions,
            address=self.address,
            status=SeriesStatus(self.status),
            created_at=from_storage(self.created_at),
        )

    @classmethod
    def from_dto(cls, dto: RecurringSeries) -> RecurringSeriesModel:
        model = cls(
            id=dto.series_id,
            client_id=dto.client_id,
            service_type=dto.service_type,
            number_of_visits=dto.number_of_visits,
            frequency=dto.frequency.value,
            start_date=dto.start_date,
            preferred_time=_fmt_time(dto.preferred_time),
            time_zone=dto.time_zone,
            visits_per_day=dto.visits_per_day,
            schedule=schedule_to_json(dto.schedule),
            duration_minutes=dto.duration_minutes,
            base_price=dto.base_price,
            total_price=dto.total_price,
            pets=list(dto.pets) or None,
            preferred_sitter_id=dto.preferred_sitter_id,
            assigned_sitter_id=dto.assigned_sitter_id,
            special_instructions=dto.special_instructions,
            address=dto.address,
            status=dto.status.value,
        )
        if dto.created_at is not None:
            model.created_at = as_utc(dto.created_at)
            model.updated_at = as_utc(dto.created_at)
        return model
