"""
Pytest fixtures for the recurring series scheduler test suite.

Provides:
- Structured logging configuration and a ``captured_logs`` fixture
- File-backed SQLite databases (one per test, under ``tmp_path``)
- A DeterministicClock, default SchedulingConfig and request factories
- Wired SeriesService and BatchOrchestrator instances

SQLite is file-backed rather than in-memory because the orchestrator opens
a fresh session per phase and the materializer commits per visit; every
session must see the others' commits.
"""

import json
import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from io import StringIO

import pytest
from sqlalchemy.orm import sessionmaker

from series_batch.domain.types import DayScheduleRequest, SeriesRequest
from series_batch.orchestrator import BatchOrchestrator
from series_batch.services.notifications import NullNotifier
from series_batch.services.series_service import SeriesService
from series_config.schema import SchedulingConfig
from series_kernel.db.engine import build_engine, create_tables
from series_kernel.domain.clock import DeterministicClock
from series_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)

# Monday 2024-01-01 12:00 UTC
FIXED_NOW = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG, stream=StringIO())
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture series_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, orchestrator):
            orchestrator.approve_batch(batch_id)
            logs = captured_logs()
            assert any(r["message"] == "batch_approved" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("series_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def engine(tmp_path):
    eng = build_engine(f"sqlite:///{tmp_path / 'series.db'}")
    create_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def clock():
    return DeterministicClock(FIXED_NOW)


@pytest.fixture
def config():
    return SchedulingConfig()


# =============================================================================
# Request factories
# =============================================================================


@pytest.fixture
def make_request():
    """Factory for SeriesRequest with a Mon/Wed weekly default."""

    def _make(**overrides) -> SeriesRequest:
        values = dict(
            client_id="client-1",
            service_type="dog_walk",
            number_of_visits=6,
            frequency="weekly",
            start_date=date(2024, 1, 1),
            preferred_time="09:00",
            preferred_days=(1, 3),
            base_price=Decimal("25.00"),
            duration_minutes=30,
            pets=("pet-rex",),
            time_zone="UTC",
        )
        values.update(overrides)
        return SeriesRequest(**values)

    return _make


@pytest.fixture
def day_schedule():
    def _make(day_of_week, *times, enabled=True) -> DayScheduleRequest:
        return DayScheduleRequest(
            day_of_week=day_of_week, enabled=enabled, visit_times=tuple(times),
        )

    return _make


# =============================================================================
# Service fixtures
# =============================================================================


@pytest.fixture
def series_service(session_factory, config, clock):
    return SeriesService(session_factory, config=config, clock=clock)


@pytest.fixture
def orchestrator(session_factory, config, clock):
    return BatchOrchestrator(
        session_factory,
        notifier=NullNotifier(),
        config=config,
        clock=clock,
    )


@pytest.fixture
def weekly_series(series_service, make_request):
    """A stored Mon/Wed series of 6 visits with its three batches."""
    series = series_service.create_series(make_request())
    batches = series_service.get_series_batches(series.series_id)
    return series, batches
