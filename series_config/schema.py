"""
Scheduling configuration schema.

Frozen dataclasses parsed from YAML by ``series_config.loader``.  The
orchestrator and the series service receive a ``SchedulingConfig`` at
construction; nothing in the core reads files or environment variables.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from types import MappingProxyType
from typing import Mapping

# ---------------------------------------------------------------------------
# Feature flags
# ---------------------------------------------------------------------------

RETRY_FAILED_BATCHES = "retry_failed_batches"

DEFAULT_FLAGS: Mapping[str, bool] = MappingProxyType({
    RETRY_FAILED_BATCHES: True,
})


@dataclass(frozen=True)
class FeatureFlags:
    """Read-only flag lookup injected at construction time."""

    values: Mapping[str, bool] = field(default_factory=lambda: dict(DEFAULT_FLAGS))

    def __post_init__(self) -> None:
        merged = dict(DEFAULT_FLAGS)
        merged.update(self.values)
        object.__setattr__(self, "values", MappingProxyType(merged))

    def is_enabled(self, name: str) -> bool:
        """Return the flag value; unknown flags are off."""
        return bool(self.values.get(name, False))


# ---------------------------------------------------------------------------
# Scheduling constants
# ---------------------------------------------------------------------------

DEFAULT_RECURRING_DISCOUNTS: Mapping[str, Decimal] = MappingProxyType({
    "daily": Decimal("0"),
    "weekly": Decimal("0"),
    "monthly": Decimal("0.10"),
})


@dataclass(frozen=True)
class SchedulingConfig:
    """Named scheduling constants.

    ``grace_period_days`` and ``max_snooze_days`` default to the values
    administrators see in the approval queue (3 and 14).  ``approval_lease_seconds``
    is how long an approval's claim on a batch keeps other approvals out;
    after that a stalled claim may be taken over.
    """

    grace_period_days: int = 3
    max_snooze_days: int = 14
    window_days: int = 7
    visit_interval_minutes: int = 60
    bulk_max_workers: int = 4
    approval_lease_seconds: int = 900
    default_time_zone: str = "UTC"
    recurring_discounts: Mapping[str, Decimal] = field(
        default_factory=lambda: dict(DEFAULT_RECURRING_DISCOUNTS)
    )
    flags: FeatureFlags = field(default_factory=FeatureFlags)

    def __post_init__(self) -> None:
        for name in (
            "grace_period_days",
            "max_snooze_days",
            "window_days",
            "visit_interval_minutes",
            "bulk_max_workers",
            "approval_lease_seconds",
        ):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value < 1:
                raise ValueError(f"{name} must be a positive integer, got {value!r}")
        discounts = dict(DEFAULT_RECURRING_DISCOUNTS)
        discounts.update(self.recurring_discounts)
        for frequency, fraction in discounts.items():
            if not Decimal("0") <= fraction < Decimal("1"):
                raise ValueError(
                    f"recurring discount for {frequency} must be in [0, 1), got {fraction}"
                )
        object.__setattr__(self, "recurring_discounts", MappingProxyType(discounts))

    def discount_for(self, frequency: str) -> Decimal:
        return self.recurring_discounts.get(frequency, Decimal("0"))
