"""
Configuration Loader (``series_config.loader``).

Responsibility
--------------
Loads a YAML configuration file and parses it into a frozen
``SchedulingConfig``.  Runtime callers go through
``series_config.get_active_config()``.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Unknown keys or out-of-range values  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from series_config.schema import FeatureFlags, SchedulingConfig

_INT_KEYS = (
    "grace_period_days",
    "max_snooze_days",
    "window_days",
    "visit_interval_minutes",
    "bulk_max_workers",
    "approval_lease_seconds",
)
_KNOWN_KEYS = frozenset(_INT_KEYS) | {
    "default_time_zone",
    "recurring_discounts",
    "flags",
}


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top-level YAML must be a mapping")
    return data


def parse_decimal(value: Any, key: str) -> Decimal:
    """Parse a Decimal from a YAML scalar (string or number)."""
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"{key}: cannot parse decimal from {value!r}") from None


def parse_flags(data: Any) -> FeatureFlags:
    """Parse the ``flags`` mapping; every value must be a boolean."""
    if data is None:
        return FeatureFlags()
    if not isinstance(data, dict):
        raise ValueError("flags must be a mapping of name -> bool")
    for name, value in data.items():
        if not isinstance(value, bool):
            raise ValueError(f"flags.{name} must be a boolean, got {value!r}")
    return FeatureFlags(values=dict(data))


def parse_config(data: dict[str, Any]) -> SchedulingConfig:
    """
    Parse a ``SchedulingConfig`` from a dict.

    Missing keys take their defaults; unknown keys are rejected so a typo
    cannot silently fall back to a default.
    """
    unknown = set(data) - _KNOWN_KEYS
    if unknown:
        raise ValueError(f"Unknown configuration keys: {sorted(unknown)}")

    kwargs: dict[str, Any] = {}
    for key in _INT_KEYS:
        if key in data:
            kwargs[key] = data[key]
    if "default_time_zone" in data:
        kwargs["default_time_zone"] = str(data["default_time_zone"])
    if "recurring_discounts" in data:
        raw = data["recurring_discounts"] or {}
        kwargs["recurring_discounts"] = {
            str(freq): parse_decimal(value, f"recurring_discounts.{freq}")
            for freq, value in raw.items()
        }
    kwargs["flags"] = parse_flags(data.get("flags"))
    return SchedulingConfig(**kwargs)


def load_config(path: Path) -> SchedulingConfig:
    """Load and parse a configuration file."""
    return parse_config(load_yaml_file(Path(path)))


def compute_checksum(config: SchedulingConfig) -> str:
    """Deterministic SHA-256 of the effective configuration."""
    canonical = {
        "grace_period_days": config.grace_period_days,
        "max_snooze_days": config.max_snooze_days,
        "window_days": config.window_days,
        "visit_interval_minutes": config.visit_interval_minutes,
        "bulk_max_workers": config.bulk_max_workers,
        "approval_lease_seconds": config.approval_lease_seconds,
        "default_time_zone": config.default_time_zone,
        "recurring_discounts": {
            k: str(v) for k, v in sorted(config.recurring_discounts.items())
        },
        "flags": dict(sorted(config.flags.values.items())),
    }
    encoded = json.dumps(canonical, sort_keys=True).encode()
    return hashlib.sha256(encoded).hexdigest()
