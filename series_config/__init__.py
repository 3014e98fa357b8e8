"""
series_config -- single public entrypoint for scheduling configuration.

Responsibility:
    ``get_active_config()`` resolves the configuration file (explicit path,
    then the ``SERIES_CONFIG_PATH`` environment variable, then the bundled
    ``sets/default.yaml``) and returns a frozen ``SchedulingConfig``.  The
    orchestrator receives the result by injection; it never reads files,
    environment variables or flags itself.

Audit relevance:
    Every call emits a ``series_config_loaded`` log entry with the source
    path and the configuration checksum.
"""

from __future__ import annotations

import os
from pathlib import Path

from series_config.loader import compute_checksum, load_config
from series_config.schema import (
    RETRY_FAILED_BATCHES,
    FeatureFlags,
    SchedulingConfig,
)
from series_kernel.logging_config import get_logger

__all__ = [
    "RETRY_FAILED_BATCHES",
    "FeatureFlags",
    "SchedulingConfig",
    "get_active_config",
]

_logger = get_logger("config")

CONFIG_PATH_ENV = "SERIES_CONFIG_PATH"
_DEFAULT_CONFIG_FILE = Path(__file__).parent / "sets" / "default.yaml"


def get_active_config(path: Path | str | None = None) -> SchedulingConfig:
    """Load the active scheduling configuration.

    Args:
        path: Explicit configuration file. Overrides the environment.

    Raises:
        FileNotFoundError: If the resolved file does not exist.
        ValueError: If the file contains unknown keys or invalid values.
    """
    if path is not None:
        source = Path(path)
    elif os.environ.get(CONFIG_PATH_ENV):
        source = Path(os.environ[CONFIG_PATH_ENV])
    else:
        source = _DEFAULT_CONFIG_FILE

    config = load_config(source)
    _logger.info(
        "series_config_loaded",
        extra={
            "source": str(source),
            "checksum": compute_checksum(config),
            "grace_period_days": config.grace_period_days,
            "max_snooze_days": config.max_snooze_days,
            "window_days": config.window_days,
        },
    )
    return config
