"""
Per-batch in-process mutual exclusion.

``BatchLockRegistry.hold(batch_id)`` serializes callers that touch the same
batch and lets different batches proceed in parallel.  Entries are
reference counted and dropped once no thread holds or waits on them.

Cross-process exclusion comes from the database (SELECT ... FOR UPDATE and
the batch version counter); this registry only covers threads sharing one
orchestrator.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Hashable, Iterator

from series_kernel.logging_config import get_logger

logger = get_logger("batch.locks")


class _Entry:
    __slots__ = ("lock", "refs")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.refs = 0


class BatchLockRegistry:
    """Keyed locks with no sharing between keys."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[Hashable, _Entry] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.refs += 1
            contended = entry.refs > 1

        if contended:
            logger.debug("batch_lock_wait", extra={"lock_key": str(key)})
        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._guard:
                entry.refs -= 1
                if entry.refs == 0:
                    del self._entries[key]

    def active_keys(self) -> int:
        """Number of keys currently held or awaited."""
        with self._guard:
            return len(self._entries)
