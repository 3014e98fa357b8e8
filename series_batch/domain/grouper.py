"""
Batch Grouper -- partition visit slots into approval batches.

Contract:
    ``group_visit_slots(series, slots, window_days)`` returns batches in
    ``batch_index`` order, all ``scheduled``, with approval and invoice
    dates unset.

Invariants enforced:
    - Windows are ``window_days`` calendar days measured from the first
      slot's local date; ``scheduled_for`` is the window boundary, not the
      first visit in it.
    - Windows without visits produce no batch, so ``batch_index`` is dense.
    - Every slot lands in exactly one batch; visit counts sum to N.
    - Batch ids are derived from ``(series_id, batch_index)`` so re-grouping
      the same series yields the same identifiers.

Idempotency across partial failures is enforced by the caller, which runs
grouping inside the series-creation transaction and returns existing
batches when any are already stored.
"""

from __future__ import annotations

from datetime import timedelta
from itertools import groupby
from uuid import UUID, uuid5

from series_kernel.exceptions import ValidationError
from series_batch.domain.types import (
    BatchStatus,
    RecurringBatch,
    RecurringBatchVisit,
    RecurringSeries,
    VisitSlot,
)


def batch_id_for(series_id: UUID, batch_index: int) -> UUID:
    """Deterministic batch identifier."""
    return uuid5(series_id, f"batch-{batch_index}")


def _check_numbering(slots: list[VisitSlot]) -> None:
    numbers = [s.visit_number for s in slots]
    if numbers != list(range(1, len(numbers) + 1)):
        raise ValidationError("visit_slots", "visit numbers must run 1..N without gaps")


def group_visit_slots(
    series: RecurringSeries,
    slots: list[VisitSlot],
    window_days: int = 7,
) -> list[RecurringBatch]:
    """Group ``slots`` into contiguous ``window_days`` approval windows."""
    if window_days < 1:
        raise ValidationError("window_days", f"must be >= 1, got {window_days}")
    if not slots:
        return []
    _check_numbering(slots)

    anchor = slots[0].local_date

    def window_of(slot: VisitSlot) -> int:
        return (slot.local_date - anchor).days // window_days

    batches: list[RecurringBatch] = []
    for window, members in groupby(slots, key=window_of):
        index = len(batches)
        batches.append(
            RecurringBatch(
                batch_id=batch_id_for(series.series_id, index),
                series_id=series.series_id,
                client_id=series.client_id,
                service_type=series.service_type,
                batch_index=index,
                status=BatchStatus.SCHEDULED,
                scheduled_for=anchor + timedelta(days=window * window_days),
                time_zone=series.time_zone,
                visits=tuple(
                    RecurringBatchVisit(
                        visit_number=slot.visit_number,
                        scheduled_date=slot.scheduled_date,
                    )
                    for slot in members
                ),
            )
        )
    return batches
