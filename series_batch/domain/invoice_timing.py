"""
Invoice Timing Calculator.

``invoice_due_date = approval date + grace period``, floored at the day
after the batch's last visit so a client is never invoiced before the
service window ends.  Always recomputed from the batch's current visit
dates; snoozed batches get a later floor automatically.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from series_kernel.exceptions import ValidationError
from series_batch.domain.types import InvoiceTiming, RecurringBatch


def compute_invoice_timing(
    batch: RecurringBatch,
    approval_date: datetime,
    grace_period_days: int = 3,
) -> InvoiceTiming:
    """Derive invoice dates for ``batch`` approved at ``approval_date``.

    Args:
        batch: The batch being approved; its visits set the floor.
        approval_date: Timezone-aware approval instant.
        grace_period_days: Days between approval and the due date.

    Returns:
        InvoiceTiming with dates expressed in the batch's time zone.
    """
    if approval_date.tzinfo is None:
        raise ValidationError("approval_date", "must be timezone-aware")
    if grace_period_days < 1:
        raise ValidationError("grace_period_days", f"must be >= 1, got {grace_period_days}")
    if not batch.visits:
        raise ValidationError("visits", f"batch {batch.batch_id} has no visits")

    invoice_date = approval_date.astimezone(batch.tz).date()
    graced = invoice_date + timedelta(days=grace_period_days)
    floor = batch.last_visit_date + timedelta(days=1)

    return InvoiceTiming(
        approval_date=approval_date,
        invoice_date=invoice_date,
        invoice_due_date=max(graced, floor),
        floor_applied=floor > graced,
    )
