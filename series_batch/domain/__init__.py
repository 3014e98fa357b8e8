"""Pure scheduling domain: types, expansion, grouping, state machine, timing."""

from series_batch.domain.expander import expand_series
from series_batch.domain.grouper import group_visit_slots
from series_batch.domain.invoice_timing import compute_invoice_timing
from series_batch.domain.validation import build_series

__all__ = [
    "build_series",
    "compute_invoice_timing",
    "expand_series",
    "group_visit_slots",
]
