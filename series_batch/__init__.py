"""
series_batch -- Recurring booking series scheduling and weekly approval batches.

Expands a recurring service agreement into dated visit slots, groups the
slots into approval batches, and governs the batch lifecycle that gates
booking materialization and invoicing behind administrator review.

Architecture:
    series_batch/ sits above series_kernel and series_config.
    domain/    pure functions and frozen DTOs, zero I/O
    models/    ORM models; the only place raw rows become typed DTOs
    services/  repository, locks, materializer, notifications, series service
    orchestrator.py  the approve / reject / snooze / bulk-approve facade
"""
