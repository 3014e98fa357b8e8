#!/usr/bin/env python3
"""
Preview how a recurring series request expands into visits and batches.

Reads a series request from YAML, validates it, expands it and groups the
visits into approval windows.  Nothing is written to a database.

Usage:
    python3 scripts/preview_series.py request.yaml
    python3 scripts/preview_series.py request.yaml --config my_config.yaml
    python3 scripts/preview_series.py request.yaml --approve-on 2024-01-02

Example request (times must be quoted):

    client_id: client-42
    service_type: dog_walk
    number_of_visits: 6
    frequency: weekly
    start_date: 2024-01-01
    preferred_time: "09:00"
    preferred_days: [1, 3]
    base_price: "25.00"
    time_zone: America/New_York
"""

import argparse
import sys
from datetime import date, datetime, time
from pathlib import Path
from uuid import uuid4

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from series_batch.domain.expander import expand_series
from series_batch.domain.grouper import group_visit_slots
from series_batch.domain.invoice_timing import compute_invoice_timing
from series_batch.domain.validation import build_series, request_from_mapping
from series_config import get_active_config
from series_config.loader import load_yaml_file
from series_kernel.exceptions import SeriesKernelError

W = 72


def preview(request_path: Path, config_path: Path | None, approve_on: date | None) -> int:
    config = get_active_config(config_path)
    request = request_from_mapping(load_yaml_file(request_path))
    series = build_series(request, series_id=uuid4(), config=config)
    slots = expand_series(series)
    batches = group_visit_slots(series, slots, config.window_days)

    print("=" * W)
    print(f"  {series.service_type} for {series.client_id}")
    print(f"  {series.frequency.value}, {series.number_of_visits} visits from "
          f"{series.start_date.isoformat()} ({series.time_zone})")
    print(f"  schedule: {series.schedule.kind}")
    print(f"  total price: {series.total_price}")
    print("=" * W)

    for batch in batches:
        print()
        print(f"  Batch {batch.batch_index}  window starts {batch.scheduled_for.isoformat()}"
              f"  ({batch.visit_count} visits)")
        print("  " + "-" * (W - 2))
        for visit in batch.visits:
            print(f"    #{visit.visit_number:<4} {visit.scheduled_date.strftime('%a %Y-%m-%d %H:%M %Z')}")
        if approve_on is not None:
            approval = datetime.combine(approve_on, time(12, 0), tzinfo=batch.tz)
            timing = compute_invoice_timing(batch, approval, config.grace_period_days)
            floor = "  (floored at last visit + 1)" if timing.floor_applied else ""
            print(f"    invoice due {timing.invoice_due_date.isoformat()}{floor}")

    print()
    print(f"  {len(slots)} visits in {len(batches)} batches")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__.split("\n\n")[0].strip())
    parser.add_argument("request", type=Path, help="YAML file with the series request")
    parser.add_argument("--config", type=Path, default=None, help="scheduling config YAML")
    parser.add_argument(
        "--approve-on",
        type=date.fromisoformat,
        default=None,
        help="show invoice due dates for approval on this date (YYYY-MM-DD)",
    )
    args = parser.parse_args()

    if not args.request.is_file():
        print(f"Error: file not found: {args.request}", file=sys.stderr)
        return 1

    try:
        return preview(args.request, args.config, args.approve_on)
    except SeriesKernelError as exc:
        print(f"  ERROR [{exc.code}]: {exc}", file=sys.stderr)
        return 2
    except ValueError as exc:
        print(f"  ERROR: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
