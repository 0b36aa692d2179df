from __future__ import annotations

import argparse
from typing import List, Optional

from agencyops.db import close_pool, initialize_database, open_pool
from agencyops.repos.project_expense_repo import PostgresPeriodRecordStore
from agencyops.services.expense_aggregation import aggregate
from agencyops.services.finance_errors import ConcurrentEditConflict
from agencyops.services.finance_sources import PeriodRecordStore

DERIVED_FIELDS = ("total_expenses", "margin_percent", "category_totals", "smm_expenses", "production_expenses", "fot_expenses")


def recalculate(store: PeriodRecordStore, project_ids: List[str], *, dry_run: bool = False) -> int:
    """Re-run aggregation over stored records and persist the ones whose totals moved."""
    changed = 0
    for project_id in project_ids:
        for record in store.list_periods(project_id):
            updated = aggregate(record)
            if all(getattr(updated, name) == getattr(record, name) for name in DERIVED_FIELDS):
                continue
            changed += 1
            print(
                f"{project_id} period {record.month_number}: "
                f"total {record.total_expenses:.2f} -> {updated.total_expenses:.2f}"
            )
            if dry_run:
                continue
            try:
                store.save_period(updated, expected_version=record.version)
            except ConcurrentEditConflict:
                print(f"{project_id} period {record.month_number} changed while recalculating; skipped")
    return changed


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Recalculate stored project expense totals from their expense lines.")
    parser.add_argument("--project-id", default=None, help="Only recalculate this project (default: every project).")
    parser.add_argument("--dry-run", action="store_true", help="Preview changes without writing to the database.")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    open_pool()
    try:
        initialize_database()
        store = PostgresPeriodRecordStore()
        project_ids: Optional[List[str]] = [args.project_id] if args.project_id else store.list_project_ids()
        changed = recalculate(store, project_ids or [], dry_run=args.dry_run)
    finally:
        close_pool()
    suffix = " (dry run)" if args.dry_run else ""
    print(f"Recalculated {changed} expense records{suffix}.")


if __name__ == "__main__":
    main()
