from __future__ import annotations

import logging
from datetime import datetime
from time import perf_counter
from typing import Dict, Mapping, Optional

from ..models import BillingPeriod, DynamicExpenseItem, ExpensePeriodRecord
from .expense_categories import CONTENT, PRODUCTION, CategoryRegistry
from .finance_errors import SyncUnavailable
from .finance_sources import ServiceUsage, UsageSource, UsageSnapshot

logger = logging.getLogger(__name__)

LEGACY_CONTENT_KEY = "legacy_content"
LEGACY_PRODUCTION_KEY = "legacy_production"


def migrate_legacy(record: ExpensePeriodRecord, now: datetime) -> ExpensePeriodRecord:
    """Turn pre-dynamic rollups into manual dynamic entries, once.

    Records that already carry dynamic entries are returned untouched.
    """
    if not record.is_legacy:
        return record
    entries: Dict[str, DynamicExpenseItem] = {}
    if record.smm_expenses > 0:
        entries[LEGACY_CONTENT_KEY] = DynamicExpenseItem(
            service_name="Content (legacy total)",
            category=CONTENT,
            count=1,
            rate=record.smm_expenses,
        )
    if record.production_expenses > 0:
        entries[LEGACY_PRODUCTION_KEY] = DynamicExpenseItem(
            service_name="Production (legacy total)",
            category=PRODUCTION,
            count=1,
            rate=record.production_expenses,
        )
    logger.info(
        "Migrated legacy expenses of project %s period %s into %d dynamic entries",
        record.project_id,
        record.month_number,
        len(entries),
    )
    return record.model_copy(update={"dynamic_expenses": entries})


def merge_usage(
    existing: Mapping[str, DynamicExpenseItem],
    usage: Mapping[str, ServiceUsage],
    registry: CategoryRegistry,
    now: datetime,
    *,
    reset_overrides: bool = False,
) -> Dict[str, DynamicExpenseItem]:
    """Field-level merge of fetched usage into the stored lines.

    A count or rate edited after the line's last sync is kept; only the
    snapshot moves. Lines that were never synced and never edited (copied
    from the previous period, say) take the fetched values.
    """
    merged: Dict[str, DynamicExpenseItem] = {}

    for service_id in sorted(usage):
        fetched = usage[service_id]
        current = existing.get(service_id)
        if current is None or reset_overrides:
            count, rate = fetched.count, fetched.rate
            count_edited_at = rate_edited_at = None
        else:
            count = current.count if current.count_overridden else fetched.count
            rate = current.rate if current.rate_overridden else fetched.rate
            count_edited_at, rate_edited_at = current.count_edited_at, current.rate_edited_at
        merged[service_id] = DynamicExpenseItem(
            service_name=fetched.service_name,
            category=registry.category_for(fetched.service_name, fetched.job_title),
            count=count,
            rate=rate,
            synced_at=now,
            source_count=fetched.count,
            source_rate=fetched.rate,
            count_edited_at=count_edited_at,
            rate_edited_at=rate_edited_at,
        )

    for service_id in sorted(existing):
        if service_id in merged:
            continue
        current = existing[service_id]
        if current.source_count is None and current.source_rate is None:
            # never synced: manual line, not ours to touch
            merged[service_id] = current
            continue
        # dropped out of the usage source: its synced usage is now zero
        keep_count = current.count_overridden and not reset_overrides
        source_rate = current.source_rate if current.source_rate is not None else current.rate
        update = {
            "count": current.count if keep_count else 0.0,
            "rate": source_rate if reset_overrides else current.rate,
            "source_count": 0.0,
            "source_rate": source_rate,
            "synced_at": now,
        }
        if reset_overrides:
            update.update(count_edited_at=None, rate_edited_at=None)
        merged[service_id] = current.model_copy(update=update)

    return merged


class DynamicExpenseSynchronizer:
    def __init__(self, usage_source: UsageSource, registry: CategoryRegistry) -> None:
        self._usage_source = usage_source
        self._registry = registry

    def fetch(self, project_id: str, window: BillingPeriod) -> UsageSnapshot:
        start = perf_counter()
        try:
            snapshot = dict(self._usage_source.get_service_usage_counts(project_id, window))
        except SyncUnavailable:
            raise
        except OSError as exc:
            raise SyncUnavailable(f"Usage counts unavailable: {exc}", source="usage") from exc
        elapsed = (perf_counter() - start) * 1000
        logger.debug(
            "fetch usage project_id=%s period=%s services=%s elapsed_ms=%.2f",
            project_id,
            window.month_number,
            len(snapshot),
            elapsed,
        )
        return snapshot

    def sync(
        self,
        record: ExpensePeriodRecord,
        usage: Mapping[str, ServiceUsage],
        now: datetime,
        *,
        reset_overrides: bool = False,
    ) -> ExpensePeriodRecord:
        """Merge a usage snapshot into ``record`` and return the new record.

        Counts and rates edited by hand since the last sync survive unless
        ``reset_overrides`` is set. Nothing is persisted here.
        """
        base = migrate_legacy(record, now)
        merged = merge_usage(base.dynamic_expenses, usage, self._registry, now, reset_overrides=reset_overrides)
        has_manual = any(item.is_manually_edited or item.source_count is None for item in merged.values())
        return base.model_copy(
            update={
                "dynamic_expenses": merged,
                "last_synced_at": now,
                "sync_source": "mixed" if has_manual else "auto",
            }
        )


def window_of(record: ExpensePeriodRecord) -> Optional[BillingPeriod]:
    if record.period_start_date is None or record.period_end_date is None:
        return None
    return BillingPeriod(
        project_id=record.project_id,
        month_number=record.month_number,
        calendar_month=record.calendar_month or record.period_start_date.strftime("%Y-%m"),
        start_date=record.period_start_date,
        end_date=record.period_end_date,
    )
