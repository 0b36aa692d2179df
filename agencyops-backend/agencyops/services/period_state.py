from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from datetime import date, datetime
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from ..config import settings
from ..models import BillingPeriod, ExpensePeriodRecord

logger = logging.getLogger(__name__)

PeriodKey = Tuple[str, int]


class PeriodSyncState(str, Enum):
    AUTO_SYNC = "auto_sync"
    FROZEN = "frozen"


def state_of(record: ExpensePeriodRecord) -> PeriodSyncState:
    return PeriodSyncState.FROZEN if record.is_frozen else PeriodSyncState.AUTO_SYNC


def transition(
    record: ExpensePeriodRecord,
    frozen: bool,
    *,
    actor_id: Optional[str],
    now: datetime,
) -> Optional[ExpensePeriodRecord]:
    """Apply freeze/unfreeze. Returns ``None`` when the period is already in the requested state."""
    target = PeriodSyncState.FROZEN if frozen else PeriodSyncState.AUTO_SYNC
    if state_of(record) is target:
        return None
    if target is PeriodSyncState.FROZEN:
        return record.model_copy(update={"is_frozen": True, "frozen_at": now, "frozen_by": actor_id})
    return record.model_copy(update={"is_frozen": False, "frozen_at": None, "frozen_by": None})


def allows_auto_sync(
    record: ExpensePeriodRecord,
    current_period_number: int,
    today: Optional[date] = None,
    window: Optional[BillingPeriod] = None,
) -> bool:
    """Only the unfrozen current period whose window still contains ``today`` refreshes itself.

    A finished project keeps its last period as the current number, so the
    window check is what stops ticks from rewriting it after the end date.
    """
    if state_of(record) is not PeriodSyncState.AUTO_SYNC or record.month_number != current_period_number:
        return False
    if today is None:
        return True
    if window is not None:
        return window.contains(today)
    if record.period_start_date is None or record.period_end_date is None:
        return True
    return record.period_start_date <= today < record.period_end_date


class PeriodAutoSyncScheduler:
    """Owns one periodic refresh task per open ``(project_id, month_number)`` view.

    Viewers are reference counted, so any number of open views of the same
    period share a single timer. Each tick calls ``sync_callback`` in a worker
    thread; the callback decides whether the period may be refreshed.
    """

    def __init__(
        self,
        sync_callback: Callable[[str, int], object],
        interval_seconds: Optional[float] = None,
    ) -> None:
        self._sync_callback = sync_callback
        self._interval = settings.expense_auto_sync_interval_seconds if interval_seconds is None else interval_seconds
        self._tasks: Dict[PeriodKey, asyncio.Task] = {}
        self._viewers: Dict[PeriodKey, int] = {}
        self._lock = asyncio.Lock()

    @property
    def interval_seconds(self) -> float:
        return self._interval

    def active_keys(self) -> List[PeriodKey]:
        return sorted(self._tasks)

    def viewers(self, project_id: str, month_number: int) -> int:
        return self._viewers.get((project_id, month_number), 0)

    async def open_view(self, project_id: str, month_number: int) -> int:
        key = (project_id, month_number)
        async with self._lock:
            self._viewers[key] = self._viewers.get(key, 0) + 1
            if key not in self._tasks:
                self._tasks[key] = asyncio.create_task(self._run(key), name=f"expense-sync:{project_id}:{month_number}")
                logger.info("Started expense auto-sync for project %s period %s", project_id, month_number)
            return self._viewers[key]

    async def close_view(self, project_id: str, month_number: int) -> int:
        key = (project_id, month_number)
        async with self._lock:
            remaining = max(self._viewers.get(key, 0) - 1, 0)
            if remaining:
                self._viewers[key] = remaining
                return remaining
            self._viewers.pop(key, None)
            task = self._tasks.pop(key, None)
        if task is not None:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
            logger.info("Stopped expense auto-sync for project %s period %s", project_id, month_number)
        return 0

    async def shutdown(self) -> None:
        async with self._lock:
            tasks = list(self._tasks.values())
            self._tasks.clear()
            self._viewers.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task

    async def _run(self, key: PeriodKey) -> None:
        project_id, month_number = key
        while True:
            try:
                await asyncio.to_thread(self._sync_callback, project_id, month_number)
            except asyncio.CancelledError:  # pragma: no cover - shutdown path
                break
            except Exception:
                logger.exception("Expense auto-sync failed for project %s period %s", project_id, month_number)
            await asyncio.sleep(self._interval)
