from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import pytest

from agencyops.models import BillingPeriod, CalculatorCategory, ExpenseHistoryEntry, ExpensePeriodRecord
from agencyops.services.expense_categories import CategoryRegistry
from agencyops.services.finance_errors import ConcurrentEditConflict, PersistenceFailure
from agencyops.services.finance_sources import ProjectInfo, ServiceUsage, StaffMember
from agencyops.services.project_finance import ProjectFinanceEngine

PROJECT_ID = "p1"
PROJECT_START = date(2024, 1, 1)
# 69 days after kickoff: period 3 of the rolling 30-day schedule
FIXED_NOW = datetime(2024, 3, 10, 9, 0, tzinfo=timezone.utc)


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class InMemoryRecordStore:
    """Versioned record store double; ``before_save`` runs once ahead of the next save.

    A save and its history entries land together or not at all, like the
    single transaction of the PostgreSQL store.
    """

    def __init__(self) -> None:
        self.records: Dict[Tuple[str, int], ExpensePeriodRecord] = {}
        self.history: List[ExpenseHistoryEntry] = []
        self.saves = 0
        self.fail_writes = False
        self.fail_history_writes = False
        self.before_save: Optional[Callable[["InMemoryRecordStore"], None]] = None

    def put(self, record: ExpensePeriodRecord) -> ExpensePeriodRecord:
        stored = record.model_copy(deep=True, update={"version": max(record.version, 1)})
        self.records[(record.project_id, record.month_number)] = stored
        return stored

    def load_period(self, project_id: str, month_number: int) -> Optional[ExpensePeriodRecord]:
        record = self.records.get((project_id, month_number))
        return record.model_copy(deep=True) if record else None

    def save_period(
        self,
        record: ExpensePeriodRecord,
        *,
        expected_version: Optional[int] = None,
        history: Sequence[ExpenseHistoryEntry] = (),
    ) -> ExpensePeriodRecord:
        if self.before_save is not None:
            hook, self.before_save = self.before_save, None
            hook(self)
        if self.fail_writes:
            raise PersistenceFailure("record store is offline")
        key = (record.project_id, record.month_number)
        current = self.records.get(key)
        actual = current.version if current else None
        if expected_version != actual:
            raise ConcurrentEditConflict(record.project_id, record.month_number, expected_version, actual)
        if history and self.fail_history_writes:
            raise PersistenceFailure("history table is offline")
        stored = record.model_copy(deep=True, update={"version": (actual or 0) + 1})
        self.records[key] = stored
        self.history.extend(history)
        self.saves += 1
        return stored.model_copy(deep=True)

    def list_periods(self, project_id: str) -> List[ExpensePeriodRecord]:
        rows = [record for (pid, _), record in self.records.items() if pid == project_id]
        return [row.model_copy(deep=True) for row in sorted(rows, key=lambda row: row.month_number, reverse=True)]

    def list_history(self, project_id: str, month_number: int) -> List[ExpenseHistoryEntry]:
        rows = [entry for entry in self.history if entry.project_id == project_id and entry.month_number == month_number]
        return list(reversed(rows))


class StubProjectSource:
    def __init__(self, projects: Optional[Dict[str, ProjectInfo]] = None) -> None:
        self.projects = projects or {}

    def get_project(self, project_id: str) -> Optional[ProjectInfo]:
        return self.projects.get(project_id)


class StubUsageSource:
    def __init__(self, usage: Optional[Dict[str, ServiceUsage]] = None) -> None:
        self.usage: Dict[str, ServiceUsage] = dict(usage or {})
        self.error: Optional[Exception] = None
        self.calls: List[Tuple[str, BillingPeriod]] = []
        self.on_fetch: Optional[Callable[[], None]] = None

    def get_service_usage_counts(self, project_id: str, window: BillingPeriod) -> Dict[str, ServiceUsage]:
        self.calls.append((project_id, window))
        if self.on_fetch is not None:
            self.on_fetch()
        if self.error is not None:
            raise self.error
        return dict(self.usage)


class StubStaffSource:
    def __init__(self, staff: Optional[List[StaffMember]] = None, active_counts: Optional[Dict[str, int]] = None) -> None:
        self.staff = list(staff or [])
        self.active_counts = dict(active_counts or {})
        self.error: Optional[Exception] = None

    def get_fixed_salary_staff(self, project_id: str) -> List[StaffMember]:
        if self.error is not None:
            raise self.error
        return list(self.staff)

    def get_active_project_count(self, user_id: str) -> int:
        return self.active_counts.get(user_id, 1)


class StubCategorySource:
    def __init__(self, categories: Sequence[CalculatorCategory]) -> None:
        self.categories = list(categories)
        self.calls = 0
        self.error: Optional[Exception] = None

    def get_categories(self) -> List[CalculatorCategory]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.categories)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(FIXED_NOW)


@pytest.fixture
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def projects() -> StubProjectSource:
    return StubProjectSource(
        {
            PROJECT_ID: ProjectInfo(id=PROJECT_ID, name="Coffee chain launch", start_date=PROJECT_START, status="active"),
            "no-dates": ProjectInfo(id="no-dates", name="Unscheduled", start_date=None, status="active"),
        }
    )


@pytest.fixture
def usage() -> StubUsageSource:
    return StubUsageSource(
        {
            "u1_Reels": ServiceUsage(service_name="Reels", count=4, rate=15000, job_title="SMM specialist"),
            "u2_Shooting": ServiceUsage(service_name="Video shooting", count=2, rate=40000, job_title="Videographer"),
        }
    )


@pytest.fixture
def staff() -> StubStaffSource:
    return StubStaffSource(
        [
            StaffMember(user_id="pm-1", name="Aigerim", job_title="Project manager", base_salary=300000),
            StaffMember(user_id="smm-1", name="Dana", job_title="SMM specialist", base_salary=200000, has_kpi_rules=True),
        ],
        active_counts={"pm-1": 3},
    )


@pytest.fixture
def registry() -> CategoryRegistry:
    return CategoryRegistry(cache_seconds=0)


@pytest.fixture
def engine(store, projects, usage, staff, registry, clock) -> ProjectFinanceEngine:
    return ProjectFinanceEngine(store, projects, usage, staff, registry, clock=clock)


@pytest.fixture
def category_source() -> StubCategorySource:
    return StubCategorySource(
        [
            CalculatorCategory(id="cat-prod", name="Production", icon="video", sort_order=2),
            CalculatorCategory(id="cat-content", name="Content", icon="file-text", sort_order=1),
            CalculatorCategory(id="cat-content-dup", name="Content", icon="file", sort_order=5),
            CalculatorCategory(id="cat-ads", name="Paid media", icon="megaphone", sort_order=3),
        ]
    )
