"""Collaborator contracts consumed by the project finance engine.

The engine only talks to these protocols. ``agencyops.repos`` holds the
PostgreSQL implementations; tests use in-memory doubles.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Dict, List, Mapping, Optional, Protocol, Sequence, Union

from ..models import BillingPeriod, CalculatorCategory, ExpenseHistoryEntry, ExpensePeriodRecord


@dataclass(frozen=True)
class ProjectInfo:
    id: str
    name: str = ""
    start_date: Optional[Union[date, str]] = None
    end_date: Optional[Union[date, str]] = None
    duration_days: Optional[int] = None
    budget: float = 0.0
    media_budget: float = 0.0
    status: Optional[str] = None


@dataclass(frozen=True)
class ServiceUsage:
    service_name: str
    count: float
    rate: float
    job_title: Optional[str] = None


@dataclass(frozen=True)
class StaffMember:
    user_id: str
    name: str
    job_title: str
    base_salary: float
    has_kpi_rules: bool = False


class ProjectSource(Protocol):
    def get_project(self, project_id: str) -> Optional[ProjectInfo]:
        ...


class UsageSource(Protocol):
    def get_service_usage_counts(self, project_id: str, window: BillingPeriod) -> Mapping[str, ServiceUsage]:
        ...


class StaffSource(Protocol):
    def get_fixed_salary_staff(self, project_id: str) -> Sequence[StaffMember]:
        ...

    def get_active_project_count(self, user_id: str) -> int:
        ...


class CategorySource(Protocol):
    def get_categories(self) -> Sequence[CalculatorCategory]:
        ...


class PeriodRecordStore(Protocol):
    def load_period(self, project_id: str, month_number: int) -> Optional[ExpensePeriodRecord]:
        ...

    def save_period(
        self,
        record: ExpensePeriodRecord,
        *,
        expected_version: Optional[int] = None,
        history: Sequence[ExpenseHistoryEntry] = (),
    ) -> ExpensePeriodRecord:
        """Persist ``record`` together with its ``history`` entries, atomically.

        ``expected_version`` is the version the caller read; ``None`` means the
        caller believes the record does not exist yet. A mismatch raises
        ``ConcurrentEditConflict``; any other write failure raises
        ``PersistenceFailure``. The stored record comes back with its version
        incremented.
        """
        ...

    def list_periods(self, project_id: str) -> List[ExpensePeriodRecord]:
        ...

    def list_history(self, project_id: str, month_number: int) -> List[ExpenseHistoryEntry]:
        ...


UsageSnapshot = Dict[str, ServiceUsage]
