from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


def _as_number(value: Any) -> float:
    if value is None or value == "":
        return 0.0
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, bool):
        return float(value)
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _as_optional_number(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    return _as_number(value)


class BillingPeriod(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)
    project_id: Optional[str] = Field(default=None, alias="projectId")
    month_number: int = Field(alias="monthNumber")
    calendar_month: str = Field(alias="calendarMonth")
    start_date: date = Field(alias="startDate")
    end_date: date = Field(alias="endDate", description="Exclusive end of the window")
    display_name: str = Field(default="", alias="displayName")

    def contains(self, day: date) -> bool:
        return self.start_date <= day < self.end_date

    @property
    def length_days(self) -> int:
        return (self.end_date - self.start_date).days


class DynamicExpenseItem(BaseModel):
    """One billable service line of a period.

    ``source_count`` / ``source_rate`` hold the values of the last sync pass.
    A stored value that differs from its snapshot, or whose ``*_edited_at``
    stamp is newer than ``synced_at``, was edited by hand and is kept by later
    syncs. Entries without a snapshot were never synced.
    """

    model_config = ConfigDict(populate_by_name=True)
    service_name: str = Field(alias="serviceName")
    category: str = "content"
    count: float = 0.0
    rate: float = 0.0
    synced_at: Optional[datetime] = Field(default=None, alias="syncedAt")
    source_count: Optional[float] = Field(default=None, alias="sourceCount")
    source_rate: Optional[float] = Field(default=None, alias="sourceRate")
    count_edited_at: Optional[datetime] = Field(default=None, alias="countEditedAt")
    rate_edited_at: Optional[datetime] = Field(default=None, alias="rateEditedAt")

    @field_validator("count", "rate", mode="before")
    @classmethod
    def _numbers(cls, value: Any) -> float:
        return _as_number(value)

    @field_validator("source_count", "source_rate", mode="before")
    @classmethod
    def _optional_numbers(cls, value: Any) -> Optional[float]:
        return _as_optional_number(value)

    @computed_field
    @property
    def cost(self) -> float:
        return self.count * self.rate

    def _edited_since_sync(self, edited_at: Optional[datetime]) -> bool:
        return edited_at is not None and (self.synced_at is None or edited_at > self.synced_at)

    @property
    def count_overridden(self) -> bool:
        if self.source_count is not None and self.count != self.source_count:
            return True
        return self._edited_since_sync(self.count_edited_at)

    @property
    def rate_overridden(self) -> bool:
        if self.source_rate is not None and self.rate != self.source_rate:
            return True
        return self._edited_since_sync(self.rate_edited_at)

    @computed_field(alias="isManuallyEdited")
    @property
    def is_manually_edited(self) -> bool:
        return self.count_overridden or self.rate_overridden


class FotAllocation(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    user_name: str = Field(alias="userName")
    job_title: str = Field(default="", alias="jobTitle")
    base_salary: float = Field(alias="baseSalary")
    active_projects_count: int = Field(alias="activeProjectsCount")
    share_for_this_project: float = Field(alias="shareForThisProject")
    calculated_at: Optional[datetime] = Field(default=None, alias="calculatedAt")

    @field_validator("base_salary", "share_for_this_project", mode="before")
    @classmethod
    def _numbers(cls, value: Any) -> float:
        return _as_number(value)


class ExpensePeriodRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    project_id: str = Field(alias="projectId")
    month_number: int = Field(alias="monthNumber")
    calendar_month: Optional[str] = Field(default=None, alias="calendarMonth")
    period_start_date: Optional[date] = Field(default=None, alias="periodStartDate")
    period_end_date: Optional[date] = Field(default=None, alias="periodEndDate")

    dynamic_expenses: Dict[str, DynamicExpenseItem] = Field(default_factory=dict, alias="dynamicExpenses")
    category_totals: Dict[str, float] = Field(default_factory=dict, alias="categoryTotals")

    # Pre-dynamic rollups, only counted while dynamic_expenses is empty
    smm_expenses: float = Field(default=0.0, alias="smmExpenses")
    production_expenses: float = Field(default=0.0, alias="productionExpenses")

    fot_expenses: float = Field(default=0.0, alias="fotExpenses")
    fot_calculations: Dict[str, FotAllocation] = Field(default_factory=dict, alias="fotCalculations")

    models_expenses: float = Field(default=0.0, alias="modelsExpenses")
    other_expenses: float = Field(default=0.0, alias="otherExpenses")
    other_expenses_description: str = Field(default="", alias="otherExpensesDescription")
    notes: str = ""

    revenue: float = 0.0
    total_expenses: float = Field(default=0.0, alias="totalExpenses")
    margin_percent: float = Field(default=0.0, alias="marginPercent")

    last_synced_at: Optional[datetime] = Field(default=None, alias="lastSyncedAt")
    sync_source: str = Field(default="manual", alias="syncSource")
    is_frozen: bool = Field(default=False, alias="isFrozen")
    frozen_at: Optional[datetime] = Field(default=None, alias="frozenAt")
    frozen_by: Optional[str] = Field(default=None, alias="frozenBy")

    version: int = 0
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")
    updated_by: Optional[str] = Field(default=None, alias="updatedBy")

    @field_validator(
        "smm_expenses",
        "production_expenses",
        "fot_expenses",
        "models_expenses",
        "other_expenses",
        "revenue",
        "total_expenses",
        "margin_percent",
        mode="before",
    )
    @classmethod
    def _numbers(cls, value: Any) -> float:
        return _as_number(value)

    @field_validator("dynamic_expenses", "fot_calculations", "category_totals", mode="before")
    @classmethod
    def _mappings(cls, value: Any) -> Any:
        return value or {}

    @field_validator("other_expenses_description", "notes", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str:
        return value or ""

    @property
    def is_legacy(self) -> bool:
        return not self.dynamic_expenses and (self.smm_expenses > 0 or self.production_expenses > 0)


class CalculatorCategory(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)
    id: str
    name: str
    icon: str = ""
    sort_order: int = Field(default=999, alias="sortOrder")


class ExpenseHistoryEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    project_id: str = Field(alias="projectId")
    month_number: int = Field(alias="monthNumber")
    field_name: str = Field(alias="fieldName")
    old_value: str = Field(default="", alias="oldValue")
    new_value: str = Field(default="", alias="newValue")
    changed_by: Optional[str] = Field(default=None, alias="changedBy")
    change_reason: str = Field(default="", alias="changeReason")
    created_at: datetime = Field(alias="createdAt")


class ValidationIssue(BaseModel):
    level: str = Field(description="error, warning or info")
    code: str
    message: str


class ExpensePeriodView(ExpensePeriodRecord):
    """A stored record plus the sanity checks shown next to it."""

    validation: List[ValidationIssue] = Field(default_factory=list)


class CostItem(BaseModel):
    name: str
    count: Optional[float] = None
    rate: Optional[float] = None
    cost: float


class CategoryCostBreakdown(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    category: str
    category_name: str = Field(alias="categoryName")
    total_cost: float = Field(alias="totalCost")
    percentage: float = 0.0
    items: List[CostItem] = Field(default_factory=list)


class TopExpenseCategory(BaseModel):
    category: str
    amount: float
    percentage: float


class CostBreakdown(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    total_cost: float = Field(alias="totalCost")
    total_revenue: float = Field(alias="totalRevenue")
    net_profit: float = Field(alias="netProfit")
    margin_percent: float = Field(alias="marginPercent")
    categories: List[CategoryCostBreakdown] = Field(default_factory=list)
    top_expense_categories: List[TopExpenseCategory] = Field(default_factory=list, alias="topExpenseCategories")
    validation: List[ValidationIssue] = Field(default_factory=list)


class ProjectPeriodsResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    project_id: str = Field(alias="projectId")
    current_period_number: int = Field(alias="currentPeriodNumber")
    periods: List[BillingPeriod]
    records: List[ExpensePeriodRecord] = Field(default_factory=list)
