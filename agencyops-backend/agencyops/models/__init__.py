from .project_finance import (
    BillingPeriod,
    CalculatorCategory,
    CategoryCostBreakdown,
    CostBreakdown,
    CostItem,
    DynamicExpenseItem,
    ExpenseHistoryEntry,
    ExpensePeriodRecord,
    ExpensePeriodView,
    FotAllocation,
    ProjectPeriodsResponse,
    TopExpenseCategory,
    ValidationIssue,
)

__all__ = [
    "BillingPeriod",
    "CalculatorCategory",
    "CategoryCostBreakdown",
    "CostBreakdown",
    "CostItem",
    "DynamicExpenseItem",
    "ExpenseHistoryEntry",
    "ExpensePeriodRecord",
    "ExpensePeriodView",
    "FotAllocation",
    "ProjectPeriodsResponse",
    "TopExpenseCategory",
    "ValidationIssue",
]
