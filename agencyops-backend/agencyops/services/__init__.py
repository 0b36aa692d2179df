"""Service layer namespace."""

__all__ = [
    "expense_aggregation",
    "expense_categories",
    "expense_sync",
    "finance_errors",
    "finance_sources",
    "labor_allocation",
    "period_state",
    "periods",
    "project_finance",
]
