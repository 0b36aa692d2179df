from __future__ import annotations

from collections import OrderedDict
from typing import Dict, List, Optional

from ..models import (
    CategoryCostBreakdown,
    CostBreakdown,
    CostItem,
    ExpensePeriodRecord,
    TopExpenseCategory,
    ValidationIssue,
)
from .expense_categories import BUILTIN_CATEGORIES, CONTENT, LEGACY_ALIASES, PRODUCTION, CategoryRegistry
from .finance_sources import ProjectInfo
from .labor_allocation import fot_total

LOW_MARGIN_PERCENT = 15.0
EXPENSE_SPIKE_RATIO = 1.3
BUDGET_OVERRUN_RATIO = 1.1


def _canonical(category_id: str) -> str:
    return LEGACY_ALIASES.get((category_id or "").lower(), category_id or CONTENT)


def calculate_margin(revenue: Optional[float], total_expenses: Optional[float]) -> float:
    revenue = revenue or 0.0
    if revenue <= 0:
        return 0.0
    return (revenue - (total_expenses or 0.0)) / revenue * 100


def category_totals(record: ExpensePeriodRecord) -> Dict[str, float]:
    totals: Dict[str, float] = OrderedDict()
    for service_id in sorted(record.dynamic_expenses):
        item = record.dynamic_expenses[service_id]
        totals[item.category] = totals.get(item.category, 0.0) + item.cost
    return dict(totals)


def calculate_total_expenses(record: ExpensePeriodRecord) -> float:
    """Dynamic lines + FOT + models + other; legacy rollups only for records without dynamic lines."""
    fot = fot_total(record.fot_calculations) if record.fot_calculations else (record.fot_expenses or 0.0)
    base = fot + (record.models_expenses or 0.0) + (record.other_expenses or 0.0)
    if record.dynamic_expenses:
        return base + sum(item.cost for item in record.dynamic_expenses.values())
    return base + (record.smm_expenses or 0.0) + (record.production_expenses or 0.0)


def aggregate(record: ExpensePeriodRecord) -> ExpensePeriodRecord:
    """Recompute every derived figure of ``record``; stored inputs are not changed."""
    totals = category_totals(record)
    update = {
        "category_totals": {key: round(value, 2) for key, value in totals.items()},
        "total_expenses": round(calculate_total_expenses(record), 2),
    }
    if record.fot_calculations:
        update["fot_expenses"] = round(fot_total(record.fot_calculations), 2)
    if record.dynamic_expenses:
        content = sum(value for key, value in totals.items() if _canonical(key) == CONTENT)
        production = sum(value for key, value in totals.items() if _canonical(key) == PRODUCTION)
        update["smm_expenses"] = round(content, 2)
        update["production_expenses"] = round(production, 2)
    update["margin_percent"] = round(calculate_margin(record.revenue, update["total_expenses"]), 2)
    return record.model_copy(update=update)


def _category_name(category_id: str, registry: Optional[CategoryRegistry]) -> str:
    if registry is not None:
        return registry.category_name(category_id)
    canonical = _canonical(category_id)
    for category in BUILTIN_CATEGORIES:
        if category.id == canonical:
            return category.name
    return category_id


def analyze_costs(record: ExpensePeriodRecord, registry: Optional[CategoryRegistry] = None) -> CostBreakdown:
    categories: List[CategoryCostBreakdown] = []

    grouped: Dict[str, List[CostItem]] = OrderedDict()
    for service_id in sorted(record.dynamic_expenses):
        item = record.dynamic_expenses[service_id]
        grouped.setdefault(item.category, []).append(
            CostItem(name=item.service_name, count=item.count, rate=item.rate, cost=item.cost)
        )
    if not record.dynamic_expenses:
        if record.smm_expenses:
            grouped.setdefault(CONTENT, []).append(CostItem(name="Content (legacy)", cost=record.smm_expenses))
        if record.production_expenses:
            grouped.setdefault(PRODUCTION, []).append(CostItem(name="Production (legacy)", cost=record.production_expenses))

    for category_id, items in grouped.items():
        categories.append(
            CategoryCostBreakdown(
                category=category_id,
                category_name=_category_name(category_id, registry),
                total_cost=sum(entry.cost for entry in items),
                items=items,
            )
        )

    salary_items = [
        CostItem(name=f"{allocation.user_name} ({allocation.job_title})", cost=allocation.share_for_this_project)
        for _, allocation in sorted(record.fot_calculations.items())
    ]
    if not salary_items and record.fot_expenses:
        salary_items.append(CostItem(name="Payroll fund", cost=record.fot_expenses))
    categories.append(
        CategoryCostBreakdown(
            category="salaries",
            category_name="Salaries",
            total_cost=sum(entry.cost for entry in salary_items),
            items=salary_items,
        )
    )
    categories.append(
        CategoryCostBreakdown(
            category="models",
            category_name="Models",
            total_cost=record.models_expenses,
            items=[CostItem(name="Models", cost=record.models_expenses)] if record.models_expenses else [],
        )
    )
    categories.append(
        CategoryCostBreakdown(
            category="other",
            category_name="Other",
            total_cost=record.other_expenses,
            items=[CostItem(name=record.other_expenses_description or "Other expenses", cost=record.other_expenses)]
            if record.other_expenses
            else [],
        )
    )

    categories = [category for category in categories if category.total_cost > 0]
    total_cost = sum(category.total_cost for category in categories)
    for category in categories:
        category.percentage = category.total_cost / total_cost * 100 if total_cost > 0 else 0.0

    top = sorted(categories, key=lambda category: category.total_cost, reverse=True)[:3]
    net_profit = record.revenue - total_cost
    return CostBreakdown(
        total_cost=total_cost,
        total_revenue=record.revenue,
        net_profit=net_profit,
        margin_percent=calculate_margin(record.revenue, total_cost),
        categories=categories,
        top_expense_categories=[
            TopExpenseCategory(category=category.category_name, amount=category.total_cost, percentage=category.percentage)
            for category in top
        ],
    )


def _money(value: float) -> str:
    return f"{value:,.0f}"


def validate_period(
    record: ExpensePeriodRecord,
    previous: Optional[ExpensePeriodRecord] = None,
    project: Optional[ProjectInfo] = None,
) -> List[ValidationIssue]:
    """Sanity checks shown next to a period's figures; ``previous`` and ``project`` enable the trend and budget checks."""
    issues: List[ValidationIssue] = []
    revenue = record.revenue or 0.0
    total = record.total_expenses or 0.0
    margin = calculate_margin(revenue, total)
    budget = project.budget if project is not None else 0.0

    if revenue < total:
        issues.append(
            ValidationIssue(
                level="error",
                code="loss",
                message=f"Expenses ({_money(total)}) exceed revenue ({_money(revenue)}) by {_money(total - revenue)}",
            )
        )
    if revenue == 0 and total > 0:
        hint = f"; the project budget is {_money(budget)}" if budget > 0 else ""
        issues.append(ValidationIssue(level="warning", code="missing_revenue", message=f"Revenue is not set{hint}"))
    if 0 < margin < LOW_MARGIN_PERCENT:
        issues.append(
            ValidationIssue(
                level="warning",
                code="low_margin",
                message=f"Margin {margin:.1f}% is below the {LOW_MARGIN_PERCENT:.0f}% minimum",
            )
        )
    if previous is not None and previous.total_expenses > 0 and total > previous.total_expenses * EXPENSE_SPIKE_RATIO:
        increase = (total - previous.total_expenses) / previous.total_expenses * 100
        issues.append(
            ValidationIssue(
                level="warning",
                code="expense_spike",
                message=f"Expenses grew {increase:.0f}% over period {previous.month_number}",
            )
        )
    if budget > 0 and total > budget * BUDGET_OVERRUN_RATIO:
        issues.append(
            ValidationIssue(
                level="error",
                code="over_budget",
                message=f"Expenses exceed the project budget by {(total / budget - 1) * 100:.0f}%",
            )
        )
    if total == 0 and revenue == 0:
        issues.append(ValidationIssue(level="info", code="empty", message="No revenue or expenses recorded yet"))
    return issues
