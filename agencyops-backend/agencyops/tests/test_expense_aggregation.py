from __future__ import annotations

import pytest

from agencyops.models import DynamicExpenseItem, ExpensePeriodRecord, FotAllocation
from agencyops.services.expense_aggregation import (
    aggregate,
    analyze_costs,
    calculate_margin,
    calculate_total_expenses,
    category_totals,
    validate_period,
)
from agencyops.services.finance_sources import ProjectInfo


def _allocation(share: float) -> FotAllocation:
    return FotAllocation(
        user_name="Aigerim",
        job_title="Project manager",
        base_salary=share * 2,
        active_projects_count=2,
        share_for_this_project=share,
    )


@pytest.fixture
def record() -> ExpensePeriodRecord:
    return ExpensePeriodRecord(
        project_id="p1",
        month_number=3,
        dynamic_expenses={
            "reels": DynamicExpenseItem(service_name="Reels", category="content", count=2, rate=100),
            "shoot": DynamicExpenseItem(service_name="Shooting", category="production", count=3, rate=50),
        },
        fot_calculations={"pm-1": _allocation(1000), "des-1": _allocation(500)},
        models_expenses=200,
        other_expenses=50,
        revenue=3000,
    )


def test_total_expenses_formula(record):
    assert calculate_total_expenses(record) == 2100
    aggregated = aggregate(record)
    assert aggregated.total_expenses == 2100
    assert aggregated.fot_expenses == 1500
    assert aggregated.margin_percent == 30.0


def test_category_totals_and_rollups(record):
    assert category_totals(record) == {"content": 200, "production": 150}
    aggregated = aggregate(record)
    assert aggregated.category_totals == {"content": 200, "production": 150}
    assert aggregated.smm_expenses == 200
    assert aggregated.production_expenses == 150


def test_legacy_rollups_only_count_without_dynamic_entries(record):
    stale = record.model_copy(update={"smm_expenses": 999, "production_expenses": 999})
    assert aggregate(stale).total_expenses == 2100

    legacy = ExpensePeriodRecord(project_id="p1", month_number=1, smm_expenses=400, production_expenses=100, fot_expenses=300)
    aggregated = aggregate(legacy)
    assert aggregated.total_expenses == 800
    assert aggregated.smm_expenses == 400
    assert aggregated.category_totals == {}


def test_margin_without_revenue_is_zero():
    assert calculate_margin(0, 500) == 0.0
    assert calculate_margin(None, 500) == 0.0
    assert calculate_margin(1000, 1500) == -50.0


def test_aggregate_rounds_to_cents():
    record = ExpensePeriodRecord(
        project_id="p1",
        month_number=1,
        dynamic_expenses={"a": DynamicExpenseItem(service_name="Copy", count=3, rate=0.333)},
        revenue=10,
    )
    aggregated = aggregate(record)
    assert aggregated.total_expenses == 1.0
    assert aggregated.margin_percent == 90.0


def test_aggregate_is_stable(record):
    once = aggregate(record)
    assert aggregate(once).model_dump() == once.model_dump()


def test_cost_breakdown(record, registry):
    breakdown = analyze_costs(aggregate(record), registry)
    assert breakdown.total_cost == 2100
    assert breakdown.net_profit == 900
    assert [category.category for category in breakdown.categories] == ["content", "production", "salaries", "models", "other"]
    assert sum(category.percentage for category in breakdown.categories) == pytest.approx(100)
    assert [top.category for top in breakdown.top_expense_categories] == ["Salaries", "Content", "Models"]


def test_cost_breakdown_drops_empty_categories(registry):
    record = ExpensePeriodRecord(project_id="p1", month_number=1, smm_expenses=300, revenue=0)
    breakdown = analyze_costs(record, registry)
    assert [category.category for category in breakdown.categories] == ["content"]
    assert breakdown.categories[0].items[0].name == "Content (legacy)"
    assert breakdown.margin_percent == 0.0


def _codes(issues):
    return [issue.code for issue in issues]


def test_validation_flags_thin_margin_spike_and_budget_overrun():
    current = ExpensePeriodRecord(project_id="p1", month_number=2, revenue=1000, total_expenses=900)
    previous = ExpensePeriodRecord(project_id="p1", month_number=1, revenue=1000, total_expenses=600)
    project = ProjectInfo(id="p1", budget=800)

    issues = validate_period(current, previous, project)
    assert _codes(issues) == ["low_margin", "expense_spike", "over_budget"]
    assert issues[1].message == "Expenses grew 50% over period 1"
    assert [issue.level for issue in issues] == ["warning", "warning", "error"]


def test_validation_reports_loss_and_missing_revenue_with_budget_hint():
    record = ExpensePeriodRecord(project_id="p1", month_number=1, total_expenses=1200)
    issues = validate_period(record, project=ProjectInfo(id="p1", budget=5000))
    assert _codes(issues) == ["loss", "missing_revenue"]
    assert issues[1].message == "Revenue is not set; the project budget is 5,000"


def test_blank_period_is_only_reported_as_empty():
    assert _codes(validate_period(ExpensePeriodRecord(project_id="p1", month_number=1))) == ["empty"]


def test_healthy_period_has_no_issues():
    record = ExpensePeriodRecord(project_id="p1", month_number=2, revenue=1000, total_expenses=500)
    previous = ExpensePeriodRecord(project_id="p1", month_number=1, revenue=1000, total_expenses=450)
    assert validate_period(record, previous, ProjectInfo(id="p1", budget=1000)) == []
