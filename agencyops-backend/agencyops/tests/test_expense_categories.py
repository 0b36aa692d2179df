from __future__ import annotations

import json
import logging

import pytest

from agencyops.models import DynamicExpenseItem, ExpensePeriodRecord
from agencyops.services.expense_categories import (
    CategoryRegistry,
    CategoryRule,
    load_rules,
    normalize_text,
)


@pytest.mark.parametrize(
    "service_name, expected",
    [
        ("Reels editing", "content"),
        ("Video editing", "production"),
        ("Photo retouching", "production"),
        ("Таргетированная реклама", "paid-media"),
        ("Создание сайта", "web"),
        ("Landing page", "web"),
        ("Пост в Instagram", "content"),
        ("Съёмка", "production"),
    ],
)
def test_builtin_rules(registry, service_name, expected):
    assert registry.category_for(service_name) == expected


def test_rules_are_evaluated_in_order():
    registry = CategoryRegistry(
        rules=[CategoryRule("content", ("reel",)), CategoryRule("production", ("editing",))],
        cache_seconds=0,
    )
    assert registry.category_for("Reels editing") == "content"


def test_job_title_is_checked_before_service_name(registry):
    assert registry.category_for("Stories", "Videographer") == "production"
    assert registry.category_for("Stories", "Account manager") == "content"


def test_unmatched_name_uses_default_category():
    registry = CategoryRegistry(rules=[CategoryRule("web", ("site",))], default_category="misc", cache_seconds=0)
    assert registry.category_for("Consulting") == "misc"


def test_normalize_text():
    assert normalize_text("  Съёмка_Видео  ") == "съемка видео"


def test_load_rules_from_custom_table(tmp_path):
    path = tmp_path / "rules.json"
    path.write_text(
        json.dumps({"default": "other", "rules": [{"category": "events", "keywords": ["Event", ""]}]}),
        encoding="utf-8",
    )
    default, rules = load_rules(path)
    assert default == "other"
    assert rules == [CategoryRule("events", ("event",))]


def test_configured_categories_translate_rule_ids(registry, category_source):
    configured = CategoryRegistry(source=category_source, cache_seconds=0)
    assert configured.category_for("Video editing") == "cat-prod"
    assert configured.category_for("Target setup") == "cat-ads"
    assert configured.category_name("video") == "Production"


def test_configured_categories_are_deduplicated_and_sorted(category_source):
    configured = CategoryRegistry(source=category_source, cache_seconds=0)
    categories = configured.configured_categories()
    assert [category.id for category in categories] == ["cat-content", "cat-prod", "cat-ads"]


def test_configured_categories_are_cached(category_source):
    configured = CategoryRegistry(source=category_source, cache_seconds=300)
    configured.configured_categories()
    configured.configured_categories()
    assert category_source.calls == 1
    configured.clear_cache()
    configured.configured_categories()
    assert category_source.calls == 2


def test_unreachable_category_source_falls_back_to_builtin(category_source, caplog):
    category_source.error = RuntimeError("connection refused")
    configured = CategoryRegistry(source=category_source, cache_seconds=0)
    with caplog.at_level(logging.WARNING, logger="agencyops.services.expense_categories"):
        assert configured.category_for("Video editing") == "production"
    assert "Calculator categories unavailable" in caplog.text
    assert [category.id for category in configured.all_categories()][:2] == ["content", "production"]


def test_category_name_for_legacy_and_unknown_ids(registry):
    assert registry.category_name("smm") == "Content"
    assert registry.category_name("target") == "Paid media"
    assert registry.category_name("unknown-x") == "unknown-x"


def test_categories_in_use_without_source(registry):
    record = ExpensePeriodRecord(
        project_id="p1",
        month_number=1,
        dynamic_expenses={
            "a": DynamicExpenseItem(service_name="Reels", category="content", count=1, rate=10),
            "b": DynamicExpenseItem(service_name="Website", category="sites", count=1, rate=10),
        },
    )
    assert [category.id for category in registry.categories_in_use(record)] == ["content", "web"]
