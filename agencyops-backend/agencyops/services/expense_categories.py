from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Mapping, Optional, Sequence, Tuple

from ..config import settings
from ..models import CalculatorCategory, ExpensePeriodRecord
from .finance_sources import CategorySource

logger = logging.getLogger(__name__)

RULES_PATH = Path(__file__).resolve().parent.parent / "fixtures" / "category_rules.json"

CONTENT = "content"
PRODUCTION = "production"
PAID_MEDIA = "paid-media"
WEB = "web"

BUILTIN_CATEGORIES: Tuple[CalculatorCategory, ...] = (
    CalculatorCategory(id=CONTENT, name="Content", icon="file-text", sort_order=1),
    CalculatorCategory(id=PRODUCTION, name="Production", icon="video", sort_order=2),
    CalculatorCategory(id=PAID_MEDIA, name="Paid media", icon="megaphone", sort_order=3),
    CalculatorCategory(id=WEB, name="Web", icon="globe", sort_order=4),
)

# category ids used by records written before the category table existed
LEGACY_ALIASES: Mapping[str, str] = {
    "smm": CONTENT,
    "video": PRODUCTION,
    "photo": PRODUCTION,
    "target": PAID_MEDIA,
    "sites": WEB,
}


def normalize_text(value: str) -> str:
    return " ".join((value or "").lower().replace("_", " ").split()).replace("ё", "е")


@dataclass(frozen=True)
class CategoryRule:
    category_id: str
    keywords: Tuple[str, ...]

    def matches(self, text: str) -> bool:
        return any(keyword in text for keyword in self.keywords)


def load_rules(path: Optional[Path] = None) -> Tuple[str, List[CategoryRule]]:
    """Read ``(default_category, rules)`` from a JSON rule table."""
    source = Path(path) if path else RULES_PATH
    payload = json.loads(source.read_text(encoding="utf-8"))
    return payload.get("default") or CONTENT, rules_from_mapping(payload.get("rules") or [])


class CategoryRegistry:
    """Maps service names to cost categories through an ordered keyword table.

    Rules are evaluated in order and the first match wins. When a category
    source is configured, matched ids are translated to the configured
    category ids; otherwise the built-in categories apply.
    """

    def __init__(
        self,
        source: Optional[CategorySource] = None,
        rules: Optional[Sequence[CategoryRule]] = None,
        default_category: Optional[str] = None,
        cache_seconds: Optional[float] = None,
    ) -> None:
        if rules is None:
            rules_path = Path(settings.category_rules_path) if settings.category_rules_path else None
            loaded_default, loaded_rules = load_rules(rules_path)
            rules = loaded_rules
            default_category = default_category or loaded_default
        self._source = source
        self._rules: Tuple[CategoryRule, ...] = tuple(rules)
        self._default = default_category or CONTENT
        self._cache_seconds = settings.category_cache_seconds if cache_seconds is None else cache_seconds
        self._cache: Optional[Tuple[float, Tuple[CalculatorCategory, ...]]] = None

    @property
    def rules(self) -> Tuple[CategoryRule, ...]:
        return self._rules

    def clear_cache(self) -> None:
        self._cache = None

    def _match(self, text: Optional[str]) -> Optional[str]:
        normalized = normalize_text(text or "")
        if not normalized:
            return None
        for rule in self._rules:
            if rule.matches(normalized):
                return rule.category_id
        return None

    def rule_category_for(self, service_name: str, job_title: Optional[str] = None) -> str:
        return self._match(job_title) or self._match(service_name) or self._default

    def category_for(self, service_name: str, job_title: Optional[str] = None) -> str:
        rule_id = self.rule_category_for(service_name, job_title)
        configured = self.resolve_category(rule_id)
        return configured.id if configured else rule_id

    def configured_categories(self) -> Tuple[CalculatorCategory, ...]:
        if self._source is None:
            return ()
        if self._cache is not None:
            loaded_at, cached = self._cache
            if time.monotonic() - loaded_at <= self._cache_seconds:
                return cached
        try:
            raw = list(self._source.get_categories())
        except Exception as exc:
            logger.warning("Calculator categories unavailable, using built-in categories: %s", exc)
            return ()
        unique = {}
        for category in raw:
            unique.setdefault(category.name, category)
        categories = tuple(sorted(unique.values(), key=lambda item: item.sort_order))
        self._cache = (time.monotonic(), categories)
        return categories

    def all_categories(self) -> List[CalculatorCategory]:
        return list(self.configured_categories() or BUILTIN_CATEGORIES)

    def categories_in_use(self, record: ExpensePeriodRecord) -> List[CalculatorCategory]:
        configured = self.configured_categories()
        if configured:
            return list(configured)
        present = {self.canonical_id(item.category) for item in record.dynamic_expenses.values()}
        return [category for category in BUILTIN_CATEGORIES if category.id in present]

    def canonical_id(self, category_id: str) -> str:
        return LEGACY_ALIASES.get((category_id or "").lower(), category_id or self._default)

    def resolve_category(self, category_id: str) -> Optional[CalculatorCategory]:
        categories = self.configured_categories()
        if not categories or not category_id:
            return None
        for category in categories:
            if category.id == category_id:
                return category
        wanted = self.canonical_id(category_id)
        wanted_name = normalize_text(wanted.replace("-", " "))
        for category in categories:
            name = normalize_text(category.name)
            if name and (name in wanted_name or wanted_name in name):
                return category
        for category in categories:
            if self._match(category.name) == wanted:
                return category
        return None

    def category_name(self, category_id: str) -> str:
        configured = self.resolve_category(category_id)
        if configured:
            return configured.name
        canonical = self.canonical_id(category_id)
        for category in BUILTIN_CATEGORIES:
            if category.id == canonical:
                return category.name
        return category_id


def rules_from_mapping(entries: Iterable[Mapping[str, object]]) -> List[CategoryRule]:
    return [
        CategoryRule(
            category_id=str(entry["category"]),
            keywords=tuple(normalize_text(str(keyword)) for keyword in entry.get("keywords") or () if keyword),  # type: ignore[union-attr]
        )
        for entry in entries
    ]
