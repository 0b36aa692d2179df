"""Project financial period engine.

Every mutating operation runs as a read-modify-write against the record
store: load the newest record, apply only the fields the operation owns,
re-aggregate, save with the version that was read. A version clash reloads
and reapplies, so concurrent editors of disjoint fields both land and the
later write wins per field.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..config import settings
from ..models import (
    BillingPeriod,
    CostBreakdown,
    DynamicExpenseItem,
    ExpenseHistoryEntry,
    ExpensePeriodRecord,
    ExpensePeriodView,
    FotAllocation,
    ProjectPeriodsResponse,
    ValidationIssue,
)
from .expense_aggregation import aggregate, analyze_costs, validate_period
from .expense_categories import CategoryRegistry
from .expense_sync import DynamicExpenseSynchronizer, migrate_legacy, window_of
from .finance_errors import (
    ConcurrentEditConflict,
    EditNotAllowed,
    InvalidManualField,
    PeriodNotFound,
    SyncUnavailable,
)
from .finance_sources import PeriodRecordStore, ProjectInfo, ProjectSource, StaffSource, UsageSnapshot, UsageSource
from .labor_allocation import LaborAllocator, fot_total
from .period_state import allows_auto_sync, transition
from .periods import project_current_period_number, resolve_project_period, resolve_project_periods

logger = logging.getLogger(__name__)

NUMERIC_MANUAL_FIELDS = (
    "revenue",
    "models_expenses",
    "other_expenses",
    "smm_expenses",
    "production_expenses",
)
TEXT_MANUAL_FIELDS = ("other_expenses_description", "notes")
# recomputed from the dynamic lines once a record has any
LEGACY_ROLLUP_FIELDS = ("smm_expenses", "production_expenses")

Mutation = Callable[[ExpensePeriodRecord], Optional[Tuple[ExpensePeriodRecord, List[ExpenseHistoryEntry]]]]


@dataclass
class SyncOutcome:
    record: ExpensePeriodRecord
    synced: bool
    skipped_reason: Optional[str] = None
    warning: Optional[str] = None


class _SyncSuppressed(Exception):
    pass


def _field_lookup() -> Dict[str, str]:
    lookup: Dict[str, str] = {}
    for name in NUMERIC_MANUAL_FIELDS + TEXT_MANUAL_FIELDS:
        lookup[name] = name
        alias = ExpensePeriodRecord.model_fields[name].alias
        if alias:
            lookup[alias] = name
    return lookup


_MANUAL_FIELDS = _field_lookup()


def _coerce_amount(name: str, value: Any) -> float:
    if isinstance(value, bool):
        raise InvalidManualField(f"{name} must be a number")
    try:
        amount = float(value)
    except (TypeError, ValueError) as exc:
        raise InvalidManualField(f"{name} must be a number") from exc
    if math.isnan(amount) or math.isinf(amount) or amount < 0:
        raise InvalidManualField(f"{name} must be a non-negative finite number")
    return amount


def _humanize(service_id: str) -> str:
    text = service_id[4:] if service_id.startswith("kpi_") else service_id
    text = text.replace("_", " ").strip()
    return text[:1].upper() + text[1:] if text else service_id


class ProjectFinanceEngine:
    def __init__(
        self,
        store: PeriodRecordStore,
        projects: ProjectSource,
        usage: UsageSource,
        staff: StaffSource,
        registry: Optional[CategoryRegistry] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        max_conflict_attempts: Optional[int] = None,
    ) -> None:
        self._store = store
        self._projects = projects
        self._registry = registry or CategoryRegistry()
        self._synchronizer = DynamicExpenseSynchronizer(usage, self._registry)
        self._allocator = LaborAllocator(staff)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._max_attempts = max(1, max_conflict_attempts or settings.max_conflict_attempts)

    @property
    def registry(self) -> CategoryRegistry:
        return self._registry

    def _now(self) -> datetime:
        return self._clock()

    def _today(self) -> date:
        return self._now().date()

    def _project(self, project_id: str) -> Optional[ProjectInfo]:
        return self._projects.get_project(project_id)

    @staticmethod
    def _require_editor(can_edit: bool) -> None:
        if not can_edit:
            raise EditNotAllowed("Only project managers and accountants can change project finances")

    @staticmethod
    def _check_month(month_number: int) -> None:
        if month_number < 1:
            raise PeriodNotFound(f"Period numbers start at 1, got {month_number}")

    def _history(self, record: ExpensePeriodRecord, field_name: str, old: Any, new: Any, actor_id: Optional[str], reason: Optional[str] = None) -> ExpenseHistoryEntry:
        return ExpenseHistoryEntry(
            project_id=record.project_id,
            month_number=record.month_number,
            field_name=field_name,
            old_value="" if old is None else str(old),
            new_value="" if new is None else str(new),
            changed_by=actor_id,
            change_reason=reason or "",
            created_at=self._now(),
        )

    # -- periods -----------------------------------------------------------

    def current_period_number(self, project_id: str) -> int:
        return project_current_period_number(self._project(project_id), self._today())

    def resolve_period(self, project_id: str, month_number: int) -> BillingPeriod:
        self._check_month(month_number)
        return resolve_project_period(self._project(project_id), month_number, self._today())

    def list_periods(self, project_id: str) -> ProjectPeriodsResponse:
        project = self._project(project_id)
        today = self._today()
        return ProjectPeriodsResponse(
            project_id=project_id,
            current_period_number=project_current_period_number(project, today),
            periods=resolve_project_periods(project, today),
            records=self._store.list_periods(project_id),
        )

    # -- records -----------------------------------------------------------

    def _blank_record(self, project_id: str, month_number: int) -> ExpensePeriodRecord:
        period = self.resolve_period(project_id, month_number)
        now = self._now()
        return aggregate(
            ExpensePeriodRecord(
                project_id=project_id,
                month_number=month_number,
                calendar_month=period.calendar_month,
                period_start_date=period.start_date,
                period_end_date=period.end_date,
                created_at=now,
                updated_at=now,
            )
        )

    def get_or_init_period(self, project_id: str, month_number: int) -> ExpensePeriodRecord:
        self._check_month(month_number)
        record = self._store.load_period(project_id, month_number)
        if record is not None:
            return record
        blank = self._blank_record(project_id, month_number)
        try:
            created = self._store.save_period(blank, expected_version=None)
        except ConcurrentEditConflict:
            # another viewer created it first
            created = self._store.load_period(project_id, month_number)
            if created is None:
                raise
        logger.info("Initialized expense record for project %s period %s", project_id, month_number)
        return created

    def _mutate(self, project_id: str, month_number: int, mutation: Mutation, actor_id: Optional[str]) -> ExpensePeriodRecord:
        attempt = 0
        while True:
            attempt += 1
            current = self.get_or_init_period(project_id, month_number)
            result = mutation(current.model_copy(deep=True))
            if result is None:
                return current
            updated, history = result
            updated = aggregate(updated).model_copy(
                update={"updated_at": self._now(), "updated_by": actor_id or current.updated_by}
            )
            try:
                return self._store.save_period(updated, expected_version=current.version, history=history)
            except ConcurrentEditConflict:
                if attempt >= self._max_attempts:
                    raise
                logger.info(
                    "Concurrent edit on project %s period %s, reapplying (attempt %s/%s)",
                    project_id,
                    month_number,
                    attempt,
                    self._max_attempts,
                )

    # -- synchronization ---------------------------------------------------

    def _fetch(self, record: ExpensePeriodRecord) -> Tuple[UsageSnapshot, Dict[str, FotAllocation]]:
        window = window_of(record) or self.resolve_period(record.project_id, record.month_number)
        usage = self._synchronizer.fetch(record.project_id, window)
        allocations = self._allocator.allocate(record.project_id, self._now())
        return usage, allocations

    def _sync(
        self,
        project_id: str,
        month_number: int,
        *,
        actor_id: Optional[str],
        reset_overrides: bool,
        respect_freeze: bool,
    ) -> ExpensePeriodRecord:
        record = self.get_or_init_period(project_id, month_number)
        # everything is fetched before the record is touched
        usage, allocations = self._fetch(record)
        project = self._project(project_id)
        budget = project.budget if project is not None else 0.0
        now = self._now()

        def apply(current: ExpensePeriodRecord):
            if respect_freeze and current.is_frozen:
                raise _SyncSuppressed()
            merged = self._synchronizer.sync(current, usage, now, reset_overrides=reset_overrides)
            update = {"fot_calculations": allocations, "fot_expenses": fot_total(allocations)}
            if not current.revenue and budget > 0:
                # unset revenue falls back to the project budget
                update["revenue"] = budget
            merged = merged.model_copy(update=update)
            return merged, []

        saved = self._mutate(project_id, month_number, apply, actor_id)
        logger.info(
            "Synced project %s period %s: %d services, %d salary shares, total %.2f",
            project_id,
            month_number,
            len(saved.dynamic_expenses),
            len(saved.fot_calculations),
            saved.total_expenses,
        )
        return saved

    def sync_now(
        self,
        project_id: str,
        month_number: int,
        *,
        can_edit: bool,
        actor_id: Optional[str] = None,
        reset_overrides: bool = False,
    ) -> ExpensePeriodRecord:
        """Manual refresh, allowed for frozen periods too."""
        self._require_editor(can_edit)
        return self._sync(
            project_id,
            month_number,
            actor_id=actor_id,
            reset_overrides=reset_overrides,
            respect_freeze=False,
        )

    def auto_sync(self, project_id: str, month_number: int) -> SyncOutcome:
        record = self.get_or_init_period(project_id, month_number)
        current_number = self.current_period_number(project_id)
        if record.is_frozen:
            return SyncOutcome(record=record, synced=False, skipped_reason="frozen")
        window = self.resolve_period(project_id, month_number)
        if not allows_auto_sync(record, current_number, self._today(), window):
            return SyncOutcome(record=record, synced=False, skipped_reason="not_current_period")
        try:
            synced = self._sync(
                project_id,
                month_number,
                actor_id=None,
                reset_overrides=False,
                respect_freeze=True,
            )
        except _SyncSuppressed:
            return SyncOutcome(record=self.get_or_init_period(project_id, month_number), synced=False, skipped_reason="frozen")
        except SyncUnavailable as exc:
            logger.warning("Auto-sync of project %s period %s skipped: %s", project_id, month_number, exc)
            return SyncOutcome(record=record, synced=False, warning=str(exc))
        return SyncOutcome(record=synced, synced=True)

    # -- manual edits ------------------------------------------------------

    def update_manual_field(
        self,
        project_id: str,
        month_number: int,
        field: str,
        value: Any,
        *,
        can_edit: bool,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> ExpensePeriodRecord:
        self._require_editor(can_edit)
        name = _MANUAL_FIELDS.get(field)
        if name is None:
            raise InvalidManualField(f"Field {field!r} cannot be edited manually")
        coerced = _coerce_amount(name, value) if name in NUMERIC_MANUAL_FIELDS else ("" if value is None else str(value))

        def apply(current: ExpensePeriodRecord):
            if name in LEGACY_ROLLUP_FIELDS and current.dynamic_expenses:
                raise InvalidManualField(
                    f"{name} is derived from the dynamic expense lines of this period; edit those lines instead"
                )
            old = getattr(current, name)
            if old == coerced:
                return None
            update = {name: coerced, "sync_source": "mixed" if current.last_synced_at else "manual"}
            return current.model_copy(update=update), [self._history(current, name, old, coerced, actor_id, reason)]

        return self._mutate(project_id, month_number, apply, actor_id)

    def update_dynamic_expense(
        self,
        project_id: str,
        month_number: int,
        service_id: str,
        *,
        can_edit: bool,
        count: Optional[float] = None,
        rate: Optional[float] = None,
        service_name: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> ExpensePeriodRecord:
        self._require_editor(can_edit)
        if count is None and rate is None and not service_name:
            raise InvalidManualField("Nothing to update: pass count, rate or serviceName")
        new_count = _coerce_amount("count", count) if count is not None else None
        new_rate = _coerce_amount("rate", rate) if rate is not None else None

        def apply(current: ExpensePeriodRecord):
            now = self._now()
            current = migrate_legacy(current, now)
            item = current.dynamic_expenses.get(service_id)
            if item is None:
                name = service_name or _humanize(service_id)
                item = DynamicExpenseItem(service_name=name, category=self._registry.category_for(name))
            history: List[ExpenseHistoryEntry] = []
            update: Dict[str, Any] = {}
            for field_name, new_value in (("count", new_count), ("rate", new_rate)):
                if new_value is not None and getattr(item, field_name) != new_value:
                    history.append(
                        self._history(current, f"dynamic_expenses.{service_id}.{field_name}", getattr(item, field_name), new_value, actor_id)
                    )
                    update[field_name] = new_value
                    update[f"{field_name}_edited_at"] = now
            if service_name and service_name != item.service_name:
                update["service_name"] = service_name
            if not update and service_id in current.dynamic_expenses:
                return None
            entries = dict(current.dynamic_expenses)
            entries[service_id] = item.model_copy(update=update)
            return current.model_copy(update={"dynamic_expenses": entries, "sync_source": "mixed" if current.last_synced_at else "manual"}), history

        return self._mutate(project_id, month_number, apply, actor_id)

    def set_frozen(
        self,
        project_id: str,
        month_number: int,
        frozen: bool,
        *,
        can_edit: bool,
        actor_id: Optional[str] = None,
    ) -> None:
        self._require_editor(can_edit)
        now = self._now()

        def apply(current: ExpensePeriodRecord):
            updated = transition(current, frozen, actor_id=actor_id, now=now)
            if updated is None:
                return None
            return updated, [self._history(current, "is_frozen", current.is_frozen, frozen, actor_id)]

        self._mutate(project_id, month_number, apply, actor_id)
        logger.info("Project %s period %s %s by %s", project_id, month_number, "frozen" if frozen else "unfrozen", actor_id)

    def copy_from_previous_period(
        self,
        project_id: str,
        month_number: int,
        *,
        can_edit: bool,
        actor_id: Optional[str] = None,
    ) -> ExpensePeriodRecord:
        """Seed a period with the previous period's lines; revenue starts at zero and nothing counts as synced."""
        self._require_editor(can_edit)
        self._check_month(month_number)
        if month_number == 1:
            raise PeriodNotFound("The first period has no previous period to copy from")
        previous = self._store.load_period(project_id, month_number - 1)
        if previous is None:
            raise PeriodNotFound(f"Period {month_number - 1} of project {project_id} has no expense record")

        copied = {
            service_id: DynamicExpenseItem(
                service_name=item.service_name,
                category=item.category,
                count=item.count,
                rate=item.rate,
            )
            for service_id, item in previous.dynamic_expenses.items()
        }

        def apply(current: ExpensePeriodRecord):
            update = {
                "dynamic_expenses": copied,
                "smm_expenses": previous.smm_expenses,
                "production_expenses": previous.production_expenses,
                "fot_calculations": previous.fot_calculations,
                "fot_expenses": previous.fot_expenses,
                "models_expenses": previous.models_expenses,
                "other_expenses": previous.other_expenses,
                "other_expenses_description": previous.other_expenses_description,
                "revenue": 0.0,
                "last_synced_at": None,
                "sync_source": "manual",
            }
            history = [self._history(current, "copied_from_period", None, previous.month_number, actor_id)]
            return current.model_copy(update=update), history

        return self._mutate(project_id, month_number, apply, actor_id)

    # -- reporting ---------------------------------------------------------

    def get_history(self, project_id: str, month_number: int) -> List[ExpenseHistoryEntry]:
        self._check_month(month_number)
        return self._store.list_history(project_id, month_number)

    def _issues(self, record: ExpensePeriodRecord) -> List[ValidationIssue]:
        previous = None
        if record.month_number > 1:
            previous = self._store.load_period(record.project_id, record.month_number - 1)
        return validate_period(record, previous, self._project(record.project_id))

    def period_view(self, project_id: str, month_number: int) -> ExpensePeriodView:
        record = self.get_or_init_period(project_id, month_number)
        return ExpensePeriodView.model_validate({**dict(record), "validation": self._issues(record)})

    def cost_breakdown(self, project_id: str, month_number: int) -> CostBreakdown:
        record = self.get_or_init_period(project_id, month_number)
        breakdown = analyze_costs(record, self._registry)
        return breakdown.model_copy(update={"validation": self._issues(record)})
