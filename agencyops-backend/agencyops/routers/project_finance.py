from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request, status
from pydantic import BaseModel, ConfigDict, Field

from ..config import settings
from ..models import CostBreakdown, ExpenseHistoryEntry, ExpensePeriodRecord, ExpensePeriodView, ProjectPeriodsResponse
from ..repos.finance_sources_repo import (
    PostgresCategorySource,
    PostgresProjectSource,
    PostgresStaffSource,
    PostgresUsageSource,
)
from ..repos.project_expense_repo import PostgresPeriodRecordStore
from ..services.expense_categories import CategoryRegistry
from ..services.finance_errors import (
    ConcurrentEditConflict,
    EditNotAllowed,
    InvalidManualField,
    PeriodNotFound,
    PersistenceFailure,
    ProjectFinanceError,
    SyncUnavailable,
)
from ..services.period_state import PeriodAutoSyncScheduler
from ..services.project_finance import ProjectFinanceEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v2/project-finance", tags=["project-finance"])

_STATUS_BY_ERROR = (
    (SyncUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE),
    (PersistenceFailure, status.HTTP_503_SERVICE_UNAVAILABLE),
    (ConcurrentEditConflict, status.HTTP_409_CONFLICT),
    (EditNotAllowed, status.HTTP_403_FORBIDDEN),
    (InvalidManualField, status.HTTP_400_BAD_REQUEST),
    (PeriodNotFound, status.HTTP_404_NOT_FOUND),
)


@lru_cache(maxsize=1)
def get_project_finance_engine() -> ProjectFinanceEngine:
    return ProjectFinanceEngine(
        store=PostgresPeriodRecordStore(),
        projects=PostgresProjectSource(),
        usage=PostgresUsageSource(),
        staff=PostgresStaffSource(),
        registry=CategoryRegistry(source=PostgresCategorySource()),
    )


def get_expense_scheduler(request: Request) -> PeriodAutoSyncScheduler:
    scheduler = getattr(request.app.state, "expense_scheduler", None)
    if scheduler is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Expense auto-sync is not running")
    return scheduler


def _ensure_feature_enabled() -> None:
    if not settings.feature_project_finance:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Project finance is disabled")


def _to_http(exc: ProjectFinanceError) -> HTTPException:
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=code, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


class Actor(BaseModel):
    actor_id: Optional[str] = None
    can_edit: bool = False


def get_actor(
    x_actor_id: Optional[str] = Header(default=None, alias="X-Actor-Id"),
    x_actor_can_edit: Optional[str] = Header(default=None, alias="X-Actor-Can-Edit"),
) -> Actor:
    can_edit = (x_actor_can_edit or "").strip().lower() in ("1", "true", "yes")
    return Actor(actor_id=x_actor_id, can_edit=can_edit)


class SyncRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    reset_overrides: bool = Field(default=False, alias="resetOverrides")


class ManualFieldUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    field: str
    value: Any = None
    reason: Optional[str] = None


class DynamicExpenseUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    count: Optional[float] = None
    rate: Optional[float] = None
    service_name: Optional[str] = Field(default=None, alias="serviceName")


class FreezeRequest(BaseModel):
    frozen: bool


class ViewStatus(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    project_id: str = Field(alias="projectId")
    month_number: int = Field(alias="monthNumber")
    viewers: int
    interval_seconds: float = Field(alias="intervalSeconds")


@router.get("/{project_id}/periods", response_model=ProjectPeriodsResponse)
def list_periods(
    project_id: str,
    engine: ProjectFinanceEngine = Depends(get_project_finance_engine),
) -> ProjectPeriodsResponse:
    _ensure_feature_enabled()
    try:
        return engine.list_periods(project_id)
    except ProjectFinanceError as exc:
        raise _to_http(exc) from exc


@router.get("/{project_id}/periods/{month_number}", response_model=ExpensePeriodView)
def get_period(
    project_id: str,
    month_number: int = Path(..., ge=1),
    engine: ProjectFinanceEngine = Depends(get_project_finance_engine),
) -> ExpensePeriodView:
    _ensure_feature_enabled()
    try:
        return engine.period_view(project_id, month_number)
    except ProjectFinanceError as exc:
        raise _to_http(exc) from exc


@router.post("/{project_id}/periods/{month_number}/sync", response_model=ExpensePeriodRecord)
def sync_period(
    project_id: str,
    month_number: int = Path(..., ge=1),
    payload: Optional[SyncRequest] = None,
    actor: Actor = Depends(get_actor),
    engine: ProjectFinanceEngine = Depends(get_project_finance_engine),
) -> ExpensePeriodRecord:
    _ensure_feature_enabled()
    reset = payload.reset_overrides if payload else False
    try:
        record = engine.sync_now(
            project_id,
            month_number,
            can_edit=actor.can_edit,
            actor_id=actor.actor_id,
            reset_overrides=reset,
        )
    except ProjectFinanceError as exc:
        raise _to_http(exc) from exc
    logger.info("sync_period project_id=%s month=%s reset=%s actor=%s", project_id, month_number, reset, actor.actor_id)
    return record


@router.patch("/{project_id}/periods/{month_number}", response_model=ExpensePeriodRecord)
def update_manual_field(
    payload: ManualFieldUpdate,
    project_id: str,
    month_number: int = Path(..., ge=1),
    actor: Actor = Depends(get_actor),
    engine: ProjectFinanceEngine = Depends(get_project_finance_engine),
) -> ExpensePeriodRecord:
    _ensure_feature_enabled()
    try:
        return engine.update_manual_field(
            project_id,
            month_number,
            payload.field,
            payload.value,
            can_edit=actor.can_edit,
            actor_id=actor.actor_id,
            reason=payload.reason,
        )
    except ProjectFinanceError as exc:
        raise _to_http(exc) from exc


@router.put(
    "/{project_id}/periods/{month_number}/dynamic-expenses/{service_id}",
    response_model=ExpensePeriodRecord,
)
def update_dynamic_expense(
    payload: DynamicExpenseUpdate,
    project_id: str,
    service_id: str,
    month_number: int = Path(..., ge=1),
    actor: Actor = Depends(get_actor),
    engine: ProjectFinanceEngine = Depends(get_project_finance_engine),
) -> ExpensePeriodRecord:
    _ensure_feature_enabled()
    try:
        return engine.update_dynamic_expense(
            project_id,
            month_number,
            service_id,
            can_edit=actor.can_edit,
            count=payload.count,
            rate=payload.rate,
            service_name=payload.service_name,
            actor_id=actor.actor_id,
        )
    except ProjectFinanceError as exc:
        raise _to_http(exc) from exc


@router.post("/{project_id}/periods/{month_number}/freeze", status_code=status.HTTP_204_NO_CONTENT)
def set_frozen(
    payload: FreezeRequest,
    project_id: str,
    month_number: int = Path(..., ge=1),
    actor: Actor = Depends(get_actor),
    engine: ProjectFinanceEngine = Depends(get_project_finance_engine),
) -> None:
    _ensure_feature_enabled()
    try:
        engine.set_frozen(project_id, month_number, payload.frozen, can_edit=actor.can_edit, actor_id=actor.actor_id)
    except ProjectFinanceError as exc:
        raise _to_http(exc) from exc


@router.post(
    "/{project_id}/periods/{month_number}/copy-previous",
    response_model=ExpensePeriodRecord,
)
def copy_from_previous_period(
    project_id: str,
    month_number: int = Path(..., ge=1),
    actor: Actor = Depends(get_actor),
    engine: ProjectFinanceEngine = Depends(get_project_finance_engine),
) -> ExpensePeriodRecord:
    _ensure_feature_enabled()
    try:
        return engine.copy_from_previous_period(project_id, month_number, can_edit=actor.can_edit, actor_id=actor.actor_id)
    except ProjectFinanceError as exc:
        raise _to_http(exc) from exc


@router.get(
    "/{project_id}/periods/{month_number}/history",
    response_model=List[ExpenseHistoryEntry],
)
def get_history(
    project_id: str,
    month_number: int = Path(..., ge=1),
    limit: int = Query(100, ge=1, le=1000),
    engine: ProjectFinanceEngine = Depends(get_project_finance_engine),
) -> List[ExpenseHistoryEntry]:
    _ensure_feature_enabled()
    try:
        return engine.get_history(project_id, month_number)[:limit]
    except ProjectFinanceError as exc:
        raise _to_http(exc) from exc


@router.get(
    "/{project_id}/periods/{month_number}/cost-breakdown",
    response_model=CostBreakdown,
)
def cost_breakdown(
    project_id: str,
    month_number: int = Path(..., ge=1),
    engine: ProjectFinanceEngine = Depends(get_project_finance_engine),
) -> CostBreakdown:
    _ensure_feature_enabled()
    try:
        return engine.cost_breakdown(project_id, month_number)
    except ProjectFinanceError as exc:
        raise _to_http(exc) from exc


@router.post("/{project_id}/periods/{month_number}/watch", response_model=ViewStatus)
async def open_view(
    project_id: str,
    month_number: int = Path(..., ge=1),
    scheduler: PeriodAutoSyncScheduler = Depends(get_expense_scheduler),
) -> ViewStatus:
    _ensure_feature_enabled()
    viewers = await scheduler.open_view(project_id, month_number)
    return ViewStatus(
        project_id=project_id,
        month_number=month_number,
        viewers=viewers,
        interval_seconds=scheduler.interval_seconds,
    )


@router.delete("/{project_id}/periods/{month_number}/watch", response_model=ViewStatus)
async def close_view(
    project_id: str,
    month_number: int = Path(..., ge=1),
    scheduler: PeriodAutoSyncScheduler = Depends(get_expense_scheduler),
) -> ViewStatus:
    _ensure_feature_enabled()
    viewers = await scheduler.close_view(project_id, month_number)
    return ViewStatus(
        project_id=project_id,
        month_number=month_number,
        viewers=viewers,
        interval_seconds=scheduler.interval_seconds,
    )
