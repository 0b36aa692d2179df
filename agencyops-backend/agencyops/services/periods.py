"""Billing period arithmetic for project finance.

Windows are half-open ``[start_date, end_date)``. In ``rolling`` mode every
period is ``period_length_days`` long; in ``calendar`` mode period 1 runs up to
the first day of the next calendar month and every later period is one whole
calendar month. A project end date truncates the period it falls into.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import List, Optional, Tuple, Union

from dateutil.relativedelta import relativedelta

from ..config import settings
from ..models import BillingPeriod
from .finance_errors import InvalidPeriodWindow
from .finance_sources import ProjectInfo

logger = logging.getLogger(__name__)

ROLLING = "rolling"
CALENDAR = "calendar"

DateLike = Union[date, datetime, str, None]


def _as_date(value: DateLike) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return date.fromisoformat(text[:10])
        except ValueError as exc:
            raise InvalidPeriodWindow(f"Unparseable date {value!r}") from exc
    raise InvalidPeriodWindow(f"Unsupported date value {value!r}")


def _require_start(start_date: DateLike) -> date:
    start = _as_date(start_date)
    if start is None:
        raise InvalidPeriodWindow("Project has no start date")
    return start


def _resolve_end(start: date, end_date: DateLike, duration_days: Optional[int]) -> Optional[date]:
    end = _as_date(end_date)
    if end is None and duration_days is not None:
        if duration_days <= 0:
            raise InvalidPeriodWindow(f"Duration must be positive, got {duration_days}")
        end = start + timedelta(days=duration_days)
    if end is not None and end <= start:
        raise InvalidPeriodWindow(f"End date {end} is not after start date {start}")
    return end


def _mode(mode: Optional[str]) -> str:
    return mode or settings.period_mode


def _month_start(day: date, months: int) -> date:
    """First day of the calendar month ``months`` after the one holding ``day``."""
    return day + relativedelta(months=months, day=1)


def _window(start: date, number: int, mode: str) -> Tuple[date, date]:
    if mode == CALENDAR:
        window_start = start if number == 1 else _month_start(start, number - 1)
        return window_start, _month_start(start, number)
    length = settings.period_length_days
    window_start = start + timedelta(days=(number - 1) * length)
    return window_start, window_start + timedelta(days=length)


def _index_of(start: date, day: date, mode: str) -> int:
    if day < start:
        return 1
    if mode == CALENDAR:
        return (day.year - start.year) * 12 + (day.month - start.month) + 1
    return (day - start).days // settings.period_length_days + 1


def display_name(month_number: int) -> str:
    return f"Month {month_number}"


def _build(project_id: Optional[str], number: int, window_start: date, window_end: date) -> BillingPeriod:
    return BillingPeriod(
        project_id=project_id,
        month_number=number,
        calendar_month=window_start.strftime("%Y-%m"),
        start_date=window_start,
        end_date=window_end,
        display_name=display_name(number),
    )


def current_period_number(
    start_date: DateLike,
    today: Optional[date] = None,
    *,
    end_date: DateLike = None,
    duration_days: Optional[int] = None,
    mode: Optional[str] = None,
) -> int:
    """Number of the period containing ``today``; lenient, never below 1."""
    try:
        start = _require_start(start_date)
        end = _resolve_end(start, end_date, duration_days)
    except InvalidPeriodWindow:
        return 1
    today = today or date.today()
    resolved_mode = _mode(mode)
    number = _index_of(start, today, resolved_mode)
    if end is not None:
        number = min(number, _index_of(start, end - timedelta(days=1), resolved_mode))
    return max(number, 1)


def periods_for(
    start_date: DateLike,
    end_date: DateLike = None,
    duration_days: Optional[int] = None,
    *,
    today: Optional[date] = None,
    mode: Optional[str] = None,
    project_id: Optional[str] = None,
) -> List[BillingPeriod]:
    start = _require_start(start_date)
    end = _resolve_end(start, end_date, duration_days)
    resolved_mode = _mode(mode)
    if end is not None:
        last = _index_of(start, end - timedelta(days=1), resolved_mode)
    else:
        last = current_period_number(start, today, mode=resolved_mode)

    periods: List[BillingPeriod] = []
    for number in range(1, last + 1):
        window_start, window_end = _window(start, number, resolved_mode)
        if end is not None and window_end > end:
            window_end = end
        periods.append(_build(project_id, number, window_start, window_end))
    return periods


def period_for_number(
    start_date: DateLike,
    month_number: int,
    end_date: DateLike = None,
    duration_days: Optional[int] = None,
    *,
    mode: Optional[str] = None,
    project_id: Optional[str] = None,
) -> BillingPeriod:
    if month_number < 1:
        raise InvalidPeriodWindow(f"Period numbers start at 1, got {month_number}")
    start = _require_start(start_date)
    end = _resolve_end(start, end_date, duration_days)
    window_start, window_end = _window(start, month_number, _mode(mode))
    # periods past the project end keep their full length (renewed projects)
    if end is not None and window_start < end < window_end:
        window_end = end
    return _build(project_id, month_number, window_start, window_end)


def fallback_period(today: Optional[date] = None, month_number: int = 1, project_id: Optional[str] = None) -> BillingPeriod:
    today = today or date.today()
    month_start = today.replace(day=1)
    return _build(project_id, month_number, month_start, _month_start(month_start, 1))


def resolve_project_period(
    project: Optional[ProjectInfo],
    month_number: int,
    today: Optional[date] = None,
    *,
    mode: Optional[str] = None,
) -> BillingPeriod:
    project_id = project.id if project else None
    try:
        if project is None:
            raise InvalidPeriodWindow("Project not found")
        return period_for_number(
            project.start_date,
            month_number,
            project.end_date,
            project.duration_days,
            mode=mode,
            project_id=project_id,
        )
    except InvalidPeriodWindow as exc:
        logger.warning(
            "Project %s has no usable billing window (%s); using the current calendar month for period %s",
            project_id,
            exc,
            month_number,
        )
        return fallback_period(today, month_number, project_id)


def resolve_project_periods(
    project: Optional[ProjectInfo],
    today: Optional[date] = None,
    *,
    mode: Optional[str] = None,
) -> List[BillingPeriod]:
    project_id = project.id if project else None
    try:
        if project is None:
            raise InvalidPeriodWindow("Project not found")
        return periods_for(
            project.start_date,
            project.end_date,
            project.duration_days,
            today=today,
            mode=mode,
            project_id=project_id,
        )
    except InvalidPeriodWindow as exc:
        logger.warning("Project %s has no usable billing window (%s); defaulting to one period", project_id, exc)
        return [fallback_period(today, 1, project_id)]


def project_current_period_number(project: Optional[ProjectInfo], today: Optional[date] = None, *, mode: Optional[str] = None) -> int:
    if project is None:
        return 1
    return current_period_number(
        project.start_date,
        today,
        end_date=project.end_date,
        duration_days=project.duration_days,
        mode=mode,
    )
