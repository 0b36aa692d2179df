from __future__ import annotations

import logging
from time import perf_counter
from typing import Dict, List, Optional, Sequence, Tuple

import psycopg
from psycopg.rows import dict_row

from ..config import settings
from ..db import pool
from ..models import BillingPeriod, CalculatorCategory
from ..services.expense_categories import normalize_text
from ..services.finance_errors import SyncUnavailable
from ..services.finance_sources import ProjectInfo, ServiceUsage, StaffMember

logger = logging.getLogger(__name__)

DONE_TASK_STATUS = "Done"


def _float(value) -> float:
    return float(value) if value is not None else 0.0


class PostgresProjectSource:
    def get_project(self, project_id: str) -> Optional[ProjectInfo]:
        try:
            with pool.connection() as conn:
                with conn.cursor(row_factory=dict_row) as cur:
                    cur.execute(
                        """
                        SELECT id, name, status, start_date, end_date, duration_days, budget, media_budget
                        FROM agencyops.projects
                        WHERE id = %s
                        """,
                        (project_id,),
                    )
                    row = cur.fetchone()
        except psycopg.Error as exc:
            raise SyncUnavailable(f"Project {project_id} unavailable: {exc}", source="projects") from exc
        if not row:
            return None
        return ProjectInfo(
            id=row["id"],
            name=row["name"],
            start_date=row["start_date"],
            end_date=row["end_date"],
            duration_days=row["duration_days"],
            budget=_float(row["budget"]),
            media_budget=_float(row["media_budget"]),
            status=row["status"],
        )


class PostgresUsageSource:
    """Billable usage of a project inside one billing window.

    Two feeds: completed tasks priced by the assignee's KPI rate (user rate
    first, job title rate second), and content metric facts priced by the job
    title rate whose task type matches the metric name.
    """

    def get_service_usage_counts(self, project_id: str, window: BillingPeriod) -> Dict[str, ServiceUsage]:
        start = perf_counter()
        try:
            with pool.connection() as conn:
                with conn.cursor(row_factory=dict_row) as cur:
                    cur.execute(
                        """
                        SELECT t.assignee_id,
                               u.name AS user_name,
                               u.job_title,
                               t.type AS task_type,
                               SUM(COALESCE(NULLIF(t.estimated_hours, 0), 1)) AS hours,
                               COALESCE(MAX(ur.value), MAX(jr.value), 0) AS rate
                        FROM agencyops.tasks t
                        JOIN agencyops.users u ON u.id = t.assignee_id
                        LEFT JOIN agencyops.kpi_rates ur
                               ON ur.target_type = 'user' AND ur.target_id = u.id AND ur.task_type = t.type
                        LEFT JOIN agencyops.kpi_rates jr
                               ON jr.target_type = 'jobTitle' AND jr.target_id = u.job_title AND jr.task_type = t.type
                        WHERE t.project_id = %s
                          AND t.status = %s
                          AND t.type IS NOT NULL
                          AND t.started_at >= %s
                          AND t.started_at < %s
                        GROUP BY t.assignee_id, u.name, u.job_title, t.type
                        """,
                        (project_id, DONE_TASK_STATUS, window.start_date, window.end_date),
                    )
                    task_rows = cur.fetchall()
                    cur.execute(
                        """
                        SELECT metric_key, SUM(fact) AS fact
                        FROM agencyops.project_content_metrics
                        WHERE project_id = %s
                          AND recorded_on >= %s
                          AND recorded_on < %s
                        GROUP BY metric_key
                        """,
                        (project_id, window.start_date, window.end_date),
                    )
                    metric_rows = cur.fetchall()
                    cur.execute(
                        """
                        SELECT target_id AS job_title, task_type, value
                        FROM agencyops.kpi_rates
                        WHERE target_type = 'jobTitle' AND value > 0
                        ORDER BY target_id, task_type
                        """
                    )
                    rate_rows = cur.fetchall()
        except psycopg.Error as exc:
            raise SyncUnavailable(f"Usage counts for project {project_id} unavailable: {exc}", source="usage") from exc

        usage: Dict[str, ServiceUsage] = {}
        for row in task_rows:
            rate = _float(row["rate"])
            if rate <= 0:
                continue
            usage[f"{row['assignee_id']}_{row['task_type']}"] = ServiceUsage(
                service_name=f"{row['user_name']} - {row['task_type']}",
                count=_float(row["hours"]),
                rate=rate,
                job_title=row["job_title"],
            )

        rates: Dict[str, Tuple[str, str, float]] = {}
        for row in rate_rows:
            rates.setdefault(normalize_text(row["task_type"]), (row["task_type"], row["job_title"], _float(row["value"])))
        for row in metric_rows:
            fact = _float(row["fact"])
            if fact == 0:
                continue
            match = rates.get(normalize_text(row["metric_key"]))
            if match is None:
                logger.warning("No KPI rate matches content metric %s of project %s", row["metric_key"], project_id)
                continue
            task_type, job_title, rate = match
            usage[f"kpi_{row['metric_key']}"] = ServiceUsage(service_name=task_type, count=fact, rate=rate, job_title=job_title)

        elapsed = (perf_counter() - start) * 1000
        logger.debug(
            "get_service_usage_counts project_id=%s period=%s tasks=%s metrics=%s elapsed_ms=%.2f",
            project_id,
            window.month_number,
            len(task_rows),
            len(metric_rows),
            elapsed,
        )
        return usage


class PostgresStaffSource:
    def get_fixed_salary_staff(self, project_id: str) -> List[StaffMember]:
        try:
            with pool.connection() as conn:
                with conn.cursor(row_factory=dict_row) as cur:
                    cur.execute(
                        """
                        SELECT u.id, u.name, u.job_title,
                               COALESCE(s.base_salary, 0) AS base_salary,
                               EXISTS (
                                   SELECT 1 FROM agencyops.kpi_rates k
                                   WHERE k.target_type = 'user' AND k.target_id = u.id AND k.value > 0
                               ) AS has_kpi_rules
                        FROM agencyops.project_team pt
                        JOIN agencyops.users u ON u.id = pt.user_id
                        LEFT JOIN agencyops.salary_schemes s
                               ON s.target_type = 'user' AND s.target_id = u.id
                        WHERE pt.project_id = %s
                        ORDER BY u.id
                        """,
                        (project_id,),
                    )
                    rows = cur.fetchall()
        except psycopg.Error as exc:
            raise SyncUnavailable(f"Team of project {project_id} unavailable: {exc}", source="staff") from exc
        return [
            StaffMember(
                user_id=row["id"],
                name=row["name"],
                job_title=row["job_title"] or "",
                base_salary=_float(row["base_salary"]),
                has_kpi_rules=bool(row["has_kpi_rules"]),
            )
            for row in rows
        ]

    def get_active_project_count(self, user_id: str) -> int:
        statuses: Sequence[str] = list(settings.active_project_statuses)
        try:
            with pool.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        SELECT COUNT(*)
                        FROM agencyops.project_team pt
                        JOIN agencyops.projects p ON p.id = pt.project_id
                        WHERE pt.user_id = %s
                          AND NOT p.is_archived
                          AND p.status = ANY(%s)
                        """,
                        (user_id, statuses),
                    )
                    (count,) = cur.fetchone()
        except psycopg.Error as exc:
            raise SyncUnavailable(f"Active projects of {user_id} unavailable: {exc}", source="staff") from exc
        return int(count or 0)


class PostgresCategorySource:
    def get_categories(self) -> List[CalculatorCategory]:
        with pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    """
                    SELECT id, name, icon, sort_order
                    FROM agencyops.calculator_categories
                    ORDER BY sort_order, name
                    """
                )
                rows = cur.fetchall()
        return [
            CalculatorCategory(id=row["id"], name=row["name"], icon=row["icon"] or "", sort_order=row["sort_order"])
            for row in rows
        ]
