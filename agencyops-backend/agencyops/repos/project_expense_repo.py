from __future__ import annotations

import logging
from time import perf_counter
from typing import Any, Dict, List, Optional, Sequence

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Json

from ..db import pool
from ..models import ExpenseHistoryEntry, ExpensePeriodRecord
from ..services.finance_errors import ConcurrentEditConflict, PersistenceFailure

logger = logging.getLogger(__name__)

RECORD_COLUMNS = """
    project_id, project_month_number, month, period_start_date, period_end_date,
    dynamic_expenses, category_totals, smm_expenses, production_expenses,
    fot_expenses, fot_calculations, models_expenses, other_expenses,
    other_expenses_description, notes, revenue, total_expenses, margin_percent,
    last_synced_at, sync_source, is_frozen, frozen_at, frozen_by,
    version, created_at, updated_at, updated_by
"""


def _row_to_record(row: Dict[str, Any]) -> ExpensePeriodRecord:
    return ExpensePeriodRecord(
        project_id=row["project_id"],
        month_number=row["project_month_number"],
        calendar_month=row.get("month"),
        period_start_date=row.get("period_start_date"),
        period_end_date=row.get("period_end_date"),
        dynamic_expenses=row.get("dynamic_expenses"),
        category_totals=row.get("category_totals"),
        smm_expenses=row.get("smm_expenses"),
        production_expenses=row.get("production_expenses"),
        fot_expenses=row.get("fot_expenses"),
        fot_calculations=row.get("fot_calculations"),
        models_expenses=row.get("models_expenses"),
        other_expenses=row.get("other_expenses"),
        other_expenses_description=row.get("other_expenses_description"),
        notes=row.get("notes"),
        revenue=row.get("revenue"),
        total_expenses=row.get("total_expenses"),
        margin_percent=row.get("margin_percent"),
        last_synced_at=row.get("last_synced_at"),
        sync_source=row.get("sync_source") or "manual",
        is_frozen=bool(row.get("is_frozen")),
        frozen_at=row.get("frozen_at"),
        frozen_by=row.get("frozen_by"),
        version=row.get("version") or 0,
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
        updated_by=row.get("updated_by"),
    )


def _record_params(record: ExpensePeriodRecord) -> Dict[str, Any]:
    return {
        "project_id": record.project_id,
        "month_number": record.month_number,
        "month": record.calendar_month,
        "period_start_date": record.period_start_date,
        "period_end_date": record.period_end_date,
        "dynamic_expenses": Json(
            {key: item.model_dump(mode="json", by_alias=True) for key, item in record.dynamic_expenses.items()}
        ),
        "category_totals": Json(dict(record.category_totals)),
        "smm_expenses": record.smm_expenses,
        "production_expenses": record.production_expenses,
        "fot_expenses": record.fot_expenses,
        "fot_calculations": Json(
            {key: item.model_dump(mode="json", by_alias=True) for key, item in record.fot_calculations.items()}
        ),
        "models_expenses": record.models_expenses,
        "other_expenses": record.other_expenses,
        "other_expenses_description": record.other_expenses_description,
        "notes": record.notes,
        "revenue": record.revenue,
        "total_expenses": record.total_expenses,
        "margin_percent": record.margin_percent,
        "last_synced_at": record.last_synced_at,
        "sync_source": record.sync_source,
        "is_frozen": record.is_frozen,
        "frozen_at": record.frozen_at,
        "frozen_by": record.frozen_by,
        "created_at": record.created_at,
        "updated_at": record.updated_at,
        "updated_by": record.updated_by,
    }


def _insert_history(cur, entries: Sequence[ExpenseHistoryEntry]) -> None:
    cur.executemany(
        """
        INSERT INTO agencyops.project_expenses_history (
            project_id, project_month_number, field_name, old_value, new_value,
            changed_by, change_reason, created_at
        ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
        """,
        [
            (
                entry.project_id,
                entry.month_number,
                entry.field_name,
                entry.old_value,
                entry.new_value,
                entry.changed_by,
                entry.change_reason,
                entry.created_at,
            )
            for entry in entries
        ],
    )


class PostgresPeriodRecordStore:
    """Expense records in ``agencyops.project_expenses`` with optimistic versioning."""

    def load_period(self, project_id: str, month_number: int) -> Optional[ExpensePeriodRecord]:
        start = perf_counter()
        try:
            with pool.connection() as conn:
                with conn.cursor(row_factory=dict_row) as cur:
                    cur.execute(
                        f"""
                        SELECT {RECORD_COLUMNS}
                        FROM agencyops.project_expenses
                        WHERE project_id = %s AND project_month_number = %s
                        """,
                        (project_id, month_number),
                    )
                    row = cur.fetchone()
        except psycopg.Error as exc:
            raise PersistenceFailure(f"Could not load period {month_number} of project {project_id}: {exc}") from exc
        elapsed = (perf_counter() - start) * 1000
        logger.debug("load_period project_id=%s month=%s found=%s elapsed_ms=%.2f", project_id, month_number, row is not None, elapsed)
        return _row_to_record(row) if row else None

    def save_period(
        self,
        record: ExpensePeriodRecord,
        *,
        expected_version: Optional[int] = None,
        history: Sequence[ExpenseHistoryEntry] = (),
    ) -> ExpensePeriodRecord:
        """Write the record and its history entries in one transaction."""
        params = _record_params(record)
        params["expected_version"] = expected_version
        start = perf_counter()
        try:
            with pool.connection() as conn:
                with conn.cursor(row_factory=dict_row) as cur:
                    if expected_version is None:
                        cur.execute(
                            f"""
                            INSERT INTO agencyops.project_expenses (
                                project_id, project_month_number, month, period_start_date, period_end_date,
                                dynamic_expenses, category_totals, smm_expenses, production_expenses,
                                fot_expenses, fot_calculations, models_expenses, other_expenses,
                                other_expenses_description, notes, revenue, total_expenses, margin_percent,
                                last_synced_at, sync_source, is_frozen, frozen_at, frozen_by,
                                version, created_at, updated_at, updated_by
                            ) VALUES (
                                %(project_id)s, %(month_number)s, %(month)s, %(period_start_date)s, %(period_end_date)s,
                                %(dynamic_expenses)s, %(category_totals)s, %(smm_expenses)s, %(production_expenses)s,
                                %(fot_expenses)s, %(fot_calculations)s, %(models_expenses)s, %(other_expenses)s,
                                %(other_expenses_description)s, %(notes)s, %(revenue)s, %(total_expenses)s, %(margin_percent)s,
                                %(last_synced_at)s, %(sync_source)s, %(is_frozen)s, %(frozen_at)s, %(frozen_by)s,
                                1, COALESCE(%(created_at)s, NOW()), COALESCE(%(updated_at)s, NOW()), %(updated_by)s
                            )
                            ON CONFLICT (project_id, project_month_number) DO NOTHING
                            RETURNING {RECORD_COLUMNS}
                            """,
                            params,
                        )
                    else:
                        cur.execute(
                            f"""
                            UPDATE agencyops.project_expenses SET
                                month = %(month)s,
                                period_start_date = %(period_start_date)s,
                                period_end_date = %(period_end_date)s,
                                dynamic_expenses = %(dynamic_expenses)s,
                                category_totals = %(category_totals)s,
                                smm_expenses = %(smm_expenses)s,
                                production_expenses = %(production_expenses)s,
                                fot_expenses = %(fot_expenses)s,
                                fot_calculations = %(fot_calculations)s,
                                models_expenses = %(models_expenses)s,
                                other_expenses = %(other_expenses)s,
                                other_expenses_description = %(other_expenses_description)s,
                                notes = %(notes)s,
                                revenue = %(revenue)s,
                                total_expenses = %(total_expenses)s,
                                margin_percent = %(margin_percent)s,
                                last_synced_at = %(last_synced_at)s,
                                sync_source = %(sync_source)s,
                                is_frozen = %(is_frozen)s,
                                frozen_at = %(frozen_at)s,
                                frozen_by = %(frozen_by)s,
                                version = version + 1,
                                updated_at = COALESCE(%(updated_at)s, NOW()),
                                updated_by = %(updated_by)s
                            WHERE project_id = %(project_id)s
                              AND project_month_number = %(month_number)s
                              AND version = %(expected_version)s
                            RETURNING {RECORD_COLUMNS}
                            """,
                            params,
                        )
                    row = cur.fetchone()
                    if row is None:
                        cur.execute(
                            """
                            SELECT version FROM agencyops.project_expenses
                            WHERE project_id = %s AND project_month_number = %s
                            """,
                            (record.project_id, record.month_number),
                        )
                        current = cur.fetchone()
                        conn.rollback()
                        raise ConcurrentEditConflict(
                            record.project_id,
                            record.month_number,
                            expected_version,
                            current["version"] if current else None,
                        )
                    if history:
                        _insert_history(cur, history)
                conn.commit()
        except psycopg.Error as exc:
            raise PersistenceFailure(
                f"Could not save period {record.month_number} of project {record.project_id}: {exc}"
            ) from exc
        elapsed = (perf_counter() - start) * 1000
        logger.debug(
            "save_period project_id=%s month=%s version=%s elapsed_ms=%.2f",
            record.project_id,
            record.month_number,
            row["version"],
            elapsed,
        )
        return _row_to_record(row)

    def list_periods(self, project_id: str) -> List[ExpensePeriodRecord]:
        try:
            with pool.connection() as conn:
                with conn.cursor(row_factory=dict_row) as cur:
                    cur.execute(
                        f"""
                        SELECT {RECORD_COLUMNS}
                        FROM agencyops.project_expenses
                        WHERE project_id = %s
                        ORDER BY project_month_number DESC
                        """,
                        (project_id,),
                    )
                    rows = cur.fetchall()
        except psycopg.Error as exc:
            raise PersistenceFailure(f"Could not list periods of project {project_id}: {exc}") from exc
        return [_row_to_record(row) for row in rows]

    def list_project_ids(self) -> List[str]:
        try:
            with pool.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT DISTINCT project_id FROM agencyops.project_expenses ORDER BY project_id")
                    rows = cur.fetchall()
        except psycopg.Error as exc:
            raise PersistenceFailure(f"Could not list projects with expense records: {exc}") from exc
        return [row[0] for row in rows]

    def list_history(self, project_id: str, month_number: int) -> List[ExpenseHistoryEntry]:
        try:
            with pool.connection() as conn:
                with conn.cursor(row_factory=dict_row) as cur:
                    cur.execute(
                        """
                        SELECT project_id, project_month_number, field_name, old_value, new_value,
                               changed_by, change_reason, created_at
                        FROM agencyops.project_expenses_history
                        WHERE project_id = %s AND project_month_number = %s
                        ORDER BY created_at DESC, id DESC
                        """,
                        (project_id, month_number),
                    )
                    rows = cur.fetchall()
        except psycopg.Error as exc:
            raise PersistenceFailure(f"Could not load expense history: {exc}") from exc
        return [
            ExpenseHistoryEntry(
                project_id=row["project_id"],
                month_number=row["project_month_number"],
                field_name=row["field_name"],
                old_value=row["old_value"] or "",
                new_value=row["new_value"] or "",
                changed_by=row["changed_by"],
                change_reason=row["change_reason"] or "",
                created_at=row["created_at"],
            )
            for row in rows
        ]
