import logging
from pathlib import Path
from typing import Iterable

from psycopg_pool import ConnectionPool

from .config import settings

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent
MIGRATIONS_DIR = BASE_DIR.parent / "migrations"

# start closed, we'll open in app lifespan
pool = ConnectionPool(conninfo=settings.database_url, max_size=10, open=False)


SCHEMA_STATEMENTS: Iterable[str] = (
    """
    CREATE TABLE IF NOT EXISTS agencyops.projects (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'active',
        start_date DATE,
        end_date DATE,
        duration_days INTEGER,
        budget NUMERIC(14, 2) NOT NULL DEFAULT 0,
        media_budget NUMERIC(14, 2) NOT NULL DEFAULT 0,
        is_archived BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS agencyops.users (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        job_title TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS agencyops.project_team (
        project_id TEXT NOT NULL REFERENCES agencyops.projects(id) ON DELETE CASCADE,
        user_id TEXT NOT NULL REFERENCES agencyops.users(id) ON DELETE CASCADE,
        PRIMARY KEY (project_id, user_id)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_project_team_user_id ON agencyops.project_team(user_id)
    """,
    """
    CREATE TABLE IF NOT EXISTS agencyops.salary_schemes (
        id BIGSERIAL PRIMARY KEY,
        target_id TEXT NOT NULL,
        target_type TEXT NOT NULL CHECK (target_type IN ('jobTitle', 'user')),
        base_salary NUMERIC(14, 2) NOT NULL DEFAULT 0,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE (target_id, target_type)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS agencyops.kpi_rates (
        id BIGSERIAL PRIMARY KEY,
        target_id TEXT NOT NULL,
        target_type TEXT NOT NULL CHECK (target_type IN ('jobTitle', 'user')),
        task_type TEXT NOT NULL,
        value NUMERIC(14, 2) NOT NULL DEFAULT 0,
        UNIQUE (target_id, target_type, task_type)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS agencyops.tasks (
        id TEXT PRIMARY KEY,
        project_id TEXT NOT NULL REFERENCES agencyops.projects(id) ON DELETE CASCADE,
        assignee_id TEXT REFERENCES agencyops.users(id) ON DELETE SET NULL,
        title TEXT NOT NULL DEFAULT '',
        type TEXT,
        status TEXT NOT NULL DEFAULT 'To Do',
        started_at TIMESTAMPTZ,
        estimated_hours NUMERIC(8, 2)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_tasks_project_started ON agencyops.tasks(project_id, started_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS agencyops.project_content_metrics (
        project_id TEXT NOT NULL REFERENCES agencyops.projects(id) ON DELETE CASCADE,
        metric_key TEXT NOT NULL,
        recorded_on DATE NOT NULL,
        fact NUMERIC(12, 2) NOT NULL DEFAULT 0,
        plan NUMERIC(12, 2) NOT NULL DEFAULT 0,
        PRIMARY KEY (project_id, metric_key, recorded_on)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS agencyops.calculator_categories (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        icon TEXT NOT NULL DEFAULT '',
        sort_order INTEGER NOT NULL DEFAULT 999
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS agencyops.project_expenses (
        project_id TEXT NOT NULL REFERENCES agencyops.projects(id) ON DELETE CASCADE,
        project_month_number INTEGER NOT NULL CHECK (project_month_number >= 1),
        month TEXT,
        period_start_date DATE,
        period_end_date DATE,
        dynamic_expenses JSONB NOT NULL DEFAULT '{}'::jsonb,
        category_totals JSONB NOT NULL DEFAULT '{}'::jsonb,
        smm_expenses NUMERIC(14, 2) NOT NULL DEFAULT 0,
        production_expenses NUMERIC(14, 2) NOT NULL DEFAULT 0,
        fot_expenses NUMERIC(14, 2) NOT NULL DEFAULT 0,
        fot_calculations JSONB NOT NULL DEFAULT '{}'::jsonb,
        models_expenses NUMERIC(14, 2) NOT NULL DEFAULT 0,
        other_expenses NUMERIC(14, 2) NOT NULL DEFAULT 0,
        other_expenses_description TEXT NOT NULL DEFAULT '',
        notes TEXT NOT NULL DEFAULT '',
        revenue NUMERIC(14, 2) NOT NULL DEFAULT 0,
        total_expenses NUMERIC(14, 2) NOT NULL DEFAULT 0,
        margin_percent NUMERIC(8, 2) NOT NULL DEFAULT 0,
        last_synced_at TIMESTAMPTZ,
        sync_source TEXT NOT NULL DEFAULT 'manual',
        is_frozen BOOLEAN NOT NULL DEFAULT FALSE,
        frozen_at TIMESTAMPTZ,
        frozen_by TEXT,
        version INTEGER NOT NULL DEFAULT 1,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_by TEXT,
        PRIMARY KEY (project_id, project_month_number)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS agencyops.project_expenses_history (
        id BIGSERIAL PRIMARY KEY,
        project_id TEXT NOT NULL,
        project_month_number INTEGER NOT NULL,
        field_name TEXT NOT NULL,
        old_value TEXT NOT NULL DEFAULT '',
        new_value TEXT NOT NULL DEFAULT '',
        changed_by TEXT,
        change_reason TEXT NOT NULL DEFAULT '',
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        FOREIGN KEY (project_id, project_month_number)
            REFERENCES agencyops.project_expenses(project_id, project_month_number) ON DELETE CASCADE
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_project_expenses_history_period
        ON agencyops.project_expenses_history(project_id, project_month_number, created_at)
    """,
)


def open_pool() -> None:
    if pool.closed:
        pool.open()


def close_pool() -> None:
    if not pool.closed:
        pool.close()


def initialize_database() -> None:
    try:
        ensure_schema()
        apply_migrations()
    except Exception:  # pragma: no cover - surfaced to the lifespan
        logger.exception("Database initialization failed")
        raise


def ensure_schema() -> None:
    with pool.connection() as conn:
        with conn.cursor() as cur:
            cur.execute("CREATE SCHEMA IF NOT EXISTS agencyops")
            cur.execute("SET search_path TO agencyops, public")
            for statement in SCHEMA_STATEMENTS:
                cur.execute(statement)
        conn.commit()


def apply_migrations() -> None:
    """Execute idempotent SQL migrations stored in agencyops-backend/migrations."""
    if not MIGRATIONS_DIR.exists():
        return

    migration_files = sorted(MIGRATIONS_DIR.glob("*.sql"))
    if not migration_files:
        return

    with pool.connection() as conn:
        for path in migration_files:
            sql = path.read_text()
            if not sql.strip():
                continue
            logger.info("Applying migration %s", path.name)
            with conn.cursor() as cur:
                cur.execute(sql)
        conn.commit()
