import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from contextlib import asynccontextmanager

from .routers import project_finance
from .db import open_pool, close_pool, pool, initialize_database
from .services.period_state import PeriodAutoSyncScheduler


logger = logging.getLogger(__name__)


def run_auto_sync(project_id: str, month_number: int):
    return project_finance.get_project_finance_engine().auto_sync(project_id, month_number)


@asynccontextmanager
async def lifespan(app: FastAPI):
    open_pool()  # open DB pool at startup
    database_available = True
    try:
        initialize_database()
    except Exception as exc:  # pragma: no cover - local dev without postgres
        database_available = False
        logger.warning("Database initialization failed; expense records are unavailable: %s", exc)
    app.state.database_available = database_available
    scheduler = PeriodAutoSyncScheduler(run_auto_sync)
    app.state.expense_scheduler = scheduler
    try:
        yield
    finally:
        await scheduler.shutdown()
        app.state.expense_scheduler = None
        close_pool()  # close pool at shutdown

app = FastAPI(
    title="AgencyOps Backend",
    version="0.1.0",
    default_response_class=ORJSONResponse,
    lifespan=lifespan,
)

# Allow any localhost/127.* origin for dev tools (Vite/Next/Storybook, etc.)
origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_origin_regex=r".*",
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(project_finance.router)

@app.get("/api/health")
def health():
    return {"ok": True}

# DB connectivity quick-check
@app.get("/api/db/ping")
def db_ping():
    with pool.connection() as conn:
        with conn.cursor() as cur:
            cur.execute("select 'ok'::text")
            (status,) = cur.fetchone()
            return {"db": status}
