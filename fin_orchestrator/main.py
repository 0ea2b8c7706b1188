# =============================================================================
# FastAPI Application — Submission API
# =============================================================================
#
# Run with:
#   uvicorn fin_orchestrator.main:app --host 0.0.0.0 --port 8000
#
# The API process only submits, inspects and cancels jobs. Workers run in
# separate executor processes (`fin-orchestrator-executor`) and recovery
# sweeps in Celery beat/worker processes.
# =============================================================================

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI

from fin_orchestrator.api import jobs
from fin_orchestrator.api.deps import get_planner_dep
from fin_orchestrator.config import configure_logging, settings
from fin_orchestrator.db.engine import init_db
from fin_orchestrator.models.responses import HealthResponse
from fin_orchestrator.services.planner import Planner

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    logger.info("Starting %s v%s", settings.app_name, settings.app_version)
    init_db()
    yield
    logger.info("Shutting down %s", settings.app_name)


app = FastAPI(
    title=settings.app_name,
    description=(
        "Orchestration core for multi-agent financial analysis: submit a "
        "job naming the worker agents to run, poll for the aggregated result."
    ),
    version=settings.app_version,
    lifespan=lifespan,
)

app.include_router(jobs.router)


@app.get("/health", response_model=HealthResponse, tags=["Health"])
def health(planner: Planner = Depends(get_planner_dep)) -> HealthResponse:
    """Liveness plus a cheap check of the database and queue backend."""
    database = "ok"
    try:
        planner.store.ping()
    except Exception:
        logger.exception("Health check: database unreachable")
        database = "unavailable"

    return HealthResponse(
        status="ok" if database == "ok" else "degraded",
        version=settings.app_version,
        database=database,
        queue=type(planner.queue).__name__,
    )
