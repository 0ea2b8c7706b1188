# =============================================================================
# Jobs API — Submission, Status, Cancellation, Task History
# =============================================================================
#
# ENDPOINTS:
#   POST /jobs                                — submit, returns job_id (202)
#   GET  /jobs/{job_id}                       — job state, tasks, result/failure
#   POST /jobs/{job_id}/cancel                — best-effort cancellation
#   GET  /jobs/{job_id}/tasks/{task_id}/events — task transition history
#
# DESIGN DECISION: 202 Accepted for POST /jobs.
# Submission only persists the job and enqueues task messages; workers run
# later in executor processes. Clients poll GET /jobs/{job_id}.
#
# DESIGN DECISION: Sync route handlers.
# The Planner and Job Store are blocking (sync SQLAlchemy); FastAPI runs
# plain `def` handlers in its threadpool so the event loop never blocks.
#
# ERROR MAPPING:
#   InvalidRequest           → 400
#   JobNotFound/TaskNotFound → 404
# Anything else is an internal error and surfaces as a generic 500.
# =============================================================================

import logging

from fastapi import APIRouter, Depends, HTTPException

from fin_orchestrator.api.deps import get_planner_dep
from fin_orchestrator.errors import InvalidRequest, JobNotFound, TaskNotFound
from fin_orchestrator.models.requests import SubmitJobRequest
from fin_orchestrator.models.responses import (
    JobStatusResponse,
    SubmitJobResponse,
    TaskEventResponse,
)
from fin_orchestrator.services.planner import Planner

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Jobs"])


# ---------------------------------------------------------------------------
# POST /jobs — Submit a job
# ---------------------------------------------------------------------------


@router.post(
    "/jobs",
    response_model=SubmitJobResponse,
    status_code=202,
    summary="Submit a multi-agent analysis job",
    description=(
        "Creates one task per requested worker and enqueues them. Returns "
        "immediately; the result is available from GET /jobs/{job_id} once "
        "the job is completed."
    ),
)
def submit_job(
    request: SubmitJobRequest,
    planner: Planner = Depends(get_planner_dep),
) -> SubmitJobResponse:
    try:
        job_id = planner.submit(request.input, request.required_workers)
    except InvalidRequest as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    job = planner.store.get_job(job_id)
    return SubmitJobResponse(job_id=job_id, state=job.state.value)


# ---------------------------------------------------------------------------
# GET /jobs/{job_id} — Job status
# ---------------------------------------------------------------------------


@router.get(
    "/jobs/{job_id}",
    response_model=JobStatusResponse,
    summary="Get job state, tasks and result",
)
def get_job(
    job_id: str,
    planner: Planner = Depends(get_planner_dep),
) -> JobStatusResponse:
    try:
        status = planner.get_job_status(job_id)
    except JobNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return JobStatusResponse.from_status(status)


# ---------------------------------------------------------------------------
# POST /jobs/{job_id}/cancel — Cancel a job
# ---------------------------------------------------------------------------


@router.post(
    "/jobs/{job_id}/cancel",
    response_model=JobStatusResponse,
    summary="Cancel a job (best effort)",
    description=(
        "Marks the job failed with reason 'cancelled' and fails its "
        "unfinished tasks. Running workers are stopped by their executor's "
        "watchdog; cancelling a finished job changes nothing."
    ),
)
def cancel_job(
    job_id: str,
    planner: Planner = Depends(get_planner_dep),
) -> JobStatusResponse:
    try:
        planner.cancel(job_id)
        status = planner.get_job_status(job_id)
    except JobNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return JobStatusResponse.from_status(status)


# ---------------------------------------------------------------------------
# GET /jobs/{job_id}/tasks/{task_id}/events — Task history
# ---------------------------------------------------------------------------


@router.get(
    "/jobs/{job_id}/tasks/{task_id}/events",
    response_model=list[TaskEventResponse],
    summary="List a task's state transitions and attempt errors",
)
def list_task_events(
    job_id: str,
    task_id: str,
    planner: Planner = Depends(get_planner_dep),
) -> list[TaskEventResponse]:
    try:
        task = planner.store.get_task(task_id)
    except TaskNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    if task.job_id != job_id:
        raise HTTPException(status_code=404, detail=f"Task {task_id} not found in job {job_id}")

    return [
        TaskEventResponse.from_view(event)
        for event in planner.store.list_task_events(task_id)
    ]
