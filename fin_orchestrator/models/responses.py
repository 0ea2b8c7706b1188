# =============================================================================
# API Response Models — Pydantic V2 Schemas
# =============================================================================
#
# Shape of data going OUT of the API. Built from the Job Store snapshots
# (JobView / TaskView) with `from_view` constructors, so route handlers
# never touch ORM rows.
# =============================================================================

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from fin_orchestrator.models.domain import JobStatus, TaskEventView, TaskView


class SubmitJobResponse(BaseModel):
    """Response for POST /jobs (202 Accepted)."""

    job_id: str = Field(..., description="Poll GET /jobs/{job_id} for progress.")
    state: str = Field(..., description="Job state right after submission.")


class TaskStatusResponse(BaseModel):
    id: str
    worker: str
    position: int
    state: str
    attempt: int
    max_attempts: int
    deadline: datetime | None = None
    error: dict[str, Any] | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @classmethod
    def from_view(cls, task: TaskView) -> TaskStatusResponse:
        return cls(
            id=task.id,
            worker=task.worker_kind.value,
            position=task.position,
            state=task.state.value,
            attempt=task.attempt,
            max_attempts=task.max_attempts,
            deadline=task.deadline,
            error=task.error,
            started_at=task.started_at,
            finished_at=task.finished_at,
        )


class JobStatusResponse(BaseModel):
    """
    Response for GET /jobs/{job_id}.

    `result` is present only for completed jobs, `failure` only for failed
    ones. Tasks are listed in required_workers order.
    """

    job_id: str
    state: str
    required_workers: list[str]
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None
    tasks: list[TaskStatusResponse]
    result: dict[str, Any] | None = None
    failure: dict[str, Any] | None = None

    @classmethod
    def from_status(cls, status: JobStatus) -> JobStatusResponse:
        job = status.job
        return cls(
            job_id=job.id,
            state=job.state.value,
            required_workers=[kind.value for kind in job.required_workers],
            created_at=job.created_at,
            updated_at=job.updated_at,
            completed_at=job.completed_at,
            tasks=[TaskStatusResponse.from_view(task) for task in status.tasks],
            result=job.result,
            failure=job.failure,
        )


class TaskEventResponse(BaseModel):
    event_type: str
    state_from: str | None = None
    state_to: str | None = None
    attempt: int
    created_at: datetime
    details: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_view(cls, event: TaskEventView) -> TaskEventResponse:
        return cls(
            event_type=event.event_type,
            state_from=event.state_from.value if event.state_from else None,
            state_to=event.state_to.value if event.state_to else None,
            attempt=event.attempt,
            created_at=event.created_at,
            details=event.details,
        )


class HealthResponse(BaseModel):
    status: str
    version: str
    database: str
    queue: str
