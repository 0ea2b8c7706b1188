# =============================================================================
# Domain Types — States, Worker Kinds, Records and Wire Messages
# =============================================================================
#
# JOB STATE MACHINE (monotonic by rank):
#
#   PENDING(0) ─▶ DISPATCHED(1) ─▶ PARTIALLY_COMPLETE(2) ─▶ COMPLETED(3)
#       │               │                    │          └─▶ FAILED(3)
#       └───────────────┴────────────────────┴────────────▶ FAILED(3)
#
# TASK STATE MACHINE:
#
#   PENDING ─▶ ENQUEUED ─▶ RUNNING ─▶ SUCCEEDED
#      ▲                      │
#      └──── (retry) ─────────┴──▶ FAILED (terminal once attempts exhausted,
#                                          permanent, or cancelled)
#
# JobView / TaskView are detached snapshots returned by the Job Store, so
# callers never hold live ORM objects across transactions.
# =============================================================================

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(UTC)


class WorkerKind(str, enum.Enum):
    """Closed set of specialised worker agents."""

    TAGGER = "tagger"            # classifies the request
    REPORTER = "reporter"        # writes the narrative report
    CHARTER = "charter"          # builds chart specifications
    RETIREMENT = "retirement"    # savings / retirement projection
    RESEARCHER = "researcher"    # multi-step research summary


class JobState(str, enum.Enum):
    PENDING = "pending"
    DISPATCHED = "dispatched"
    PARTIALLY_COMPLETE = "partially_complete"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        return _JOB_STATE_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


_JOB_STATE_RANK = {
    JobState.PENDING: 0,
    JobState.DISPATCHED: 1,
    JobState.PARTIALLY_COMPLETE: 2,
    JobState.COMPLETED: 3,
    JobState.FAILED: 3,
}


class TaskState(str, enum.Enum):
    PENDING = "pending"
    ENQUEUED = "enqueued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskState.SUCCEEDED, TaskState.FAILED)


class ErrorKind(str, enum.Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    CANCELLED = "cancelled"


# ---------------------------------------------------------------------------
# Store Snapshots
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class JobView:
    id: str
    input: dict[str, Any]
    required_workers: list[WorkerKind]
    state: JobState
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None
    result: dict[str, Any] | None = None
    failure: dict[str, Any] | None = None


@dataclass(slots=True)
class TaskView:
    id: str
    job_id: str
    position: int
    worker_kind: WorkerKind
    payload: dict[str, Any]
    state: TaskState
    attempt: int
    max_attempts: int
    created_at: datetime
    updated_at: datetime
    deadline: datetime | None = None
    output: dict[str, Any] | None = None
    error: dict[str, Any] | None = None
    claimed_message_id: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def attempts_exhausted(self) -> bool:
        return self.attempt >= self.max_attempts


@dataclass(slots=True)
class TaskEventView:
    task_id: str
    job_id: str
    event_type: str
    state_from: TaskState | None
    state_to: TaskState | None
    attempt: int
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobStatus:
    """A job together with its tasks in canonical (position) order."""

    job: JobView
    tasks: list[TaskView]


@dataclass(slots=True)
class NewTask:
    """Input to JobStore.create_job_with_tasks for one task row."""

    id: str
    worker_kind: WorkerKind
    position: int
    payload: dict[str, Any]
    max_attempts: int


# ---------------------------------------------------------------------------
# Task Outcomes — reported to Planner.on_task_terminal
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class TaskOutcome:
    """Terminal report for one task attempt: success with output, or failure."""

    succeeded: bool
    output: dict[str, Any] | None = None
    error_kind: ErrorKind | None = None
    error_message: str | None = None

    @classmethod
    def success(cls, output: dict[str, Any]) -> TaskOutcome:
        return cls(succeeded=True, output=output)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str) -> TaskOutcome:
        return cls(succeeded=False, error_kind=kind, error_message=message)

    @property
    def retryable(self) -> bool:
        return not self.succeeded and self.error_kind == ErrorKind.TRANSIENT

    def error_dict(self, attempt: int) -> dict[str, Any]:
        return {
            "kind": self.error_kind.value if self.error_kind else None,
            "message": self.error_message,
            "attempt": attempt,
        }


# ---------------------------------------------------------------------------
# Dispatch Message — the queue wire record
# ---------------------------------------------------------------------------
# Stable JSON schema. extra="ignore" keeps messages from a newer producer
# readable by an older compatible executor; schema_version lets consumers
# reject incompatible major changes.
# ---------------------------------------------------------------------------

DISPATCH_SCHEMA_VERSION = 1


class DispatchMessage(BaseModel):
    """One task attempt on the wire. A retry always gets a new message_id."""

    schema_version: int = DISPATCH_SCHEMA_VERSION
    message_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    task_id: str
    job_id: str
    worker_kind: WorkerKind
    payload: dict[str, Any] = Field(default_factory=dict)
    attempt: int = Field(ge=1)
    enqueued_at: datetime = Field(default_factory=utc_now)

    model_config = ConfigDict(extra="ignore", frozen=True)

    @classmethod
    def for_task(cls, task: TaskView) -> DispatchMessage:
        return cls(
            task_id=task.id,
            job_id=task.job_id,
            worker_kind=task.worker_kind,
            payload=task.payload,
            attempt=task.attempt,
        )

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, raw: str | bytes) -> DispatchMessage:
        return cls.model_validate_json(raw)


@dataclass(frozen=True, slots=True)
class Delivery:
    """A dequeued message plus how many times the queue has handed it out."""

    message: DispatchMessage
    receive_count: int = 1

    @property
    def redelivered(self) -> bool:
        return self.receive_count > 1
