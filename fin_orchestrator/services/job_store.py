# =============================================================================
# Job Store — Durable Job/Task Records with Compare-and-Swap Transitions
# =============================================================================
#
# The Job Store is the single source of truth for orchestration state and
# the sole arbiter of concurrent writes. Nothing holds authoritative state
# in memory: planners and executors may run in many processes.
#
# GUARANTEES:
# 1. create_job_with_tasks writes the Job and its full Task set in one
#    transaction: all rows persist or none do.
# 2. update_task_state / update_job_state are compare-and-swap:
#       UPDATE ... SET ... WHERE id = :id AND state = :expected [AND attempt = :n]
#    A rowcount of 0 raises StaleStateConflict; the caller re-reads and
#    re-decides. Same-state writes (e.g. RUNNING → RUNNING) are rejected.
# 3. Each task transition appends a task_events row in the same transaction.
#
# ARCHITECTURE:
#   JobStore (Protocol)
#   └── SqlAlchemyJobStore — PostgreSQL in production, SQLite in tests
# =============================================================================

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy import insert, select, text, update
from sqlalchemy.orm import Session, sessionmaker

from fin_orchestrator.db.models import JobRecord, TaskEventRecord, TaskRecord
from fin_orchestrator.errors import (
    JobNotFound,
    StaleStateConflict,
    TaskNotFound,
)
from fin_orchestrator.models.domain import (
    JobState,
    JobView,
    NewTask,
    TaskEventView,
    TaskState,
    TaskView,
    WorkerKind,
    utc_now,
)

logger = logging.getLogger(__name__)

# Fields a task transition may set alongside its new state
_TASK_MUTABLE_FIELDS = frozenset({
    "attempt",
    "output",
    "error",
    "deadline",
    "claimed_message_id",
    "started_at",
    "finished_at",
})


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class JobStore(Protocol):
    """Persistence interface used by the Planner, Executor and sweeps."""

    def create_job_with_tasks(
        self,
        job_id: str,
        input: dict[str, Any],
        required_workers: list[WorkerKind],
        tasks: list[NewTask],
    ) -> JobView: ...

    def get_job(self, job_id: str) -> JobView: ...

    def get_task(self, task_id: str) -> TaskView: ...

    def list_tasks_for_job(self, job_id: str) -> list[TaskView]: ...

    def update_task_state(
        self,
        task_id: str,
        expected_state: TaskState,
        new_state: TaskState,
        *,
        expected_attempt: int | None = None,
        event_type: str | None = None,
        details: dict[str, Any] | None = None,
        **fields: Any,
    ) -> TaskView: ...

    def update_job_state(
        self,
        job_id: str,
        expected_state: JobState,
        new_state: JobState,
        *,
        result: dict[str, Any] | None = None,
        failure: dict[str, Any] | None = None,
    ) -> JobView: ...

    def record_task_error(
        self, task_id: str, attempt: int, error: dict[str, Any],
    ) -> bool: ...

    def record_task_requeued(
        self, task_id: str, attempt: int, details: dict[str, Any],
    ) -> bool: ...

    def list_tasks_past_deadline(self, now: datetime, limit: int) -> list[TaskView]: ...

    def list_stale_pending_tasks(self, older_than: datetime, limit: int) -> list[TaskView]: ...

    def list_stalled_enqueued_tasks(self, older_than: datetime, limit: int) -> list[TaskView]: ...

    def list_unfinished_jobs(self, limit: int) -> list[JobView]: ...

    def list_task_events(self, task_id: str) -> list[TaskEventView]: ...

    def ping(self) -> None: ...


# ---------------------------------------------------------------------------
# SQLAlchemy Implementation
# ---------------------------------------------------------------------------


class SqlAlchemyJobStore:
    """
    Job Store backed by SQLAlchemy Core UPDATE statements.

    Each public method runs in its own short transaction so that no lock
    or session outlives a single decision.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def ping(self) -> None:
        """Round-trip to the database; raises when it is unreachable."""
        with self._session_factory() as session:
            session.execute(text("SELECT 1"))

    # --- Creation -----------------------------------------------------------

    def create_job_with_tasks(
        self,
        job_id: str,
        input: dict[str, Any],
        required_workers: list[WorkerKind],
        tasks: list[NewTask],
    ) -> JobView:
        now = utc_now()
        with self._session_factory.begin() as session:
            job = JobRecord(
                id=job_id,
                input=input,
                required_workers=[kind.value for kind in required_workers],
                state=JobState.PENDING,
                created_at=now,
                updated_at=now,
            )
            session.add(job)
            for new_task in tasks:
                session.add(
                    TaskRecord(
                        id=new_task.id,
                        job_id=job_id,
                        position=new_task.position,
                        worker_kind=new_task.worker_kind.value,
                        payload=new_task.payload,
                        state=TaskState.PENDING,
                        attempt=1,
                        max_attempts=new_task.max_attempts,
                        created_at=now,
                        updated_at=now,
                    )
                )
            # Tasks must exist before their events (FK)
            session.flush()
            for new_task in tasks:
                self._append_event(
                    session,
                    task_id=new_task.id,
                    job_id=job_id,
                    event_type="created",
                    state_from=None,
                    state_to=TaskState.PENDING,
                    attempt=1,
                    details={"worker_kind": new_task.worker_kind.value},
                )
            session.flush()
            view = _job_view(job)

        logger.info(
            "Created job %s with %d task(s): %s",
            job_id, len(tasks), [k.value for k in required_workers],
        )
        return view

    # --- Reads --------------------------------------------------------------

    def get_job(self, job_id: str) -> JobView:
        with self._session_factory() as session:
            job = session.get(JobRecord, job_id)
            if job is None:
                raise JobNotFound(job_id)
            return _job_view(job)

    def get_task(self, task_id: str) -> TaskView:
        with self._session_factory() as session:
            task = session.get(TaskRecord, task_id)
            if task is None:
                raise TaskNotFound(task_id)
            return _task_view(task)

    def list_tasks_for_job(self, job_id: str) -> list[TaskView]:
        with self._session_factory() as session:
            rows = session.scalars(
                select(TaskRecord)
                .where(TaskRecord.job_id == job_id)
                .order_by(TaskRecord.position)
            ).all()
            return [_task_view(row) for row in rows]

    def list_tasks_past_deadline(self, now: datetime, limit: int = 200) -> list[TaskView]:
        with self._session_factory() as session:
            rows = session.scalars(
                select(TaskRecord)
                .where(
                    TaskRecord.state == TaskState.RUNNING,
                    TaskRecord.deadline.is_not(None),
                    TaskRecord.deadline < now,
                )
                .order_by(TaskRecord.deadline)
                .limit(limit)
            ).all()
            return [_task_view(row) for row in rows]

    def list_stale_pending_tasks(
        self, older_than: datetime, limit: int = 200,
    ) -> list[TaskView]:
        return self._list_idle_tasks(TaskState.PENDING, older_than, limit)

    def list_stalled_enqueued_tasks(
        self, older_than: datetime, limit: int = 200,
    ) -> list[TaskView]:
        """ENQUEUED tasks of live jobs not touched since `older_than`."""
        return self._list_idle_tasks(TaskState.ENQUEUED, older_than, limit)

    def _list_idle_tasks(
        self, state: TaskState, older_than: datetime, limit: int,
    ) -> list[TaskView]:
        with self._session_factory() as session:
            rows = session.scalars(
                select(TaskRecord)
                .join(JobRecord, JobRecord.id == TaskRecord.job_id)
                .where(
                    TaskRecord.state == state,
                    TaskRecord.updated_at < older_than,
                    JobRecord.state.not_in([JobState.COMPLETED, JobState.FAILED]),
                )
                .order_by(TaskRecord.updated_at)
                .limit(limit)
            ).all()
            return [_task_view(row) for row in rows]

    def list_unfinished_jobs(self, limit: int = 200) -> list[JobView]:
        with self._session_factory() as session:
            rows = session.scalars(
                select(JobRecord)
                .where(JobRecord.state.not_in([JobState.COMPLETED, JobState.FAILED]))
                .order_by(JobRecord.created_at)
                .limit(limit)
            ).all()
            return [_job_view(row) for row in rows]

    def list_task_events(self, task_id: str) -> list[TaskEventView]:
        with self._session_factory() as session:
            rows = session.scalars(
                select(TaskEventRecord)
                .where(TaskEventRecord.task_id == task_id)
                .order_by(TaskEventRecord.id)
            ).all()
            return [
                TaskEventView(
                    task_id=row.task_id,
                    job_id=row.job_id,
                    event_type=row.event_type,
                    state_from=TaskState(row.state_from) if row.state_from else None,
                    state_to=TaskState(row.state_to) if row.state_to else None,
                    attempt=row.attempt,
                    created_at=row.created_at,
                    details=row.details or {},
                )
                for row in rows
            ]

    # --- Compare-and-swap writes ---------------------------------------------

    def update_task_state(
        self,
        task_id: str,
        expected_state: TaskState,
        new_state: TaskState,
        *,
        expected_attempt: int | None = None,
        event_type: str | None = None,
        details: dict[str, Any] | None = None,
        **fields: Any,
    ) -> TaskView:
        """
        Move a task from `expected_state` to `new_state`.

        Extra keyword fields (attempt, output, error, deadline, ...) are
        written in the same statement. Raises StaleStateConflict when the
        row is not in `expected_state` (or not at `expected_attempt`), or
        when the transition is a same-state write.
        """
        unknown = set(fields) - _TASK_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported task fields: {sorted(unknown)}")
        if expected_state == new_state:
            raise StaleStateConflict("task", task_id, expected_state)

        now = utc_now()
        conditions = [TaskRecord.id == task_id, TaskRecord.state == expected_state]
        if expected_attempt is not None:
            conditions.append(TaskRecord.attempt == expected_attempt)

        with self._session_factory.begin() as session:
            result = session.execute(
                update(TaskRecord)
                .where(*conditions)
                .values(state=new_state, updated_at=now, **fields)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                if session.get(TaskRecord, task_id) is None:
                    raise TaskNotFound(task_id)
                raise StaleStateConflict("task", task_id, expected_state)

            row = session.get(TaskRecord, task_id, populate_existing=True)
            self._append_event(
                session,
                task_id=task_id,
                job_id=row.job_id,
                event_type=event_type or new_state.value,
                state_from=expected_state,
                state_to=new_state,
                attempt=row.attempt,
                details=details,
            )
            return _task_view(row)

    def update_job_state(
        self,
        job_id: str,
        expected_state: JobState,
        new_state: JobState,
        *,
        result: dict[str, Any] | None = None,
        failure: dict[str, Any] | None = None,
    ) -> JobView:
        """
        Move a job from `expected_state` to `new_state`.

        Only forward moves by rank are accepted and a terminal job never
        reopens. `result` is written only for COMPLETED, `failure` only for
        FAILED; terminal states also stamp completed_at.
        """
        if expected_state.is_terminal or new_state.rank <= expected_state.rank:
            raise StaleStateConflict("job", job_id, expected_state)

        now = utc_now()
        values: dict[str, Any] = {"state": new_state, "updated_at": now}
        if new_state == JobState.COMPLETED:
            if result is None:
                raise ValueError("A completed job requires a result")
            values["result"] = result
        if new_state == JobState.FAILED:
            values["failure"] = failure or {}
        if new_state.is_terminal:
            values["completed_at"] = now

        with self._session_factory.begin() as session:
            outcome = session.execute(
                update(JobRecord)
                .where(JobRecord.id == job_id, JobRecord.state == expected_state)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if outcome.rowcount != 1:
                if session.get(JobRecord, job_id) is None:
                    raise JobNotFound(job_id)
                raise StaleStateConflict("job", job_id, expected_state)
            row = session.get(JobRecord, job_id, populate_existing=True)
            return _job_view(row)

    def record_task_error(
        self, task_id: str, attempt: int, error: dict[str, Any],
    ) -> bool:
        """
        Attach the latest transient error to a running attempt.

        No state change; returns False when the attempt is no longer running.
        """
        with self._session_factory.begin() as session:
            result = session.execute(
                update(TaskRecord)
                .where(
                    TaskRecord.id == task_id,
                    TaskRecord.state == TaskState.RUNNING,
                    TaskRecord.attempt == attempt,
                )
                .values(error=error, updated_at=utc_now())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return False
            job_id = session.scalar(select(TaskRecord.job_id).where(TaskRecord.id == task_id))
            self._append_event(
                session,
                task_id=task_id,
                job_id=job_id,
                event_type="attempt_error",
                state_from=TaskState.RUNNING,
                state_to=TaskState.RUNNING,
                attempt=attempt,
                details=error,
            )
            return True

    def record_task_requeued(
        self, task_id: str, attempt: int, details: dict[str, Any],
    ) -> bool:
        """Note a fresh message for an ENQUEUED attempt; returns False if it moved on."""
        with self._session_factory.begin() as session:
            result = session.execute(
                update(TaskRecord)
                .where(
                    TaskRecord.id == task_id,
                    TaskRecord.state == TaskState.ENQUEUED,
                    TaskRecord.attempt == attempt,
                )
                .values(updated_at=utc_now())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return False
            job_id = session.scalar(select(TaskRecord.job_id).where(TaskRecord.id == task_id))
            self._append_event(
                session,
                task_id=task_id,
                job_id=job_id,
                event_type="re_enqueued",
                state_from=TaskState.ENQUEUED,
                state_to=TaskState.ENQUEUED,
                attempt=attempt,
                details=details,
            )
            return True

    # --- Internal -------------------------------------------------------------

    @staticmethod
    def _append_event(
        session: Session,
        *,
        task_id: str,
        job_id: str,
        event_type: str,
        state_from: TaskState | None,
        state_to: TaskState | None,
        attempt: int,
        details: dict[str, Any] | None,
    ) -> None:
        session.execute(
            insert(TaskEventRecord).values(
                task_id=task_id,
                job_id=job_id,
                event_type=event_type,
                state_from=state_from.value if state_from else None,
                state_to=state_to.value if state_to else None,
                attempt=attempt,
                details=details,
                created_at=utc_now(),
            )
        )


# ---------------------------------------------------------------------------
# Row → Snapshot Mapping
# ---------------------------------------------------------------------------


def _job_view(row: JobRecord) -> JobView:
    return JobView(
        id=row.id,
        input=dict(row.input or {}),
        required_workers=[WorkerKind(kind) for kind in row.required_workers],
        state=row.state,
        created_at=row.created_at,
        updated_at=row.updated_at,
        completed_at=row.completed_at,
        result=row.result,
        failure=row.failure,
    )


def _task_view(row: TaskRecord) -> TaskView:
    return TaskView(
        id=row.id,
        job_id=row.job_id,
        position=row.position,
        worker_kind=WorkerKind(row.worker_kind),
        payload=dict(row.payload or {}),
        state=row.state,
        attempt=row.attempt,
        max_attempts=row.max_attempts,
        created_at=row.created_at,
        updated_at=row.updated_at,
        deadline=row.deadline,
        output=row.output,
        error=row.error,
        claimed_message_id=row.claimed_message_id,
        started_at=row.started_at,
        finished_at=row.finished_at,
    )
