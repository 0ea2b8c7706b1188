# =============================================================================
# Database Models — SQLAlchemy ORM
# =============================================================================
#
# SCHEMA OVERVIEW:
#
# ┌──────────────────┐       ┌──────────────────────────────┐
# │  jobs            │       │  tasks                       │
# ├──────────────────┤       ├──────────────────────────────┤
# │ id (PK)          │──1:N─▶│ id (PK)                      │
# │ input (json)     │       │ job_id (FK → jobs.id)        │
# │ required_workers │       │ position / worker_kind       │
# │ state            │       │ payload (json)               │
# │ result (json)    │       │ state / attempt / max_attempts│
# │ failure (json)   │       │ output / error (json)        │
# │ created_at       │       │ deadline                     │
# │ updated_at       │       │ claimed_message_id           │
# │ completed_at     │       │ started_at / finished_at     │
# └──────────────────┘       └──────────────┬───────────────┘
#                                           │ 1:N
#                            ┌──────────────▼───────────────┐
#                            │  task_events (append-only)   │
#                            └──────────────────────────────┘
#
# Tasks are exclusively owned by their Job (cascade delete). Every state
# write goes through JobStore compare-and-swap updates, never through ORM
# attribute assignment on a loaded row.
#
# JSON columns use JSONB on PostgreSQL and plain JSON elsewhere (SQLite in
# tests). Timestamps are always stored and returned as timezone-aware UTC.
# =============================================================================

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    TypeDecorator,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from fin_orchestrator.models.domain import JobState, TaskState

JsonColumn = JSON().with_variant(JSONB(), "postgresql")


class UTCDateTime(TypeDecorator):
    """DateTime that always round-trips as timezone-aware UTC."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(UTC)
            if dialect.name == "sqlite":
                value = value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class for all orchestration tables."""

    pass


def _state_enum(enum_cls) -> Enum:
    # Store the lowercase values ("running"), not the member names.
    return Enum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


class JobRecord(Base):
    """One user-triggered unit of work spanning several worker tasks."""

    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)

    # Opaque request payload, copied into every task payload
    input: Mapped[dict] = mapped_column(JsonColumn, nullable=False)

    # Ordered list of worker kind values; fixed at creation
    required_workers: Mapped[list] = mapped_column(JsonColumn, nullable=False)

    state: Mapped[JobState] = mapped_column(
        _state_enum(JobState),
        nullable=False,
        default=JobState.PENDING,
    )

    # Set iff state == COMPLETED
    result: Mapped[dict | None] = mapped_column(JsonColumn, nullable=True)

    # Set when state == FAILED: which workers failed and why
    failure: Mapped[dict | None] = mapped_column(JsonColumn, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    tasks: Mapped[list[TaskRecord]] = relationship(
        "TaskRecord",
        back_populates="job",
        cascade="all, delete-orphan",
        order_by="TaskRecord.position",
    )

    def __repr__(self) -> str:
        return f"<JobRecord(id={self.id}, state={self.state})>"


class TaskRecord(Base):
    """One worker's share of a Job."""

    __tablename__ = "tasks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)

    job_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("jobs.id", ondelete="CASCADE"),
        nullable=False,
    )

    # Index into the job's required_workers (canonical output order)
    position: Mapped[int] = mapped_column(Integer, nullable=False)

    worker_kind: Mapped[str] = mapped_column(String(32), nullable=False)

    payload: Mapped[dict] = mapped_column(JsonColumn, nullable=False)

    state: Mapped[TaskState] = mapped_column(
        _state_enum(TaskState),
        nullable=False,
        default=TaskState.PENDING,
    )

    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)

    # Set iff state == SUCCEEDED
    output: Mapped[dict | None] = mapped_column(JsonColumn, nullable=True)

    # {"kind": "transient|permanent|cancelled", "message": ..., "attempt": n}
    error: Mapped[dict | None] = mapped_column(JsonColumn, nullable=True)

    # Absolute timeout of the running attempt
    deadline: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    # Dispatch message that moved the task to RUNNING
    claimed_message_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    job: Mapped[JobRecord] = relationship("JobRecord", back_populates="tasks")

    def __repr__(self) -> str:
        return (
            f"<TaskRecord(id={self.id}, job_id={self.job_id}, "
            f"kind={self.worker_kind}, state={self.state}, attempt={self.attempt})>"
        )


class TaskEventRecord(Base):
    """Append-only history of task transitions, for diagnostics."""

    __tablename__ = "task_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    task_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("tasks.id", ondelete="CASCADE"),
        nullable=False,
    )
    job_id: Mapped[str] = mapped_column(String(36), nullable=False)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    state_from: Mapped[str | None] = mapped_column(String(32), nullable=True)
    state_to: Mapped[str | None] = mapped_column(String(32), nullable=True)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False)
    details: Mapped[dict | None] = mapped_column(JsonColumn, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)


# =============================================================================
# Indexes
# =============================================================================

# list_tasks_for_job
task_job_idx = Index("idx_task_job_position", TaskRecord.job_id, TaskRecord.position)

# Sweeps: running-past-deadline and stale-pending scans
task_state_deadline_idx = Index(
    "idx_task_state_deadline", TaskRecord.state, TaskRecord.deadline,
)
task_state_updated_idx = Index(
    "idx_task_state_updated", TaskRecord.state, TaskRecord.updated_at,
)

# reconcile sweep
job_state_idx = Index("idx_job_state", JobRecord.state)

task_event_task_idx = Index("idx_task_event_task", TaskEventRecord.task_id, TaskEventRecord.id)
