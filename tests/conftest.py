# =============================================================================
# Shared Test Fixtures
# =============================================================================
#
# Every test gets a fresh SQLite file database (file-backed so executor
# threads and the watchdog's worker threads share it), an in-memory
# dispatch queue driven by a manual clock, and Settings with zero backoff
# so retries are immediately visible.
# =============================================================================

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import pytest

from fin_orchestrator.agents.base import WorkerRegistry
from fin_orchestrator.config import Settings
from fin_orchestrator.db.engine import build_engine, init_db, make_session_factory
from fin_orchestrator.models.domain import TaskState, TaskView, WorkerKind, utc_now
from fin_orchestrator.services.dispatch_queue import InMemoryDispatchQueue
from fin_orchestrator.services.executor import WorkerExecutor
from fin_orchestrator.services.job_store import SqlAlchemyJobStore
from fin_orchestrator.services.planner import Planner


class ManualClock:
    """
    Monotonic clock for the in-memory queue that only moves when told.

    Blocking dequeue(max_wait) still returns after max_wait real seconds.
    """

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@dataclass
class ScriptedWorker:
    """
    Fake worker that plays back a script, one step per call.

    A step is an output dict, an exception instance (raised), or a callable
    taking the payload (awaited if it returns a coroutine).
    """

    kind: WorkerKind
    script: list[Any] = field(default_factory=list)
    calls: list[dict[str, Any]] = field(default_factory=list)

    async def execute(self, payload: dict[str, Any], deadline: datetime) -> dict[str, Any]:
        self.calls.append(payload)
        step = self.script.pop(0) if self.script else {"worker": self.kind.value}
        if isinstance(step, BaseException):
            raise step
        if callable(step):
            result = step(payload)
            if asyncio.iscoroutine(result):
                result = await result
            return result
        return step


@pytest.fixture
def config() -> Settings:
    return Settings(
        max_attempts=3,
        backoff_base_seconds=0.0,
        backoff_cap_seconds=0.0,
        visibility_timeout_seconds=60.0,
        default_task_deadline_seconds=5.0,
        executor_watchdog_interval_seconds=0.05,
        visibility_extend_margin_seconds=1.0,
        pending_redispatch_grace_seconds=0.0,
        optional_workers=[],
        degraded_completion_enabled=False,
        cas_retry_limit=10,
    )


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'orchestrator.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine) -> SqlAlchemyJobStore:
    return SqlAlchemyJobStore(make_session_factory(engine))


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def queue(clock) -> InMemoryDispatchQueue:
    return InMemoryDispatchQueue(visibility_timeout=60.0, clock=clock)


@pytest.fixture
def planner(store, queue, config) -> Planner:
    return Planner(store, queue, config=config)


@pytest.fixture
def make_planner(store, queue) -> Callable[..., Planner]:
    """Planner with Settings overrides, e.g. make_planner(max_attempts=1)."""

    def _make(**overrides: Any) -> Planner:
        base = dict(
            backoff_base_seconds=0.0,
            backoff_cap_seconds=0.0,
            cas_retry_limit=10,
        )
        base.update(overrides)
        return Planner(store, queue, config=Settings(**base))

    return _make


@pytest.fixture
def workers() -> dict[WorkerKind, ScriptedWorker]:
    return {kind: ScriptedWorker(kind) for kind in WorkerKind}


@pytest.fixture
def executor(store, queue, planner, workers, config) -> WorkerExecutor:
    return WorkerExecutor(
        store=store,
        queue=queue,
        planner=planner,
        registry=WorkerRegistry(list(workers.values())),
        config=config,
        executor_id="test-executor",
    )


def start_task(store: SqlAlchemyJobStore, task: TaskView, message_id: str = "msg") -> TaskView:
    """Move a task to RUNNING the way an executor claim does."""
    return store.update_task_state(
        task.id,
        task.state,
        TaskState.RUNNING,
        expected_attempt=task.attempt,
        deadline=utc_now() + timedelta(seconds=30),
        claimed_message_id=message_id,
        started_at=utc_now(),
    )


def drain(executor: WorkerExecutor, limit: int = 50) -> list:
    """Run the executor until the queue has nothing visible."""
    dispositions = []
    for _ in range(limit):
        disposition = executor.run_once(max_wait=0)
        if disposition is None:
            break
        dispositions.append(disposition)
    return dispositions
