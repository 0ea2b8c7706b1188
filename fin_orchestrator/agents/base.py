# =============================================================================
# Worker Contract & Registry
# =============================================================================
#
# Every specialised agent implements the same narrow contract:
#
#   async execute(payload, deadline) -> dict      (the task output)
#   raises TransientTaskError / PermanentTaskError (typed failure)
#
# The executor enforces `deadline` as a hard upper bound regardless of what
# the worker does internally; workers may use it to size their own budgets.
#
# The registry is a closed, static mapping WorkerKind → implementation.
# =============================================================================

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from fin_orchestrator.errors import PermanentTaskError, UnknownWorkerKind
from fin_orchestrator.models.domain import WorkerKind, utc_now


class Worker(Protocol):
    """Interface every worker agent implements."""

    kind: WorkerKind

    async def execute(self, payload: dict[str, Any], deadline: datetime) -> dict[str, Any]:
        ...


class WorkerRegistry:
    """Static WorkerKind → Worker lookup."""

    def __init__(self, workers: list[Worker]) -> None:
        self._workers: dict[WorkerKind, Worker] = {}
        for worker in workers:
            if worker.kind in self._workers:
                raise ValueError(f"Duplicate worker for kind {worker.kind.value}")
            self._workers[worker.kind] = worker

    def get(self, kind: WorkerKind) -> Worker:
        try:
            return self._workers[kind]
        except KeyError:
            raise UnknownWorkerKind(f"No worker registered for {kind.value}") from None

    def kinds(self) -> frozenset[WorkerKind]:
        return frozenset(self._workers)


# ---------------------------------------------------------------------------
# Payload helpers shared by the worker implementations
# ---------------------------------------------------------------------------


def require_text(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise PermanentTaskError(f"Payload field '{key}' must be a non-empty string")
    return value.strip()


def require_number(data: dict[str, Any], key: str, default: float | None = None) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise PermanentTaskError(f"Field '{key}' must be a number")
    return float(value)


def seconds_left(deadline: datetime) -> float:
    return max((deadline - utc_now()).total_seconds(), 0.0)
