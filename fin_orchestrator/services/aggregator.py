# =============================================================================
# Result Aggregator — Deterministic Composite Output
# =============================================================================
#
# Folds the outputs of a job's tasks into one composite result.
#
# The section order always follows job.required_workers (the canonical order
# fixed at submission), never the order in which tasks happened to finish.
# Timestamps and attempt counters are deliberately left out, so the same job
# and the same task outputs produce the same result, and canonical_json()
# turns that into byte-identical text.
#
# Called only by the Planner once every required task succeeded. Calling it
# earlier is a programming error and raises IncompleteAggregation.
# =============================================================================

from __future__ import annotations

import json
import logging
from collections.abc import Collection
from typing import Any

from fin_orchestrator.errors import IncompleteAggregation
from fin_orchestrator.models.domain import JobView, TaskState, TaskView, WorkerKind

logger = logging.getLogger(__name__)


def aggregate(
    job: JobView,
    tasks: list[TaskView],
    optional_workers: Collection[WorkerKind] = (),
) -> dict[str, Any]:
    """
    Build the composite result for `job`.

    Args:
        job: The owning job; its required_workers order drives section order.
        tasks: The job's tasks, in any order.
        optional_workers: Kinds whose failure is tolerated (degraded
            completion). A failed optional task is listed under
            "missing_workers" instead of producing a section.

    Raises:
        IncompleteAggregation: a non-optional task has not succeeded, or a
            required worker has no task at all.
    """
    by_kind = {task.worker_kind: task for task in tasks}

    sections: list[dict[str, Any]] = []
    missing: list[str] = []
    for kind in job.required_workers:
        task = by_kind.get(kind)
        if task is None:
            raise IncompleteAggregation(
                f"Job {job.id} has no task for required worker '{kind.value}'"
            )
        if task.state == TaskState.SUCCEEDED:
            sections.append({"worker": kind.value, "output": task.output or {}})
            continue
        if kind in optional_workers and task.state == TaskState.FAILED:
            missing.append(kind.value)
            continue
        raise IncompleteAggregation(
            f"Job {job.id}: task {task.id} ({kind.value}) is {task.state.value}, "
            "expected succeeded"
        )

    result: dict[str, Any] = {
        "job_id": job.id,
        "workers": [kind.value for kind in job.required_workers],
        "sections": sections,
    }
    if missing:
        result["degraded"] = True
        result["missing_workers"] = missing

    logger.debug(
        "Aggregated job %s: %d section(s), %d missing",
        job.id, len(sections), len(missing),
    )
    return result


def canonical_json(result: dict[str, Any]) -> str:
    """Byte-stable serialization of an aggregated result."""
    return json.dumps(result, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
