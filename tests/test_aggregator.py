# =============================================================================
# Unit Tests — Result Aggregator
# =============================================================================

from __future__ import annotations

import random

import pytest

from fin_orchestrator.errors import IncompleteAggregation
from fin_orchestrator.models.domain import (
    JobState,
    JobView,
    TaskState,
    TaskView,
    WorkerKind,
    utc_now,
)
from fin_orchestrator.services.aggregator import aggregate, canonical_json

ORDER = [WorkerKind.REPORTER, WorkerKind.TAGGER, WorkerKind.CHARTER]


def _job(workers=ORDER) -> JobView:
    now = utc_now()
    return JobView(
        id="job-1",
        input={},
        required_workers=list(workers),
        state=JobState.PARTIALLY_COMPLETE,
        created_at=now,
        updated_at=now,
    )


def _task(kind: WorkerKind, state=TaskState.SUCCEEDED, output=None) -> TaskView:
    now = utc_now()
    return TaskView(
        id=f"t-{kind.value}",
        job_id="job-1",
        position=ORDER.index(kind),
        worker_kind=kind,
        payload={},
        state=state,
        attempt=1,
        max_attempts=3,
        created_at=now,
        updated_at=now,
        output=output if output is not None else {"from": kind.value},
    )


class TestAggregate:
    """Tests for merging task outputs into the job result."""

    def test_sections_follow_required_order(self):
        tasks = [_task(WorkerKind.CHARTER), _task(WorkerKind.REPORTER), _task(WorkerKind.TAGGER)]
        result = aggregate(_job(), tasks)

        assert result["job_id"] == "job-1"
        assert result["workers"] == ["reporter", "tagger", "charter"]
        assert [s["worker"] for s in result["sections"]] == ["reporter", "tagger", "charter"]
        assert result["sections"][0]["output"] == {"from": "reporter"}
        assert "degraded" not in result

    def test_task_order_does_not_change_bytes(self):
        tasks = [_task(kind) for kind in ORDER]
        expected = canonical_json(aggregate(_job(), tasks))
        for seed in range(5):
            shuffled = tasks[:]
            random.Random(seed).shuffle(shuffled)
            assert canonical_json(aggregate(_job(), shuffled)) == expected

    def test_unfinished_task_raises(self):
        tasks = [
            _task(WorkerKind.REPORTER),
            _task(WorkerKind.TAGGER, state=TaskState.RUNNING),
            _task(WorkerKind.CHARTER),
        ]
        with pytest.raises(IncompleteAggregation):
            aggregate(_job(), tasks)

    def test_missing_task_raises(self):
        with pytest.raises(IncompleteAggregation):
            aggregate(_job(), [_task(WorkerKind.REPORTER)])

    def test_failed_required_task_raises(self):
        tasks = [_task(kind) for kind in ORDER[:2]]
        tasks.append(_task(WorkerKind.CHARTER, state=TaskState.FAILED))
        with pytest.raises(IncompleteAggregation):
            aggregate(_job(), tasks)

    def test_failed_optional_task_listed_as_missing(self):
        tasks = [_task(kind) for kind in ORDER[:2]]
        tasks.append(_task(WorkerKind.CHARTER, state=TaskState.FAILED))

        result = aggregate(_job(), tasks, optional_workers={WorkerKind.CHARTER})

        assert result["degraded"] is True
        assert result["missing_workers"] == ["charter"]
        assert [s["worker"] for s in result["sections"]] == ["reporter", "tagger"]


class TestCanonicalJson:
    """Tests for deterministic result serialization."""

    def test_sorted_and_compact(self):
        assert canonical_json({"b": 1, "a": [1, 2]}) == '{"a":[1,2],"b":1}'

    def test_key_insertion_order_irrelevant(self):
        assert canonical_json({"x": 1, "y": {"q": 2, "p": 3}}) == canonical_json(
            {"y": {"p": 3, "q": 2}, "x": 1}
        )
