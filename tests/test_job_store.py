# =============================================================================
# Unit Tests — Job Store (SQLite)
# =============================================================================
#
# Covers atomic creation, compare-and-swap semantics on tasks and jobs,
# the event log, and the sweep queries.
# =============================================================================

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from conftest import start_task
from fin_orchestrator.errors import JobNotFound, StaleStateConflict, TaskNotFound
from fin_orchestrator.models.domain import JobState, NewTask, TaskState, WorkerKind, utc_now


def _create(store, job_id="job-1", kinds=(WorkerKind.TAGGER, WorkerKind.CHARTER)):
    tasks = [
        NewTask(
            id=f"{job_id}-t{position}",
            worker_kind=kind,
            position=position,
            payload={"question": "q"},
            max_attempts=3,
        )
        for position, kind in enumerate(kinds)
    ]
    store.create_job_with_tasks(job_id, {"question": "q"}, list(kinds), tasks)
    return store.list_tasks_for_job(job_id)


# ---------------------------------------------------------------------------
# Test: Creation
# ---------------------------------------------------------------------------


class TestCreateJobWithTasks:
    """Tests for atomic job creation."""

    def test_job_and_tasks_persisted(self, store):
        tasks = _create(store)
        job = store.get_job("job-1")

        assert job.state == JobState.PENDING
        assert job.required_workers == [WorkerKind.TAGGER, WorkerKind.CHARTER]
        assert job.input == {"question": "q"}
        assert [t.worker_kind for t in tasks] == [WorkerKind.TAGGER, WorkerKind.CHARTER]
        assert all(t.state == TaskState.PENDING and t.attempt == 1 for t in tasks)

    def test_created_event_written(self, store):
        tasks = _create(store)
        events = store.list_task_events(tasks[0].id)
        assert [e.event_type for e in events] == ["created"]
        assert events[0].state_to == TaskState.PENDING

    def test_failed_creation_persists_nothing(self, store):
        _create(store, job_id="job-1")
        duplicate = NewTask(
            id="fresh-task",
            worker_kind=WorkerKind.TAGGER,
            position=0,
            payload={},
            max_attempts=3,
        )
        with pytest.raises(IntegrityError):
            store.create_job_with_tasks("job-1", {}, [WorkerKind.TAGGER], [duplicate])

        with pytest.raises(TaskNotFound):
            store.get_task("fresh-task")
        assert len(store.list_tasks_for_job("job-1")) == 2

    def test_unknown_ids_raise(self, store):
        with pytest.raises(JobNotFound):
            store.get_job("missing")
        with pytest.raises(TaskNotFound):
            store.get_task("missing")


# ---------------------------------------------------------------------------
# Test: Task CAS
# ---------------------------------------------------------------------------


class TestUpdateTaskState:
    """Tests for compare-and-swap task transitions."""

    def test_transition_applies_fields(self, store):
        task = _create(store)[0]
        updated = store.update_task_state(
            task.id, TaskState.PENDING, TaskState.ENQUEUED, event_type="enqueued",
        )
        assert updated.state == TaskState.ENQUEUED

        running = start_task(store, updated, message_id="m-1")
        assert running.state == TaskState.RUNNING
        assert running.claimed_message_id == "m-1"
        assert running.deadline is not None and running.deadline.tzinfo is not None

    def test_wrong_expected_state_is_stale(self, store):
        task = _create(store)[0]
        with pytest.raises(StaleStateConflict):
            store.update_task_state(task.id, TaskState.RUNNING, TaskState.SUCCEEDED)
        assert store.get_task(task.id).state == TaskState.PENDING

    def test_attempt_mismatch_is_stale(self, store):
        task = _create(store)[0]
        with pytest.raises(StaleStateConflict):
            store.update_task_state(
                task.id, TaskState.PENDING, TaskState.ENQUEUED, expected_attempt=2,
            )

    def test_same_state_write_rejected(self, store):
        task = _create(store)[0]
        with pytest.raises(StaleStateConflict):
            store.update_task_state(task.id, TaskState.PENDING, TaskState.PENDING)

    def test_missing_task(self, store):
        with pytest.raises(TaskNotFound):
            store.update_task_state("missing", TaskState.PENDING, TaskState.ENQUEUED)

    def test_unknown_field_rejected(self, store):
        task = _create(store)[0]
        with pytest.raises(ValueError):
            store.update_task_state(
                task.id, TaskState.PENDING, TaskState.ENQUEUED, worker_kind="charter",
            )

    def test_only_one_of_two_racing_writers_wins(self, store):
        task = _create(store)[0]
        store.update_task_state(task.id, TaskState.PENDING, TaskState.RUNNING)
        with pytest.raises(StaleStateConflict):
            store.update_task_state(task.id, TaskState.PENDING, TaskState.RUNNING)

    def test_events_follow_transitions(self, store):
        task = _create(store)[0]
        store.update_task_state(task.id, TaskState.PENDING, TaskState.ENQUEUED)
        store.update_task_state(
            task.id, TaskState.ENQUEUED, TaskState.FAILED,
            event_type="failed", details={"kind": "permanent"},
        )
        events = store.list_task_events(task.id)
        assert [e.event_type for e in events] == ["created", "enqueued", "failed"]
        assert events[-1].state_from == TaskState.ENQUEUED
        assert events[-1].details == {"kind": "permanent"}


class TestRecordTaskError:
    """Tests for attaching transient errors to a running attempt."""

    def test_records_on_running_attempt(self, store):
        task = start_task(store, _create(store)[0])
        error = {"kind": "transient", "message": "timeout", "attempt": 1}

        assert store.record_task_error(task.id, 1, error) is True
        assert store.get_task(task.id).error == error
        assert store.get_task(task.id).state == TaskState.RUNNING
        assert store.list_task_events(task.id)[-1].event_type == "attempt_error"

    def test_ignored_when_not_running(self, store):
        task = _create(store)[0]
        assert store.record_task_error(task.id, 1, {"kind": "transient"}) is False

    def test_ignored_for_other_attempt(self, store):
        task = start_task(store, _create(store)[0])
        assert store.record_task_error(task.id, 2, {"kind": "transient"}) is False


class TestRecordTaskRequeued:
    """Tests for noting a replacement message on an enqueued attempt."""

    def test_touches_enqueued_attempt(self, store):
        task = _create(store)[0]
        enqueued = store.update_task_state(task.id, TaskState.PENDING, TaskState.ENQUEUED)

        assert store.record_task_requeued(task.id, 1, {"message_id": "m-2"}) is True

        after = store.get_task(task.id)
        assert after.state == TaskState.ENQUEUED
        assert after.updated_at >= enqueued.updated_at
        event = store.list_task_events(task.id)[-1]
        assert event.event_type == "re_enqueued"
        assert event.details == {"message_id": "m-2"}

    def test_ignored_when_not_enqueued(self, store):
        task = _create(store)[0]
        assert store.record_task_requeued(task.id, 1, {}) is False
        start_task(store, task)
        assert store.record_task_requeued(task.id, 1, {}) is False

    def test_ignored_for_other_attempt(self, store):
        task = _create(store)[0]
        store.update_task_state(task.id, TaskState.PENDING, TaskState.ENQUEUED)
        assert store.record_task_requeued(task.id, 2, {}) is False


# ---------------------------------------------------------------------------
# Test: Job CAS
# ---------------------------------------------------------------------------


class TestUpdateJobState:
    """Tests for forward-only job transitions."""

    def test_forward_move(self, store):
        _create(store)
        job = store.update_job_state("job-1", JobState.PENDING, JobState.DISPATCHED)
        assert job.state == JobState.DISPATCHED
        assert job.completed_at is None

    def test_backward_move_rejected(self, store):
        _create(store)
        store.update_job_state("job-1", JobState.PENDING, JobState.PARTIALLY_COMPLETE)
        with pytest.raises(StaleStateConflict):
            store.update_job_state("job-1", JobState.PARTIALLY_COMPLETE, JobState.DISPATCHED)

    def test_terminal_never_reopens(self, store):
        _create(store)
        store.update_job_state("job-1", JobState.PENDING, JobState.FAILED, failure={"reason": "x"})
        with pytest.raises(StaleStateConflict):
            store.update_job_state("job-1", JobState.FAILED, JobState.COMPLETED, result={})

    def test_stale_expected_state(self, store):
        _create(store)
        with pytest.raises(StaleStateConflict):
            store.update_job_state("job-1", JobState.DISPATCHED, JobState.PARTIALLY_COMPLETE)

    def test_completed_requires_result(self, store):
        _create(store)
        with pytest.raises(ValueError):
            store.update_job_state("job-1", JobState.PENDING, JobState.COMPLETED)

    def test_completed_stamps_result_and_time(self, store):
        _create(store)
        job = store.update_job_state(
            "job-1", JobState.PENDING, JobState.COMPLETED, result={"sections": []},
        )
        assert job.result == {"sections": []}
        assert job.completed_at is not None
        assert job.failure is None

    def test_failed_records_failure(self, store):
        _create(store)
        job = store.update_job_state(
            "job-1", JobState.PENDING, JobState.FAILED, failure={"reason": "cancelled"},
        )
        assert job.failure == {"reason": "cancelled"}
        assert job.result is None

    def test_missing_job(self, store):
        with pytest.raises(JobNotFound):
            store.update_job_state("missing", JobState.PENDING, JobState.DISPATCHED)


# ---------------------------------------------------------------------------
# Test: Sweep Queries
# ---------------------------------------------------------------------------


class TestSweepQueries:
    """Tests for the queries behind the recovery sweeps."""

    def test_past_deadline_only_running(self, store):
        first, second = _create(store)
        store.update_task_state(
            first.id, TaskState.PENDING, TaskState.RUNNING,
            deadline=utc_now() - timedelta(seconds=1),
        )
        store.update_task_state(
            second.id, TaskState.PENDING, TaskState.RUNNING,
            deadline=utc_now() + timedelta(minutes=5),
        )
        overdue = store.list_tasks_past_deadline(utc_now())
        assert [t.id for t in overdue] == [first.id]

    def test_stale_pending_excludes_terminal_jobs(self, store):
        _create(store, job_id="open")
        _create(store, job_id="closed")
        store.update_job_state("closed", JobState.PENDING, JobState.FAILED, failure={})

        stale = store.list_stale_pending_tasks(utc_now() + timedelta(seconds=1))
        assert {t.job_id for t in stale} == {"open"}

    def test_stale_pending_respects_age(self, store):
        _create(store)
        assert store.list_stale_pending_tasks(utc_now() - timedelta(minutes=1)) == []

    def test_stalled_enqueued_only_enqueued(self, store):
        first, second = _create(store)
        store.update_task_state(first.id, TaskState.PENDING, TaskState.ENQUEUED)

        stalled = store.list_stalled_enqueued_tasks(utc_now() + timedelta(seconds=1))
        assert [t.id for t in stalled] == [first.id]
        assert store.list_stalled_enqueued_tasks(utc_now() - timedelta(minutes=1)) == []

    def test_unfinished_jobs(self, store):
        _create(store, job_id="a")
        _create(store, job_id="b")
        store.update_job_state("b", JobState.PENDING, JobState.COMPLETED, result={})
        assert [j.id for j in store.list_unfinished_jobs()] == ["a"]
