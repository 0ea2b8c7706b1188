# =============================================================================
# Unit Tests — Worker Executor
# =============================================================================
#
# Runs the real executor against SQLite + in-memory queue with scripted
# workers. Covers claim rules, outcome handling (ack / no-ack), deadline
# enforcement, watchdog cancellation and visibility extension.
# =============================================================================

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock, patch

from sqlalchemy.exc import OperationalError

from conftest import ScriptedWorker, start_task
from fin_orchestrator.agents.base import WorkerRegistry
from fin_orchestrator.errors import PermanentTaskError, TransientTaskError
from fin_orchestrator.models.domain import (
    Delivery,
    DispatchMessage,
    ErrorKind,
    JobState,
    TaskOutcome,
    TaskState,
    WorkerKind,
)
from fin_orchestrator.services.executor import Disposition, WorkerExecutor


def _executor(store, queue, planner, workers, config, **overrides) -> WorkerExecutor:
    return WorkerExecutor(
        store=store,
        queue=queue,
        planner=planner,
        registry=WorkerRegistry(list(workers.values())),
        config=config.model_copy(update=overrides),
        executor_id="test",
    )


def _only_task(planner, job_id):
    return planner.store.list_tasks_for_job(job_id)[0]


# ---------------------------------------------------------------------------
# Test: Outcomes
# ---------------------------------------------------------------------------


class TestOutcomes:
    """Tests for acknowledging and reporting each kind of result."""

    def test_success_acks_and_completes(self, planner, executor, queue, workers):
        workers[WorkerKind.TAGGER].script = [{"category": "tax"}]
        job_id = planner.submit({"question": "q"}, ["tagger"])

        assert executor.run_once(max_wait=0) == Disposition.SUCCEEDED

        assert len(queue) == 0
        task = _only_task(planner, job_id)
        assert task.state == TaskState.SUCCEEDED
        assert task.output == {"category": "tax"}
        job = planner.get_job_status(job_id).job
        assert job.state == JobState.COMPLETED
        assert job.result["sections"] == [{"worker": "tagger", "output": {"category": "tax"}}]

    def test_worker_receives_copy_of_input(self, planner, executor, workers):
        planner.submit({"question": "q", "n": 1}, ["tagger"])
        executor.run_once(max_wait=0)
        assert workers[WorkerKind.TAGGER].calls == [{"question": "q", "n": 1}]

    def test_permanent_error_acks_and_fails(self, planner, executor, queue, workers):
        workers[WorkerKind.TAGGER].script = [PermanentTaskError("unparseable")]
        job_id = planner.submit({}, ["tagger"])

        assert executor.run_once(max_wait=0) == Disposition.FAILED

        assert len(queue) == 0
        task = _only_task(planner, job_id)
        assert task.state == TaskState.FAILED
        assert task.error["kind"] == "permanent"
        assert task.error["message"] == "unparseable"
        assert planner.get_job_status(job_id).job.state == JobState.FAILED

    def test_unexpected_value_error_is_permanent(self, planner, executor, workers):
        workers[WorkerKind.TAGGER].script = [ValueError("negative age")]
        job_id = planner.submit({}, ["tagger"])

        assert executor.run_once(max_wait=0) == Disposition.FAILED
        assert _only_task(planner, job_id).error["kind"] == "permanent"

    def test_non_object_output_is_permanent(self, planner, executor, workers):
        workers[WorkerKind.TAGGER].script = [lambda payload: ["not", "a", "dict"]]
        job_id = planner.submit({}, ["tagger"])

        assert executor.run_once(max_wait=0) == Disposition.FAILED
        assert "expected an object" in _only_task(planner, job_id).error["message"]

    def test_transient_error_is_not_acknowledged(self, planner, executor, queue, workers):
        workers[WorkerKind.TAGGER].script = [TransientTaskError("rate limited")]
        job_id = planner.submit({}, ["tagger"])

        assert executor.run_once(max_wait=0) == Disposition.RELEASED

        task = _only_task(planner, job_id)
        assert task.state == TaskState.RUNNING
        assert task.error["message"] == "rate limited"
        assert len(queue) == 1
        assert queue.messages()[0].message_id == task.claimed_message_id

    def test_transient_then_success_uses_retry_budget(self, planner, executor, queue, workers):
        workers[WorkerKind.TAGGER].script = [TransientTaskError("flaky"), {"ok": True}]
        job_id = planner.submit({}, ["tagger"])

        assert executor.run_once(max_wait=0) == Disposition.RELEASED
        assert executor.run_once(max_wait=0) == Disposition.ABANDONED
        assert executor.run_once(max_wait=0) == Disposition.SUCCEEDED

        task = _only_task(planner, job_id)
        assert task.state == TaskState.SUCCEEDED
        assert task.attempt == 2
        assert len(workers[WorkerKind.TAGGER].calls) == 2
        assert len(queue) == 0
        assert planner.get_job_status(job_id).job.state == JobState.COMPLETED

    def test_unclassified_exception_is_transient(self, planner, executor, workers):
        workers[WorkerKind.TAGGER].script = [RuntimeError("socket hiccup")]
        planner.submit({}, ["tagger"])
        assert executor.run_once(max_wait=0) == Disposition.RELEASED

    def test_deadline_exceeded_is_transient(self, planner, store, queue, workers, config):
        async def slow(payload):
            await asyncio.sleep(5)
            return {}

        workers[WorkerKind.TAGGER].script = [slow]
        executor = _executor(
            store, queue, planner, workers, config, worker_deadline_seconds={"tagger": 0.05},
        )
        job_id = planner.submit({}, ["tagger"])

        assert executor.run_once(max_wait=0) == Disposition.RELEASED
        assert _only_task(planner, job_id).error["message"] == "Deadline exceeded"

    def test_unknown_worker_kind_fails_permanently(self, planner, store, queue, config):
        executor = WorkerExecutor(
            store=store,
            queue=queue,
            planner=planner,
            registry=WorkerRegistry([ScriptedWorker(WorkerKind.TAGGER)]),
            config=config,
        )
        job_id = planner.submit({}, ["charter"])

        assert executor.run_once(max_wait=0) == Disposition.FAILED
        assert _only_task(planner, job_id).error["kind"] == "permanent"

    def test_idle_queue(self, executor):
        assert executor.run_once(max_wait=0) is None


# ---------------------------------------------------------------------------
# Test: Claim rules
# ---------------------------------------------------------------------------


class TestClaimRules:
    """Tests for stale, duplicate and abandoned deliveries."""

    def test_stale_attempt_message_dropped(self, planner, executor, queue, workers):
        job_id = planner.submit({}, ["tagger"])
        old = queue.messages()[0]
        task = start_task(planner.store, _only_task(planner, job_id), message_id=old.message_id)
        planner.on_task_terminal(
            task.id, TaskOutcome.failure(ErrorKind.TRANSIENT, "x"), attempt=1,
        )
        # Original attempt-1 message is still queued; the retry is attempt 2
        assert executor.handle(Delivery(message=old)) == Disposition.DROPPED
        assert workers[WorkerKind.TAGGER].calls == []
        assert old.message_id not in {m.message_id for m in queue.messages()}

    def test_terminal_task_message_dropped(self, planner, executor, queue):
        job_id = planner.submit({}, ["tagger"])
        planner.cancel(job_id)
        assert executor.run_once(max_wait=0) == Disposition.DROPPED
        assert len(queue) == 0

    def test_duplicate_delivery_for_running_task(self, planner, executor, queue, workers):
        job_id = planner.submit({}, ["tagger"])
        original = queue.messages()[0]
        start_task(planner.store, _only_task(planner, job_id), message_id=original.message_id)

        duplicate = DispatchMessage.for_task(_only_task(planner, job_id))
        assert executor.handle(Delivery(message=duplicate)) == Disposition.DUPLICATE
        assert workers[WorkerKind.TAGGER].calls == []
        assert _only_task(planner, job_id).state == TaskState.RUNNING

    def test_redelivery_of_claimed_message_is_abandonment(self, planner, executor, queue):
        job_id = planner.submit({}, ["tagger"])
        message = queue.messages()[0]
        start_task(planner.store, _only_task(planner, job_id), message_id=message.message_id)

        assert executor.handle(Delivery(message=message, receive_count=2)) == Disposition.ABANDONED

        task = _only_task(planner, job_id)
        assert task.attempt == 2
        assert task.state == TaskState.ENQUEUED
        assert task.error["message"] == "Attempt abandoned before completion"

    def test_job_already_failed_cancels_task(self, planner, executor, queue, workers):
        workers[WorkerKind.REPORTER].script = [PermanentTaskError("no")]
        job_id = planner.submit({}, ["reporter", "tagger"])

        assert executor.run_once(max_wait=0) == Disposition.FAILED
        assert executor.run_once(max_wait=0) == Disposition.CANCELLED

        tagger = planner.store.list_tasks_for_job(job_id)[1]
        assert tagger.state == TaskState.FAILED
        assert tagger.error["kind"] == "cancelled"
        assert workers[WorkerKind.TAGGER].calls == []

    def test_claim_sets_deadline_and_message(self, planner, executor, queue, workers):
        seen = {}

        def capture(payload):
            task = planner.store.list_tasks_for_job(job_id)[0]
            seen.update(state=task.state, deadline=task.deadline, claimed=task.claimed_message_id)
            return {}

        workers[WorkerKind.TAGGER].script = [capture]
        job_id = planner.submit({}, ["tagger"])
        message_id = queue.messages()[0].message_id
        executor.run_once(max_wait=0)

        assert seen["state"] == TaskState.RUNNING
        assert seen["deadline"] is not None
        assert seen["claimed"] == message_id

    def test_newer_schema_left_unacknowledged(self, planner, executor, queue):
        job_id = planner.submit({}, ["tagger"])
        message = queue.messages()[0].model_copy(update={"schema_version": 99})

        assert executor.handle(Delivery(message=message)) == Disposition.DROPPED
        assert _only_task(planner, job_id).state == TaskState.ENQUEUED


# ---------------------------------------------------------------------------
# Test: Watchdog
# ---------------------------------------------------------------------------


class TestWatchdog:
    """Tests for cancellation and visibility upkeep during a run."""

    def test_cancel_aborts_running_worker(self, planner, executor, workers):
        finished = []

        async def long_running(payload):
            await asyncio.to_thread(planner.cancel, job_id)
            await asyncio.sleep(5)
            finished.append(True)
            return {}

        workers[WorkerKind.REPORTER].script = [long_running]
        job_id = planner.submit({}, ["reporter"])

        assert executor.run_once(max_wait=0) == Disposition.CANCELLED
        assert finished == []
        job = planner.get_job_status(job_id).job
        assert job.state == JobState.FAILED
        assert job.failure == {"reason": "cancelled"}

    def test_visibility_extended_for_long_runs(self, planner, store, queue, workers, config):
        async def slow(payload):
            await asyncio.sleep(0.4)
            return {"done": True}

        workers[WorkerKind.RESEARCHER].script = [slow]
        spy = MagicMock(wraps=queue)
        executor = _executor(
            store, spy, planner, workers, config,
            visibility_timeout_seconds=0.2,
            visibility_extend_margin_seconds=0.15,
            executor_watchdog_interval_seconds=0.05,
        )
        planner.submit({}, ["researcher"])

        assert executor.run_once(max_wait=0) == Disposition.SUCCEEDED
        assert spy.extend_visibility.call_count >= 1
        assert spy.extend_visibility.call_args.args[1] == 0.2

    def test_store_error_during_poll_keeps_result(self, planner, store, queue, workers):
        real_get_task = store.get_task
        calls = []

        def flaky_get_task(task_id):
            calls.append(task_id)
            if len(calls) == 2:  # first watchdog poll; call 1 is the claim
                raise OperationalError("SELECT 1", {}, Exception("database is locked"))
            return real_get_task(task_id)

        async def slow(payload):
            await asyncio.sleep(0.3)
            return {"ok": True}

        workers[WorkerKind.CHARTER].script = [slow]
        job_id = planner.submit({}, ["charter"])

        with patch.object(store, "get_task", side_effect=flaky_get_task):
            executor = _executor(store, queue, planner, workers, planner.config)
            assert executor.run_once(max_wait=0) == Disposition.SUCCEEDED

        assert len(calls) > 2
        assert len(queue) == 0
        assert _only_task(planner, job_id).output == {"ok": True}
        assert planner.get_job_status(job_id).job.state == JobState.COMPLETED

    def test_failed_visibility_extension_keeps_result(self, planner, store, queue, workers, config):
        async def slow(payload):
            await asyncio.sleep(0.3)
            return {"done": True}

        workers[WorkerKind.RESEARCHER].script = [slow]
        spy = MagicMock(wraps=queue)
        spy.extend_visibility.side_effect = ConnectionError("redis unavailable")
        executor = _executor(
            store, spy, planner, workers, config,
            visibility_timeout_seconds=0.2,
            visibility_extend_margin_seconds=0.15,
        )
        job_id = planner.submit({}, ["researcher"])

        assert executor.run_once(max_wait=0) == Disposition.SUCCEEDED
        assert spy.extend_visibility.call_count >= 1
        assert planner.get_job_status(job_id).job.state == JobState.COMPLETED


# ---------------------------------------------------------------------------
# Test: Loop
# ---------------------------------------------------------------------------


class TestRunForever:
    """Tests for the executor loop and its stop conditions."""

    def test_stops_after_max_tasks(self, planner, executor):
        planner.submit({}, ["tagger", "charter"])
        summary = executor.run_forever(max_tasks=2)
        assert summary.processed == 2
        assert summary.outcomes == {"succeeded": 2}

    def test_stop_flag_ends_loop(self, executor):
        executor.stop()
        summary = executor.run_forever()
        assert summary.processed == 0
