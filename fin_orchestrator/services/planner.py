# =============================================================================
# Planner — Job/Task State Machine and Retry Authority
# =============================================================================
#
# The Planner is the only component that writes Job.state. It:
#   1. validates a submission and creates the Job + Tasks atomically
#   2. enqueues one DispatchMessage per Task (fire-and-forget)
#   3. applies terminal task reports (success, retry with backoff, or
#      terminal failure) and re-evaluates the owning Job
#   4. cancels jobs
#
# CONCURRENCY:
# Every write is a compare-and-swap in the Job Store. On StaleStateConflict
# the Planner re-reads and re-decides, up to settings.cas_retry_limit times.
# No in-process lock is used, so any number of Planner instances (API
# processes, executors, sweeps) can run side by side.
#
# JOB DECISION TABLE (evaluated after every task transition):
#   all tasks succeeded                       → COMPLETED (aggregate result)
#   a required-for-success task failed        → FAILED (first failure wins;
#                                               later ones are only recorded)
#   all terminal, only optional tasks failed  → COMPLETED degraded if enabled,
#                                               otherwise FAILED
#   some task terminal                        → PARTIALLY_COMPLETE
#   some task enqueued/running (job PENDING)  → DISPATCHED
# =============================================================================

from __future__ import annotations

import logging
import uuid
from collections.abc import Collection, Iterable, Mapping
from typing import Any

from fin_orchestrator.config import Settings, settings
from fin_orchestrator.errors import (
    IncompleteAggregation,
    InvalidRequest,
    StaleStateConflict,
)
from fin_orchestrator.models.domain import (
    DispatchMessage,
    ErrorKind,
    JobState,
    JobStatus,
    JobView,
    NewTask,
    TaskOutcome,
    TaskState,
    TaskView,
    WorkerKind,
    utc_now,
)
from fin_orchestrator.services.aggregator import aggregate
from fin_orchestrator.services.dispatch_queue import DispatchQueue
from fin_orchestrator.services.job_store import JobStore

logger = logging.getLogger(__name__)


class Planner:
    """Single authority for Job/Task state transitions."""

    def __init__(
        self,
        store: JobStore,
        queue: DispatchQueue,
        config: Settings | None = None,
        known_workers: Collection[WorkerKind] | None = None,
    ) -> None:
        self.store = store
        self.queue = queue
        self.config = config or settings
        self.known_workers = frozenset(
            known_workers if known_workers is not None else WorkerKind
        )
        self.optional_workers = frozenset(
            WorkerKind(kind) for kind in self.config.optional_workers
        )

    # -------------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------------

    def submit(
        self,
        input: Mapping[str, Any],
        required_workers: Iterable[WorkerKind | str],
    ) -> str:
        """
        Create a job, fan it out to one task per worker and return its id.

        Returns as soon as the messages are enqueued; never waits for workers.
        A task whose enqueue fails stays PENDING for the redispatch sweep.

        Raises:
            InvalidRequest: empty, unknown or duplicate worker kinds, or a
                non-object input. Nothing is persisted in that case.
        """
        kinds = self._validate_submission(input, required_workers)

        job_id = str(uuid.uuid4())
        new_tasks = [
            NewTask(
                id=str(uuid.uuid4()),
                worker_kind=kind,
                position=position,
                payload=dict(input),
                max_attempts=self.config.max_attempts,
            )
            for position, kind in enumerate(kinds)
        ]
        self.store.create_job_with_tasks(job_id, dict(input), kinds, new_tasks)

        enqueued = 0
        for task in self.store.list_tasks_for_job(job_id):
            if self._dispatch(task):
                enqueued += 1

        if enqueued:
            self._advance_job(job_id, JobState.DISPATCHED)
        else:
            logger.warning(
                "Job %s: no task could be enqueued; waiting for redispatch sweep",
                job_id,
            )

        logger.info(
            "Submitted job %s: workers=%s, enqueued=%d/%d",
            job_id, [k.value for k in kinds], enqueued, len(kinds),
        )
        return job_id

    def _validate_submission(
        self,
        input: Any,
        required_workers: Iterable[WorkerKind | str] | None,
    ) -> list[WorkerKind]:
        if not isinstance(input, Mapping):
            raise InvalidRequest("Job input must be a JSON object")
        if required_workers is None or isinstance(required_workers, (str, bytes)):
            raise InvalidRequest("required_workers must be a list of worker kinds")

        kinds: list[WorkerKind] = []
        for raw in required_workers:
            try:
                kind = WorkerKind(raw)
            except ValueError:
                raise InvalidRequest(f"Unknown worker kind: {raw!r}") from None
            if kind not in self.known_workers:
                raise InvalidRequest(f"No worker registered for kind: {kind.value!r}")
            if kind in kinds:
                raise InvalidRequest(f"Duplicate worker kind: {kind.value!r}")
            kinds.append(kind)

        if not kinds:
            raise InvalidRequest("At least one worker kind is required")
        return kinds

    # -------------------------------------------------------------------------
    # Terminal Reports
    # -------------------------------------------------------------------------

    def on_task_terminal(
        self,
        task_id: str,
        outcome: TaskOutcome,
        attempt: int | None = None,
    ) -> bool:
        """
        Apply a terminal report for a task and re-evaluate its job.

        Idempotent: reports for an already-terminal task, or for an attempt
        that has been superseded (when `attempt` is given), are logged and
        ignored. Returns True when the report changed task state.
        """
        for _ in range(self.config.cas_retry_limit):
            task = self.store.get_task(task_id)
            if task.state.is_terminal:
                logger.info(
                    "Duplicate terminal report for task %s (already %s); ignored",
                    task_id, task.state.value,
                )
                return False
            if attempt is not None and attempt != task.attempt:
                logger.info(
                    "Stale report for task %s attempt %d (current attempt %d); ignored",
                    task_id, attempt, task.attempt,
                )
                return False

            try:
                self._apply_outcome(task, outcome)
            except StaleStateConflict:
                logger.debug("Task %s changed concurrently; re-reading", task_id)
                continue

            self.evaluate_job(task.job_id)
            return True

        raise StaleStateConflict("task", task_id, "terminal report")

    def _apply_outcome(self, task: TaskView, outcome: TaskOutcome) -> None:
        now = utc_now()

        if outcome.succeeded:
            self.store.update_task_state(
                task.id,
                task.state,
                TaskState.SUCCEEDED,
                expected_attempt=task.attempt,
                output=outcome.output or {},
                error=None,
                finished_at=now,
            )
            logger.info(
                "Task %s (%s) succeeded on attempt %d",
                task.id, task.worker_kind.value, task.attempt,
            )
            return

        error = outcome.error_dict(task.attempt)
        job = self.store.get_job(task.job_id)
        if outcome.retryable and not task.attempts_exhausted and not job.state.is_terminal:
            delay = self.config.backoff_delay(task.attempt)
            # Single write straight to PENDING; a retryable task is never
            # observable as FAILED.
            retried = self.store.update_task_state(
                task.id,
                task.state,
                TaskState.PENDING,
                expected_attempt=task.attempt,
                attempt=task.attempt + 1,
                error=error,
                deadline=None,
                claimed_message_id=None,
                event_type="retry_scheduled",
                details={**error, "delay_seconds": delay},
            )
            logger.warning(
                "Task %s (%s) attempt %d failed (%s): %s; retrying in %.1fs",
                task.id, task.worker_kind.value, task.attempt,
                error["kind"], outcome.error_message, delay,
            )
            self._dispatch(retried, delay=delay)
            return

        self.store.update_task_state(
            task.id,
            task.state,
            TaskState.FAILED,
            expected_attempt=task.attempt,
            error=error,
            finished_at=now,
            event_type="failed",
            details=error,
        )
        logger.error(
            "Task %s (%s) failed terminally on attempt %d/%d (%s): %s",
            task.id, task.worker_kind.value, task.attempt, task.max_attempts,
            error["kind"], outcome.error_message,
        )

    # -------------------------------------------------------------------------
    # Job Evaluation
    # -------------------------------------------------------------------------

    def evaluate_job(self, job_id: str) -> JobView:
        """Re-derive the job state from its tasks and write it if it moved."""
        for _ in range(self.config.cas_retry_limit):
            job = self.store.get_job(job_id)
            if job.state.is_terminal:
                return job

            tasks = self.store.list_tasks_for_job(job_id)
            target, result, failure = self._decide(job, tasks)
            if target is None or target.rank <= job.state.rank:
                return job

            try:
                updated = self.store.update_job_state(
                    job_id, job.state, target, result=result, failure=failure,
                )
            except StaleStateConflict:
                logger.debug("Job %s changed concurrently; re-evaluating", job_id)
                continue

            self._log_job_transition(job, updated)
            return updated

        raise StaleStateConflict("job", job_id, "re-evaluation")

    def _decide(
        self,
        job: JobView,
        tasks: list[TaskView],
    ) -> tuple[JobState | None, dict[str, Any] | None, dict[str, Any] | None]:
        succeeded = [t for t in tasks if t.state == TaskState.SUCCEEDED]
        failed = [t for t in tasks if t.state == TaskState.FAILED]
        blocking = [t for t in failed if t.worker_kind not in self.optional_workers]

        if tasks and len(succeeded) == len(tasks):
            return self._complete(job, tasks, optional=())

        if blocking:
            return JobState.FAILED, None, _failure_summary(blocking)

        if tasks and all(t.state.is_terminal for t in tasks):
            # Only optional workers failed
            if self.config.degraded_completion_enabled:
                return self._complete(job, tasks, optional=self.optional_workers)
            return JobState.FAILED, None, _failure_summary(failed)

        if succeeded or failed:
            return JobState.PARTIALLY_COMPLETE, None, None

        if any(t.state in (TaskState.ENQUEUED, TaskState.RUNNING) for t in tasks):
            return JobState.DISPATCHED, None, None

        return None, None, None

    def _complete(
        self,
        job: JobView,
        tasks: list[TaskView],
        optional: Collection[WorkerKind],
    ) -> tuple[JobState, dict[str, Any] | None, dict[str, Any] | None]:
        try:
            result = aggregate(job, tasks, optional_workers=optional)
        except IncompleteAggregation:
            logger.exception(
                "Aggregation invariant violated for job %s; failing the job", job.id,
            )
            return JobState.FAILED, None, {
                "reason": "internal_error",
                "message": "The job could not be completed.",
            }
        return JobState.COMPLETED, result, None

    def _advance_job(self, job_id: str, target: JobState) -> None:
        job = self.store.get_job(job_id)
        if job.state.rank >= target.rank:
            return
        try:
            updated = self.store.update_job_state(job_id, job.state, target)
        except StaleStateConflict:
            # Someone else moved it (possibly further); evaluation covers it
            self.evaluate_job(job_id)
            return
        self._log_job_transition(job, updated)

    @staticmethod
    def _log_job_transition(before: JobView, after: JobView) -> None:
        if after.state == JobState.FAILED:
            logger.error(
                "Job %s: %s → failed (%s)",
                after.id, before.state.value, after.failure,
            )
        else:
            logger.info("Job %s: %s → %s", after.id, before.state.value, after.state.value)

    # -------------------------------------------------------------------------
    # Cancellation
    # -------------------------------------------------------------------------

    def cancel(self, job_id: str) -> JobView:
        """
        Fail a job and all its non-terminal tasks with reason "cancelled".

        Cancelling a job that already reached a terminal state is a no-op.
        In-flight workers notice through the executor watchdog; their late
        reports are accepted but change nothing.
        """
        for _ in range(self.config.cas_retry_limit):
            job = self.store.get_job(job_id)
            if job.state.is_terminal:
                logger.info("Cancel of job %s ignored: already %s", job_id, job.state.value)
                return job
            try:
                cancelled = self.store.update_job_state(
                    job_id, job.state, JobState.FAILED, failure={"reason": "cancelled"},
                )
                break
            except StaleStateConflict:
                continue
        else:
            raise StaleStateConflict("job", job_id, "cancel")

        logger.info("Job %s cancelled (was %s)", job_id, job.state.value)
        for task in self.store.list_tasks_for_job(job_id):
            self._cancel_task(task)
        return cancelled

    def _cancel_task(self, task: TaskView) -> None:
        for _ in range(self.config.cas_retry_limit):
            if task.state.is_terminal:
                return
            try:
                self.store.update_task_state(
                    task.id,
                    task.state,
                    TaskState.FAILED,
                    expected_attempt=task.attempt,
                    error={
                        "kind": ErrorKind.CANCELLED.value,
                        "message": "Job cancelled",
                        "attempt": task.attempt,
                    },
                    finished_at=utc_now(),
                    event_type="cancelled",
                )
                return
            except StaleStateConflict:
                task = self.store.get_task(task.id)
        logger.warning("Could not cancel task %s after repeated conflicts", task.id)

    # -------------------------------------------------------------------------
    # Status & Re-dispatch
    # -------------------------------------------------------------------------

    def get_job_status(self, job_id: str) -> JobStatus:
        job = self.store.get_job(job_id)
        return JobStatus(job=job, tasks=self.store.list_tasks_for_job(job_id))

    def redispatch(self, task_id: str) -> bool:
        """
        Enqueue a fresh message for a task whose message never reached an executor.

        PENDING tasks were left behind by a failed enqueue. ENQUEUED tasks
        lost their message in the queue; any duplicate this creates is
        dropped by the executor's claim rules. A retry attempt keeps what
        remains of its backoff.
        """
        task = self.store.get_task(task_id)
        if task.state not in (TaskState.PENDING, TaskState.ENQUEUED):
            return False
        if self.store.get_job(task.job_id).state.is_terminal:
            return False

        delay = self._remaining_backoff(task)
        if task.state == TaskState.ENQUEUED:
            return self._requeue(task, delay)
        dispatched = self._dispatch(task, delay=delay)
        if dispatched:
            self._advance_job(task.job_id, JobState.DISPATCHED)
        return dispatched

    def _remaining_backoff(self, task: TaskView) -> float:
        if task.attempt <= 1:
            return 0.0
        elapsed = (utc_now() - task.updated_at).total_seconds()
        return max(self.config.backoff_delay(task.attempt - 1) - elapsed, 0.0)

    def _requeue(self, task: TaskView, delay: float) -> bool:
        message = DispatchMessage.for_task(task)
        try:
            self.queue.enqueue(message, delay=delay)
        except Exception:
            logger.exception("Re-enqueue failed for task %s attempt %d", task.id, task.attempt)
            return False
        recorded = self.store.record_task_requeued(
            task.id, task.attempt, {"message_id": message.message_id, "delay_seconds": delay},
        )
        if recorded:
            logger.warning(
                "Task %s attempt %d had no live message; re-enqueued as %s",
                task.id, task.attempt, message.message_id,
            )
        return recorded

    def _dispatch(self, task: TaskView, delay: float = 0.0) -> bool:
        message = DispatchMessage.for_task(task)
        try:
            self.queue.enqueue(message, delay=delay)
        except Exception:
            logger.exception(
                "Enqueue failed for task %s attempt %d; left pending for redispatch",
                task.id, task.attempt,
            )
            return False

        try:
            self.store.update_task_state(
                task.id,
                TaskState.PENDING,
                TaskState.ENQUEUED,
                expected_attempt=task.attempt,
                event_type="enqueued",
                details={"message_id": message.message_id, "delay_seconds": delay},
            )
        except StaleStateConflict:
            # An executor already claimed it, or the job was cancelled
            logger.debug("Task %s left PENDING before enqueue was recorded", task.id)
        return True


def _failure_summary(failed: list[TaskView]) -> dict[str, Any]:
    return {
        "reason": "worker_failed",
        "failed_workers": [
            {
                "worker": task.worker_kind.value,
                "task_id": task.id,
                "error": task.error,
            }
            for task in sorted(failed, key=lambda t: t.position)
        ],
    }


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

_planner: Planner | None = None


def get_planner() -> Planner:
    """Process-wide Planner wired to the configured store and queue."""
    global _planner
    if _planner is None:
        from fin_orchestrator.agents import registered_kinds
        from fin_orchestrator.db.engine import get_session_factory
        from fin_orchestrator.services.dispatch_queue import get_dispatch_queue
        from fin_orchestrator.services.job_store import SqlAlchemyJobStore

        _planner = Planner(
            store=SqlAlchemyJobStore(get_session_factory()),
            queue=get_dispatch_queue(),
            known_workers=registered_kinds(),
        )
    return _planner
