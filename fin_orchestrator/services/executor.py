# =============================================================================
# Worker Executor — Claim, Run, Report
# =============================================================================
#
# Runtime loop consuming one Dispatch Message at a time:
#
#   dequeue ─▶ claim (CAS → RUNNING) ─▶ worker.execute(payload, deadline)
#                                          │
#        ┌─────────────────────────────────┼──────────────────────────┐
#        ▼                                 ▼                          ▼
#     success                      permanent error          transient error / timeout
#   ack + report                    ack + report             record error, NO ack:
#   Succeeded                       Failed                   message is released and
#                                                            redelivered by the queue
#
# CLAIM RULES (message M for task T):
#   T terminal, or M.attempt != T.attempt   → ack, drop (stale / superseded)
#   T RUNNING, claimed by M itself          → previous run of this attempt
#                                             was abandoned (transient failure
#                                             or crashed executor): ack and
#                                             report Failed-transient so the
#                                             Planner's retry budget decides
#   T RUNNING, claimed by another message   → duplicate delivery: ack, drop
#   job already terminal                    → ack, report Failed-cancelled
#   T PENDING / ENQUEUED                    → CAS → RUNNING with the deadline
#
# DESIGN DECISION: Synchronous loop, async workers.
# Store and queue calls are blocking (SQLAlchemy sync engine, redis-py), the
# same split the Celery tasks use. Each attempt runs its worker inside
# asyncio.run() under asyncio.wait_for(deadline), next to a watchdog
# coroutine that:
#   - extends message visibility before the window lapses
#   - aborts the worker when the task or job turned terminal (cancel)
#
# DESIGN DECISION: A transient failure releases the message immediately
# (extend_visibility(..., 0)) instead of waiting out the full window; the
# Planner's backoff then spaces the next attempt.
# =============================================================================

from __future__ import annotations

import argparse
import asyncio
import enum
import json
import logging
import signal
import socket
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager, suppress
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from fin_orchestrator.agents.base import Worker, WorkerRegistry
from fin_orchestrator.config import Settings, configure_logging, settings
from fin_orchestrator.errors import (
    StaleStateConflict,
    TaskNotFound,
    UnknownWorkerKind,
)
from fin_orchestrator.models.domain import (
    DISPATCH_SCHEMA_VERSION,
    Delivery,
    DispatchMessage,
    ErrorKind,
    TaskOutcome,
    TaskState,
    TaskView,
    utc_now,
)
from fin_orchestrator.services.dispatch_queue import DispatchQueue
from fin_orchestrator.services.failure_classifier import classify_exception
from fin_orchestrator.services.job_store import JobStore
from fin_orchestrator.services.planner import Planner

logger = logging.getLogger(__name__)


class Disposition(str, enum.Enum):
    """What the executor did with one delivery."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"              # permanent failure reported
    RELEASED = "released"          # transient failure, left unacknowledged
    ABANDONED = "abandoned"        # redelivered attempt reported as transient
    CANCELLED = "cancelled"        # job terminal before or during the run
    DROPPED = "dropped"            # stale, superseded or unknown task
    DUPLICATE = "duplicate"        # another message already runs this attempt


@dataclass
class ExecutorRunSummary:
    processed: int = 0
    idle_polls: int = 0
    outcomes: dict[str, int] = field(default_factory=dict)

    def record(self, disposition: Disposition) -> None:
        self.processed += 1
        self.outcomes[disposition.value] = self.outcomes.get(disposition.value, 0) + 1


@dataclass
class _AttemptResult:
    outcome: TaskOutcome | None = None
    aborted: bool = False


class WorkerExecutor:
    """Consumes dispatch messages and runs the matching worker."""

    def __init__(
        self,
        store: JobStore,
        queue: DispatchQueue,
        planner: Planner,
        registry: WorkerRegistry,
        config: Settings | None = None,
        executor_id: str | None = None,
    ) -> None:
        self.store = store
        self.queue = queue
        self.planner = planner
        self.registry = registry
        self.config = config or settings
        self.executor_id = executor_id or f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"
        self._stop_requested = False

    # -------------------------------------------------------------------------
    # Loop
    # -------------------------------------------------------------------------

    def run_once(self, max_wait: float | None = None) -> Disposition | None:
        """Handle at most one delivery. Returns None when the queue was idle."""
        wait = self.config.dequeue_max_wait_seconds if max_wait is None else max_wait
        delivery = self.queue.dequeue(wait)
        if delivery is None:
            return None
        return self.handle(delivery)

    def run_forever(self, max_tasks: int | None = None) -> ExecutorRunSummary:
        """Run until SIGINT/SIGTERM (or `max_tasks` deliveries) and return counts."""
        summary = ExecutorRunSummary()
        logger.info("Executor %s started", self.executor_id)
        with self._signal_handlers():
            while not self._stop_requested:
                if max_tasks is not None and summary.processed >= max_tasks:
                    break
                try:
                    disposition = self.run_once()
                except Exception:
                    # Store or queue outage: the message stays unacknowledged
                    # and is redelivered once the window lapses.
                    logger.exception("Executor %s: delivery handling failed", self.executor_id)
                    self._sleep_with_stop(self.config.queue_poll_interval_seconds)
                    continue
                if disposition is None:
                    summary.idle_polls += 1
                else:
                    summary.record(disposition)
        logger.info("Executor %s stopped: %s", self.executor_id, summary.outcomes)
        return summary

    def stop(self) -> None:
        self._stop_requested = True

    # -------------------------------------------------------------------------
    # One Delivery
    # -------------------------------------------------------------------------

    def handle(self, delivery: Delivery) -> Disposition:
        message = delivery.message
        if message.schema_version > DISPATCH_SCHEMA_VERSION:
            # Leave it for an executor that understands the newer schema
            logger.warning(
                "Message %s has schema version %d (supported: %d); skipping",
                message.message_id, message.schema_version, DISPATCH_SCHEMA_VERSION,
            )
            return Disposition.DROPPED

        claimed = self._claim(message)
        if isinstance(claimed, Disposition):
            return claimed
        task = claimed

        try:
            worker = self.registry.get(task.worker_kind)
        except UnknownWorkerKind as exc:
            self.queue.acknowledge(message.message_id)
            self._report(task, TaskOutcome.failure(ErrorKind.PERMANENT, str(exc)))
            return Disposition.FAILED

        logger.info(
            "Executor %s running task %s (%s) attempt %d/%d",
            self.executor_id, task.id, task.worker_kind.value, task.attempt, task.max_attempts,
        )
        result = asyncio.run(self._run_attempt(worker, task, message))

        if result.aborted:
            self.queue.acknowledge(message.message_id)
            self._report(
                task, TaskOutcome.failure(ErrorKind.CANCELLED, "Aborted: job or task no longer active"),
            )
            return Disposition.CANCELLED

        outcome = result.outcome
        if outcome.succeeded:
            self.queue.acknowledge(message.message_id)
            self._report(task, outcome)
            return Disposition.SUCCEEDED

        if outcome.retryable:
            recorded = self.store.record_task_error(
                task.id, task.attempt, outcome.error_dict(task.attempt),
            )
            if recorded:
                self.queue.extend_visibility(message.message_id, 0.0)
                logger.warning(
                    "Task %s attempt %d failed transiently: %s; released for redelivery",
                    task.id, task.attempt, outcome.error_message,
                )
                return Disposition.RELEASED
            # Someone else finished the attempt meanwhile (sweep or cancel)
            self.queue.acknowledge(message.message_id)
            return Disposition.DROPPED

        self.queue.acknowledge(message.message_id)
        self._report(task, outcome)
        return Disposition.FAILED

    def _claim(self, message: DispatchMessage) -> TaskView | Disposition:
        for _ in range(self.config.cas_retry_limit):
            try:
                task = self.store.get_task(message.task_id)
            except TaskNotFound:
                logger.warning("Message %s references unknown task %s", message.message_id, message.task_id)
                self.queue.acknowledge(message.message_id)
                return Disposition.DROPPED

            if task.state.is_terminal or message.attempt != task.attempt:
                logger.info(
                    "Dropping stale message %s for task %s (state=%s, attempt %d vs %d)",
                    message.message_id, task.id, task.state.value, message.attempt, task.attempt,
                )
                self.queue.acknowledge(message.message_id)
                return Disposition.DROPPED

            if task.state == TaskState.RUNNING:
                self.queue.acknowledge(message.message_id)
                if task.claimed_message_id == message.message_id:
                    reason = (task.error or {}).get("message") or "Attempt abandoned before completion"
                    logger.warning(
                        "Task %s attempt %d was abandoned; reporting transient failure",
                        task.id, task.attempt,
                    )
                    self._report(task, TaskOutcome.failure(ErrorKind.TRANSIENT, reason))
                    return Disposition.ABANDONED
                logger.info("Duplicate delivery %s for running task %s", message.message_id, task.id)
                return Disposition.DUPLICATE

            job = self.store.get_job(task.job_id)
            if job.state.is_terminal:
                self.queue.acknowledge(message.message_id)
                self._report(
                    task, TaskOutcome.failure(ErrorKind.CANCELLED, f"Job already {job.state.value}"),
                )
                return Disposition.CANCELLED

            now = utc_now()
            try:
                return self.store.update_task_state(
                    task.id,
                    task.state,
                    TaskState.RUNNING,
                    expected_attempt=task.attempt,
                    deadline=now + timedelta(seconds=self.config.deadline_for(task.worker_kind.value)),
                    claimed_message_id=message.message_id,
                    started_at=now,
                    event_type="claimed",
                    details={"message_id": message.message_id, "executor": self.executor_id},
                )
            except StaleStateConflict:
                # Typically PENDING → ENQUEUED raced with us; re-read
                continue

        logger.warning("Could not claim task %s; leaving message for redelivery", message.task_id)
        return Disposition.DROPPED

    def _report(self, task: TaskView, outcome: TaskOutcome) -> None:
        self.planner.on_task_terminal(task.id, outcome, attempt=task.attempt)

    # -------------------------------------------------------------------------
    # Attempt Execution
    # -------------------------------------------------------------------------

    async def _run_attempt(
        self, worker: Worker, task: TaskView, message: DispatchMessage,
    ) -> _AttemptResult:
        timeout = max((task.deadline - utc_now()).total_seconds(), 0.0)
        work = asyncio.ensure_future(worker.execute(dict(task.payload), task.deadline))
        state = _AttemptResult()
        watchdog = asyncio.ensure_future(self._watchdog(task, message, work, state))
        try:
            output = await asyncio.wait_for(work, timeout=timeout)
        except asyncio.CancelledError:
            if not state.aborted:
                raise
            return state
        except TimeoutError:
            logger.warning("Task %s exceeded its deadline after %.1fs", task.id, timeout)
            return _AttemptResult(
                outcome=TaskOutcome.failure(ErrorKind.TRANSIENT, "Deadline exceeded"),
            )
        except Exception as exc:
            classification = classify_exception(exc)
            logger.warning(
                "Task %s raised %s (%s → %s): %s",
                task.id, type(exc).__name__, classification.reason,
                classification.kind.value, exc,
            )
            return _AttemptResult(
                outcome=TaskOutcome.failure(classification.kind, str(exc) or type(exc).__name__),
            )
        finally:
            watchdog.cancel()
            try:
                await watchdog
            except asyncio.CancelledError:
                pass
            except Exception:
                # The worker result stands even if the watchdog itself broke
                logger.exception("Watchdog for task %s failed", task.id)

        return _AttemptResult(outcome=_validated_output(output))

    async def _watchdog(
        self,
        task: TaskView,
        message: DispatchMessage,
        work: asyncio.Future,
        state: _AttemptResult,
    ) -> None:
        interval = self.config.executor_watchdog_interval_seconds
        window = self.config.visibility_timeout_seconds
        margin = self.config.visibility_extend_margin_seconds
        visible_until = time.monotonic() + window

        while not work.done():
            await asyncio.sleep(interval)
            try:
                current = await asyncio.to_thread(self.store.get_task, task.id)
                job = await asyncio.to_thread(self.store.get_job, task.job_id)
            except Exception:
                # Store blip: keep the worker running and poll again next tick
                logger.exception("Watchdog poll for task %s failed; will retry", task.id)
                continue
            if current.state != TaskState.RUNNING or current.attempt != task.attempt or job.state.is_terminal:
                logger.info("Task %s no longer active; aborting worker", task.id)
                state.aborted = True
                work.cancel()
                return

            if visible_until - time.monotonic() < margin:
                try:
                    extended = await asyncio.to_thread(
                        self.queue.extend_visibility, message.message_id, window,
                    )
                except Exception:
                    logger.exception("Could not extend visibility of %s; will retry", message.message_id)
                    continue
                if extended:
                    visible_until = time.monotonic() + window
                    logger.debug("Extended visibility of %s by %.0fs", message.message_id, window)

    # -------------------------------------------------------------------------
    # Signals
    # -------------------------------------------------------------------------

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            logger.info("Executor %s received %s; stopping after current task",
                        self.executor_id, signal.Signals(signum).name)
            self.stop()

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            yield
        except ValueError:
            # Signal handlers can only be installed in the main thread
            yield
        finally:
            with suppress(ValueError):
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)


def _validated_output(output: Any) -> TaskOutcome:
    if not isinstance(output, dict):
        return TaskOutcome.failure(
            ErrorKind.PERMANENT, f"Worker returned {type(output).__name__}, expected an object",
        )
    try:
        json.dumps(output)
    except (TypeError, ValueError) as exc:
        return TaskOutcome.failure(ErrorKind.PERMANENT, f"Worker output is not JSON: {exc}")
    return TaskOutcome.success(output)


# ---------------------------------------------------------------------------
# Entry Point
# ---------------------------------------------------------------------------


def build_executor() -> WorkerExecutor:
    from fin_orchestrator.agents import get_registry
    from fin_orchestrator.services.planner import get_planner

    planner = get_planner()
    return WorkerExecutor(
        store=planner.store,
        queue=planner.queue,
        planner=planner,
        registry=get_registry(),
    )


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="fin-orchestrator-executor",
        description="Consume dispatch messages and run worker agents.",
    )
    parser.add_argument("--max-tasks", type=int, default=None,
                        help="Exit after handling this many deliveries.")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL.")
    args = parser.parse_args(argv)

    configure_logging(args.log_level)
    executor = build_executor()
    executor.run_forever(max_tasks=args.max_tasks)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
