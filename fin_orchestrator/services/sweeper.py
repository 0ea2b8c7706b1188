# =============================================================================
# Sweeper — Periodic Recovery Passes
# =============================================================================
#
# Backstops for everything the happy path can leave behind. Each pass is
# idempotent and safe to run concurrently with executors and with other
# sweeper instances, because every write goes through the Planner's CAS
# logic.
#
#   sweep_timed_out_tasks     RUNNING past deadline      → Failed-transient
#                             (retried under the normal budget)
#   redispatch_pending_tasks  PENDING longer than grace  → re-enqueue
#                             (enqueue failed or never ran)
#   redispatch_stalled_tasks  ENQUEUED past delay+window → re-enqueue
#                             (message lost or discarded by the queue)
#   reconcile_jobs            non-terminal jobs          → re-evaluate
#                             (Planner crashed between task and job write)
#
# Scheduled by Celery beat (see workers/celery_app.py).
# =============================================================================

from __future__ import annotations

import logging
from datetime import timedelta

from fin_orchestrator.errors import OrchestrationError
from fin_orchestrator.models.domain import ErrorKind, TaskOutcome, utc_now
from fin_orchestrator.services.planner import Planner

logger = logging.getLogger(__name__)


def sweep_timed_out_tasks(planner: Planner, limit: int | None = None) -> int:
    """Force RUNNING tasks past their deadline to a transient failure."""
    limit = limit or planner.config.sweep_batch_size
    overdue = planner.store.list_tasks_past_deadline(utc_now(), limit=limit)

    swept = 0
    for task in overdue:
        try:
            applied = planner.on_task_terminal(
                task.id,
                TaskOutcome.failure(ErrorKind.TRANSIENT, "Deadline exceeded (sweep)"),
                attempt=task.attempt,
            )
        except OrchestrationError:
            logger.exception("Timeout sweep failed for task %s", task.id)
            continue
        if applied:
            swept += 1
            logger.warning(
                "Timed out task %s (%s) attempt %d; deadline was %s",
                task.id, task.worker_kind.value, task.attempt, task.deadline,
            )
    return swept


def redispatch_pending_tasks(planner: Planner, limit: int | None = None) -> int:
    """Re-enqueue PENDING tasks that have waited longer than the grace period."""
    limit = limit or planner.config.sweep_batch_size
    older_than = utc_now() - timedelta(seconds=planner.config.pending_redispatch_grace_seconds)
    stale = planner.store.list_stale_pending_tasks(older_than, limit=limit)

    redispatched = 0
    for task in stale:
        try:
            if planner.redispatch(task.id):
                redispatched += 1
        except OrchestrationError:
            logger.exception("Redispatch failed for task %s", task.id)
    if redispatched:
        logger.info("Redispatched %d pending task(s)", redispatched)
    return redispatched


def redispatch_stalled_tasks(planner: Planner, limit: int | None = None) -> int:
    """Re-enqueue ENQUEUED tasks whose message should have been claimed long ago."""
    config = planner.config
    limit = limit or config.sweep_batch_size
    # Longest a live message can stay out of sight: its delay plus one window
    idle = (
        config.backoff_cap_seconds
        + config.visibility_timeout_seconds
        + config.pending_redispatch_grace_seconds
    )
    older_than = utc_now() - timedelta(seconds=idle)
    stalled = planner.store.list_stalled_enqueued_tasks(older_than, limit=limit)

    requeued = 0
    for task in stalled:
        try:
            if planner.redispatch(task.id):
                requeued += 1
        except OrchestrationError:
            logger.exception("Re-enqueue failed for stalled task %s", task.id)
    if requeued:
        logger.warning("Re-enqueued %d stalled task(s)", requeued)
    return requeued


def reconcile_jobs(planner: Planner, limit: int | None = None) -> int:
    """Re-evaluate non-terminal jobs; returns how many changed state."""
    limit = limit or planner.config.sweep_batch_size
    changed = 0
    for job in planner.store.list_unfinished_jobs(limit=limit):
        try:
            updated = planner.evaluate_job(job.id)
        except OrchestrationError:
            logger.exception("Reconciliation failed for job %s", job.id)
            continue
        if updated.state != job.state:
            changed += 1
    if changed:
        logger.info("Reconciled %d job(s)", changed)
    return changed


def run_all_sweeps(planner: Planner) -> dict[str, int]:
    return {
        "timed_out": sweep_timed_out_tasks(planner),
        "redispatched": redispatch_pending_tasks(planner),
        "stalled": redispatch_stalled_tasks(planner),
        "reconciled": reconcile_jobs(planner),
    }
