# =============================================================================
# Celery Task Definitions — Recovery Sweeps
# =============================================================================
#
# Thin Celery wrappers around services/sweeper.py, scheduled by beat.
#
# IMPORTANT: Celery workers are SYNCHRONOUS.
# The Planner, Job Store and dispatch queue are all blocking, so the sweeps
# call them directly; no event loop is involved.
#
# RETRY STRATEGY:
# Infrastructure errors (DB or Redis unreachable) are retried a few times
# with a short delay; the next beat tick re-runs the pass anyway, so
# retries stop well before the following interval.
# =============================================================================

import logging

from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from fin_orchestrator.services import sweeper
from fin_orchestrator.services.planner import get_planner
from fin_orchestrator.workers.celery_app import celery_app

logger = logging.getLogger(__name__)

_INFRA_ERRORS = (SQLAlchemyError, RedisError, ConnectionError)


@celery_app.task(
    bind=True,
    name="fin_orchestrator.workers.tasks.sweep_timed_out_tasks",
    max_retries=2,
    default_retry_delay=5,
)
def sweep_timed_out_tasks(self) -> dict:
    """Fail RUNNING tasks past their deadline (transient, retry-eligible)."""
    try:
        swept = sweeper.sweep_timed_out_tasks(get_planner())
    except _INFRA_ERRORS as exc:
        logger.exception("[%s] Timeout sweep failed", self.request.id)
        raise self.retry(exc=exc)
    return {"timed_out": swept}


@celery_app.task(
    bind=True,
    name="fin_orchestrator.workers.tasks.redispatch_pending_tasks",
    max_retries=2,
    default_retry_delay=5,
)
def redispatch_pending_tasks(self) -> dict:
    """Re-enqueue tasks stuck in PENDING past the grace period."""
    try:
        redispatched = sweeper.redispatch_pending_tasks(get_planner())
    except _INFRA_ERRORS as exc:
        logger.exception("[%s] Redispatch sweep failed", self.request.id)
        raise self.retry(exc=exc)
    return {"redispatched": redispatched}


@celery_app.task(
    bind=True,
    name="fin_orchestrator.workers.tasks.redispatch_stalled_tasks",
    max_retries=2,
    default_retry_delay=5,
)
def redispatch_stalled_tasks(self) -> dict:
    """Re-enqueue ENQUEUED tasks whose message was lost."""
    try:
        requeued = sweeper.redispatch_stalled_tasks(get_planner())
    except _INFRA_ERRORS as exc:
        logger.exception("[%s] Stalled-task sweep failed", self.request.id)
        raise self.retry(exc=exc)
    return {"stalled": requeued}


@celery_app.task(
    bind=True,
    name="fin_orchestrator.workers.tasks.reconcile_jobs",
    max_retries=2,
    default_retry_delay=5,
)
def reconcile_jobs(self) -> dict:
    """Re-evaluate every non-terminal job against its tasks."""
    try:
        changed = sweeper.reconcile_jobs(get_planner())
    except _INFRA_ERRORS as exc:
        logger.exception("[%s] Job reconciliation failed", self.request.id)
        raise self.retry(exc=exc)
    return {"reconciled": changed}
