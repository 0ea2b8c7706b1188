# =============================================================================
# Celery Application Configuration — Recovery Sweeps
# =============================================================================
#
# Celery runs the periodic recovery passes (services/sweeper.py). Worker
# agents themselves are NOT Celery tasks: they are run by the Worker
# Executor from the dispatch queue, which needs per-attempt CAS claims and
# visibility control that Celery's ack model does not expose.
#
# ARCHITECTURE:
# ┌────────────┐     ┌───────┐     ┌──────────────┐     ┌────────────┐
# │ Celery beat│────▶│ Redis │────▶│ Celery worker│────▶│ Job Store  │
# │ (schedule) │     │(broker)│    │ (sweeps)      │    │ (Postgres) │
# └────────────┘     └───────┘     └──────────────┘     └────────────┘
#                       db 0              │
#                                         └──▶ Dispatch queue (Redis db 2)
#
# Run with:
#   celery -A fin_orchestrator.workers.celery_app worker --beat -l info
# =============================================================================

from celery import Celery

from fin_orchestrator.config import settings

celery_app = Celery(
    "fin_orchestrator.workers",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    # --- Serialization ---
    # JSON only; pickle can execute arbitrary code during deserialization.
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # --- Reliability ---
    # Sweeps are idempotent, so a re-run after a worker crash is harmless.
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,

    # --- Timeouts ---
    # A sweep pass must finish well within one beat interval.
    task_soft_time_limit=max(int(settings.sweep_interval_seconds * 2), 30),
    task_time_limit=max(int(settings.sweep_interval_seconds * 4), 60),

    # --- Results ---
    result_expires=3600,

    # --- Schedule ---
    # expires drops a queued sweep that could not start before the next one.
    beat_schedule={
        "sweep-timed-out-tasks": {
            "task": "fin_orchestrator.workers.tasks.sweep_timed_out_tasks",
            "schedule": settings.sweep_interval_seconds,
            "options": {"expires": settings.sweep_interval_seconds},
        },
        "redispatch-pending-tasks": {
            "task": "fin_orchestrator.workers.tasks.redispatch_pending_tasks",
            "schedule": settings.sweep_interval_seconds,
            "options": {"expires": settings.sweep_interval_seconds},
        },
        "redispatch-stalled-tasks": {
            "task": "fin_orchestrator.workers.tasks.redispatch_stalled_tasks",
            "schedule": settings.sweep_interval_seconds * 2,
            "options": {"expires": settings.sweep_interval_seconds * 2},
        },
        "reconcile-jobs": {
            "task": "fin_orchestrator.workers.tasks.reconcile_jobs",
            "schedule": settings.sweep_interval_seconds * 2,
            "options": {"expires": settings.sweep_interval_seconds * 2},
        },
    },

    include=["fin_orchestrator.workers.tasks"],
)
