# =============================================================================
# Workers Package — Celery Background Tasks
# =============================================================================
#   - celery_app.py: Celery application and beat schedule
#   - tasks.py: recovery sweeps (timeouts, redispatch, job reconciliation)
#
# Worker AGENTS live in fin_orchestrator/agents and are run by the Worker
# Executor, not by Celery.
# =============================================================================
