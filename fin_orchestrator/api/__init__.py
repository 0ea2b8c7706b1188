# =============================================================================
# API Package — FastAPI Route Handlers
# =============================================================================
#   - jobs.py: submit, status, cancel and task-event endpoints
#   - deps.py: Planner dependency (overridable in tests)
# =============================================================================
