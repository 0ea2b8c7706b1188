# =============================================================================
# API Dependencies — FastAPI Dependency Injection
# =============================================================================
#
# Route handlers receive the Planner through Depends(get_planner_dep), so
# tests swap in a Planner wired to SQLite and the in-memory queue via
# app.dependency_overrides without touching module globals.
# =============================================================================

from __future__ import annotations

from fin_orchestrator.services.planner import Planner, get_planner


def get_planner_dep() -> Planner:
    return get_planner()
