# =============================================================================
# Agents Package — Specialised Worker Agents
# =============================================================================
# Each module implements one worker kind behind the contract in base.py:
#   - tagger.py: rule-based classification of the request
#   - reporter.py: LLM-written narrative report
#   - charter.py: chart specification and series statistics
#   - retirement.py: year-by-year savings projection
#   - researcher.py: LangGraph plan → investigate → compile research run
#
# The registry below is static: adding a worker kind means adding a module
# and a WorkerKind member.
# =============================================================================

from __future__ import annotations

from fin_orchestrator.agents.base import Worker, WorkerRegistry
from fin_orchestrator.errors import UnknownWorkerKind
from fin_orchestrator.models.domain import WorkerKind

_registry: WorkerRegistry | None = None


def get_registry() -> WorkerRegistry:
    global _registry
    if _registry is None:
        from fin_orchestrator.agents.charter import CharterWorker
        from fin_orchestrator.agents.reporter import ReporterWorker
        from fin_orchestrator.agents.researcher import ResearcherWorker
        from fin_orchestrator.agents.retirement import RetirementWorker
        from fin_orchestrator.agents.tagger import TaggerWorker

        _registry = WorkerRegistry([
            TaggerWorker(),
            ReporterWorker(),
            CharterWorker(),
            RetirementWorker(),
            ResearcherWorker(),
        ])
    return _registry


def get_worker(kind: WorkerKind | str) -> Worker:
    """Raises UnknownWorkerKind when no implementation is registered."""
    try:
        kind = WorkerKind(kind)
    except ValueError:
        raise UnknownWorkerKind(f"Unknown worker kind: {kind!r}") from None
    return get_registry().get(kind)


def registered_kinds() -> frozenset[WorkerKind]:
    return get_registry().kinds()
