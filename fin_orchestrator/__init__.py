# =============================================================================
# Financial Agent Orchestrator
# =============================================================================
# Orchestration core for a multi-agent financial-analysis platform: a job
# names the specialised worker agents to run, the Planner fans it out into
# persisted tasks, executors run the workers from an at-least-once queue,
# and the Result Aggregator assembles a deterministic result.
#
# Package structure:
#   fin_orchestrator/
#   ├── api/          → FastAPI route handlers (submit, status, cancel, events)
#   ├── agents/       → Worker contract, registry and the five worker agents
#   ├── db/           → Database engine, session, and ORM models
#   ├── models/       → Domain types and Pydantic V2 request/response schemas
#   ├── services/     → Planner, Job Store, Dispatch Queue, Executor,
#   │                    Aggregator, sweeps, LLM providers
#   └── workers/      → Celery beat schedule for the recovery sweeps
# =============================================================================
