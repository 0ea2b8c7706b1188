# =============================================================================
# Services Package — Orchestration Logic
# =============================================================================
# Contains the orchestration core, separated from API handlers:
#   - planner.py: job/task state machine, retries, cancellation
#   - job_store.py: durable records with compare-and-swap transitions
#   - dispatch_queue.py: at-least-once queue with visibility timeouts
#     (Redis, in-memory)
#   - executor.py: claims messages, runs workers under a deadline
#   - aggregator.py: deterministic result assembly
#   - failure_classifier.py: transient vs permanent for worker exceptions
#   - sweeper.py: timeout, redispatch and reconciliation passes
#   - llm.py: multi-provider LLM abstraction (Anthropic, OpenAI-compatible)
# =============================================================================
