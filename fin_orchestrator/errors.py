# =============================================================================
# Error Taxonomy
# =============================================================================
#
#   OrchestrationError
#   ├── InvalidRequest          — bad submission, rejected before any Job exists
#   ├── JobNotFound / TaskNotFound
#   ├── UnknownWorkerKind       — registry has no implementation for a kind
#   ├── StaleStateConflict      — CAS collision in the Job Store; caller
#   │                             re-reads and re-decides
#   ├── IncompleteAggregation   — aggregator invoked before all required
#   │                             tasks succeeded (internal invariant breach)
#   └── TaskError
#       ├── TransientTaskError  — retried up to max_attempts with backoff
#       └── PermanentTaskError  — no retry, task fails immediately
#
# Workers raise TaskError subclasses; the executor maps them onto queue
# acknowledgement and Planner reports.
# =============================================================================

from __future__ import annotations


class OrchestrationError(Exception):
    """Base class for all orchestration-core errors."""


class InvalidRequest(OrchestrationError):
    """The submission was rejected before any Job was created."""


class JobNotFound(OrchestrationError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class TaskNotFound(OrchestrationError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} not found")
        self.task_id = task_id


class UnknownWorkerKind(OrchestrationError):
    """No worker implementation is registered for the requested kind."""


class StaleStateConflict(OrchestrationError):
    """
    A compare-and-swap write found a different current state.

    Not fatal: the caller re-reads the record and re-decides.
    """

    def __init__(self, entity: str, entity_id: str, expected: object) -> None:
        super().__init__(
            f"Stale write on {entity} {entity_id}: expected state {expected}"
        )
        self.entity = entity
        self.entity_id = entity_id
        self.expected = expected


class IncompleteAggregation(OrchestrationError):
    """Aggregation was attempted while a required task had not succeeded."""


class TaskError(OrchestrationError):
    """Failure raised by a worker implementation."""

    kind = "transient"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class TransientTaskError(TaskError):
    """Worker or infrastructure hiccup; eligible for retry."""

    kind = "transient"


class PermanentTaskError(TaskError):
    """The worker declared the input unprocessable; never retried."""

    kind = "permanent"
