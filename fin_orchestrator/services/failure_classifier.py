# =============================================================================
# Failure Classifier — Transient vs Permanent for Unexpected Exceptions
# =============================================================================
#
# Workers are expected to raise TransientTaskError / PermanentTaskError.
# Anything else escaping a worker is classified here so the executor can
# decide between "leave unacknowledged for redelivery" and "acknowledge and
# report a terminal failure".
#
# RULES (first match wins):
#   1. TaskError subclasses carry their own kind
#   2. Timeouts, connection problems → transient
#   3. LLM SDK status errors: 408/409/429/5xx → transient, other 4xx → permanent
#   4. Validation / programming errors on the payload → permanent
#   5. Message patterns (rate limit, temporarily unavailable, ...) → transient;
#      (invalid api key, unauthorized, ...) → permanent
#   6. Everything else → transient; the Planner's retry budget bounds it
# =============================================================================

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from pydantic import ValidationError

from fin_orchestrator.errors import TaskError
from fin_orchestrator.models.domain import ErrorKind

_TRANSIENT_STATUS_CODES = frozenset({408, 409, 429})

_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "too many requests",
    "temporarily unavailable",
    "overloaded",
    "connection reset",
    "try again later",
)
_PERMANENT_PATTERNS: tuple[str, ...] = (
    "invalid api key",
    "unauthorized",
    "permission denied",
    "api key configured",
    "model not found",
)


@dataclass(frozen=True, slots=True)
class FailureClassification:
    kind: ErrorKind
    reason: str

    @property
    def transient(self) -> bool:
        return self.kind == ErrorKind.TRANSIENT


def classify_exception(exc: BaseException) -> FailureClassification:
    """Map an exception raised by a worker onto transient/permanent."""
    if isinstance(exc, TaskError):
        return FailureClassification(ErrorKind(exc.kind), "worker_declared")

    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        return FailureClassification(ErrorKind.TRANSIENT, "timeout")
    if isinstance(exc, ConnectionError):
        return FailureClassification(ErrorKind.TRANSIENT, "connection")

    status_code = _status_code(exc)
    if status_code is not None:
        if status_code in _TRANSIENT_STATUS_CODES or status_code >= 500:
            return FailureClassification(ErrorKind.TRANSIENT, f"http_{status_code}")
        return FailureClassification(ErrorKind.PERMANENT, f"http_{status_code}")

    if _is_sdk_connection_error(exc):
        return FailureClassification(ErrorKind.TRANSIENT, "sdk_connection")

    message = str(exc).lower()
    for pattern in _PERMANENT_PATTERNS:
        if pattern in message:
            return FailureClassification(ErrorKind.PERMANENT, f"pattern:{pattern}")
    for pattern in _TRANSIENT_PATTERNS:
        if pattern in message:
            return FailureClassification(ErrorKind.TRANSIENT, f"pattern:{pattern}")

    if isinstance(exc, (ValidationError, ValueError, TypeError, KeyError)):
        return FailureClassification(ErrorKind.PERMANENT, type(exc).__name__)

    return FailureClassification(ErrorKind.TRANSIENT, "unclassified")


def _status_code(exc: BaseException) -> int | None:
    # anthropic.APIStatusError and openai.APIStatusError both expose status_code
    status = getattr(exc, "status_code", None)
    return status if isinstance(status, int) else None


def _is_sdk_connection_error(exc: BaseException) -> bool:
    # APIConnectionError / APITimeoutError in both SDKs; matched by name so the
    # classifier does not import either SDK.
    return type(exc).__name__ in {"APIConnectionError", "APITimeoutError"}
