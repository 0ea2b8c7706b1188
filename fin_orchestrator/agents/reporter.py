# =============================================================================
# Reporter Worker — LLM-Written Financial Report
# =============================================================================
#
# Writes a narrative report answering the job's question, grounded in the
# context the submitter supplied (`context`: a string or a list of
# strings). Context items are numbered [1], [2], ... so the model can cite
# them, and the cited numbers are returned alongside the text.
#
# The provider comes from provider_for_payload(): the configured default,
# or a job-pinned "llm_provider" id. SDK errors propagate untouched and are
# classified by the executor.
# =============================================================================

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any

from fin_orchestrator.agents.base import require_text
from fin_orchestrator.errors import PermanentTaskError, TransientTaskError
from fin_orchestrator.models.domain import WorkerKind
from fin_orchestrator.services.llm import LLMProvider, provider_for_payload

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a financial analyst writing a short report for a client.\n\n"
    "Rules:\n"
    "- Base factual statements on the provided context when it is given\n"
    "- Cite context items using [1], [2], etc.\n"
    "- Be precise with financial figures; never invent numbers\n"
    "- Structure the report with a one-line summary followed by key points\n"
    "- If the context does not cover the question, say so explicitly"
)

_CITATION = re.compile(r"\[(\d+)\]")


class ReporterWorker:
    kind = WorkerKind.REPORTER

    def __init__(self, llm: LLMProvider | None = None) -> None:
        self._llm = llm

    async def execute(self, payload: dict[str, Any], deadline: datetime) -> dict[str, Any]:
        question = require_text(payload, "question")
        context = _context_items(payload.get("context"))
        llm = self._llm or provider_for_payload(payload)

        response = await llm.complete(
            messages=[{"role": "user", "content": _build_prompt(question, context)}],
            system=SYSTEM_PROMPT,
        )
        report = response.content.strip()
        if not report:
            raise TransientTaskError("LLM returned an empty report")

        citations = sorted(
            {int(n) for n in _CITATION.findall(report) if 1 <= int(n) <= len(context)}
        )
        logger.info(
            "Report generated: model=%s, %d chars, %d citations",
            response.model, len(report), len(citations),
        )
        return {
            "report": report,
            "citations": citations,
            "context_items": len(context),
            "usage": response.usage(),
        }


def _context_items(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, str):
        return [raw] if raw.strip() else []
    if isinstance(raw, list) and all(isinstance(item, str) for item in raw):
        return [item for item in raw if item.strip()]
    raise PermanentTaskError("Payload field 'context' must be a string or list of strings")


def _build_prompt(question: str, context: list[str]) -> str:
    if not context:
        return f"Question: {question}"
    numbered = "\n\n".join(f"[{i}] {item}" for i, item in enumerate(context, start=1))
    return f"Context:\n{numbered}\n\nQuestion: {question}"
