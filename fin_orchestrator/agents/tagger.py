# =============================================================================
# Tagger Worker — Rule-Based Request Classification
# =============================================================================
#
# Classifies the job's request text into one financial category and a set
# of tags. Runs instantly and never calls an LLM, so it is the cheapest
# worker in a job and the one other sections can lean on for labelling.
#
# CATEGORIES (checked in order of specificity, first match wins):
#   retirement → investment → tax → budgeting → debt → general
#
# Tags are every keyword group that matched, sorted, so the output is a
# pure function of the input text.
#
# DESIGN DECISION: Keyword heuristics over LLM classification.
# The category set is small and closed; keyword lists are easy to test and
# give identical output on every retry.
# =============================================================================

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any

from fin_orchestrator.agents.base import require_text
from fin_orchestrator.models.domain import WorkerKind

logger = logging.getLogger(__name__)

# Order matters: earlier categories win ties.
CATEGORY_KEYWORDS: dict[str, tuple[str, ...]] = {
    "retirement": (
        "retire", "retirement", "pension", "401k", "401(k)", "ira", "annuity",
        "nest egg",
    ),
    "investment": (
        "invest", "portfolio", "stock", "bond", "etf", "index fund",
        "dividend", "asset allocation", "brokerage",
    ),
    "tax": (
        "tax", "deduction", "capital gains", "irs", "withholding", "refund",
    ),
    "budgeting": (
        "budget", "spending", "expense", "saving", "savings", "emergency fund",
        "cash flow",
    ),
    "debt": (
        "debt", "loan", "mortgage", "credit card", "interest rate", "refinance",
    ),
}

TAG_KEYWORDS: dict[str, tuple[str, ...]] = {
    "risk": ("risk", "volatility", "drawdown", "hedge"),
    "income": ("income", "salary", "wage", "earnings"),
    "growth": ("growth", "compound", "return"),
    "inflation": ("inflation", "cpi", "purchasing power"),
    "planning": ("plan", "goal", "target", "timeline"),
}

_TEXT_FIELDS = ("question", "request", "prompt", "text")


class TaggerWorker:
    kind = WorkerKind.TAGGER

    async def execute(self, payload: dict[str, Any], deadline: datetime) -> dict[str, Any]:
        text = _request_text(payload)
        lowered = text.lower()

        matches = {
            category: sorted({kw for kw in keywords if _contains(lowered, kw)})
            for category, keywords in CATEGORY_KEYWORDS.items()
        }
        category = next((c for c, kws in matches.items() if kws), "general")

        tags = sorted(
            tag
            for tag, keywords in TAG_KEYWORDS.items()
            if any(_contains(lowered, kw) for kw in keywords)
        )
        tags.extend(sorted(c for c, kws in matches.items() if kws and c != category))

        logger.info("Tagged request as %s (tags=%s)", category, tags)
        return {
            "category": category,
            "tags": tags,
            "matched_keywords": matches.get(category, []),
        }


def _request_text(payload: dict[str, Any]) -> str:
    for field in _TEXT_FIELDS:
        if isinstance(payload.get(field), str) and payload[field].strip():
            return require_text(payload, field)
    return require_text(payload, "question")


def _contains(text: str, keyword: str) -> bool:
    # Word-boundary match so "ira" does not fire inside "spiral"
    return re.search(rf"(?<![a-z0-9]){re.escape(keyword)}(?![a-z0-9])", text) is not None
