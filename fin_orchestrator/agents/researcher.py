# =============================================================================
# Researcher Worker — LangGraph Plan / Investigate / Compile
# =============================================================================
#
# A small agent graph producing a multi-step research summary:
#
#   START ──▶ plan ──▶ investigate ──▶ compile ──▶ END
#
#   plan        — LLM splits the question into at most `max_subtopics`
#                 sub-topics (one per line)
#   investigate — one LLM call per sub-topic, run concurrently
#   compile     — LLM merges the findings into a single summary
#
# DESIGN DECISION: Plain TypedDict state, graph compiled once at module
# level. The LLM provider travels in the state (not serialisable; no
# checkpointer is configured, so that is fine).
#
# DESIGN DECISION: Deadline-aware investigation.
# The executor cancels the worker at the deadline anyway; the graph only
# trims the number of sub-topics when little time is left so a partial
# research run is less likely to be thrown away.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime
from typing import Any

from langgraph.graph import END, START, StateGraph
from typing_extensions import TypedDict

from fin_orchestrator.agents.base import require_text, seconds_left
from fin_orchestrator.errors import PermanentTaskError, TransientTaskError
from fin_orchestrator.models.domain import WorkerKind
from fin_orchestrator.services.llm import LLMProvider, LLMResponse, provider_for_payload

logger = logging.getLogger(__name__)

DEFAULT_MAX_SUBTOPICS = 3
MAX_SUBTOPICS_LIMIT = 8

# Below this much remaining time, investigate a single sub-topic only.
LOW_TIME_SECONDS = 15.0

PLAN_SYSTEM = (
    "You are a financial research planner. Break the user's research "
    "question into distinct sub-topics to investigate.\n\n"
    "Rules:\n"
    "- Return one sub-topic per line, no numbering or commentary\n"
    "- Each sub-topic must be answerable on its own\n"
    "- Return at most {limit} sub-topics"
)

INVESTIGATE_SYSTEM = (
    "You are a financial researcher. Give a concise, factual finding for "
    "the sub-topic in the context of the overall question. State "
    "uncertainty explicitly; never invent figures."
)

COMPILE_SYSTEM = (
    "You are a senior financial analyst. Combine the research findings "
    "into a structured summary with a short conclusion. Refer to findings "
    "by their sub-topic."
)


class ResearchState(TypedDict, total=False):
    # --- Input ---
    question: str
    max_subtopics: int
    deadline: datetime
    llm: LLMProvider

    # --- Intermediate ---
    subtopics: list[str]
    findings: list[dict[str, str]]

    # --- Output ---
    summary: str
    input_tokens: int
    output_tokens: int


# ---------------------------------------------------------------------------
# Node Functions
# ---------------------------------------------------------------------------


async def plan_node(state: ResearchState) -> dict:
    limit = state["max_subtopics"]
    response = await state["llm"].complete(
        messages=[{"role": "user", "content": state["question"]}],
        system=PLAN_SYSTEM.format(limit=limit),
    )
    subtopics = _parse_subtopics(response.content, limit) or [state["question"]]
    logger.info("Research plan: %d sub-topics", len(subtopics))
    return {"subtopics": subtopics, **_usage(state, response)}


async def investigate_node(state: ResearchState) -> dict:
    subtopics = state["subtopics"]
    if seconds_left(state["deadline"]) < LOW_TIME_SECONDS:
        logger.warning("Little time left; investigating only the first sub-topic")
        subtopics = subtopics[:1]

    question = state["question"]
    responses = await asyncio.gather(*(
        state["llm"].complete(
            messages=[{
                "role": "user",
                "content": f"Overall question: {question}\n\nSub-topic: {topic}",
            }],
            system=INVESTIGATE_SYSTEM,
        )
        for topic in subtopics
    ))

    findings = [
        {"subtopic": topic, "finding": response.content.strip()}
        for topic, response in zip(subtopics, responses)
    ]
    usage = {
        "input_tokens": state.get("input_tokens", 0) + sum(r.input_tokens for r in responses),
        "output_tokens": state.get("output_tokens", 0) + sum(r.output_tokens for r in responses),
    }
    return {"findings": findings, **usage}


async def compile_node(state: ResearchState) -> dict:
    findings = [f for f in state["findings"] if f["finding"]]
    if not findings:
        raise TransientTaskError("Research produced no findings")

    body = "\n\n".join(f"## {f['subtopic']}\n{f['finding']}" for f in findings)
    response = await state["llm"].complete(
        messages=[{
            "role": "user",
            "content": f"Question: {state['question']}\n\nFindings:\n{body}",
        }],
        system=COMPILE_SYSTEM,
    )
    return {"summary": response.content.strip(), **_usage(state, response)}


# ---------------------------------------------------------------------------
# Graph Assembly
# ---------------------------------------------------------------------------

_builder = StateGraph(ResearchState)
_builder.add_node("plan", plan_node)
_builder.add_node("investigate", investigate_node)
_builder.add_node("compile", compile_node)

_builder.add_edge(START, "plan")
_builder.add_edge("plan", "investigate")
_builder.add_edge("investigate", "compile")
_builder.add_edge("compile", END)

graph = _builder.compile()


class ResearcherWorker:
    kind = WorkerKind.RESEARCHER

    def __init__(self, llm: LLMProvider | None = None) -> None:
        self._llm = llm

    async def execute(self, payload: dict[str, Any], deadline: datetime) -> dict[str, Any]:
        question = require_text(payload, "question")
        max_subtopics = payload.get("max_subtopics", DEFAULT_MAX_SUBTOPICS)
        if (
            isinstance(max_subtopics, bool)
            or not isinstance(max_subtopics, int)
            or not 1 <= max_subtopics <= MAX_SUBTOPICS_LIMIT
        ):
            raise PermanentTaskError(
                f"max_subtopics must be an integer between 1 and {MAX_SUBTOPICS_LIMIT}"
            )

        result = await graph.ainvoke({
            "question": question,
            "max_subtopics": max_subtopics,
            "deadline": deadline,
            "llm": self._llm or provider_for_payload(payload),
            "input_tokens": 0,
            "output_tokens": 0,
        })
        if not result.get("summary"):
            raise TransientTaskError("Research compile step returned an empty summary")

        logger.info(
            "Research complete: %d findings, tokens in=%d out=%d",
            len(result["findings"]), result["input_tokens"], result["output_tokens"],
        )
        return {
            "summary": result["summary"],
            "subtopics": result["subtopics"],
            "findings": result["findings"],
            "usage": {
                "input_tokens": result["input_tokens"],
                "output_tokens": result["output_tokens"],
            },
        }


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------

_LIST_MARKER = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s*")


def _parse_subtopics(text: str, limit: int) -> list[str]:
    subtopics: list[str] = []
    for line in text.splitlines():
        topic = _LIST_MARKER.sub("", line).strip()
        if topic and topic not in subtopics:
            subtopics.append(topic)
    return subtopics[:limit]


def _usage(state: ResearchState, response: LLMResponse) -> dict[str, int]:
    return {
        "input_tokens": state.get("input_tokens", 0) + response.input_tokens,
        "output_tokens": state.get("output_tokens", 0) + response.output_tokens,
    }
