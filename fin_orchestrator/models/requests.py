# =============================================================================
# API Request Models — Pydantic V2 Schemas
# =============================================================================
#
# Shape of data coming INTO the API. Only structural validation happens
# here (JSON object input, list of strings); worker-kind validity and
# duplicates are checked by the Planner so the HTTP and in-process entry
# points reject exactly the same submissions.
# =============================================================================

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class SubmitJobRequest(BaseModel):
    """
    Request body for POST /jobs.

    Example:
        {
            "input": {"question": "Am I on track to retire at 60?",
                      "retirement": {"current_age": 35, "retirement_age": 60,
                                     "current_savings": 50000,
                                     "annual_contribution": 12000}},
            "required_workers": ["tagger", "retirement", "reporter"]
        }
    """

    input: dict[str, Any] = Field(
        ...,
        description="Opaque job input; every worker receives a copy as its payload.",
    )

    required_workers: list[str] = Field(
        ...,
        description=(
            "Worker kinds to run, in result order. Options: 'tagger', "
            "'reporter', 'charter', 'retirement', 'researcher'."
        ),
        examples=[["tagger", "reporter"]],
    )

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {
                    "input": {"question": "How should I split my portfolio?"},
                    "required_workers": ["tagger", "reporter"],
                },
                {
                    "input": {
                        "series": {"Revenue": [10, 12, 15]},
                        "labels": ["2022", "2023", "2024"],
                    },
                    "required_workers": ["charter"],
                },
            ]
        }
    )
