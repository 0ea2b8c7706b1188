# =============================================================================
# Retirement Worker — Year-by-Year Savings Projection
# =============================================================================
#
# Projects a savings balance from current age to retirement age with annual
# contributions and compound growth, reporting both nominal and
# inflation-adjusted (today's money) balances.
#
#   balance[y+1] = balance[y] * (1 + annual_return) + contribution[y]
#   contribution[y] = annual_contribution * (1 + contribution_growth) ** y
#   real[y] = balance[y] / (1 + inflation) ** (y + 1)
#
# Input lives under "retirement" (falls back to the top-level payload):
#   current_age, retirement_age, current_savings, annual_contribution,
#   annual_return (default 0.05), inflation (default 0.02),
#   contribution_growth (default 0.0), target_balance (optional)
#
# Amounts are rounded to cents only in the output, never mid-projection.
# =============================================================================

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from fin_orchestrator.agents.base import require_number
from fin_orchestrator.errors import PermanentTaskError
from fin_orchestrator.models.domain import WorkerKind

logger = logging.getLogger(__name__)

MAX_PROJECTION_YEARS = 100


class RetirementWorker:
    kind = WorkerKind.RETIREMENT

    async def execute(self, payload: dict[str, Any], deadline: datetime) -> dict[str, Any]:
        params = payload.get("retirement", payload)
        if not isinstance(params, dict):
            raise PermanentTaskError("Payload field 'retirement' must be an object")

        current_age = int(require_number(params, "current_age"))
        retirement_age = int(require_number(params, "retirement_age"))
        years = retirement_age - current_age
        if years <= 0:
            raise PermanentTaskError("retirement_age must be greater than current_age")
        if years > MAX_PROJECTION_YEARS:
            raise PermanentTaskError(f"Projection longer than {MAX_PROJECTION_YEARS} years")

        balance = require_number(params, "current_savings", 0.0)
        contribution = require_number(params, "annual_contribution", 0.0)
        annual_return = require_number(params, "annual_return", 0.05)
        inflation = require_number(params, "inflation", 0.02)
        contribution_growth = require_number(params, "contribution_growth", 0.0)
        if balance < 0 or contribution < 0:
            raise PermanentTaskError("Savings and contributions must be non-negative")
        if annual_return <= -1 or inflation <= -1:
            raise PermanentTaskError("Rates must be greater than -100%")

        starting_balance = balance
        rows: list[dict[str, Any]] = []
        total_contributed = 0.0
        for year in range(years):
            paid = contribution * (1 + contribution_growth) ** year
            balance = balance * (1 + annual_return) + paid
            total_contributed += paid
            rows.append({
                "year": year + 1,
                "age": current_age + year + 1,
                "contribution": round(paid, 2),
                "balance": round(balance, 2),
                "real_balance": round(balance / (1 + inflation) ** (year + 1), 2),
            })

        summary: dict[str, Any] = {
            "years": years,
            "final_balance": rows[-1]["balance"],
            "final_real_balance": rows[-1]["real_balance"],
            "total_contributed": round(total_contributed, 2),
            "growth": round(balance - total_contributed - starting_balance, 2),
        }
        target = params.get("target_balance")
        if target is not None:
            target = require_number(params, "target_balance")
            summary["target_balance"] = target
            summary["on_track"] = balance >= target
            summary["shortfall"] = round(max(target - balance, 0.0), 2)

        logger.info(
            "Retirement projection: %d years, final balance %.2f",
            years, summary["final_balance"],
        )
        return {"projection": rows, "summary": summary}
