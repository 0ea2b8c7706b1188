# =============================================================================
# Charter Worker — Chart Specification Builder
# =============================================================================
#
# Turns numeric series in the job input into a renderer-agnostic chart
# spec plus per-series statistics. Input shape:
#
#   "series": {"Revenue": [10, 12, 15], "Costs": [8, 9, 9.5]}
#   "labels": ["2022", "2023", "2024"]          (optional)
#   "chart_type": "line" | "bar" | "area"       (optional, default "line")
#
# Series are emitted in sorted name order so the output does not depend on
# dict ordering in the submitted JSON.
# =============================================================================

from __future__ import annotations

import logging
import math
import statistics
from datetime import datetime
from typing import Any

from fin_orchestrator.errors import PermanentTaskError
from fin_orchestrator.models.domain import WorkerKind

logger = logging.getLogger(__name__)

CHART_TYPES = ("line", "bar", "area")


class CharterWorker:
    kind = WorkerKind.CHARTER

    async def execute(self, payload: dict[str, Any], deadline: datetime) -> dict[str, Any]:
        series = _validated_series(payload.get("series"))
        length = len(next(iter(series.values())))

        chart_type = payload.get("chart_type", "line")
        if chart_type not in CHART_TYPES:
            raise PermanentTaskError(
                f"Unsupported chart_type {chart_type!r}; expected one of {list(CHART_TYPES)}"
            )

        labels = payload.get("labels")
        if labels is None:
            labels = [str(i) for i in range(1, length + 1)]
        elif not isinstance(labels, list) or len(labels) != length:
            raise PermanentTaskError("'labels' must be a list matching the series length")

        names = sorted(series)
        chart = {
            "type": chart_type,
            "title": str(payload.get("title") or ", ".join(names)),
            "x": {"labels": [str(label) for label in labels]},
            "series": [{"name": name, "values": series[name]} for name in names],
        }
        stats = {name: series_statistics(series[name]) for name in names}

        logger.info("Chart built: type=%s, %d series x %d points", chart_type, len(names), length)
        return {"chart": chart, "statistics": stats}


def series_statistics(values: list[float]) -> dict[str, Any]:
    first, last = values[0], values[-1]
    change = last - first
    return {
        "count": len(values),
        "min": min(values),
        "max": max(values),
        "mean": round(statistics.fmean(values), 6),
        "stdev": round(statistics.pstdev(values), 6),
        "change": round(change, 6),
        "change_pct": round(change / first * 100, 4) if first else None,
    }


def _validated_series(raw: Any) -> dict[str, list[float]]:
    if not isinstance(raw, dict) or not raw:
        raise PermanentTaskError("Payload field 'series' must be a non-empty object")

    series: dict[str, list[float]] = {}
    for name, values in raw.items():
        if not isinstance(values, list) or not values:
            raise PermanentTaskError(f"Series {name!r} must be a non-empty list")
        if any(
            isinstance(v, bool) or not isinstance(v, (int, float)) or not math.isfinite(v)
            for v in values
        ):
            raise PermanentTaskError(f"Series {name!r} must contain only finite numbers")
        series[str(name)] = [float(v) for v in values]

    if len({len(v) for v in series.values()}) != 1:
        raise PermanentTaskError("All series must have the same length")
    return series
