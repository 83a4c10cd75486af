"""Derived-analysis helpers used by the tool executor.

Pure functions over aggregate rows: period resolution, percent change,
outlier detection and the small quality / insight heuristics attached to
exploration and preview results.
"""

from __future__ import annotations

import math
from datetime import date
from typing import Any

import pandas as pd

from freightlens.core.exceptions import ToolInputError


PERIOD_PRESETS = ("last7", "last30", "last90", "last6months", "ytd", "lastYear", "all")

SENSITIVITY_THRESHOLDS: dict[str, float] = {
    "high": 1.5,
    "medium": 2.0,
    "low": 3.0,
}

_PRESET_OFFSETS: dict[str, pd.DateOffset] = {
    "last7": pd.DateOffset(days=7),
    "last30": pd.DateOffset(days=30),
    "last90": pd.DateOffset(days=90),
    "last6months": pd.DateOffset(months=6),
    "lastYear": pd.DateOffset(years=1),
}


def resolve_period(preset: str, today: date | None = None) -> dict[str, date | None]:
    """Resolve a period preset to concrete ``{start, end}`` dates.

    ``all`` has no start bound. Unknown presets raise ToolInputError.
    """
    end = pd.Timestamp(today or date.today()).normalize()
    if preset == "all":
        return {"start": None, "end": end.date()}
    if preset == "ytd":
        return {"start": date(end.year, 1, 1), "end": end.date()}
    offset = _PRESET_OFFSETS.get(preset)
    if offset is None:
        raise ToolInputError(f"Unknown period: {preset}. Valid: {', '.join(PERIOD_PRESETS)}")
    return {"start": (end - offset).date(), "end": end.date()}


def period_filters(period: dict[str, date | None], date_field: str) -> list[dict[str, Any]]:
    filters = []
    if period.get("start") is not None:
        filters.append({"field": date_field, "operator": "gte", "value": period["start"]})
    if period.get("end") is not None:
        filters.append({"field": date_field, "operator": "lte", "value": period["end"]})
    return filters


def period_to_json(period: dict[str, date | None]) -> dict[str, str | None]:
    return {k: v.isoformat() if v is not None else None for k, v in period.items()}


def _finite(value: Any) -> float | None:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def percent_change(current: Any, baseline: Any) -> float:
    """Percent change from ``baseline`` to ``current``, rounded to 0.1.

    A zero, negative or missing baseline yields exactly 0.0.
    """
    cur = _finite(current)
    base = _finite(baseline)
    if cur is None or base is None or base <= 0:
        return 0.0
    return round((cur - base) / base * 100, 1)


def detect_outliers(
    rows: list[dict[str, Any]],
    threshold: float,
) -> tuple[dict[str, float], list[dict[str, Any]]]:
    """Flag groups whose value sits more than ``threshold`` deviations out.

    Each group is scored against the mean and population standard deviation
    of the other groups, so one extreme group cannot mask itself by
    inflating the spread. Returns ``(statistics, anomalies)``.
    """
    if not rows:
        return {"mean": 0.0, "stddev": 0.0, "threshold": threshold}, []

    frame = pd.DataFrame(rows)
    values = pd.to_numeric(frame["value"], errors="coerce").fillna(0.0).reset_index(drop=True)
    mean = float(values.mean())
    stddev = float(values.std(ddof=0))
    statistics = {"mean": round(mean, 2), "stddev": round(stddev, 2), "threshold": threshold}

    anomalies = []
    for i, value in values.items():
        others = values.drop(index=i)
        if others.empty:
            continue
        ref_mean = float(others.mean())
        ref_std = float(others.std(ddof=0))
        scale = ref_std if ref_std > 0 else stddev
        if scale <= 0:
            continue
        deviation = (float(value) - ref_mean) / scale
        if abs(deviation) > threshold:
            anomalies.append({
                **rows[i],
                "deviation": round(deviation, 2),
                "direction": "high" if value > ref_mean else "low",
            })
    return statistics, anomalies


def assess_data_quality(populated_percent: float) -> str:
    if populated_percent >= 95:
        return "excellent"
    if populated_percent >= 80:
        return "good"
    if populated_percent >= 50:
        return "moderate"
    return "poor"


def field_recommendation(populated_percent: float, unique_count: int) -> str:
    if populated_percent < 50:
        return f"Low coverage ({populated_percent}%) - consider using a different field"
    if unique_count == 1:
        return "Single value - not useful for grouping"
    if unique_count > 100:
        return "High cardinality - consider filtering"
    return "Good for analysis"


def grouping_quality(result_count: int, total_groups: int) -> str:
    if result_count == 0:
        return "no_data"
    if total_groups <= 5:
        return "excellent"
    if total_groups <= 15:
        return "good"
    if total_groups <= 50:
        return "moderate"
    return "high_cardinality"


def suggest_visualization(total_groups: int) -> str:
    if total_groups <= 5:
        return "pie or donut chart"
    if total_groups <= 10:
        return "bar chart"
    if total_groups <= 20:
        return "horizontal bar chart"
    return "table or filtered chart"


def comparison_insight(change: float, period1: str, period2: str) -> str:
    if abs(change) < 5:
        return f"Stable performance between {period1} and {period2}"
    direction = "increased" if change > 0 else "decreased"
    return f"Value {direction} {abs(change):.1f}% from {period2} to {period1}"


def section_insight(section_type: str, data: list[dict[str, Any]], title: str | None = None) -> str | None:
    """One-line headline for a previewed section ("X leads with N% of ...")."""
    if not data:
        return None
    total = sum(_finite(row.get("value")) or 0.0 for row in data)
    top = data[0]
    share = (_finite(top.get("value")) or 0.0) / total * 100 if total > 0 else 0.0
    return f"{top.get('name')} leads with {share:.1f}% of {title or section_type}"
