"""Tests for tools/analysis.py (pure helpers)."""

from __future__ import annotations

import math
from datetime import date

import pytest

from freightlens.core.exceptions import ToolInputError
from freightlens.tools.analysis import (
    PERIOD_PRESETS,
    assess_data_quality,
    comparison_insight,
    detect_outliers,
    grouping_quality,
    percent_change,
    period_filters,
    resolve_period,
    section_insight,
    suggest_visualization,
)


TODAY = date(2025, 6, 30)


class TestResolvePeriod:

    def test_last30(self):
        assert resolve_period("last30", TODAY) == {"start": date(2025, 5, 31), "end": TODAY}

    def test_last6months_uses_calendar_months(self):
        assert resolve_period("last6months", TODAY)["start"] == date(2024, 12, 30)

    def test_ytd(self):
        assert resolve_period("ytd", TODAY)["start"] == date(2025, 1, 1)

    def test_all_has_no_start(self):
        period = resolve_period("all", TODAY)
        assert period["start"] is None
        assert period_filters(period, "pickup_date") == [
            {"field": "pickup_date", "operator": "lte", "value": TODAY}
        ]

    @pytest.mark.parametrize("preset", PERIOD_PRESETS)
    def test_every_preset_resolves(self, preset):
        assert resolve_period(preset, TODAY)["end"] == TODAY

    def test_unknown_preset(self):
        with pytest.raises(ToolInputError, match="Unknown period"):
            resolve_period("lastDecade", TODAY)


class TestPercentChange:

    def test_increase(self):
        assert percent_change(150, 100) == 50.0

    def test_rounded_to_one_decimal(self):
        assert percent_change(1, 3) == -66.7

    @pytest.mark.parametrize("baseline", [0, -5, None, "n/a", float("nan")])
    def test_non_positive_or_missing_baseline_is_zero(self, baseline):
        assert percent_change(100, baseline) == 0.0

    def test_missing_current_is_zero(self):
        assert percent_change(None, 100) == 0.0


class TestDetectOutliers:

    def test_single_spike_is_flagged(self):
        rows = [{"name": n, "value": v} for n, v in zip("ABCDE", [10, 11, 9, 10, 85])]
        statistics, anomalies = detect_outliers(rows, threshold=2.0)
        assert [a["name"] for a in anomalies] == ["E"]
        assert anomalies[0]["direction"] == "high"
        assert statistics["mean"] == 25.0

    def test_uniform_values_have_no_anomalies(self):
        rows = [{"name": n, "value": 5} for n in "ABCD"]
        statistics, anomalies = detect_outliers(rows, threshold=1.5)
        assert anomalies == []
        assert statistics["stddev"] == 0.0

    def test_empty_rows(self):
        statistics, anomalies = detect_outliers([], threshold=2.0)
        assert anomalies == []
        assert statistics["mean"] == 0.0

    def test_low_outlier(self):
        rows = [{"name": n, "value": v} for n, v in zip("ABCDE", [100, 98, 102, 101, 2])]
        _, anomalies = detect_outliers(rows, threshold=3.0)
        assert [(a["name"], a["direction"]) for a in anomalies] == [("E", "low")]
        assert math.isfinite(anomalies[0]["deviation"])


class TestHeuristics:

    @pytest.mark.parametrize(
        "percent,expected", [(100, "excellent"), (95, "excellent"), (80, "good"), (50, "moderate"), (10, "poor")]
    )
    def test_data_quality(self, percent, expected):
        assert assess_data_quality(percent) == expected

    def test_grouping_quality(self):
        assert grouping_quality(0, 0) == "no_data"
        assert grouping_quality(5, 5) == "excellent"
        assert grouping_quality(15, 60) == "high_cardinality"

    def test_visualization(self):
        assert suggest_visualization(4) == "pie or donut chart"
        assert suggest_visualization(40) == "table or filtered chart"

    def test_comparison_insight(self):
        assert comparison_insight(2.0, "last30", "last90").startswith("Stable")
        assert comparison_insight(-25.0, "last30", "last90") == "Value decreased 25.0% from last90 to last30"

    def test_section_insight(self):
        data = [{"name": "Beta", "value": 75}, {"name": "Alpha", "value": 25}]
        assert section_insight("chart", data, "Spend") == "Beta leads with 75.0% of Spend"
        assert section_insight("chart", []) is None
