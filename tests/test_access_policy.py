"""Tests for safety/access_policy.py.

The code-level gate is the only thing standing between a model that ignores
its prompt and a customer seeing broker financials, so these cover every
position a field reference can hide in.
"""

from __future__ import annotations

import pytest

from freightlens.agent.contracts import AccessContext
from freightlens.safety.access_policy import (
    RESTRICTED_FIELDS,
    enforce_access_control,
    get_prompt_access_instructions,
    get_restricted_fields,
    is_field_accessible,
    is_restricted_field,
    redact_restricted_values,
)
from freightlens.safety.field_refs import iter_field_references


def _report(*sections, calculated=None):
    report = {"name": "Test", "sections": list(sections)}
    if calculated is not None:
        report["calculatedFields"] = calculated
    return report


SPEND_CHART = {"type": "chart", "title": "Spend", "config": {"groupBy": "carrier_name", "metric": "retail"}}
MARGIN_CHART = {
    "type": "chart",
    "title": "Margin",
    "config": {"groupBy": "carrier_name", "metric": {"field": "margin", "aggregation": "sum"}},
}


# ---------------------------------------------------------------------------
# Field classification
# ---------------------------------------------------------------------------


class TestFieldClassification:

    @pytest.mark.parametrize("name", ["cost", "COST", " margin ", "carrier_pay", "cost_per_mile"])
    def test_restricted_names_case_insensitive(self, name):
        assert is_restricted_field(name)

    @pytest.mark.parametrize("name", ["retail", "total_weight", "carrier_name", "costume"])
    def test_lookalikes_are_not_restricted(self, name):
        assert not is_restricted_field(name)

    def test_extra_restricted_names(self):
        assert is_restricted_field("secret_rate", extra_restricted=["Secret_Rate"])

    def test_non_string_is_not_restricted(self):
        assert not is_restricted_field(None)

    def test_admin_sees_everything(self, admin, customer):
        assert is_field_accessible("margin", admin)
        assert not is_field_accessible("margin", customer)
        assert get_restricted_fields(admin) == []
        assert set(get_restricted_fields(customer)) == RESTRICTED_FIELDS


# ---------------------------------------------------------------------------
# Enforcement
# ---------------------------------------------------------------------------


class TestEnforceAccessControl:

    def test_admin_report_passes_unchanged(self, admin):
        report = _report(SPEND_CHART, MARGIN_CHART)
        result = enforce_access_control(report, admin)
        assert result.allowed
        assert result.sanitized_report == report
        assert result.violations == []

    def test_clean_customer_report_allowed(self, customer):
        result = enforce_access_control(_report(SPEND_CHART), customer)
        assert result.allowed
        assert len(result.sanitized_report["sections"]) == 1

    def test_restricted_section_removed_wholesale(self, customer):
        result = enforce_access_control(_report(SPEND_CHART, MARGIN_CHART), customer)
        assert not result.allowed
        sections = result.sanitized_report["sections"]
        assert [s["title"] for s in sections] == ["Spend"]
        assert any('"margin"' in v for v in result.violations)

    def test_input_report_not_mutated(self, customer):
        report = _report(SPEND_CHART, MARGIN_CHART)
        enforce_access_control(report, customer)
        assert len(report["sections"]) == 2

    @pytest.mark.parametrize(
        "config",
        [
            {"columns": ["load_id", "cost"]},
            {"filters": [{"field": "margin", "operator": "gt", "value": 0}]},
            {"groupBy": "carrier_name", "sortBy": "cost"},
            {"metrics": [{"field": "retail"}, {"field": "carrier_cost", "aggregation": "avg"}]},
            {"groupBy": "carrier_name", "metric": {"field": "x", "formula": "margin / miles"}},
        ],
    )
    def test_every_reference_position_is_checked(self, customer, config):
        result = enforce_access_control(_report({"type": "table", "config": config}), customer)
        assert result.sanitized_report["sections"] == []
        assert not result.allowed

    def test_title_mentioning_cost_is_not_a_reference(self, customer):
        section = {"type": "chart", "title": "Freight cost by carrier", "config": {"groupBy": "carrier_name", "metric": "retail"}}
        result = enforce_access_control(_report(section), customer)
        assert result.allowed

    def test_calculated_field_with_restricted_formula_removed(self, customer):
        calcs = [
            {"name": "retail_per_mile", "formula": "retail / miles"},
            {"name": "margin_rate", "formula": "margin / retail"},
        ]
        result = enforce_access_control(_report(SPEND_CHART, calculated=calcs), customer)
        names = [c["name"] for c in result.sanitized_report["calculatedFields"]]
        assert names == ["retail_per_mile"]
        assert any("margin_rate" in v for v in result.violations)

    def test_sections_using_removed_calculated_field_removed(self, customer):
        total = {"type": "hero", "title": "Total", "config": {"metric": {"field": "retail", "aggregation": "sum"}}}
        profit = {"type": "hero", "title": "Profit", "config": {"metric": {"field": "profit", "aggregation": "sum"}}}
        report = _report(total, profit, calculated=[{"name": "profit", "formula": "retail - cost"}])

        result = enforce_access_control(report, customer)

        assert [s["title"] for s in result.sanitized_report["sections"]] == ["Total"]
        assert result.sanitized_report["calculatedFields"] == []
        assert any(v.startswith('Section "Profit"') for v in result.violations)

    def test_calculated_field_built_on_removed_one_removed(self, customer):
        calcs = [
            {"name": "profit", "formula": "retail - cost"},
            {"name": "profit_per_mile", "formula": "profit / miles"},
            {"name": "retail_per_mile", "formula": "retail / miles"},
        ]
        chart = {"type": "chart", "config": {"groupBy": "carrier_name", "metric": "profit_per_mile"}}
        result = enforce_access_control(_report(SPEND_CHART, chart, calculated=calcs), customer)

        assert [c["name"] for c in result.sanitized_report["calculatedFields"]] == ["retail_per_mile"]
        assert [s["title"] for s in result.sanitized_report["sections"]] == ["Spend"]

    def test_admin_only_schema_fields_are_restricted(self, customer):
        section = {"type": "chart", "config": {"groupBy": "internal_code", "metric": "retail"}}
        result = enforce_access_control(_report(section), customer, extra_restricted=["internal_code"])
        assert result.sanitized_report["sections"] == []

    def test_section_data_rows_redacted(self, customer):
        section = dict(SPEND_CHART, data=[{"name": "XPO", "value": 10, "cost": 8}])
        result = enforce_access_control(_report(section), customer)
        assert result.sanitized_report["sections"][0]["data"] == [{"name": "XPO", "value": 10}]

    def test_no_restricted_reference_survives(self, customer):
        report = _report(
            SPEND_CHART,
            MARGIN_CHART,
            {"type": "table", "config": {"columns": ["load_id", "retail", "cost"]}},
            calculated=[{"name": "m", "formula": "margin * 2"}],
        )
        sanitized = enforce_access_control(report, customer).sanitized_report
        assert not [r for r in iter_field_references(sanitized) if is_restricted_field(r.field)]


# ---------------------------------------------------------------------------
# Redaction and prompt text
# ---------------------------------------------------------------------------


class TestRedaction:

    def test_nested_restricted_keys_dropped(self, customer):
        payload = {"data": [{"carrier_name": "XPO", "margin": 5, "extra": {"cost": 1, "retail": 2}}]}
        assert redact_restricted_values(payload, customer) == {
            "data": [{"carrier_name": "XPO", "extra": {"retail": 2}}]
        }

    def test_admin_payload_untouched(self, admin):
        payload = {"cost": 1}
        assert redact_restricted_values(payload, admin) is payload


class TestPromptInstructions:

    def test_admin_instructions(self):
        text = get_prompt_access_instructions(AccessContext(customer_id="c-1", is_admin=True))
        assert "ADMIN" in text

    def test_customer_instructions_map_spend_to_retail(self, customer):
        text = get_prompt_access_instructions(customer)
        assert "RESTRICTED FIELDS" in text
        assert "**retail**" in text
        for name in RESTRICTED_FIELDS:
            assert name in text
