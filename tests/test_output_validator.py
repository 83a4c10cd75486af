"""Tests for safety/output_validator.py: validation and local auto-fix."""

from __future__ import annotations

import pytest

from freightlens.agent.contracts import AccessContext, SchemaContext, SchemaField
from freightlens.safety.output_validator import attempt_auto_fix, validate_report_output


SCHEMA = SchemaContext(
    fields=[
        SchemaField(name="carrier_name", data_type="text"),
        SchemaField(name="destination_state", data_type="text"),
        SchemaField(name="load_id", data_type="text", is_groupable=False),
        SchemaField(name="pickup_date", data_type="date"),
        SchemaField(name="retail", data_type="number", is_groupable=False, is_aggregatable=True),
        SchemaField(name="miles", data_type="number", is_groupable=False, is_aggregatable=True),
        SchemaField(name="cost", data_type="number", is_groupable=False, is_aggregatable=True, admin_only=True),
    ],
    source="test",
)


def chart(config, title="Chart"):
    return {"type": "chart", "title": title, "config": config}


def report(*sections, **extra):
    return {"name": "Spend review", "sections": list(sections), **extra}


class TestValidateReportOutput:

    def test_valid_report(self):
        outcome = validate_report_output(
            report(chart({"chartType": "bar", "groupBy": "carrier_name", "metric": {"field": "retail", "aggregation": "sum"}})),
            SCHEMA,
        )
        assert outcome.valid
        assert outcome.errors == []

    def test_field_lookup_is_case_insensitive(self):
        outcome = validate_report_output(report(chart({"groupBy": "Carrier_Name", "metric": "RETAIL"})), SCHEMA)
        assert outcome.valid

    def test_unknown_field_is_error(self):
        outcome = validate_report_output(report(chart({"groupBy": "lane_code", "metric": "retail"})), SCHEMA)
        assert not outcome.valid
        assert any('Unknown field "lane_code"' in e for e in outcome.errors)

    def test_invalid_section_type(self):
        outcome = validate_report_output(report({"type": "pivot", "config": {}}), SCHEMA)
        assert not outcome.valid
        assert "Invalid section type" in outcome.errors[0]

    def test_invalid_chart_type(self):
        outcome = validate_report_output(
            report(chart({"chartType": "donut3d", "groupBy": "carrier_name", "metric": "retail"})), SCHEMA
        )
        assert any("Invalid chart type" in e for e in outcome.errors)

    def test_invalid_aggregation(self):
        outcome = validate_report_output(
            report(chart({"groupBy": "carrier_name", "metric": {"field": "retail", "aggregation": "median"}})),
            SCHEMA,
        )
        assert any('Invalid aggregation "median"' in e for e in outcome.errors)

    def test_sum_over_non_aggregatable_is_error(self):
        outcome = validate_report_output(
            report(chart({"groupBy": "carrier_name", "metric": {"field": "load_id", "aggregation": "sum"}})),
            SCHEMA,
        )
        assert any("cannot be aggregated with SUM" in e for e in outcome.errors)

    def test_non_groupable_group_by_is_warning(self):
        outcome = validate_report_output(report(chart({"groupBy": "load_id", "metric": "retail"})), SCHEMA)
        assert outcome.valid
        assert any("not be ideal for grouping" in w for w in outcome.warnings)

    def test_missing_name_and_sections(self):
        outcome = validate_report_output({"sections": "nope"}, SCHEMA)
        assert not outcome.valid
        assert "Report must have a name" in outcome.errors
        assert "Report must have a sections array" in outcome.errors

    def test_derived_names_are_accepted(self):
        outcome = validate_report_output(
            report(
                chart({"groupBy": "carrier_name", "metric": "retail_per_mile", "sortBy": "value"}),
                calculatedFields=[{"name": "retail_per_mile", "formula": "retail / miles"}],
            ),
            SCHEMA,
        )
        assert outcome.valid

    def test_calculated_field_with_unknown_reference(self):
        outcome = validate_report_output(
            report(chart({"groupBy": "carrier_name", "metric": "retail"}),
                   calculatedFields=[{"name": "bad", "formula": "retail / fuel_surcharge"}]),
            SCHEMA,
        )
        assert any('References unknown field "fuel_surcharge"' in e for e in outcome.errors)

    def test_restricted_reference_warns_for_customers_only(self):
        payload = report(chart({"groupBy": "carrier_name", "metric": "cost"}))
        customer = validate_report_output(payload, SCHEMA, AccessContext(customer_id="c-1"))
        admin = validate_report_output(payload, SCHEMA, AccessContext(customer_id="c-1", is_admin=True))
        assert customer.valid and admin.valid
        assert any("restricted" in w for w in customer.warnings)
        assert not admin.warnings


class TestAttemptAutoFix:

    def test_fixes_chart_type_and_aggregation(self):
        broken = report(chart({"chartType": "donut3d", "groupBy": "carrier_name",
                               "metric": {"field": "retail", "aggregation": "median"}}))
        fixed = attempt_auto_fix(broken, SCHEMA)
        assert fixed is not None
        config = fixed["sections"][0]["config"]
        assert config["chartType"] == "bar"
        assert config["metric"]["aggregation"] == "sum"
        assert validate_report_output(fixed, SCHEMA).valid

    def test_sum_over_text_becomes_count(self):
        fixed = attempt_auto_fix(
            report(chart({"groupBy": "carrier_name", "metric": {"field": "load_id", "aggregation": "sum"}})),
            SCHEMA,
        )
        assert fixed["sections"][0]["config"]["metric"]["aggregation"] == "count"

    def test_drops_unfixable_sections_and_columns(self):
        broken = report(
            chart({"groupBy": "lane_code", "metric": "retail"}, title="Bad"),
            {"type": "table", "title": "Loads", "config": {"columns": ["load_id", "ghost", "retail"]}},
            {"type": "pivot", "config": {}},
        )
        fixed = attempt_auto_fix(broken, SCHEMA)
        assert [s["title"] for s in fixed["sections"]] == ["Loads"]
        assert fixed["sections"][0]["config"]["columns"] == ["load_id", "retail"]

    def test_normalizes_field_spelling(self):
        fixed = attempt_auto_fix(
            report(chart({"groupBy": "CARRIER_NAME", "metric": {"field": "Retail", "aggregation": "bogus"}})),
            SCHEMA,
        )
        assert fixed["sections"][0]["config"]["groupBy"] == "carrier_name"
        assert fixed["sections"][0]["config"]["metric"]["field"] == "retail"

    def test_orphaned_calculated_fields_dropped(self):
        broken = report(
            chart({"groupBy": "carrier_name", "metric": "retail"}),
            calculatedFields=[
                {"name": "base", "formula": "retail / ghost"},
                {"name": "derived", "formula": "base * 2"},
                {"name": "ok", "formula": "retail / miles"},
            ],
        )
        fixed = attempt_auto_fix(broken, SCHEMA)
        assert [c["name"] for c in fixed["calculatedFields"]] == ["ok"]

    def test_nothing_salvageable_returns_none(self):
        assert attempt_auto_fix(report(chart({"groupBy": "ghost", "metric": "phantom"})), SCHEMA) is None
        assert attempt_auto_fix({"name": "x"}, SCHEMA) is None

    @pytest.mark.parametrize(
        "broken",
        [
            report(chart({"chartType": "nope", "groupBy": "carrier_name", "metric": {"field": "retail", "aggregation": "x"}})),
            report({"type": "table", "config": {"columns": ["ghost", "retail"]}}, chart({"groupBy": "ghost"})),
            {"sections": [chart({"groupBy": "destination_state", "metric": "miles"})]},
        ],
    )
    def test_fix_is_idempotent(self, broken):
        once = attempt_auto_fix(broken, SCHEMA)
        assert once is not None
        assert attempt_auto_fix(once, SCHEMA) == once

    def test_input_not_mutated(self):
        broken = report(chart({"chartType": "nope", "groupBy": "carrier_name", "metric": "retail"}))
        attempt_auto_fix(broken, SCHEMA)
        assert broken["sections"][0]["config"]["chartType"] == "nope"
