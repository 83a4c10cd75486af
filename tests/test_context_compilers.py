"""Tests for the schema and knowledge compilers in context/."""

from __future__ import annotations

from freightlens.agent.contracts import SchemaField
from freightlens.context.knowledge_compiler import compile_knowledge_context, format_knowledge_for_prompt
from freightlens.context.schema_compiler import (
    DEFAULT_FIELDS,
    DefaultFieldsProvider,
    IntrospectionProvider,
    compile_schema_context,
    format_schema_for_prompt,
    resolve_fields,
)
from freightlens.core.exceptions import DatabaseError
from freightlens.store.duckdb_store import ShipmentStore


class _FailingProvider:
    name = "broken"

    def load(self, store):
        raise DatabaseError("boom")


class _EmptyProvider:
    name = "empty"

    def load(self, store):
        return []


class _FixedProvider:
    name = "fixed"

    def load(self, store):
        return [SchemaField(name="only_field")]


# ---------------------------------------------------------------------------
# Schema compiler
# ---------------------------------------------------------------------------


class TestResolveFields:

    def test_metadata_tier_wins_when_populated(self, known_store):
        fields, source = resolve_fields(known_store)
        assert source == "metadata"
        by_name = {f.name: f for f in fields}
        assert by_name["retail"].is_aggregatable
        assert by_name["cost"].admin_only
        assert by_name["retail"].display_name == "Freight Spend"

    def test_falls_through_to_introspection(self, empty_db):
        fields, source = resolve_fields(ShipmentStore(empty_db))
        assert source == "introspection"
        names = [f.name for f in fields]
        assert "customer_id" not in names
        assert "retail" in names
        by_name = {f.name: f for f in fields}
        assert by_name["margin"].admin_only
        assert by_name["retail"].is_aggregatable and not by_name["retail"].is_groupable

    def test_failing_and_empty_providers_are_skipped(self, known_store):
        fields, source = resolve_fields(known_store, (_FailingProvider(), _EmptyProvider(), _FixedProvider()))
        assert source == "fixed"
        assert [f.name for f in fields] == ["only_field"]

    def test_default_tier_is_terminal(self, tmp_path):
        # No tables at all: introspection finds nothing
        store = ShipmentStore(tmp_path / "blank.duckdb")
        fields, source = resolve_fields(store, (IntrospectionProvider(), DefaultFieldsProvider()))
        assert source == "default"
        assert fields == list(DEFAULT_FIELDS)

    def test_all_providers_empty_still_yields_defaults(self, known_store):
        fields, source = resolve_fields(known_store, (_EmptyProvider(),))
        assert source == "default"
        assert fields


class TestDataProfile:

    def test_profile_is_tenant_scoped(self, known_store):
        schema = compile_schema_context(known_store, "c-100")
        profile = schema.data_profile
        assert profile.total_shipments == 5
        assert profile.carrier_count == 3
        assert set(profile.top_carriers) == {"Alpha Freight", "Beta Lines", "Gamma Haul"}
        assert profile.state_count == 3
        assert not profile.has_canada_data

    def test_empty_tenant_profile(self, known_store):
        profile = compile_schema_context(known_store, "c-999").data_profile
        assert profile.total_shipments == 0

    def test_canada_detected_from_province(self, known_store):
        known_store.execute_write(
            "INSERT INTO shipment (load_id, customer_id, pickup_date, carrier_name, destination_state, "
            "destination_country) VALUES ('C-1', 'c-300', current_date, 'Maple Express', 'ON', 'US')"
        )
        profile = compile_schema_context(known_store, "c-300").data_profile
        assert profile.total_shipments == 1
        assert profile.has_canada_data

    def test_demo_data_profile(self, demo_db):
        profile = compile_schema_context(ShipmentStore(demo_db), "c-100").data_profile
        assert profile.total_shipments == 60
        assert profile.months_of_data >= 1


class TestFormatSchema:

    def test_customer_prompt_hides_admin_fields(self, known_store):
        schema = compile_schema_context(known_store, "c-100")
        text = format_schema_for_prompt(schema, is_admin=False)
        assert "| retail |" in text
        assert "| cost |" not in text
        assert "| margin |" not in text
        assert "Total Shipments:** 5" in text

    def test_admin_prompt_tags_admin_fields(self, known_store):
        schema = compile_schema_context(known_store, "c-100")
        text = format_schema_for_prompt(schema, is_admin=True)
        assert "| cost |" in text
        assert "(ADMIN)" in text


# ---------------------------------------------------------------------------
# Knowledge compiler
# ---------------------------------------------------------------------------


class TestKnowledgeCompiler:

    def test_global_and_own_tenant_entries(self, known_store):
        context = compile_knowledge_context(known_store, "c-100", is_admin=False)
        keys = {t.key for t in context.terms}
        assert keys == {"ltl", "hot_lanes"}

    def test_other_tenant_knowledge_never_loaded(self, known_store):
        context = compile_knowledge_context(known_store, "c-100", is_admin=True)
        assert "vip" not in {t.key for t in context.terms}

    def test_inactive_entries_skipped(self, known_store):
        context = compile_knowledge_context(known_store, "c-100", is_admin=True)
        assert "draft_term" not in {t.key for t in context.terms}

    def test_customer_invisible_rules_hidden_from_customers(self, known_store):
        assert compile_knowledge_context(known_store, "c-100", is_admin=False).rules == []
        assert [r.key for r in compile_knowledge_context(known_store, "c-100", is_admin=True).rules] == [
            "margin_target"
        ]

    def test_metadata_parsed(self, known_store):
        context = compile_knowledge_context(known_store, "c-100", is_admin=False)
        hot = next(t for t in context.terms if t.key == "hot_lanes")
        assert hot.metadata == {"maps_to_field": "miles"}

    def test_unreadable_store_gives_empty_context(self, tmp_path):
        context = compile_knowledge_context(ShipmentStore(tmp_path / "none.duckdb"), "c-100", is_admin=False)
        assert context.is_empty()
        assert format_knowledge_for_prompt(context) == ""

    def test_prompt_lists_customer_terms_first(self, known_store):
        text = format_knowledge_for_prompt(compile_knowledge_context(known_store, "c-100", is_admin=False))
        assert text.index("hot lanes") < text.index("LTL")
        assert "(field: `miles`)" in text
        assert "BUSINESS RULES" not in text
