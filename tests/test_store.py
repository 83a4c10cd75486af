"""Tests for store/duckdb_store.py and store/guardrails.py.

Every data primitive must only ever see the caller's tenant rows, and every
built query must pass the read-only guardrails.
"""

from __future__ import annotations

import pandas as pd
import pytest

from freightlens.core.exceptions import ToolInputError
from freightlens.store.demo_data import CARRIERS
from freightlens.store.duckdb_store import ShipmentStore
from freightlens.store.guardrails import clamp_limit, filter_clause, validate_sql


C200_CARRIERS = {"Zeta Carriers", "Omega Trans"}


# ---------------------------------------------------------------------------
# Tenant isolation
# ---------------------------------------------------------------------------


class TestTenantIsolation:

    def test_aggregate_only_sees_own_rows(self, known_store, customer):
        result = known_store.aggregate(customer, "shipment", "carrier_name", "retail", "sum")
        assert result.success
        assert [(r["name"], r["value"], r["count"]) for r in result.rows] == [
            ("Beta Lines", 350.0, 2),
            ("Alpha Freight", 300.0, 2),
            ("Gamma Haul", 150.0, 1),
        ]
        assert result.extra["total_groups"] == 3

    def test_query_table_select_star(self, known_store, customer):
        result = known_store.query_table(customer, "shipment", limit=50)
        assert result.success
        assert result.row_count == 5
        assert {r["carrier_name"] for r in result.rows}.isdisjoint(C200_CARRIERS)

    def test_join_is_scoped_on_both_sides(self, known_store, customer):
        result = known_store.query_with_join(
            customer,
            "shipment",
            [{"table": "shipment_accessorial"}],
            aggregations=[{"field": "charge", "function": "sum", "alias": "total_charges"}],
        )
        assert result.success
        assert result.rows == [{"total_charges": 100.0}]

    def test_search_text_never_crosses_tenants(self, known_store, customer):
        result = known_store.search_text(customer, "Secret")
        assert result.success
        assert result.rows == []
        assert result.extra["total_matches"] == 0

    def test_search_text_finds_own_values(self, known_store, customer):
        result = known_store.search_text(customer, "machine", tables=["shipment"])
        assert result.success
        assert result.rows[0]["field"] == "description"
        assert result.rows[0]["match_count"] == 2

    def test_explore_field_counts(self, known_store, customer):
        result = known_store.explore_field(customer, "destination_state")
        assert result.success
        assert result.extra["total_count"] == 5
        assert result.extra["unique_count"] == 3
        assert result.rows[0]["count"] == 2

    def test_demo_data_tenants_disjoint(self, demo_db, customer):
        store = ShipmentStore(demo_db)
        result = store.aggregate(customer, "shipment", "carrier_name", "*", "count", limit=100)
        assert result.success
        names = {r["name"] for r in result.rows}
        assert names <= set(CARRIERS["c-100"])
        assert names.isdisjoint(CARRIERS["c-200"])


# ---------------------------------------------------------------------------
# Access checks inside the store
# ---------------------------------------------------------------------------


class TestRestrictedFields:

    def test_customer_cannot_aggregate_cost(self, known_store, customer):
        result = known_store.aggregate(customer, "shipment", "carrier_name", "cost", "sum")
        assert not result.success
        assert "restricted" in result.error
        assert "retail" in result.suggestion

    def test_customer_cannot_filter_on_margin(self, known_store, customer):
        result = known_store.query_table(
            customer, "shipment", filters=[{"field": "margin", "operator": "gt", "value": 0}]
        )
        assert not result.success

    def test_select_star_hides_restricted_columns(self, known_store, customer):
        row = known_store.query_table(customer, "shipment", limit=1).rows[0]
        assert "cost" not in row and "margin" not in row
        assert "retail" in row

    def test_admin_can_aggregate_cost(self, known_store, admin):
        result = known_store.aggregate(admin, "shipment", "carrier_name", "cost", "sum")
        assert result.success
        assert sum(r["value"] for r in result.rows) == 630.0

    def test_list_fields_hides_admin_only(self, known_store, customer, admin):
        customer_fields = {f["field_name"] for f in known_store.list_fields(customer, "shipment").rows}
        admin_fields = {f["field_name"] for f in known_store.list_fields(admin, "shipment").rows}
        assert "cost" not in customer_fields
        assert {"cost", "margin"} <= admin_fields
        assert "customer_id" not in admin_fields


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------


class TestQueryValidation:

    def test_unknown_table(self, known_store, customer):
        result = known_store.query_table(customer, "users")
        assert not result.success
        assert "Unknown table" in result.error

    def test_unknown_field(self, known_store, customer):
        result = known_store.aggregate(customer, "shipment", "lane_code", "retail", "sum")
        assert not result.success
        assert "Unknown field" in result.error

    def test_injection_shaped_identifier_rejected(self, known_store, customer):
        result = known_store.query_table(customer, "shipment", select=['retail"; DROP TABLE shipment; --'])
        assert not result.success

    def test_invalid_aggregation(self, known_store, customer):
        result = known_store.aggregate(customer, "shipment", "carrier_name", "retail", "median")
        assert not result.success
        assert "Invalid aggregation" in result.error

    def test_invalid_filter_operator(self, known_store, customer):
        result = known_store.query_table(
            customer, "shipment", filters=[{"field": "retail", "operator": "regex", "value": "x"}]
        )
        assert not result.success
        assert "Invalid filter operator" in result.error

    def test_no_join_path(self, known_store, customer):
        result = known_store.query_with_join(customer, "shipment_item", [{"table": "shipment_accessorial"}])
        assert not result.success
        assert "No join path" in result.error

    def test_list_joins_unknown_table_raises(self, known_store):
        with pytest.raises(ToolInputError):
            known_store.list_joins("nope")


class TestGuardrails:

    def test_rejects_writes(self):
        assert not validate_sql('DELETE FROM shipment WHERE "customer_id" = ?').is_valid

    def test_rejects_missing_tenant_predicate(self):
        result = validate_sql("SELECT * FROM shipment LIMIT 5")
        assert not result.is_valid
        assert "tenant" in result.error

    def test_rejects_piggybacked_statement(self):
        assert not validate_sql('SELECT 1 FROM shipment WHERE "customer_id" = ?; DROP TABLE shipment').is_valid

    def test_accepts_scoped_select(self):
        assert validate_sql('SELECT * FROM shipment t0 WHERE t0."customer_id" = ? LIMIT 5').is_valid

    @pytest.mark.parametrize("limit,expected", [(None, 100), (0, 1), (50, 50), (10_000, 1000), ("25", 25)])
    def test_clamp_limit(self, limit, expected):
        assert clamp_limit(limit) == expected

    def test_clamp_limit_rejects_text(self):
        with pytest.raises(ToolInputError):
            clamp_limit("lots")

    def test_filter_clause_in_list(self):
        params = []
        assert filter_clause("in", '"status"', ["A", "B"], params) == '"status" IN (?, ?)'
        assert params == ["A", "B"]

    def test_filter_clause_contains_wraps_value(self):
        params = []
        filter_clause("contains", '"description"', "parts", params)
        assert params == ["%parts%"]


class TestWritePrimitives:

    def test_insert_frame_and_fetch(self, empty_db):
        store = ShipmentStore(empty_db)
        frame = pd.DataFrame([{"customer_id": "c-9", "load_id": "Z-1", "retail": 10.0}])
        assert store.insert_frame("shipment", frame) == 1
        rows = store.fetch("SELECT load_id, retail FROM shipment WHERE customer_id = ?", ["c-9"])
        assert rows == [{"load_id": "Z-1", "retail": 10.0}]

    def test_initialize_is_idempotent(self, known_store):
        known_store.initialize()
        assert known_store.fetch("SELECT COUNT(*) AS n FROM shipment")[0]["n"] == 7
