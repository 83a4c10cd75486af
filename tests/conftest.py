"""Shared test fixtures for the freightlens test suite.

Provides database fixtures, access contexts and a scripted model:

* ``demo_db``        -- seeded demo database (two tenants, metadata, knowledge)
* ``known_data_db``  -- small, precisely-known shipments for exact assertions
* ``known_store``    -- ShipmentStore over ``known_data_db``
* ``customer`` / ``admin`` -- AccessContext for tenant c-100
* ``scripted_llm``   -- factory for a fake ``complete`` replaying LLMResponses
* ``known_data_client`` -- FastAPI TestClient backed by ``known_data_db``

Known data is dated relative to today so period presets resolve the same
way in every run.
"""

from __future__ import annotations

import tempfile
from datetime import date, timedelta
from pathlib import Path

import duckdb
import pytest
from fastapi.testclient import TestClient

from freightlens.agent.contracts import AccessContext
from freightlens.api.server import create_app
from freightlens.llm.router import LLMResponse
from freightlens.orchestrator.runtime import OrchestratorConfig
from freightlens.store.catalog import initialize_schema
from freightlens.store.demo_data import COLUMN_METADATA, seed_demo_data
from freightlens.store.duckdb_store import ShipmentStore

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

TODAY = date.today()

# (load_id, customer_id, days_ago, carrier, dest_state, mode, retail, cost, weight, miles, description)
KNOWN_SHIPMENTS = [
    ("A-1", "c-100", 5, "Alpha Freight", "TX", "LTL", 100.0, 80.0, 1000.0, 200.0, "Machine parts"),
    ("A-2", "c-100", 10, "Alpha Freight", "CA", "LTL", 200.0, 150.0, 2000.0, 400.0, "Packaged food"),
    ("A-3", "c-100", 20, "Beta Lines", "TX", "FTL", 300.0, 240.0, 3000.0, 600.0, "Machine parts"),
    ("A-4", "c-100", 45, "Beta Lines", "CA", "FTL", 50.0, 40.0, 500.0, 100.0, "Furniture"),
    ("A-5", "c-100", 80, "Gamma Haul", "IL", "LTL", 150.0, 120.0, 1500.0, 300.0, "Furniture"),
    ("B-1", "c-200", 3, "Zeta Carriers", "TX", "FTL", 9999.0, 8000.0, 9000.0, 900.0, "Secret widgets"),
    ("B-2", "c-200", 12, "Omega Trans", "NY", "LTL", 4444.0, 4000.0, 4000.0, 400.0, "Secret widgets"),
]

# c-100 totals by carrier: Beta 350, Alpha 300, Gamma 150
C100_RETAIL_TOTAL = 800.0
C100_LAST30_RETAIL = 600.0


def _make_db_path() -> Path:
    """Create a temporary file for DuckDB and remove it so DuckDB can own it."""
    with tempfile.NamedTemporaryFile(suffix=".duckdb", delete=False) as f:
        db_path = Path(f.name)
    db_path.unlink()  # DuckDB needs to create the file itself
    return db_path


def _insert_known_data(conn: duckdb.DuckDBPyConnection) -> None:
    for load_id, customer_id, days_ago, carrier, state, mode, retail, cost, weight, miles, desc in KNOWN_SHIPMENTS:
        pickup = TODAY - timedelta(days=days_ago)
        conn.execute(
            "INSERT INTO shipment (load_id, customer_id, reference_number, pickup_date, delivery_date, "
            "carrier_name, mode_name, origin_state, origin_country, destination_state, destination_country, "
            "status, retail, cost, margin, total_weight, miles, description) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, 'OH', 'US', ?, 'US', 'Delivered', ?, ?, ?, ?, ?, ?)",
            [
                load_id, customer_id, f"PO-{load_id}", pickup, pickup + timedelta(days=2),
                carrier, mode, state, retail, cost, retail - cost, weight, miles, desc,
            ],
        )

    conn.execute(
        "INSERT INTO shipment_accessorial VALUES ('X-1', 'A-1', 'c-100', 'liftgate', 25.0), "
        "('X-2', 'A-3', 'c-100', 'detention', 75.0), ('X-3', 'B-1', 'c-200', 'liftgate', 500.0)"
    )

    for position, (col, display, kind, groupable, aggregatable, searchable, admin_only, context) in enumerate(
        COLUMN_METADATA, start=1
    ):
        conn.execute(
            "INSERT INTO schema_columns_metadata (view_name, column_name, display_name, data_type, "
            "is_groupable, is_aggregatable, is_searchable, admin_only, business_context, is_active, "
            "ordinal_position) VALUES ('shipment', ?, ?, ?, ?, ?, ?, ?, ?, TRUE, ?)",
            [col, display, kind, groupable, aggregatable, searchable, admin_only, context, position],
        )

    conn.execute(
        "INSERT INTO ai_knowledge (id, knowledge_type, key, label, definition, scope, customer_id, "
        "source, confidence, is_active, is_visible_to_customers, metadata) VALUES "
        "('k1', 'term', 'ltl', 'LTL', 'Less-than-truckload', 'global', '', 'seed', 1.0, TRUE, TRUE, '{}'), "
        "('k2', 'rule', 'margin_target', 'Margin Target', 'Target margin is 15%', 'global', '', 'seed', 1.0, "
        "TRUE, FALSE, '{}'), "
        "('k3', 'term', 'hot_lanes', 'hot lanes', 'Lanes over 500 miles', 'customer', 'c-100', 'learned', "
        "0.9, TRUE, TRUE, '{\"maps_to_field\": \"miles\"}'), "
        "('k4', 'term', 'vip', 'VIP', 'Zeta shipments', 'customer', 'c-200', 'learned', 0.9, TRUE, TRUE, '{}'), "
        "('k5', 'term', 'draft_term', 'draft', 'Pending meaning', 'customer', 'c-100', 'inferred', 0.5, "
        "FALSE, TRUE, '{}')"
    )


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def demo_db():
    """Seeded demo database: 60 shipments per tenant plus metadata and knowledge."""
    db_path = _make_db_path()
    seed_demo_data(ShipmentStore(db_path), rows_per_customer=60, seed=11, today=TODAY)
    yield db_path
    db_path.unlink(missing_ok=True)


@pytest.fixture()
def known_data_db():
    """Small database with hand-picked shipments for deterministic assertions.

    Tenant c-100 has five shipments across three carriers; tenant c-200 has
    two shipments whose values would stand out if they ever leaked.
    """
    db_path = _make_db_path()
    conn = duckdb.connect(str(db_path))
    initialize_schema(conn)
    _insert_known_data(conn)
    conn.close()

    yield db_path

    db_path.unlink(missing_ok=True)


@pytest.fixture()
def empty_db():
    """Schema only, no rows."""
    db_path = _make_db_path()
    ShipmentStore(db_path).initialize()
    yield db_path
    db_path.unlink(missing_ok=True)


@pytest.fixture()
def known_store(known_data_db):
    return ShipmentStore(known_data_db)


# ---------------------------------------------------------------------------
# Access contexts
# ---------------------------------------------------------------------------

@pytest.fixture()
def customer():
    return AccessContext(customer_id="c-100", is_admin=False)


@pytest.fixture()
def admin():
    return AccessContext(customer_id="c-100", is_admin=True)


# ---------------------------------------------------------------------------
# Scripted model
# ---------------------------------------------------------------------------

class ScriptedLLM:
    """Async stand-in for ``complete`` that replays canned responses."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    async def __call__(self, system_prompt, messages, **kwargs):
        self.calls.append({"system_prompt": system_prompt, "messages": list(messages), **kwargs})
        if not self.responses:
            return LLMResponse(text="Done.")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture()
def scripted_llm():
    return ScriptedLLM


@pytest.fixture()
def fast_config():
    return OrchestratorConfig(max_tool_rounds=6, tool_timeout=5.0, total_timeout=30.0, llm_provider="anthropic")


# ---------------------------------------------------------------------------
# TestClient fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def known_data_client(known_data_db, fast_config):
    """FastAPI TestClient backed by the small, precisely-known database."""
    app = create_app(db_path=known_data_db, config=fast_config)
    return TestClient(app)
