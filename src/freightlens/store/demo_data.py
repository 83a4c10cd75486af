"""Deterministic demo dataset for local runs and tests.

Two tenants share the database. Each gets its own carriers mix, lanes and
charges so cross-tenant leaks are easy to spot.
"""

import json
import random
import uuid
from datetime import date, timedelta

import pandas as pd

from freightlens.store.duckdb_store import ShipmentStore
from freightlens.utils.logging import get_logger


LOGGER = get_logger(__name__)

DEMO_CUSTOMERS = ("c-100", "c-200")

CARRIERS = {
    "c-100": ["Swift Logistics", "Old Dominion", "XPO", "Estes", "Saia"],
    "c-200": ["R+L Carriers", "ABF Freight", "Southeastern", "Ward Trucking"],
}
STATES = ["TX", "CA", "IL", "GA", "OH", "PA", "NY", "FL", "WA", "ON"]
MODES = ["LTL", "FTL", "Partial"]
STATUSES = ["Delivered", "In Transit", "Booked"]

# (column, display_name, data_type, groupable, aggregatable, searchable, admin_only, business_context)
COLUMN_METADATA = [
    ("load_id", "Load ID", "text", False, False, True, False, "Unique shipment identifier"),
    ("reference_number", "Reference", "text", False, False, True, False, "Customer PO or BOL number"),
    ("pickup_date", "Pickup Date", "date", True, False, False, False, "Date freight was picked up"),
    ("delivery_date", "Delivery Date", "date", True, False, False, False, "Date freight was delivered"),
    ("carrier_name", "Carrier", "text", True, False, True, False, "Carrier that moved the freight"),
    ("mode_name", "Mode", "text", True, False, True, False, "LTL, FTL or Partial"),
    ("origin_state", "Origin State", "text", True, False, True, False, "Pickup state or province"),
    ("destination_state", "Destination State", "text", True, False, True, False, "Delivery state or province"),
    ("destination_country", "Destination Country", "text", True, False, True, False, "Delivery country code"),
    ("status", "Status", "text", True, False, True, False, "Shipment lifecycle status"),
    ("retail", "Freight Spend", "number", False, True, False, False, "What the customer pays for the shipment"),
    ("cost", "Carrier Cost", "number", False, True, False, True, "What the broker pays the carrier"),
    ("margin", "Margin", "number", False, True, False, True, "Broker profit on the shipment"),
    ("total_weight", "Weight (lbs)", "number", False, True, False, False, "Total shipment weight"),
    ("miles", "Miles", "number", False, True, False, False, "Lane distance in miles"),
]

GLOBAL_KNOWLEDGE = [
    ("term", "ltl", "LTL", "Less-than-truckload: shipments sharing trailer space", True, {}),
    ("term", "ftl", "FTL", "Full truckload: one shipment uses the whole trailer", True, {}),
    ("term", "lane", "Lane", "An origin state to destination state pair", True, {}),
    ("calculation", "cost_per_pound", "Cost per Pound", "retail / total_weight", True, {"format": "currency"}),
    ("rule", "broker_margin_target", "Margin Target", "Target broker margin is 15%", False, {}),
]


def _shipments(customer_id: str, rows: int, rng: random.Random, today: date) -> pd.DataFrame:
    records = []
    for i in range(rows):
        pickup = today - timedelta(days=rng.randint(0, 400))
        origin, destination = rng.sample(STATES, 2)
        weight = round(rng.uniform(200, 20000), 1)
        miles = round(rng.uniform(80, 2400), 1)
        retail = round(150 + miles * rng.uniform(1.2, 2.8) + weight * 0.02, 2)
        cost = round(retail * rng.uniform(0.78, 0.9), 2)
        records.append({
            "load_id": f"{customer_id.upper()}-{i:05d}",
            "customer_id": customer_id,
            "reference_number": f"PO-{rng.randint(10000, 99999)}",
            "pickup_date": pickup,
            "delivery_date": pickup + timedelta(days=rng.randint(1, 6)),
            "carrier_name": rng.choice(CARRIERS.get(customer_id, CARRIERS[DEMO_CUSTOMERS[0]])),
            "mode_name": rng.choice(MODES),
            "origin_state": origin,
            "origin_country": "CA" if origin == "ON" else "US",
            "destination_state": destination,
            "destination_country": "CA" if destination == "ON" else "US",
            "status": rng.choice(STATUSES),
            "retail": retail,
            "cost": cost,
            "margin": round(retail - cost, 2),
            "total_weight": weight,
            "miles": miles,
            "description": rng.choice(["Pallets of paper goods", "Machine parts", "Packaged food", "Furniture"]),
        })
    frame = pd.DataFrame.from_records(records)
    frame["pickup_date"] = pd.to_datetime(frame["pickup_date"]).dt.date
    frame["delivery_date"] = pd.to_datetime(frame["delivery_date"]).dt.date
    return frame


def seed_demo_data(
    store: ShipmentStore,
    customers: tuple[str, ...] = DEMO_CUSTOMERS,
    rows_per_customer: int = 250,
    seed: int = 7,
    today: date | None = None,
) -> dict[str, int]:
    """Create the schema and load demo shipments, metadata and knowledge.

    Returns:
        Row counts loaded per table
    """
    rng = random.Random(seed)
    today = today or date.today()
    store.initialize()

    counts = {"shipment": 0}
    for customer_id in customers:
        counts["shipment"] += store.insert_frame("shipment", _shipments(customer_id, rows_per_customer, rng, today))

    metadata = pd.DataFrame(
        [
            {
                "view_name": "shipment",
                "column_name": col,
                "display_name": display,
                "data_type": kind,
                "is_groupable": groupable,
                "is_aggregatable": aggregatable,
                "is_searchable": searchable,
                "admin_only": admin_only,
                "business_context": context,
                "is_active": True,
                "ordinal_position": position,
            }
            for position, (col, display, kind, groupable, aggregatable, searchable, admin_only, context)
            in enumerate(COLUMN_METADATA, start=1)
        ]
    )
    counts["schema_columns_metadata"] = store.insert_frame("schema_columns_metadata", metadata)

    for knowledge_type, key, label, definition, visible, meta in GLOBAL_KNOWLEDGE:
        store.execute_write(
            "INSERT INTO ai_knowledge (id, knowledge_type, key, label, definition, scope, customer_id, "
            "source, confidence, is_active, is_visible_to_customers, metadata) "
            "VALUES (?, ?, ?, ?, ?, 'global', '', 'seed', 1.0, TRUE, ?, ?) "
            "ON CONFLICT (knowledge_type, key, scope, customer_id) DO NOTHING",
            [str(uuid.uuid4()), knowledge_type, key, label, definition, visible, json.dumps(meta)],
        )
    counts["ai_knowledge"] = len(GLOBAL_KNOWLEDGE)

    LOGGER.info("Seeded demo data: %s", counts)
    return counts
