"""Static catalog and DDL for the freightlens DuckDB store.

The catalog describes which tables the agent may query, how they join, and
creates the metadata, knowledge and audit tables the compilers and learning
layer read and write.
"""

import duckdb


# Queryable tables. Every one of them carries a customer_id column.
TABLE_CATALOG: dict[str, dict[str, str]] = {
    "shipment": {
        "description": "Main shipment records: dates, lanes, carrier, mode, status, charges. USE THIS for most queries",
        "category": "core",
    },
    "shipment_item": {
        "description": "Line items with weight, freight class, quantity and description",
        "category": "core",
    },
    "shipment_accessorial": {
        "description": "Extra charges per shipment (liftgate, residential, detention)",
        "category": "detail",
    },
}

JOIN_CATALOG: list[dict[str, str]] = [
    {
        "from_table": "shipment",
        "to_table": "shipment_item",
        "join_type": "LEFT",
        "from_column": "load_id",
        "to_column": "load_id",
        "description": "Line items for each shipment",
    },
    {
        "from_table": "shipment",
        "to_table": "shipment_accessorial",
        "join_type": "LEFT",
        "from_column": "load_id",
        "to_column": "load_id",
        "description": "Accessorial charges for each shipment",
    },
]

# The table the schema compiler, previews and analysis tools work against
REPORT_TABLE = "shipment"
DATE_COLUMN = "pickup_date"


DDL_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS shipment (
        load_id VARCHAR,
        customer_id VARCHAR NOT NULL,
        reference_number VARCHAR,
        pickup_date DATE,
        delivery_date DATE,
        carrier_name VARCHAR,
        mode_name VARCHAR,
        equipment_name VARCHAR,
        origin_city VARCHAR,
        origin_state VARCHAR,
        origin_country VARCHAR,
        destination_city VARCHAR,
        destination_state VARCHAR,
        destination_country VARCHAR,
        status VARCHAR,
        retail DOUBLE,
        cost DOUBLE,
        margin DOUBLE,
        carrier_cost DOUBLE,
        total_weight DOUBLE,
        miles DOUBLE,
        description VARCHAR
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS shipment_item (
        item_id VARCHAR,
        load_id VARCHAR,
        customer_id VARCHAR NOT NULL,
        description VARCHAR,
        freight_class VARCHAR,
        quantity INTEGER,
        weight DOUBLE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS shipment_accessorial (
        accessorial_id VARCHAR,
        load_id VARCHAR,
        customer_id VARCHAR NOT NULL,
        accessorial_type VARCHAR,
        charge DOUBLE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS schema_columns_metadata (
        view_name VARCHAR,
        column_name VARCHAR,
        display_name VARCHAR,
        data_type VARCHAR,
        is_groupable BOOLEAN DEFAULT TRUE,
        is_aggregatable BOOLEAN DEFAULT FALSE,
        is_searchable BOOLEAN DEFAULT FALSE,
        admin_only BOOLEAN DEFAULT FALSE,
        business_context VARCHAR,
        ai_usage_hint VARCHAR,
        is_active BOOLEAN DEFAULT TRUE,
        ordinal_position INTEGER
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS schema_columns (
        view_name VARCHAR,
        column_name VARCHAR,
        data_type VARCHAR,
        is_groupable BOOLEAN,
        is_aggregatable BOOLEAN,
        ordinal_position INTEGER
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS field_business_context (
        field_name VARCHAR,
        business_description VARCHAR,
        admin_only BOOLEAN DEFAULT FALSE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ai_knowledge (
        id VARCHAR PRIMARY KEY,
        knowledge_type VARCHAR NOT NULL,
        key VARCHAR NOT NULL,
        label VARCHAR,
        definition VARCHAR,
        scope VARCHAR NOT NULL DEFAULT 'global',
        customer_id VARCHAR NOT NULL DEFAULT '',
        source VARCHAR,
        confidence DOUBLE DEFAULT 1.0,
        needs_review BOOLEAN DEFAULT FALSE,
        is_active BOOLEAN DEFAULT TRUE,
        is_visible_to_customers BOOLEAN DEFAULT TRUE,
        metadata VARCHAR,
        updated_at TIMESTAMP DEFAULT current_timestamp,
        UNIQUE (knowledge_type, key, scope, customer_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ai_knowledge_documents (
        id VARCHAR PRIMARY KEY,
        title VARCHAR NOT NULL,
        content VARCHAR,
        scope VARCHAR NOT NULL DEFAULT 'global',
        customer_id VARCHAR NOT NULL DEFAULT '',
        priority INTEGER DEFAULT 0,
        is_active BOOLEAN DEFAULT TRUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ai_learning_feedback (
        id VARCHAR PRIMARY KEY,
        customer_id VARCHAR NOT NULL,
        trigger_type VARCHAR,
        user_message VARCHAR,
        context VARCHAR,
        status VARCHAR DEFAULT 'pending_review',
        created_at TIMESTAMP DEFAULT current_timestamp
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ai_customer_preferences (
        customer_id VARCHAR NOT NULL,
        preference_key VARCHAR NOT NULL,
        preference_value VARCHAR NOT NULL,
        weight DOUBLE DEFAULT 0.0,
        updated_at TIMESTAMP DEFAULT current_timestamp,
        UNIQUE (customer_id, preference_key, preference_value)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ai_report_audit (
        id VARCHAR PRIMARY KEY,
        customer_id VARCHAR NOT NULL,
        customer_name VARCHAR,
        user_prompt VARCHAR,
        ai_response VARCHAR,
        generated_report VARCHAR,
        status VARCHAR,
        success BOOLEAN,
        violations VARCHAR,
        context_used VARCHAR,
        created_at TIMESTAMP DEFAULT current_timestamp
    )
    """,
)


def initialize_schema(conn: duckdb.DuckDBPyConnection) -> None:
    """Create every table the store relies on (idempotent)."""
    for statement in DDL_STATEMENTS:
        conn.execute(statement)


def joins_for_table(table_name: str) -> list[dict[str, str]]:
    """Return join edges touching ``table_name``."""
    return [
        edge for edge in JOIN_CATALOG
        if edge["from_table"] == table_name or edge["to_table"] == table_name
    ]
