"""Schema compiler: the data fields and tenant profile behind every prompt.

Fields are resolved through an ordered chain of providers. Each provider
returns a field list or ``None``; the first non-empty list wins and the
hardcoded default set is the terminal provider, so the agent always has a
schema to ground on.
"""

from __future__ import annotations

from typing import Any, Protocol

import pandas as pd

from freightlens.agent.contracts import DataProfile, SchemaContext, SchemaField
from freightlens.core.exceptions import DatabaseError
from freightlens.safety.access_policy import is_restricted_field
from freightlens.store.catalog import DATE_COLUMN, REPORT_TABLE
from freightlens.store.duckdb_store import ShipmentStore, normalize_type
from freightlens.utils.logging import get_logger


LOGGER = get_logger(__name__)

CANADIAN_PROVINCES = frozenset({
    "AB", "BC", "MB", "NB", "NL", "NS", "NT", "NU", "ON", "PE", "QC", "SK", "YT",
})


class SchemaProvider(Protocol):
    name: str

    def load(self, store: ShipmentStore) -> list[SchemaField] | None:
        ...


def _admin_only(column: str, flagged: Any) -> bool:
    return bool(flagged) or is_restricted_field(column)


class MetadataTableProvider:
    """Rich column metadata curated per view."""

    name = "metadata"

    def load(self, store: ShipmentStore) -> list[SchemaField] | None:
        rows = store.fetch(
            "SELECT * FROM schema_columns_metadata "
            "WHERE view_name = ? AND is_active ORDER BY ordinal_position",
            [REPORT_TABLE],
        )
        if not rows:
            return None
        return [
            SchemaField(
                name=row["column_name"],
                display_name=row.get("display_name"),
                data_type=row.get("data_type") or "text",
                is_groupable=row.get("is_groupable") is not False,
                is_aggregatable=bool(row.get("is_aggregatable")),
                is_searchable=bool(row.get("is_searchable")),
                business_context=row.get("business_context"),
                ai_usage_hint=row.get("ai_usage_hint"),
                admin_only=_admin_only(row["column_name"], row.get("admin_only")),
            )
            for row in rows
        ]


class LegacyColumnsProvider:
    """Legacy column table joined with the side business-context table."""

    name = "legacy_columns"

    def load(self, store: ShipmentStore) -> list[SchemaField] | None:
        columns = store.fetch(
            "SELECT * FROM schema_columns WHERE view_name = ? ORDER BY ordinal_position",
            [REPORT_TABLE],
        )
        if not columns:
            return None

        try:
            context_rows = store.fetch("SELECT * FROM field_business_context")
        except DatabaseError as e:
            LOGGER.warning("Field business context unavailable: %s", e)
            context_rows = []
        context_map = {row["field_name"]: row for row in context_rows}

        fields = []
        for col in columns:
            extra = context_map.get(col["column_name"], {})
            fields.append(
                SchemaField(
                    name=col["column_name"],
                    data_type=col.get("data_type") or "text",
                    is_groupable=col.get("is_groupable") is not False,
                    is_aggregatable=bool(col.get("is_aggregatable")),
                    business_context=extra.get("business_description"),
                    admin_only=_admin_only(col["column_name"], extra.get("admin_only")),
                )
            )
        return fields


class IntrospectionProvider:
    """Live column list straight from the database catalog."""

    name = "introspection"

    def load(self, store: ShipmentStore) -> list[SchemaField] | None:
        rows = store.fetch(
            "SELECT column_name, data_type FROM information_schema.columns "
            "WHERE table_name = ? ORDER BY ordinal_position",
            [REPORT_TABLE],
        )
        fields = []
        for row in rows:
            if row["column_name"] == "customer_id":
                continue
            kind = normalize_type(row["data_type"])
            fields.append(
                SchemaField(
                    name=row["column_name"],
                    data_type=kind,
                    is_groupable=kind != "number",
                    is_aggregatable=kind == "number",
                    is_searchable=kind == "text",
                    admin_only=is_restricted_field(row["column_name"]),
                )
            )
        return fields or None


DEFAULT_FIELDS: tuple[SchemaField, ...] = (
    SchemaField(name="load_id", data_type="text", is_groupable=False,
                business_context="Unique shipment identifier"),
    SchemaField(name="pickup_date", data_type="date",
                business_context="Date the shipment was picked up"),
    SchemaField(name="carrier_name", data_type="text", is_searchable=True,
                business_context="Carrier that moved the shipment"),
    SchemaField(name="origin_state", data_type="text",
                business_context="Origin state or province"),
    SchemaField(name="destination_state", data_type="text",
                business_context="Destination state or province"),
    SchemaField(name="retail", data_type="number", is_groupable=False, is_aggregatable=True,
                business_context="What the customer pays for the shipment (their freight spend)"),
    SchemaField(name="total_weight", data_type="number", is_groupable=False, is_aggregatable=True,
                business_context="Shipment weight in pounds"),
    SchemaField(name="mode_name", data_type="text",
                business_context="Transportation mode (LTL, FTL, Parcel)"),
    SchemaField(name="status", data_type="text",
                business_context="Shipment status"),
)


class DefaultFieldsProvider:
    """Terminal provider: a fixed, always-available field set."""

    name = "default"

    def load(self, store: ShipmentStore) -> list[SchemaField] | None:
        return list(DEFAULT_FIELDS)


DEFAULT_PROVIDERS: tuple[SchemaProvider, ...] = (
    MetadataTableProvider(),
    LegacyColumnsProvider(),
    IntrospectionProvider(),
    DefaultFieldsProvider(),
)


def resolve_fields(
    store: ShipmentStore,
    providers: tuple[SchemaProvider, ...] = DEFAULT_PROVIDERS,
) -> tuple[list[SchemaField], str]:
    """Walk the provider chain and return ``(fields, provider_name)``."""
    for provider in providers:
        try:
            fields = provider.load(store)
        except DatabaseError as e:
            LOGGER.warning("Schema provider %s failed: %s", provider.name, e)
            continue
        if fields:
            LOGGER.info("Schema resolved from %s tier (%d fields)", provider.name, len(fields))
            return fields, provider.name
        LOGGER.info("Schema provider %s returned no fields", provider.name)
    LOGGER.warning("Every schema provider came back empty, using default fields")
    return list(DEFAULT_FIELDS), DefaultFieldsProvider.name


def compute_data_profile(store: ShipmentStore, customer_id: str) -> DataProfile:
    """Tenant volume, lanes, carriers and date span.

    Returns an empty profile when the shipment table cannot be read.
    """
    try:
        frame = store.fetch_frame(
            f'SELECT "{DATE_COLUMN}" AS pickup_date, destination_state, destination_country, carrier_name '
            f'FROM "{REPORT_TABLE}" WHERE "customer_id" = ?',
            [customer_id],
        )
    except DatabaseError as e:
        LOGGER.warning("Data profile unavailable for customer %s: %s", customer_id, e)
        return DataProfile()

    if frame.empty:
        return DataProfile()

    dates = pd.to_datetime(frame["pickup_date"], errors="coerce").dropna()
    first = dates.min() if not dates.empty else None
    last = dates.max() if not dates.empty else None
    days = (last - first).days + 1 if first is not None else 0
    months = 0
    if first is not None:
        months = (last.year - first.year) * 12 + (last.month - first.month) + 1

    states = frame["destination_state"].dropna()
    carriers = frame["carrier_name"].dropna()
    countries = frame["destination_country"].dropna().str.upper()

    return DataProfile(
        total_shipments=int(len(frame)),
        state_count=int(states.nunique()),
        carrier_count=int(carriers.nunique()),
        months_of_data=int(months),
        first_date=first.date().isoformat() if first is not None else None,
        last_date=last.date().isoformat() if last is not None else None,
        top_states=states.value_counts().head(5).index.tolist(),
        top_carriers=carriers.value_counts().head(5).index.tolist(),
        avg_shipments_per_day=round(len(frame) / days, 2) if days else 0.0,
        has_canada_data=bool(
            countries.isin(["CA", "CAN", "CANADA"]).any()
            or states.str.upper().isin(CANADIAN_PROVINCES).any()
        ),
    )


def compile_schema_context(
    store: ShipmentStore,
    customer_id: str,
    providers: tuple[SchemaProvider, ...] = DEFAULT_PROVIDERS,
) -> SchemaContext:
    """Build the immutable schema bundle for one agent invocation."""
    fields, source = resolve_fields(store, providers)
    return SchemaContext(
        fields=fields,
        data_profile=compute_data_profile(store, customer_id),
        source=source,
    )


def visible_fields(context: SchemaContext, is_admin: bool) -> list[SchemaField]:
    return [f for f in context.fields if is_admin or not f.admin_only]


def format_schema_for_prompt(context: SchemaContext, is_admin: bool) -> str:
    """Render the field table, tenant profile and usage rules as markdown."""
    lines = [
        "## AVAILABLE DATA FIELDS",
        "",
        "You can ONLY use these fields in reports. Do NOT reference any field not listed here.",
        "",
        "| Field | Type | Group By | Aggregate | Description |",
        "|-------|------|----------|-----------|-------------|",
    ]
    for field in visible_fields(context, is_admin):
        groupable = "yes" if field.is_groupable else ""
        aggregatable = "SUM/AVG" if field.is_aggregatable else "COUNT"
        description = field.business_context or ""
        if field.ai_usage_hint:
            description = f"{description} ({field.ai_usage_hint})" if description else field.ai_usage_hint
        if field.admin_only:
            description += " (ADMIN)"
        lines.append(f"| {field.name} | {field.data_type} | {groupable} | {aggregatable} | {description} |")

    profile = context.data_profile or DataProfile()
    lines += ["", "## CUSTOMER DATA PROFILE", ""]
    lines.append(f"- **Total Shipments:** {profile.total_shipments:,}")
    ships_to = f"- **Ships to:** {profile.state_count} states"
    if profile.has_canada_data:
        ships_to += " (including Canadian provinces)"
    lines.append(ships_to)
    lines.append(f"- **Uses:** {profile.carrier_count} carriers")
    lines.append(f"- **Data History:** {profile.months_of_data} months")
    if profile.first_date and profile.last_date:
        lines.append(f"- **Date Span:** {profile.first_date} to {profile.last_date}")
    lines.append(f"- **Volume:** ~{profile.avg_shipments_per_day:.1f} shipments/day")
    if profile.top_states:
        lines.append(f"- **Top Destinations:** {', '.join(profile.top_states[:5])}")
    if profile.top_carriers:
        lines.append(f"- **Top Carriers:** {', '.join(profile.top_carriers[:3])}")

    lines += [
        "",
        "### CRITICAL RULES",
        "1. **Only use fields listed above** - never invent a field not listed; anything else will cause errors",
        "2. **Respect Group By column** - only fields marked yes can be grouped",
        "3. **Respect Aggregate column** - numeric fields support SUM/AVG, others only COUNT",
    ]
    if not is_admin:
        lines += [
            "4. **Financial data note**: Use `retail` for customer spend/cost analysis.",
            "   Internal carrier cost and margin fields are not available.",
        ]

    lines += [
        "",
        "### COMMON MAPPINGS",
        "When customers use these terms, map them to the correct fields:",
        '- "cost", "spend", "freight cost", "shipping cost" -> use `retail` field',
        '- "expensive", "most costly" -> sort by `retail` descending',
        '- "cost per shipment" -> avg(retail)',
        '- "total spend" -> sum(retail)',
        '- "cheapest carriers" -> carrier_name grouped by avg(retail) ascending',
    ]
    return "\n".join(lines) + "\n"
