"""Tenant-scoped DuckDB store for shipment analytics.

This module wraps DuckDB with the query primitives the tool executor and the
compilers need. Every data query is:
- Built from validated identifiers (never free-form SQL from the model)
- Parameterized, with the caller's customer_id bound for the base table and
  every joined table
- Checked against the restricted-field policy for non-admin callers
- Capped with a LIMIT and timed
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import duckdb
import pandas as pd

from freightlens.agent.contracts import AccessContext
from freightlens.core.exceptions import AccessDeniedError, DatabaseError, ToolInputError
from freightlens.safety.access_policy import is_restricted_field
from freightlens.store.catalog import (
    REPORT_TABLE,
    TABLE_CATALOG,
    initialize_schema,
    joins_for_table,
)
from freightlens.store.guardrails import (
    GuardrailConfig,
    MATCH_TYPES,
    TENANT_COLUMN,
    aggregation_expression,
    clamp_limit,
    filter_clause,
    quote_identifier,
    validate_identifier,
    validate_sql,
)
from freightlens.utils.logging import get_logger


LOGGER = get_logger(__name__)

_NUMERIC_TYPES = ("DOUBLE", "FLOAT", "REAL", "DECIMAL", "INTEGER", "BIGINT", "SMALLINT", "TINYINT", "HUGEINT", "NUMERIC")
_DATE_TYPES = ("DATE", "TIMESTAMP", "TIME")


def normalize_type(duckdb_type: str) -> str:
    """Map a DuckDB column type to the schema vocabulary."""
    upper = (duckdb_type or "").upper()
    if upper.startswith(_NUMERIC_TYPES):
        return "number"
    if upper.startswith(_DATE_TYPES):
        return "date"
    if upper.startswith("BOOL"):
        return "boolean"
    return "text"


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class QueryResult:
    """Result of a tenant-scoped store query."""

    success: bool
    rows: list[dict[str, Any]] = field(default_factory=list)
    columns: list[str] = field(default_factory=list)
    row_count: int = 0
    truncated: bool = False
    execution_time_ms: float = 0.0
    sql_executed: str = ""
    parameters: list[Any] = field(default_factory=list)
    error: str | None = None
    suggestion: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)
    executed_at: str = ""


class ShipmentStore:
    """DuckDB-backed, multi-tenant query executor.

    Usage:
        store = ShipmentStore(db_path)
        ctx = AccessContext(customer_id="c-100", is_admin=False)
        result = store.aggregate(ctx, "shipment", "carrier_name", "retail", "sum")
        if result.success:
            for row in result.rows:
                print(row["name"], row["value"])
    """

    def __init__(
        self,
        db_path: Path | str,
        config: GuardrailConfig | None = None,
        read_only: bool = False,
    ):
        """Initialize the store.

        Args:
            db_path: Path to DuckDB database
            config: Optional guardrail configuration
            read_only: Whether to open connections in read-only mode
        """
        self.db_path = Path(db_path)
        self.config = config or GuardrailConfig()
        self.read_only = read_only

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        """Create a fresh connection per operation.

        A shared DuckDB connection is not safe across concurrent requests, so
        every primitive opens and closes its own.
        """
        return duckdb.connect(str(self.db_path), read_only=self.read_only)

    def initialize(self) -> None:
        """Create all tables the application relies on."""
        conn = self._get_connection()
        try:
            initialize_schema(conn)
        except duckdb.Error as e:
            raise DatabaseError(f"Failed to initialize schema: {e}", e) from e
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Generic access (compilers, learning persistence, audit)
    # ------------------------------------------------------------------

    def fetch(self, sql: str, parameters: list[Any] | None = None) -> list[dict[str, Any]]:
        """Run a read query and return rows as dicts.

        Raises:
            DatabaseError: On any DuckDB failure
        """
        conn = self._get_connection()
        try:
            result = conn.execute(sql, parameters or [])
            columns = [desc[0] for desc in result.description] if result.description else []
            return [dict(zip(columns, row)) for row in result.fetchall()]
        except duckdb.Error as e:
            raise DatabaseError(f"Database error: {e}", e) from e
        finally:
            conn.close()

    def fetch_frame(self, sql: str, parameters: list[Any] | None = None) -> pd.DataFrame:
        """Run a read query and return a pandas DataFrame."""
        conn = self._get_connection()
        try:
            return conn.execute(sql, parameters or []).df()
        except duckdb.Error as e:
            raise DatabaseError(f"Database error: {e}", e) from e
        finally:
            conn.close()

    def insert_frame(self, table_name: str, frame: pd.DataFrame) -> int:
        """Append a DataFrame to an existing table, matching columns by name."""
        columns = ", ".join(quote_identifier(c) for c in frame.columns)
        conn = self._get_connection()
        try:
            conn.register("incoming_frame", frame)
            conn.execute(
                f"INSERT INTO {quote_identifier(table_name)} ({columns}) SELECT {columns} FROM incoming_frame"
            )
            return len(frame)
        except duckdb.Error as e:
            raise DatabaseError(f"Failed to load {table_name}: {e}", e) from e
        finally:
            conn.close()

    def execute_write(self, sql: str, parameters: list[Any] | None = None) -> None:
        """Run a write statement.

        Raises:
            DatabaseError: On any DuckDB failure
        """
        conn = self._get_connection()
        try:
            conn.execute(sql, parameters or [])
        except duckdb.Error as e:
            raise DatabaseError(f"Database error: {e}", e) from e
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Tenant-scoped execution
    # ------------------------------------------------------------------

    def run_query(self, sql: str, parameters: list[Any]) -> QueryResult:
        """Execute a built, tenant-scoped SELECT with guardrails."""
        executed_at = _utc_now()
        validation = validate_sql(sql, self.config)
        if not validation.is_valid:
            LOGGER.warning("Rejected query: %s", validation.error)
            return QueryResult(
                success=False,
                error=validation.error,
                sql_executed=sql,
                parameters=list(parameters),
                executed_at=executed_at,
            )

        start_time = time.perf_counter()
        conn: duckdb.DuckDBPyConnection | None = None
        try:
            conn = self._get_connection()
            result = conn.execute(sql, parameters)
            raw_rows = result.fetchall()
            columns = [desc[0] for desc in result.description] if result.description else []
            execution_time_ms = (time.perf_counter() - start_time) * 1000

            truncated = False
            if len(raw_rows) > self.config.max_result_rows:
                raw_rows = raw_rows[: self.config.max_result_rows]
                truncated = True

            rows = [
                {col: _json_safe(val) for col, val in zip(columns, row)}
                for row in raw_rows
            ]
            return QueryResult(
                success=True,
                rows=rows,
                columns=columns,
                row_count=len(rows),
                truncated=truncated,
                execution_time_ms=round(execution_time_ms, 2),
                sql_executed=sql,
                parameters=list(parameters),
                executed_at=executed_at,
            )
        except duckdb.Error as e:
            execution_time_ms = (time.perf_counter() - start_time) * 1000
            LOGGER.warning("Query failed: %s", e)
            return QueryResult(
                success=False,
                error=f"Database error: {e}",
                execution_time_ms=round(execution_time_ms, 2),
                sql_executed=sql,
                parameters=list(parameters),
                executed_at=executed_at,
            )
        finally:
            if conn is not None:
                conn.close()

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def table_columns(self, table_name: str) -> dict[str, str]:
        """Return ``{column: duckdb_type}`` for a queryable table."""
        table = validate_identifier(table_name, TABLE_CATALOG, kind="table")
        rows = self.fetch(
            "SELECT column_name, data_type FROM information_schema.columns "
            "WHERE table_name = ? ORDER BY ordinal_position",
            [table],
        )
        if not rows:
            raise ToolInputError(f"Table has no columns or does not exist: {table}")
        return {row["column_name"]: row["data_type"] for row in rows}

    def list_tables(self, category: str | None = None) -> list[dict[str, str]]:
        return [
            {"table_name": name, **meta}
            for name, meta in sorted(TABLE_CATALOG.items())
            if category is None or meta["category"] == category
        ]

    def list_joins(self, table_name: str) -> list[dict[str, str]]:
        table = validate_identifier(table_name, TABLE_CATALOG, kind="table")
        return joins_for_table(table)

    def list_fields(
        self,
        context: AccessContext,
        table_name: str,
        include_samples: bool = True,
    ) -> QueryResult:
        """Describe the fields of a table visible to the caller."""
        try:
            columns = self.table_columns(table_name)
        except (ToolInputError, DatabaseError) as e:
            return QueryResult(success=False, error=str(e), executed_at=_utc_now())

        table = validate_identifier(table_name, TABLE_CATALOG, kind="table")
        hints: dict[str, dict[str, Any]] = {}
        try:
            for row in self.fetch(
                "SELECT * FROM schema_columns_metadata WHERE view_name = ? AND is_active",
                [table],
            ):
                hints[row["column_name"]] = row
        except DatabaseError as e:
            LOGGER.debug("No column metadata for %s: %s", table, e)

        fields: list[dict[str, Any]] = []
        for name, duck_type in columns.items():
            if name == TENANT_COLUMN:
                continue
            if not context.is_admin and is_restricted_field(name):
                continue
            hint = hints.get(name, {})
            if not context.is_admin and hint.get("admin_only"):
                continue
            kind = normalize_type(duck_type)
            entry = {
                "field_name": name,
                "data_type": kind,
                "is_groupable": bool(hint.get("is_groupable", kind in ("text", "date", "boolean"))),
                "is_aggregatable": bool(hint.get("is_aggregatable", kind == "number")),
                "is_searchable": bool(hint.get("is_searchable", kind == "text")),
                "business_context": hint.get("business_context"),
            }
            if include_samples and kind == "text":
                samples = self.run_query(
                    f"SELECT DISTINCT CAST({quote_identifier(name)} AS VARCHAR) AS v "
                    f"FROM {quote_identifier(table)} "
                    f"WHERE {quote_identifier(TENANT_COLUMN)} = ? AND {quote_identifier(name)} IS NOT NULL "
                    f"LIMIT 3",
                    [context.customer_id],
                )
                entry["sample_values"] = [r["v"] for r in samples.rows] if samples.success else []
            fields.append(entry)

        return QueryResult(
            success=True,
            rows=fields,
            columns=list(fields[0].keys()) if fields else [],
            row_count=len(fields),
            executed_at=_utc_now(),
        )

    # ------------------------------------------------------------------
    # Query building
    # ------------------------------------------------------------------

    def _check_access(self, context: AccessContext, name: str, usage: str) -> None:
        if not context.is_admin and is_restricted_field(name):
            raise AccessDeniedError(
                f'Access denied: Field "{name}" is restricted for customer users ({usage})'
            )

    def _compose(
        self,
        context: AccessContext,
        base_table: str,
        joins: list[dict[str, Any]] | None = None,
        *,
        select: list[str] | None = None,
        filters: list[dict[str, Any]] | None = None,
        group_by: list[str] | None = None,
        aggregations: list[dict[str, Any]] | None = None,
        order_by: str | None = None,
        order_dir: str = "desc",
        limit: Any = None,
    ) -> tuple[str, list[Any]]:
        """Build a tenant-scoped SELECT and its bound parameters."""
        base = validate_identifier(base_table, TABLE_CATALOG, kind="table")
        tables: list[tuple[str, str]] = [(base, "t0")]
        columns_by_table: dict[str, dict[str, str]] = {base: self.table_columns(base)}

        join_sql: list[str] = []
        params: list[Any] = []
        for i, join in enumerate(joins or [], start=1):
            if not isinstance(join, dict):
                raise ToolInputError("Each join must be an object with a 'table' key")
            joined = validate_identifier(join.get("table"), TABLE_CATALOG, kind="table")
            edge = next(
                (
                    e for e in joins_for_table(joined)
                    if {e["from_table"], e["to_table"]} & {t for t, _ in tables}
                    and joined in (e["from_table"], e["to_table"])
                ),
                None,
            )
            if edge is None:
                raise ToolInputError(f"No join path from {base} to {joined}. Use discover_joins first.")
            join_type = str(join.get("type") or edge["join_type"]).upper()
            if join_type not in ("LEFT", "INNER"):
                raise ToolInputError(f"Invalid join type: {join_type}. Valid: LEFT, INNER")
            alias = f"t{i}"
            other_alias = dict(tables)[
                edge["from_table"] if edge["to_table"] == joined else edge["to_table"]
            ]
            joined_col = edge["to_column"] if edge["to_table"] == joined else edge["from_column"]
            other_col = edge["from_column"] if edge["to_table"] == joined else edge["to_column"]
            join_sql.append(
                f"{join_type} JOIN {quote_identifier(joined)} {alias} "
                f"ON {alias}.{quote_identifier(joined_col)} = {other_alias}.{quote_identifier(other_col)} "
                f"AND {alias}.{quote_identifier(TENANT_COLUMN)} = ?"
            )
            params.append(context.customer_id)
            tables.append((joined, alias))
            columns_by_table[joined] = self.table_columns(joined)

        def resolve(ref: Any, usage: str) -> str:
            if not isinstance(ref, str) or not ref.strip():
                raise ToolInputError(f"Invalid field reference in {usage}: {ref!r}")
            ref = ref.strip()
            if "." in ref:
                table_part, col_part = ref.split(".", 1)
                table = validate_identifier(table_part, [t for t, _ in tables], kind="table")
                col = validate_identifier(col_part, columns_by_table[table], kind="field")
                self._check_access(context, col, usage)
                return f"{dict(tables)[table]}.{quote_identifier(col)}"
            for table, alias in tables:
                lookup = {c.lower(): c for c in columns_by_table[table]}
                if ref.lower() in lookup:
                    col = validate_identifier(ref, columns_by_table[table], kind="field")
                    self._check_access(context, col, usage)
                    return f"{alias}.{quote_identifier(col)}"
            raise ToolInputError(f"Unknown field: {ref}")

        select_parts: list[str] = []
        group_parts: list[str] = []
        order_aliases: dict[str, str] = {}

        for gb in group_by or []:
            column_sql = resolve(gb, "group by")
            group_parts.append(column_sql)
            out_name = gb.split(".")[-1]
            select_parts.append(f"{column_sql} AS {quote_identifier(out_name)}")
            order_aliases[out_name.lower()] = quote_identifier(out_name)

        if aggregations:
            for agg in aggregations:
                if not isinstance(agg, dict):
                    raise ToolInputError("Each aggregation must be an object with 'field' and 'function'")
                function = str(agg.get("function") or agg.get("aggregation") or "").lower()
                target = agg.get("field") or "*"
                if target == "*":
                    if function != "count":
                        raise ToolInputError("Only count may aggregate over '*'")
                    column_sql = "*"
                else:
                    column_sql = resolve(target, "aggregation")
                expr = aggregation_expression(function, column_sql)
                alias_name = agg.get("alias") or f"{function}_{str(target).split('.')[-1]}".replace("*", "all")
                alias_sql = quote_identifier(validate_identifier(alias_name, [alias_name], kind="alias"))
                select_parts.append(f"{expr} AS {alias_sql}")
                order_aliases[alias_name.lower()] = alias_sql
        elif group_parts:
            select_parts.append('COUNT(*) AS "count"')
            order_aliases["count"] = '"count"'
        else:
            requested = select or ["*"]
            used_names: set[str] = set()
            for item in requested:
                if item == "*":
                    for table, alias in tables:
                        for col in columns_by_table[table]:
                            if not context.is_admin and is_restricted_field(col):
                                continue
                            name = col if col not in used_names else f"{table}_{col}"
                            if col in used_names and col in ("load_id", TENANT_COLUMN):
                                continue
                            used_names.add(name)
                            select_parts.append(f"{alias}.{quote_identifier(col)} AS {quote_identifier(name)}")
                else:
                    column_sql = resolve(item, "select")
                    name = item.split(".")[-1]
                    if name in used_names:
                        name = item.replace(".", "_")
                    used_names.add(name)
                    select_parts.append(f"{column_sql} AS {quote_identifier(name)}")
                    order_aliases.setdefault(name.lower(), quote_identifier(name))

        if not select_parts:
            raise ToolInputError("Nothing to select")

        where_parts = [f"t0.{quote_identifier(TENANT_COLUMN)} = ?"]
        params.append(context.customer_id)
        for flt in filters or []:
            if not isinstance(flt, dict) or "field" not in flt:
                raise ToolInputError("Each filter must be an object with 'field', 'operator' and 'value'")
            column_sql = resolve(flt["field"], "filter")
            where_parts.append(
                filter_clause(flt.get("operator") or flt.get("op"), column_sql, flt.get("value"), params)
            )

        direction = str(order_dir or "desc").upper()
        if direction not in ("ASC", "DESC"):
            raise ToolInputError(f"order_dir must be asc or desc, got {order_dir}")

        order_sql = ""
        if order_by:
            key = order_by.split(".")[-1].lower()
            if key in order_aliases:
                order_sql = f" ORDER BY {order_aliases[key]} {direction} NULLS LAST"
            else:
                order_sql = f" ORDER BY {resolve(order_by, 'order by')} {direction} NULLS LAST"
        elif aggregations:
            first_alias = select_parts[len(group_parts)].rsplit(" AS ", 1)[1]
            order_sql = f" ORDER BY {first_alias} {direction} NULLS LAST"

        sql = (
            f"SELECT {', '.join(select_parts)} FROM {quote_identifier(base)} t0"
            + (" " + " ".join(join_sql) if join_sql else "")
            + f" WHERE {' AND '.join(where_parts)}"
            + (f" GROUP BY {', '.join(group_parts)}" if group_parts else "")
            + order_sql
            + f" LIMIT {clamp_limit(limit, self.config)}"
        )
        return sql, params

    def _guarded(self, build, description: str) -> QueryResult:
        """Run a builder, converting input/access errors into failed results."""
        try:
            sql, params = build()
        except AccessDeniedError as e:
            return QueryResult(
                success=False,
                error=str(e),
                suggestion='Use "retail" to see your shipping costs',
                executed_at=_utc_now(),
            )
        except (ToolInputError, DatabaseError) as e:
            return QueryResult(success=False, error=str(e), executed_at=_utc_now())
        result = self.run_query(sql, params)
        LOGGER.debug("%s -> success=%s rows=%s", description, result.success, result.row_count)
        return result

    # ------------------------------------------------------------------
    # Tenant-scoped primitives
    # ------------------------------------------------------------------

    def query_table(
        self,
        context: AccessContext,
        table_name: str,
        *,
        select: list[str] | None = None,
        filters: list[dict[str, Any]] | None = None,
        group_by: list[str] | None = None,
        aggregations: list[dict[str, Any]] | None = None,
        order_by: str | None = None,
        order_dir: str = "desc",
        limit: Any = None,
    ) -> QueryResult:
        """Filtered / grouped / aggregated query over one table."""
        return self._guarded(
            lambda: self._compose(
                context,
                table_name,
                select=select,
                filters=filters,
                group_by=group_by,
                aggregations=aggregations,
                order_by=order_by,
                order_dir=order_dir,
                limit=limit,
            ),
            f"query_table({table_name})",
        )

    def query_with_join(
        self,
        context: AccessContext,
        base_table: str,
        joins: list[dict[str, Any]],
        *,
        select: list[str] | None = None,
        filters: list[dict[str, Any]] | None = None,
        group_by: list[str] | None = None,
        aggregations: list[dict[str, Any]] | None = None,
        order_by: str | None = None,
        order_dir: str = "desc",
        limit: Any = None,
    ) -> QueryResult:
        """Multi-table query along catalog join edges."""
        if not joins:
            return QueryResult(success=False, error="joins required", executed_at=_utc_now())
        return self._guarded(
            lambda: self._compose(
                context,
                base_table,
                joins,
                select=select,
                filters=filters,
                group_by=group_by,
                aggregations=aggregations,
                order_by=order_by,
                order_dir=order_dir,
                limit=limit,
            ),
            f"query_with_join({base_table})",
        )

    def aggregate(
        self,
        context: AccessContext,
        table_name: str,
        group_by: str,
        metric: str,
        aggregation: str,
        *,
        filters: list[dict[str, Any]] | None = None,
        limit: Any = 20,
        ascending: bool = False,
    ) -> QueryResult:
        """Group-by aggregation returning ``{name, value, count}`` rows.

        ``extra["total_groups"]`` carries the group count before the limit.
        """

        def build() -> tuple[str, list[Any]]:
            table = validate_identifier(table_name, TABLE_CATALOG, kind="table")
            columns = self.table_columns(table)
            gb = validate_identifier(group_by, columns, kind="field")
            self._check_access(context, gb, "group by")
            if metric == "*":
                if str(aggregation).lower() != "count":
                    raise ToolInputError("Only count may aggregate over '*'")
                metric_sql = "*"
            else:
                metric_col = validate_identifier(metric, columns, kind="field")
                self._check_access(context, metric_col, "aggregation")
                metric_sql = quote_identifier(metric_col)
            expr = aggregation_expression(aggregation, metric_sql)

            params: list[Any] = [context.customer_id]
            where_parts = [f"{quote_identifier(TENANT_COLUMN)} = ?"]
            for flt in filters or []:
                if not isinstance(flt, dict) or "field" not in flt:
                    raise ToolInputError("Each filter must be an object with 'field', 'operator' and 'value'")
                col = validate_identifier(flt["field"], columns, kind="field")
                self._check_access(context, col, "filter")
                where_parts.append(
                    filter_clause(flt.get("operator") or flt.get("op"), quote_identifier(col), flt.get("value"), params)
                )
            direction = "ASC" if ascending else "DESC"
            sql = (
                'SELECT "name", "value", "count", COUNT(*) OVER () AS total_groups FROM ('
                f"SELECT COALESCE(CAST({quote_identifier(gb)} AS VARCHAR), '(blank)') AS \"name\", "
                f"{expr} AS \"value\", COUNT(*) AS \"count\" "
                f"FROM {quote_identifier(table)} WHERE {' AND '.join(where_parts)} "
                "GROUP BY 1) grouped "
                f'ORDER BY "value" {direction} NULLS LAST, "name" '
                f"LIMIT {clamp_limit(limit, self.config)}"
            )
            return sql, params

        result = self._guarded(build, f"aggregate({table_name}, {group_by}, {aggregation}({metric}))")
        if result.success:
            result.extra["total_groups"] = result.rows[0]["total_groups"] if result.rows else 0
            for row in result.rows:
                row.pop("total_groups", None)
                if isinstance(row.get("value"), float):
                    row["value"] = round(row["value"], 2)
        return result

    def preview_grouping(
        self,
        context: AccessContext,
        group_by: str,
        metric: str,
        aggregation: str = "sum",
        limit: Any = 15,
        filters: list[dict[str, Any]] | None = None,
    ) -> QueryResult:
        """Aggregate over the report table for previews."""
        return self.aggregate(
            context, REPORT_TABLE, group_by, metric, aggregation, filters=filters, limit=limit
        )

    def explore_field(
        self,
        context: AccessContext,
        field_name: str,
        sample_size: Any = 15,
        table_name: str = REPORT_TABLE,
    ) -> QueryResult:
        """Value distribution of one field; counts land in ``extra``."""

        def build_stats() -> tuple[str, list[Any]]:
            columns = self.table_columns(table_name)
            col = validate_identifier(field_name, columns, kind="field")
            self._check_access(context, col, "explore")
            col_sql = quote_identifier(col)
            return (
                f"SELECT COUNT(*) AS total_count, COUNT({col_sql}) AS populated_count, "
                f"COUNT(DISTINCT {col_sql}) AS unique_count "
                f"FROM {quote_identifier(table_name)} WHERE {quote_identifier(TENANT_COLUMN)} = ? LIMIT 1",
                [context.customer_id],
            )

        stats = self._guarded(build_stats, f"explore_field({field_name}) stats")
        if not stats.success:
            return stats

        def build_values() -> tuple[str, list[Any]]:
            columns = self.table_columns(table_name)
            col_sql = quote_identifier(validate_identifier(field_name, columns, kind="field"))
            return (
                f"SELECT CAST({col_sql} AS VARCHAR) AS value, COUNT(*) AS count "
                f"FROM {quote_identifier(table_name)} "
                f"WHERE {quote_identifier(TENANT_COLUMN)} = ? AND {col_sql} IS NOT NULL "
                f"GROUP BY 1 ORDER BY count DESC, value LIMIT {clamp_limit(sample_size, self.config)}",
                [context.customer_id],
            )

        values = self._guarded(build_values, f"explore_field({field_name}) values")
        if values.success:
            values.extra.update({"field_name": field_name, **(stats.rows[0] if stats.rows else {})})
        return values

    def search_text(
        self,
        context: AccessContext,
        query: str,
        *,
        tables: list[str] | None = None,
        fields: list[str] | None = None,
        match_type: str = "contains",
        limit: Any = 50,
    ) -> QueryResult:
        """Find which text fields contain ``query`` for this tenant."""
        if match_type not in MATCH_TYPES:
            return QueryResult(
                success=False,
                error=f"Invalid match_type: {match_type}. Valid: {', '.join(MATCH_TYPES)}",
                executed_at=_utc_now(),
            )
        max_results = clamp_limit(limit, self.config)
        wanted_fields = {f.lower() for f in fields} if fields else None
        results: list[dict[str, Any]] = []
        total_matches = 0

        try:
            table_names = [
                validate_identifier(t, TABLE_CATALOG, kind="table") for t in (tables or sorted(TABLE_CATALOG))
            ]
            for table in table_names:
                for col, duck_type in self.table_columns(table).items():
                    if normalize_type(duck_type) != "text" or col == TENANT_COLUMN:
                        continue
                    if wanted_fields is not None and col.lower() not in wanted_fields:
                        continue
                    if not context.is_admin and is_restricted_field(col):
                        continue
                    col_sql = quote_identifier(col)
                    if match_type == "exact":
                        predicate, value = f"lower({col_sql}) = lower(?)", query
                    elif match_type == "starts_with":
                        predicate, value = f"{col_sql} ILIKE ?", f"{query}%"
                    else:
                        predicate, value = f"{col_sql} ILIKE ?", f"%{query}%"
                    found = self.run_query(
                        f"SELECT {col_sql} AS value, COUNT(*) AS n FROM {quote_identifier(table)} "
                        f"WHERE {quote_identifier(TENANT_COLUMN)} = ? AND {predicate} "
                        f"GROUP BY 1 ORDER BY n DESC, value LIMIT 50",
                        [context.customer_id, value],
                    )
                    if not found.success:
                        return found
                    if not found.rows:
                        continue
                    match_count = sum(r["n"] for r in found.rows)
                    total_matches += match_count
                    results.append({
                        "table": table,
                        "field": col,
                        "match_count": match_count,
                        "sample_values": [r["value"] for r in found.rows[:5]],
                    })
                    if len(results) >= max_results:
                        break
                if len(results) >= max_results:
                    break
        except (ToolInputError, DatabaseError) as e:
            return QueryResult(success=False, error=str(e), executed_at=_utc_now())

        results.sort(key=lambda r: r["match_count"], reverse=True)
        return QueryResult(
            success=True,
            rows=results,
            columns=["table", "field", "match_count", "sample_values"],
            row_count=len(results),
            extra={"total_matches": total_matches},
            executed_at=_utc_now(),
        )

    def customer_knowledge(self, customer_id: str) -> list[dict[str, Any]]:
        """All knowledge rows this tenant has taught (active or pending)."""
        return self.fetch(
            "SELECT knowledge_type, key, label, definition, confidence, is_active, needs_review, source "
            "FROM ai_knowledge WHERE scope = 'customer' AND customer_id = ? "
            "ORDER BY updated_at DESC",
            [customer_id],
        )


def _json_safe(value: Any) -> Any:
    """Convert DuckDB values into JSON-serializable Python values."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)
