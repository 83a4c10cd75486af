"""Query guardrails for tenant-scoped store access.

This module validates every piece of a tool-built query before it reaches
DuckDB:

Safety Features:
- Identifier validation against the live column list (no free-form SQL)
- Whitelisted filter operators and aggregation functions
- LIMIT clamping (default 100, configurable max)
- SELECT-only, single-statement validation of the final SQL
- Mandatory tenant predicate on every data query
- Prompt injection scrubbing of text values returned to the model
"""

import re
from dataclasses import dataclass
from typing import Any, Iterable, NamedTuple

from freightlens.core.exceptions import ToolInputError


class ValidationResult(NamedTuple):
    """Result of SQL validation."""

    is_valid: bool
    error: str | None = None
    warnings: list[str] | None = None


@dataclass
class GuardrailConfig:
    """Configuration for store guardrails."""

    # Limits
    default_limit: int = 100
    max_limit: int = 1000
    max_result_rows: int = 5000
    query_timeout_seconds: int = 30

    # Blocked keywords (case-insensitive, word boundaries)
    blocked_keywords: tuple[str, ...] = (
        "DROP",
        "DELETE",
        "UPDATE",
        "INSERT",
        "ALTER",
        "TRUNCATE",
        "GRANT",
        "REVOKE",
        "CREATE",
        "ATTACH",
        "DETACH",
        "COPY",
        "PRAGMA",
        "INSTALL",
        "LOAD",
    )

    # Additional patterns to block (regex)
    blocked_patterns: tuple[str, ...] = (
        r";\s*\S",  # Piggybacked statements
        r"--",  # Line comments
        r"/\*.*\*/",  # Block comments
        r"read_(csv|parquet|json)\w*\s*\(",  # File reads
    )


DEFAULT_CONFIG = GuardrailConfig()

AGGREGATIONS: dict[str, str] = {
    "sum": "SUM({col})",
    "avg": "AVG({col})",
    "count": "COUNT({col})",
    "min": "MIN({col})",
    "max": "MAX({col})",
    "count_distinct": "COUNT(DISTINCT {col})",
}

FILTER_OPERATORS: dict[str, str] = {
    "eq": "=",
    "=": "=",
    "neq": "!=",
    "!=": "!=",
    "<>": "!=",
    "gt": ">",
    ">": ">",
    "gte": ">=",
    ">=": ">=",
    "lt": "<",
    "<": "<",
    "lte": "<=",
    "<=": "<=",
    "contains": "ILIKE",
    "like": "ILIKE",
    "ilike": "ILIKE",
    "starts_with": "ILIKE",
    "in": "IN",
    "not_in": "NOT IN",
    "is_null": "IS NULL",
    "not_null": "IS NOT NULL",
}

MATCH_TYPES = ("contains", "exact", "starts_with")

TENANT_COLUMN = "customer_id"

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")


def quote_identifier(name: str) -> str:
    """Quote a validated identifier for DuckDB."""
    return '"' + name.replace('"', '""') + '"'


def validate_identifier(
    name: Any,
    allowed: Iterable[str],
    *,
    kind: str = "field",
) -> str:
    """Resolve ``name`` against the allowed identifiers (case-insensitive).

    Returns:
        The canonical identifier spelling

    Raises:
        ToolInputError: If the identifier is malformed or unknown
    """
    if not isinstance(name, str) or not _IDENTIFIER_RE.match(name.strip()):
        raise ToolInputError(f"Invalid {kind} name: {name!r}")
    lookup = {a.lower(): a for a in allowed}
    canonical = lookup.get(name.strip().lower())
    if canonical is None:
        raise ToolInputError(f"Unknown {kind}: {name}")
    return canonical


def clamp_limit(limit: Any, config: GuardrailConfig | None = None) -> int:
    """Clamp a requested row limit into [1, max_limit]."""
    if config is None:
        config = DEFAULT_CONFIG
    if limit is None:
        return config.default_limit
    try:
        value = int(limit)
    except (TypeError, ValueError) as e:
        raise ToolInputError(f"limit must be a number, got {limit!r}") from e
    return max(1, min(value, config.max_limit))


def aggregation_expression(function: Any, column_sql: str) -> str:
    """Build an aggregate expression for a whitelisted function."""
    key = str(function or "").strip().lower()
    template = AGGREGATIONS.get(key)
    if template is None:
        raise ToolInputError(
            f"Invalid aggregation: {function}. Valid: {', '.join(AGGREGATIONS)}"
        )
    return template.format(col=column_sql)


def filter_clause(
    operator: Any,
    column_sql: str,
    value: Any,
    params: list[Any],
) -> str:
    """Build one WHERE predicate, appending bound values to ``params``."""
    op_key = str(operator or "eq").strip().lower()
    sql_op = FILTER_OPERATORS.get(op_key)
    if sql_op is None:
        raise ToolInputError(
            f"Invalid filter operator: {operator}. Valid: {', '.join(sorted(set(FILTER_OPERATORS)))}"
        )

    if sql_op in ("IS NULL", "IS NOT NULL"):
        return f"{column_sql} {sql_op}"

    if sql_op in ("IN", "NOT IN"):
        values = value if isinstance(value, list) else [value]
        if not values:
            raise ToolInputError("Filter value list must not be empty")
        params.extend(values)
        placeholders = ", ".join("?" for _ in values)
        return f"{column_sql} {sql_op} ({placeholders})"

    if sql_op == "ILIKE":
        text = str(value)
        if op_key == "starts_with":
            params.append(f"{text}%")
        elif op_key in ("like", "ilike") and "%" in text:
            params.append(text)
        else:
            params.append(f"%{text}%")
        return f"CAST({column_sql} AS VARCHAR) ILIKE ?"

    params.append(value)
    return f"{column_sql} {sql_op} ?"


def validate_sql(sql: str, config: GuardrailConfig | None = None) -> ValidationResult:
    """Validate that a built query is a single read-only, tenant-scoped SELECT.

    Args:
        sql: SQL query string to validate
        config: Optional guardrail configuration

    Returns:
        ValidationResult with is_valid flag and optional error message
    """
    if config is None:
        config = DEFAULT_CONFIG

    if not sql or not sql.strip():
        return ValidationResult(is_valid=False, error="Empty SQL query")

    sql_upper = sql.strip().upper()
    if not (sql_upper.startswith("SELECT") or sql_upper.startswith("WITH")):
        return ValidationResult(is_valid=False, error="Query must start with SELECT or WITH")

    sql_no_strings = _remove_string_literals(sql)
    for keyword in config.blocked_keywords:
        if re.search(rf"\b{keyword}\b", sql_no_strings.upper()):
            return ValidationResult(is_valid=False, error=f"Blocked keyword detected: {keyword}")

    for pattern in config.blocked_patterns:
        if re.search(pattern, sql_no_strings, re.IGNORECASE | re.DOTALL):
            return ValidationResult(is_valid=False, error=f"Dangerous pattern detected: {pattern}")

    if f'"{TENANT_COLUMN}" = ?' not in sql:
        return ValidationResult(is_valid=False, error="Query is missing the tenant predicate")

    warnings = []
    if not re.search(r"\bLIMIT\s+\d+", sql, re.IGNORECASE):
        warnings.append("Query has no LIMIT clause")

    return ValidationResult(is_valid=True, warnings=warnings or None)


def sanitize_for_prompt_injection(text: str, max_len: int = 500) -> str:
    """Sanitize text from the database before it is shown to the model.

    Args:
        text: Raw text from query results
        max_len: Truncation length

    Returns:
        Sanitized text safe for LLM prompts
    """
    if not text:
        return ""

    patterns_to_remove = [
        r"ignore\s+(previous|all|above)\s+instructions?",
        r"disregard\s+(previous|all|above)\s+instructions?",
        r"new\s+instructions?:",
        r"system\s*:",
        r"assistant\s*:",
        r"</?report_json>",
        r"</?learning_flag>",
        r"<\|im_start\|>",
        r"<\|im_end\|>",
    ]

    result = text
    for pattern in patterns_to_remove:
        result = re.sub(pattern, "[FILTERED]", result, flags=re.IGNORECASE)

    if len(result) > max_len:
        result = result[:max_len] + "... [truncated]"

    return result


def _remove_string_literals(sql: str) -> str:
    """Blank out string literals and quoted identifiers for pattern checks."""
    sql = re.sub(r"'([^']|'')*'", "''", sql)
    sql = re.sub(r'"([^"]|"")*"', '""', sql)
    return sql
