"""Field reference discovery over report definitions.

A report section config references data fields in many positions: a metric,
a group-by, table columns, filters, and calculated-field formulas. Both the
access gate and the output validator need every one of those positions, so the
walk lives here.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable, Iterator


# Keys whose string (or list-of-string) values name a data field
REFERENCE_KEYS = frozenset({
    "field",
    "fields",
    "groupBy",
    "secondaryGroupBy",
    "group_by",
    "metric",
    "columns",
    "xField",
    "yField",
    "sortBy",
    "orderBy",
    "order_by",
    "dimension",
    "dimensions",
})

# Keys whose string values are expressions over fields
FORMULA_KEYS = frozenset({"formula", "expression"})

# Tokens allowed inside a formula that are not field names
FORMULA_FUNCTIONS = frozenset({
    "divide", "multiply", "add", "subtract", "ratio", "percent", "percentage",
    "sum", "avg", "count", "min", "max", "abs", "round", "coalesce", "nullif",
    "and", "or", "not", "null", "case", "when", "then", "else", "end", "if",
})

_IDENTIFIER_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


@dataclass(frozen=True)
class FieldReference:
    """A single field name found in a report structure."""

    field: str
    path: str
    in_formula: bool = False


def formula_identifiers(formula: str) -> list[str]:
    """Return identifiers in a formula that could name a data field."""
    return [
        token
        for token in _IDENTIFIER_RE.findall(formula or "")
        if token.lower() not in FORMULA_FUNCTIONS
    ]


def iter_field_references(node: Any, path: str = "") -> Iterator[FieldReference]:
    """Yield every field reference under ``node``."""
    if isinstance(node, dict):
        for key, value in node.items():
            child_path = f"{path}.{key}" if path else str(key)
            if key in FORMULA_KEYS and isinstance(value, str):
                for token in formula_identifiers(value):
                    yield FieldReference(token, child_path, in_formula=True)
            elif key in REFERENCE_KEYS:
                if isinstance(value, str):
                    if value.strip():
                        yield FieldReference(value.strip(), child_path)
                elif isinstance(value, list):
                    for i, item in enumerate(value):
                        item_path = f"{child_path}[{i}]"
                        if isinstance(item, str):
                            if item.strip():
                                yield FieldReference(item.strip(), item_path)
                        else:
                            yield from iter_field_references(item, item_path)
                elif isinstance(value, dict):
                    yield from iter_field_references(value, child_path)
            elif isinstance(value, (dict, list)):
                yield from iter_field_references(value, child_path)
    elif isinstance(node, list):
        for i, item in enumerate(node):
            yield from iter_field_references(item, f"{path}[{i}]")


def rewrite_field_references(node: Any, rename: Callable[[str], str]) -> Any:
    """Return a copy of ``node`` with every field reference passed through ``rename``."""
    if isinstance(node, dict):
        rewritten: dict[str, Any] = {}
        for key, value in node.items():
            if key in FORMULA_KEYS and isinstance(value, str):
                rewritten[key] = _IDENTIFIER_RE.sub(
                    lambda m: m.group(0)
                    if m.group(0).lower() in FORMULA_FUNCTIONS
                    else rename(m.group(0)),
                    value,
                )
            elif key in REFERENCE_KEYS:
                if isinstance(value, str):
                    rewritten[key] = rename(value.strip()) if value.strip() else value
                elif isinstance(value, list):
                    rewritten[key] = [
                        rename(item.strip()) if isinstance(item, str) and item.strip()
                        else rewrite_field_references(item, rename)
                        for item in value
                    ]
                else:
                    rewritten[key] = rewrite_field_references(value, rename)
            else:
                rewritten[key] = rewrite_field_references(value, rename)
        return rewritten
    if isinstance(node, list):
        return [rewrite_field_references(item, rename) for item in node]
    return node
