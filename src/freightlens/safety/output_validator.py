"""Report output validation against the compiled schema.

validate_report_output checks every field reference in every section and
calculated field. attempt_auto_fix makes one local repair pass and only
returns a report that re-validates cleanly; it is a fixed point on its own
output.
"""

from __future__ import annotations

import copy
from typing import Any

from freightlens.agent.contracts import AccessContext, SchemaContext, ValidationOutcome
from freightlens.safety.access_policy import is_restricted_field
from freightlens.safety.field_refs import iter_field_references, rewrite_field_references


VALID_SECTION_TYPES = ("hero", "stat-row", "category-grid", "chart", "table", "header", "map")
VALID_CHART_TYPES = (
    "bar", "line", "pie", "treemap", "radar", "area", "scatter",
    "bump", "funnel", "heatmap", "calendar", "waterfall",
)
VALID_MAP_TYPES = ("choropleth", "flow", "cluster", "arc")
VALID_AGGREGATIONS = ("sum", "avg", "count", "min", "max", "count_distinct")

# Output columns of an aggregation, referenced by sort keys
RESULT_COLUMNS = frozenset({"name", "value", "count"})

LIST_KEYS = ("columns", "filters", "metrics")


def calculated_field_names(report: dict[str, Any]) -> set[str]:
    names = set()
    for key in ("calculatedFields", "calculated_fields"):
        for calc in report.get(key) or []:
            if isinstance(calc, dict) and isinstance(calc.get("name"), str):
                names.add(calc["name"].lower())
    return names


def _is_derived(name: str, calc_names: set[str]) -> bool:
    lowered = name.lower()
    return (
        name == "*"
        or "_per_" in lowered
        or lowered.startswith(("calc_", "computed_"))
        or lowered in calc_names
        or lowered in RESULT_COLUMNS
    )


def _unknown_refs(node: Any, schema: SchemaContext, calc_names: set[str]) -> list[str]:
    return [
        ref.field
        for ref in iter_field_references(node)
        if not _is_derived(ref.field, calc_names) and schema.get_field(ref.field) is None
    ]


def _metric_dicts(config: dict[str, Any]) -> list[dict[str, Any]]:
    metrics = []
    if isinstance(config.get("metric"), dict):
        metrics.append(config["metric"])
    for item in config.get("metrics") or []:
        if isinstance(item, dict):
            metrics.append(item)
    return metrics


def _section_label(index: int, section: dict[str, Any]) -> str:
    return f'Section {index + 1} ("{section.get("title") or "untitled"}")'


def validate_report_output(
    report: dict[str, Any],
    schema: SchemaContext,
    access: AccessContext | None = None,
) -> ValidationOutcome:
    """Validate a report definition.

    Unknown fields, invalid section/chart/map types and invalid aggregations
    are errors. Non-groupable group-bys and restricted references for
    customer callers are warnings (access control removes the latter).
    """
    errors: list[str] = []
    warnings: list[str] = []

    if not isinstance(report, dict):
        return ValidationOutcome(valid=False, errors=["Report must be an object"])

    if not report.get("name") or not isinstance(report.get("name"), str):
        errors.append("Report must have a name")

    sections = report.get("sections")
    if not isinstance(sections, list):
        errors.append("Report must have a sections array")
        return ValidationOutcome(valid=False, errors=errors, warnings=warnings)
    if not sections:
        warnings.append("Report has no sections")

    calc_names = calculated_field_names(report)

    for i, section in enumerate(sections):
        if not isinstance(section, dict):
            errors.append(f"Section {i + 1}: must be an object")
            continue
        label = _section_label(i, section)
        section_type = section.get("type")
        if section_type not in VALID_SECTION_TYPES:
            errors.append(
                f'{label}: Invalid section type "{section_type}". Valid: {", ".join(VALID_SECTION_TYPES)}'
            )
            continue

        config = section.get("config")
        if not isinstance(config, dict):
            if section_type != "header":
                errors.append(f"{label}: Missing config")
            continue

        if section_type == "chart" and config.get("chartType") and config["chartType"] not in VALID_CHART_TYPES:
            errors.append(
                f'{label}: Invalid chart type "{config["chartType"]}". Valid: {", ".join(VALID_CHART_TYPES)}'
            )
        if section_type == "map" and config.get("mapType") and config["mapType"] not in VALID_MAP_TYPES:
            errors.append(
                f'{label}: Invalid map type "{config["mapType"]}". Valid: {", ".join(VALID_MAP_TYPES)}'
            )

        for name in _unknown_refs(config, schema, calc_names):
            errors.append(f'{label}: Unknown field "{name}" - not in database schema')

        group_by = config.get("groupBy")
        if isinstance(group_by, str):
            field = schema.get_field(group_by)
            if field is not None and not field.is_groupable:
                warnings.append(f'{label}: Field "{group_by}" may not be ideal for grouping')

        for metric in _metric_dicts(config):
            aggregation = metric.get("aggregation")
            if aggregation is None:
                continue
            agg = str(aggregation).lower()
            if agg not in VALID_AGGREGATIONS:
                errors.append(f'{label}: Invalid aggregation "{agg}". Valid: {", ".join(VALID_AGGREGATIONS)}')
                continue
            field = schema.get_field(str(metric.get("field") or ""))
            if agg in ("sum", "avg") and field is not None and not field.is_aggregatable:
                errors.append(f'{label}: Field "{metric.get("field")}" cannot be aggregated with {agg.upper()}')

        if access is not None and not access.is_admin:
            for ref in iter_field_references(config):
                field = schema.get_field(ref.field)
                if is_restricted_field(ref.field) or (field is not None and field.admin_only):
                    warnings.append(f'{label}: References restricted field "{ref.field}"')

    for key in ("calculatedFields", "calculated_fields"):
        for calc in report.get(key) or []:
            if not isinstance(calc, dict):
                errors.append("Calculated field must be an object")
                continue
            name = calc.get("name")
            if not name:
                errors.append("Calculated field: Missing name")
            if not calc.get("formula") and not calc.get("fields"):
                errors.append(f'Calculated field "{name}": Must have either formula or fields')
            for ref in _unknown_refs(calc, schema, calc_names - {str(name).lower()}):
                errors.append(f'Calculated field "{name}": References unknown field "{ref}"')

    return ValidationOutcome(valid=not errors, errors=errors, warnings=warnings)


def _fix_metric(metric: dict[str, Any], schema: SchemaContext) -> None:
    if metric.get("aggregation") is None:
        return
    agg = str(metric["aggregation"]).lower()
    field = schema.get_field(str(metric.get("field") or ""))
    aggregatable = field is not None and field.is_aggregatable
    if agg not in VALID_AGGREGATIONS:
        metric["aggregation"] = "sum" if aggregatable else "count"
    elif agg in ("sum", "avg") and field is not None and not aggregatable:
        metric["aggregation"] = "count"


def attempt_auto_fix(report: dict[str, Any], schema: SchemaContext) -> dict[str, Any] | None:
    """Best-effort local repair.

    Drops invalid sections and unknown list entries, resets invalid chart and
    map types, repairs aggregations and normalizes field spelling. Returns
    None when nothing valid is left.
    """
    if not isinstance(report, dict) or not isinstance(report.get("sections"), list):
        return None
    fixed = copy.deepcopy(report)

    def canonical(name: str) -> str:
        field = schema.get_field(name)
        return field.name if field is not None else name

    if not fixed.get("name") or not isinstance(fixed.get("name"), str):
        fixed["name"] = "Generated Report"

    for key in ("calculatedFields", "calculated_fields"):
        if key not in fixed:
            continue
        calcs = [rewrite_field_references(c, canonical) for c in fixed[key] or [] if isinstance(c, dict)]
        # Dropping one calculated field can orphan another that builds on it
        while True:
            names = {str(c.get("name")).lower() for c in calcs if c.get("name")}
            kept = [
                c for c in calcs
                if c.get("name")
                and (c.get("formula") or c.get("fields"))
                and not _unknown_refs(c, schema, names - {str(c["name"]).lower()})
            ]
            if len(kept) == len(calcs):
                break
            calcs = kept
        fixed[key] = kept

    calc_names = calculated_field_names(fixed)
    kept_sections = []
    for section in fixed["sections"]:
        if not isinstance(section, dict) or section.get("type") not in VALID_SECTION_TYPES:
            continue
        config = section.get("config")
        if not isinstance(config, dict):
            if section["type"] == "header":
                kept_sections.append(section)
            continue

        config = rewrite_field_references(config, canonical)
        if section["type"] == "chart" and config.get("chartType") and config["chartType"] not in VALID_CHART_TYPES:
            config["chartType"] = "bar"
        if section["type"] == "map" and config.get("mapType") and config["mapType"] not in VALID_MAP_TYPES:
            config["mapType"] = "choropleth"

        for key in LIST_KEYS:
            if isinstance(config.get(key), list):
                config[key] = [
                    item for item in config[key]
                    if not _unknown_refs({"field": item} if isinstance(item, str) else item, schema, calc_names)
                ]

        for metric in _metric_dicts(config):
            _fix_metric(metric, schema)

        if _unknown_refs(config, schema, calc_names):
            continue
        section["config"] = config
        kept_sections.append(section)

    if not kept_sections:
        return None
    fixed["sections"] = kept_sections

    if validate_report_output(fixed, schema).valid:
        return fixed
    return None
