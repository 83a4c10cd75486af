"""Typed tool inputs and the tool definitions sent to the model.

One pydantic model per tool. The model's ``tool_name`` keys the registry the
executor dispatches over, and its JSON schema is the input schema the model
sees, so the two cannot drift apart.
"""

from __future__ import annotations

from typing import Annotated, Any, ClassVar, Literal

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationError

from freightlens.core.exceptions import ToolInputError


class ToolInput(BaseModel):
    """Base class for tool inputs. Unknown keys are ignored."""

    model_config = ConfigDict(extra="ignore")

    tool_name: ClassVar[str]
    description: ClassVar[str]


def _as_list(value: Any) -> Any:
    if isinstance(value, str):
        return [value]
    return value


# A single string is accepted where a list of names is expected
StrList = Annotated[list[str], BeforeValidator(_as_list)]


# =============================================================================
# Discovery
# =============================================================================

class DiscoverTablesInput(ToolInput):
    tool_name = "discover_tables"
    description = "List the queryable tables, optionally filtered by category (core, detail)."

    category: str | None = None


class DiscoverFieldsInput(ToolInput):
    tool_name = "discover_fields"
    description = "List the fields of a table with type, groupable/aggregatable/searchable flags and sample values."

    table_name: str = Field(..., min_length=1)
    include_samples: bool = True


class DiscoverJoinsInput(ToolInput):
    tool_name = "discover_joins"
    description = "List the valid joins for a table."

    table_name: str = Field(..., min_length=1)


# =============================================================================
# Query
# =============================================================================

class QueryTableInput(ToolInput):
    tool_name = "query_table"
    description = (
        "Query one table with optional select, filters ({field, operator, value}), group_by, "
        "aggregations ({field, function, alias}), order_by and limit."
    )

    table_name: str = Field(..., min_length=1)
    select: StrList | None = None
    filters: list[dict[str, Any]] | None = None
    group_by: StrList | None = None
    aggregations: list[dict[str, Any]] | None = None
    order_by: str | None = None
    order_dir: Literal["asc", "desc"] = "desc"
    limit: int = 100


class QueryWithJoinInput(ToolInput):
    tool_name = "query_with_join"
    description = "Query a base table joined to related tables ({table, type}) along catalog join edges."

    base_table: str = Field(..., min_length=1)
    joins: list[dict[str, Any]] = Field(..., min_length=1)
    select: StrList | None = None
    filters: list[dict[str, Any]] | None = None
    group_by: StrList | None = None
    aggregations: list[dict[str, Any]] | None = None
    order_by: str | None = None
    order_dir: Literal["asc", "desc"] = "desc"
    limit: int = 100


class SearchTextInput(ToolInput):
    tool_name = "search_text"
    description = "Find which text fields contain a term (product names, cities, references)."

    query: str = Field(..., min_length=1)
    tables: list[str] | None = None
    fields: list[str] | None = None
    match_type: Literal["contains", "exact", "starts_with"] = "contains"
    limit: int = 50


class AggregateInput(ToolInput):
    tool_name = "aggregate"
    description = "Group-by aggregation (sum, avg, count, min, max, count_distinct) returning {name, value, count} rows."

    table_name: str = Field(..., min_length=1)
    group_by: str = Field(..., min_length=1)
    metric: str = Field(..., min_length=1)
    aggregation: str = Field(..., min_length=1)
    filters: list[dict[str, Any]] | None = None
    limit: int = 20
    ascending: bool = False


# =============================================================================
# Derived analysis
# =============================================================================

class ExploreFieldInput(ToolInput):
    tool_name = "explore_field"
    description = "Show the value distribution and data quality of one field."

    field_name: str = Field(..., min_length=1)
    sample_size: int = 15
    table_name: str = "shipment"


class PreviewAggregationInput(ToolInput):
    tool_name = "preview_aggregation"
    description = "Preview a grouping on shipments before adding it to the report."

    group_by: str = Field(..., min_length=1)
    metric: str = Field(..., min_length=1)
    aggregation: str = "sum"
    limit: int = 15


class ComparePeriodsInput(ToolInput):
    tool_name = "compare_periods"
    description = (
        "Compare a metric between two periods (last7, last30, last90, last6months, ytd, lastYear, all). "
        "period1 is the current period, period2 the baseline."
    )

    metric: str = Field(..., min_length=1)
    aggregation: str = Field(..., min_length=1)
    period1: str = Field(..., min_length=1)
    period2: str = Field(..., min_length=1)
    group_by: str | None = None
    table_name: str = "shipment"


class DetectAnomaliesInput(ToolInput):
    tool_name = "detect_anomalies"
    description = (
        "Find groups whose average metric is unusually high or low. Each group is scored "
        "against the mean and standard deviation of the other groups (leave-one-out), so "
        "deviation counts those standard deviations, not ones over all groups."
    )

    metric: str = Field(..., min_length=1)
    group_by: str = "carrier_name"
    sensitivity: Literal["high", "medium", "low"] = "medium"
    baseline: str | None = Field(None, description="Optional period preset limiting the rows analysed")
    table_name: str = "shipment"


# =============================================================================
# Report mutation
# =============================================================================

class CreateReportDraftInput(ToolInput):
    tool_name = "create_report_draft"
    description = "Start a report draft. Call this before adding sections."

    name: str = "Untitled Report"
    description_text: str | None = Field(None, alias="description")
    theme: str = "blue"
    date_range: str | dict[str, Any] = "last30"


class AddSectionInput(ToolInput):
    tool_name = "add_section"
    description = (
        "Add a section (hero, stat-row, category-grid, chart, table, header, map). "
        "When config has groupBy and metric a data preview is attached."
    )

    section_type: str = Field(..., min_length=1)
    config: dict[str, Any] = Field(default_factory=dict)
    title: str | None = None
    position: int | None = None


class ModifySectionInput(ToolInput):
    tool_name = "modify_section"
    description = "Update fields of the section at section_index."

    section_index: int
    updates: dict[str, Any]


class RemoveSectionInput(ToolInput):
    tool_name = "remove_section"
    description = "Remove the section at section_index."

    section_index: int


class ReorderSectionsInput(ToolInput):
    tool_name = "reorder_sections"
    description = "Reorder sections; new_order must list every current index exactly once."

    new_order: list[int]


class PreviewReportInput(ToolInput):
    tool_name = "preview_report"
    description = "Fill missing preview data and list the draft's sections."


class FinalizeReportInput(ToolInput):
    tool_name = "finalize_report"
    description = "Finish the report and return it with a short summary for the user."

    summary: str = Field(..., min_length=1)


# =============================================================================
# Learning
# =============================================================================

class LearnTerminologyInput(ToolInput):
    tool_name = "learn_terminology"
    description = "Remember what this customer means by a term."

    term: str = Field(..., min_length=1)
    meaning: str = Field(..., min_length=1)
    maps_to_field: str | None = None
    confidence: Literal["high", "medium", "low"] = "medium"


class LearnPreferenceInput(ToolInput):
    tool_name = "learn_preference"
    description = "Remember a customer preference (chart types, default periods, sort order)."

    preference_type: str = Field(..., min_length=1)
    key: str = Field(..., min_length=1)
    value: str = Field(..., min_length=1)
    context: str | None = None


class RecordCorrectionInput(ToolInput):
    tool_name = "record_correction"
    description = "Record a user correction for human review."

    original: str = Field(..., min_length=1)
    corrected: str = Field(..., min_length=1)
    context: str | None = None


class GetCustomerMemoryInput(ToolInput):
    tool_name = "get_customer_memory"
    description = "Read what has been learned about this customer."

    include_terminology: bool = True
    include_preferences: bool = True
    include_history: bool = False


class AskClarificationInput(ToolInput):
    tool_name = "ask_clarification"
    description = "Ask the user a clarifying question instead of guessing."

    question: str = Field(..., min_length=1)
    options: list[str] | None = None
    context: str | None = None


TOOL_INPUT_MODELS: dict[str, type[ToolInput]] = {
    model.tool_name: model
    for model in (
        DiscoverTablesInput,
        DiscoverFieldsInput,
        DiscoverJoinsInput,
        QueryTableInput,
        SearchTextInput,
        QueryWithJoinInput,
        AggregateInput,
        ExploreFieldInput,
        PreviewAggregationInput,
        ComparePeriodsInput,
        DetectAnomaliesInput,
        CreateReportDraftInput,
        AddSectionInput,
        ModifySectionInput,
        RemoveSectionInput,
        ReorderSectionsInput,
        PreviewReportInput,
        FinalizeReportInput,
        LearnTerminologyInput,
        LearnPreferenceInput,
        RecordCorrectionInput,
        GetCustomerMemoryInput,
        AskClarificationInput,
    )
}

_TYPE_MESSAGES = {
    "string_type": "must be a string",
    "int_type": "must be a number",
    "int_parsing": "must be a number",
    "int_from_float": "must be a whole number",
    "float_type": "must be a number",
    "float_parsing": "must be a number",
    "bool_type": "must be a boolean",
    "bool_parsing": "must be a boolean",
    "list_type": "must be an array",
    "dict_type": "must be an object",
}


def _describe_error(error: dict[str, Any]) -> str:
    loc = error.get("loc") or ()
    key = ".".join(str(part) for part in loc) or "input"
    kind = error.get("type", "")
    if kind == "missing" or (kind in ("string_too_short", "too_short") and len(loc) == 1):
        return f"{key} is required"
    if kind in _TYPE_MESSAGES:
        return f"{key} {_TYPE_MESSAGES[kind]}"
    return f"{key}: {error.get('msg', 'invalid value')}"


def parse_tool_input(model: type[ToolInput], raw: Any) -> ToolInput:
    """Validate raw tool arguments.

    Raises:
        ToolInputError: With a message naming the first offending argument
    """
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ToolInputError(f"{model.tool_name} input must be an object")
    try:
        return model.model_validate(raw)
    except ValidationError as e:
        errors = e.errors()
        raise ToolInputError("; ".join(_describe_error(err) for err in errors[:3]), e) from e


def tool_definitions() -> list[dict[str, Any]]:
    """Tool name, description and JSON input schema for every tool."""
    definitions = []
    for name, model in TOOL_INPUT_MODELS.items():
        schema = model.model_json_schema(by_alias=True)
        schema.pop("title", None)
        schema.pop("description", None)
        definitions.append({
            "name": name,
            "description": model.description,
            "input_schema": schema,
        })
    return definitions
