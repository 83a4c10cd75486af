"""Tool executor: the capability surface exposed to the model.

Every tool is an async handler taking its typed input and the current report
draft and returning ``(result, draft)``. The draft is never held on the
executor; the orchestrator threads it from call to call. Handlers run the
blocking DuckDB store on a worker thread.

Usage:
    executor = ToolExecutor(store, AccessContext(customer_id="c-100"))
    execution, draft = await executor.execute("create_report_draft", {"name": "Lanes"}, None)
    execution, draft = await executor.execute(
        "add_section",
        {"section_type": "chart", "config": {"groupBy": "carrier_name", "metric": "retail"}},
        draft,
    )
"""

from __future__ import annotations

import asyncio
import time
import uuid
from typing import Any, Awaitable, Callable

from pydantic import ValidationError as PydanticValidationError

from freightlens.agent.contracts import (
    AccessContext,
    DateRange,
    ReportDraft,
    ReportSection,
    ToolExecution,
)
from freightlens.core.exceptions import AppError, ConfigurationError, ToolInputError
from freightlens.learning.persistence import normalize_key, record_feedback, upsert_knowledge
from freightlens.safety.access_policy import redact_restricted_values
from freightlens.safety.output_validator import VALID_SECTION_TYPES
from freightlens.store.catalog import DATE_COLUMN
from freightlens.store.duckdb_store import QueryResult, ShipmentStore
from freightlens.store.guardrails import sanitize_for_prompt_injection
from freightlens.tools import analysis
from freightlens.tools.definitions import (
    TOOL_INPUT_MODELS,
    AddSectionInput,
    AggregateInput,
    AskClarificationInput,
    ComparePeriodsInput,
    CreateReportDraftInput,
    DetectAnomaliesInput,
    DiscoverFieldsInput,
    DiscoverJoinsInput,
    DiscoverTablesInput,
    ExploreFieldInput,
    FinalizeReportInput,
    GetCustomerMemoryInput,
    LearnPreferenceInput,
    LearnTerminologyInput,
    ModifySectionInput,
    PreviewAggregationInput,
    PreviewReportInput,
    QueryTableInput,
    QueryWithJoinInput,
    RecordCorrectionInput,
    RemoveSectionInput,
    ReorderSectionsInput,
    SearchTextInput,
    parse_tool_input,
)
from freightlens.utils.logging import get_logger


LOGGER = get_logger(__name__)

ToolResult = dict[str, Any]
Handler = Callable[[Any, "ReportDraft | None"], Awaitable[tuple[ToolResult, "ReportDraft | None"]]]

NO_DRAFT_ERROR = "No report draft. Call create_report_draft first."

SECTION_PREVIEW_LIMIT = 10
ANOMALY_GROUP_LIMIT = 200
LEARNED_CONFIDENCE = {"high": 0.9, "medium": 0.7, "low": 0.5}
PREFERENCE_CONFIDENCE = 0.8
HIGH_CARDINALITY_GROUPS = 20
RESULT_TEXT_LIMIT = 500


def _query_payload(result: QueryResult, data_key: str = "data") -> ToolResult:
    if not result.success:
        payload: ToolResult = {"success": False, "error": result.error or "Query failed"}
        if result.suggestion:
            payload["suggestion"] = result.suggestion
        return payload
    return {
        "success": True,
        data_key: result.rows,
        "row_count": result.row_count,
        "truncated": result.truncated,
    }


def _sanitize_strings(value: Any) -> Any:
    if isinstance(value, str):
        return sanitize_for_prompt_injection(value, max_len=RESULT_TEXT_LIMIT)
    if isinstance(value, dict):
        return {k: _sanitize_strings(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_sanitize_strings(v) for v in value]
    return value


def _preview_spec(config: dict[str, Any]) -> tuple[str, str, str] | None:
    """Return ``(group_by, metric, aggregation)`` when a section can be previewed."""
    group_by = config.get("groupBy")
    metric = config.get("metric")
    aggregation = config.get("aggregation")
    if isinstance(metric, dict):
        aggregation = aggregation or metric.get("aggregation")
        metric = metric.get("field")
    if not isinstance(group_by, str) or not group_by or not isinstance(metric, str) or not metric:
        return None
    return group_by, metric, str(aggregation or "sum")


class ToolExecutor:
    """Dispatches model tool calls for one tenant.

    Holds the store and the caller's access context only; it is safe to
    share between conversations of the same caller.
    """

    def __init__(
        self,
        store: ShipmentStore,
        access: AccessContext,
        *,
        timeout_seconds: float = 20.0,
    ):
        self.store = store
        self.access = access
        self.timeout_seconds = timeout_seconds
        self._handlers: dict[str, Handler] = {
            DiscoverTablesInput.tool_name: self._discover_tables,
            DiscoverFieldsInput.tool_name: self._discover_fields,
            DiscoverJoinsInput.tool_name: self._discover_joins,
            QueryTableInput.tool_name: self._query_table,
            QueryWithJoinInput.tool_name: self._query_with_join,
            SearchTextInput.tool_name: self._search_text,
            AggregateInput.tool_name: self._aggregate,
            ExploreFieldInput.tool_name: self._explore_field,
            PreviewAggregationInput.tool_name: self._preview_aggregation,
            ComparePeriodsInput.tool_name: self._compare_periods,
            DetectAnomaliesInput.tool_name: self._detect_anomalies,
            CreateReportDraftInput.tool_name: self._create_report_draft,
            AddSectionInput.tool_name: self._add_section,
            ModifySectionInput.tool_name: self._modify_section,
            RemoveSectionInput.tool_name: self._remove_section,
            ReorderSectionsInput.tool_name: self._reorder_sections,
            PreviewReportInput.tool_name: self._preview_report,
            FinalizeReportInput.tool_name: self._finalize_report,
            LearnTerminologyInput.tool_name: self._learn_terminology,
            LearnPreferenceInput.tool_name: self._learn_preference,
            RecordCorrectionInput.tool_name: self._record_correction,
            GetCustomerMemoryInput.tool_name: self._get_customer_memory,
            AskClarificationInput.tool_name: self._ask_clarification,
        }
        missing = set(TOOL_INPUT_MODELS) ^ set(self._handlers)
        if missing:
            raise ConfigurationError(f"Tool registry out of sync: {sorted(missing)}")

    @property
    def tool_names(self) -> list[str]:
        return list(self._handlers)

    async def execute(
        self,
        tool_name: str,
        tool_input: Any,
        draft: ReportDraft | None = None,
    ) -> tuple[ToolExecution, ReportDraft | None]:
        """Run one tool call. Never raises for tool-level failures.

        Returns:
            The execution record and the (possibly new) draft
        """
        start = time.perf_counter()
        new_draft = draft
        LOGGER.debug("Tool call %s for customer %s", tool_name, self.access.customer_id)

        handler = self._handlers.get(tool_name)
        if handler is None:
            result: ToolResult = {"success": False, "error": f"Unknown tool: {tool_name}"}
        else:
            try:
                params = parse_tool_input(TOOL_INPUT_MODELS[tool_name], tool_input)
                result, new_draft = await asyncio.wait_for(handler(params, draft), timeout=self.timeout_seconds)
            except asyncio.TimeoutError:
                result = {"success": False, "error": "timeout"}
            except AppError as e:
                result = {"success": False, "error": str(e)}
            except Exception as e:
                # A failing tool is reported back to the model, never raised
                LOGGER.exception("Unexpected error in tool %s", tool_name)
                result = {"success": False, "error": f"Tool failed: {e}"}

        if not result.get("success"):
            LOGGER.warning(
                "Tool %s failed for customer %s: %s",
                tool_name, self.access.customer_id, result.get("error"),
            )
            new_draft = draft

        result = _sanitize_strings(redact_restricted_values(result, self.access))
        execution = ToolExecution(
            tool_name=tool_name,
            tool_input=tool_input if isinstance(tool_input, dict) else {},
            result=result,
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
        )
        return execution, new_draft

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def _discover_tables(self, params: DiscoverTablesInput, draft):
        tables = self.store.list_tables(params.category)
        return {"success": True, "tables": tables, "count": len(tables)}, draft

    async def _discover_fields(self, params: DiscoverFieldsInput, draft):
        result = await asyncio.to_thread(
            self.store.list_fields, self.access, params.table_name, params.include_samples
        )
        payload = _query_payload(result, "fields")
        if payload["success"]:
            fields = result.rows
            payload.update({
                "table_name": params.table_name,
                "groupable": [f["field_name"] for f in fields if f["is_groupable"]],
                "aggregatable": [f["field_name"] for f in fields if f["is_aggregatable"]],
                "searchable": [f["field_name"] for f in fields if f["is_searchable"]],
            })
        return payload, draft

    async def _discover_joins(self, params: DiscoverJoinsInput, draft):
        joins = self.store.list_joins(params.table_name)
        return {"success": True, "table_name": params.table_name, "joins": joins}, draft

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    async def _query_table(self, params: QueryTableInput, draft):
        result = await asyncio.to_thread(
            self.store.query_table,
            self.access,
            params.table_name,
            select=params.select,
            filters=params.filters,
            group_by=params.group_by,
            aggregations=params.aggregations,
            order_by=params.order_by,
            order_dir=params.order_dir,
            limit=params.limit,
        )
        return _query_payload(result), draft

    async def _query_with_join(self, params: QueryWithJoinInput, draft):
        result = await asyncio.to_thread(
            self.store.query_with_join,
            self.access,
            params.base_table,
            params.joins,
            select=params.select,
            filters=params.filters,
            group_by=params.group_by,
            aggregations=params.aggregations,
            order_by=params.order_by,
            order_dir=params.order_dir,
            limit=params.limit,
        )
        return _query_payload(result), draft

    async def _search_text(self, params: SearchTextInput, draft):
        result = await asyncio.to_thread(
            self.store.search_text,
            self.access,
            params.query,
            tables=params.tables,
            fields=params.fields,
            match_type=params.match_type,
            limit=params.limit,
        )
        payload = _query_payload(result, "results")
        if payload["success"]:
            payload["query"] = params.query
            payload["total_matches"] = result.extra.get("total_matches", 0)
        return payload, draft

    async def _aggregate(self, params: AggregateInput, draft):
        result = await asyncio.to_thread(
            self.store.aggregate,
            self.access,
            params.table_name,
            params.group_by,
            params.metric,
            params.aggregation,
            filters=params.filters,
            limit=params.limit,
            ascending=params.ascending,
        )
        payload = _query_payload(result)
        if payload["success"]:
            payload["total_groups"] = result.extra.get("total_groups", 0)
        return payload, draft

    # ------------------------------------------------------------------
    # Derived analysis
    # ------------------------------------------------------------------

    async def _explore_field(self, params: ExploreFieldInput, draft):
        result = await asyncio.to_thread(
            self.store.explore_field,
            self.access,
            params.field_name,
            params.sample_size,
            params.table_name,
        )
        if not result.success:
            return _query_payload(result), draft

        total = int(result.extra.get("total_count") or 0)
        populated = int(result.extra.get("populated_count") or 0)
        unique = int(result.extra.get("unique_count") or 0)
        populated_percent = round(populated / total * 100, 1) if total else 0.0
        return {
            "success": True,
            "field_name": params.field_name,
            "total_count": total,
            "populated_count": populated,
            "populated_percent": populated_percent,
            "unique_count": unique,
            "values": result.rows,
            "data_quality": analysis.assess_data_quality(populated_percent),
            "recommendation": analysis.field_recommendation(populated_percent, unique),
        }, draft

    async def _preview_aggregation(self, params: PreviewAggregationInput, draft):
        result = await asyncio.to_thread(
            self.store.preview_grouping,
            self.access,
            params.group_by,
            params.metric,
            params.aggregation,
            params.limit,
        )
        payload = _query_payload(result)
        if not payload["success"]:
            return payload, draft

        total_groups = int(result.extra.get("total_groups") or 0)
        payload.update({
            "group_by": params.group_by,
            "metric": params.metric,
            "aggregation": params.aggregation,
            "total_groups": total_groups,
            "quality": analysis.grouping_quality(result.row_count, total_groups),
            "visualization_suggestion": analysis.suggest_visualization(total_groups),
        })
        if total_groups > HIGH_CARDINALITY_GROUPS:
            payload["warning"] = (
                f"{total_groups} groups - consider a filter or a table section instead of a chart"
            )
        return payload, draft

    async def _period_value(
        self,
        table: str,
        metric: str,
        aggregation: str,
        period: dict[str, Any],
        group_by: str | None,
    ) -> QueryResult:
        filters = analysis.period_filters(period, DATE_COLUMN)
        if group_by:
            return await asyncio.to_thread(
                self.store.aggregate,
                self.access,
                table,
                group_by,
                metric,
                aggregation,
                filters=filters,
                limit=self.store.config.max_limit,
            )
        return await asyncio.to_thread(
            self.store.query_table,
            self.access,
            table,
            filters=filters,
            aggregations=[{"field": metric, "function": aggregation, "alias": "value"}],
            limit=1,
        )

    async def _compare_periods(self, params: ComparePeriodsInput, draft):
        current_range = analysis.resolve_period(params.period1)
        baseline_range = analysis.resolve_period(params.period2)

        queries = [
            self._period_value(params.table_name, params.metric, params.aggregation, period, group_by)
            for group_by in ((None, params.group_by) if params.group_by else (None,))
            for period in (current_range, baseline_range)
        ]
        results = await asyncio.gather(*queries)
        # Totals always come from the ungrouped pair; an avg of group avgs is not the period avg
        current_total, baseline_total = results[0], results[1]
        current, baseline = results[-2], results[-1]
        for result in results:
            if not result.success:
                return _query_payload(result), draft

        payload: ToolResult = {
            "success": True,
            "metric": params.metric,
            "aggregation": params.aggregation,
        }
        if params.group_by:
            baseline_by_name = {row["name"]: row["value"] for row in baseline.rows}
            current_by_name = {row["name"]: row["value"] for row in current.rows}
            rows = []
            for name in list(current_by_name) + [n for n in baseline_by_name if n not in current_by_name]:
                cur = current_by_name.get(name) or 0
                base = baseline_by_name.get(name) or 0
                rows.append({
                    "name": name,
                    "current": cur,
                    "baseline": base,
                    "change_percent": analysis.percent_change(cur, base),
                })
            rows.sort(key=lambda r: abs(r["change_percent"]), reverse=True)
            payload.update({"group_by": params.group_by, "data": rows, "row_count": len(rows)})

        cur_total = (current_total.rows[0].get("value") if current_total.rows else None) or 0
        base_total = (baseline_total.rows[0].get("value") if baseline_total.rows else None) or 0

        change = analysis.percent_change(cur_total, base_total)
        payload.update({
            "period1": {"label": params.period1, **analysis.period_to_json(current_range), "value": cur_total},
            "period2": {"label": params.period2, **analysis.period_to_json(baseline_range), "value": base_total},
            "change_percent": change,
            "insight": analysis.comparison_insight(change, params.period1, params.period2),
        })
        return payload, draft

    async def _detect_anomalies(self, params: DetectAnomaliesInput, draft):
        filters = None
        if params.baseline:
            filters = analysis.period_filters(analysis.resolve_period(params.baseline), DATE_COLUMN)
        result = await asyncio.to_thread(
            self.store.aggregate,
            self.access,
            params.table_name,
            params.group_by,
            params.metric,
            "avg",
            filters=filters,
            limit=ANOMALY_GROUP_LIMIT,
        )
        if not result.success:
            return _query_payload(result), draft

        threshold = analysis.SENSITIVITY_THRESHOLDS[params.sensitivity]
        statistics, anomalies = analysis.detect_outliers(result.rows, threshold)
        return {
            "success": True,
            "metric": params.metric,
            "group_by": params.group_by,
            "sensitivity": params.sensitivity,
            "statistics": statistics,
            "anomalies": anomalies,
            "groups_analyzed": result.row_count,
            "row_count": len(anomalies),
        }, draft

    # ------------------------------------------------------------------
    # Report mutation
    # ------------------------------------------------------------------

    async def _section_preview(self, config: dict[str, Any]) -> QueryResult | None:
        spec = _preview_spec(config)
        if spec is None:
            return None
        group_by, metric, aggregation = spec
        return await asyncio.to_thread(
            self.store.preview_grouping,
            self.access,
            group_by,
            metric,
            aggregation,
            SECTION_PREVIEW_LIMIT,
        )

    def _check_index(self, draft: ReportDraft, index: int) -> None:
        if not 0 <= index < len(draft.sections):
            raise ToolInputError(
                f"Invalid section index {index}. Draft has {len(draft.sections)} sections "
                f"(valid: 0-{len(draft.sections) - 1})"
                if draft.sections
                else f"Invalid section index {index}. Draft has no sections"
            )

    async def _create_report_draft(self, params: CreateReportDraftInput, draft):
        if isinstance(params.date_range, dict):
            date_range = DateRange.model_validate(params.date_range)
        else:
            date_range = DateRange(type=params.date_range)
        new_draft = ReportDraft(
            id=draft.id if draft is not None else str(uuid.uuid4()),
            name=params.name,
            description=params.description_text,
            theme=params.theme,
            date_range=date_range,
            customer_id=self.access.customer_id,
        )
        return {
            "success": True,
            "draft_id": new_draft.id,
            "message": f'Created draft "{new_draft.name}". Add sections with add_section.',
        }, new_draft

    async def _add_section(self, params: AddSectionInput, draft):
        if draft is None:
            return {"success": False, "error": NO_DRAFT_ERROR}, draft
        if params.section_type not in VALID_SECTION_TYPES:
            raise ToolInputError(
                f"Invalid section type: {params.section_type}. Valid: {', '.join(VALID_SECTION_TYPES)}"
            )
        position = len(draft.sections) if params.position is None else params.position
        if not 0 <= position <= len(draft.sections):
            raise ToolInputError(f"Invalid position {position}. Valid: 0-{len(draft.sections)}")

        section = ReportSection(type=params.section_type, title=params.title, config=params.config)
        payload: ToolResult = {"success": True}
        preview = await self._section_preview(params.config)
        if preview is not None:
            if preview.success:
                section = section.model_copy(update={
                    "data": preview.rows,
                    "insight": analysis.section_insight(params.section_type, preview.rows, params.title),
                })
                payload["preview"] = preview.rows[:5]
            else:
                payload["preview_error"] = preview.error

        sections = list(draft.sections)
        sections.insert(position, section)
        payload.update({
            "section_index": position,
            "total_sections": len(sections),
            "has_data": section.data is not None,
            "insight": section.insight,
        })
        return payload, draft.with_sections(sections)

    async def _modify_section(self, params: ModifySectionInput, draft):
        if draft is None:
            return {"success": False, "error": NO_DRAFT_ERROR}, draft
        self._check_index(draft, params.section_index)

        current = draft.sections[params.section_index].model_dump()
        updates = dict(params.updates)
        if isinstance(updates.get("config"), dict):
            updates["config"] = {**current["config"], **updates["config"]}
        try:
            section = ReportSection.model_validate({**current, **updates})
        except PydanticValidationError as e:
            raise ToolInputError(f"Invalid section updates: {e.errors()[0]['msg']}", e) from e
        if section.type not in VALID_SECTION_TYPES:
            raise ToolInputError(f"Invalid section type: {section.type}")

        if "config" in updates and "data" not in updates:
            preview = await self._section_preview(section.config)
            if preview is not None and preview.success:
                section = section.model_copy(update={
                    "data": preview.rows,
                    "insight": analysis.section_insight(section.type, preview.rows, section.title),
                })

        sections = list(draft.sections)
        sections[params.section_index] = section
        return {
            "success": True,
            "section_index": params.section_index,
            "updated_fields": sorted(updates),
            "has_data": section.data is not None,
        }, draft.with_sections(sections)

    async def _remove_section(self, params: RemoveSectionInput, draft):
        if draft is None:
            return {"success": False, "error": NO_DRAFT_ERROR}, draft
        self._check_index(draft, params.section_index)
        sections = list(draft.sections)
        removed = sections.pop(params.section_index)
        return {
            "success": True,
            "removed": removed.title or removed.type,
            "total_sections": len(sections),
        }, draft.with_sections(sections)

    async def _reorder_sections(self, params: ReorderSectionsInput, draft):
        if draft is None:
            return {"success": False, "error": NO_DRAFT_ERROR}, draft
        if sorted(params.new_order) != list(range(len(draft.sections))):
            raise ToolInputError(
                f"new_order must list every section index 0-{len(draft.sections) - 1} exactly once"
            )
        sections = [draft.sections[i] for i in params.new_order]
        return {"success": True, "order": [s.title or s.type for s in sections]}, draft.with_sections(sections)

    async def _preview_report(self, params: PreviewReportInput, draft):
        if draft is None:
            return {"success": False, "error": NO_DRAFT_ERROR}, draft

        sections = []
        for section in draft.sections:
            if section.data is None:
                preview = await self._section_preview(section.config)
                if preview is not None and preview.success:
                    section = section.model_copy(update={
                        "data": preview.rows,
                        "insight": analysis.section_insight(section.type, preview.rows, section.title),
                    })
            sections.append(section)
        draft = draft.with_sections(sections)
        return {
            "success": True,
            "name": draft.name,
            "sections": [
                {"index": i, "type": s.type, "title": s.title, "has_data": s.data is not None}
                for i, s in enumerate(draft.sections)
            ],
        }, draft

    async def _finalize_report(self, params: FinalizeReportInput, draft):
        if draft is None:
            return {"success": False, "error": NO_DRAFT_ERROR}, draft
        return {
            "success": True,
            "report": draft.to_definition(),
            "summary": params.summary,
            "ready_to_save": True,
        }, draft

    # ------------------------------------------------------------------
    # Learning
    # ------------------------------------------------------------------

    async def _learn_terminology(self, params: LearnTerminologyInput, draft):
        await asyncio.to_thread(
            upsert_knowledge,
            self.store,
            customer_id=self.access.customer_id,
            knowledge_type="term",
            key=normalize_key(params.term),
            label=params.term,
            definition=params.meaning,
            source="learned",
            confidence=LEARNED_CONFIDENCE[params.confidence],
            is_active=True,
            needs_review=False,
            metadata={"maps_to_field": params.maps_to_field} if params.maps_to_field else None,
        )
        return {"success": True, "message": f'Learned: "{params.term}" means "{params.meaning}"'}, draft

    async def _learn_preference(self, params: LearnPreferenceInput, draft):
        key = f"{normalize_key(params.preference_type)}:{normalize_key(params.key)}"
        await asyncio.to_thread(
            upsert_knowledge,
            self.store,
            customer_id=self.access.customer_id,
            knowledge_type="preference",
            key=key,
            label=params.key,
            definition=params.value,
            source="learned",
            confidence=PREFERENCE_CONFIDENCE,
            is_active=True,
            needs_review=False,
            metadata={"context": params.context} if params.context else None,
        )
        return {"success": True, "message": f"Noted preference {key} = {params.value}"}, draft

    async def _record_correction(self, params: RecordCorrectionInput, draft):
        feedback_id = await asyncio.to_thread(
            record_feedback,
            self.store,
            customer_id=self.access.customer_id,
            trigger_type="correction",
            user_message=params.corrected,
            context={"original": params.original, "corrected": params.corrected, "context": params.context},
        )
        return {"success": True, "feedback_id": feedback_id, "status": "pending_review"}, draft

    async def _get_customer_memory(self, params: GetCustomerMemoryInput, draft):
        rows = await asyncio.to_thread(self.store.customer_knowledge, self.access.customer_id)
        memory: ToolResult = {"success": True}
        if params.include_terminology:
            memory["terminology"] = [
                {"term": r["label"] or r["key"], "meaning": r["definition"], "active": r["is_active"]}
                for r in rows
                if r["knowledge_type"] in ("term", "product")
            ]
        if params.include_preferences:
            memory["preferences"] = [
                {"key": r["key"], "value": r["definition"]}
                for r in rows
                if r["knowledge_type"] == "preference" and r["is_active"]
            ]
        if params.include_history:
            history = await asyncio.to_thread(
                self.store.fetch,
                "SELECT user_prompt, status, created_at FROM ai_report_audit "
                "WHERE customer_id = ? ORDER BY created_at DESC LIMIT 5",
                [self.access.customer_id],
            )
            memory["history"] = [
                {"prompt": h["user_prompt"], "status": h["status"], "at": str(h["created_at"])}
                for h in history
            ]
        return memory, draft

    async def _ask_clarification(self, params: AskClarificationInput, draft):
        return {
            "success": True,
            "awaiting_response": True,
            "question": params.question,
            "options": params.options or [],
            "context": params.context,
        }, draft
