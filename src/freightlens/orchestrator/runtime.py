"""Orchestrator runtime for the report agent.

One user turn runs through a fixed sequence of states:
BUILD_CONTEXT → COMPOSE_PROMPT → CALL_MODEL ⇄ EXECUTE_TOOLS → VALIDATE →
AUTO_FIX → FINALIZE, ending in REPORT_ERROR when a report cannot be
repaired and in EXTRACT_LEARNINGS when the model answers without one.

Key features:
- Bounded number of model round-trips and a wall-clock limit per turn
- Report draft threaded explicitly through every tool call
- Access control, message guard and audit on every finished turn
- Generic user-safe text for provider failures
"""

from __future__ import annotations

import asyncio
import json
import os
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from freightlens.agent.contracts import (
    AuditStatus,
    GenerateReportRequest,
    GenerateReportResponse,
    LearningExtraction,
    ReportDraft,
    SchemaContext,
    ToolExecution,
)
from freightlens.context.knowledge_compiler import compile_knowledge_context
from freightlens.context.schema_compiler import compile_schema_context
from freightlens.core.exceptions import ConfigurationError, DatabaseError, LLMProviderError
from freightlens.learning.extractor import extract_learnings
from freightlens.learning.persistence import save_customer_learnings
from freightlens.llm.router import complete, user_message_for
from freightlens.orchestrator.prompts import build_system_prompt
from freightlens.orchestrator.response_parser import parse_response
from freightlens.safety.access_policy import enforce_access_control
from freightlens.safety.message_guard import guard_message
from freightlens.safety.output_validator import attempt_auto_fix, validate_report_output
from freightlens.store.duckdb_store import ShipmentStore
from freightlens.tools.definitions import tool_definitions
from freightlens.tools.executor import ToolExecutor
from freightlens.utils.logging import get_logger


LOGGER = get_logger(__name__)


class OrchestratorState(str, Enum):
    BUILD_CONTEXT = "build_context"
    COMPOSE_PROMPT = "compose_prompt"
    CALL_MODEL = "call_model"
    EXECUTE_TOOLS = "execute_tools"
    VALIDATE = "validate"
    AUTO_FIX = "auto_fix"
    FINALIZE = "finalize"
    REPORT_ERROR = "report_error"
    EXTRACT_LEARNINGS = "extract_learnings"


@dataclass
class OrchestratorConfig:
    """Configuration for the orchestrator."""

    max_tool_rounds: int = 8
    tool_timeout: float = 20.0
    total_timeout: float = 120.0

    llm_provider: str | None = None
    model: str | None = None
    temperature: float | None = None
    max_tokens: int = 4096
    llm_timeout: int = 60

    @classmethod
    def from_env(cls) -> "OrchestratorConfig":
        return cls(
            max_tool_rounds=int(os.environ.get("FL_MAX_TOOL_ROUNDS", "8")),
            tool_timeout=float(os.environ.get("FL_TOOL_TIMEOUT", "20")),
            total_timeout=float(os.environ.get("FL_TOTAL_TIMEOUT", "120")),
            llm_provider=os.environ.get("FL_LLM_PROVIDER"),
            model=os.environ.get("FL_AGENT_MODEL"),
        )


@dataclass
class TurnState:
    """Mutable bookkeeping for one turn. Survives a total-timeout cancel."""

    draft: ReportDraft | None
    messages: list[dict[str, Any]] = field(default_factory=list)
    executions: list[ToolExecution] = field(default_factory=list)
    state: OrchestratorState = OrchestratorState.BUILD_CONTEXT
    rounds: int = 0
    final_text: str = ""
    finalized_report: dict[str, Any] | None = None
    summary: str | None = None
    clarification: str | None = None
    timed_out: bool = False


def _merge_learnings(*groups: list[LearningExtraction]) -> list[LearningExtraction]:
    seen: set[tuple[str, str]] = set()
    merged = []
    for group in groups:
        for learning in group:
            if (learning.type, learning.key) not in seen:
                seen.add((learning.type, learning.key))
                merged.append(learning)
    return merged


class ReportOrchestrator:
    """Runs the tool-calling agent loop for one request at a time.

    Holds no per-conversation state; concurrent requests each build their
    own ToolExecutor and draft.

    Usage:
        orchestrator = ReportOrchestrator(ShipmentStore(db_path))
        response = await orchestrator.generate_report(
            GenerateReportRequest(prompt="Spend by carrier", customer_id="c-100")
        )
    """

    def __init__(self, store: ShipmentStore | Path | str, config: OrchestratorConfig | None = None):
        self.store = store if isinstance(store, ShipmentStore) else ShipmentStore(store)
        self.config = config or OrchestratorConfig.from_env()

    async def generate_report(self, request: GenerateReportRequest) -> GenerateReportResponse:
        access = request.access
        turn = TurnState(draft=request.draft)

        schema, knowledge = await asyncio.gather(
            asyncio.to_thread(compile_schema_context, self.store, access.customer_id),
            asyncio.to_thread(compile_knowledge_context, self.store, access.customer_id, access.is_admin),
        )

        turn.state = OrchestratorState.COMPOSE_PROMPT
        system_prompt = build_system_prompt(
            access,
            schema,
            knowledge,
            customer_name=request.customer_name,
            current_report=request.current_report,
        )
        turn.messages = [{"role": m.role, "content": m.content} for m in request.conversation_history]
        turn.messages.append({"role": "user", "content": request.prompt})
        executor = ToolExecutor(self.store, access, timeout_seconds=self.config.tool_timeout)

        try:
            await asyncio.wait_for(
                self._run_tool_loop(turn, executor, system_prompt),
                timeout=self.config.total_timeout,
            )
        except asyncio.TimeoutError:
            turn.timed_out = True
            LOGGER.warning(
                "Turn for customer %s exceeded %.0fs after %d rounds",
                access.customer_id, self.config.total_timeout, turn.rounds,
            )
        except (LLMProviderError, ConfigurationError) as e:
            category = getattr(e, "category", "unknown")
            LOGGER.error(
                "LLM call failed for customer %s (%s) in round %d: %s",
                access.customer_id, category, turn.rounds, e,
            )
            await asyncio.to_thread(self._audit, request, turn, None, AuditStatus.FAILED, [f"provider:{category}"])
            return GenerateReportResponse(
                success=False,
                message=user_message_for(category),
                tool_executions=turn.executions,
                draft=turn.draft,
                rounds=turn.rounds,
            )

        return await self._finish(request, turn, schema)

    async def _run_tool_loop(self, turn: TurnState, executor: ToolExecutor, system_prompt: str) -> None:
        tools = tool_definitions()
        while turn.rounds < self.config.max_tool_rounds:
            turn.state = OrchestratorState.CALL_MODEL
            turn.rounds += 1
            response = await complete(
                system_prompt,
                turn.messages,
                tools=tools,
                provider=self.config.llm_provider,
                model=self.config.model,
                temperature=self.config.temperature,
                max_tokens=self.config.max_tokens,
                timeout=self.config.llm_timeout,
            )
            turn.final_text = response.text
            if not response.tool_calls:
                return

            turn.state = OrchestratorState.EXECUTE_TOOLS
            turn.messages.append({"role": "assistant", "content": response.text, "tool_calls": response.tool_calls})
            stop = False
            # Emitted order; later calls may depend on earlier ones
            for call in response.tool_calls:
                execution, turn.draft = await executor.execute(call.name, call.input, turn.draft)
                turn.executions.append(execution)
                turn.messages.append({
                    "role": "tool",
                    "tool_call_id": call.id,
                    "name": call.name,
                    "content": json.dumps(execution.result, default=str),
                })
                if execution.success and call.name == "finalize_report" and turn.draft is not None:
                    turn.finalized_report = turn.draft.to_definition()
                    turn.summary = str(call.input.get("summary") or "")
                    stop = True
                elif execution.success and call.name == "ask_clarification":
                    turn.clarification = str(call.input.get("question") or "")
                    stop = True
            if stop:
                return

        LOGGER.warning("Tool round limit (%d) reached", self.config.max_tool_rounds)

    async def _finish(
        self,
        request: GenerateReportRequest,
        turn: TurnState,
        schema: SchemaContext,
    ) -> GenerateReportResponse:
        access = request.access
        parsed = parse_response(turn.final_text)
        report = turn.finalized_report or parsed.report
        prose = turn.clarification or turn.summary or parsed.prose

        learnings = _merge_learnings(
            extract_learnings(
                request.conversation_history, request.prompt, report or request.current_report
            ),
            parsed.learnings,
        )

        if report is None:
            turn.state = OrchestratorState.EXTRACT_LEARNINGS
            await self._save_learnings(access.customer_id, learnings)
            if turn.timed_out:
                await asyncio.to_thread(self._audit, request, turn, None, AuditStatus.FAILED, ["timeout"])
                return self._response(turn, False, user_message_for("timeout"), learnings=learnings)
            await asyncio.to_thread(self._audit, request, turn, None, AuditStatus.OK, [])
            return self._response(turn, True, self._guarded(prose, access.is_admin), learnings=learnings)

        turn.state = OrchestratorState.VALIDATE
        outcome = validate_report_output(report, schema, access)
        if not outcome.valid:
            turn.state = OrchestratorState.AUTO_FIX
            fixed = attempt_auto_fix(report, schema)
            if fixed is None:
                turn.state = OrchestratorState.REPORT_ERROR
                LOGGER.warning(
                    "Report for customer %s failed validation: %s", access.customer_id, outcome.errors
                )
                await self._save_learnings(access.customer_id, learnings)
                await asyncio.to_thread(self._audit, request, turn, report, AuditStatus.FAILED, outcome.errors)
                message = "I couldn't build a valid report:\n" + "\n".join(f"- {e}" for e in outcome.errors)
                return self._response(turn, False, message, learnings=learnings, validation_errors=outcome.errors)
            LOGGER.info("Auto-fixed report for customer %s", access.customer_id)
            report = fixed

        turn.state = OrchestratorState.FINALIZE
        admin_only = [f.name for f in schema.fields if f.admin_only]
        access_result = enforce_access_control(report, access, extra_restricted=admin_only)
        report = access_result.sanitized_report
        report.setdefault("id", turn.draft.id if turn.draft is not None else str(uuid.uuid4()))

        await self._save_learnings(access.customer_id, learnings)
        status = AuditStatus.FLAGGED if access_result.violations else AuditStatus.OK
        await asyncio.to_thread(self._audit, request, turn, report, status, access_result.violations)

        message = self._guarded(prose, access.is_admin) or (
            f'Created "{report.get("name", "report")}" with {len(report.get("sections") or [])} sections.'
        )
        return self._response(turn, True, message, data=report, learnings=learnings)

    def _guarded(self, prose: str, is_admin: bool) -> str:
        verdict = guard_message(prose, is_admin)
        return verdict.sanitized_message if verdict.was_modified else prose

    def _response(
        self,
        turn: TurnState,
        success: bool,
        message: str,
        *,
        data: dict[str, Any] | None = None,
        learnings: list[LearningExtraction] | None = None,
        validation_errors: list[str] | None = None,
    ) -> GenerateReportResponse:
        return GenerateReportResponse(
            success=success,
            data=data,
            message=message,
            learnings=learnings or None,
            validation_errors=validation_errors,
            tool_executions=turn.executions,
            draft=turn.draft,
            rounds=turn.rounds,
        )

    async def _save_learnings(self, customer_id: str, learnings: list[LearningExtraction]) -> None:
        if learnings:
            saved = await asyncio.to_thread(save_customer_learnings, self.store, customer_id, learnings)
            LOGGER.info("Saved %d/%d learnings for customer %s", saved, len(learnings), customer_id)

    def _audit(
        self,
        request: GenerateReportRequest,
        turn: TurnState,
        report: dict[str, Any] | None,
        status: AuditStatus,
        violations: list[str],
    ) -> None:
        """Write one audit row. Audit failures are logged, never raised."""
        context_used = {
            "tools_used": [e.tool_name for e in turn.executions],
            "rounds": turn.rounds,
            "is_admin": request.is_admin,
            "timed_out": turn.timed_out,
        }
        try:
            self.store.execute_write(
                "INSERT INTO ai_report_audit (id, customer_id, customer_name, user_prompt, ai_response, "
                "generated_report, status, success, violations, context_used) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    str(uuid.uuid4()),
                    request.customer_id,
                    request.customer_name,
                    request.prompt,
                    turn.final_text,
                    json.dumps(report, default=str) if report is not None else None,
                    status.value,
                    status != AuditStatus.FAILED,
                    json.dumps(violations),
                    json.dumps(context_used),
                ],
            )
        except DatabaseError as e:
            LOGGER.error("Failed to write audit for customer %s: %s", request.customer_id, e)


def run_report(db_path: Path | str, request: GenerateReportRequest, config: OrchestratorConfig | None = None):
    """Synchronous entry point for scripts and the CLI."""
    return asyncio.run(ReportOrchestrator(db_path, config).generate_report(request))
