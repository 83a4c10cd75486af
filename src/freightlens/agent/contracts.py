"""Pydantic contracts for the report-building agent.

This module defines the structured objects passed between the compilers,
the tool executor, the policy layer and the orchestrator.

Contracts:
- AccessContext: Tenant id + admin flag scoping every operation
- SchemaField / DataProfile / SchemaContext: Compiled schema for one request
- KnowledgeEntry / KnowledgeDocument / KnowledgeContext: Tenant knowledge
- ToolExecution: Immutable log record of one tool call
- ReportSection / ReportDraft: The work-in-progress report
- LearningExtraction: A learnable fact pulled out of a conversation
- GenerateReportRequest / GenerateReportResponse: Agent invocation I/O
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


def utc_now_iso() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


# =============================================================================
# Enums
# =============================================================================

class KnowledgeScope(str, Enum):
    """Visibility scope of a knowledge row."""

    GLOBAL = "global"
    CUSTOMER = "customer"


class AuditStatus(str, Enum):
    """Status written to the report audit log."""

    OK = "ok"
    FLAGGED = "flagged"
    FAILED = "failed"


# =============================================================================
# Access
# =============================================================================

class AccessContext(BaseModel):
    """Tenant scope for one agent invocation."""

    model_config = ConfigDict(frozen=True)

    customer_id: str = Field(..., min_length=1, description="Tenant / customer identifier")
    is_admin: bool = Field(False, description="Admin callers bypass field restrictions")


class AccessControlResult(BaseModel):
    """Outcome of the code-level access gate over a report definition."""

    allowed: bool
    sanitized_report: dict[str, Any]
    violations: list[str] = Field(default_factory=list)


# =============================================================================
# Schema Context
# =============================================================================

class SchemaField(BaseModel):
    """One data column available to the agent."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Column name")
    display_name: str | None = Field(None, description="Human readable label")
    data_type: str = Field("text", description="Declared type: text, number, date, ...")
    is_groupable: bool = Field(True, description="Can be used as a group-by dimension")
    is_aggregatable: bool = Field(False, description="Can be summed / averaged")
    is_searchable: bool = Field(False, description="Participates in text search")
    business_context: str | None = Field(None, description="Business meaning of the field")
    ai_usage_hint: str | None = Field(None, description="How the model should use the field")
    admin_only: bool = Field(False, description="Hidden from non-admin callers")


class DataProfile(BaseModel):
    """Tenant-specific aggregate statistics used to ground the prompt."""

    total_shipments: int = 0
    state_count: int = 0
    carrier_count: int = 0
    months_of_data: int = 0
    first_date: str | None = None
    last_date: str | None = None
    top_states: list[str] = Field(default_factory=list)
    top_carriers: list[str] = Field(default_factory=list)
    avg_shipments_per_day: float = 0.0
    has_canada_data: bool = False


class SchemaContext(BaseModel):
    """Immutable schema bundle built once per agent invocation."""

    model_config = ConfigDict(frozen=True)

    fields: list[SchemaField] = Field(default_factory=list)
    data_profile: DataProfile | None = None
    source: str = Field("default", description="Provider tier the fields came from")

    def field_names(self) -> list[str]:
        return [f.name for f in self.fields]

    def get_field(self, name: str) -> SchemaField | None:
        lowered = name.lower()
        for field in self.fields:
            if field.name.lower() == lowered:
                return field
        return None


# =============================================================================
# Knowledge Context
# =============================================================================

class KnowledgeEntry(BaseModel):
    """A terminology / calculation / product / rule / preference row."""

    id: str | None = None
    knowledge_type: str
    key: str
    label: str | None = None
    definition: str | None = None
    scope: KnowledgeScope = KnowledgeScope.GLOBAL
    customer_id: str | None = None
    source: str | None = None
    confidence: float = 1.0
    is_visible_to_customers: bool = True
    metadata: dict[str, Any] = Field(default_factory=dict)


class KnowledgeDocument(BaseModel):
    """A reference document attached to global or tenant knowledge."""

    id: str | None = None
    title: str
    content: str = ""
    scope: KnowledgeScope = KnowledgeScope.GLOBAL
    customer_id: str | None = None
    priority: int = 0


class KnowledgeContext(BaseModel):
    """Merged global + tenant knowledge, ordered by confidence/priority."""

    terms: list[KnowledgeEntry] = Field(default_factory=list)
    field_definitions: list[KnowledgeEntry] = Field(default_factory=list)
    calculations: list[KnowledgeEntry] = Field(default_factory=list)
    products: list[KnowledgeEntry] = Field(default_factory=list)
    rules: list[KnowledgeEntry] = Field(default_factory=list)
    preferences: list[KnowledgeEntry] = Field(default_factory=list)
    documents: list[KnowledgeDocument] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not any([
            self.terms, self.field_definitions, self.calculations,
            self.products, self.rules, self.preferences, self.documents,
        ])


# =============================================================================
# Tool Execution
# =============================================================================

class ToolExecution(BaseModel):
    """Immutable log record of one tool call."""

    model_config = ConfigDict(frozen=True)

    tool_name: str
    tool_input: dict[str, Any] = Field(default_factory=dict)
    result: dict[str, Any] = Field(default_factory=dict)
    timestamp: str = Field(default_factory=utc_now_iso)
    duration_ms: float = 0.0

    @property
    def success(self) -> bool:
        return bool(self.result.get("success"))


# =============================================================================
# Report Draft
# =============================================================================

class DateRange(BaseModel):
    """Date range: a period preset or custom start/end."""

    type: str = "last30"
    start: str | None = None
    end: str | None = None


class ReportSection(BaseModel):
    """One section of a report definition."""

    type: str
    title: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    data: list[dict[str, Any]] | None = None
    insight: str | None = None


class ReportDraft(BaseModel):
    """The work-in-progress report assembled through tool calls.

    Drafts are never mutated in place: every tool that changes the draft
    returns a new instance via ``model_copy``.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str
    name: str = "Untitled Report"
    description: str | None = None
    theme: str = "blue"
    date_range: DateRange = Field(default_factory=DateRange, alias="dateRange")
    sections: list[ReportSection] = Field(default_factory=list)
    calculated_fields: list[dict[str, Any]] = Field(default_factory=list, alias="calculatedFields")
    customer_id: str | None = Field(None, alias="customerId")
    created_at: str = Field(default_factory=utc_now_iso, alias="createdAt")

    def with_sections(self, sections: list[ReportSection]) -> "ReportDraft":
        return self.model_copy(update={"sections": sections})

    def to_definition(self) -> dict[str, Any]:
        """Serialize to the persisted report definition form (camelCase keys)."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# =============================================================================
# Learning
# =============================================================================

class LearningExtraction(BaseModel):
    """A learnable fact extracted from conversation text or a tool call."""

    type: Literal["terminology", "product", "preference", "correction"]
    key: str
    value: str
    label: str | None = Field(None, description="The term as the user wrote it")
    confidence: float = Field(..., ge=0.0, le=1.0)
    source: Literal["explicit", "inferred"] = "explicit"
    maps_to_field: str | None = None


# =============================================================================
# Agent invocation
# =============================================================================

class Message(BaseModel):
    """One prior conversation turn."""

    role: Literal["user", "assistant"]
    content: str


class ValidationOutcome(BaseModel):
    """Result of validating a report definition against the schema."""

    valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class GenerateReportRequest(BaseModel):
    """Agent invocation input."""

    prompt: str = Field(..., min_length=1, description="Natural language request")
    conversation_history: list[Message] = Field(default_factory=list)
    customer_id: str = Field(..., min_length=1)
    is_admin: bool = False
    customer_name: str | None = None
    current_report: dict[str, Any] | None = Field(None, description="Report the user is viewing")
    draft: ReportDraft | None = Field(None, description="Draft threaded from a previous turn")

    @property
    def access(self) -> AccessContext:
        return AccessContext(customer_id=self.customer_id, is_admin=self.is_admin)


class GenerateReportResponse(BaseModel):
    """Agent invocation output."""

    success: bool
    data: dict[str, Any] | None = None
    message: str
    learnings: list[LearningExtraction] | None = None
    validation_errors: list[str] | None = None
    tool_executions: list[ToolExecution] = Field(default_factory=list)
    draft: ReportDraft | None = None
    rounds: int = Field(0, description="Model round-trips used this turn")
