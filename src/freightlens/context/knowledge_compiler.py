"""Knowledge compiler: global and tenant knowledge merged for the prompt.

Global rows act as defaults, tenant rows extend or override them. Rows are
ordered by confidence (documents by priority) so the strongest knowledge
is rendered first.
"""

from __future__ import annotations

import json
from typing import Any

from freightlens.agent.contracts import (
    KnowledgeContext,
    KnowledgeDocument,
    KnowledgeEntry,
    KnowledgeScope,
)
from freightlens.core.exceptions import DatabaseError
from freightlens.store.duckdb_store import ShipmentStore
from freightlens.utils.logging import get_logger


LOGGER = get_logger(__name__)

# knowledge_type -> KnowledgeContext attribute
KNOWLEDGE_BUCKETS: dict[str, str] = {
    "term": "terms",
    "field": "field_definitions",
    "calculation": "calculations",
    "product": "products",
    "rule": "rules",
    "preference": "preferences",
}

MAX_INDUSTRY_TERMS = 15
DOCUMENT_PREVIEW_CHARS = 500


def _parse_metadata(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _entry_from_row(row: dict[str, Any]) -> KnowledgeEntry:
    return KnowledgeEntry(
        id=row.get("id"),
        knowledge_type=row["knowledge_type"],
        key=row["key"],
        label=row.get("label"),
        definition=row.get("definition"),
        scope=KnowledgeScope(row.get("scope") or "global"),
        customer_id=row.get("customer_id") or None,
        source=row.get("source"),
        confidence=float(row["confidence"]) if row.get("confidence") is not None else 1.0,
        is_visible_to_customers=row.get("is_visible_to_customers") is not False,
        metadata=_parse_metadata(row.get("metadata")),
    )


def compile_knowledge_context(
    store: ShipmentStore,
    customer_id: str,
    is_admin: bool,
) -> KnowledgeContext:
    """Load active global + tenant knowledge.

    Falls back to an empty context if the knowledge tables cannot be read.
    """
    try:
        rows = store.fetch(
            "SELECT * FROM ai_knowledge "
            "WHERE is_active AND (scope = 'global' OR (scope = 'customer' AND customer_id = ?)) "
            "ORDER BY confidence DESC, key",
            [customer_id],
        )
        doc_rows = store.fetch(
            "SELECT * FROM ai_knowledge_documents "
            "WHERE is_active AND (scope = 'global' OR (scope = 'customer' AND customer_id = ?)) "
            "ORDER BY priority DESC, title",
            [customer_id],
        )
    except DatabaseError as e:
        LOGGER.warning("Knowledge unavailable for customer %s, using empty context: %s", customer_id, e)
        return KnowledgeContext()

    buckets: dict[str, list[KnowledgeEntry]] = {attr: [] for attr in KNOWLEDGE_BUCKETS.values()}
    for row in rows:
        entry = _entry_from_row(row)
        if not is_admin and not entry.is_visible_to_customers:
            continue
        attr = KNOWLEDGE_BUCKETS.get(entry.knowledge_type)
        if attr is None:
            LOGGER.debug("Skipping knowledge row with unknown type %s", entry.knowledge_type)
            continue
        buckets[attr].append(entry)

    documents = [
        KnowledgeDocument(
            id=row.get("id"),
            title=row["title"],
            content=row.get("content") or "",
            scope=KnowledgeScope(row.get("scope") or "global"),
            customer_id=row.get("customer_id") or None,
            priority=int(row.get("priority") or 0),
        )
        for row in doc_rows
    ]
    return KnowledgeContext(documents=documents, **buckets)


def format_knowledge_for_prompt(context: KnowledgeContext, is_admin: bool = False) -> str:
    """Render knowledge as prompt sections. Empty context renders nothing."""
    if context.is_empty():
        return ""

    parts: list[str] = []

    customer_terms = [t for t in context.terms if t.scope == KnowledgeScope.CUSTOMER]
    industry_terms = [t for t in context.terms if t.scope == KnowledgeScope.GLOBAL]
    if customer_terms or industry_terms:
        parts.append("## TERMINOLOGY")
        if customer_terms:
            parts.append("\n### This customer's terms (use these first)")
            for term in customer_terms:
                line = f"- **{term.label or term.key}**: {term.definition or ''}"
                field = term.metadata.get("maps_to_field")
                if field:
                    line += f" (field: `{field}`)"
                if is_admin and not term.is_visible_to_customers:
                    line += " (internal)"
                parts.append(line)
        if industry_terms:
            parts.append("\n### Industry terms")
            for term in industry_terms[:MAX_INDUSTRY_TERMS]:
                line = f"- **{term.label or term.key}**: {term.definition or ''}"
                if is_admin and not term.is_visible_to_customers:
                    line += " (internal)"
                parts.append(line)

    if context.field_definitions:
        parts.append("\n## FIELD DEFINITIONS")
        for entry in context.field_definitions:
            parts.append(f"- `{entry.key}`: {entry.definition or ''}")

    if context.products:
        parts.append("\n## PRODUCTS")
        parts.append("Search these fields when the user mentions a product:")
        for product in context.products:
            search_fields = product.metadata.get("search_fields") or ["description"]
            keywords = product.metadata.get("keywords") or [product.label or product.key]
            parts.append(
                f"- **{product.label or product.key}**: search {', '.join(search_fields)} "
                f"for {', '.join(str(k) for k in keywords)}"
            )

    if context.calculations:
        parts.append("\n## CALCULATIONS")
        for calc in context.calculations:
            formula = calc.metadata.get("formula") or calc.definition or ""
            parts.append(f"- **{calc.label or calc.key}**: `{formula}`")

    if context.rules:
        parts.append("\n## BUSINESS RULES")
        for rule in context.rules:
            parts.append(f"- {rule.definition or rule.label or rule.key}")

    if context.preferences:
        parts.append("\n## CUSTOMER PREFERENCES")
        for pref in context.preferences:
            parts.append(f"- {pref.key}: {pref.definition or ''}")

    if context.documents:
        parts.append("\n## REFERENCE DOCUMENTS")
        for doc in context.documents:
            preview = doc.content[:DOCUMENT_PREVIEW_CHARS]
            if len(doc.content) > DOCUMENT_PREVIEW_CHARS:
                preview += "..."
            parts.append(f"\n### {doc.title}\n{preview}")

    return "\n".join(parts) + "\n"
