"""Persistence for learned tenant knowledge.

Terminology and product learnings become ``ai_knowledge`` rows keyed by
(knowledge_type, key, scope, customer_id). Low-confidence rows are stored
inactive and flagged for review. Corrections never become knowledge
directly: they are written to ``ai_learning_feedback`` for a human.
"""

from __future__ import annotations

import json
import re
import uuid
from typing import Any

from freightlens.agent.contracts import LearningExtraction
from freightlens.core.exceptions import DatabaseError
from freightlens.store.duckdb_store import ShipmentStore
from freightlens.utils.logging import get_logger


LOGGER = get_logger(__name__)

# Learnings at or above this confidence are active immediately
ACTIVE_CONFIDENCE_THRESHOLD = 0.8

PREFERENCE_WEIGHT_STEP = 0.1
MAX_PREFERENCE_WEIGHT = 1.0

KNOWLEDGE_TYPES = {"terminology": "term", "product": "product"}


def normalize_key(text: str, keep: str = "") -> str:
    """Lowercase ``text`` and collapse anything else into underscores."""
    return re.sub(rf"[^a-z0-9{re.escape(keep)}]+", "_", text.lower()).strip("_")


def upsert_knowledge(
    store: ShipmentStore,
    *,
    customer_id: str,
    knowledge_type: str,
    key: str,
    label: str,
    definition: str,
    source: str,
    confidence: float,
    is_active: bool,
    needs_review: bool,
    metadata: dict[str, Any] | None = None,
) -> None:
    """Insert or update one tenant-scoped knowledge row.

    Raises:
        DatabaseError: If the write fails
    """
    store.execute_write(
        "INSERT INTO ai_knowledge (id, knowledge_type, key, label, definition, scope, customer_id, "
        "source, confidence, needs_review, is_active, is_visible_to_customers, metadata, updated_at) "
        "VALUES (?, ?, ?, ?, ?, 'customer', ?, ?, ?, ?, ?, TRUE, ?, current_timestamp) "
        "ON CONFLICT (knowledge_type, key, scope, customer_id) DO UPDATE SET "
        "label = excluded.label, definition = excluded.definition, source = excluded.source, "
        "confidence = excluded.confidence, needs_review = excluded.needs_review, "
        "is_active = excluded.is_active, metadata = excluded.metadata, updated_at = excluded.updated_at",
        [
            str(uuid.uuid4()),
            knowledge_type,
            key,
            label,
            definition,
            customer_id,
            source,
            confidence,
            needs_review,
            is_active,
            json.dumps(metadata or {}),
        ],
    )


def record_feedback(
    store: ShipmentStore,
    *,
    customer_id: str,
    trigger_type: str,
    user_message: str,
    context: dict[str, Any] | None = None,
) -> str:
    """Write a pending-review feedback row and return its id."""
    feedback_id = str(uuid.uuid4())
    store.execute_write(
        "INSERT INTO ai_learning_feedback (id, customer_id, trigger_type, user_message, context, status) "
        "VALUES (?, ?, ?, ?, ?, 'pending_review')",
        [feedback_id, customer_id, trigger_type, user_message, json.dumps(context or {})],
    )
    return feedback_id


def bump_preference(store: ShipmentStore, customer_id: str, key: str, value: str) -> None:
    """Raise the weight of a preference by one step, capped at the maximum."""
    store.execute_write(
        "INSERT INTO ai_customer_preferences (customer_id, preference_key, preference_value, weight, updated_at) "
        "VALUES (?, ?, ?, ?, current_timestamp) "
        "ON CONFLICT (customer_id, preference_key, preference_value) DO UPDATE SET "
        f"weight = least(weight + {PREFERENCE_WEIGHT_STEP}, {MAX_PREFERENCE_WEIGHT}), "
        "updated_at = current_timestamp",
        [customer_id, key, value, PREFERENCE_WEIGHT_STEP],
    )


def save_customer_learnings(
    store: ShipmentStore,
    customer_id: str,
    learnings: list[LearningExtraction],
) -> int:
    """Persist extracted learnings. Returns how many were written.

    A failing entry is logged and skipped so one bad row does not lose the
    rest of the turn's learnings.
    """
    saved = 0
    for learning in learnings:
        try:
            if learning.type in KNOWLEDGE_TYPES:
                upsert_knowledge(
                    store,
                    customer_id=customer_id,
                    knowledge_type=KNOWLEDGE_TYPES[learning.type],
                    key=learning.key,
                    label=learning.label or learning.key.replace("_", " "),
                    definition=learning.value,
                    source="learned" if learning.source == "explicit" else "inferred",
                    confidence=learning.confidence,
                    is_active=learning.confidence >= ACTIVE_CONFIDENCE_THRESHOLD,
                    needs_review=learning.confidence < ACTIVE_CONFIDENCE_THRESHOLD,
                    metadata={"maps_to_field": learning.maps_to_field} if learning.maps_to_field else None,
                )
            elif learning.type == "preference":
                bump_preference(store, customer_id, learning.key, learning.value)
            elif learning.type == "correction":
                record_feedback(
                    store,
                    customer_id=customer_id,
                    trigger_type="correction",
                    user_message=learning.value,
                )
            saved += 1
        except DatabaseError as e:
            LOGGER.error(
                "Failed to save %s learning %r for customer %s: %s",
                learning.type, learning.key, customer_id, e,
            )
    return saved
