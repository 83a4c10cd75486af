"""Learning extraction from user-authored conversation text.

Extraction is a chain of pattern matchers. Each matcher looks at the user
messages in order and returns candidate learnings; the chain result is
deduplicated by (type, key), first occurrence kept. Assistant text is never
scanned.
"""

from __future__ import annotations

import re
from typing import Any, Protocol

from freightlens.agent.contracts import LearningExtraction, Message
from freightlens.utils.logging import get_logger


LOGGER = get_logger(__name__)

CONFIDENCE_LEVELS = {"high": 0.9, "medium": 0.7, "low": 0.5}

MAX_TERM_LENGTH = 49

_LEARNING_FLAG_RE = re.compile(r"<learning_flag>(.*?)</learning_flag>", re.DOTALL | re.IGNORECASE)


def _term_key(term: str) -> str:
    return re.sub(r"\s+", "_", term.strip().lower())


def _clean(text: str) -> str:
    return text.strip().strip("'\"").strip().rstrip(".,;!?").strip()


class PatternMatcher(Protocol):
    def match(self, user_messages: list[str], report: dict[str, Any] | None) -> list[LearningExtraction]:
        ...


class TerminologyMatcher:
    """Explicit teachings: "when I say X, I mean Y", "by X I mean Y", "X means Y"."""

    patterns = (
        re.compile(r"when I say ['\"]?([^'\"\n,]+?)['\"]?,?\s+I mean\s+([^\n]+)", re.IGNORECASE),
        re.compile(r"\bby ['\"]?([^'\"\n,]+?)['\"]?,?\s+I mean\s+([^\n]+)", re.IGNORECASE),
        re.compile(r"['\"]?\b([A-Za-z][\w-]*(?: [\w-]+){0,3})['\"]?\s+(?:means|refers to)\s+([^\n]+)", re.IGNORECASE),
        re.compile(r"['\"]([^'\"\n]+)['\"]\s+is\s+([^\n]+)", re.IGNORECASE),
    )

    def match(self, user_messages, report):
        user_text = "\n".join(user_messages)
        found = []
        for pattern in self.patterns:
            for m in pattern.finditer(user_text):
                term = _clean(m.group(1))
                meaning = _clean(m.group(2)) or term
                if not 2 <= len(term) <= MAX_TERM_LENGTH:
                    continue
                found.append(LearningExtraction(
                    type="terminology",
                    key=_term_key(term),
                    value=meaning,
                    label=term,
                    confidence=1.0,
                    source="explicit",
                ))
        return found


class ProductMatcher:
    """Product declarations: "we sell X, Y and Z", "our products are ..."."""

    patterns = (
        re.compile(r"\bwe (?:sell|ship|have|make)\s+([^\n.]+)", re.IGNORECASE),
        re.compile(r"\bour products? (?:are|include)\s+([^\n.]+)", re.IGNORECASE),
        re.compile(r"\bproduct types?:\s*([^\n.]+)", re.IGNORECASE),
    )

    def match(self, user_messages, report):
        user_text = "\n".join(user_messages)
        found = []
        for pattern in self.patterns:
            for m in pattern.finditer(user_text):
                for product in re.split(r",\s*|\s+and\s+", m.group(1)):
                    product = _clean(product)
                    if not 0 < len(product) <= MAX_TERM_LENGTH:
                        continue
                    found.append(LearningExtraction(
                        type="product",
                        key=_term_key(product),
                        value=product,
                        label=product,
                        confidence=0.9,
                        source="explicit",
                    ))
        return found


class ChartPreferenceMatcher:
    """Chart-type requests, only while a report is being edited."""

    pattern = re.compile(r"make it an? (\w+) chart", re.IGNORECASE)

    def match(self, user_messages, report):
        if not report:
            return []
        m = self.pattern.search("\n".join(user_messages))
        if not m:
            return []
        return [LearningExtraction(
            type="preference",
            key="chart_type",
            value=m.group(1).lower(),
            confidence=0.7,
            source="inferred",
        )]


class CorrectionMatcher:
    """Correction signals, recorded generically for human review."""

    patterns = (
        re.compile(r"\bno,?\s*(?:that's not right|that's wrong|I meant)", re.IGNORECASE),
        re.compile(r"\bactually,?\s*I (?:want|meant|need)", re.IGNORECASE),
        re.compile(r"that's incorrect", re.IGNORECASE),
    )

    def match(self, user_messages, report):
        # Most recent message that carries the signal
        for message in reversed(user_messages):
            if any(p.search(message) for p in self.patterns):
                return [LearningExtraction(
                    type="correction",
                    key="needs_review",
                    value=message,
                    confidence=0.5,
                    source="inferred",
                )]
        return []


DEFAULT_MATCHERS: tuple[PatternMatcher, ...] = (
    TerminologyMatcher(),
    ProductMatcher(),
    ChartPreferenceMatcher(),
    CorrectionMatcher(),
)


def extract_learnings(
    history: list[Message],
    current_prompt: str,
    report: dict[str, Any] | None,
    matchers: tuple[PatternMatcher, ...] = DEFAULT_MATCHERS,
) -> list[LearningExtraction]:
    """Run the matcher chain over user text; at most one entry per (type, key)."""
    user_messages = [m.content for m in history if m.role == "user"] + [current_prompt]

    seen: set[tuple[str, str]] = set()
    learnings: list[LearningExtraction] = []
    for matcher in matchers:
        for learning in matcher.match(user_messages, report):
            marker = (learning.type, learning.key)
            if marker in seen:
                continue
            seen.add(marker)
            learnings.append(learning)
    return learnings


def parse_learning_flags(text: str) -> list[LearningExtraction]:
    """Parse ``<learning_flag>`` blocks emitted by the model.

    Each block holds ``key: value`` lines; ``term`` is required.
    """
    learnings = []
    for block in _LEARNING_FLAG_RE.findall(text or ""):
        fields: dict[str, str] = {}
        for line in block.strip().splitlines():
            key, sep, value = line.partition(":")
            if sep and key.strip() and value.strip():
                fields[key.strip().lower()] = value.strip()
        term = fields.get("term")
        if not term:
            LOGGER.debug("Ignoring learning flag without a term")
            continue
        learnings.append(LearningExtraction(
            type="terminology",
            key=_term_key(term),
            label=term,
            value=fields.get("user_said") or fields.get("ai_understood") or term,
            confidence=CONFIDENCE_LEVELS.get(fields.get("confidence", "").lower(), 0.7),
            source="inferred",
            maps_to_field=fields.get("maps_to_field"),
        ))
    return learnings
