"""Split raw model text into user-facing prose and structured payloads.

Two stages: strict ``<report_json>`` extraction first, then a
bracket-balanced scan for a bare JSON object carrying ``"sections"`` when
the tag is missing. ``<learning_flag>`` blocks are parsed separately; all
structured blocks are stripped from the prose.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any

from freightlens.agent.contracts import LearningExtraction
from freightlens.learning.extractor import parse_learning_flags
from freightlens.utils.logging import get_logger


LOGGER = get_logger(__name__)

_REPORT_TAG_RE = re.compile(r"<report_json>(.*?)</report_json>", re.DOTALL | re.IGNORECASE)
_LEARNING_TAG_RE = re.compile(r"<learning_flag>.*?</learning_flag>", re.DOTALL | re.IGNORECASE)
_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$")


@dataclass
class ParsedResponse:
    prose: str
    report: dict[str, Any] | None = None
    learnings: list[LearningExtraction] = field(default_factory=list)


def _loads_object(text: str) -> dict[str, Any] | None:
    try:
        value = json.loads(_FENCE_RE.sub("", text.strip()))
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


def _balanced_objects(text: str):
    """Yield ``(start, end)`` spans of top-level balanced ``{...}`` blocks."""
    depth = 0
    start = -1
    in_string = False
    escaped = False
    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = depth > 0
        elif ch == "{":
            if depth == 0:
                start = i
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                yield start, i + 1


def _scan_for_report(text: str) -> tuple[dict[str, Any] | None, str]:
    for start, end in _balanced_objects(text):
        candidate = _loads_object(text[start:end])
        if candidate is not None and "sections" in candidate:
            return candidate, text[:start] + text[end:]
    return None, text


def _tidy(text: str) -> str:
    text = re.sub(r"```(?:json)?\s*```", "", text)
    return re.sub(r"\n{3,}", "\n\n", text).strip()


def parse_response(text: str) -> ParsedResponse:
    """Parse raw model output. Pure function."""
    text = text or ""
    learnings = parse_learning_flags(text)
    remaining = _LEARNING_TAG_RE.sub("", text)

    report = None
    match = _REPORT_TAG_RE.search(remaining)
    if match:
        report = _loads_object(match.group(1))
        if report is None:
            LOGGER.warning("report_json block did not contain a JSON object")
        remaining = _REPORT_TAG_RE.sub("", remaining)
    else:
        report, remaining = _scan_for_report(remaining)

    return ParsedResponse(prose=_tidy(remaining), report=report, learnings=learnings)
