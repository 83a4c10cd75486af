"""Message guard over conversational text returned to customer users.

Implements:
- Restricted field mention scan (ignoring mentions inside a safe phrase)
- Financial value patterns ("margin is 12%", "carrier cost of $450")
- Always-flag phrases ("our margin is", "internal cost")

The guard grades a message none < low < medium < high < critical and
redacts high and critical messages. Admin callers pass through.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, asdict
from typing import Any

from freightlens.safety.access_policy import RESTRICTED_FIELDS
from freightlens.utils.logging import get_logger


LOGGER = get_logger(__name__)

SAFE_CONTEXT_CHARS = 150

FINANCIAL_PATTERNS = [
    r"\$[\d,]+\.?\d*\s*(?:cost|margin|profit|markup|wholesale|commission)",
    r"cost\s*(?:is|was|of|:)\s*\$[\d,]+\.?\d*",
    r"margin\s*(?:is|was|of|:)\s*\$?[\d,]+\.?\d*%?",
    r"profit\s*(?:is|was|of|:)\s*\$[\d,]+\.?\d*",
    r"markup\s*(?:is|was|of|:)\s*[\d,]+\.?\d*%?",
    r"buy\s*rate\s*(?:is|was|of|:)?\s*\$[\d,]+\.?\d*",
    r"carrier\s*cost\s*(?:is|was|of|:)?\s*\$[\d,]+\.?\d*",
    r"\d+\.?\d*%?\s*(?:margin|profit|markup)",
    r"we\s*(?:paid|pay)\s*\$[\d,]+.*?carrier",
    r"carrier\s*(?:charges?|costs?|paid)\s*\$[\d,]+",
]

SAFE_PHRASE_PATTERNS = [
    r"(?:cost|margin|profit)\s*(?:data|information|details?)\s*(?:is\s*)?(?:not\s+)?(?:available|accessible|shown|visible)",
    r"(?:cannot|can't|don't|do not|unable to)\s*(?:show|display|provide|reveal|share|access)\s*(?:the\s*)?(?:cost|margin|profit|markup)",
    r"restricted\s*(?:field|data|information|access)",
    r"(?:no|not|don't have)\s*access\s*to\s*(?:cost|margin|profit|internal)",
    r"this\s*(?:information|data)\s*is\s*(?:restricted|confidential|internal)",
    r"only\s*(?:admin|internal)\s*(?:users?)?\s*(?:can|have)\s*access",
]

ALWAYS_FLAG_PATTERNS = [
    r"our\s*margin\s*(?:is|was)",
    r"we\s*make\s*\$[\d,]+",
    r"profit\s*per\s*(?:shipment|load|mile)",
    r"internal\s*(?:cost|rate|price)",
    r"carrier\s*invoice",
]

_FINANCIAL = [re.compile(p, re.IGNORECASE) for p in FINANCIAL_PATTERNS]
_SAFE = [re.compile(p, re.IGNORECASE) for p in SAFE_PHRASE_PATTERNS]
_ALWAYS = [re.compile(p, re.IGNORECASE) for p in ALWAYS_FLAG_PATTERNS]


@dataclass
class GuardVerdict:
    """Result of scanning one message."""

    severity: str  # none, low, medium, high, critical
    sanitized_message: str
    restricted_fields_found: list[str] = field(default_factory=list)
    financial_patterns_found: list[str] = field(default_factory=list)
    always_flag_patterns_found: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return self.severity in ("none", "low")

    @property
    def was_modified(self) -> bool:
        return self.severity in ("high", "critical")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _in_safe_context(text: str, start: int, end: int) -> bool:
    window = text[max(0, start - SAFE_CONTEXT_CHARS): end + SAFE_CONTEXT_CHARS]
    return any(p.search(window) for p in _SAFE)


def _redact(message: str) -> str:
    sanitized = message
    for pattern in _ALWAYS:
        sanitized = pattern.sub("[internal data redacted]", sanitized)
    for pattern in _FINANCIAL:
        sanitized = pattern.sub("[financial data redacted]", sanitized)
    for name in sorted(RESTRICTED_FIELDS):
        escaped = re.escape(name)
        sanitized = re.sub(rf"({escaped}[\s:]*)(\$[\d,]+\.?\d*)", r"\1[REDACTED]", sanitized, flags=re.IGNORECASE)
        sanitized = re.sub(rf"({escaped}[\s:]*)(\d+\.?\d*\s*%)", r"\1[REDACTED]", sanitized, flags=re.IGNORECASE)
    return sanitized


def guard_message(message: str, is_admin: bool) -> GuardVerdict:
    """Scan assistant prose for restricted data and redact when serious."""
    if is_admin or not message:
        return GuardVerdict(severity="none", sanitized_message=message)

    restricted: list[str] = []
    for name in sorted(RESTRICTED_FIELDS):
        for match in re.finditer(rf"\b{re.escape(name)}\b", message, re.IGNORECASE):
            if not _in_safe_context(message, match.start(), match.end()):
                restricted.append(name)
                break

    financial: list[str] = []
    for pattern in _FINANCIAL:
        for match in pattern.finditer(message):
            if not _in_safe_context(message, match.start(), match.end()):
                financial.append(match.group(0).strip())

    always = [m.group(0).strip() for p in _ALWAYS for m in p.finditer(message)]

    if always:
        severity = "critical"
    elif financial:
        severity = "high"
    elif len(restricted) > 3:
        severity = "medium"
    elif restricted:
        severity = "low"
    else:
        severity = "none"

    warnings = []
    if always:
        warnings.append(f"CRITICAL: Internal financial terms detected: {', '.join(always[:3])}")
    if financial:
        warnings.append(f"HIGH: Financial values with restricted terms: {len(financial)} occurrence(s)")
    if restricted:
        warnings.append(f"Restricted field keywords found: {', '.join(restricted)}")

    sanitized = _redact(message) if severity in ("high", "critical") else message
    if sanitized != message:
        LOGGER.warning("Message redacted (severity=%s): %s", severity, warnings)

    return GuardVerdict(
        severity=severity,
        sanitized_message=sanitized,
        restricted_fields_found=restricted,
        financial_patterns_found=list(dict.fromkeys(financial)),
        always_flag_patterns_found=list(dict.fromkeys(always)),
        warnings=warnings,
    )
