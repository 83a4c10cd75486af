"""Field-level access policy for report generation.

Implements:
- AccessRule table: restricted field -> required role + action
- Prompt instructions: advisory text for admin vs. customer callers
- enforce_access_control: the authoritative code-level gate over a report
- redact_restricted_values: strips restricted keys from tool payloads

The prompt instructions are never trusted on their own. Every report that
leaves the orchestrator passes through enforce_access_control.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any, Iterable

from freightlens.agent.contracts import AccessContext, AccessControlResult
from freightlens.safety.field_refs import iter_field_references
from freightlens.utils.logging import get_logger


LOGGER = get_logger(__name__)


@dataclass(frozen=True)
class AccessRule:
    """A restricted field and who may see it."""

    field: str
    required_role: str = "admin"
    action: str = "hide"
    reason: str = ""


ACCESS_RULES: tuple[AccessRule, ...] = (
    AccessRule("cost", reason="what the broker pays carriers"),
    AccessRule("margin", reason="broker profit per shipment"),
    AccessRule("margin_percent", reason="broker profit percentage"),
    AccessRule("carrier_cost", reason="carrier invoice amount"),
    AccessRule("carrier_pay", reason="amount paid to the carrier"),
    AccessRule("cost_per_mile", reason="carrier cost divided by miles"),
)

RESTRICTED_FIELDS = frozenset(rule.field for rule in ACCESS_RULES)

# Customer vocabulary that sounds restricted but maps to accessible fields
ACCESSIBLE_LOOKALIKES: tuple[tuple[str, str, str], ...] = (
    ("cost / spend / expensive / price", "retail", "what the customer pays for shipping"),
    ("charges / fees", "retail", "total billed amount per shipment"),
    ("extra charges / accessorials", "charge", "accessorial line charges on shipment_accessorial"),
    ("weight / heavy", "total_weight", "shipment weight in pounds"),
)


def is_restricted_field(name: str, extra_restricted: Iterable[str] = ()) -> bool:
    """Check a field name against the restricted set (case-insensitive)."""
    if not isinstance(name, str):
        return False
    lowered = name.strip().lower()
    if lowered in RESTRICTED_FIELDS:
        return True
    return lowered in {f.lower() for f in extra_restricted}


def is_field_accessible(name: str, context: AccessContext) -> bool:
    if context.is_admin:
        return True
    return not is_restricted_field(name)


def get_restricted_fields(context: AccessContext) -> list[str]:
    if context.is_admin:
        return []
    return sorted(RESTRICTED_FIELDS)


def get_prompt_access_instructions(context: AccessContext) -> str:
    """Render access-level instructions for the system prompt."""
    if context.is_admin:
        return (
            "## ACCESS LEVEL: ADMIN\n\n"
            "You have full access to all data fields including:\n"
            "- cost (carrier cost)\n"
            "- margin (profit margin)\n"
            "- All financial metrics\n\n"
            "You can build reports using any available field."
        )

    restricted = "\n".join(f"- {rule.field} ({rule.reason})" for rule in ACCESS_RULES)
    lookalikes = "\n".join(
        f"| {phrase} | **{field}** | {meaning} |"
        for phrase, field, meaning in ACCESSIBLE_LOOKALIKES
    )
    return f"""## ACCESS LEVEL: CUSTOMER

RESTRICTED FIELDS - DO NOT USE:
{restricted}

### IMPORTANT DISTINCTION

When customers say "cost", "spend", or "expensive", they mean THEIR freight spend
(what they pay). This is the **retail** field and IS available to them.

These fields ARE accessible even though they sound similar:

| Customer says | Use field | Meaning |
|---|---|---|
{lookalikes}

### EXAMPLES

- "Which states cost the most?" -> aggregate **retail** by destination_state, NOT cost
- "Show me freight spend" -> use **retail**
- "Most expensive carriers" -> group by carrier_name, aggregate **retail**

These are legitimate customer questions about their own shipping expenses.
DO NOT treat them as access violations.

### TRUE VIOLATIONS

Only decline when the customer explicitly asks about the broker's carrier costs,
margin or profit calculations, or internal pricing data.

NEVER include restricted fields in any report section, calculated field, or filter."""


def _section_label(section: dict[str, Any]) -> str:
    return str(section.get("title") or section.get("type") or "untitled")


def _restricted_references(node: Any, extra_restricted: Iterable[str]) -> list[tuple[str, str]]:
    extra = tuple(extra_restricted)
    hits: list[tuple[str, str]] = []
    for ref in iter_field_references(node):
        if is_restricted_field(ref.field, extra):
            hits.append((ref.field, ref.path))
    return hits


def enforce_access_control(
    report: dict[str, Any],
    context: AccessContext,
    *,
    extra_restricted: Iterable[str] = (),
) -> AccessControlResult:
    """Remove every section and calculated field that touches a restricted field.

    Offending sections are removed wholesale, not patched. Admin callers pass
    through unchanged.

    Args:
        report: Report definition (dict form)
        context: Caller access context
        extra_restricted: Additional admin-only field names (from schema tags)

    Returns:
        AccessControlResult with sanitized report and violation descriptions
    """
    if context.is_admin:
        return AccessControlResult(allowed=True, sanitized_report=report)

    extra = tuple(extra_restricted)
    violations: list[str] = []
    sanitized = copy.deepcopy(report)

    # Calculated fields first: a removed one is restricted for everything built on it
    removed_calcs: list[str] = []
    for key in ("calculatedFields", "calculated_fields", "filters"):
        items = sanitized.get(key)
        if not isinstance(items, list):
            continue
        kept_items = list(items)
        changed = True
        while changed:
            changed = False
            for item in list(kept_items):
                hits = _restricted_references(
                    item if isinstance(item, dict) else {"field": item}, extra + tuple(removed_calcs)
                )
                if not hits:
                    continue
                name = item.get("name") if isinstance(item, dict) else item
                noun = "Calculated field" if key != "filters" else "Report filter"
                violations.append(
                    f'{noun} "{name}" uses restricted fields: '
                    + ", ".join(sorted({field for field, _ in hits}))
                )
                kept_items.remove(item)
                if key != "filters" and isinstance(name, str):
                    removed_calcs.append(name)
                    changed = True
        sanitized[key] = kept_items

    section_restricted = extra + tuple(removed_calcs)
    sections = sanitized.get("sections")
    if isinstance(sections, list):
        kept = []
        for section in sections:
            if not isinstance(section, dict):
                kept.append(section)
                continue
            hits = _restricted_references(
                {k: v for k, v in section.items() if k not in ("data", "title", "insight")},
                section_restricted,
            )
            if hits:
                label = _section_label(section)
                violations.extend(
                    f'Section "{label}": references restricted field "{field}" ({path})'
                    for field, path in hits
                )
            else:
                if "data" in section:
                    section["data"] = redact_restricted_values(section["data"], context)
                kept.append(section)
        sanitized["sections"] = kept

    for key in list(sanitized):
        if key in ("sections", "calculatedFields", "calculated_fields", "filters"):
            continue
        hits = _restricted_references({key: sanitized[key]}, extra)
        if hits:
            violations.append(
                f'Report attribute "{key}" uses restricted fields: '
                + ", ".join(sorted({field for field, _ in hits}))
            )
            del sanitized[key]

    if violations:
        LOGGER.warning(
            "Access violations sanitized for customer %s: %s",
            context.customer_id,
            violations,
        )

    return AccessControlResult(
        allowed=not violations,
        sanitized_report=sanitized,
        violations=violations,
    )


def redact_restricted_values(payload: Any, context: AccessContext) -> Any:
    """Drop restricted keys from a tool result before the model sees it."""
    if context.is_admin:
        return payload
    if isinstance(payload, dict):
        return {
            key: redact_restricted_values(value, context)
            for key, value in payload.items()
            if not is_restricted_field(key)
        }
    if isinstance(payload, list):
        return [redact_restricted_values(item, context) for item in payload]
    return payload
