"""Prompt templates for AI-assisted conflict adjudication.

Exports:
    CONFLICT_SYSTEM_PROMPT: System prompt establishing the adjudicator persona.
    CONFLICT_RESOLUTION_SCHEMA: JSON schema the AI answer must satisfy.
    build_conflict_description: Structured description of one conflict.
    build_conflict_messages: Messages list for LLM chat completion.
"""

from __future__ import annotations

import json
from typing import Any

from src.pmsync.sync.schemas import Conflict, ResolutionChoice

# ── System Prompt ──────────────────────────────────────────────────────────


CONFLICT_SYSTEM_PROMPT: str = """\
You reconcile project-management records that were edited in two systems: \
an internal workspace ("local") and an external PM tool ("external").

For each conflict you receive the field name, both values and the time each \
side was last updated. Decide which value should survive:
- "local": keep the internal value.
- "external": take the value from the PM tool.
- "merge": combine both; you MUST provide merged_value.

Prefer the more recent edit unless the older value is clearly more complete \
or correct. When the external timestamp is marked approximate, weigh it less.

Confidence protocol:
- Above 0.8 only when the right answer is unambiguous.
- 0.5-0.8 when reasonable people could disagree.
- Below 0.5 when you are guessing.

Respond with a single JSON object matching the provided schema and nothing else.\
"""


CONFLICT_RESOLUTION_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "choice": {
            "type": "string",
            "enum": [choice.value for choice in ResolutionChoice],
        },
        "confidence": {"type": "number", "minimum": 0, "maximum": 1},
        "explanation": {"type": "string"},
        "merged_value": {},
    },
    "required": ["choice", "confidence", "explanation"],
    "additionalProperties": False,
}


# ── Prompt Builders ────────────────────────────────────────────────────────


def build_conflict_description(conflict: Conflict) -> dict[str, Any]:
    """Build the structured conflict description handed to the AI collaborator."""
    return {
        "entity_type": conflict.entity_type,
        "field": conflict.field,
        "local_value": conflict.local_value,
        "external_value": conflict.external_value,
        "local_updated_at": conflict.local_updated_at.isoformat(),
        "external_updated_at": conflict.external_updated_at.isoformat(),
        "external_timestamp_approximate": conflict.external_timestamp_approximated,
    }


def build_conflict_messages(
    description: dict[str, Any],
    schema: dict[str, Any],
) -> list[dict[str, str]]:
    """Build chat messages asking for one conflict adjudication."""
    user_content = (
        "Resolve this field conflict.\n\n"
        f"Conflict:\n{json.dumps(description, indent=2, default=str)}\n\n"
        f"JSON schema for your answer:\n{json.dumps(schema, indent=2)}"
    )
    return [
        {"role": "system", "content": CONFLICT_SYSTEM_PROMPT},
        {"role": "user", "content": user_content},
    ]
