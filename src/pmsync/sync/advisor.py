"""AI collaborator for conflict adjudication.

ConflictAdvisor is the black-box decision function the resolver consumes:
it takes a structured conflict description plus a JSON schema and returns
a raw dict ({choice, confidence, explanation, merged_value}). Validation of
that dict is the resolver's job, since the collaborator is unreliable.

LLMConflictAdvisor implements it on top of LLMService.
"""

from __future__ import annotations

import json
import re
from typing import Any, Protocol

import structlog

from src.pmsync.services.llm import LLMService
from src.pmsync.sync.prompts import build_conflict_messages

logger = structlog.get_logger(__name__)


class ConflictAdvisor(Protocol):
    """Request/response interface of the AI collaborator."""

    async def suggest(
        self,
        description: dict[str, Any],
        schema: dict[str, Any],
    ) -> dict[str, Any]: ...


def parse_llm_json(raw: str) -> dict[str, Any]:
    """Parse LLM response text as a JSON object.

    Strips markdown code fences (```json ... ```) before parsing.

    Raises:
        json.JSONDecodeError: If the text is not valid JSON after stripping.
        ValueError: If the JSON is not an object.
    """
    cleaned = re.sub(r"^```(?:json)?\s*\n?", "", raw.strip())
    cleaned = re.sub(r"\n?```\s*$", "", cleaned.strip())
    parsed = json.loads(cleaned)
    if not isinstance(parsed, dict):
        raise ValueError(f"Expected a JSON object, got {type(parsed).__name__}")
    return parsed


class LLMConflictAdvisor:
    """ConflictAdvisor backed by the LiteLLM router.

    Args:
        llm_service: LLMService used for completions.
        model: Router model group to call.
    """

    def __init__(self, llm_service: LLMService, model: str = "reasoning") -> None:
        self._llm = llm_service
        self._model = model

    async def suggest(
        self,
        description: dict[str, Any],
        schema: dict[str, Any],
    ) -> dict[str, Any]:
        messages = build_conflict_messages(description, schema)
        response = await self._llm.completion(
            messages=messages,
            model=self._model,
            temperature=0.0,
            metadata={"purpose": "pm_sync_conflict", "field": description.get("field")},
            response_format={"type": "json_object"},
        )
        logger.debug(
            "advisor.suggestion_received",
            field=description.get("field"),
            model=response.get("model"),
        )
        return parse_llm_json(response["content"] or "")
