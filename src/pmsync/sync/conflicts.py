"""Field-level conflict detection and resolution.

ConflictDetector compares a stored local record with an external item that
has already been mapped to local keys. ConflictResolver settles each
conflict under the installation's policy:

- external_wins: external value, confidence 1.0, no AI call.
- latest_wins: more recent timestamp wins; exact ties favor external.
- ai_suggest: delegate to the AI collaborator; apply only when its
  confidence is strictly above the threshold (0.8 by default), otherwise
  keep the suggestion attached and leave the conflict for manual review.
- manual: never applied automatically.

The resolver never raises for ai_suggest: a failing, slow or malformed AI
answer falls back to latest_wins with confidence 0.5.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

import structlog

from src.pmsync.core.exceptions import AIResolutionError
from src.pmsync.core.monitoring import record_ai_resolution
from src.pmsync.sync.advisor import ConflictAdvisor
from src.pmsync.sync.prompts import CONFLICT_RESOLUTION_SCHEMA, build_conflict_description
from src.pmsync.sync.schemas import (
    AISuggestion,
    Conflict,
    ConflictPolicy,
    ConflictResolution,
    LocalRecord,
    ResolutionChoice,
    utcnow,
)

logger = structlog.get_logger(__name__)

# Keys PM tools commonly use for their last-modified timestamp
EXTERNAL_TIMESTAMP_KEYS: tuple[str, ...] = ("updated_at", "updatedAt", "modified_at", "last_modified")

FALLBACK_CONFIDENCE = 0.5


def _as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so local and external stamps compare."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return _as_utc(value)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        # Millisecond epochs are common in PM tool payloads
        seconds = value / 1000 if value > 1e12 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str) and value:
        try:
            return _as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError:
            return None
    return None


def extract_external_timestamp(item: Mapping[str, Any]) -> datetime | None:
    """Return the external item's last-modified time, or None if it has none."""
    for key in EXTERNAL_TIMESTAMP_KEYS:
        if key in item:
            parsed = _parse_timestamp(item[key])
            if parsed is not None:
                return parsed
    return None


def values_differ(local_value: Any, external_value: Any) -> bool:
    """Structural inequality that does not conflate booleans with 0/1."""
    if isinstance(local_value, bool) != isinstance(external_value, bool):
        return True
    return local_value != external_value


# ── Detection ──────────────────────────────────────────────────────────────


class ConflictDetector:
    """Produces per-field discrepancies between a local and an external record."""

    def detect(
        self,
        local_record: LocalRecord,
        mapped_external: Mapping[str, Any],
        external_updated_at: datetime | None = None,
    ) -> list[Conflict]:
        """Compare a local record with a mapped external record.

        Only keys present in the external record are compared. Keys the
        local record lacks (or holds as None) are a plain import, not a
        conflict. When the PM tool supplies no timestamp, "now" is used and
        the conflict is flagged as approximated.
        """
        approximated = external_updated_at is None
        external_ts = utcnow() if approximated else _as_utc(external_updated_at)
        local_ts = _as_utc(local_record.updated_at)

        conflicts: list[Conflict] = []
        for field, external_value in mapped_external.items():
            local_value = local_record.data.get(field)
            if local_value is None:
                continue
            if not values_differ(local_value, external_value):
                continue
            conflicts.append(
                Conflict(
                    field=field,
                    local_value=local_value,
                    external_value=external_value,
                    local_updated_at=local_ts,
                    external_updated_at=external_ts,
                    external_timestamp_approximated=approximated,
                    entity_type=local_record.entity_type,
                    external_id=local_record.external_id,
                    record_id=local_record.id,
                )
            )
        return conflicts


# ── Resolution ─────────────────────────────────────────────────────────────


def _latest_wins(
    conflict: Conflict,
    *,
    confidence: float = 1.0,
    explanation: str | None = None,
    fallback: bool = False,
    policy: ConflictPolicy = ConflictPolicy.LATEST_WINS,
) -> ConflictResolution:
    local_ts = _as_utc(conflict.local_updated_at)
    external_ts = _as_utc(conflict.external_updated_at)
    if local_ts > external_ts:
        choice = ResolutionChoice.LOCAL
        reason = "local value is more recent"
    else:
        choice = ResolutionChoice.EXTERNAL
        reason = "external value is more recent" if external_ts > local_ts else "timestamps tie; external wins"
    return ConflictResolution(
        choice=choice,
        confidence=confidence,
        explanation=explanation or reason,
        policy=policy,
        applied=True,
        fallback=fallback,
    )


class ConflictResolver:
    """Applies a resolution policy to one conflict.

    Args:
        advisor: AI collaborator used by the ai_suggest policy. Optional;
            without one, ai_suggest always falls back to latest_wins.
        confidence_threshold: Default threshold an AI suggestion must exceed.
        ai_timeout: Seconds to wait for the AI collaborator (None = no limit).
    """

    def __init__(
        self,
        advisor: ConflictAdvisor | None = None,
        confidence_threshold: float = 0.8,
        ai_timeout: float | None = 20.0,
    ) -> None:
        self._advisor = advisor
        self._threshold = confidence_threshold
        self._ai_timeout = ai_timeout

    async def resolve(
        self,
        conflict: Conflict,
        policy: ConflictPolicy | str,
        *,
        confidence_threshold: float | None = None,
    ) -> ConflictResolution:
        """Resolve one conflict under the given policy."""
        policy = ConflictPolicy(policy)

        if policy == ConflictPolicy.EXTERNAL_WINS:
            return ConflictResolution(
                choice=ResolutionChoice.EXTERNAL,
                confidence=1.0,
                explanation="external_wins policy",
                policy=policy,
            )

        if policy == ConflictPolicy.LATEST_WINS:
            return _latest_wins(conflict)

        if policy == ConflictPolicy.MANUAL:
            return ConflictResolution(
                choice=ResolutionChoice.LOCAL,
                confidence=0.0,
                explanation="Manual review required",
                policy=policy,
                applied=False,
            )

        threshold = self._threshold if confidence_threshold is None else confidence_threshold
        return await self._resolve_with_ai(conflict, threshold)

    async def _resolve_with_ai(self, conflict: Conflict, threshold: float) -> ConflictResolution:
        try:
            suggestion = await self._ask_advisor(conflict)
        except Exception as exc:
            error = exc if isinstance(exc, AIResolutionError) else AIResolutionError(
                f"{type(exc).__name__}: {exc}"
            )
            logger.warning(
                "resolver.ai_fallback",
                field=conflict.field,
                external_id=conflict.external_id,
                error=str(error),
            )
            record_ai_resolution("fallback")
            return _latest_wins(
                conflict,
                confidence=FALLBACK_CONFIDENCE,
                explanation=f"AI resolution unavailable ({error}); fell back to latest_wins",
                fallback=True,
                policy=ConflictPolicy.AI_SUGGEST,
            )

        applied = suggestion.confidence > threshold
        record_ai_resolution("applied" if applied else "review")
        if not applied:
            logger.info(
                "resolver.ai_low_confidence",
                field=conflict.field,
                external_id=conflict.external_id,
                confidence=suggestion.confidence,
                threshold=threshold,
            )

        return ConflictResolution(
            choice=suggestion.choice,
            confidence=suggestion.confidence,
            explanation=suggestion.explanation,
            merged_value=suggestion.merged_value,
            policy=ConflictPolicy.AI_SUGGEST,
            applied=applied,
            suggestion=suggestion,
        )

    async def _ask_advisor(self, conflict: Conflict) -> AISuggestion:
        if self._advisor is None:
            raise AIResolutionError("No AI collaborator configured")

        call = self._advisor.suggest(
            build_conflict_description(conflict),
            CONFLICT_RESOLUTION_SCHEMA,
        )
        try:
            raw = await asyncio.wait_for(call, timeout=self._ai_timeout)
        except asyncio.TimeoutError as exc:
            raise AIResolutionError(f"AI collaborator timed out after {self._ai_timeout}s") from exc

        if not isinstance(raw, Mapping):
            raise AIResolutionError(f"AI collaborator returned {type(raw).__name__}, expected an object")
        return AISuggestion.model_validate(dict(raw))
