"""Pydantic schemas for PM tool synchronization.

Defines all structured types for one sync pass:
- Enums: PMProvider, SyncDirection, MappingDirection, ConflictPolicy,
  SyncStatus, ResolutionChoice, ErrorScope
- Configuration: SyncConfig, EntityMapping, Installation
- Records: LocalRecord (external items stay plain dicts)
- Conflicts: Conflict, AISuggestion, ConflictResolution, ConflictRecord
- Results: SyncError, ImportResult, ExportResult, SyncLog, SyncStats
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


# ── Enums ───────────────────────────────────────────────────────────────────


class PMProvider(str, Enum):
    """External project-management tools an installation can connect to."""

    JIRA = "jira"
    ASANA = "asana"
    LINEAR = "linear"
    TRELLO = "trello"
    CLICKUP = "clickup"
    NOTION = "notion"


PROVIDER_DISPLAY_NAMES: dict[PMProvider, str] = {
    PMProvider.JIRA: "Jira",
    PMProvider.ASANA: "Asana",
    PMProvider.LINEAR: "Linear",
    PMProvider.TRELLO: "Trello",
    PMProvider.CLICKUP: "ClickUp",
    PMProvider.NOTION: "Notion",
}


class SyncDirection(str, Enum):
    """Direction requested for one sync pass."""

    BIDIRECTIONAL = "bidirectional"
    IMPORT = "import"
    EXPORT = "export"


class MappingDirection(str, Enum):
    """Direction an entity mapping is allowed to flow."""

    BIDIRECTIONAL = "bidirectional"
    IMPORT_ONLY = "import_only"
    EXPORT_ONLY = "export_only"

    def allows_import(self) -> bool:
        return self in (MappingDirection.BIDIRECTIONAL, MappingDirection.IMPORT_ONLY)

    def allows_export(self) -> bool:
        return self in (MappingDirection.BIDIRECTIONAL, MappingDirection.EXPORT_ONLY)


class ConflictPolicy(str, Enum):
    """How field-level conflicts are settled during import."""

    EXTERNAL_WINS = "external_wins"
    LATEST_WINS = "latest_wins"
    AI_SUGGEST = "ai_suggest"
    MANUAL = "manual"  # Never auto-applied; always queued for operator review


class SyncStatus(str, Enum):
    """Lifecycle of a SyncLog: pending -> in_progress -> completed | partial | failed."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"

    @property
    def is_final(self) -> bool:
        return self in (SyncStatus.COMPLETED, SyncStatus.PARTIAL, SyncStatus.FAILED)


class ResolutionChoice(str, Enum):
    """Which side of a conflict wins."""

    LOCAL = "local"
    EXTERNAL = "external"
    MERGE = "merge"


class ErrorScope(str, Enum):
    """Narrowest scope an error was caught at."""

    ITEM = "item"
    MAPPING = "mapping"
    PASS = "pass"


# ── Installation Configuration ──────────────────────────────────────────────


class SyncConfig(BaseModel):
    """Per-installation sync behaviour."""

    interval_minutes: int = Field(default=15, ge=0)  # 0 disables scheduling
    conflict_resolution: ConflictPolicy = ConflictPolicy.LATEST_WINS
    ai_confidence_threshold: float | None = Field(default=None, ge=0.0, le=1.0)  # None: engine default


class EntityMapping(BaseModel):
    """Declarative rule pairing a local entity type with an external resource.

    field_mappings maps local field keys to external field keys.
    """

    entity_type: str
    external_resource: str
    field_mappings: dict[str, str] = Field(default_factory=dict)
    sync_direction: MappingDirection = MappingDirection.BIDIRECTIONAL


class Installation(BaseModel):
    """One configured connection between the host system and one PM tool."""

    id: str
    provider: PMProvider
    api_key: str = ""
    api_endpoint: str = ""
    entity_mappings: list[EntityMapping] = Field(default_factory=list)
    sync_config: SyncConfig = Field(default_factory=SyncConfig)
    enabled: bool = False
    last_sync: datetime | None = None
    sync_errors: list[str] = Field(default_factory=list)

    @property
    def display_name(self) -> str:
        return PROVIDER_DISPLAY_NAMES.get(self.provider, self.provider.value)


# ── Records ─────────────────────────────────────────────────────────────────


class LocalRecord(BaseModel):
    """One local entity instance. data holds the opaque field map."""

    id: str
    entity_type: str
    data: dict[str, Any] = Field(default_factory=dict)
    external_id: str | None = None
    external_source: str | None = None
    updated_at: datetime = Field(default_factory=utcnow)


# ── Conflicts ───────────────────────────────────────────────────────────────


class Conflict(BaseModel):
    """Disagreement between a local and external value for the same field."""

    field: str
    local_value: Any = None
    external_value: Any = None
    local_updated_at: datetime
    external_updated_at: datetime
    external_timestamp_approximated: bool = False
    entity_type: str | None = None
    external_id: str | None = None
    record_id: str | None = None


class AISuggestion(BaseModel):
    """Structured answer expected from the AI collaborator."""

    choice: ResolutionChoice
    confidence: float = Field(ge=0.0, le=1.0)
    explanation: str = ""
    merged_value: Any = None

    @model_validator(mode="after")
    def _merge_needs_value(self) -> AISuggestion:
        if self.choice == ResolutionChoice.MERGE and self.merged_value is None:
            raise ValueError("merge suggestions must include merged_value")
        return self


class ConflictResolution(BaseModel):
    """Outcome of resolving one conflict under a policy.

    applied is False when the resolution must wait for manual review; the
    AI suggestion (if any) stays attached for operator visibility.
    """

    choice: ResolutionChoice
    confidence: float = Field(ge=0.0, le=1.0)
    explanation: str = ""
    merged_value: Any = None
    policy: ConflictPolicy
    applied: bool = True
    fallback: bool = False
    suggestion: AISuggestion | None = None

    def winning_value(self, conflict: Conflict) -> Any:
        """Value the local record should hold once this resolution is applied."""
        if self.choice == ResolutionChoice.EXTERNAL:
            return conflict.external_value
        if self.choice == ResolutionChoice.MERGE:
            return self.merged_value
        return conflict.local_value


class ConflictRecord(BaseModel):
    """Conflict snapshot persisted on a SyncLog."""

    conflict: Conflict
    resolution: ConflictResolution

    @property
    def resolved(self) -> bool:
        return self.resolution.applied

    @property
    def ai_suggestion(self) -> str | None:
        if self.resolution.suggestion is None:
            return None
        return self.resolution.suggestion.explanation

    @property
    def ai_confidence(self) -> float | None:
        if self.resolution.suggestion is None:
            return None
        return self.resolution.suggestion.confidence


# ── Results ─────────────────────────────────────────────────────────────────


class SyncError(BaseModel):
    """One error accumulated during a pass."""

    scope: ErrorScope
    error_type: str
    message: str
    entity_type: str | None = None
    external_id: str | None = None

    @classmethod
    def from_exception(
        cls,
        exc: BaseException,
        scope: ErrorScope,
        entity_type: str | None = None,
        external_id: str | None = None,
    ) -> SyncError:
        return cls(
            scope=scope,
            error_type=type(exc).__name__,
            message=str(exc),
            entity_type=entity_type,
            external_id=external_id,
        )


class ImportResult(BaseModel):
    """Outcome of importing one entity mapping."""

    count: int = 0
    conflicts: int = 0
    conflicts_resolved: int = 0
    conflict_details: list[ConflictRecord] = Field(default_factory=list)
    errors: list[SyncError] = Field(default_factory=list)
    # Records left untouched for review; export skips them in the same pass
    deferred_record_ids: list[str] = Field(default_factory=list)

    @property
    def unresolved(self) -> int:
        return self.conflicts - self.conflicts_resolved


class ExportResult(BaseModel):
    """Outcome of exporting one entity mapping."""

    count: int = 0


class SyncLog(BaseModel):
    """Persisted audit record of one synchronization pass."""

    id: str
    installation_id: str
    provider: PMProvider
    direction: SyncDirection
    status: SyncStatus = SyncStatus.PENDING
    triggered_by: str
    items_imported: int = 0
    items_exported: int = 0
    conflicts_detected: int = 0
    conflicts_resolved: int = 0
    conflicts: list[ConflictRecord] = Field(default_factory=list)
    errors: list[SyncError] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    duration_ms: int | None = None

    @property
    def unresolved_conflicts(self) -> list[ConflictRecord]:
        return [record for record in self.conflicts if not record.resolved]


class SyncStats(BaseModel):
    """Aggregate over recent SyncLogs for dashboard display."""

    total_syncs: int = 0
    total_imported: int = 0
    total_exported: int = 0
    total_conflicts: int = 0
    successful: int = 0
    partial: int = 0
    failed: int = 0
    last_sync: datetime | None = None
