"""REST API endpoints for PM sync operations.

Installations are enabled, synced on demand, disabled and inspected
through /pm-sync/installations. Every endpoint requires the X-Actor-ID
header; the service lives on app.state (503 when not initialized).
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from src.pmsync.api.deps import get_actor, get_sync_service
from src.pmsync.config import get_settings
from src.pmsync.core.exceptions import (
    ConfigurationError,
    InstallationNotFoundError,
    SyncAlreadyRunningError,
)
from src.pmsync.sync.schemas import (
    EntityMapping,
    Installation,
    PMProvider,
    SyncConfig,
    SyncDirection,
    SyncLog,
    SyncStats,
)
from src.pmsync.sync.service import PMIntegrationService

router = APIRouter(prefix="/pm-sync", tags=["pm-sync"])


# ── Request Schemas ──────────────────────────────────────────────────────────


def _default_sync_config() -> SyncConfig:
    return SyncConfig(interval_minutes=get_settings().SYNC_DEFAULT_INTERVAL_MINUTES)


class InitializeSyncRequest(BaseModel):
    """Request body for enabling sync on an installation."""

    id: str
    provider: PMProvider
    api_key: str
    api_endpoint: str
    entity_mappings: list[EntityMapping]
    sync_config: SyncConfig = Field(default_factory=_default_sync_config)


class SyncRequest(BaseModel):
    """Request body for a manual sync pass."""

    direction: SyncDirection = SyncDirection.BIDIRECTIONAL


# ── Response Schemas ─────────────────────────────────────────────────────────


class InstallationResponse(BaseModel):
    """Installation state without its credentials."""

    id: str
    provider: str
    display_name: str
    enabled: bool
    interval_minutes: int
    conflict_resolution: str
    entity_types: list[str] = Field(default_factory=list)
    last_sync: str | None = None
    sync_errors: list[str] = Field(default_factory=list)


class ConflictResponse(BaseModel):
    """One conflict as shown for operator review."""

    field: str
    entity_type: str | None = None
    external_id: str | None = None
    local_value: Any = None
    external_value: Any = None
    choice: str
    resolved: bool
    explanation: str = ""
    ai_suggestion: str | None = None
    ai_confidence: float | None = None


class SyncLogResponse(BaseModel):
    """SyncLog summary with unresolved conflicts listed explicitly."""

    id: str
    installation_id: str
    provider: str
    direction: str
    status: str
    triggered_by: str
    items_imported: int
    items_exported: int
    conflicts_detected: int
    conflicts_resolved: int
    unresolved_conflicts: list[ConflictResponse] = Field(default_factory=list)
    errors: list[dict[str, Any]] = Field(default_factory=list)
    started_at: str
    completed_at: str | None = None
    duration_ms: int | None = None


# ── Conversion Helpers ───────────────────────────────────────────────────────


def _installation_to_response(installation: Installation) -> InstallationResponse:
    return InstallationResponse(
        id=installation.id,
        provider=installation.provider.value,
        display_name=installation.display_name,
        enabled=installation.enabled,
        interval_minutes=installation.sync_config.interval_minutes,
        conflict_resolution=installation.sync_config.conflict_resolution.value,
        entity_types=[m.entity_type for m in installation.entity_mappings],
        last_sync=installation.last_sync.isoformat() if installation.last_sync else None,
        sync_errors=installation.sync_errors,
    )


def _log_to_response(log: SyncLog) -> SyncLogResponse:
    return SyncLogResponse(
        id=log.id,
        installation_id=log.installation_id,
        provider=log.provider.value,
        direction=log.direction.value,
        status=log.status.value,
        triggered_by=log.triggered_by,
        items_imported=log.items_imported,
        items_exported=log.items_exported,
        conflicts_detected=log.conflicts_detected,
        conflicts_resolved=log.conflicts_resolved,
        unresolved_conflicts=[
            ConflictResponse(
                field=record.conflict.field,
                entity_type=record.conflict.entity_type,
                external_id=record.conflict.external_id,
                local_value=record.conflict.local_value,
                external_value=record.conflict.external_value,
                choice=record.resolution.choice.value,
                resolved=record.resolved,
                explanation=record.resolution.explanation,
                ai_suggestion=record.ai_suggestion,
                ai_confidence=record.ai_confidence,
            )
            for record in log.unresolved_conflicts
        ],
        errors=[error.model_dump(mode="json") for error in log.errors],
        started_at=log.started_at.isoformat(),
        completed_at=log.completed_at.isoformat() if log.completed_at else None,
        duration_ms=log.duration_ms,
    )


def _not_found(exc: InstallationNotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


# ── Endpoints ────────────────────────────────────────────────────────────────


@router.post("/installations", response_model=InstallationResponse, status_code=201)
async def initialize_sync(
    body: InitializeSyncRequest,
    actor: str = Depends(get_actor),
    service: PMIntegrationService = Depends(get_sync_service),
) -> InstallationResponse:
    """Enable sync for an installation and start its schedule."""
    installation = Installation(**body.model_dump())
    try:
        saved = await service.initialize_sync(installation, actor=actor)
    except ConfigurationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return _installation_to_response(saved)


@router.post("/installations/{installation_id}/sync", response_model=SyncLogResponse)
async def perform_sync(
    installation_id: str,
    body: SyncRequest | None = None,
    actor: str = Depends(get_actor),
    service: PMIntegrationService = Depends(get_sync_service),
) -> SyncLogResponse:
    """Run a sync pass now and return its SyncLog."""
    direction = body.direction if body is not None else SyncDirection.BIDIRECTIONAL
    try:
        log = await service.perform_sync(installation_id, direction, actor=actor)
    except InstallationNotFoundError as exc:
        raise _not_found(exc)
    except SyncAlreadyRunningError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    except ConfigurationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return _log_to_response(log)


@router.post("/installations/{installation_id}/disable", response_model=InstallationResponse)
async def disable_sync(
    installation_id: str,
    actor: str = Depends(get_actor),
    service: PMIntegrationService = Depends(get_sync_service),
) -> InstallationResponse:
    """Disable sync and stop the schedule."""
    try:
        installation = await service.disable_sync(installation_id, actor=actor)
    except InstallationNotFoundError as exc:
        raise _not_found(exc)
    return _installation_to_response(installation)


@router.get("/installations/{installation_id}/logs", response_model=list[SyncLogResponse])
async def list_sync_logs(
    installation_id: str,
    limit: int = Query(default=20, ge=1, le=100),
    actor: str = Depends(get_actor),
    service: PMIntegrationService = Depends(get_sync_service),
) -> list[SyncLogResponse]:
    """Most recent SyncLogs for an installation."""
    try:
        logs = await service.list_logs(installation_id, limit=limit)
    except InstallationNotFoundError as exc:
        raise _not_found(exc)
    return [_log_to_response(log) for log in logs]


@router.get("/installations/{installation_id}/stats", response_model=SyncStats)
async def sync_stats(
    installation_id: str,
    limit: int = Query(default=20, ge=1, le=100),
    actor: str = Depends(get_actor),
    service: PMIntegrationService = Depends(get_sync_service),
) -> SyncStats:
    """Dashboard aggregate over recent SyncLogs."""
    try:
        return await service.sync_stats(installation_id, limit=limit)
    except InstallationNotFoundError as exc:
        raise _not_found(exc)
