"""SQLAlchemy-backed implementations of the sync persistence interfaces.

Provides SQLEntityRepository, SQLInstallationStore and SQLSyncLogStore
with the session_factory callable pattern (an async generator yielding
AsyncSession, e.g. src.pmsync.core.database.get_session). Models convert
to and from the pydantic schemas through the _model_to_* helpers; JSON
columns are written with model_dump(mode="json") and read back with
model_validate().
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.pmsync.sync.models import EntityRecordModel, InstallationModel, SyncLogModel
from src.pmsync.sync.schemas import (
    ConflictRecord,
    EntityMapping,
    Installation,
    LocalRecord,
    SyncConfig,
    SyncError,
    SyncLog,
    SyncStatus,
    utcnow,
)
from src.pmsync.sync.store import (
    RECORD_ATTRIBUTES,
    EntityRepository,
    InstallationStore,
    SyncLogStore,
)

logger = structlog.get_logger(__name__)

SessionFactory = Callable[..., AsyncGenerator[AsyncSession, None]]

_OPEN_STATUSES = (SyncStatus.PENDING.value, SyncStatus.IN_PROGRESS.value)


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_record(model: EntityRecordModel) -> LocalRecord:
    return LocalRecord(
        id=str(model.id),
        entity_type=model.entity_type,
        data=dict(model.data or {}),
        external_id=model.external_id,
        external_source=model.external_source,
        updated_at=model.updated_at,
    )


def _model_to_installation(model: InstallationModel) -> Installation:
    return Installation(
        id=model.id,
        provider=model.provider,
        api_key=model.api_key or "",
        api_endpoint=model.api_endpoint or "",
        entity_mappings=[EntityMapping.model_validate(m) for m in (model.entity_mappings or [])],
        sync_config=SyncConfig.model_validate(model.sync_config or {}),
        enabled=bool(model.enabled),
        last_sync=model.last_sync,
        sync_errors=list(model.sync_errors or []),
    )


def _installation_values(installation: Installation) -> dict[str, Any]:
    """Column values for an InstallationModel row."""
    return {
        "id": installation.id,
        "provider": installation.provider.value,
        "api_key": installation.api_key,
        "api_endpoint": installation.api_endpoint,
        "entity_mappings": [m.model_dump(mode="json") for m in installation.entity_mappings],
        "sync_config": installation.sync_config.model_dump(mode="json"),
        "enabled": installation.enabled,
        "last_sync": installation.last_sync,
        "sync_errors": list(installation.sync_errors),
    }


def _model_to_sync_log(model: SyncLogModel) -> SyncLog:
    return SyncLog(
        id=str(model.id),
        installation_id=model.installation_id,
        provider=model.provider,
        direction=model.direction,
        status=model.status,
        triggered_by=model.triggered_by,
        items_imported=model.items_imported or 0,
        items_exported=model.items_exported or 0,
        conflicts_detected=model.conflicts_detected or 0,
        conflicts_resolved=model.conflicts_resolved or 0,
        conflicts=[ConflictRecord.model_validate(c) for c in (model.conflicts or [])],
        errors=[SyncError.model_validate(e) for e in (model.errors or [])],
        started_at=model.started_at,
        completed_at=model.completed_at,
        duration_ms=model.duration_ms,
    )


def _sync_log_values(log: SyncLog) -> dict[str, Any]:
    """Column values for a SyncLogModel row (everything but the primary key)."""
    return {
        "installation_id": log.installation_id,
        "provider": log.provider.value,
        "direction": log.direction.value,
        "status": log.status.value,
        "triggered_by": log.triggered_by,
        "items_imported": log.items_imported,
        "items_exported": log.items_exported,
        "conflicts_detected": log.conflicts_detected,
        "conflicts_resolved": log.conflicts_resolved,
        "conflicts": [c.model_dump(mode="json") for c in log.conflicts],
        "errors": [e.model_dump(mode="json") for e in log.errors],
        "started_at": log.started_at,
        "completed_at": log.completed_at,
        "duration_ms": log.duration_ms,
    }


def _split_filters(filters: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    """Separate column filters from data-key filters."""
    columns = {k: v for k, v in filters.items() if k in RECORD_ATTRIBUTES}
    data = {k: v for k, v in filters.items() if k not in RECORD_ATTRIBUTES}
    return columns, data


# ── Entity Records ──────────────────────────────────────────────────────────


class SQLEntityRepository(EntityRepository):
    """Entity records of one type stored in pm_sync.entity_records.

    Args:
        entity_type: Local entity type this repository serves.
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, entity_type: str, session_factory: SessionFactory) -> None:
        self.entity_type = entity_type
        self._session_factory = session_factory

    async def get(self, record_id: str) -> LocalRecord | None:
        async for session in self._session_factory():
            stmt = select(EntityRecordModel).where(
                EntityRecordModel.entity_type == self.entity_type,
                EntityRecordModel.id == uuid.UUID(record_id),
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_record(model)

    async def find(self, filters: dict[str, Any]) -> list[LocalRecord]:
        """Match column filters in SQL and data-key filters on the loaded rows."""
        columns, data_filters = _split_filters(filters)
        async for session in self._session_factory():
            stmt = select(EntityRecordModel).where(EntityRecordModel.entity_type == self.entity_type)
            for key, value in columns.items():
                column = getattr(EntityRecordModel, key)
                if key == "id":
                    value = uuid.UUID(str(value))
                stmt = stmt.where(column.is_(None) if value is None else column == value)
            result = await session.execute(stmt)
            records = [_model_to_record(m) for m in result.scalars().all()]
            return [
                r for r in records
                if all(r.data.get(k) == v for k, v in data_filters.items())
            ]

    async def list(self, since: datetime | None = None) -> list[LocalRecord]:
        async for session in self._session_factory():
            stmt = select(EntityRecordModel).where(EntityRecordModel.entity_type == self.entity_type)
            if since is not None:
                stmt = stmt.where(EntityRecordModel.updated_at >= since)
            stmt = stmt.order_by(EntityRecordModel.updated_at)
            result = await session.execute(stmt)
            return [_model_to_record(m) for m in result.scalars().all()]

    async def create(
        self,
        data: dict[str, Any],
        *,
        actor: str,
        external_id: str | None = None,
        external_source: str | None = None,
    ) -> LocalRecord:
        async for session in self._session_factory():
            model = EntityRecordModel(
                entity_type=self.entity_type,
                data=dict(data),
                external_id=external_id,
                external_source=external_source,
                created_by=actor,
                updated_by=actor,
                updated_at=utcnow(),
            )
            session.add(model)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise ValueError(
                    f"{self.entity_type} already linked to {external_source}:{external_id}"
                ) from exc
            await session.refresh(model)
            return _model_to_record(model)

    async def update(self, record_id: str, data: dict[str, Any], *, actor: str) -> LocalRecord:
        async for session in self._session_factory():
            stmt = select(EntityRecordModel).where(
                EntityRecordModel.entity_type == self.entity_type,
                EntityRecordModel.id == uuid.UUID(record_id),
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                raise KeyError(f"{self.entity_type} '{record_id}' not found")
            # Reassign so the JSON column is flagged dirty
            model.data = {**(model.data or {}), **data}
            model.updated_by = actor
            model.updated_at = utcnow()
            await session.commit()
            await session.refresh(model)
            return _model_to_record(model)


# ── Installations ───────────────────────────────────────────────────────────


class SQLInstallationStore(InstallationStore):
    """Installations stored in pm_sync.installations."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def get(self, installation_id: str) -> Installation | None:
        async for session in self._session_factory():
            model = await session.get(InstallationModel, installation_id)
            if model is None:
                return None
            return _model_to_installation(model)

    async def save(self, installation: Installation, *, actor: str) -> Installation:
        async for session in self._session_factory():
            model = InstallationModel(**_installation_values(installation), updated_by=actor)
            merged = await session.merge(model)
            await session.commit()
            await session.refresh(merged)
            logger.info("installation.saved", installation_id=installation.id, actor=actor)
            return _model_to_installation(merged)

    async def list_enabled(self) -> list[Installation]:
        async for session in self._session_factory():
            stmt = select(InstallationModel).where(InstallationModel.enabled.is_(True))
            result = await session.execute(stmt)
            return [_model_to_installation(m) for m in result.scalars().all()]

    async def update_sync_state(
        self,
        installation_id: str,
        *,
        sync_errors: list[str],
        last_sync: datetime | None = None,
    ) -> None:
        values: dict[str, Any] = {"sync_errors": list(sync_errors)}
        if last_sync is not None:
            values["last_sync"] = last_sync
        async for session in self._session_factory():
            stmt = (
                update(InstallationModel)
                .where(InstallationModel.id == installation_id)
                .values(**values)
            )
            await session.execute(stmt)
            await session.commit()


# ── Sync Logs ───────────────────────────────────────────────────────────────


class SQLSyncLogStore(SyncLogStore):
    """SyncLogs stored in pm_sync.sync_logs; finalize-once enforced in SQL."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def create(self, log: SyncLog) -> SyncLog:
        async for session in self._session_factory():
            session.add(SyncLogModel(id=uuid.UUID(log.id), **_sync_log_values(log)))
            await session.commit()
            return log

    async def finalize(self, log: SyncLog) -> SyncLog:
        if not log.status.is_final:
            raise ValueError(f"SyncLog '{log.id}' cannot be finalized as {log.status.value}")

        async for session in self._session_factory():
            stmt = (
                update(SyncLogModel)
                .where(
                    SyncLogModel.id == uuid.UUID(log.id),
                    SyncLogModel.status.in_(_OPEN_STATUSES),
                )
                .values(**_sync_log_values(log))
            )
            result = await session.execute(stmt)
            await session.commit()
            if result.rowcount == 0:
                raise ValueError(f"SyncLog '{log.id}' is missing or already finalized")
            return log

    async def list_for_installation(self, installation_id: str, limit: int = 20) -> list[SyncLog]:
        async for session in self._session_factory():
            stmt = (
                select(SyncLogModel)
                .where(SyncLogModel.installation_id == installation_id)
                .order_by(SyncLogModel.started_at.desc())
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [_model_to_sync_log(m) for m in result.scalars().all()]
