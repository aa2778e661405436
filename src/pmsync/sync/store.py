"""Persistence interfaces for the sync engine, plus in-memory implementations.

ABCs (explicit interface contracts, one per collaborator):
- EntityRepository: CRUD over one local entity collection
- InstallationStore: read installations, record last_sync / sync_errors
- SyncLogStore: append-only SyncLog persistence

EntityRegistry maps local entity-type names to repositories. Mappings are
resolved against it once, when a pass validates its configuration, so an
unknown entity type is a ConfigurationError rather than a per-item lookup
failure.

The InMemory* classes back tests and single-process deployments without a
database. SQL implementations live in src.pmsync.sync.repository.
"""

from __future__ import annotations

import asyncio
import uuid
from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from src.pmsync.core.exceptions import ConfigurationError
from src.pmsync.sync.schemas import Installation, LocalRecord, SyncLog, utcnow

# Filter keys that address record attributes rather than the data map
RECORD_ATTRIBUTES = ("id", "external_id", "external_source")


class EntityRepository(ABC):
    """Abstract CRUD interface over one local entity collection.

    Methods:
        get: Fetch a record by its local ID.
        find: Records matching every key of a filter map. Keys "id",
            "external_id" and "external_source" address record attributes;
            any other key is compared against the record's data.
        list: All records, optionally only those updated at or after `since`.
        create: Insert a record, optionally linked to an external item.
        update: Merge data into an existing record.
    """

    entity_type: str

    @abstractmethod
    async def get(self, record_id: str) -> LocalRecord | None:
        ...

    @abstractmethod
    async def find(self, filters: dict[str, Any]) -> list[LocalRecord]:
        ...

    @abstractmethod
    async def list(self, since: datetime | None = None) -> list[LocalRecord]:
        ...

    @abstractmethod
    async def create(
        self,
        data: dict[str, Any],
        *,
        actor: str,
        external_id: str | None = None,
        external_source: str | None = None,
    ) -> LocalRecord:
        ...

    @abstractmethod
    async def update(self, record_id: str, data: dict[str, Any], *, actor: str) -> LocalRecord:
        ...


class InstallationStore(ABC):
    """Abstract access to installations owned by the hosting application."""

    @abstractmethod
    async def get(self, installation_id: str) -> Installation | None:
        ...

    @abstractmethod
    async def save(self, installation: Installation, *, actor: str) -> Installation:
        ...

    @abstractmethod
    async def list_enabled(self) -> list[Installation]:
        ...

    @abstractmethod
    async def update_sync_state(
        self,
        installation_id: str,
        *,
        sync_errors: list[str],
        last_sync: datetime | None = None,
    ) -> None:
        """Record the outcome of a pass; last_sync is left unchanged when None."""
        ...


class SyncLogStore(ABC):
    """Append-only SyncLog persistence.

    create() stores a log at pass start; finalize() stores its final state
    exactly once. A finalized log is immutable.
    """

    @abstractmethod
    async def create(self, log: SyncLog) -> SyncLog:
        ...

    @abstractmethod
    async def finalize(self, log: SyncLog) -> SyncLog:
        ...

    @abstractmethod
    async def list_for_installation(self, installation_id: str, limit: int = 20) -> list[SyncLog]:
        """Most recent logs first."""
        ...


# ── Registry ────────────────────────────────────────────────────────────────


class EntityRegistry:
    """Maps local entity-type names to their repositories."""

    def __init__(self, repositories: Iterable[EntityRepository] = ()) -> None:
        self._repositories: dict[str, EntityRepository] = {}
        for repository in repositories:
            self.register(repository)

    def register(self, repository: EntityRepository) -> None:
        self._repositories[repository.entity_type] = repository

    def resolve(self, entity_type: str) -> EntityRepository:
        """Return the repository for an entity type.

        Raises:
            ConfigurationError: If the entity type was never registered.
        """
        try:
            return self._repositories[entity_type]
        except KeyError:
            raise ConfigurationError(f"Unknown local entity type '{entity_type}'") from None

    def entity_types(self) -> list[str]:
        return sorted(self._repositories)


# ── In-Memory Implementations ───────────────────────────────────────────────


def _matches(record: LocalRecord, filters: dict[str, Any]) -> bool:
    for key, expected in filters.items():
        if key in RECORD_ATTRIBUTES:
            if getattr(record, key) != expected:
                return False
        elif record.data.get(key) != expected:
            return False
    return True


class InMemoryEntityRepository(EntityRepository):
    """Dict-backed entity collection."""

    def __init__(self, entity_type: str) -> None:
        self.entity_type = entity_type
        self._records: dict[str, LocalRecord] = {}
        self._lock = asyncio.Lock()
        self.audit: list[tuple[str, str, str]] = []  # (action, record_id, actor)

    async def get(self, record_id: str) -> LocalRecord | None:
        return self._records.get(record_id)

    async def find(self, filters: dict[str, Any]) -> list[LocalRecord]:
        return [r for r in self._records.values() if _matches(r, filters)]

    async def list(self, since: datetime | None = None) -> list[LocalRecord]:
        records = list(self._records.values())
        if since is not None:
            records = [r for r in records if r.updated_at >= since]
        return records

    async def create(
        self,
        data: dict[str, Any],
        *,
        actor: str,
        external_id: str | None = None,
        external_source: str | None = None,
    ) -> LocalRecord:
        async with self._lock:
            if external_id is not None and await self.find(
                {"external_id": external_id, "external_source": external_source}
            ):
                raise ValueError(
                    f"{self.entity_type} already linked to {external_source}:{external_id}"
                )
            record = LocalRecord(
                id=str(uuid.uuid4()),
                entity_type=self.entity_type,
                data=dict(data),
                external_id=external_id,
                external_source=external_source,
                updated_at=utcnow(),
            )
            self._records[record.id] = record
            self.audit.append(("create", record.id, actor))
            return record

    async def update(self, record_id: str, data: dict[str, Any], *, actor: str) -> LocalRecord:
        async with self._lock:
            existing = self._records.get(record_id)
            if existing is None:
                raise KeyError(f"{self.entity_type} '{record_id}' not found")
            updated = existing.model_copy(
                update={"data": {**existing.data, **data}, "updated_at": utcnow()}
            )
            self._records[record_id] = updated
            self.audit.append(("update", record_id, actor))
            return updated

    def seed(self, record: LocalRecord) -> LocalRecord:
        """Insert a record as-is (keeps its ID and updated_at)."""
        self._records[record.id] = record
        return record


class InMemoryInstallationStore(InstallationStore):
    """Dict-backed installation store."""

    def __init__(self, installations: Iterable[Installation] = ()) -> None:
        self._installations: dict[str, Installation] = {i.id: i for i in installations}

    async def get(self, installation_id: str) -> Installation | None:
        return self._installations.get(installation_id)

    async def save(self, installation: Installation, *, actor: str) -> Installation:
        self._installations[installation.id] = installation
        return installation

    async def list_enabled(self) -> list[Installation]:
        return [i for i in self._installations.values() if i.enabled]

    async def update_sync_state(
        self,
        installation_id: str,
        *,
        sync_errors: list[str],
        last_sync: datetime | None = None,
    ) -> None:
        existing = self._installations.get(installation_id)
        if existing is None:
            return
        update: dict[str, Any] = {"sync_errors": list(sync_errors)}
        if last_sync is not None:
            update["last_sync"] = last_sync
        self._installations[installation_id] = existing.model_copy(update=update)


class InMemorySyncLogStore(SyncLogStore):
    """Dict-backed SyncLog store enforcing finalize-once.

    Stores snapshots, so later mutation of a caller's SyncLog is not visible
    until it is finalized.
    """

    def __init__(self) -> None:
        self._logs: dict[str, SyncLog] = {}

    async def create(self, log: SyncLog) -> SyncLog:
        if log.id in self._logs:
            raise ValueError(f"SyncLog '{log.id}' already exists")
        self._logs[log.id] = log.model_copy(deep=True)
        return log

    async def finalize(self, log: SyncLog) -> SyncLog:
        stored = self._logs.get(log.id)
        if stored is None:
            raise KeyError(f"SyncLog '{log.id}' not found")
        if stored.status.is_final:
            raise ValueError(f"SyncLog '{log.id}' is already finalized")
        if not log.status.is_final:
            raise ValueError(f"SyncLog '{log.id}' cannot be finalized as {log.status.value}")
        self._logs[log.id] = log.model_copy(deep=True)
        return log

    async def list_for_installation(self, installation_id: str, limit: int = 20) -> list[SyncLog]:
        logs = [log for log in self._logs.values() if log.installation_id == installation_id]
        logs.sort(key=lambda log: log.started_at, reverse=True)
        return logs[:limit]
