"""PM integration service: the application-facing entry point.

Wraps the orchestrator and scheduler with installation lifecycle:
enabling sync, disabling it, manual "Sync now" passes, restoring schedules
at startup and dashboard statistics over recent SyncLogs.

build_sync_service() wires the full engine from stores plus settings.
"""

from __future__ import annotations

from collections.abc import Callable

import structlog

from src.pmsync.config import Settings, get_settings
from src.pmsync.core.exceptions import ConfigurationError, InstallationNotFoundError
from src.pmsync.sync.advisor import ConflictAdvisor
from src.pmsync.sync.client import PMApiClient
from src.pmsync.sync.conflicts import ConflictResolver
from src.pmsync.sync.exporter import ExportPipeline
from src.pmsync.sync.importer import ImportPipeline
from src.pmsync.sync.orchestrator import SyncOrchestrator
from src.pmsync.sync.scheduler import SyncScheduler
from src.pmsync.sync.schemas import (
    Installation,
    SyncDirection,
    SyncLog,
    SyncStats,
    SyncStatus,
)
from src.pmsync.sync.store import EntityRegistry, InstallationStore, SyncLogStore

logger = structlog.get_logger(__name__)


class PMIntegrationService:
    """Lifecycle operations over installations and their sync passes."""

    def __init__(
        self,
        installations: InstallationStore,
        logs: SyncLogStore,
        orchestrator: SyncOrchestrator,
        scheduler: SyncScheduler,
    ) -> None:
        self._installations = installations
        self._logs = logs
        self._orchestrator = orchestrator
        self.scheduler = scheduler

    async def _require(self, installation_id: str) -> Installation:
        installation = await self._installations.get(installation_id)
        if installation is None:
            raise InstallationNotFoundError(installation_id)
        return installation

    async def initialize_sync(self, installation: Installation, *, actor: str) -> Installation:
        """Enable sync for an installation and start its schedule.

        Resets last_sync and sync_errors. Scheduling only happens when
        sync_config.interval_minutes is positive.

        Raises:
            ConfigurationError: If the installation cannot be synced as configured.
        """
        self._orchestrator.validate(installation)

        enabled = installation.model_copy(
            update={"enabled": True, "last_sync": None, "sync_errors": []}
        )
        saved = await self._installations.save(enabled, actor=actor)

        interval = saved.sync_config.interval_minutes
        if interval > 0:
            self.scheduler.schedule(saved.id, interval)
        else:
            self.scheduler.cancel(saved.id)

        logger.info(
            "sync.initialized",
            installation_id=saved.id,
            provider=saved.provider.value,
            interval_minutes=interval,
            actor=actor,
        )
        return saved

    async def disable_sync(self, installation_id: str, *, actor: str) -> Installation:
        """Disable sync and stop the schedule. An in-flight pass still persists."""
        installation = await self._require(installation_id)
        disabled = installation.model_copy(update={"enabled": False})
        saved = await self._installations.save(disabled, actor=actor)
        self.scheduler.cancel(installation_id)
        logger.info("sync.disabled", installation_id=installation_id, actor=actor)
        return saved

    async def perform_sync(
        self,
        installation_id: str,
        direction: SyncDirection | str = SyncDirection.BIDIRECTIONAL,
        *,
        actor: str,
    ) -> SyncLog:
        """Run a manual pass now.

        Raises:
            InstallationNotFoundError: If the installation does not exist.
            ConfigurationError: If sync is not enabled for the installation.
            SyncAlreadyRunningError: If a pass is already running for it.
        """
        installation = await self._require(installation_id)
        if not installation.enabled:
            raise ConfigurationError("PM sync not configured")
        return await self.scheduler.trigger(installation, direction, actor=actor)

    async def restore_schedules(self) -> int:
        """Schedule every enabled installation. Returns the number scheduled."""
        restored = 0
        for installation in await self._installations.list_enabled():
            interval = installation.sync_config.interval_minutes
            if interval <= 0:
                continue
            self.scheduler.schedule(installation.id, interval)
            restored += 1
        logger.info("sync.schedules_restored", count=restored)
        return restored

    async def list_logs(self, installation_id: str, limit: int = 20) -> list[SyncLog]:
        await self._require(installation_id)
        return await self._logs.list_for_installation(installation_id, limit=limit)

    async def sync_stats(self, installation_id: str, limit: int = 20) -> SyncStats:
        """Aggregate the most recent SyncLogs for dashboard display."""
        logs = await self.list_logs(installation_id, limit=limit)
        stats = SyncStats(total_syncs=len(logs))
        for log in logs:
            stats.total_imported += log.items_imported
            stats.total_exported += log.items_exported
            stats.total_conflicts += log.conflicts_detected
            if log.status == SyncStatus.COMPLETED:
                stats.successful += 1
            elif log.status == SyncStatus.PARTIAL:
                stats.partial += 1
            elif log.status == SyncStatus.FAILED:
                stats.failed += 1
        if logs:
            stats.last_sync = logs[0].completed_at or logs[0].started_at
        return stats


def build_sync_service(
    registry: EntityRegistry,
    installations: InstallationStore,
    logs: SyncLogStore,
    advisor: ConflictAdvisor | None = None,
    client_factory: Callable[[Installation], PMApiClient] = PMApiClient.for_installation,
    settings: Settings | None = None,
) -> PMIntegrationService:
    """Wire resolver, pipelines, orchestrator and scheduler into a service."""
    settings = settings or get_settings()

    resolver = ConflictResolver(
        advisor=advisor,
        confidence_threshold=settings.AI_CONFIDENCE_THRESHOLD,
        ai_timeout=settings.AI_RESOLUTION_TIMEOUT,
    )
    orchestrator = SyncOrchestrator(
        registry=registry,
        installations=installations,
        logs=logs,
        importer=ImportPipeline(
            registry,
            resolver,
            client_factory=client_factory,
            concurrency=settings.SYNC_ITEM_CONCURRENCY,
        ),
        exporter=ExportPipeline(registry, client_factory=client_factory),
    )
    scheduler = SyncScheduler(
        orchestrator,
        installations,
        actor=settings.SYNC_SCHEDULER_ACTOR,
    )
    return PMIntegrationService(installations, logs, orchestrator, scheduler)
