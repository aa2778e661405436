"""Sync orchestrator: one full synchronization pass for one installation.

A pass moves its SyncLog through pending -> in_progress -> completed |
partial | failed:

- The log is stored in_progress before anything else happens.
- Configuration is validated up front. A ConfigurationError fails the pass
  before any network call.
- Compatible entity mappings run concurrently. An error inside one mapping
  is recorded and never stops its siblings.
- completed: every mapping succeeded with no item errors and no unresolved
  conflicts. partial: something errored or conflicts wait for review.
  failed: the configuration is invalid or every mapping errored.
- The log is finalized exactly once, even when the installation is disabled
  mid-pass or an unexpected error escapes.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field

import structlog

from src.pmsync.core.exceptions import ConfigurationError
from src.pmsync.core.monitoring import record_pass_counts, track_sync_pass
from src.pmsync.sync.exporter import ExportPipeline
from src.pmsync.sync.field_mapping import validate_field_mappings
from src.pmsync.sync.importer import ImportPipeline
from src.pmsync.sync.schemas import (
    EntityMapping,
    ErrorScope,
    ExportResult,
    ImportResult,
    Installation,
    SyncDirection,
    SyncError,
    SyncLog,
    SyncStatus,
    utcnow,
)
from src.pmsync.sync.store import EntityRegistry, InstallationStore, SyncLogStore

logger = structlog.get_logger(__name__)


@dataclass
class _MappingOutcome:
    mapping: EntityMapping
    imported: ImportResult | None = None
    exported: ExportResult | None = None
    errors: list[SyncError] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return any(e.scope == ErrorScope.MAPPING for e in self.errors)


def compatible_mappings(
    installation: Installation,
    direction: SyncDirection,
) -> list[tuple[EntityMapping, bool, bool]]:
    """Return (mapping, do_import, do_export) for every mapping that has work."""
    want_import = direction in (SyncDirection.BIDIRECTIONAL, SyncDirection.IMPORT)
    want_export = direction in (SyncDirection.BIDIRECTIONAL, SyncDirection.EXPORT)

    selected = []
    for mapping in installation.entity_mappings:
        do_import = want_import and mapping.sync_direction.allows_import()
        do_export = want_export and mapping.sync_direction.allows_export()
        if do_import or do_export:
            selected.append((mapping, do_import, do_export))
    return selected


class SyncOrchestrator:
    """Runs sync passes and persists one SyncLog per pass."""

    def __init__(
        self,
        registry: EntityRegistry,
        installations: InstallationStore,
        logs: SyncLogStore,
        importer: ImportPipeline,
        exporter: ExportPipeline,
    ) -> None:
        self._registry = registry
        self._installations = installations
        self._logs = logs
        self._importer = importer
        self._exporter = exporter

    def validate(self, installation: Installation) -> None:
        """Reject an installation that cannot be synced as configured.

        Raises:
            ConfigurationError: On a missing endpoint or token, no mappings,
                an unknown entity type or an unusable field mapping table.
        """
        if not installation.api_endpoint:
            raise ConfigurationError(f"Installation '{installation.id}' has no api_endpoint")
        if not installation.api_key:
            raise ConfigurationError(f"Installation '{installation.id}' has no api_key")
        if not installation.entity_mappings:
            raise ConfigurationError(f"Installation '{installation.id}' has no entity mappings")
        for mapping in installation.entity_mappings:
            if not mapping.external_resource:
                raise ConfigurationError(
                    f"Entity mapping for '{mapping.entity_type}' has no external_resource"
                )
            self._registry.resolve(mapping.entity_type)
            validate_field_mappings(mapping.field_mappings, mapping.entity_type)

    async def run_pass(
        self,
        installation: Installation,
        direction: SyncDirection | str = SyncDirection.BIDIRECTIONAL,
        *,
        actor: str,
    ) -> SyncLog:
        """Run one pass and return its finalized SyncLog.

        Never raises for sync failures; the outcome is on the log.
        """
        try:
            recorded = SyncDirection(direction)
        except ValueError:
            # Rejected in _execute; the stored value is only a placeholder
            recorded = SyncDirection.BIDIRECTIONAL
        log = SyncLog(
            id=str(uuid.uuid4()),
            installation_id=installation.id,
            provider=installation.provider,
            direction=recorded,
            triggered_by=actor,
        )
        bound = logger.bind(installation_id=installation.id, sync_log_id=log.id, actor=actor)

        async with track_sync_pass(installation.provider.value) as tracker:
            start = time.perf_counter()
            log.status = SyncStatus.IN_PROGRESS
            await self._logs.create(log)
            bound.info("sync.pass_started", direction=getattr(direction, "value", direction))

            try:
                await self._execute(installation, log, direction, bound)
            except Exception as exc:
                bound.exception("sync.pass_crashed", error=str(exc))
                log.errors.append(SyncError.from_exception(exc, ErrorScope.PASS))
                log.status = SyncStatus.FAILED
            finally:
                log.completed_at = utcnow()
                log.duration_ms = int((time.perf_counter() - start) * 1000)
                await self._finish(installation, log, bound)
                tracker["status"] = log.status.value

        record_pass_counts(
            installation.provider.value,
            imported=log.items_imported,
            exported=log.items_exported,
            conflicts_resolved=log.conflicts_resolved,
            conflicts_unresolved=len(log.unresolved_conflicts),
        )
        return log

    async def _execute(
        self,
        installation: Installation,
        log: SyncLog,
        direction: SyncDirection | str,
        bound,
    ) -> None:
        try:
            try:
                log.direction = SyncDirection(direction)
            except ValueError:
                raise ConfigurationError(
                    f"Unknown sync direction: {direction!r} "
                    f"(log direction {log.direction.value!r} is a placeholder)"
                ) from None
            self.validate(installation)
        except ConfigurationError as exc:
            bound.warning("sync.configuration_invalid", error=str(exc))
            log.errors.append(SyncError.from_exception(exc, ErrorScope.PASS))
            log.status = SyncStatus.FAILED
            return

        selected = compatible_mappings(installation, log.direction)
        if not selected:
            bound.info("sync.no_compatible_mappings", direction=log.direction.value)
            log.status = SyncStatus.COMPLETED
            return

        outcomes = await asyncio.gather(
            *(
                self._run_mapping(installation, mapping, do_import, do_export, log.triggered_by)
                for mapping, do_import, do_export in selected
            )
        )

        for outcome in outcomes:
            log.errors.extend(outcome.errors)
            if outcome.imported is not None:
                log.items_imported += outcome.imported.count
                log.conflicts_detected += outcome.imported.conflicts
                log.conflicts_resolved += outcome.imported.conflicts_resolved
                log.conflicts.extend(outcome.imported.conflict_details)
            if outcome.exported is not None:
                log.items_exported += outcome.exported.count

        if all(outcome.failed for outcome in outcomes):
            log.status = SyncStatus.FAILED
        elif log.errors or log.unresolved_conflicts:
            log.status = SyncStatus.PARTIAL
        else:
            log.status = SyncStatus.COMPLETED

    async def _run_mapping(
        self,
        installation: Installation,
        mapping: EntityMapping,
        do_import: bool,
        do_export: bool,
        actor: str,
    ) -> _MappingOutcome:
        outcome = _MappingOutcome(mapping=mapping)
        try:
            if do_import:
                outcome.imported = await self._importer.import_all(
                    installation, mapping, actor=actor
                )
                outcome.errors.extend(outcome.imported.errors)
            if do_export:
                deferred = set(outcome.imported.deferred_record_ids) if outcome.imported else set()
                outcome.exported = await self._exporter.export_all(
                    installation, mapping, since=installation.last_sync, exclude=deferred
                )
        except Exception as exc:
            logger.warning(
                "sync.mapping_failed",
                installation_id=installation.id,
                entity_type=mapping.entity_type,
                external_resource=mapping.external_resource,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            outcome.errors.append(
                SyncError.from_exception(exc, ErrorScope.MAPPING, entity_type=mapping.entity_type)
            )
        return outcome

    async def _finish(self, installation: Installation, log: SyncLog, bound) -> None:
        if not log.status.is_final:
            log.status = SyncStatus.FAILED

        last_sync = log.started_at if log.status != SyncStatus.FAILED else None
        try:
            await self._installations.update_sync_state(
                installation.id,
                sync_errors=[error.message for error in log.errors],
                last_sync=last_sync,
            )
        except Exception as exc:
            bound.exception("sync.installation_update_failed", error=str(exc))
            log.errors.append(SyncError.from_exception(exc, ErrorScope.PASS))

        await self._logs.finalize(log)
        bound.info(
            "sync.pass_completed",
            status=log.status.value,
            imported=log.items_imported,
            exported=log.items_exported,
            conflicts=log.conflicts_detected,
            conflicts_resolved=log.conflicts_resolved,
            errors=len(log.errors),
            duration_ms=log.duration_ms,
        )
