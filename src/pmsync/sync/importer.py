"""Import pipeline: pull external items into the local entity store.

For one entity mapping the pipeline fetches every item of the external
resource, then handles each item independently:

1. Map external keys to local keys.
2. Look up the local record by {external_id, external_source}.
3. No match: create a linked record.
4. Match: detect field conflicts and resolve each under the installation's
   policy. The record is updated only when every conflict was applied;
   otherwise it is left untouched and its conflicts wait for review.

A failure on one item becomes an item-scope SyncError and never stops the
rest of the batch. Items run concurrently up to a semaphore bound, while
items that share an external ID are serialized so the lookup-then-create
step cannot link two records to one external item.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import structlog

from src.pmsync.core.exceptions import ItemProcessingError
from src.pmsync.sync.client import PMApiClient
from src.pmsync.sync.conflicts import (
    ConflictDetector,
    ConflictResolver,
    extract_external_timestamp,
)
from src.pmsync.sync.field_mapping import map_fields
from src.pmsync.sync.schemas import (
    ConflictRecord,
    EntityMapping,
    ErrorScope,
    ImportResult,
    Installation,
    SyncError,
)
from src.pmsync.sync.store import EntityRegistry, EntityRepository

logger = structlog.get_logger(__name__)

ClientFactory = Callable[[Installation], PMApiClient]


@dataclass
class _ItemOutcome:
    imported: bool = False
    conflicts: list[ConflictRecord] = field(default_factory=list)
    error: SyncError | None = None
    deferred_record_id: str | None = None


def _external_id_of(item: Any) -> str:
    if not isinstance(item, Mapping):
        raise ItemProcessingError(
            f"Expected a key/value item, got {type(item).__name__}"
        )
    external_id = item.get("id")
    if external_id is None or external_id == "":
        raise ItemProcessingError("External item has no 'id'")
    return str(external_id)


class ImportPipeline:
    """Imports the items of one external resource into one entity type.

    Args:
        registry: Entity type -> repository lookup.
        resolver: Conflict resolver (holds the AI collaborator).
        client_factory: Builds a PM client for an installation.
        detector: Conflict detector.
        concurrency: Maximum number of items processed at once.
    """

    def __init__(
        self,
        registry: EntityRegistry,
        resolver: ConflictResolver,
        client_factory: ClientFactory = PMApiClient.for_installation,
        detector: ConflictDetector | None = None,
        concurrency: int = 5,
    ) -> None:
        self._registry = registry
        self._resolver = resolver
        self._client_factory = client_factory
        self._detector = detector or ConflictDetector()
        self._concurrency = max(1, concurrency)

    async def import_all(
        self,
        installation: Installation,
        mapping: EntityMapping,
        *,
        actor: str,
    ) -> ImportResult:
        """Import every item of mapping.external_resource.

        Raises:
            ConfigurationError: If the mapping's entity type is unknown.
            ExternalAPIError: If the items cannot be fetched. Per-item
                failures never raise; they are returned in result.errors.
        """
        repository = self._registry.resolve(mapping.entity_type)
        client = self._client_factory(installation)
        items = await client.fetch_items(mapping.external_resource, mapping.field_mappings)

        semaphore = asyncio.Semaphore(self._concurrency)
        locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

        async def run(item: Any) -> _ItemOutcome:
            async with semaphore:
                return await self._process_item(
                    item, installation, mapping, repository, locks, actor
                )

        outcomes = await asyncio.gather(*(run(item) for item in items))

        result = ImportResult()
        for outcome in outcomes:
            if outcome.error is not None:
                result.errors.append(outcome.error)
                continue
            if outcome.imported:
                result.count += 1
            result.conflicts += len(outcome.conflicts)
            result.conflicts_resolved += sum(1 for c in outcome.conflicts if c.resolved)
            result.conflict_details.extend(outcome.conflicts)
            if outcome.deferred_record_id is not None:
                result.deferred_record_ids.append(outcome.deferred_record_id)

        logger.info(
            "sync.import_completed",
            installation_id=installation.id,
            entity_type=mapping.entity_type,
            fetched=len(items),
            imported=result.count,
            conflicts=result.conflicts,
            unresolved=result.unresolved,
            errors=len(result.errors),
        )
        return result

    async def _process_item(
        self,
        item: Any,
        installation: Installation,
        mapping: EntityMapping,
        repository: EntityRepository,
        locks: defaultdict[str, asyncio.Lock],
        actor: str,
    ) -> _ItemOutcome:
        external_id: str | None = None
        try:
            external_id = _external_id_of(item)
            async with locks[external_id]:
                return await self._import_item(
                    item, external_id, installation, mapping, repository, actor
                )
        except Exception as exc:
            logger.warning(
                "sync.import_item_failed",
                installation_id=installation.id,
                entity_type=mapping.entity_type,
                external_id=external_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return _ItemOutcome(
                error=SyncError.from_exception(
                    exc,
                    ErrorScope.ITEM,
                    entity_type=mapping.entity_type,
                    external_id=external_id,
                )
            )

    async def _import_item(
        self,
        item: Mapping[str, Any],
        external_id: str,
        installation: Installation,
        mapping: EntityMapping,
        repository: EntityRepository,
        actor: str,
    ) -> _ItemOutcome:
        source = installation.provider.value
        mapped = map_fields(item, mapping.field_mappings, "import")

        existing = await repository.find({"external_id": external_id, "external_source": source})
        if not existing:
            await repository.create(
                mapped,
                actor=actor,
                external_id=external_id,
                external_source=source,
            )
            logger.debug(
                "sync.import_item_created",
                installation_id=installation.id,
                entity_type=mapping.entity_type,
                external_id=external_id,
            )
            return _ItemOutcome(imported=True)

        record = existing[0]
        conflicts = self._detector.detect(record, mapped, extract_external_timestamp(item))

        policy = installation.sync_config.conflict_resolution
        threshold = installation.sync_config.ai_confidence_threshold
        records = [
            ConflictRecord(
                conflict=conflict,
                resolution=await self._resolver.resolve(
                    conflict, policy, confidence_threshold=threshold
                ),
            )
            for conflict in conflicts
        ]

        if not all(r.resolution.applied for r in records):
            # Record stays untouched until every conflict is applied
            deferred = [
                r.model_copy(update={"resolution": r.resolution.model_copy(update={"applied": False})})
                for r in records
            ]
            logger.info(
                "sync.import_item_deferred",
                installation_id=installation.id,
                entity_type=mapping.entity_type,
                external_id=external_id,
                conflicts=len(deferred),
            )
            return _ItemOutcome(conflicts=deferred, deferred_record_id=record.id)

        update = dict(mapped)
        for r in records:
            update[r.conflict.field] = r.resolution.winning_value(r.conflict)
        await repository.update(record.id, update, actor=actor)
        return _ItemOutcome(imported=True, conflicts=records)
