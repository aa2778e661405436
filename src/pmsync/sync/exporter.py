"""Export pipeline: push local records to the external PM tool.

Records of the mapped entity type (optionally only those modified since
the last sync) are mapped outward and submitted as a single batch. A
record already linked to an external item carries that item's ID as "id"
so the tool updates it instead of creating a duplicate. Batch submission
means one network failure aborts the export for the whole mapping.
"""

from __future__ import annotations

from collections.abc import Callable, Collection
from datetime import datetime
from typing import Any

import structlog

from src.pmsync.sync.client import PMApiClient
from src.pmsync.sync.field_mapping import map_fields
from src.pmsync.sync.schemas import EntityMapping, ExportResult, Installation, LocalRecord
from src.pmsync.sync.store import EntityRegistry

logger = structlog.get_logger(__name__)


def build_export_item(
    record: LocalRecord,
    mapping: EntityMapping,
    source: str,
) -> dict[str, Any]:
    """Map one local record to the external shape."""
    item = map_fields(record.data, mapping.field_mappings, "export")
    if record.external_id is not None and record.external_source == source:
        item["id"] = record.external_id
    return item


class ExportPipeline:
    """Exports the records of one entity type to one external resource."""

    def __init__(
        self,
        registry: EntityRegistry,
        client_factory: Callable[[Installation], PMApiClient] = PMApiClient.for_installation,
    ) -> None:
        self._registry = registry
        self._client_factory = client_factory

    async def export_all(
        self,
        installation: Installation,
        mapping: EntityMapping,
        *,
        since: datetime | None = None,
        exclude: Collection[str] = (),
    ) -> ExportResult:
        """Submit the mapped records in one batch.

        Raises:
            ConfigurationError: If the mapping's entity type is unknown.
            ExternalAPIError: If the batch submission fails.
        """
        repository = self._registry.resolve(mapping.entity_type)
        records = await repository.list(since=since)
        if exclude:
            records = [r for r in records if r.id not in exclude]
        if not records:
            logger.debug(
                "sync.export_skipped",
                installation_id=installation.id,
                entity_type=mapping.entity_type,
            )
            return ExportResult(count=0)

        source = installation.provider.value
        items = [build_export_item(record, mapping, source) for record in records]

        client = self._client_factory(installation)
        count = await client.export_items(mapping.external_resource, items)

        logger.info(
            "sync.export_completed",
            installation_id=installation.id,
            entity_type=mapping.entity_type,
            submitted=len(items),
            exported=count,
        )
        return ExportResult(count=count)
