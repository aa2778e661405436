"""Field mapping between local entity fields and external resource fields.

Defines:
- map_fields(): Renames keys in one direction using a mapping table
- validate_field_mappings(): Rejects tables that cannot round-trip

A mapping table maps local field keys to external field keys, e.g.
{"title": "summary", "status": "state"}. Source keys that are not in the
table are dropped silently; mapped keys missing from the source are omitted.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Literal

from src.pmsync.core.exceptions import ConfigurationError, ItemProcessingError

MapDirection = Literal["import", "export"]


def map_fields(
    record: Mapping[str, Any],
    field_mappings: Mapping[str, str],
    direction: MapDirection,
) -> dict[str, Any]:
    """Rename the keys of one record according to a mapping table.

    Args:
        record: Source field map (external item on import, local data on export).
        field_mappings: Local key -> external key table.
        direction: "import" (external keys -> local keys) or "export"
            (local keys -> external keys).

    Returns:
        New dict holding only the mapped keys present in the source.

    Raises:
        ItemProcessingError: If the record is not a key/value mapping.
        ValueError: If direction is neither "import" nor "export".
    """
    if not isinstance(record, Mapping):
        raise ItemProcessingError(
            f"Expected a key/value record, got {type(record).__name__}"
        )

    mapped: dict[str, Any] = {}

    if direction == "import":
        for local_key, external_key in field_mappings.items():
            if external_key in record:
                mapped[local_key] = record[external_key]
    elif direction == "export":
        for local_key, external_key in field_mappings.items():
            if local_key in record:
                mapped[external_key] = record[local_key]
    else:
        raise ValueError(f"Unknown mapping direction: {direction!r}")

    return mapped


def validate_field_mappings(field_mappings: Mapping[str, str], entity_type: str) -> None:
    """Check that a mapping table is usable in both directions.

    Raises:
        ConfigurationError: If the table is empty, holds non-string or blank
            keys, or maps two local keys onto the same external key.
    """
    if not field_mappings:
        raise ConfigurationError(f"Entity mapping for '{entity_type}' has no field mappings")

    seen: dict[str, str] = {}
    for local_key, external_key in field_mappings.items():
        if not isinstance(local_key, str) or not isinstance(external_key, str):
            raise ConfigurationError(
                f"Field mappings for '{entity_type}' must map strings to strings"
            )
        if not local_key.strip() or not external_key.strip():
            raise ConfigurationError(f"Field mappings for '{entity_type}' contain a blank key")
        if external_key in seen:
            raise ConfigurationError(
                f"Field mappings for '{entity_type}' map both '{seen[external_key]}' "
                f"and '{local_key}' to external field '{external_key}'"
            )
        seen[external_key] = local_key
