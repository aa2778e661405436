"""Sync engine persistence models in the pm_sync schema.

Three SQLAlchemy models:
- InstallationModel: One configured PM tool connection (mappings and
  sync_config stored as JSON documents)
- EntityRecordModel: Local entity records for every registered entity
  type. One row per record; external links are unique per
  (entity_type, external_source, external_id).
- SyncLogModel: Append-only audit of sync passes, with conflict and error
  snapshots stored as JSON.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.pmsync.core.database import Base


class InstallationModel(Base):
    """One connection between the host application and one PM tool."""

    __tablename__ = "installations"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    provider: Mapped[str] = mapped_column(String(30), nullable=False)
    api_key: Mapped[str] = mapped_column(Text, nullable=False, default="")
    api_endpoint: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    entity_mappings: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json")
    )
    sync_config: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json")
    )
    enabled: Mapped[bool] = mapped_column(Boolean, default=False, server_default=text("false"))
    last_sync: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sync_errors: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json")
    )
    updated_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class EntityRecordModel(Base):
    """A local entity record, optionally linked to one external item."""

    __tablename__ = "entity_records"
    __table_args__ = (
        UniqueConstraint(
            "entity_type",
            "external_source",
            "external_id",
            name="uq_entity_record_external_link",
        ),
        Index("ix_entity_records_type_updated", "entity_type", "updated_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    entity_type: Mapped[str] = mapped_column(String(100), nullable=False)
    data: Mapped[dict] = mapped_column(JSON, default=dict, server_default=text("'{}'::json"))
    external_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    external_source: Mapped[str | None] = mapped_column(String(30), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


class SyncLogModel(Base):
    """Persisted audit record of one sync pass."""

    __tablename__ = "sync_logs"
    __table_args__ = (
        Index("ix_sync_logs_installation_started", "installation_id", "started_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    installation_id: Mapped[str] = mapped_column(String(100), nullable=False)
    provider: Mapped[str] = mapped_column(String(30), nullable=False)
    direction: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    triggered_by: Mapped[str] = mapped_column(String(255), nullable=False)
    items_imported: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    items_exported: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    conflicts_detected: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    conflicts_resolved: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    conflicts: Mapped[list] = mapped_column(JSON, default=list, server_default=text("'[]'::json"))
    errors: Mapped[list] = mapped_column(JSON, default=list, server_default=text("'[]'::json"))
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
