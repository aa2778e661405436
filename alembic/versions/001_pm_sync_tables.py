"""PM sync tables: installations, entity_records, sync_logs.

Revision ID: 001_pm_sync_tables
Revises:
Create Date: 2026-10-17

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID, JSON

# revision identifiers, used by Alembic.
revision: str = "001_pm_sync_tables"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute("CREATE SCHEMA IF NOT EXISTS pm_sync")

    op.create_table(
        "installations",
        sa.Column("id", sa.String(100), primary_key=True),
        sa.Column("provider", sa.String(30), nullable=False),
        sa.Column("api_key", sa.Text(), nullable=False, server_default=""),
        sa.Column("api_endpoint", sa.String(500), nullable=False, server_default=""),
        sa.Column("entity_mappings", JSON(), server_default=sa.text("'[]'::json")),
        sa.Column("sync_config", JSON(), server_default=sa.text("'{}'::json")),
        sa.Column("enabled", sa.Boolean(), server_default=sa.text("false")),
        sa.Column("last_sync", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sync_errors", JSON(), server_default=sa.text("'[]'::json")),
        sa.Column("updated_by", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        schema="pm_sync",
    )

    op.create_table(
        "entity_records",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("entity_type", sa.String(100), nullable=False),
        sa.Column("data", JSON(), server_default=sa.text("'{}'::json")),
        sa.Column("external_id", sa.String(255), nullable=True),
        sa.Column("external_source", sa.String(30), nullable=True),
        sa.Column("created_by", sa.String(255), nullable=True),
        sa.Column("updated_by", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint(
            "entity_type", "external_source", "external_id",
            name="uq_entity_record_external_link",
        ),
        schema="pm_sync",
    )
    op.create_index(
        "ix_entity_records_type_updated",
        "entity_records",
        ["entity_type", "updated_at"],
        schema="pm_sync",
    )

    op.create_table(
        "sync_logs",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("installation_id", sa.String(100), nullable=False),
        sa.Column("provider", sa.String(30), nullable=False),
        sa.Column("direction", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("triggered_by", sa.String(255), nullable=False),
        sa.Column("items_imported", sa.Integer(), server_default=sa.text("0")),
        sa.Column("items_exported", sa.Integer(), server_default=sa.text("0")),
        sa.Column("conflicts_detected", sa.Integer(), server_default=sa.text("0")),
        sa.Column("conflicts_resolved", sa.Integer(), server_default=sa.text("0")),
        sa.Column("conflicts", JSON(), server_default=sa.text("'[]'::json")),
        sa.Column("errors", JSON(), server_default=sa.text("'[]'::json")),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        schema="pm_sync",
    )
    op.create_index(
        "ix_sync_logs_installation_started",
        "sync_logs",
        ["installation_id", "started_at"],
        schema="pm_sync",
    )


def downgrade() -> None:
    op.drop_index("ix_sync_logs_installation_started", table_name="sync_logs", schema="pm_sync")
    op.drop_table("sync_logs", schema="pm_sync")
    op.drop_index("ix_entity_records_type_updated", table_name="entity_records", schema="pm_sync")
    op.drop_table("entity_records", schema="pm_sync")
    op.drop_table("installations", schema="pm_sync")
