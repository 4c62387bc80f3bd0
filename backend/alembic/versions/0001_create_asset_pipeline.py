"""Create tenant, asset, pipeline job and incident tables.

Revision ID: 0001
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: Sequence[str] | None = None


asset_status = postgresql.ENUM("visible", "hidden", "failed", name="assetstatus", create_type=False)
analysis_status = postgresql.ENUM(
    "uploading",
    "generating_thumbnails",
    "extracting_metadata",
    "generating_embedding",
    "scoring",
    "complete",
    "promotion_failed",
    name="analysisstatus",
    create_type=False,
)
thumbnail_status = postgresql.ENUM(
    "pending", "processing", "completed", "failed", "skipped", name="thumbnailstatus", create_type=False
)
pipeline_job_type = postgresql.ENUM(
    "process_asset",
    "generate_thumbnails",
    "extract_metadata",
    "ai_tagging",
    "finalize_asset",
    "promote_asset",
    "generate_embedding",
    "score_compliance",
    name="pipelinejobtype",
    create_type=False,
)
pipeline_job_status = postgresql.ENUM(
    "queued",
    "processing",
    "completed",
    "deferred",
    "failed",
    "dead_letter",
    name="pipelinejobstatus",
    create_type=False,
)
incident_source_type = postgresql.ENUM("asset", "job", name="incidentsourcetype", create_type=False)
incident_severity = postgresql.ENUM("info", "warning", "error", "critical", name="incidentseverity", create_type=False)
ticket_priority = postgresql.ENUM("P0", "P1", "P2", name="ticketpriority", create_type=False)
ticket_status = postgresql.ENUM("open", "resolved", name="ticketstatus", create_type=False)

_ENUMS = (
    asset_status,
    analysis_status,
    thumbnail_status,
    pipeline_job_type,
    pipeline_job_status,
    incident_source_type,
    incident_severity,
    ticket_priority,
    ticket_status,
)


def _timestamps(*, updated: bool = True) -> list[sa.Column]:
    columns = [sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)]
    if updated:
        columns.append(sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False))
    return columns


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in _ENUMS:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "tenants",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("slug", sa.String(length=120), nullable=False),
        *_timestamps(updated=False),
    )
    op.create_index(op.f("ix_tenants_slug"), "tenants", ["slug"], unique=True)

    op.create_table(
        "brands",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "tenant_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("slug", sa.String(length=120), nullable=False),
        sa.Column("compliance_rules", sa.JSON(), nullable=True),
        *_timestamps(updated=False),
        sa.UniqueConstraint("tenant_id", "slug", name="uq_brands_tenant_slug"),
    )
    op.create_index(op.f("ix_brands_tenant_id"), "brands", ["tenant_id"], unique=False)

    op.create_table(
        "assets",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "tenant_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column(
            "brand_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("brands.id", ondelete="SET NULL"), nullable=True
        ),
        sa.Column("title", sa.String(length=255), nullable=True),
        sa.Column("original_filename", sa.String(length=255), nullable=True),
        sa.Column("mime_type", sa.String(length=120), nullable=True),
        sa.Column("size_bytes", sa.Integer(), nullable=True),
        sa.Column("width", sa.Integer(), nullable=True),
        sa.Column("height", sa.Integer(), nullable=True),
        sa.Column("checksum_sha256", sa.String(length=64), nullable=True),
        sa.Column("storage_path", sa.String(length=512), nullable=True),
        sa.Column("status", asset_status, nullable=False, server_default="visible"),
        sa.Column("analysis_status", analysis_status, nullable=False, server_default="uploading"),
        sa.Column("thumbnail_status", thumbnail_status, nullable=True, server_default="pending"),
        sa.Column("thumbnail_error", sa.Text(), nullable=True),
        sa.Column("thumbnail_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("thumbnail_retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("thumbnail_last_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    for column in (
        "tenant_id",
        "brand_id",
        "checksum_sha256",
        "status",
        "analysis_status",
        "thumbnail_status",
        "deleted_at",
        "updated_at",
    ):
        op.create_index(op.f(f"ix_assets_{column}"), "assets", [column], unique=False)

    op.create_table(
        "asset_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "asset_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("assets.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("brand_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("actor_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("event_type", sa.String(length=80), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=True),
        *_timestamps(updated=False),
    )
    op.create_index(op.f("ix_asset_events_asset_id"), "asset_events", ["asset_id"], unique=False)
    op.create_index(op.f("ix_asset_events_tenant_id"), "asset_events", ["tenant_id"], unique=False)
    op.create_index(op.f("ix_asset_events_event_type"), "asset_events", ["event_type"], unique=False)

    op.create_table(
        "asset_embeddings",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "asset_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("assets.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("model", sa.String(length=64), nullable=False),
        sa.Column("dimensions", sa.Integer(), nullable=False),
        sa.Column("vector", sa.JSON(), nullable=False),
        *_timestamps(updated=False),
    )

    op.create_table(
        "asset_compliance_scores",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "asset_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("assets.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("brand_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="scored"),
        sa.Column("overall_score", sa.Integer(), nullable=True),
        sa.Column("color_score", sa.Integer(), nullable=True),
        sa.Column("typography_score", sa.Integer(), nullable=True),
        sa.Column("tone_score", sa.Integer(), nullable=True),
        sa.Column("imagery_score", sa.Integer(), nullable=True),
        sa.Column("applied_weight", sa.Float(), nullable=True),
        sa.Column("breakdown", sa.JSON(), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "pipeline_jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "asset_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("assets.id", ondelete="SET NULL"), nullable=True
        ),
        sa.Column("job_type", pipeline_job_type, nullable=False),
        sa.Column("status", pipeline_job_status, nullable=False, server_default="queued"),
        sa.Column("payload_json", sa.Text(), nullable=True),
        sa.Column("progress_pct", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dead_lettered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("triage_state", sa.String(length=32), nullable=False, server_default="open"),
        sa.Column("assigned_to_operator_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("sla_due_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("incident_url", sa.String(length=512), nullable=True),
        sa.Column("error_code", sa.String(length=120), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_by_operator_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    for column in (
        "asset_id",
        "job_type",
        "status",
        "next_retry_at",
        "dead_lettered_at",
        "triage_state",
        "assigned_to_operator_id",
        "sla_due_at",
        "created_at",
    ):
        op.create_index(op.f(f"ix_pipeline_jobs_{column}"), "pipeline_jobs", [column], unique=False)

    op.create_table(
        "pipeline_job_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "job_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("pipeline_jobs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("actor_operator_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("action", sa.String(length=80), nullable=False),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("meta_json", sa.Text(), nullable=True),
        *_timestamps(updated=False),
    )
    op.create_index(op.f("ix_pipeline_job_events_job_id"), "pipeline_job_events", ["job_id"], unique=False)
    op.create_index(
        op.f("ix_pipeline_job_events_actor_operator_id"), "pipeline_job_events", ["actor_operator_id"], unique=False
    )
    op.create_index(op.f("ix_pipeline_job_events_action"), "pipeline_job_events", ["action"], unique=False)

    op.create_table(
        "system_incidents",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("source_type", incident_source_type, nullable=False),
        sa.Column("source_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("severity", incident_severity, nullable=False, server_default="warning"),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("retryable", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("unique_signature", sa.String(length=255), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("detected_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("auto_resolved", sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    for column in ("source_type", "source_id", "tenant_id", "severity", "unique_signature", "detected_at", "resolved_at"):
        op.create_index(op.f(f"ix_system_incidents_{column}"), "system_incidents", [column], unique=False)

    op.create_table(
        "tickets",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("subject", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("priority", ticket_priority, nullable=False, server_default="P2"),
        sa.Column("status", ticket_status, nullable=False, server_default="open"),
        sa.Column("metadata", sa.JSON(), nullable=True),
        *_timestamps(updated=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(op.f("ix_tickets_tenant_id"), "tickets", ["tenant_id"], unique=False)
    op.create_index(op.f("ix_tickets_status"), "tickets", ["status"], unique=False)


def downgrade() -> None:
    op.drop_table("tickets")
    op.drop_table("system_incidents")
    op.drop_table("pipeline_job_events")
    op.drop_table("pipeline_jobs")
    op.drop_table("asset_compliance_scores")
    op.drop_table("asset_embeddings")
    op.drop_table("asset_events")
    op.drop_table("assets")
    op.drop_table("brands")
    op.drop_table("tenants")

    bind = op.get_bind()
    for enum_type in reversed(_ENUMS):
        enum_type.drop(bind, checkfirst=True)
