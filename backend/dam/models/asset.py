from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Enum, Float, ForeignKey, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, validates

from dam.core.pipeline_context import VisibilityMutationError, current_pipeline_job, visibility_change_allowed
from dam.db.base import Base, utcnow


class AssetStatus(str, enum.Enum):
    """Grid visibility. Processing progress lives in analysis_status and thumbnail_status."""

    visible = "visible"
    hidden = "hidden"
    failed = "failed"


class AnalysisStatus(str, enum.Enum):
    uploading = "uploading"
    generating_thumbnails = "generating_thumbnails"
    extracting_metadata = "extracting_metadata"
    generating_embedding = "generating_embedding"
    scoring = "scoring"
    complete = "complete"
    promotion_failed = "promotion_failed"


class ThumbnailStatus(str, enum.Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    skipped = "skipped"


TERMINAL_THUMBNAIL_STATUSES = frozenset({ThumbnailStatus.completed, ThumbnailStatus.failed, ThumbnailStatus.skipped})


class Asset(Base):
    __tablename__ = "assets"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    brand_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("brands.id", ondelete="SET NULL"), nullable=True, index=True
    )
    title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    original_filename: Mapped[str | None] = mapped_column(String(255), nullable=True)
    mime_type: Mapped[str | None] = mapped_column(String(120), nullable=True)
    size_bytes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    width: Mapped[int | None] = mapped_column(Integer, nullable=True)
    height: Mapped[int | None] = mapped_column(Integer, nullable=True)
    checksum_sha256: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    storage_path: Mapped[str | None] = mapped_column(String(512), nullable=True)

    status: Mapped[AssetStatus] = mapped_column(
        Enum(AssetStatus), nullable=False, default=AssetStatus.visible, index=True
    )
    analysis_status: Mapped[AnalysisStatus] = mapped_column(
        Enum(AnalysisStatus), nullable=False, default=AnalysisStatus.uploading, index=True
    )
    thumbnail_status: Mapped[ThumbnailStatus | None] = mapped_column(
        Enum(ThumbnailStatus), nullable=True, default=ThumbnailStatus.pending, index=True
    )
    thumbnail_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    thumbnail_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    thumbnail_retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    thumbnail_last_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    meta: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False, index=True
    )

    @validates("status")
    def _guard_visibility(self, _key: str, value: AssetStatus) -> AssetStatus:
        current = self.__dict__.get("status")
        if current is not None and current != value and not visibility_change_allowed():
            raise VisibilityMutationError(
                f"Pipeline job {current_pipeline_job()} may not change asset visibility ({current.value} -> {value.value})"
            )
        return value

    def meta_flag(self, key: str, default: Any = None) -> Any:
        return (self.meta or {}).get(key, default)

    def update_meta(self, **changes: Any) -> None:
        """Merge keys into metadata, dropping keys whose value is None. Reassigns so the JSON column is flagged dirty."""
        merged = dict(self.meta or {})
        for key, value in changes.items():
            if value is None:
                merged.pop(key, None)
            else:
                merged[key] = value
        self.meta = merged


class AssetEvent(Base):
    __tablename__ = "asset_events"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    asset_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("assets.id", ondelete="CASCADE"), nullable=False, index=True
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    brand_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    actor_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    event_type: Mapped[str] = mapped_column(String(80), nullable=False, index=True)
    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )


class AssetEmbedding(Base):
    __tablename__ = "asset_embeddings"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    asset_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("assets.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    model: Mapped[str] = mapped_column(String(64), nullable=False)
    dimensions: Mapped[int] = mapped_column(Integer, nullable=False)
    vector: Mapped[list[float]] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )


class AssetComplianceScore(Base):
    __tablename__ = "asset_compliance_scores"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    asset_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("assets.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    brand_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="scored")
    overall_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    color_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    typography_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tone_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    imagery_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    applied_weight: Mapped[float | None] = mapped_column(Float, nullable=True)
    breakdown: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False
    )
