from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from dam.schemas.incident import IncidentRead
from dam.schemas.pipeline import PipelineJobRead


AssetStatusLiteral = Literal["visible", "hidden", "failed"]
AnalysisStatusLiteral = Literal[
    "uploading",
    "generating_thumbnails",
    "extracting_metadata",
    "generating_embedding",
    "scoring",
    "complete",
    "promotion_failed",
]
ThumbnailStatusLiteral = Literal["pending", "processing", "completed", "failed", "skipped"]
BulkActionLiteral = Literal[
    "retry_pipeline",
    "regenerate_thumbnails",
    "rerun_metadata",
    "rerun_ai_tagging",
    "publish",
    "unpublish",
    "archive",
    "clear_thumbnail_timeout",
    "clear_promotion_failed",
    "reconcile",
    "create_ticket",
    "export_ids",
    "delete",
]


class PipelineFlags(BaseModel):
    visible_in_grid: bool
    processing_failed: bool
    pipeline_completed: bool
    metadata_extracted: bool
    thumbnails_generated: bool
    thumbnail_timeout: bool
    stuck_state_detected: bool
    auto_recover_attempted: bool


class AssetRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID
    brand_id: UUID | None = None
    title: str | None = None
    original_filename: str | None = None
    mime_type: str | None = None
    size_bytes: int | None = None
    width: int | None = None
    height: int | None = None
    storage_path: str | None = None
    status: AssetStatusLiteral
    analysis_status: AnalysisStatusLiteral
    thumbnail_status: ThumbnailStatusLiteral | None = None
    thumbnail_error: str | None = None
    thumbnail_retry_count: int = 0
    created_at: datetime
    updated_at: datetime
    pipeline_flags: PipelineFlags


class AssetListResponse(BaseModel):
    items: list[AssetRead]
    meta: dict[str, int]


class AssetEventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    event_type: str
    actor_id: UUID | None = None
    payload: dict[str, Any] | None = None
    created_at: datetime


class ComplianceSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    status: str
    overall_score: int | None = None
    color_score: int | None = None
    typography_score: int | None = None
    tone_score: int | None = None
    imagery_score: int | None = None


class AssetDetailRead(AssetRead):
    metadata: dict[str, Any] = Field(default_factory=dict)
    events: list[AssetEventRead] = Field(default_factory=list)
    jobs: list[PipelineJobRead] = Field(default_factory=list)
    open_incidents: list[IncidentRead] = Field(default_factory=list)
    has_embedding: bool = False
    compliance: ComplianceSummary | None = None


class RepairResponse(BaseModel):
    updated: bool
    changes: list[str] = Field(default_factory=list)
    resolved: bool = False


class ThumbnailRetryResponse(BaseModel):
    asset_id: UUID
    job_id: UUID
    retry_count: int


class BulkActionRequest(BaseModel):
    action: BulkActionLiteral
    asset_ids: list[UUID] = Field(default_factory=list, min_length=1, max_length=500)


class BulkActionItemResult(BaseModel):
    id: UUID
    ok: bool
    error: str | None = None


class BulkActionResponse(BaseModel):
    action: BulkActionLiteral
    results: list[BulkActionItemResult]
    success_count: int
    failed_count: int
    asset_ids: list[UUID] | None = None
