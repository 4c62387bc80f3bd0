from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


PipelineJobStatusLiteral = Literal["queued", "processing", "completed", "deferred", "failed", "dead_letter"]
PipelineJobTypeLiteral = Literal[
    "process_asset",
    "generate_thumbnails",
    "extract_metadata",
    "ai_tagging",
    "finalize_asset",
    "promote_asset",
    "generate_embedding",
    "score_compliance",
]
PipelineJobTriageStateLiteral = Literal["open", "retrying", "ignored", "resolved"]


class PipelineJobRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    asset_id: UUID | None = None
    job_type: PipelineJobTypeLiteral
    status: PipelineJobStatusLiteral
    progress_pct: int
    attempt: int
    max_attempts: int = 3
    chain: list[str] = Field(default_factory=list)
    next_retry_at: datetime | None = None
    last_error_at: datetime | None = None
    dead_lettered_at: datetime | None = None
    triage_state: PipelineJobTriageStateLiteral = "open"
    assigned_to_operator_id: UUID | None = None
    sla_due_at: datetime | None = None
    incident_url: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None


class PipelineJobListResponse(BaseModel):
    items: list[PipelineJobRead]
    meta: dict[str, int]


class PipelineJobEventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    job_id: UUID
    actor_operator_id: UUID | None = None
    action: str
    note: str | None = None
    meta_json: str | None = None
    created_at: datetime


class PipelineJobEventsResponse(BaseModel):
    items: list[PipelineJobEventRead]


class PipelineJobRetryBulkRequest(BaseModel):
    job_ids: list[UUID] = Field(default_factory=list, min_length=1, max_length=200)


class PipelineJobTriageUpdateRequest(BaseModel):
    triage_state: PipelineJobTriageStateLiteral | None = None
    assigned_to_operator_id: UUID | None = None
    clear_assignee: bool = False
    sla_due_at: datetime | None = None
    clear_sla_due_at: bool = False
    incident_url: str | None = Field(default=None, max_length=512)
    clear_incident_url: bool = False
    note: str | None = None


class TelemetryWorkerRead(BaseModel):
    worker_id: str
    hostname: str | None = None
    pid: int | None = None
    app_version: str | None = None
    last_seen_at: datetime
    lag_seconds: int


class PipelineTelemetryResponse(BaseModel):
    queue_depth: int
    online_workers: int
    workers: list[TelemetryWorkerRead]
    stale_processing_count: int
    dead_letter_count: int = 0
    retry_scheduled_count: int = 0
    deferred_count: int = 0
    sla_breached_count: int = 0
    stuck_asset_count: int = 0
    oldest_queued_age_seconds: int | None = None
    avg_processing_seconds: int | None = None
    status_counts: dict[str, int] = Field(default_factory=dict)
    type_counts: dict[str, int] = Field(default_factory=dict)
