from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from dam.api.v1._errors import http_error
from dam.core.dependencies import Operator, get_operator
from dam.db.session import get_session
from dam.schemas.pipeline import (
    PipelineJobEventsResponse,
    PipelineJobListResponse,
    PipelineJobRead,
    PipelineJobRetryBulkRequest,
    PipelineJobTriageUpdateRequest,
    PipelineTelemetryResponse,
)
from dam.services import pipeline as pipeline_service

router = APIRouter(prefix="/admin/pipeline", tags=["admin-pipeline"])


@router.get("/jobs", response_model=PipelineJobListResponse)
async def admin_list_jobs(
    job_status: str = Query(
        default="", alias="status", pattern="^(|queued|processing|completed|deferred|failed|dead_letter)$"
    ),
    job_type: str = Query(default="", max_length=40),
    asset_id: UUID | None = Query(default=None),
    created_from: datetime | None = Query(default=None),
    created_to: datetime | None = Query(default=None),
    triage_state: str = Query(default="", pattern="^(|open|retrying|ignored|resolved)$"),
    assigned_to_operator_id: UUID | None = Query(default=None),
    sla_breached: bool = Query(default=False),
    dead_letter_only: bool = Query(default=False),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=24, ge=1, le=100),
    session: AsyncSession = Depends(get_session),
    _: Operator = Depends(get_operator),
) -> PipelineJobListResponse:
    try:
        rows, meta = await pipeline_service.list_jobs(
            session,
            pipeline_service.PipelineJobListFilters(
                page=page,
                limit=limit,
                status=job_status,
                job_type=job_type,
                asset_id=asset_id,
                created_from=created_from,
                created_to=created_to,
                triage_state=triage_state,
                assigned_to_operator_id=assigned_to_operator_id,
                sla_breached=sla_breached,
                dead_letter_only=dead_letter_only,
            ),
        )
    except ValueError as exc:
        raise http_error(exc) from exc
    return PipelineJobListResponse(items=[pipeline_service.job_to_read(row) for row in rows], meta=meta)


@router.get("/telemetry", response_model=PipelineTelemetryResponse)
async def admin_pipeline_telemetry(
    session: AsyncSession = Depends(get_session),
    _: Operator = Depends(get_operator),
) -> PipelineTelemetryResponse:
    return await pipeline_service.get_telemetry(session)


@router.post("/jobs/retry-bulk", response_model=list[PipelineJobRead])
async def admin_retry_jobs_bulk(
    payload: PipelineJobRetryBulkRequest,
    session: AsyncSession = Depends(get_session),
    operator: Operator = Depends(get_operator),
) -> list[PipelineJobRead]:
    rows = await pipeline_service.bulk_retry_jobs(session, job_ids=payload.job_ids, actor_operator_id=operator.id)
    return [pipeline_service.job_to_read(row) for row in rows]


@router.get("/jobs/{job_id}", response_model=PipelineJobRead)
async def admin_get_job(
    job_id: UUID,
    session: AsyncSession = Depends(get_session),
    _: Operator = Depends(get_operator),
) -> PipelineJobRead:
    try:
        job = await pipeline_service.get_job_or_404(session, job_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return pipeline_service.job_to_read(job)


@router.get("/jobs/{job_id}/events", response_model=PipelineJobEventsResponse)
async def admin_get_job_events(
    job_id: UUID,
    limit: int = Query(default=200, ge=1, le=500),
    session: AsyncSession = Depends(get_session),
    _: Operator = Depends(get_operator),
) -> PipelineJobEventsResponse:
    try:
        await pipeline_service.get_job_or_404(session, job_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    rows = await pipeline_service.list_job_events(session, job_id=job_id, limit=limit)
    return PipelineJobEventsResponse(items=[pipeline_service.job_event_to_read(row) for row in rows])


@router.post("/jobs/{job_id}/retry", response_model=PipelineJobRead)
async def admin_retry_job(
    job_id: UUID,
    session: AsyncSession = Depends(get_session),
    operator: Operator = Depends(get_operator),
) -> PipelineJobRead:
    try:
        job = await pipeline_service.get_job_or_404(session, job_id)
        job = await pipeline_service.manual_retry_job(session, job=job, actor_operator_id=operator.id)
    except ValueError as exc:
        if "not found" in str(exc).lower():
            raise http_error(exc) from exc
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return pipeline_service.job_to_read(job)


@router.patch("/jobs/{job_id}/triage", response_model=PipelineJobRead)
async def admin_update_job_triage(
    job_id: UUID,
    payload: PipelineJobTriageUpdateRequest,
    session: AsyncSession = Depends(get_session),
    operator: Operator = Depends(get_operator),
) -> PipelineJobRead:
    try:
        job = await pipeline_service.get_job_or_404(session, job_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    job = await pipeline_service.update_job_triage(
        session,
        job=job,
        actor_operator_id=operator.id,
        triage_state=payload.triage_state,
        assigned_to_operator_id=payload.assigned_to_operator_id,
        clear_assignee=payload.clear_assignee,
        sla_due_at=payload.sla_due_at,
        clear_sla_due_at=payload.clear_sla_due_at,
        incident_url=payload.incident_url,
        clear_incident_url=payload.clear_incident_url,
        note=payload.note,
    )
    return pipeline_service.job_to_read(job)
