from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from dam.api.v1._errors import http_error
from dam.core.dependencies import Operator, get_operator
from dam.db.session import get_session
from dam.schemas.asset import (
    AssetDetailRead,
    AssetListResponse,
    BulkActionRequest,
    BulkActionResponse,
    RepairResponse,
    ThumbnailRetryResponse,
)
from dam.services import assets as asset_service
from dam.services import bulk_actions, incident_recovery, thumbnail_retry
from dam.services import incidents as incident_service
from dam.services.reconciliation import reconcile

router = APIRouter(prefix="/admin/assets", tags=["admin-assets"])


@router.get("", response_model=AssetListResponse)
async def admin_list_assets(
    q: str = Query(default="", max_length=200),
    tenant_id: UUID | None = Query(default=None),
    brand_id: UUID | None = Query(default=None),
    asset_status: str = Query(default="", alias="status", pattern="^(|visible|hidden|failed)$"),
    analysis_status: str = Query(
        default="",
        pattern="^(|uploading|generating_thumbnails|extracting_metadata|generating_embedding|scoring|complete|promotion_failed)$",
    ),
    thumbnail_status: str = Query(default="", pattern="^(|pending|processing|completed|failed|skipped)$"),
    created_from: datetime | None = Query(default=None),
    created_to: datetime | None = Query(default=None),
    include_deleted: bool = Query(default=False),
    sort: str = Query(default="newest", pattern="^(newest|oldest|updated|stale)$"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=24, ge=1, le=100),
    session: AsyncSession = Depends(get_session),
    _: Operator = Depends(get_operator),
) -> AssetListResponse:
    rows, meta = await asset_service.list_assets(
        session,
        asset_service.AssetListFilters(
            q=q,
            tenant_id=tenant_id,
            brand_id=brand_id,
            status=asset_status,
            analysis_status=analysis_status,
            thumbnail_status=thumbnail_status,
            created_from=created_from,
            created_to=created_to,
            include_deleted=include_deleted,
            sort=sort,
            page=page,
            limit=limit,
        ),
    )
    return AssetListResponse(items=[asset_service.asset_to_read(row) for row in rows], meta=meta)


@router.post("/bulk-action", response_model=BulkActionResponse)
async def admin_bulk_action(
    payload: BulkActionRequest,
    session: AsyncSession = Depends(get_session),
    operator: Operator = Depends(get_operator),
) -> BulkActionResponse:
    try:
        return await bulk_actions.run_bulk_action(
            session, action=payload.action, asset_ids=payload.asset_ids, operator=operator
        )
    except (PermissionError, ValueError) as exc:
        raise http_error(exc) from exc


@router.get("/{asset_id}", response_model=AssetDetailRead)
async def admin_get_asset(
    asset_id: UUID,
    session: AsyncSession = Depends(get_session),
    _: Operator = Depends(get_operator),
) -> AssetDetailRead:
    try:
        asset = await asset_service.get_asset_or_404(session, asset_id, include_deleted=True)
    except ValueError as exc:
        raise http_error(exc) from exc
    return await asset_service.asset_detail(session, asset)


@router.post("/{asset_id}/repair", response_model=RepairResponse)
async def admin_repair_asset(
    asset_id: UUID,
    session: AsyncSession = Depends(get_session),
    _: Operator = Depends(get_operator),
) -> RepairResponse:
    try:
        asset = await asset_service.get_asset_or_404(session, asset_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    outcome = await reconcile(session, asset)
    await session.commit()
    changes = list(outcome["changes"])
    updated = bool(outcome["updated"])
    open_incidents = await incident_service.open_incidents_for_asset(session, asset.id)
    if not open_incidents:
        return RepairResponse(updated=updated, changes=changes, resolved=True)
    repaired = await incident_recovery.attempt_repair(session, open_incidents[0])
    changes.extend(change for change in repaired["changes"] if change not in changes)
    return RepairResponse(
        updated=updated or bool(repaired["updated"]),
        changes=changes,
        resolved=bool(repaired["resolved"]),
    )


@router.post("/{asset_id}/thumbnails/retry", response_model=ThumbnailRetryResponse)
async def admin_retry_thumbnails(
    asset_id: UUID,
    session: AsyncSession = Depends(get_session),
    operator: Operator = Depends(get_operator),
) -> ThumbnailRetryResponse:
    try:
        asset = await asset_service.get_asset_or_404(session, asset_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    allowed, reason = thumbnail_retry.can_retry(asset)
    if not allowed:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=reason)
    try:
        job = await thumbnail_retry.dispatch_retry(session, asset, operator_id=operator.id)
    except thumbnail_retry.ThumbnailRetryError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return ThumbnailRetryResponse(asset_id=asset.id, job_id=job.id, retry_count=int(asset.thumbnail_retry_count or 0))
