from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

import anyio
from fastapi import UploadFile
from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.elements import ColumnElement

from dam.db.base import utcnow
from dam.models.asset import AnalysisStatus, Asset, AssetComplianceScore, AssetEmbedding, AssetStatus, ThumbnailStatus
from dam.models.tenant import Brand, Tenant
from dam.schemas.asset import (
    AssetDetailRead,
    AssetEventRead,
    AssetRead,
    ComplianceSummary,
    PipelineFlags,
)
from dam.schemas.incident import IncidentRead
from dam.services import incidents, pipeline, storage
from dam.services.asset_events import list_asset_events, record_asset_event
from dam.services.reconciliation import pipeline_flags

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AssetListFilters:
    q: str = ""
    tenant_id: UUID | None = None
    brand_id: UUID | None = None
    status: str = ""
    analysis_status: str = ""
    thumbnail_status: str = ""
    created_from: datetime | None = None
    created_to: datetime | None = None
    include_deleted: bool = False
    page: int = 1
    limit: int = 24
    sort: str = "newest"


async def list_assets(session: AsyncSession, filters: AssetListFilters) -> tuple[list[Asset], dict[str, int]]:
    clauses: list[ColumnElement[bool]] = []
    if not filters.include_deleted:
        clauses.append(Asset.deleted_at.is_(None))
    if filters.q:
        q = f"%{filters.q.strip().lower()}%"
        clauses.append(
            or_(
                func.lower(Asset.title).like(q),
                func.lower(Asset.original_filename).like(q),
                func.lower(Asset.storage_path).like(q),
            )
        )
    if filters.tenant_id:
        clauses.append(Asset.tenant_id == filters.tenant_id)
    if filters.brand_id:
        clauses.append(Asset.brand_id == filters.brand_id)
    if filters.status:
        clauses.append(Asset.status == AssetStatus(filters.status))
    if filters.analysis_status:
        clauses.append(Asset.analysis_status == AnalysisStatus(filters.analysis_status))
    if filters.thumbnail_status:
        clauses.append(Asset.thumbnail_status == ThumbnailStatus(filters.thumbnail_status))
    if filters.created_from:
        clauses.append(Asset.created_at >= filters.created_from)
    if filters.created_to:
        clauses.append(Asset.created_at <= filters.created_to)

    stmt = select(Asset)
    count_stmt = select(func.count()).select_from(Asset)
    if clauses:
        stmt = stmt.where(and_(*clauses))
        count_stmt = count_stmt.where(and_(*clauses))

    order_map: dict[str, list[ColumnElement[Any]]] = {
        "newest": [Asset.created_at.desc(), Asset.id.desc()],
        "oldest": [Asset.created_at.asc(), Asset.id.asc()],
        "updated": [Asset.updated_at.desc(), Asset.id.desc()],
        "stale": [Asset.updated_at.asc(), Asset.id.asc()],
    }
    order = order_map.get(filters.sort, order_map["newest"])
    stmt = stmt.order_by(*order).offset((filters.page - 1) * filters.limit).limit(filters.limit)
    total_items = int((await session.scalar(count_stmt)) or 0)
    total_pages = max(1, (total_items + filters.limit - 1) // filters.limit) if total_items else 1
    rows = (await session.execute(stmt)).scalars().all()
    return list(rows), {"total_items": total_items, "total_pages": total_pages, "page": filters.page, "limit": filters.limit}


async def get_asset_or_404(session: AsyncSession, asset_id: UUID, *, include_deleted: bool = False) -> Asset:
    asset = await session.get(Asset, asset_id)
    if asset is None or (asset.deleted_at is not None and not include_deleted):
        raise ValueError("Asset not found")
    return asset


async def create_asset_from_upload(
    session: AsyncSession,
    *,
    file: UploadFile,
    tenant_id: UUID,
    brand_id: UUID | None = None,
    title: str | None = None,
    created_by_operator_id: UUID | None = None,
) -> tuple[Asset, UUID]:
    tenant = await session.get(Tenant, tenant_id)
    if tenant is None:
        raise ValueError("Tenant not found")
    if brand_id is not None:
        brand = await session.get(Brand, brand_id)
        if brand is None or brand.tenant_id != tenant_id:
            raise ValueError("Brand not found")

    asset_id = uuid4()
    filename = storage.safe_storage_name(file.filename)
    storage_key = storage.temp_key(asset_id, filename)
    content = await file.read()
    await anyio.to_thread.run_sync(storage.write_bytes, storage_key, content)

    asset = Asset(
        id=asset_id,
        tenant_id=tenant_id,
        brand_id=brand_id,
        title=(title or "").strip() or filename,
        original_filename=filename,
        mime_type=(file.content_type or None),
        size_bytes=len(content),
        storage_path=storage_key,
        status=AssetStatus.visible,
        analysis_status=AnalysisStatus.uploading,
        thumbnail_status=ThumbnailStatus.pending,
        meta={},
    )
    session.add(asset)
    await session.flush()
    record_asset_event(
        session,
        asset,
        "asset.uploaded",
        {"filename": filename, "size_bytes": len(content), "mime_type": asset.mime_type},
        actor_id=created_by_operator_id,
    )
    job = await pipeline.start_pipeline(session, asset, created_by_operator_id=created_by_operator_id)
    await session.refresh(asset)
    logger.info("asset_uploaded", extra={"asset_id": str(asset.id), "tenant_id": str(tenant_id), "job_id": str(job.id)})
    return asset, job.id


async def change_visibility(
    session: AsyncSession, asset: Asset, to_status: AssetStatus, *, actor_id: UUID | None = None
) -> Asset:
    from_status = asset.status
    if from_status == to_status:
        return asset
    asset.status = to_status
    if to_status == AssetStatus.visible:
        asset.archived_at = None
    session.add(asset)
    record_asset_event(
        session,
        asset,
        "asset.visibility.changed",
        {"from": from_status.value, "to": to_status.value},
        actor_id=actor_id,
    )
    await session.flush()
    return asset


async def archive_asset(session: AsyncSession, asset: Asset, *, actor_id: UUID | None = None) -> Asset:
    await change_visibility(session, asset, AssetStatus.hidden, actor_id=actor_id)
    asset.archived_at = asset.archived_at or utcnow()
    session.add(asset)
    return asset


async def soft_delete_asset(session: AsyncSession, asset: Asset, *, actor_id: UUID | None = None) -> Asset:
    await change_visibility(session, asset, AssetStatus.hidden, actor_id=actor_id)
    asset.deleted_at = asset.deleted_at or utcnow()
    session.add(asset)
    return asset


def asset_to_read(asset: Asset) -> AssetRead:
    return AssetRead.model_validate(
        {
            **_asset_fields(asset),
            "pipeline_flags": PipelineFlags(**pipeline_flags(asset)),
        }
    )


def _asset_fields(asset: Asset) -> dict[str, Any]:
    return {
        "id": asset.id,
        "tenant_id": asset.tenant_id,
        "brand_id": asset.brand_id,
        "title": asset.title,
        "original_filename": asset.original_filename,
        "mime_type": asset.mime_type,
        "size_bytes": asset.size_bytes,
        "width": asset.width,
        "height": asset.height,
        "storage_path": asset.storage_path,
        "status": asset.status.value,
        "analysis_status": asset.analysis_status.value,
        "thumbnail_status": asset.thumbnail_status.value if asset.thumbnail_status else None,
        "thumbnail_error": asset.thumbnail_error,
        "thumbnail_retry_count": int(asset.thumbnail_retry_count or 0),
        "created_at": asset.created_at,
        "updated_at": asset.updated_at,
    }


async def asset_detail(session: AsyncSession, asset: Asset) -> AssetDetailRead:
    events = await list_asset_events(session, asset.id, limit=25)
    jobs = await pipeline.jobs_for_asset(session, asset.id, limit=20)
    open_incidents = await incidents.open_incidents_for_asset(session, asset.id)
    has_embedding = (
        await session.scalar(select(AssetEmbedding.id).where(AssetEmbedding.asset_id == asset.id).limit(1))
    ) is not None
    score = await session.scalar(select(AssetComplianceScore).where(AssetComplianceScore.asset_id == asset.id))
    return AssetDetailRead(
        **_asset_fields(asset),
        pipeline_flags=PipelineFlags(**pipeline_flags(asset)),
        metadata=dict(asset.meta or {}),
        events=[AssetEventRead.model_validate(row) for row in events],
        jobs=[pipeline.job_to_read(row) for row in jobs],
        open_incidents=[IncidentRead.model_validate(row) for row in open_incidents],
        has_embedding=has_embedding,
        compliance=ComplianceSummary.model_validate(score) if score is not None else None,
    )
