"""Forward-only repair of asset pipeline fields from the evidence on disk and in the database."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from dam.core import metrics
from dam.core.config import settings
from dam.core.pipeline_context import allow_visibility_change
from dam.db.base import as_aware, utcnow
from dam.models.asset import (
    TERMINAL_THUMBNAIL_STATUSES,
    AnalysisStatus,
    Asset,
    AssetComplianceScore,
    AssetEmbedding,
    AssetStatus,
    ThumbnailStatus,
)
from dam.services import asset_state, file_types, storage
from dam.services.asset_events import record_asset_event

logger = logging.getLogger(__name__)

STUCK_CANDIDATE_STATUSES = (
    AnalysisStatus.uploading,
    AnalysisStatus.generating_thumbnails,
    AnalysisStatus.extracting_metadata,
    AnalysisStatus.generating_embedding,
    AnalysisStatus.scoring,
)


def _stuck_minutes() -> int:
    return max(1, int(getattr(settings, "pipeline_stuck_minutes", 30) or 30))


def _thumbnail_files_present(asset: Asset) -> bool:
    thumbnails = asset.meta_flag("thumbnails") or {}
    if not isinstance(thumbnails, dict) or not thumbnails:
        return False
    for entry in thumbnails.values():
        key = entry.get("path") if isinstance(entry, dict) else entry
        if not key or not storage.exists(str(key)):
            return False
    return True


def _is_image(asset: Asset) -> bool:
    return file_types.is_image(asset.mime_type, asset.original_filename)


async def _has_row(session: AsyncSession, model: Any, asset_id: Any) -> bool:
    row = await session.scalar(select(model.id).where(model.asset_id == asset_id).limit(1))
    return row is not None


def _move(asset: Asset, target: AnalysisStatus, changes: list[str]) -> None:
    previous = asset_state.transition(asset, target)
    changes.append(f"analysis_status:{previous.value}->{target.value}")


async def reconcile(session: AsyncSession, asset: Asset) -> dict[str, Any]:
    changes: list[str] = []
    now_iso = utcnow().isoformat()

    thumb_status = asset.thumbnail_status
    thumbnails_flag = bool(asset.meta_flag("thumbnails_generated"))
    if thumb_status == ThumbnailStatus.completed and not thumbnails_flag:
        asset.update_meta(thumbnails_generated=True, thumbnails_generated_at=now_iso)
        changes.append("metadata:thumbnails_generated")
    elif thumbnails_flag and thumb_status != ThumbnailStatus.completed and _thumbnail_files_present(asset):
        asset.thumbnail_status = ThumbnailStatus.completed
        asset.thumbnail_error = None
        changes.append("thumbnail_status:completed")

    if asset.thumbnail_status == ThumbnailStatus.processing and asset.meta_flag("thumbnail_timeout"):
        asset.thumbnail_status = ThumbnailStatus.failed
        asset.thumbnail_error = asset.thumbnail_error or "Thumbnail generation timed out"
        changes.append("thumbnail_status:failed")

    metadata_extracted = bool(asset.meta_flag("metadata_extracted"))
    early = (AnalysisStatus.uploading, AnalysisStatus.generating_thumbnails)
    if (
        asset.analysis_status in early
        and asset.thumbnail_status in TERMINAL_THUMBNAIL_STATUSES
        and not metadata_extracted
    ):
        _move(asset, AnalysisStatus.extracting_metadata, changes)

    if metadata_extracted and asset.analysis_status in (*early, AnalysisStatus.extracting_metadata):
        _move(asset, AnalysisStatus.generating_embedding, changes)

    if asset.analysis_status == AnalysisStatus.generating_embedding:
        if not _is_image(asset):
            if asset.meta_flag("pipeline_completed_at"):
                _move(asset, AnalysisStatus.complete, changes)
        elif await _has_row(session, AssetEmbedding, asset.id):
            _move(asset, AnalysisStatus.scoring, changes)

    if asset.analysis_status == AnalysisStatus.scoring and await _has_row(session, AssetComplianceScore, asset.id):
        _move(asset, AnalysisStatus.complete, changes)

    if (
        asset.analysis_status == AnalysisStatus.promotion_failed
        and asset.storage_path
        and not storage.is_temp_key(asset.storage_path)
        and storage.exists(asset.storage_path)
    ):
        _move(asset, AnalysisStatus.complete, changes)
        asset.update_meta(promotion_failed=None, promotion_failed_at=None, promotion_error=None)
        changes.append("metadata:promotion_failed_cleared")

    if (
        asset.status == AssetStatus.failed
        and asset.analysis_status == AnalysisStatus.complete
        and not asset.meta_flag("processing_failed")
    ):
        with allow_visibility_change():
            asset.status = AssetStatus.visible
        changes.append("status:failed->visible")

    if changes:
        session.add(asset)
        record_asset_event(session, asset, "asset.reconciled", {"changes": changes})
        await session.flush()
        metrics.record_assets_reconciled(1)
        logger.info("asset_reconciled", extra={"asset_id": str(asset.id), "changes": changes})
    return {"updated": bool(changes), "changes": changes}


def is_stuck(asset: Asset, now: datetime | None = None) -> bool:
    if asset.deleted_at is not None:
        return False
    if asset.analysis_status == AnalysisStatus.uploading and asset.meta_flag("metadata_extracted"):
        return True
    if asset.analysis_status not in STUCK_CANDIDATE_STATUSES:
        return False
    updated_at = as_aware(asset.updated_at)
    if updated_at is None:
        return False
    cutoff = (now or utcnow()) - timedelta(minutes=_stuck_minutes())
    return updated_at < cutoff


async def find_stuck_assets(session: AsyncSession, *, limit: int = 100, now: datetime | None = None) -> list[Asset]:
    now = now or utcnow()
    cutoff = now - timedelta(minutes=_stuck_minutes())
    stmt = (
        select(Asset)
        .where(
            Asset.deleted_at.is_(None),
            Asset.analysis_status.in_(STUCK_CANDIDATE_STATUSES),
            (Asset.updated_at < cutoff) | (Asset.analysis_status == AnalysisStatus.uploading),
        )
        .order_by(Asset.updated_at.asc())
        .limit(max(1, int(limit)) * 4)
    )
    rows = (await session.execute(stmt)).scalars().all()
    return [row for row in rows if is_stuck(row, now)][: max(1, int(limit))]


def pipeline_flags(asset: Asset, now: datetime | None = None) -> dict[str, bool]:
    return {
        "visible_in_grid": asset.status == AssetStatus.visible and asset.deleted_at is None and asset.archived_at is None,
        "processing_failed": bool(asset.meta_flag("processing_failed")) or asset.status == AssetStatus.failed,
        "pipeline_completed": bool(asset.meta_flag("pipeline_completed_at")),
        "metadata_extracted": bool(asset.meta_flag("metadata_extracted")),
        "thumbnails_generated": bool(asset.meta_flag("thumbnails_generated")),
        "thumbnail_timeout": bool(asset.meta_flag("thumbnail_timeout")),
        "stuck_state_detected": is_stuck(asset, now),
        "auto_recover_attempted": bool(asset.meta_flag("auto_recover_attempted")),
    }
