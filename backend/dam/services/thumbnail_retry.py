from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from dam.core.config import settings
from dam.db.base import utcnow
from dam.models.asset import Asset, ThumbnailStatus
from dam.models.pipeline import PipelineJob, PipelineJobType
from dam.services import file_types, pipeline
from dam.services.asset_events import record_asset_event

logger = logging.getLogger(__name__)


class ThumbnailRetryError(ValueError):
    """Raised when an asset is not eligible for a manual thumbnail retry."""


def max_retries() -> int:
    return max(1, int(getattr(settings, "thumbnail_max_retries", 3) or 3))


def can_retry(asset: Asset) -> tuple[bool, str | None]:
    if not file_types.supports_thumbnail(asset.mime_type, asset.original_filename):
        return False, "File type does not support thumbnail generation"
    if int(asset.thumbnail_retry_count or 0) >= max_retries():
        return False, f"Maximum thumbnail retries ({max_retries()}) reached"
    if asset.thumbnail_status == ThumbnailStatus.processing:
        return False, "Thumbnail generation is already in progress"
    if not asset.storage_path:
        return False, "Asset has no stored file"
    return True, None


async def dispatch_retry(session: AsyncSession, asset: Asset, *, operator_id: UUID | None = None) -> PipelineJob:
    allowed, reason = can_retry(asset)
    if not allowed:
        raise ThumbnailRetryError(reason or "Thumbnail retry not allowed")

    now = utcnow()
    previous = asset.thumbnail_status.value if asset.thumbnail_status else None
    retry_number = int(asset.thumbnail_retry_count or 0) + 1
    history = list(asset.meta_flag("thumbnail_retries") or [])
    history.append(
        {
            "attempted_at": now.isoformat(),
            "triggered_by_operator_id": str(operator_id) if operator_id else None,
            "previous_status": previous,
            "retry_number": retry_number,
        }
    )
    asset.update_meta(thumbnail_retries=history)
    asset.thumbnail_retry_count = retry_number
    asset.thumbnail_last_retry_at = now
    if asset.thumbnail_status != ThumbnailStatus.completed:
        asset.thumbnail_status = ThumbnailStatus.pending
    session.add(asset)
    record_asset_event(
        session,
        asset,
        "asset.thumbnail.retry_requested",
        {"retry_number": retry_number, "previous_status": previous},
        actor_id=operator_id,
    )
    job = await pipeline.dispatch(
        session,
        asset,
        PipelineJobType.generate_thumbnails,
        payload={"regenerate": True},
        created_by_operator_id=operator_id,
    )
    logger.info(
        "thumbnail_retry_dispatched",
        extra={"asset_id": str(asset.id), "job_id": str(job.id), "retry_number": retry_number},
    )
    return job
