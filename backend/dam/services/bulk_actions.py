"""Bulk operator actions over a list of assets. Each asset succeeds or fails on its own."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from dam.core.dependencies import Operator
from dam.models.asset import Asset, AssetStatus, ThumbnailStatus
from dam.models.incident import IncidentSeverity, IncidentSourceType
from dam.models.pipeline import PipelineJobType
from dam.schemas.asset import BulkActionItemResult, BulkActionResponse
from dam.services import assets, incident_recovery, incidents, pipeline, thumbnail_retry
from dam.services.asset_events import record_asset_event
from dam.services.operations import THUMBNAIL_TIMEOUT_ERROR
from dam.services.reconciliation import reconcile

logger = logging.getLogger(__name__)

ADMIN_ONLY_ACTIONS = frozenset({"delete"})

BulkHandler = Callable[[AsyncSession, Asset, Operator], Awaitable[None]]


async def _retry_pipeline(session: AsyncSession, asset: Asset, operator: Operator) -> None:
    await incident_recovery.dispatch_retry(session, asset)


async def _regenerate_thumbnails(session: AsyncSession, asset: Asset, operator: Operator) -> None:
    await thumbnail_retry.dispatch_retry(session, asset, operator_id=operator.id)


async def _rerun_metadata(session: AsyncSession, asset: Asset, operator: Operator) -> None:
    await pipeline.dispatch(
        session,
        asset,
        PipelineJobType.extract_metadata,
        payload={"regenerate": True},
        created_by_operator_id=operator.id,
    )


async def _rerun_ai_tagging(session: AsyncSession, asset: Asset, operator: Operator) -> None:
    await pipeline.dispatch(session, asset, PipelineJobType.ai_tagging, created_by_operator_id=operator.id)


async def _publish(session: AsyncSession, asset: Asset, operator: Operator) -> None:
    await assets.change_visibility(session, asset, AssetStatus.visible, actor_id=operator.id)


async def _unpublish(session: AsyncSession, asset: Asset, operator: Operator) -> None:
    await assets.change_visibility(session, asset, AssetStatus.hidden, actor_id=operator.id)


async def _archive(session: AsyncSession, asset: Asset, operator: Operator) -> None:
    await assets.archive_asset(session, asset, actor_id=operator.id)


async def _clear_thumbnail_timeout(session: AsyncSession, asset: Asset, operator: Operator) -> None:
    asset.update_meta(thumbnail_timeout=None, thumbnail_timeout_at=None)
    if asset.thumbnail_status == ThumbnailStatus.failed and asset.thumbnail_error == THUMBNAIL_TIMEOUT_ERROR:
        asset.thumbnail_status = ThumbnailStatus.pending
        asset.thumbnail_error = None
    session.add(asset)


async def _clear_promotion_failed(session: AsyncSession, asset: Asset, operator: Operator) -> None:
    asset.update_meta(promotion_failed=None, promotion_failed_at=None, promotion_error=None)
    session.add(asset)
    # The flag is gone but the file is still in temp storage, so promotion runs again.
    if not asset.meta_flag("promoted_at"):
        await pipeline.dispatch(session, asset, PipelineJobType.promote_asset, created_by_operator_id=operator.id)


async def _reconcile(session: AsyncSession, asset: Asset, operator: Operator) -> None:
    await reconcile(session, asset)


async def _create_ticket(session: AsyncSession, asset: Asset, operator: Operator) -> None:
    open_incidents = await incidents.open_incidents_for_asset(session, asset.id)
    if open_incidents:
        incident = open_incidents[0]
    else:
        incident, _created = await incidents.record_incident(
            session,
            source_type=IncidentSourceType.asset,
            source_id=asset.id,
            tenant_id=asset.tenant_id,
            severity=IncidentSeverity.warning,
            title="Operator escalation",
            message=f"Ticket requested by an operator for asset {asset.title or asset.id}",
            retryable=False,
            unique_signature=f"asset:{asset.id}:operator_escalation",
            meta={"asset_id": str(asset.id), "requested_by": str(operator.id) if operator.id else None},
        )
    await incidents.create_ticket(session, incident)


async def _export_ids(session: AsyncSession, asset: Asset, operator: Operator) -> None:
    return None


async def _delete(session: AsyncSession, asset: Asset, operator: Operator) -> None:
    await assets.soft_delete_asset(session, asset, actor_id=operator.id)


ACTIONS: dict[str, BulkHandler] = {
    "retry_pipeline": _retry_pipeline,
    "regenerate_thumbnails": _regenerate_thumbnails,
    "rerun_metadata": _rerun_metadata,
    "rerun_ai_tagging": _rerun_ai_tagging,
    "publish": _publish,
    "unpublish": _unpublish,
    "archive": _archive,
    "clear_thumbnail_timeout": _clear_thumbnail_timeout,
    "clear_promotion_failed": _clear_promotion_failed,
    "reconcile": _reconcile,
    "create_ticket": _create_ticket,
    "export_ids": _export_ids,
    "delete": _delete,
}

# Read-only actions leave no event.
_SILENT_ACTIONS = frozenset({"export_ids"})


async def run_bulk_action(
    session: AsyncSession, *, action: str, asset_ids: list[UUID], operator: Operator
) -> BulkActionResponse:
    handler = ACTIONS.get(action)
    if handler is None:
        raise ValueError(f"Unknown bulk action: {action}")
    if action in ADMIN_ONLY_ACTIONS and not operator.is_admin:
        raise PermissionError("Admin access required")

    results: list[BulkActionItemResult] = []
    exported: list[UUID] = []
    seen: set[UUID] = set()
    for asset_id in asset_ids:
        if asset_id in seen:
            continue
        seen.add(asset_id)
        try:
            asset = await assets.get_asset_or_404(session, asset_id)
            await handler(session, asset, operator)
            if action not in _SILENT_ACTIONS:
                record_asset_event(session, asset, "asset.bulk_action", {"action": action}, actor_id=operator.id)
            await session.commit()
        except Exception as exc:
            await session.rollback()
            logger.warning(
                "bulk_action_item_failed",
                extra={"action": action, "asset_id": str(asset_id), "error": str(exc)},
            )
            results.append(BulkActionItemResult(id=asset_id, ok=False, error=str(exc) or exc.__class__.__name__))
            continue
        results.append(BulkActionItemResult(id=asset_id, ok=True))
        if action == "export_ids":
            exported.append(asset_id)

    success_count = sum(1 for row in results if row.ok)
    logger.info(
        "bulk_action_completed",
        extra={"action": action, "success_count": success_count, "failed_count": len(results) - success_count},
    )
    return BulkActionResponse(
        action=action,  # type: ignore[arg-type]
        results=results,
        success_count=success_count,
        failed_count=len(results) - success_count,
        asset_ids=exported if action == "export_ids" else None,
    )
