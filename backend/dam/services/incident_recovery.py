"""Repair and retry for open incidents. Used by auto-recover, the admin repair endpoints and the CLI."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from dam.db.base import utcnow
from dam.models.asset import AnalysisStatus, Asset
from dam.models.incident import IncidentSourceType, SystemIncident
from dam.models.pipeline import PipelineJob, PipelineJobStatus, PipelineJobType
from dam.services import asset_state, file_types, incidents, pipeline
from dam.services.reconciliation import reconcile

logger = logging.getLogger(__name__)


def is_incident_resolved_after_reconcile(incident: SystemIncident, asset: Asset) -> bool:
    status = asset.analysis_status
    if status == AnalysisStatus.complete:
        return True
    if status == AnalysisStatus.promotion_failed:
        return False
    title = (incident.title or "").lower()
    if "uploading" in title and status != AnalysisStatus.uploading:
        return True
    return False


def retry_plan(asset: Asset) -> tuple[PipelineJobType, tuple[PipelineJobType, ...]]:
    """Job that moves the asset out of its current stage and the chain that should follow it."""
    status = asset.analysis_status
    if status == AnalysisStatus.promotion_failed:
        return PipelineJobType.promote_asset, ()
    if status == AnalysisStatus.generating_embedding:
        # Finalize never committed; it owns the embedding follow-up and promotion must run after it.
        if not asset.meta_flag("pipeline_completed_at"):
            return PipelineJobType.finalize_asset, (PipelineJobType.promote_asset,)
        if not file_types.is_image(asset.mime_type, asset.original_filename):
            return PipelineJobType.finalize_asset, ()
    job_type = asset_state.STAGE_JOB.get(status, PipelineJobType.process_asset)
    return job_type, pipeline.remaining_chain(job_type)


async def dispatch_retry(
    session: AsyncSession, asset: Asset, *, incident: SystemIncident | None = None
) -> PipelineJob:
    """Dispatch the job that moves the asset out of its current stage."""
    if asset.analysis_status == AnalysisStatus.complete:
        raise ValueError("Asset pipeline already complete")
    if incident is not None:
        incident.update_meta(retried=True, retried_at=utcnow().isoformat())
        session.add(incident)
    if asset.analysis_status == AnalysisStatus.uploading:
        job = await pipeline.start_pipeline(session, asset)
    else:
        job_type, chain = retry_plan(asset)
        job = await pipeline.dispatch(session, asset, job_type, chain=chain)
    logger.info(
        "incident_retry_dispatched",
        extra={
            "asset_id": str(asset.id),
            "incident_id": str(incident.id) if incident is not None else None,
            "job_type": job.job_type.value,
        },
    )
    return job


async def _incident_asset(session: AsyncSession, incident: SystemIncident) -> tuple[Asset | None, PipelineJob | None]:
    job: PipelineJob | None = None
    asset_id = incidents.incident_asset_id(incident)
    if incident.source_type == IncidentSourceType.job:
        job = await session.get(PipelineJob, incident.source_id)
        if job is not None and job.asset_id is not None:
            asset_id = job.asset_id
    asset = await session.get(Asset, asset_id) if asset_id else None
    return asset, job


async def attempt_repair(session: AsyncSession, incident: SystemIncident) -> dict[str, Any]:
    if incident.resolved_at is not None:
        return {"updated": False, "changes": [], "resolved": True}

    asset, job = await _incident_asset(session, incident)
    incident.update_meta(repair_attempts=incident.repair_attempts + 1, last_repair_at=utcnow().isoformat())
    session.add(incident)

    if asset is None or asset.deleted_at is not None:
        await incidents.resolve(session, incident, auto=True, note="asset_missing")
        await session.commit()
        return {"updated": False, "changes": [], "resolved": True}

    outcome = await reconcile(session, asset)
    resolved = is_incident_resolved_after_reconcile(incident, asset)
    if not resolved and incident.source_type == IncidentSourceType.job and job is not None:
        resolved = job.status == PipelineJobStatus.completed

    if resolved:
        await incidents.resolve(session, incident, auto=True)
        await session.commit()
        logger.info("incident_auto_resolved", extra={"incident_id": str(incident.id), "asset_id": str(asset.id)})
        return {"updated": outcome["updated"], "changes": outcome["changes"], "resolved": True}

    await session.commit()
    if incident.retryable:
        if incident.source_type == IncidentSourceType.job and job is not None and job.status == PipelineJobStatus.dead_letter:
            incident.update_meta(retried=True, retried_at=utcnow().isoformat())
            session.add(incident)
            await pipeline.manual_retry_job(session, job=job)
        elif asset.analysis_status != AnalysisStatus.complete and not await pipeline.has_active_job(session, asset.id):
            await dispatch_retry(session, asset, incident=incident)
    return {"updated": outcome["updated"], "changes": outcome["changes"], "resolved": False}
