"""Operational commands shared by the CLI and the in-app watchdog scheduler.

Each command takes a session, does its work in batches and returns a plain
summary dict that the CLI prints as JSON and the scheduler logs.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from dam.core.config import settings
from dam.db.base import utcnow
from dam.models.asset import AnalysisStatus, Asset, ThumbnailStatus
from dam.models.incident import IncidentSeverity, IncidentSourceType, SystemIncident
from dam.models.pipeline import PipelineJob, PipelineJobStatus
from dam.services import incident_recovery, incidents, pipeline, processing_failure, reliability_metrics
from dam.services.asset_events import record_asset_event
from dam.services.reconciliation import find_stuck_assets, reconcile

logger = logging.getLogger(__name__)

THUMBNAIL_TIMEOUT_ERROR = "Thumbnail generation timed out"


def _batch_size(limit: int | None = None) -> int:
    return max(1, int(limit or getattr(settings, "auto_recover_batch_size", 50) or 50))


async def thumbnail_timeout_sweep(session: AsyncSession, *, now: datetime | None = None) -> dict[str, Any]:
    now = now or utcnow()
    timeout_minutes = max(1, int(getattr(settings, "thumbnail_timeout_minutes", 5) or 5))
    cutoff = now - timedelta(minutes=timeout_minutes)
    rows = (
        await session.execute(
            select(Asset).where(
                Asset.deleted_at.is_(None),
                Asset.thumbnail_status == ThumbnailStatus.processing,
                or_(
                    Asset.thumbnail_started_at < cutoff,
                    Asset.thumbnail_started_at.is_(None) & (Asset.updated_at < cutoff),
                ),
            )
        )
    ).scalars().all()
    asset_ids: list[str] = []
    for asset in rows:
        asset.thumbnail_status = ThumbnailStatus.failed
        asset.thumbnail_error = THUMBNAIL_TIMEOUT_ERROR
        asset.update_meta(thumbnail_timeout=True, thumbnail_timeout_at=now.isoformat())
        session.add(asset)
        record_asset_event(
            session, asset, "asset.thumbnails.failed", {"error": THUMBNAIL_TIMEOUT_ERROR, "reason": "timeout"}
        )
        asset_ids.append(str(asset.id))
    await session.commit()
    if asset_ids:
        logger.warning("thumbnail_timeouts_detected", extra={"count": len(asset_ids), "timeout_minutes": timeout_minutes})
    return {"timed_out": len(asset_ids), "asset_ids": asset_ids, "timeout_minutes": timeout_minutes}


async def watchdog(session: AsyncSession, *, limit: int | None = None, now: datetime | None = None) -> dict[str, Any]:
    now = now or utcnow()
    batch = _batch_size(limit)
    opened = 0
    updated = 0

    stuck = await find_stuck_assets(session, limit=batch, now=now)
    for asset in stuck:
        status = asset.analysis_status.value
        _incident, created = await incidents.record_incident(
            session,
            source_type=IncidentSourceType.asset,
            source_id=asset.id,
            tenant_id=asset.tenant_id,
            severity=IncidentSeverity.warning,
            title=f"Asset stuck in {status}",
            message=f"Asset has not advanced past {status} since {asset.updated_at.isoformat() if asset.updated_at else 'upload'}",
            retryable=True,
            unique_signature=f"asset:{asset.id}:stuck:{status}",
            meta={"analysis_status": status, "asset_id": str(asset.id)},
        )
        opened += int(created)
        updated += int(not created)

    dead_jobs = (
        await session.execute(
            select(PipelineJob)
            .where(
                PipelineJob.status == PipelineJobStatus.dead_letter,
                PipelineJob.triage_state.notin_(incidents.RESOLVED_TRIAGE_STATES),
            )
            .order_by(PipelineJob.dead_lettered_at.desc())
            .limit(batch)
        )
    ).scalars().all()
    for job in dead_jobs:
        retryable = processing_failure.is_retryable(RuntimeError(job.error_message or ""), 0)
        tenant_id = None
        if job.asset_id is not None:
            asset = await session.get(Asset, job.asset_id)
            tenant_id = asset.tenant_id if asset is not None else None
        _incident, created = await incidents.record_incident(
            session,
            source_type=IncidentSourceType.job,
            source_id=job.id,
            tenant_id=tenant_id,
            severity=IncidentSeverity.error,
            title=f"Pipeline job {job.job_type.value} dead-lettered",
            message=job.error_message,
            retryable=retryable,
            unique_signature=f"job:{job.id}:dead_letter",
            meta={"job_type": job.job_type.value, "asset_id": str(job.asset_id) if job.asset_id else None},
        )
        opened += int(created)
        updated += int(not created)

    await session.commit()
    summary = {
        "stuck_assets": len(stuck),
        "dead_letter_jobs": len(dead_jobs),
        "incidents_opened": opened,
        "incidents_updated": updated,
    }
    if opened or updated:
        logger.warning("watchdog_detected_problems", extra=summary)
    return summary


async def _mark_auto_recover_attempted(session: AsyncSession, incident: SystemIncident) -> None:
    asset_id = incidents.incident_asset_id(incident)
    if asset_id is None:
        return
    asset = await session.get(Asset, asset_id)
    if asset is None:
        return
    asset.update_meta(auto_recover_attempted=True, auto_recover_attempted_at=utcnow().isoformat())
    session.add(asset)


async def auto_recover(session: AsyncSession, *, limit: int | None = None) -> dict[str, Any]:
    rows = (
        await session.execute(
            select(SystemIncident.id)
            .where(SystemIncident.resolved_at.is_(None))
            .order_by(SystemIncident.detected_at.asc())
            .limit(_batch_size(limit))
        )
    ).scalars().all()
    summary = {"processed": 0, "resolved": 0, "tickets_created": 0, "escalated": 0, "errors": 0}
    for incident_id in rows:
        incident = await session.get(SystemIncident, incident_id)
        if incident is None or incident.resolved_at is not None:
            continue
        summary["processed"] += 1
        try:
            await _mark_auto_recover_attempted(session, incident)
            outcome = await incident_recovery.attempt_repair(session, incident)
            if outcome["resolved"]:
                summary["resolved"] += 1
                continue
            escalate = incidents.should_escalate(incident)
            if escalate or incidents.should_create_ticket_by_severity(incident):
                _ticket, created = await incidents.create_ticket(session, incident)
                summary["tickets_created"] += int(created)
                summary["escalated"] += int(escalate)
            await session.commit()
        except Exception:
            summary["errors"] += 1
            await session.rollback()
            logger.exception("auto_recover_incident_failed", extra={"incident_id": str(incident_id)})
    logger.info("auto_recover_completed", extra=summary)
    return summary


async def repair_stuck(session: AsyncSession, *, limit: int | None = None) -> dict[str, Any]:
    stuck = await find_stuck_assets(session, limit=_batch_size(limit))
    reconciled = 0
    dispatched: list[str] = []
    for asset in stuck:
        outcome = await reconcile(session, asset)
        reconciled += int(outcome["updated"])
        await session.commit()
        if asset.analysis_status == AnalysisStatus.complete:
            continue
        job = await incident_recovery.dispatch_retry(session, asset)
        dispatched.append(str(job.id))
    summary = {"scanned": len(stuck), "reconciled": reconciled, "dispatched": len(dispatched), "job_ids": dispatched}
    logger.info("repair_stuck_completed", extra={k: v for k, v in summary.items() if k != "job_ids"})
    return summary


async def reconcile_batch(
    session: AsyncSession, *, asset_id: UUID | None = None, limit: int = 500
) -> dict[str, Any]:
    if asset_id is not None:
        asset = await session.get(Asset, asset_id)
        if asset is None:
            raise ValueError("Asset not found")
        assets = [asset]
    else:
        assets = list(
            (
                await session.execute(
                    select(Asset)
                    .where(Asset.deleted_at.is_(None))
                    .order_by(Asset.updated_at.asc())
                    .limit(max(1, int(limit)))
                )
            ).scalars().all()
        )
    changes: dict[str, list[str]] = {}
    for asset in assets:
        outcome = await reconcile(session, asset)
        if outcome["updated"]:
            changes[str(asset.id)] = outcome["changes"]
    await session.commit()
    return {"scanned": len(assets), "updated": len(changes), "changes": changes}


async def retry_due(session: AsyncSession, *, limit: int = 50) -> dict[str, Any]:
    job_ids = await pipeline.enqueue_due_retries(session, limit=limit)
    return {"requeued": len(job_ids), "job_ids": [str(job_id) for job_id in job_ids]}


async def reliability_report(session: AsyncSession, *, window_days: int = 7) -> dict[str, Any]:
    return await reliability_metrics.compute(session, window_days=window_days)


async def run_watchdog_cycle(session: AsyncSession) -> dict[str, Any]:
    return {
        "thumbnail_timeouts": await thumbnail_timeout_sweep(session),
        "watchdog": await watchdog(session),
        "auto_recover": await auto_recover(session),
    }
