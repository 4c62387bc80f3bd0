from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from dam.core import metrics
from dam.db.base import utcnow
from dam.models.asset import AnalysisStatus, Asset, AssetComplianceScore, ThumbnailStatus
from dam.models.incident import (
    IncidentSeverity,
    IncidentSourceType,
    SystemIncident,
    Ticket,
    TicketPriority,
)
from dam.models.pipeline import PipelineJob, PipelineJobStatus, PipelineJobType
from dam.services import incident_recovery, incidents, operations, pipeline, storage


async def _incident(session, asset: Asset, *, severity=IncidentSeverity.warning, retryable=False, **kwargs):
    incident, _created = await incidents.record_incident(
        session,
        source_type=IncidentSourceType.asset,
        source_id=asset.id,
        tenant_id=asset.tenant_id,
        severity=severity,
        title=kwargs.pop("title", f"Asset stuck in {asset.analysis_status.value}"),
        retryable=retryable,
        unique_signature=kwargs.pop("unique_signature", f"asset:{asset.id}:test"),
        **kwargs,
    )
    await session.commit()
    return incident


async def _drain(session_factory, *, limit: int = 20) -> list[PipelineJob]:
    processed: list[PipelineJob] = []
    for _ in range(limit):
        async with session_factory() as session:
            job = await session.scalar(
                select(PipelineJob)
                .where(PipelineJob.status == PipelineJobStatus.queued)
                .order_by(PipelineJob.created_at.asc())
                .limit(1)
            )
            if job is None:
                return processed
            processed.append(await pipeline.process_job_inline(session, job))
    raise AssertionError("pipeline did not settle")


async def _stalled_after_metadata(session, make_asset, **kwargs) -> Asset:
    """Asset whose finalize step dead-lettered: metadata done, no pipeline_completed_at, left in generating_embedding."""
    asset = await make_asset(session, analysis_status=AnalysisStatus.generating_embedding, **kwargs)
    asset.update_meta(metadata_extracted=True)
    asset.updated_at = utcnow() - timedelta(hours=2)
    await session.commit()
    return asset


@pytest.mark.anyio
async def test_thumbnail_timeout_sweep_fails_long_renders(session_factory, make_asset) -> None:
    now = utcnow()
    async with session_factory() as session:
        slow = await make_asset(
            session, thumbnail_status=ThumbnailStatus.processing, thumbnail_started_at=now - timedelta(minutes=20)
        )
        recent = await make_asset(
            session, thumbnail_status=ThumbnailStatus.processing, thumbnail_started_at=now - timedelta(minutes=1)
        )

        summary = await operations.thumbnail_timeout_sweep(session, now=now)

        assert summary["timed_out"] == 1
        assert summary["asset_ids"] == [str(slow.id)]
        await session.refresh(slow)
        await session.refresh(recent)
        assert slow.thumbnail_status == ThumbnailStatus.failed
        assert slow.thumbnail_error == operations.THUMBNAIL_TIMEOUT_ERROR
        assert slow.meta["thumbnail_timeout"] is True
        assert recent.thumbnail_status == ThumbnailStatus.processing


@pytest.mark.anyio
async def test_watchdog_opens_incidents_once(session_factory, make_asset) -> None:
    old = utcnow() - timedelta(hours=3)
    async with session_factory() as session:
        stuck = await make_asset(session, analysis_status=AnalysisStatus.scoring, updated_at=old)
        job = await pipeline.enqueue_job(session, asset_id=stuck.id, job_type=PipelineJobType.score_compliance)
        job.status = PipelineJobStatus.dead_letter
        job.dead_lettered_at = utcnow()
        job.error_message = "Asset not found"
        await session.commit()

        first = await operations.watchdog(session)
        second = await operations.watchdog(session)

        assert first == {"stuck_assets": 1, "dead_letter_jobs": 1, "incidents_opened": 2, "incidents_updated": 0}
        assert second["incidents_opened"] == 0
        assert second["incidents_updated"] == 2

        job_incident = await session.scalar(
            select(SystemIncident).where(SystemIncident.source_type == IncidentSourceType.job)
        )
        assert job_incident is not None
        assert job_incident.retryable is False
        assert job_incident.tenant_id == stuck.tenant_id
        assert job_incident.meta["occurrences"] == 2
    assert metrics.snapshot()["incidents_opened"] == 2


@pytest.mark.anyio
async def test_watchdog_ignores_triaged_dead_letters(session_factory, make_asset) -> None:
    async with session_factory() as session:
        asset = await make_asset(session, analysis_status=AnalysisStatus.complete)
        job = await pipeline.enqueue_job(session, asset_id=asset.id, job_type=PipelineJobType.ai_tagging)
        job.status = PipelineJobStatus.dead_letter
        job.triage_state = "ignored"
        await session.commit()

        summary = await operations.watchdog(session)

        assert summary["dead_letter_jobs"] == 0


@pytest.mark.anyio
async def test_auto_recover_resolves_incident_after_reconcile(session_factory, make_asset) -> None:
    async with session_factory() as session:
        asset = await make_asset(
            session,
            analysis_status=AnalysisStatus.scoring,
            thumbnail_status=ThumbnailStatus.completed,
            meta={"thumbnails_generated": True, "metadata_extracted": True},
        )
        session.add(AssetComplianceScore(asset_id=asset.id, status="scored", overall_score=70))
        incident = await _incident(session, asset)

        summary = await operations.auto_recover(session)

        assert summary == {"processed": 1, "resolved": 1, "tickets_created": 0, "escalated": 0, "errors": 0}
        await session.refresh(incident)
        await session.refresh(asset)
        assert incident.resolved_at is not None
        assert incident.auto_resolved is True
        assert incident.repair_attempts == 1
        assert asset.analysis_status == AnalysisStatus.complete
        assert asset.meta["auto_recover_attempted"] is True
    assert metrics.snapshot()["incidents_auto_resolved"] == 1


@pytest.mark.anyio
async def test_auto_recover_retries_and_tickets_error_incidents(session_factory, make_asset) -> None:
    async with session_factory() as session:
        asset = await make_asset(session, analysis_status=AnalysisStatus.extracting_metadata)
        incident = await _incident(session, asset, severity=IncidentSeverity.error, retryable=True)

        first = await operations.auto_recover(session)
        second = await operations.auto_recover(session)

        assert first["tickets_created"] == 1
        assert second["tickets_created"] == 0
        assert first["resolved"] == second["resolved"] == 0

        jobs = (await session.execute(select(PipelineJob).where(PipelineJob.asset_id == asset.id))).scalars().all()
        # The second pass sees the queued job and does not dispatch another.
        assert len(jobs) == 1
        assert jobs[0].job_type == PipelineJobType.extract_metadata
        assert pipeline.job_chain(jobs[0]) == list(pipeline.remaining_chain(PipelineJobType.extract_metadata))

        ticket = await session.scalar(select(Ticket))
        assert ticket is not None
        assert ticket.priority == TicketPriority.P1
        assert ticket.meta["asset_id"] == str(asset.id)
        await session.refresh(incident)
        assert incident.meta["ticket_id"] == str(ticket.id)
        assert incident.meta["retried"] is True
        assert incident.repair_attempts == 2


@pytest.mark.anyio
async def test_auto_recover_escalates_after_repeated_repairs(session_factory, make_asset) -> None:
    async with session_factory() as session:
        asset = await make_asset(session, analysis_status=AnalysisStatus.promotion_failed)
        await _incident(session, asset, meta={"repair_attempts": 2})

        summary = await operations.auto_recover(session)

        assert summary["escalated"] == 1
        assert summary["tickets_created"] == 1
        ticket = await session.scalar(select(Ticket))
        assert ticket.priority == TicketPriority.P2


@pytest.mark.anyio
async def test_auto_recover_resolves_incident_for_deleted_asset(session_factory, make_asset) -> None:
    async with session_factory() as session:
        asset = await make_asset(session, analysis_status=AnalysisStatus.scoring, deleted_at=utcnow())
        incident = await _incident(session, asset)

        summary = await operations.auto_recover(session)

        assert summary["resolved"] == 1
        await session.refresh(incident)
        assert incident.meta["resolution_note"] == "asset_missing"


@pytest.mark.anyio
async def test_repair_stuck_reconciles_then_dispatches(session_factory, make_asset) -> None:
    old = utcnow() - timedelta(hours=2)
    async with session_factory() as session:
        lagging = await make_asset(session, analysis_status=AnalysisStatus.extracting_metadata, updated_at=old)
        recoverable = await make_asset(
            session,
            filename="notes.docx",
            mime_type="application/vnd.openxmlformats-officedocument.wordprocessingml.document",
            analysis_status=AnalysisStatus.uploading,
            thumbnail_status=ThumbnailStatus.skipped,
            meta={"metadata_extracted": True, "pipeline_completed_at": old.isoformat()},
        )

        summary = await operations.repair_stuck(session)

        assert summary["scanned"] == 2
        assert summary["reconciled"] == 1
        assert summary["dispatched"] == 1
        await session.refresh(recoverable)
        assert recoverable.analysis_status == AnalysisStatus.complete
        job = await session.scalar(select(PipelineJob).where(PipelineJob.asset_id == lagging.id))
        assert job is not None
        assert str(job.id) in summary["job_ids"]
        assert job.job_type == PipelineJobType.extract_metadata


@pytest.mark.anyio
async def test_repair_stuck_reruns_finalize_for_document_left_in_embedding(session_factory, make_asset) -> None:
    async with session_factory() as session:
        asset = await _stalled_after_metadata(
            session,
            make_asset,
            filename="brief.docx",
            mime_type="application/vnd.openxmlformats-officedocument.wordprocessingml.document",
            content=b"PK\x03\x04 not really a docx",
            thumbnail_status=ThumbnailStatus.skipped,
        )

        summary = await operations.repair_stuck(session)

        assert summary["dispatched"] == 1
        job = await session.scalar(select(PipelineJob).where(PipelineJob.asset_id == asset.id))
        assert job.job_type == PipelineJobType.finalize_asset
        assert pipeline.job_chain(job) == [PipelineJobType.promote_asset]

    jobs = await _drain(session_factory)

    assert [job.job_type for job in jobs] == [PipelineJobType.finalize_asset, PipelineJobType.promote_asset]
    async with session_factory() as session:
        refreshed = await session.get(Asset, asset.id)
        assert refreshed.analysis_status == AnalysisStatus.complete
        assert refreshed.meta["pipeline_completed_at"]
        assert refreshed.meta["promoted_at"]
        assert not storage.is_temp_key(refreshed.storage_path)
        score = await session.scalar(select(AssetComplianceScore).where(AssetComplianceScore.asset_id == asset.id))
        assert score.status == "not_applicable"

        again = await operations.repair_stuck(session)
        assert again["scanned"] == 0


@pytest.mark.anyio
async def test_repair_stuck_reruns_finalize_then_embedding_for_image(session_factory, make_asset, jpeg) -> None:
    async with session_factory() as session:
        asset = await _stalled_after_metadata(
            session, make_asset, content=jpeg(), thumbnail_status=ThumbnailStatus.completed
        )

        await operations.repair_stuck(session)

    jobs = await _drain(session_factory)

    assert {job.job_type for job in jobs} == {
        PipelineJobType.finalize_asset,
        PipelineJobType.generate_embedding,
        PipelineJobType.score_compliance,
        PipelineJobType.promote_asset,
    }
    assert all(job.status == PipelineJobStatus.completed for job in jobs)
    async with session_factory() as session:
        refreshed = await session.get(Asset, asset.id)
        assert refreshed.analysis_status == AnalysisStatus.complete
        assert refreshed.meta["pipeline_completed_at"]
        assert refreshed.meta["promoted_at"]


@pytest.mark.anyio
async def test_retry_plan_by_stage(session_factory, make_asset) -> None:
    async with session_factory() as session:
        finalized_doc = await make_asset(
            session,
            filename="brief.docx",
            mime_type=None,
            analysis_status=AnalysisStatus.generating_embedding,
            meta={"pipeline_completed_at": utcnow().isoformat()},
        )
        finalized_image = await make_asset(
            session,
            analysis_status=AnalysisStatus.generating_embedding,
            meta={"pipeline_completed_at": utcnow().isoformat()},
        )
        failed_promotion = await make_asset(session, analysis_status=AnalysisStatus.promotion_failed)

    assert incident_recovery.retry_plan(finalized_doc) == (PipelineJobType.finalize_asset, ())
    assert incident_recovery.retry_plan(finalized_image) == (PipelineJobType.generate_embedding, ())
    assert incident_recovery.retry_plan(failed_promotion) == (PipelineJobType.promote_asset, ())


@pytest.mark.anyio
async def test_dispatch_retry_refuses_complete_asset(session_factory, make_asset) -> None:
    async with session_factory() as session:
        asset = await make_asset(session, analysis_status=AnalysisStatus.complete)

        with pytest.raises(ValueError, match="already complete"):
            await incident_recovery.dispatch_retry(session, asset)

        count = await session.scalar(select(func.count()).select_from(PipelineJob))
        assert count == 0


@pytest.mark.anyio
async def test_resolved_dead_letter_incident_is_not_reopened(session_factory, make_asset) -> None:
    async with session_factory() as session:
        asset = await make_asset(session, analysis_status=AnalysisStatus.complete)
        job = await pipeline.enqueue_job(session, asset_id=asset.id, job_type=PipelineJobType.ai_tagging)
        job.status = PipelineJobStatus.dead_letter
        job.dead_lettered_at = utcnow()
        job.error_message = "tagging service unavailable"
        await session.commit()

        for _cycle in range(3):
            await operations.watchdog(session)
            await operations.auto_recover(session)

        created = await session.scalar(
            select(func.count()).select_from(SystemIncident).where(SystemIncident.source_type == IncidentSourceType.job)
        )
        assert created == 1
        await session.refresh(job)
        assert job.triage_state == "resolved"
        assert job.status == PipelineJobStatus.dead_letter


@pytest.mark.anyio
async def test_dead_letter_after_resolution_opens_new_incident(session_factory, make_asset) -> None:
    async with session_factory() as session:
        asset = await make_asset(session, analysis_status=AnalysisStatus.complete)
        job = await pipeline.enqueue_job(session, asset_id=asset.id, job_type=PipelineJobType.ai_tagging)
        job.status = PipelineJobStatus.dead_letter
        job.dead_lettered_at = utcnow()
        await session.commit()
        await operations.watchdog(session)
        await operations.auto_recover(session)

        # A later manual retry that dead-letters again reopens triage.
        job.triage_state = "open"
        await session.commit()
        summary = await operations.watchdog(session)

        assert summary["incidents_opened"] == 1
        resolved_marks = (
            await session.execute(
                select(SystemIncident.resolved_at).where(SystemIncident.unique_signature == f"job:{job.id}:dead_letter")
            )
        ).scalars().all()
        assert len(resolved_marks) == 2
        assert sum(1 for resolved_at in resolved_marks if resolved_at is None) == 1


@pytest.mark.anyio
async def test_reconcile_batch(session_factory, make_asset) -> None:
    async with session_factory() as session:
        changed = await make_asset(
            session, analysis_status=AnalysisStatus.extracting_metadata, thumbnail_status=ThumbnailStatus.completed
        )
        await make_asset(session, analysis_status=AnalysisStatus.complete, thumbnail_status=ThumbnailStatus.skipped)

        summary = await operations.reconcile_batch(session)
        assert summary["scanned"] == 2
        assert list(summary["changes"]) == [str(changed.id)]

        single = await operations.reconcile_batch(session, asset_id=changed.id)
        assert single == {"scanned": 1, "updated": 0, "changes": {}}

        with pytest.raises(ValueError, match="Asset not found"):
            await operations.reconcile_batch(session, asset_id=uuid4())


@pytest.mark.anyio
async def test_retry_due_requeues(session_factory, make_asset) -> None:
    async with session_factory() as session:
        asset = await make_asset(session)
        job = await pipeline.enqueue_job(session, asset_id=asset.id, job_type=PipelineJobType.ai_tagging)
        job.status = PipelineJobStatus.failed
        job.attempt = 1
        job.next_retry_at = utcnow() - timedelta(minutes=1)
        await session.commit()

        summary = await operations.retry_due(session)

        assert summary == {"requeued": 1, "job_ids": [str(job.id)]}


@pytest.mark.anyio
async def test_reliability_report(session_factory, make_asset) -> None:
    async with session_factory() as session:
        healthy = await make_asset(session, analysis_status=AnalysisStatus.complete)
        broken = await make_asset(session, analysis_status=AnalysisStatus.scoring)
        await _incident(session, broken)
        fixed = await _incident(session, healthy, unique_signature="asset:healthy")
        await incidents.resolve(session, fixed, auto=True)
        await incidents.create_ticket(session, await _incident(session, broken, unique_signature="asset:second"))
        await session.commit()

        report = await operations.reliability_report(session, window_days=7)

        assert report["window_days"] == 7
        assert report["integrity"] == {"rate_percent": 50.0, "live_assets": 2, "assets_with_open_incident": 1}
        assert report["recovery_success"]["recovery_rate_percent"] == 100.0
        assert report["mttr"]["resolved_count"] == 1
        assert report["mttr"]["mttr_minutes_avg"] is not None
        assert report["ticket_escalation"]["unresolved_count"] == 1
        assert report["incidents"] == {"unresolved_count": 2, "opened_in_window": 3}


@pytest.mark.anyio
async def test_create_ticket_reuses_open_ticket_for_asset(session_factory, make_asset) -> None:
    async with session_factory() as session:
        asset = await make_asset(session)
        first = await _incident(session, asset, severity=IncidentSeverity.critical, unique_signature="a")
        second = await _incident(session, asset, unique_signature="b")

        ticket, created = await incidents.create_ticket(session, first)
        again, created_again = await incidents.create_ticket(session, second)
        await session.commit()

        assert created is True and created_again is False
        assert again.id == ticket.id
        assert ticket.priority == TicketPriority.P0
        assert second.meta["ticket_id"] == str(ticket.id)
        assert await session.scalar(select(func.count()).select_from(Ticket)) == 1
    assert metrics.snapshot()["tickets_created"] == 1


@pytest.mark.anyio
async def test_list_incidents_filters(session_factory, make_asset) -> None:
    async with session_factory() as session:
        asset = await make_asset(session)
        await _incident(session, asset, severity=IncidentSeverity.error, unique_signature="x")
        resolved = await _incident(session, asset, unique_signature="y")
        await incidents.resolve(session, resolved, auto=False, note="fixed by hand")
        await session.commit()

        rows, meta = await incidents.list_incidents(session, incidents.IncidentListFilters())
        assert [row.unique_signature for row in rows] == ["x"]
        assert meta["total_items"] == 1

        rows, _meta = await incidents.list_incidents(
            session, incidents.IncidentListFilters(unresolved_only=False, severity="warning")
        )
        assert [row.unique_signature for row in rows] == ["y"]
        assert rows[0].meta["resolution_note"] == "fixed by hand"
