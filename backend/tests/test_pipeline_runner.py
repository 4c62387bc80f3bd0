from datetime import timedelta
from io import BytesIO
from uuid import uuid4

import pytest
from PIL import Image
from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql

from dam.core import metrics
from dam.db.base import as_aware, utcnow
from dam.models.asset import (
    AnalysisStatus,
    Asset,
    AssetComplianceScore,
    AssetEmbedding,
    AssetEvent,
    AssetStatus,
    ThumbnailStatus,
)
from dam.models.incident import SystemIncident
from dam.models.pipeline import PipelineJob, PipelineJobEvent, PipelineJobStatus, PipelineJobType
from dam.services import imaging, pipeline, pipeline_steps, storage


async def _drain(session_factory, *, limit: int = 40) -> list[PipelineJob]:
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


async def _enqueue(session_factory, asset: Asset, job_type: PipelineJobType, **kwargs) -> PipelineJob:
    async with session_factory() as session:
        job = await pipeline.enqueue_job(session, asset_id=asset.id, job_type=job_type, **kwargs)
        await session.commit()
        return job


async def _run(session_factory, job_id) -> PipelineJob:
    async with session_factory() as session:
        job = await session.get(PipelineJob, job_id)
        assert job is not None
        return await pipeline.process_job_inline(session, job)


@pytest.mark.anyio
async def test_image_upload_runs_full_chain(session_factory, make_asset, jpeg) -> None:
    async with session_factory() as session:
        asset = await make_asset(session, content=jpeg(), compliance_rules={"allowed_colors": ["#000000"]})
        await pipeline.start_pipeline(session, asset)

    jobs = await _drain(session_factory)

    assert {job.job_type for job in jobs} == set(PipelineJobType)
    assert all(job.status == PipelineJobStatus.completed for job in jobs)

    async with session_factory() as session:
        refreshed = await session.get(Asset, asset.id)
        assert refreshed is not None
        assert refreshed.status == AssetStatus.visible
        assert refreshed.analysis_status == AnalysisStatus.complete
        assert refreshed.thumbnail_status == ThumbnailStatus.completed
        assert refreshed.width == 64 and refreshed.height == 48
        assert refreshed.checksum_sha256
        assert refreshed.storage_path.startswith(f"assets/{refreshed.tenant_id}/{refreshed.id}/")
        assert storage.exists(refreshed.storage_path)
        assert not storage.exists(storage.temp_key(refreshed.id, "photo.jpg"))
        assert refreshed.meta["metadata_extracted"] is True
        assert refreshed.meta["pipeline_completed_at"]
        assert set(refreshed.meta["thumbnails"]) == {"thumb", "medium"}
        assert "landscape" in refreshed.meta["ai_tags"]

        embedding = await session.scalar(select(AssetEmbedding).where(AssetEmbedding.asset_id == asset.id))
        assert embedding is not None
        assert embedding.dimensions == imaging.EMBEDDING_DIMENSIONS
        score = await session.scalar(select(AssetComplianceScore).where(AssetComplianceScore.asset_id == asset.id))
        assert score is not None
        assert score.status == "scored"
        assert score.color_score == 0
        assert score.typography_score is None

        event_types = set((await session.execute(select(AssetEvent.event_type))).scalars().all())
        assert {
            "asset.thumbnails.generated",
            "asset.metadata.extracted",
            "asset.finalized",
            "asset.promoted",
        } <= event_types

    assert metrics.snapshot()["pipeline_jobs_completed"] == len(jobs)


@pytest.mark.anyio
async def test_office_document_skips_thumbnails_and_completes_without_embedding(session_factory, make_asset) -> None:
    async with session_factory() as session:
        asset = await make_asset(
            session,
            filename="brief.docx",
            mime_type="application/vnd.openxmlformats-officedocument.wordprocessingml.document",
            content=b"PK\x03\x04 not really a docx",
        )
        await pipeline.start_pipeline(session, asset)

    jobs = await _drain(session_factory)
    assert PipelineJobType.generate_embedding not in {job.job_type for job in jobs}

    async with session_factory() as session:
        refreshed = await session.get(Asset, asset.id)
        assert refreshed is not None
        assert refreshed.thumbnail_status == ThumbnailStatus.skipped
        assert refreshed.analysis_status == AnalysisStatus.complete
        assert refreshed.status == AssetStatus.visible
        assert refreshed.meta["_ai_tagging_skipped"] is True
        score = await session.scalar(select(AssetComplianceScore).where(AssetComplianceScore.asset_id == asset.id))
        assert score is not None
        assert score.status == "not_applicable"
        assert score.breakdown == {"reason": "file_type_unsupported"}


@pytest.mark.anyio
async def test_pdf_first_page_is_rendered_into_thumbnails(session_factory, make_asset) -> None:
    buf = BytesIO()
    Image.new("RGB", (300, 400), color=(20, 90, 200)).save(buf, format="PDF")
    async with session_factory() as session:
        asset = await make_asset(session, filename="brief.pdf", mime_type="application/pdf", content=buf.getvalue())
        await pipeline.start_pipeline(session, asset)

    jobs = await _drain(session_factory)
    assert PipelineJobType.generate_embedding not in {job.job_type for job in jobs}

    async with session_factory() as session:
        refreshed = await session.get(Asset, asset.id)
        assert refreshed is not None
        assert refreshed.thumbnail_status == ThumbnailStatus.completed
        assert refreshed.thumbnail_error is None
        assert refreshed.analysis_status == AnalysisStatus.complete
        thumbnails = refreshed.meta["thumbnails"]
        assert set(thumbnails) == {"thumb", "medium"}
        # Portrait page keeps its aspect ratio inside the style bound.
        assert thumbnails["thumb"]["height"] == 320
        assert thumbnails["thumb"]["width"] < 320
        for entry in thumbnails.values():
            assert storage.exists(entry["path"])


@pytest.mark.anyio
async def test_transient_failure_schedules_retry_with_backoff(session_factory, make_asset, monkeypatch) -> None:
    async def _boom(session, asset, job, payload):
        raise RuntimeError("upstream tagger timed out")

    monkeypatch.setitem(pipeline_steps.HANDLERS, PipelineJobType.ai_tagging, _boom)
    async with session_factory() as session:
        asset = await make_asset(session)
    job = await _enqueue(session_factory, asset, PipelineJobType.ai_tagging)

    before = utcnow()
    result = await _run(session_factory, job.id)

    assert result.status == PipelineJobStatus.failed
    assert result.attempt == 1
    assert result.triage_state == "retrying"
    assert result.error_code == "RuntimeError"
    assert result.next_retry_at is not None
    delay = (as_aware(result.next_retry_at) - before).total_seconds()
    assert 55 <= delay <= 65
    assert metrics.snapshot()["pipeline_jobs_failed.ai_tagging"] == 1

    async with session_factory() as session:
        refreshed = await session.get(Asset, asset.id)
        assert refreshed.status == AssetStatus.visible
        assert not refreshed.meta_flag("processing_failed")


@pytest.mark.anyio
async def test_exhausted_attempts_dead_letter_and_fail_asset(session_factory, make_asset, monkeypatch) -> None:
    async def _boom(session, asset, job, payload):
        raise RuntimeError("tagging service unavailable")

    monkeypatch.setitem(pipeline_steps.HANDLERS, PipelineJobType.ai_tagging, _boom)
    async with session_factory() as session:
        asset = await make_asset(session)
    job = await _enqueue(session_factory, asset, PipelineJobType.ai_tagging, max_attempts=1)

    result = await _run(session_factory, job.id)

    assert result.status == PipelineJobStatus.dead_letter
    assert result.dead_lettered_at is not None
    assert result.next_retry_at is None
    assert metrics.snapshot()["pipeline_jobs_dead_lettered"] == 1

    async with session_factory() as session:
        refreshed = await session.get(Asset, asset.id)
        assert refreshed.status == AssetStatus.failed
        assert refreshed.meta["failed_job"] == "ai_tagging"
        assert refreshed.meta["failure_reason"].startswith("AiTagging failed: tagging service unavailable")
        incident = await session.scalar(
            select(SystemIncident).where(
                SystemIncident.unique_signature == f"asset:{asset.id}:processing_failed:ai_tagging"
            )
        )
        assert incident is not None
        assert incident.retryable is True
        assert incident.resolved_at is None


@pytest.mark.anyio
async def test_non_retryable_error_dead_letters_on_first_attempt(session_factory, make_asset, monkeypatch) -> None:
    async def _bad_payload(session, asset, job, payload):
        raise ValueError("invalid tag vocabulary")

    monkeypatch.setitem(pipeline_steps.HANDLERS, PipelineJobType.ai_tagging, _bad_payload)
    async with session_factory() as session:
        asset = await make_asset(session)
    job = await _enqueue(session_factory, asset, PipelineJobType.ai_tagging)

    result = await _run(session_factory, job.id)

    assert result.status == PipelineJobStatus.dead_letter
    assert result.attempt == 1
    async with session_factory() as session:
        incident = await session.scalar(select(SystemIncident).where(SystemIncident.source_id == asset.id))
        assert incident is not None
        assert incident.retryable is False


@pytest.mark.anyio
async def test_promotion_dead_letter_marks_promotion_failed_and_keeps_asset_visible(session_factory, make_asset) -> None:
    async with session_factory() as session:
        asset = await make_asset(
            session,
            analysis_status=AnalysisStatus.complete,
            thumbnail_status=ThumbnailStatus.completed,
            meta={"metadata_extracted": True, "pipeline_completed_at": utcnow().isoformat()},
        )
        asset.storage_path = storage.temp_key(asset.id, "photo.jpg")
        await session.commit()
    job = await _enqueue(session_factory, asset, PipelineJobType.promote_asset, max_attempts=1)

    result = await _run(session_factory, job.id)

    assert result.status == PipelineJobStatus.dead_letter
    async with session_factory() as session:
        refreshed = await session.get(Asset, asset.id)
        assert refreshed.analysis_status == AnalysisStatus.promotion_failed
        assert refreshed.status == AssetStatus.visible
        assert refreshed.meta["promotion_failed"] is True
        assert "Source file missing" in refreshed.meta["promotion_error"]
        assert refreshed.meta["processing_failed"] is True
        assert refreshed.meta["failed_job"] == "promote_asset"
        events = (
            await session.execute(select(AssetEvent).where(AssetEvent.event_type == "asset.processing.failed"))
        ).scalars().all()
        assert [event.payload["visibility_preserved"] for event in events] == [True]


@pytest.mark.anyio
async def test_finalize_dead_letter_records_failure_and_keeps_asset_visible(
    session_factory, make_asset, monkeypatch
) -> None:
    async def _boom(session, asset, job, payload):
        raise RuntimeError("compliance store unavailable")

    monkeypatch.setitem(pipeline_steps.HANDLERS, PipelineJobType.finalize_asset, _boom)
    async with session_factory() as session:
        asset = await make_asset(
            session,
            analysis_status=AnalysisStatus.generating_embedding,
            thumbnail_status=ThumbnailStatus.completed,
            meta={"metadata_extracted": True},
        )
    job = await _enqueue(session_factory, asset, PipelineJobType.finalize_asset, max_attempts=1)

    result = await _run(session_factory, job.id)

    assert result.status == PipelineJobStatus.dead_letter
    async with session_factory() as session:
        refreshed = await session.get(Asset, asset.id)
        assert refreshed.status == AssetStatus.visible
        assert refreshed.analysis_status == AnalysisStatus.generating_embedding
        assert refreshed.meta["processing_failed"] is True
        assert refreshed.meta["failed_job"] == "finalize_asset"
        assert not refreshed.meta_flag("pipeline_completed_at")
        incident = await session.scalar(
            select(SystemIncident).where(
                SystemIncident.unique_signature == f"asset:{asset.id}:processing_failed:finalize_asset"
            )
        )
        assert incident is not None


def test_job_asset_load_takes_row_lock() -> None:
    stmt = pipeline.asset_for_update(uuid4())

    assert "FOR UPDATE" in str(stmt.compile(dialect=postgresql.dialect()))


@pytest.mark.anyio
async def test_job_sees_metadata_written_by_a_concurrent_job(session_factory, make_asset) -> None:
    async with session_factory() as session:
        asset = await make_asset(
            session,
            filename="brief.docx",
            mime_type=None,
            analysis_status=AnalysisStatus.complete,
            thumbnail_status=ThumbnailStatus.skipped,
        )
    job = await _enqueue(session_factory, asset, PipelineJobType.ai_tagging)

    async with session_factory() as worker_session:
        # Stale copy in the worker's identity map, as left by an earlier job in the same session.
        assert (await worker_session.get(Asset, asset.id)).meta_flag("promoted_at") is None
        async with session_factory() as other:
            row = await other.get(Asset, asset.id)
            row.update_meta(promoted_at="2026-01-01T00:00:00+00:00")
            await other.commit()
        row_job = await worker_session.get(PipelineJob, job.id)
        await pipeline.process_job_inline(worker_session, row_job)

    async with session_factory() as session:
        refreshed = await session.get(Asset, asset.id)
        assert refreshed.meta["promoted_at"] == "2026-01-01T00:00:00+00:00"
        assert refreshed.meta["_ai_tagging_skipped"] is True


@pytest.mark.anyio
async def test_job_cannot_change_visibility(session_factory, make_asset, monkeypatch) -> None:
    async def _hide(session, asset, job, payload):
        asset.status = AssetStatus.hidden
        return pipeline_steps.completed()

    monkeypatch.setitem(pipeline_steps.HANDLERS, PipelineJobType.ai_tagging, _hide)
    async with session_factory() as session:
        asset = await make_asset(session)
    job = await _enqueue(session_factory, asset, PipelineJobType.ai_tagging)

    result = await _run(session_factory, job.id)

    assert result.status == PipelineJobStatus.failed
    assert result.error_code == "VisibilityMutationError"
    async with session_factory() as session:
        refreshed = await session.get(Asset, asset.id)
        assert refreshed.status == AssetStatus.visible


@pytest.mark.anyio
async def test_metadata_defers_until_thumbnails_settle(session_factory, make_asset, jpeg) -> None:
    async with session_factory() as session:
        asset = await make_asset(
            session,
            content=jpeg(),
            analysis_status=AnalysisStatus.extracting_metadata,
            thumbnail_status=ThumbnailStatus.processing,
        )
    job = await _enqueue(session_factory, asset, PipelineJobType.extract_metadata)

    result = await _run(session_factory, job.id)

    assert result.status == PipelineJobStatus.deferred
    assert result.attempt == 0
    assert result.next_retry_at is not None
    assert pipeline.job_payload(result)["deferrals"] == 1
    assert metrics.snapshot()["pipeline_jobs_deferred"] == 1


@pytest.mark.anyio
async def test_deferral_cap_turns_into_failure(session_factory, make_asset, jpeg) -> None:
    async with session_factory() as session:
        asset = await make_asset(
            session,
            content=jpeg(),
            analysis_status=AnalysisStatus.extracting_metadata,
            thumbnail_status=ThumbnailStatus.pending,
        )
    job = await _enqueue(
        session_factory,
        asset,
        PipelineJobType.extract_metadata,
        payload={"deferrals": pipeline.MAX_DEFERRALS},
    )

    result = await _run(session_factory, job.id)

    assert result.status == PipelineJobStatus.failed
    assert f"deferred more than {pipeline.MAX_DEFERRALS} times" in (result.error_message or "")


@pytest.mark.anyio
async def test_unexpected_stage_halts_chain(session_factory, make_asset) -> None:
    async with session_factory() as session:
        asset = await make_asset(session, analysis_status=AnalysisStatus.extracting_metadata)
        await pipeline.start_pipeline(session, asset)

    jobs = await _drain(session_factory)

    assert [job.job_type for job in jobs] == [PipelineJobType.process_asset]
    assert jobs[0].status == PipelineJobStatus.completed
    async with session_factory() as session:
        note = await session.scalar(
            select(PipelineJobEvent.note).where(
                PipelineJobEvent.job_id == jobs[0].id, PipelineJobEvent.action == "completed"
            )
        )
        assert note == "halted"
        refreshed = await session.get(Asset, asset.id)
        assert refreshed.analysis_status == AnalysisStatus.extracting_metadata


@pytest.mark.anyio
async def test_missing_source_dead_letters_thumbnails(session_factory, make_asset) -> None:
    async with session_factory() as session:
        asset = await make_asset(
            session,
            analysis_status=AnalysisStatus.generating_thumbnails,
            storage_path="temp/missing/photo.jpg",
        )
    job = await _enqueue(session_factory, asset, PipelineJobType.generate_thumbnails, max_attempts=1)

    result = await _run(session_factory, job.id)

    assert result.status == PipelineJobStatus.dead_letter
    async with session_factory() as session:
        refreshed = await session.get(Asset, asset.id)
        assert refreshed.thumbnail_status == ThumbnailStatus.failed
        assert refreshed.meta["thumbnail_generation_failed"] is True
        assert refreshed.status == AssetStatus.failed


@pytest.mark.anyio
async def test_success_clears_failure_from_same_job(session_factory, make_asset) -> None:
    async with session_factory() as session:
        asset = await make_asset(
            session,
            filename="notes.docx",
            mime_type="application/vnd.openxmlformats-officedocument.wordprocessingml.document",
            status=AssetStatus.failed,
            analysis_status=AnalysisStatus.complete,
            meta={"processing_failed": True, "failed_job": "ai_tagging", "failure_reason": "AiTagging failed: x"},
        )
    job = await _enqueue(session_factory, asset, PipelineJobType.ai_tagging)

    result = await _run(session_factory, job.id)

    assert result.status == PipelineJobStatus.completed
    async with session_factory() as session:
        refreshed = await session.get(Asset, asset.id)
        assert "processing_failed" not in refreshed.meta
        assert "failed_job" not in refreshed.meta
        # Visibility is restored by reconciliation, not by the job.
        assert refreshed.status == AssetStatus.failed


@pytest.mark.anyio
async def test_enqueue_due_retries_requeues_elapsed_jobs(session_factory, make_asset) -> None:
    async with session_factory() as session:
        asset = await make_asset(session)
        due = await pipeline.enqueue_job(session, asset_id=asset.id, job_type=PipelineJobType.ai_tagging)
        later = await pipeline.enqueue_job(session, asset_id=asset.id, job_type=PipelineJobType.extract_metadata)
        due.status = PipelineJobStatus.failed
        due.attempt = 1
        due.next_retry_at = utcnow() - timedelta(seconds=5)
        later.status = PipelineJobStatus.deferred
        later.next_retry_at = utcnow() + timedelta(minutes=5)
        await session.commit()

        requeued = await pipeline.enqueue_due_retries(session)

        assert requeued == [due.id]
        await session.refresh(due)
        assert due.status == PipelineJobStatus.queued
        assert due.triage_state == "retrying"


@pytest.mark.anyio
async def test_manual_retry_resets_dead_letter_budget(session_factory, make_asset) -> None:
    async with session_factory() as session:
        asset = await make_asset(session)
        job = await pipeline.enqueue_job(session, asset_id=asset.id, job_type=PipelineJobType.ai_tagging)
        job.status = PipelineJobStatus.dead_letter
        job.attempt = 3
        job.dead_lettered_at = utcnow()
        await session.commit()

        retried = await pipeline.manual_retry_job(session, job=job)

        assert retried.status == PipelineJobStatus.queued
        assert retried.attempt == 0
        assert retried.dead_lettered_at is None

        retried.status = PipelineJobStatus.processing
        await session.commit()
        with pytest.raises(ValueError, match="currently processing"):
            await pipeline.manual_retry_job(session, job=retried)


@pytest.mark.anyio
async def test_bulk_retry_skips_completed_and_processing(session_factory, make_asset) -> None:
    async with session_factory() as session:
        asset = await make_asset(session)
        rows = []
        for status in (PipelineJobStatus.dead_letter, PipelineJobStatus.completed, PipelineJobStatus.processing):
            job = await pipeline.enqueue_job(session, asset_id=asset.id, job_type=PipelineJobType.ai_tagging)
            job.status = status
            rows.append(job)
        await session.commit()

        retried = await pipeline.bulk_retry_jobs(session, job_ids=[row.id for row in rows])

        assert [row.id for row in retried] == [rows[0].id]
        total_events = await session.scalar(
            select(func.count()).select_from(PipelineJobEvent).where(PipelineJobEvent.action == "bulk_retry")
        )
        assert total_events == 1
