"""Job handlers for each pipeline job type.

A handler receives the loaded asset and the job payload and returns a
:class:`StepResult`. Handlers never dispatch jobs or touch visibility; the
runner in :mod:`dam.services.pipeline` turns the result into follow-up jobs.
"""

from __future__ import annotations

import enum
import logging
import mimetypes
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import anyio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from dam.core.config import settings
from dam.db.base import utcnow
from dam.models.asset import (
    TERMINAL_THUMBNAIL_STATUSES,
    AnalysisStatus,
    Asset,
    AssetComplianceScore,
    AssetEmbedding,
    ThumbnailStatus,
)
from dam.models.pipeline import PipelineJob, PipelineJobType
from dam.models.tenant import Brand
from dam.services import asset_state, compliance, file_types, imaging, processing_failure, storage
from dam.services.asset_events import record_asset_event
from dam.services.reconciliation import reconcile

logger = logging.getLogger(__name__)

METADATA_DEFER_SECONDS = 60
DEFAULT_THUMBNAIL_STYLES: dict[str, int] = {"thumb": 320, "medium": 1024}


class StepOutcome(str, enum.Enum):
    completed = "completed"
    skipped = "skipped"
    halted = "halted"


@dataclass(frozen=True, slots=True)
class StepResult:
    outcome: StepOutcome = StepOutcome.completed
    follow_up: tuple[PipelineJobType, ...] = ()
    note: str | None = None

    @property
    def continues_chain(self) -> bool:
        return self.outcome != StepOutcome.halted


class JobDeferred(Exception):
    """Release the job for later without consuming an attempt."""

    def __init__(self, delay_seconds: int, reason: str = "deferred") -> None:
        super().__init__(reason)
        self.delay_seconds = max(1, int(delay_seconds))
        self.reason = reason


def completed(note: str | None = None, *follow_up: PipelineJobType) -> StepResult:
    return StepResult(StepOutcome.completed, tuple(follow_up), note)


def skipped(note: str) -> StepResult:
    return StepResult(StepOutcome.skipped, (), note)


def halted(note: str) -> StepResult:
    return StepResult(StepOutcome.halted, (), note)


def _thumbnail_styles() -> dict[str, int]:
    styles = getattr(settings, "thumbnail_styles", None) or DEFAULT_THUMBNAIL_STYLES
    return {str(name): max(16, int(size)) for name, size in dict(styles).items()}


def _source_path(asset: Asset) -> Path:
    if not asset.storage_path:
        raise FileNotFoundError(f"Asset {asset.id} has no stored file")
    path = storage.path_for_key(asset.storage_path)
    if not path.is_file():
        raise FileNotFoundError(f"Stored file missing for asset {asset.id}: {asset.storage_path}")
    return path


async def process_asset(session: AsyncSession, asset: Asset, job: PipelineJob, payload: dict[str, Any]) -> StepResult:
    job_name = PipelineJobType.process_asset.value
    if not asset_state.advance(
        asset, expected=AnalysisStatus.uploading, target=AnalysisStatus.generating_thumbnails, job=job_name
    ):
        return halted("unexpected_analysis_status")
    if asset.thumbnail_status is None:
        asset.thumbnail_status = ThumbnailStatus.pending
    asset.update_meta(processing_started=True, processing_started_at=utcnow().isoformat())
    session.add(asset)
    return completed()


async def generate_thumbnails(
    session: AsyncSession, asset: Asset, job: PipelineJob, payload: dict[str, Any]
) -> StepResult:
    job_name = PipelineJobType.generate_thumbnails.value
    regenerate = bool(payload.get("regenerate"))

    def _advance() -> None:
        if not regenerate and asset.analysis_status == AnalysisStatus.generating_thumbnails:
            asset_state.transition(asset, AnalysisStatus.extracting_metadata)

    if asset.thumbnail_status == ThumbnailStatus.completed and not regenerate:
        _advance()
        session.add(asset)
        return completed("already_completed")

    if not regenerate and not asset_state.is_expected(asset, AnalysisStatus.generating_thumbnails, job=job_name):
        return halted("unexpected_analysis_status")

    file_type = file_types.detect(asset.mime_type, asset.original_filename)
    if file_type is None or not file_type.thumbnail:
        type_name = file_type.name if file_type else "Unknown"
        asset.thumbnail_status = ThumbnailStatus.skipped
        asset.thumbnail_error = f"Thumbnail generation is not supported for {type_name} files"
        record_asset_event(session, asset, "asset.thumbnails.skipped", {"file_type": file_type.key if file_type else None})
        _advance()
        session.add(asset)
        return skipped("unsupported_file_type")

    asset.thumbnail_status = ThumbnailStatus.processing
    asset.thumbnail_started_at = utcnow()
    asset.thumbnail_error = None
    session.add(asset)
    # Persist the processing marker so the timeout sweep can see long renders.
    await session.commit()

    targets = {
        style: (storage.path_for_key(storage.thumbnail_key(asset.id, style)), size)
        for style, size in _thumbnail_styles().items()
    }
    try:
        src_path = _source_path(asset)
        rendered = await anyio.to_thread.run_sync(imaging.render_thumbnails, src_path, targets)
    except Exception as exc:
        message = processing_failure.failure_reason(job_name, exc)
        asset.thumbnail_status = ThumbnailStatus.failed
        asset.thumbnail_error = message
        asset.update_meta(
            thumbnail_generation_failed=True,
            thumbnail_generation_failed_at=utcnow().isoformat(),
            thumbnail_generation_error=message,
        )
        record_asset_event(session, asset, "asset.thumbnails.failed", {"error": message, "attempt": job.attempt})
        session.add(asset)
        raise

    missing = [style for style, (path, _size) in targets.items() if not path.is_file()]
    if missing:
        asset.thumbnail_error = f"Thumbnail output missing for styles: {', '.join(sorted(missing))}"
        session.add(asset)
        raise RuntimeError(asset.thumbnail_error)

    now_iso = utcnow().isoformat()
    asset.thumbnail_status = ThumbnailStatus.completed
    asset.thumbnail_error = None
    asset.update_meta(
        thumbnails_generated=True,
        thumbnails_generated_at=now_iso,
        thumbnails={
            style: {"path": storage.thumbnail_key(asset.id, style), **dims} for style, dims in rendered.items()
        },
        thumbnail_generation_failed=None,
        thumbnail_generation_failed_at=None,
        thumbnail_generation_error=None,
        thumbnail_timeout=None,
        thumbnail_timeout_at=None,
    )
    record_asset_event(
        session, asset, "asset.thumbnails.generated", {"styles": sorted(rendered), "regenerate": regenerate}
    )
    _advance()
    session.add(asset)
    return completed()


async def extract_metadata(session: AsyncSession, asset: Asset, job: PipelineJob, payload: dict[str, Any]) -> StepResult:
    job_name = PipelineJobType.extract_metadata.value
    regenerate = bool(payload.get("regenerate"))
    if not regenerate and not asset_state.is_expected(asset, AnalysisStatus.extracting_metadata, job=job_name):
        return halted("unexpected_analysis_status")

    if (
        file_types.supports_thumbnail(asset.mime_type, asset.original_filename)
        and asset.thumbnail_status not in TERMINAL_THUMBNAIL_STATUSES
    ):
        raise JobDeferred(METADATA_DEFER_SECONDS, "thumbnails_pending")

    path = _source_path(asset)
    checksum = await anyio.to_thread.run_sync(imaging.sha256_for_path, path)
    guessed_mime, _ = mimetypes.guess_type(path.as_posix())
    asset.checksum_sha256 = checksum
    asset.size_bytes = int(path.stat().st_size)
    asset.mime_type = asset.mime_type or guessed_mime

    colors: list[dict[str, Any]] = []
    if file_types.is_image(asset.mime_type, asset.original_filename):
        width, height = await anyio.to_thread.run_sync(imaging.image_dimensions, path)
        asset.width = width
        asset.height = height
        colors = await anyio.to_thread.run_sync(imaging.dominant_colors, path)

    asset.update_meta(
        metadata_extracted=True,
        metadata_extracted_at=utcnow().isoformat(),
        dominant_colors=colors or None,
    )
    record_asset_event(
        session,
        asset,
        "asset.metadata.extracted",
        {"size_bytes": asset.size_bytes, "width": asset.width, "height": asset.height, "colors": len(colors)},
    )
    if not regenerate:
        asset_state.transition(asset, AnalysisStatus.generating_embedding, expected=AnalysisStatus.extracting_metadata)
    session.add(asset)
    return completed()


async def ai_tagging(session: AsyncSession, asset: Asset, job: PipelineJob, payload: dict[str, Any]) -> StepResult:
    reason = None
    if not file_types.supports_ai_analysis(asset.mime_type, asset.original_filename):
        reason = "unsupported_file_type"
    elif asset.thumbnail_status != ThumbnailStatus.completed:
        reason = "thumbnail_unavailable"
    if reason:
        asset.update_meta(_ai_tagging_skipped=True, _ai_tagging_skip_reason=reason)
        session.add(asset)
        return skipped(reason)

    tags = imaging.describe_tags(asset.width, asset.height, asset.meta_flag("dominant_colors") or [])
    asset.update_meta(
        ai_tagging_completed=True,
        ai_tags=tags,
        _ai_tagging_skipped=None,
        _ai_tagging_skip_reason=None,
    )
    session.add(asset)
    return completed()


async def _upsert_compliance(
    session: AsyncSession, asset: Asset, result: compliance.ComplianceResult, *, reason: str | None = None
) -> AssetComplianceScore:
    row = await session.scalar(select(AssetComplianceScore).where(AssetComplianceScore.asset_id == asset.id))
    if row is None:
        row = AssetComplianceScore(asset_id=asset.id)
    row.brand_id = asset.brand_id
    row.status = result.status
    row.overall_score = result.overall_score
    row.color_score = result.scores.get("color")
    row.typography_score = result.scores.get("typography")
    row.tone_score = result.scores.get("tone")
    row.imagery_score = result.scores.get("imagery")
    row.applied_weight = result.applied_weight
    row.breakdown = result.breakdown or ({"reason": reason} if reason else None)
    session.add(row)
    summary: dict[str, Any] = {"status": result.status, "overall_score": result.overall_score}
    if reason:
        summary["reason"] = reason
    asset.update_meta(compliance=summary)
    return row


async def finalize_asset(session: AsyncSession, asset: Asset, job: PipelineJob, payload: dict[str, Any]) -> StepResult:
    metadata_ok = bool(asset.meta_flag("metadata_extracted"))
    thumbnails_ok = asset.thumbnail_status in TERMINAL_THUMBNAIL_STATUSES
    if not (metadata_ok and thumbnails_ok):
        logger.warning(
            "finalize_criteria_not_met",
            extra={
                "asset_id": str(asset.id),
                "metadata_extracted": metadata_ok,
                "thumbnail_status": asset.thumbnail_status.value if asset.thumbnail_status else None,
            },
        )
        return halted("criteria_not_met")

    if not asset.meta_flag("pipeline_completed_at"):
        asset.update_meta(pipeline_completed_at=utcnow().isoformat())

    if asset.thumbnail_status == ThumbnailStatus.skipped:
        await _upsert_compliance(
            session,
            asset,
            compliance.ComplianceResult(status="not_applicable"),
            reason="file_type_unsupported",
        )

    follow_up: tuple[PipelineJobType, ...] = ()
    image = file_types.is_image(asset.mime_type, asset.original_filename)
    if image:
        follow_up = (PipelineJobType.generate_embedding,)
    elif asset.analysis_status == AnalysisStatus.generating_embedding:
        asset_state.transition(asset, AnalysisStatus.complete)

    record_asset_event(
        session, asset, "asset.finalized", {"analysis_status": asset.analysis_status.value, "image": image}
    )
    session.add(asset)
    return completed(None, *follow_up)


async def promote_asset(session: AsyncSession, asset: Asset, job: PipelineJob, payload: dict[str, Any]) -> StepResult:
    if not asset.meta_flag("pipeline_completed_at"):
        return skipped("pipeline_not_completed")
    if not storage.is_temp_key(asset.storage_path):
        return skipped("already_promoted")

    source_key = str(asset.storage_path)
    destination_key = storage.canonical_key(asset.tenant_id, asset.id, Path(source_key).name)
    await anyio.to_thread.run_sync(storage.move, source_key, destination_key)
    asset.storage_path = destination_key
    asset.update_meta(promoted_at=utcnow().isoformat())
    record_asset_event(session, asset, "asset.promoted", {"from": source_key, "to": destination_key})
    session.add(asset)
    await session.flush()
    await reconcile(session, asset)
    return completed()


def _embedding_source(asset: Asset) -> Path:
    thumbnails = asset.meta_flag("thumbnails") or {}
    for style in ("medium", *sorted(thumbnails)):
        entry = thumbnails.get(style)
        key = entry.get("path") if isinstance(entry, dict) else None
        if key and storage.exists(key):
            return storage.path_for_key(key)
    return _source_path(asset)


async def generate_embedding(
    session: AsyncSession, asset: Asset, job: PipelineJob, payload: dict[str, Any]
) -> StepResult:
    job_name = PipelineJobType.generate_embedding.value
    if not asset_state.is_expected(asset, AnalysisStatus.generating_embedding, job=job_name):
        return halted("unexpected_analysis_status")
    if not file_types.is_image(asset.mime_type, asset.original_filename):
        logger.info("embedding_skipped_non_image", extra={"asset_id": str(asset.id), "mime_type": asset.mime_type})
        return halted("not_an_image")

    source = _embedding_source(asset)
    vector = await anyio.to_thread.run_sync(imaging.embedding_vector, source)
    row = await session.scalar(select(AssetEmbedding).where(AssetEmbedding.asset_id == asset.id))
    if row is None:
        row = AssetEmbedding(asset_id=asset.id)
    row.model = imaging.EMBEDDING_MODEL
    row.dimensions = len(vector)
    row.vector = vector
    session.add(row)
    asset_state.transition(asset, AnalysisStatus.scoring, expected=AnalysisStatus.generating_embedding)
    session.add(asset)
    return completed(None, PipelineJobType.score_compliance)


async def score_compliance(
    session: AsyncSession, asset: Asset, job: PipelineJob, payload: dict[str, Any]
) -> StepResult:
    job_name = PipelineJobType.score_compliance.value
    if not asset_state.is_expected(asset, AnalysisStatus.scoring, job=job_name):
        return halted("unexpected_analysis_status")

    rules: dict[str, Any] = {}
    if asset.brand_id:
        brand = await session.get(Brand, asset.brand_id)
        rules = dict((brand.compliance_rules if brand else None) or {})
    result = compliance.score_asset(asset, rules)
    await _upsert_compliance(session, asset, result)
    asset_state.transition(asset, AnalysisStatus.complete, expected=AnalysisStatus.scoring)
    session.add(asset)
    return completed(result.status)


StepHandler = Callable[[AsyncSession, Asset, PipelineJob, dict[str, Any]], Awaitable[StepResult]]

HANDLERS: dict[PipelineJobType, StepHandler] = {
    PipelineJobType.process_asset: process_asset,
    PipelineJobType.generate_thumbnails: generate_thumbnails,
    PipelineJobType.extract_metadata: extract_metadata,
    PipelineJobType.ai_tagging: ai_tagging,
    PipelineJobType.finalize_asset: finalize_asset,
    PipelineJobType.promote_asset: promote_asset,
    PipelineJobType.generate_embedding: generate_embedding,
    PipelineJobType.score_compliance: score_compliance,
}


def mark_promotion_failed(asset: Asset, exc: BaseException) -> None:
    now_iso = utcnow().isoformat()
    if asset.analysis_status != AnalysisStatus.promotion_failed:
        asset_state.transition(asset, AnalysisStatus.promotion_failed)
    asset.update_meta(
        promotion_failed=True,
        promotion_failed_at=now_iso,
        promotion_error=processing_failure.failure_reason(PipelineJobType.promote_asset.value, exc),
    )


async def on_dead_letter(
    session: AsyncSession, asset: Asset, job_type: PipelineJobType, exc: BaseException, attempts: int
) -> None:
    """Write the permanent failure onto the asset once the job is out of attempts."""
    job_name = job_type.value
    if job_type == PipelineJobType.generate_thumbnails:
        asset.thumbnail_status = ThumbnailStatus.failed
        asset.thumbnail_error = asset.thumbnail_error or processing_failure.failure_reason(job_name, exc)
        asset.update_meta(thumbnail_generation_failed=True, thumbnail_generation_failed_at=utcnow().isoformat())
        await processing_failure.record_failure(session, asset, job_name, exc, attempts)
    elif job_type == PipelineJobType.finalize_asset:
        await processing_failure.record_failure(session, asset, job_name, exc, attempts, preserve_visibility=True)
    elif job_type == PipelineJobType.promote_asset:
        mark_promotion_failed(asset, exc)
        await processing_failure.record_failure(session, asset, job_name, exc, attempts, preserve_visibility=True)
    else:
        await processing_failure.record_failure(session, asset, job_name, exc, attempts)
