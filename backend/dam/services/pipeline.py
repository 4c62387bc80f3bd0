from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, cast
from uuid import UUID, uuid4

from sqlalchemy import Select, and_, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.elements import ColumnElement

from dam.core import metrics
from dam.core.config import settings
from dam.core.logging_config import job_id_ctx_var
from dam.core.pipeline_context import pipeline_context
from dam.core.redis_client import await_if_needed, get_redis, json_loads
from dam.db.base import as_aware, utcnow
from dam.models.asset import Asset
from dam.models.pipeline import PipelineJob, PipelineJobEvent, PipelineJobStatus, PipelineJobType
from dam.schemas.pipeline import (
    PipelineJobEventRead,
    PipelineJobRead,
    PipelineJobTriageStateLiteral,
    PipelineTelemetryResponse,
    TelemetryWorkerRead,
)
from dam.services import pipeline_steps, processing_failure
from dam.services.pipeline_steps import JobDeferred, StepOutcome, StepResult
from dam.services.reconciliation import find_stuck_assets

logger = logging.getLogger(__name__)

QUEUE_KEY = str(getattr(settings, "pipeline_queue_key", "dam:pipeline:queue") or "dam:pipeline:queue")
HEARTBEAT_PREFIX = str(
    getattr(settings, "pipeline_worker_heartbeat_prefix", "dam:workers:heartbeat") or "dam:workers:heartbeat"
)
RETRY_BACKOFF_SECONDS = (60, 300, 900)
DEFAULT_MAX_ATTEMPTS = max(1, int(getattr(settings, "pipeline_retry_max_attempts", 3) or 3))
MAX_DEFERRALS = 10
TRIAGE_STATES = {"open", "retrying", "ignored", "resolved"}

PIPELINE_CHAIN: tuple[PipelineJobType, ...] = (
    PipelineJobType.generate_thumbnails,
    PipelineJobType.extract_metadata,
    PipelineJobType.ai_tagging,
    PipelineJobType.finalize_asset,
    PipelineJobType.promote_asset,
)


@dataclass(slots=True)
class PipelineJobListFilters:
    page: int = 1
    limit: int = 24
    status: str = ""
    job_type: str = ""
    asset_id: UUID | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None
    triage_state: str = ""
    assigned_to_operator_id: UUID | None = None
    sla_breached: bool = False
    dead_letter_only: bool = False


def _now() -> datetime:
    return utcnow()


def _coerce_triage_state(
    value: str | None,
    *,
    fallback: PipelineJobTriageStateLiteral = "open",
) -> PipelineJobTriageStateLiteral:
    raw = str(value or "").strip().lower()
    if raw in TRIAGE_STATES:
        return cast(PipelineJobTriageStateLiteral, raw)
    return fallback


def _retry_delay_seconds(*, attempt: int, max_attempts: int) -> int | None:
    if attempt >= max_attempts:
        return None
    idx = max(1, int(attempt)) - 1
    if idx < len(RETRY_BACKOFF_SECONDS):
        return RETRY_BACKOFF_SECONDS[idx]
    return RETRY_BACKOFF_SECONDS[-1]


def _dumps(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def job_payload(job: PipelineJob) -> dict[str, Any]:
    try:
        data = json.loads(job.payload_json or "{}")
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def job_chain(job: PipelineJob) -> list[PipelineJobType]:
    chain: list[PipelineJobType] = []
    for raw in job_payload(job).get("chain") or []:
        try:
            chain.append(PipelineJobType(str(raw)))
        except ValueError:
            logger.warning("pipeline_chain_entry_invalid", extra={"job_id": str(job.id), "entry": raw})
    return chain


async def enqueue_job(
    session: AsyncSession,
    *,
    asset_id: UUID | None,
    job_type: PipelineJobType,
    payload: dict[str, Any] | None = None,
    chain: tuple[PipelineJobType, ...] | list[PipelineJobType] = (),
    created_by_operator_id: UUID | None = None,
    max_attempts: int | None = None,
) -> PipelineJob:
    attempts = max(1, int(max_attempts or DEFAULT_MAX_ATTEMPTS))
    body = dict(payload or {})
    body["chain"] = [PipelineJobType(item).value for item in chain]
    job = PipelineJob(
        id=uuid4(),
        asset_id=asset_id,
        job_type=job_type,
        status=PipelineJobStatus.queued,
        payload_json=_dumps(body),
        progress_pct=0,
        attempt=0,
        max_attempts=attempts,
        triage_state="open",
        created_by_operator_id=created_by_operator_id,
    )
    session.add(job)
    await session.flush()
    await _record_job_event(
        session,
        job=job,
        actor_operator_id=created_by_operator_id,
        action="queued",
        meta={"job_type": job.job_type.value, "max_attempts": attempts, "chain": body["chain"]},
    )
    return job


async def _maybe_queue_job(job_id: UUID) -> None:
    redis = get_redis()
    if redis is None:
        return
    await await_if_needed(redis.rpush(QUEUE_KEY, str(job_id)))


async def queue_job(job_id: UUID) -> None:
    await _maybe_queue_job(job_id)


async def _record_job_event(
    session: AsyncSession,
    *,
    job: PipelineJob,
    action: str,
    actor_operator_id: UUID | None = None,
    note: str | None = None,
    meta: dict[str, Any] | None = None,
) -> None:
    session.add(
        PipelineJobEvent(
            job_id=job.id,
            actor_operator_id=actor_operator_id,
            action=(action or "").strip()[:80] or "event",
            note=(note or "").strip() or None,
            meta_json=(_dumps(meta) if meta else None),
        )
    )
    await session.flush()


async def dispatch(
    session: AsyncSession,
    asset: Asset,
    job_type: PipelineJobType,
    *,
    chain: tuple[PipelineJobType, ...] | list[PipelineJobType] = (),
    payload: dict[str, Any] | None = None,
    created_by_operator_id: UUID | None = None,
) -> PipelineJob:
    """Enqueue, commit and wake a worker. The entry point every service uses to start work."""
    job = await enqueue_job(
        session,
        asset_id=asset.id,
        job_type=job_type,
        payload=payload,
        chain=chain,
        created_by_operator_id=created_by_operator_id,
    )
    await session.commit()
    await _maybe_queue_job(job.id)
    logger.info(
        "pipeline_job_dispatched",
        extra={"job_id": str(job.id), "asset_id": str(asset.id), "job_type": job_type.value},
    )
    return job


def remaining_chain(job_type: PipelineJobType) -> tuple[PipelineJobType, ...]:
    """Chain entries that follow job_type in the standard pipeline; empty for jobs outside it."""
    if job_type not in PIPELINE_CHAIN:
        return ()
    return PIPELINE_CHAIN[PIPELINE_CHAIN.index(job_type) + 1 :]


async def start_pipeline(
    session: AsyncSession, asset: Asset, *, created_by_operator_id: UUID | None = None
) -> PipelineJob:
    return await dispatch(
        session,
        asset,
        PipelineJobType.process_asset,
        chain=PIPELINE_CHAIN,
        created_by_operator_id=created_by_operator_id,
    )


def asset_for_update(asset_id: UUID) -> Select:
    """Row-lock the asset so jobs for one asset run one at a time; each rewrites the whole metadata document."""
    return select(Asset).where(Asset.id == asset_id).with_for_update().execution_options(populate_existing=True)


async def _load_asset(session: AsyncSession, job: PipelineJob) -> Asset:
    if job.asset_id is None:
        raise ValueError("Job has no asset")
    asset = await session.scalar(asset_for_update(job.asset_id))
    if asset is None or asset.deleted_at is not None:
        raise ValueError("Asset not found")
    return asset


async def _enqueue_next(session: AsyncSession, job: PipelineJob, result: StepResult) -> list[UUID]:
    queued: list[UUID] = []
    for follow_up in result.follow_up:
        row = await enqueue_job(session, asset_id=job.asset_id, job_type=follow_up)
        queued.append(row.id)
    chain = job_chain(job)
    if result.continues_chain and chain:
        row = await enqueue_job(session, asset_id=job.asset_id, job_type=chain[0], chain=chain[1:])
        queued.append(row.id)
    return queued


async def _defer(session: AsyncSession, job: PipelineJob, deferred: JobDeferred) -> bool:
    """Give the attempt back and park the job. Returns False once the deferral cap is exceeded."""
    payload = job_payload(job)
    deferrals = int(payload.get("deferrals") or 0) + 1
    if deferrals > MAX_DEFERRALS:
        return False
    payload["deferrals"] = deferrals
    now = _now()
    job.payload_json = _dumps(payload)
    job.status = PipelineJobStatus.deferred
    job.attempt = max(0, int(job.attempt or 0) - 1)
    job.next_retry_at = now + timedelta(seconds=deferred.delay_seconds)
    job.started_at = None
    job.progress_pct = 0
    await _record_job_event(
        session,
        job=job,
        action="deferred",
        note=deferred.reason,
        meta={"delay_seconds": deferred.delay_seconds, "deferrals": deferrals},
    )
    metrics.record_job_deferred()
    logger.info(
        "pipeline_job_deferred",
        extra={"job_id": str(job.id), "job_type": job.job_type.value, "delay_seconds": deferred.delay_seconds},
    )
    return True


async def _fail(session: AsyncSession, job: PipelineJob, asset: Asset | None, exc: BaseException) -> None:
    now = _now()
    attempt = int(job.attempt or 0)
    max_attempts = max(1, int(job.max_attempts or DEFAULT_MAX_ATTEMPTS))
    retryable = processing_failure.is_retryable(exc, attempt, max_attempts=max_attempts)
    delay = _retry_delay_seconds(attempt=attempt, max_attempts=max_attempts) if retryable else None
    job.last_error_at = now
    job.error_code = exc.__class__.__name__[:120]
    job.error_message = str(exc)
    job.completed_at = now
    if delay is not None:
        job.status = PipelineJobStatus.failed
        job.next_retry_at = now + timedelta(seconds=delay)
        job.triage_state = "retrying"
        await _record_job_event(
            session,
            job=job,
            action="retry_scheduled",
            note=str(exc),
            meta={"attempt": attempt, "max_attempts": max_attempts, "retry_in_seconds": int(delay)},
        )
        metrics.record_job_failed(job.job_type.value)
        logger.warning(
            "pipeline_job_retry_scheduled",
            extra={"job_id": str(job.id), "job_type": job.job_type.value, "attempt": attempt, "retry_in": delay},
        )
        return

    job.status = PipelineJobStatus.dead_letter
    job.dead_lettered_at = now
    job.next_retry_at = None
    job.triage_state = "open"
    await _record_job_event(
        session,
        job=job,
        action="dead_lettered",
        note=str(exc),
        meta={"attempt": attempt, "max_attempts": max_attempts, "retryable": retryable},
    )
    metrics.record_job_dead_lettered(job.job_type.value)
    logger.error(
        "pipeline_job_dead_lettered",
        extra={"job_id": str(job.id), "job_type": job.job_type.value, "attempt": attempt, "error": str(exc)},
    )
    if asset is not None:
        try:
            await pipeline_steps.on_dead_letter(session, asset, job.job_type, exc, attempt)
        except Exception:
            logger.exception(
                "pipeline_dead_letter_hook_failed",
                extra={"job_id": str(job.id), "asset_id": str(asset.id), "job_type": job.job_type.value},
            )


async def process_job_inline(session: AsyncSession, job: PipelineJob) -> PipelineJob:
    token = job_id_ctx_var.set(str(job.id))
    try:
        return await _process_job(session, job)
    finally:
        job_id_ctx_var.reset(token)


async def _process_job(session: AsyncSession, job: PipelineJob) -> PipelineJob:
    job.status = PipelineJobStatus.processing
    job.triage_state = "retrying" if job.attempt > 0 else _coerce_triage_state(job.triage_state, fallback="open")
    job.started_at = _now()
    job.attempt = int(job.attempt or 0) + 1
    job.next_retry_at = None
    session.add(job)
    await session.flush()
    await _record_job_event(session, job=job, action="processing_started", meta={"attempt": int(job.attempt or 0)})

    queued_ids: list[UUID] = []
    asset: Asset | None = None
    try:
        asset = await _load_asset(session, job)
        handler = pipeline_steps.HANDLERS[job.job_type]
        with pipeline_context(job.job_type.value):
            result = await handler(session, asset, job, job_payload(job))
        if result.outcome != StepOutcome.halted and processing_failure.clear_failure(asset, job.job_type.value):
            session.add(asset)
        queued_ids = await _enqueue_next(session, job, result)
        job.status = PipelineJobStatus.completed
        job.progress_pct = 100
        job.completed_at = _now()
        job.next_retry_at = None
        job.dead_lettered_at = None
        job.last_error_at = None
        job.triage_state = "resolved"
        job.error_code = None
        job.error_message = None
        await _record_job_event(
            session,
            job=job,
            action="completed",
            note=result.note if result.outcome == StepOutcome.completed else result.outcome.value,
            meta={
                "attempt": int(job.attempt or 0),
                "job_type": job.job_type.value,
                "outcome": result.outcome.value,
                "follow_up": [item.value for item in result.follow_up],
            },
        )
        metrics.record_job_completed(job.job_type.value)
        if result.outcome == StepOutcome.halted:
            logger.warning(
                "pipeline_chain_halted",
                extra={"job_id": str(job.id), "job_type": job.job_type.value, "reason": result.note},
            )
    except asyncio.CancelledError:
        raise
    except JobDeferred as deferred:
        if not await _defer(session, job, deferred):
            await _fail(session, job, asset, RuntimeError(f"Job deferred more than {MAX_DEFERRALS} times"))
    except Exception as exc:
        if isinstance(exc, SQLAlchemyError):
            attempt = int(job.attempt or 0)
            await session.rollback()
            await session.refresh(job)
            job.attempt = attempt
            if asset is not None:
                await session.refresh(asset)
        await _fail(session, job, asset, exc)
    session.add(job)
    await session.commit()
    await session.refresh(job)
    for job_id in queued_ids:
        await _maybe_queue_job(job_id)
    return job


async def enqueue_due_retries(session: AsyncSession, *, limit: int = 50) -> list[UUID]:
    now = _now()
    stmt = (
        select(PipelineJob)
        .where(
            PipelineJob.status.in_((PipelineJobStatus.failed, PipelineJobStatus.deferred)),
            PipelineJob.next_retry_at.is_not(None),
            PipelineJob.next_retry_at <= now,
            PipelineJob.attempt < PipelineJob.max_attempts,
        )
        .order_by(PipelineJob.next_retry_at.asc(), PipelineJob.created_at.asc())
        .limit(max(1, min(int(limit or 50), 500)))
    )
    rows = (await session.execute(stmt)).scalars().all()
    queued_ids: list[UUID] = []
    for job in rows:
        previous = job.status.value
        job.status = PipelineJobStatus.queued
        job.progress_pct = 0
        job.started_at = None
        job.completed_at = None
        job.next_retry_at = None
        job.triage_state = "retrying"
        session.add(job)
        await _record_job_event(
            session,
            job=job,
            action="retry_enqueued",
            meta={
                "attempt": int(job.attempt or 0),
                "max_attempts": int(job.max_attempts or DEFAULT_MAX_ATTEMPTS),
                "from_status": previous,
            },
        )
        queued_ids.append(job.id)
    await session.commit()
    for job_id in queued_ids:
        await _maybe_queue_job(job_id)
    return queued_ids


def _reset_for_retry(job: PipelineJob) -> None:
    job.status = PipelineJobStatus.queued
    job.progress_pct = 0
    job.error_code = None
    job.error_message = None
    job.next_retry_at = None
    job.started_at = None
    job.completed_at = None
    job.dead_lettered_at = None
    if job.triage_state in {"open", "ignored", "resolved"}:
        job.triage_state = "retrying"


async def manual_retry_job(
    session: AsyncSession,
    *,
    job: PipelineJob,
    actor_operator_id: UUID | None = None,
) -> PipelineJob:
    if job.status == PipelineJobStatus.processing:
        raise ValueError("Job is currently processing")
    if job.status == PipelineJobStatus.dead_letter or int(job.attempt or 0) >= int(job.max_attempts or 1):
        # A manual retry grants a fresh attempt budget.
        job.attempt = 0
    _reset_for_retry(job)
    session.add(job)
    await _record_job_event(
        session,
        job=job,
        actor_operator_id=actor_operator_id,
        action="manual_retry",
        meta={"attempt": int(job.attempt or 0), "max_attempts": int(job.max_attempts or DEFAULT_MAX_ATTEMPTS)},
    )
    await session.commit()
    await _maybe_queue_job(job.id)
    await session.refresh(job)
    return job


async def bulk_retry_jobs(
    session: AsyncSession,
    *,
    job_ids: list[UUID],
    actor_operator_id: UUID | None = None,
) -> list[PipelineJob]:
    if not job_ids:
        return []
    rows = (await session.execute(select(PipelineJob).where(PipelineJob.id.in_(job_ids)))).scalars().all()
    retried: list[PipelineJob] = []
    for job in rows:
        if job.status in (PipelineJobStatus.processing, PipelineJobStatus.completed):
            continue
        if job.status == PipelineJobStatus.dead_letter:
            job.attempt = 0
        elif int(job.attempt or 0) >= int(job.max_attempts or DEFAULT_MAX_ATTEMPTS):
            continue
        _reset_for_retry(job)
        session.add(job)
        await _record_job_event(
            session,
            job=job,
            actor_operator_id=actor_operator_id,
            action="bulk_retry",
            meta={"attempt": int(job.attempt or 0), "max_attempts": int(job.max_attempts or DEFAULT_MAX_ATTEMPTS)},
        )
        retried.append(job)
    await session.commit()
    for row in retried:
        await _maybe_queue_job(row.id)
    for row in retried:
        await session.refresh(row)
    return retried


async def update_job_triage(
    session: AsyncSession,
    *,
    job: PipelineJob,
    actor_operator_id: UUID | None,
    triage_state: str | None = None,
    assigned_to_operator_id: UUID | None = None,
    clear_assignee: bool = False,
    sla_due_at: datetime | None = None,
    clear_sla_due_at: bool = False,
    incident_url: str | None = None,
    clear_incident_url: bool = False,
    note: str | None = None,
) -> PipelineJob:
    meta: dict[str, Any] = {}
    if triage_state:
        current_triage = _coerce_triage_state(job.triage_state, fallback="open")
        job.triage_state = _coerce_triage_state(triage_state, fallback=current_triage)
        meta["triage_state"] = job.triage_state
    if clear_assignee:
        job.assigned_to_operator_id = None
        meta["assigned_to_operator_id"] = None
    elif assigned_to_operator_id is not None:
        job.assigned_to_operator_id = assigned_to_operator_id
        meta["assigned_to_operator_id"] = str(assigned_to_operator_id)
    if clear_sla_due_at:
        job.sla_due_at = None
        meta["sla_due_at"] = None
    elif sla_due_at is not None:
        job.sla_due_at = sla_due_at
        meta["sla_due_at"] = sla_due_at.isoformat()
    if clear_incident_url:
        job.incident_url = None
        meta["incident_url"] = None
    elif incident_url is not None:
        cleaned = (incident_url or "").strip()
        job.incident_url = cleaned or None
        meta["incident_url"] = job.incident_url

    session.add(job)
    await _record_job_event(
        session,
        job=job,
        actor_operator_id=actor_operator_id,
        action="triage_updated",
        note=note,
        meta=meta,
    )
    await session.commit()
    await session.refresh(job)
    return job


async def list_jobs(
    session: AsyncSession, filters: PipelineJobListFilters
) -> tuple[list[PipelineJob], dict[str, int]]:
    clauses: list[ColumnElement[bool]] = []
    if filters.status:
        clauses.append(PipelineJob.status == PipelineJobStatus(filters.status))
    if filters.job_type:
        clauses.append(PipelineJob.job_type == PipelineJobType(filters.job_type))
    if filters.asset_id:
        clauses.append(PipelineJob.asset_id == filters.asset_id)
    if filters.created_from:
        clauses.append(PipelineJob.created_at >= filters.created_from)
    if filters.created_to:
        clauses.append(PipelineJob.created_at <= filters.created_to)
    if filters.triage_state:
        clauses.append(PipelineJob.triage_state == _coerce_triage_state(filters.triage_state, fallback="open"))
    if filters.assigned_to_operator_id:
        clauses.append(PipelineJob.assigned_to_operator_id == filters.assigned_to_operator_id)
    if filters.dead_letter_only:
        clauses.append(PipelineJob.status == PipelineJobStatus.dead_letter)
    if filters.sla_breached:
        clauses.append(PipelineJob.sla_due_at.is_not(None))
        clauses.append(PipelineJob.sla_due_at < _now())
        clauses.append(PipelineJob.triage_state != "resolved")

    stmt = select(PipelineJob)
    count_stmt = select(func.count()).select_from(PipelineJob)
    if clauses:
        stmt = stmt.where(and_(*clauses))
        count_stmt = count_stmt.where(and_(*clauses))

    stmt = (
        stmt.order_by(PipelineJob.created_at.desc(), PipelineJob.id.desc())
        .offset((filters.page - 1) * filters.limit)
        .limit(filters.limit)
    )
    total_items = int((await session.scalar(count_stmt)) or 0)
    total_pages = max(1, (total_items + filters.limit - 1) // filters.limit) if total_items else 1
    rows = (await session.execute(stmt)).scalars().all()
    return list(rows), {"total_items": total_items, "total_pages": total_pages, "page": filters.page, "limit": filters.limit}


async def jobs_for_asset(session: AsyncSession, asset_id: UUID, *, limit: int = 20) -> list[PipelineJob]:
    stmt = (
        select(PipelineJob)
        .where(PipelineJob.asset_id == asset_id)
        .order_by(PipelineJob.created_at.desc(), PipelineJob.id.desc())
        .limit(max(1, min(int(limit or 20), 200)))
    )
    return list((await session.execute(stmt)).scalars().all())


async def has_active_job(session: AsyncSession, asset_id: UUID) -> bool:
    row = await session.scalar(
        select(PipelineJob.id)
        .where(
            PipelineJob.asset_id == asset_id,
            PipelineJob.status.in_((PipelineJobStatus.queued, PipelineJobStatus.processing, PipelineJobStatus.deferred)),
        )
        .limit(1)
    )
    return row is not None


async def list_job_events(session: AsyncSession, *, job_id: UUID, limit: int = 200) -> list[PipelineJobEvent]:
    stmt = (
        select(PipelineJobEvent)
        .where(PipelineJobEvent.job_id == job_id)
        .order_by(PipelineJobEvent.created_at.desc(), PipelineJobEvent.id.desc())
        .limit(max(1, min(int(limit or 200), 500)))
    )
    return list((await session.execute(stmt)).scalars().all())


async def get_job_or_404(session: AsyncSession, job_id: UUID) -> PipelineJob:
    row = await session.get(PipelineJob, job_id)
    if row is None:
        raise ValueError("Job not found")
    return row


async def _count(session: AsyncSession, *clauses: ColumnElement[bool]) -> int:
    return int((await session.scalar(select(func.count()).select_from(PipelineJob).where(*clauses))) or 0)


async def _read_workers(now: datetime) -> tuple[int, list[TelemetryWorkerRead]]:
    redis = get_redis()
    if redis is None:
        return 0, []
    queue_depth = 0
    workers: list[TelemetryWorkerRead] = []
    try:
        queue_depth = int(await await_if_needed(redis.llen(QUEUE_KEY)) or 0)
    except Exception:
        logger.warning("pipeline_queue_depth_unavailable", exc_info=True)

    try:
        keys = await await_if_needed(redis.keys(f"{HEARTBEAT_PREFIX}:*"))
        for key in keys or []:
            raw = await await_if_needed(redis.get(str(key)))
            if not raw:
                continue
            payload = json_loads(raw)
            try:
                last_seen = as_aware(datetime.fromisoformat(str(payload.get("last_seen_at"))))
            except ValueError:
                continue
            if last_seen is None:
                continue
            workers.append(
                TelemetryWorkerRead(
                    worker_id=str(payload.get("worker_id") or str(key).split(":")[-1]),
                    hostname=str(payload.get("hostname") or "") or None,
                    pid=int(payload["pid"]) if str(payload.get("pid") or "").isdigit() else None,
                    app_version=str(payload.get("app_version") or "") or None,
                    last_seen_at=last_seen,
                    lag_seconds=max(0, int((now - last_seen).total_seconds())),
                )
            )
    except Exception:
        logger.warning("pipeline_worker_heartbeats_unavailable", exc_info=True)
        workers = []
    workers.sort(key=lambda row: row.last_seen_at, reverse=True)
    return queue_depth, workers


async def get_telemetry(session: AsyncSession) -> PipelineTelemetryResponse:
    now = _now()
    queue_depth, workers = await _read_workers(now)

    stale_seconds = max(60, int(getattr(settings, "pipeline_processing_stale_seconds", 600) or 600))
    stale_cutoff = now - timedelta(seconds=stale_seconds)
    stale_processing_count = await _count(
        session, PipelineJob.status == PipelineJobStatus.processing, PipelineJob.started_at < stale_cutoff
    )
    dead_letter_count = await _count(session, PipelineJob.status == PipelineJobStatus.dead_letter)
    retry_scheduled_count = await _count(
        session, PipelineJob.status == PipelineJobStatus.failed, PipelineJob.next_retry_at.is_not(None)
    )
    deferred_count = await _count(session, PipelineJob.status == PipelineJobStatus.deferred)
    sla_breached_count = await _count(
        session,
        PipelineJob.sla_due_at.is_not(None),
        PipelineJob.sla_due_at < now,
        PipelineJob.triage_state != "resolved",
    )

    oldest_queued_at = as_aware(
        await session.scalar(select(func.min(PipelineJob.created_at)).where(PipelineJob.status == PipelineJobStatus.queued))
    )
    oldest_queued_age_seconds: int | None = None
    if oldest_queued_at:
        oldest_queued_age_seconds = max(0, int((now - oldest_queued_at).total_seconds()))

    status_rows = (await session.execute(select(PipelineJob.status, func.count()).group_by(PipelineJob.status))).all()
    status_counts = {row[0].value if hasattr(row[0], "value") else str(row[0]): int(row[1] or 0) for row in status_rows}
    type_rows = (await session.execute(select(PipelineJob.job_type, func.count()).group_by(PipelineJob.job_type))).all()
    type_counts = {row[0].value if hasattr(row[0], "value") else str(row[0]): int(row[1] or 0) for row in type_rows}

    completed_rows = (
        await session.execute(
            select(PipelineJob.started_at, PipelineJob.completed_at)
            .where(
                PipelineJob.status == PipelineJobStatus.completed,
                PipelineJob.started_at.is_not(None),
                PipelineJob.completed_at.is_not(None),
                PipelineJob.completed_at >= now - timedelta(hours=24),
            )
            .order_by(PipelineJob.completed_at.desc())
            .limit(200)
        )
    ).all()
    processing_seconds = [
        max(0, int((as_aware(completed_at) - as_aware(started_at)).total_seconds()))
        for started_at, completed_at in completed_rows
        if started_at and completed_at
    ]
    avg_processing_seconds = int(sum(processing_seconds) / len(processing_seconds)) if processing_seconds else None

    stuck_assets = await find_stuck_assets(session, limit=500, now=now)

    return PipelineTelemetryResponse(
        queue_depth=queue_depth,
        online_workers=len(workers),
        workers=workers,
        stale_processing_count=stale_processing_count,
        dead_letter_count=dead_letter_count,
        retry_scheduled_count=retry_scheduled_count,
        deferred_count=deferred_count,
        sla_breached_count=sla_breached_count,
        stuck_asset_count=len(stuck_assets),
        oldest_queued_age_seconds=oldest_queued_age_seconds,
        avg_processing_seconds=avg_processing_seconds,
        status_counts=status_counts,
        type_counts=type_counts,
    )


def job_to_read(job: PipelineJob) -> PipelineJobRead:
    return PipelineJobRead(
        id=job.id,
        asset_id=job.asset_id,
        job_type=job.job_type.value,
        status=job.status.value,
        progress_pct=job.progress_pct,
        attempt=job.attempt,
        max_attempts=int(job.max_attempts or DEFAULT_MAX_ATTEMPTS),
        chain=[item.value for item in job_chain(job)],
        next_retry_at=job.next_retry_at,
        last_error_at=job.last_error_at,
        dead_lettered_at=job.dead_lettered_at,
        triage_state=_coerce_triage_state(job.triage_state, fallback="open"),
        assigned_to_operator_id=job.assigned_to_operator_id,
        sla_due_at=job.sla_due_at,
        incident_url=job.incident_url,
        error_code=job.error_code,
        error_message=job.error_message,
        created_at=job.created_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
    )


def job_event_to_read(event: PipelineJobEvent) -> PipelineJobEventRead:
    return PipelineJobEventRead(
        id=event.id,
        job_id=event.job_id,
        actor_operator_id=event.actor_operator_id,
        action=event.action,
        note=event.note,
        meta_json=event.meta_json,
        created_at=event.created_at,
    )
