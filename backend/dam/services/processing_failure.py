"""Single place where a pipeline failure is written onto the asset.

Jobs never flip visibility themselves. When a job is out of attempts the runner
calls :func:`record_failure`, which is the only code allowed to move an asset
to the ``failed`` visibility status.
"""

from __future__ import annotations

import logging
import re

from sqlalchemy.ext.asyncio import AsyncSession

from dam.core.config import settings
from dam.core.pipeline_context import allow_visibility_change
from dam.db.base import utcnow
from dam.models.asset import Asset, AssetStatus
from dam.models.incident import IncidentSeverity, IncidentSourceType
from dam.services import incidents
from dam.services.asset_events import record_asset_event

logger = logging.getLogger(__name__)

MAX_RETRY_ATTEMPTS = max(1, int(getattr(settings, "pipeline_retry_max_attempts", 3) or 3))
MAX_REASON_LENGTH = 200

NON_RETRYABLE_TYPES: tuple[type[BaseException], ...] = (ValueError, TypeError, KeyError)
NON_RETRYABLE_KEYWORDS = (
    "not found",
    "does not exist",
    "invalid",
    "unauthorized",
    "forbidden",
    "permission denied",
)


def is_retryable(exc: BaseException, attempts: int, *, max_attempts: int = MAX_RETRY_ATTEMPTS) -> bool:
    if int(attempts or 0) >= max(1, int(max_attempts)):
        return False
    # FileNotFoundError is an OSError, so a missing source file still retries;
    # only the message check below can rule it out.
    if isinstance(exc, NON_RETRYABLE_TYPES):
        return False
    message = str(exc).lower()
    return not any(keyword in message for keyword in NON_RETRYABLE_KEYWORDS)


def _job_display_name(job_name: str) -> str:
    return "".join(part.capitalize() for part in str(job_name or "job").split("_") if part) or "Job"


def failure_reason(job_name: str, exc: BaseException) -> str:
    message = re.sub(r"\s+", " ", str(exc) or exc.__class__.__name__).strip()
    if len(message) > MAX_REASON_LENGTH:
        message = message[: MAX_REASON_LENGTH - 3].rstrip() + "..."
    lowered = message.lower()
    suffix = ""
    if isinstance(exc, TimeoutError) or "timeout" in lowered or "timed out" in lowered:
        suffix = " (timeout)"
    elif isinstance(exc, ConnectionError) or "connection" in lowered:
        suffix = " (connection error)"
    return f"{_job_display_name(job_name)} failed: {message}{suffix}"


async def record_failure(
    session: AsyncSession,
    asset: Asset,
    job_name: str,
    exc: BaseException,
    attempts: int,
    *,
    preserve_visibility: bool = False,
) -> str:
    reason = failure_reason(job_name, exc)
    retryable = is_retryable(exc, attempts)
    asset.update_meta(
        processing_failed=True,
        failure_reason=reason,
        failed_job=job_name,
        failure_attempts=int(attempts or 0),
        failure_is_retryable=retryable,
        failed_at=utcnow().isoformat(),
    )
    if not preserve_visibility and asset.status != AssetStatus.failed:
        with allow_visibility_change():
            asset.status = AssetStatus.failed
    session.add(asset)
    record_asset_event(
        session,
        asset,
        "asset.processing.failed",
        {
            "job": job_name,
            "reason": reason,
            "attempts": int(attempts or 0),
            "retryable": retryable,
            "visibility_preserved": bool(preserve_visibility),
        },
    )
    await session.flush()
    await incidents.record_incident(
        session,
        source_type=IncidentSourceType.asset,
        source_id=asset.id,
        tenant_id=asset.tenant_id,
        severity=IncidentSeverity.error,
        title=f"{_job_display_name(job_name)} failed",
        message=reason,
        # Incidents track whether the error kind is transient, independent of the spent attempt budget.
        retryable=is_retryable(exc, 0),
        unique_signature=f"asset:{asset.id}:processing_failed:{job_name}",
        meta={"job": job_name, "analysis_status": asset.analysis_status.value},
    )
    logger.error(
        "asset_processing_failed",
        extra={
            "asset_id": str(asset.id),
            "job": job_name,
            "attempts": int(attempts or 0),
            "retryable": retryable,
            "preserve_visibility": bool(preserve_visibility),
        },
    )
    return reason


def clear_failure(asset: Asset, job_name: str) -> bool:
    """Drop the failure flags once the job that failed has succeeded. Visibility is left to reconciliation."""
    if asset.meta_flag("failed_job") != job_name:
        return False
    asset.update_meta(
        processing_failed=None,
        failure_reason=None,
        failed_job=None,
        failure_attempts=None,
        failure_is_retryable=None,
        failed_at=None,
    )
    return True
