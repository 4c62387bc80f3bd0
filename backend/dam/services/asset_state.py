"""Analysis status transition table and the guarded helpers every pipeline job goes through."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from dam.core.pipeline_context import PipelineTransitionError
from dam.models.asset import AnalysisStatus, Asset
from dam.models.pipeline import PipelineJobType

logger = logging.getLogger(__name__)

_NON_TERMINAL = (
    AnalysisStatus.uploading,
    AnalysisStatus.generating_thumbnails,
    AnalysisStatus.extracting_metadata,
    AnalysisStatus.generating_embedding,
    AnalysisStatus.scoring,
)

ANALYSIS_TRANSITIONS: dict[AnalysisStatus, frozenset[AnalysisStatus]] = {
    AnalysisStatus.uploading: frozenset(
        {AnalysisStatus.generating_thumbnails, AnalysisStatus.extracting_metadata, AnalysisStatus.generating_embedding}
    ),
    AnalysisStatus.generating_thumbnails: frozenset(
        {AnalysisStatus.extracting_metadata, AnalysisStatus.generating_embedding}
    ),
    AnalysisStatus.extracting_metadata: frozenset({AnalysisStatus.generating_embedding}),
    AnalysisStatus.generating_embedding: frozenset({AnalysisStatus.scoring, AnalysisStatus.complete}),
    AnalysisStatus.scoring: frozenset({AnalysisStatus.complete}),
    AnalysisStatus.complete: frozenset(),
    AnalysisStatus.promotion_failed: frozenset({AnalysisStatus.complete, *_NON_TERMINAL}),
}
# Promotion runs after finalize, so any stage may end in promotion_failed.
for _status in _NON_TERMINAL + (AnalysisStatus.complete,):
    ANALYSIS_TRANSITIONS[_status] = ANALYSIS_TRANSITIONS[_status] | {AnalysisStatus.promotion_failed}

TERMINAL_ANALYSIS_STATUSES = frozenset({AnalysisStatus.complete})

# Job that moves an asset out of each stage.
STAGE_JOB: dict[AnalysisStatus, PipelineJobType] = {
    AnalysisStatus.uploading: PipelineJobType.process_asset,
    AnalysisStatus.generating_thumbnails: PipelineJobType.generate_thumbnails,
    AnalysisStatus.extracting_metadata: PipelineJobType.extract_metadata,
    AnalysisStatus.generating_embedding: PipelineJobType.generate_embedding,
    AnalysisStatus.scoring: PipelineJobType.score_compliance,
    AnalysisStatus.promotion_failed: PipelineJobType.promote_asset,
}


def _coerce(value: AnalysisStatus | str) -> AnalysisStatus:
    return value if isinstance(value, AnalysisStatus) else AnalysisStatus(str(value))


def can_transition(current: AnalysisStatus | str, target: AnalysisStatus | str) -> bool:
    return _coerce(target) in ANALYSIS_TRANSITIONS.get(_coerce(current), frozenset())


def transition(
    asset: Asset,
    target: AnalysisStatus,
    *,
    expected: AnalysisStatus | Iterable[AnalysisStatus] | None = None,
) -> AnalysisStatus:
    """Move the asset along an edge of the table. Raises PipelineTransitionError otherwise."""
    current = _coerce(asset.analysis_status)
    if expected is not None:
        allowed = {expected} if isinstance(expected, AnalysisStatus) else set(expected)
        if current not in allowed:
            raise PipelineTransitionError(
                f"Asset {asset.id} is {current.value}, expected {sorted(s.value for s in allowed)}"
            )
    if current == target:
        return current
    if not can_transition(current, target):
        raise PipelineTransitionError(f"Illegal analysis transition {current.value} -> {target.value}")
    asset.analysis_status = target
    return current


def advance(asset: Asset, *, expected: AnalysisStatus, target: AnalysisStatus, job: str) -> bool:
    """Guard used by jobs: a job that finds the asset in an unexpected stage logs and leaves it untouched."""
    current = _coerce(asset.analysis_status)
    if current != expected:
        logger.warning(
            "pipeline_unexpected_analysis_status",
            extra={
                "asset_id": str(asset.id),
                "job": job,
                "analysis_status": current.value,
                "expected": expected.value,
            },
        )
        return False
    transition(asset, target, expected=expected)
    return True


def is_expected(asset: Asset, expected: AnalysisStatus, *, job: str) -> bool:
    current = _coerce(asset.analysis_status)
    if current == expected:
        return True
    logger.warning(
        "pipeline_unexpected_analysis_status",
        extra={"asset_id": str(asset.id), "job": job, "analysis_status": current.value, "expected": expected.value},
    )
    return False
