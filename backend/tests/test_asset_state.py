import logging

import pytest

from dam.core.pipeline_context import (
    PipelineTransitionError,
    VisibilityMutationError,
    allow_visibility_change,
    pipeline_context,
)
from dam.models.asset import AnalysisStatus, Asset, AssetStatus
from dam.models.pipeline import PipelineJobType
from dam.services import asset_state


def _asset(analysis_status: AnalysisStatus = AnalysisStatus.uploading) -> Asset:
    return Asset(status=AssetStatus.visible, analysis_status=analysis_status, meta={})


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (AnalysisStatus.uploading, AnalysisStatus.generating_thumbnails),
        (AnalysisStatus.uploading, AnalysisStatus.extracting_metadata),
        (AnalysisStatus.generating_thumbnails, AnalysisStatus.extracting_metadata),
        (AnalysisStatus.extracting_metadata, AnalysisStatus.generating_embedding),
        (AnalysisStatus.generating_embedding, AnalysisStatus.scoring),
        (AnalysisStatus.generating_embedding, AnalysisStatus.complete),
        (AnalysisStatus.scoring, AnalysisStatus.complete),
        (AnalysisStatus.complete, AnalysisStatus.promotion_failed),
        (AnalysisStatus.promotion_failed, AnalysisStatus.complete),
    ],
)
def test_allowed_transitions(current: AnalysisStatus, target: AnalysisStatus) -> None:
    assert asset_state.can_transition(current, target)
    asset = _asset(current)
    assert asset_state.transition(asset, target) == current
    assert asset.analysis_status == target


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (AnalysisStatus.complete, AnalysisStatus.uploading),
        (AnalysisStatus.scoring, AnalysisStatus.extracting_metadata),
        (AnalysisStatus.extracting_metadata, AnalysisStatus.complete),
        (AnalysisStatus.generating_thumbnails, AnalysisStatus.uploading),
    ],
)
def test_backward_and_skipping_transitions_are_rejected(current: AnalysisStatus, target: AnalysisStatus) -> None:
    asset = _asset(current)
    with pytest.raises(PipelineTransitionError):
        asset_state.transition(asset, target)
    assert asset.analysis_status == current


def test_transition_to_same_status_is_a_no_op() -> None:
    asset = _asset(AnalysisStatus.scoring)
    assert asset_state.transition(asset, AnalysisStatus.scoring) == AnalysisStatus.scoring
    assert asset.analysis_status == AnalysisStatus.scoring


def test_transition_checks_expected_stage() -> None:
    asset = _asset(AnalysisStatus.scoring)
    with pytest.raises(PipelineTransitionError, match="expected"):
        asset_state.transition(asset, AnalysisStatus.complete, expected=AnalysisStatus.generating_embedding)


def test_advance_leaves_unexpected_stage_untouched(caplog: pytest.LogCaptureFixture) -> None:
    asset = _asset(AnalysisStatus.scoring)
    with caplog.at_level(logging.WARNING):
        moved = asset_state.advance(
            asset, expected=AnalysisStatus.uploading, target=AnalysisStatus.generating_thumbnails, job="process_asset"
        )
    assert moved is False
    assert asset.analysis_status == AnalysisStatus.scoring
    assert "pipeline_unexpected_analysis_status" in caplog.text


def test_stage_job_covers_every_non_terminal_stage() -> None:
    for status in AnalysisStatus:
        if status in asset_state.TERMINAL_ANALYSIS_STATUSES:
            assert status not in asset_state.STAGE_JOB
        else:
            assert isinstance(asset_state.STAGE_JOB[status], PipelineJobType)


def test_visibility_is_free_outside_pipeline_jobs() -> None:
    asset = _asset()
    asset.status = AssetStatus.hidden
    asset.status = AssetStatus.visible
    assert asset.status == AssetStatus.visible


def test_pipeline_job_cannot_change_visibility() -> None:
    asset = _asset()
    with pipeline_context(PipelineJobType.ai_tagging.value):
        with pytest.raises(VisibilityMutationError, match="ai_tagging"):
            asset.status = AssetStatus.hidden
    assert asset.status == AssetStatus.visible


def test_failure_recorder_may_change_visibility_inside_job() -> None:
    asset = _asset()
    with pipeline_context(PipelineJobType.ai_tagging.value):
        with allow_visibility_change():
            asset.status = AssetStatus.failed
    assert asset.status == AssetStatus.failed
