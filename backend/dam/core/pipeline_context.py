from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

_in_pipeline_job: ContextVar[str | None] = ContextVar("in_pipeline_job", default=None)
_visibility_change_allowed: ContextVar[bool] = ContextVar("visibility_change_allowed", default=False)


class PipelineTransitionError(RuntimeError):
    """Raised when an analysis status change is not an edge of the transition table."""


class VisibilityMutationError(RuntimeError):
    """Raised when pipeline job code tries to change an asset's visibility status."""


@contextmanager
def pipeline_context(job_type: str) -> Iterator[None]:
    token = _in_pipeline_job.set(job_type)
    try:
        yield
    finally:
        _in_pipeline_job.reset(token)


@contextmanager
def allow_visibility_change() -> Iterator[None]:
    token = _visibility_change_allowed.set(True)
    try:
        yield
    finally:
        _visibility_change_allowed.reset(token)


def current_pipeline_job() -> str | None:
    return _in_pipeline_job.get()


def visibility_change_allowed() -> bool:
    return _in_pipeline_job.get() is None or _visibility_change_allowed.get()
