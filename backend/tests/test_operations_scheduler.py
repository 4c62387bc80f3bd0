import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from dam.core.config import settings
from dam.services import operations_scheduler


class _SessionStub:
    async def __aenter__(self) -> "_SessionStub":
        return self

    async def __aexit__(self, *_exc: object) -> None:
        return None


@pytest.mark.anyio
async def test_run_once_is_a_no_op_when_disabled(monkeypatch: pytest.MonkeyPatch) -> None:
    cycle = AsyncMock()
    monkeypatch.setattr(settings, "watchdog_enabled", False)
    monkeypatch.setattr(operations_scheduler.operations, "run_watchdog_cycle", cycle)

    assert await operations_scheduler._run_once() == {}
    cycle.assert_not_awaited()


@pytest.mark.anyio
async def test_run_once_runs_watchdog_cycle(monkeypatch: pytest.MonkeyPatch) -> None:
    cycle = AsyncMock(return_value={"watchdog": {"stuck_assets": 0}})
    monkeypatch.setattr(settings, "watchdog_enabled", True)
    monkeypatch.setattr(operations_scheduler, "SessionLocal", _SessionStub)
    monkeypatch.setattr(operations_scheduler.operations, "run_watchdog_cycle", cycle)

    assert await operations_scheduler._run_once() == {"watchdog": {"stuck_assets": 0}}
    cycle.assert_awaited_once()


@pytest.mark.anyio
async def test_loop_survives_a_failed_cycle(monkeypatch: pytest.MonkeyPatch) -> None:
    stop = asyncio.Event()
    calls = {"count": 0}

    async def _flaky() -> dict:
        calls["count"] += 1
        stop.set()
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(operations_scheduler, "_run_once", _flaky)

    await asyncio.wait_for(operations_scheduler._loop(stop), timeout=5)

    assert calls["count"] == 1


@pytest.mark.anyio
async def test_start_and_stop_manage_background_task(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "watchdog_enabled", True)
    ran = asyncio.Event()

    async def _once() -> dict:
        ran.set()
        return {}

    monkeypatch.setattr(operations_scheduler, "_run_once", _once)
    app = SimpleNamespace(state=SimpleNamespace())

    operations_scheduler.start(app)  # type: ignore[arg-type]
    task = app.state.operations_scheduler_task
    operations_scheduler.start(app)  # type: ignore[arg-type]
    assert app.state.operations_scheduler_task is task

    await asyncio.wait_for(ran.wait(), timeout=5)
    await operations_scheduler.stop(app)  # type: ignore[arg-type]

    assert task.done()
    assert not hasattr(app.state, "operations_scheduler_task")
    assert not hasattr(app.state, "operations_scheduler_stop")


def test_start_does_nothing_when_disabled(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "watchdog_enabled", False)
    app = SimpleNamespace(state=SimpleNamespace())

    operations_scheduler.start(app)  # type: ignore[arg-type]

    assert getattr(app.state, "operations_scheduler_task", None) is None
