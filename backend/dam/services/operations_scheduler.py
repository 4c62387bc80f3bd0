from __future__ import annotations

import asyncio
import logging
from contextlib import suppress

from fastapi import FastAPI

from dam.core.config import settings
from dam.db.session import SessionLocal
from dam.services import leader_lock, operations

logger = logging.getLogger(__name__)


def _enabled() -> bool:
    return bool(getattr(settings, "watchdog_enabled", True))


async def _run_once() -> dict:
    if not _enabled():
        return {}
    async with SessionLocal() as session:
        return await operations.run_watchdog_cycle(session)


async def _loop(stop: asyncio.Event) -> None:
    interval = max(30, int(getattr(settings, "watchdog_interval_seconds", 300) or 300))
    while not stop.is_set():
        try:
            async with leader_lock.leadership(leader_lock.OpsLoop.watchdog) as leader:
                summary = await _run_once() if leader else {}
            if summary:
                logger.info("watchdog_cycle_completed", extra=summary)
        except asyncio.CancelledError:
            break
        except Exception as exc:
            logger.warning("watchdog_cycle_failed", extra={"error": str(exc)})

        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(stop.wait(), timeout=interval)


def start(app: FastAPI) -> None:
    if not _enabled():
        return
    if getattr(app.state, "operations_scheduler_task", None) is not None:
        return

    stop = asyncio.Event()
    task = asyncio.create_task(_loop(stop))
    app.state.operations_scheduler_stop = stop
    app.state.operations_scheduler_task = task


async def stop(app: FastAPI) -> None:
    stop_event = getattr(app.state, "operations_scheduler_stop", None)
    task = getattr(app.state, "operations_scheduler_task", None)
    if stop_event:
        stop_event.set()
    if task:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    if getattr(app.state, "operations_scheduler_stop", None) is not None:
        delattr(app.state, "operations_scheduler_stop")
    if getattr(app.state, "operations_scheduler_task", None) is not None:
        delattr(app.state, "operations_scheduler_task")
