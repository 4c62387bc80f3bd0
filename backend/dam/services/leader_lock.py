"""Single-runner guard for the operations loops that must not run on every replica.

Each pass of the watchdog cycle and of the worker retry sweep takes a
Postgres advisory lock for its loop and releases it when the pass ends, so a
replica that dies mid-pass hands leadership to the next one on its next tick.
On sqlite (tests and local runs) every caller leads.
"""

from __future__ import annotations

import enum
import hashlib
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from dam.core.config import settings
from dam.db.session import engine

logger = logging.getLogger(__name__)

LOCK_NAMESPACE = "dam-ops"
_LOCK_ENGINE: AsyncEngine | None = None


class OpsLoop(str, enum.Enum):
    watchdog = "watchdog"
    retry_sweep = "retry_sweep"


def _is_postgres() -> bool:
    return (engine.url.get_backend_name() or "").lower() == "postgresql"


def lock_key(loop: OpsLoop) -> int:
    """Advisory lock key for a loop: first 8 bytes of sha256("dam-ops:<loop>") as a signed BIGINT."""
    digest = hashlib.sha256(f"{LOCK_NAMESPACE}:{loop.value}".encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


def _lock_engine() -> AsyncEngine:
    """One pinned connection per process; a session-level advisory lock lives on its connection."""
    global _LOCK_ENGINE
    if _LOCK_ENGINE is None:
        _LOCK_ENGINE = create_async_engine(
            settings.database_url,
            future=True,
            pool_size=1,
            max_overflow=0,
            pool_pre_ping=True,
        )
    return _LOCK_ENGINE


@asynccontextmanager
async def leadership(loop: OpsLoop) -> AsyncIterator[bool]:
    """Yield whether this process leads ``loop`` for the duration of the block."""
    if not _is_postgres():
        yield True
        return

    key = lock_key(loop)
    async with _lock_engine().connect() as conn:
        acquired = bool(await conn.scalar(text("SELECT pg_try_advisory_lock(:key)"), {"key": key}))
        if not acquired:
            logger.debug("ops_loop_follower", extra={"loop": loop.value, "lock_key": key})
        try:
            yield acquired
        finally:
            if acquired:
                await conn.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": key})
