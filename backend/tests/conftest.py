import asyncio
import os
from collections.abc import AsyncIterator, Awaitable, Callable, Generator
from io import BytesIO
from pathlib import Path
from typing import Any

import pytest
from PIL import Image
from sqlalchemy.ext import asyncio as sa_asyncio

# Keep pytest output high-signal by disabling outbound Sentry capture in tests.
os.environ["SENTRY_DSN"] = ""
# Tests run against in-memory sqlite with Redis unset (degraded queue mode) and no background watchdog.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["REDIS_URL"] = ""
os.environ["WATCHDOG_ENABLED"] = "false"

from dam.core import metrics  # noqa: E402
from dam.core.config import settings  # noqa: E402
from dam.db.base import Base  # noqa: E402
from dam.models.asset import AnalysisStatus, Asset, AssetStatus, ThumbnailStatus  # noqa: E402
from dam.models.tenant import Brand, Tenant  # noqa: E402
from dam.services import storage  # noqa: E402


_TRACKED_ENGINES: list[sa_asyncio.AsyncEngine] = []
_ORIGINAL_CREATE_ASYNC_ENGINE = sa_asyncio.create_async_engine


def _tracked_create_async_engine(*args, **kwargs):  # type: ignore[no-untyped-def]
    engine = _ORIGINAL_CREATE_ASYNC_ENGINE(*args, **kwargs)
    _TRACKED_ENGINES.append(engine)
    return engine


sa_asyncio.create_async_engine = _tracked_create_async_engine  # type: ignore[assignment]


@pytest.fixture(scope="module")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _dispose_tracked_async_engines() -> Generator[None, None, None]:
    start_index = len(_TRACKED_ENGINES)
    yield
    pending = _TRACKED_ENGINES[start_index:]
    if not pending:
        return

    async def _dispose_all() -> None:
        for engine in pending:
            await engine.dispose()

    try:
        asyncio.run(_dispose_all())
    except RuntimeError:
        loop = asyncio.new_event_loop()
        try:
            loop.run_until_complete(_dispose_all())
        finally:
            loop.close()

    del _TRACKED_ENGINES[start_index:]


@pytest.fixture(autouse=True)
def _reset_metrics() -> Generator[None, None, None]:
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture(autouse=True)
def media_root(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    root = tmp_path / "media"
    monkeypatch.setattr(settings, "media_root", str(root))
    return root


@pytest.fixture
async def session_factory() -> AsyncIterator[sa_asyncio.async_sessionmaker[sa_asyncio.AsyncSession]]:
    engine = sa_asyncio.create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield sa_asyncio.async_sessionmaker(engine, expire_on_commit=False, autoflush=False)
    await engine.dispose()


def jpeg_bytes(size: tuple[int, int] = (64, 48), color: tuple[int, int, int] = (200, 30, 30)) -> bytes:
    buf = BytesIO()
    Image.new("RGB", size, color=color).save(buf, format="JPEG")
    return buf.getvalue()


@pytest.fixture
def jpeg() -> Callable[..., bytes]:
    return jpeg_bytes


AssetFactory = Callable[..., Awaitable[Asset]]


@pytest.fixture
def make_asset() -> AssetFactory:
    """Insert a tenant, optional brand and asset, writing the file into temp storage when content is given."""

    async def _make(
        session: sa_asyncio.AsyncSession,
        *,
        filename: str = "photo.jpg",
        mime_type: str | None = "image/jpeg",
        content: bytes | None = None,
        compliance_rules: dict[str, Any] | None = None,
        analysis_status: AnalysisStatus = AnalysisStatus.uploading,
        thumbnail_status: ThumbnailStatus | None = ThumbnailStatus.pending,
        status: AssetStatus = AssetStatus.visible,
        meta: dict[str, Any] | None = None,
        **fields: Any,
    ) -> Asset:
        tenant = Tenant(name="Acme", slug=f"acme-{os.urandom(4).hex()}")
        session.add(tenant)
        await session.flush()
        brand_id = None
        if compliance_rules is not None:
            brand = Brand(tenant_id=tenant.id, name="Acme Brand", slug="acme", compliance_rules=compliance_rules)
            session.add(brand)
            await session.flush()
            brand_id = brand.id
        asset = Asset(
            tenant_id=tenant.id,
            brand_id=brand_id,
            title=fields.pop("title", filename),
            original_filename=filename,
            mime_type=mime_type,
            status=status,
            analysis_status=analysis_status,
            thumbnail_status=thumbnail_status,
            meta=dict(meta or {}),
            **fields,
        )
        session.add(asset)
        await session.flush()
        if content is not None:
            asset.storage_path = storage.temp_key(asset.id, filename)
            storage.write_bytes(asset.storage_path, content)
            asset.size_bytes = len(content)
        await session.commit()
        return asset

    return _make
