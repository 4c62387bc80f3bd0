from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from dam.models.asset import Asset, AssetEvent


def record_asset_event(
    session: AsyncSession,
    asset: Asset,
    event_type: str,
    payload: dict[str, Any] | None = None,
    *,
    actor_id: UUID | None = None,
) -> AssetEvent:
    event = AssetEvent(
        asset_id=asset.id,
        tenant_id=asset.tenant_id,
        brand_id=asset.brand_id,
        actor_id=actor_id,
        event_type=(event_type or "").strip()[:80] or "asset.event",
        payload=payload or None,
    )
    session.add(event)
    return event


async def list_asset_events(session: AsyncSession, asset_id: UUID, *, limit: int = 50) -> list[AssetEvent]:
    stmt = (
        select(AssetEvent)
        .where(AssetEvent.asset_id == asset_id)
        .order_by(AssetEvent.created_at.desc(), AssetEvent.id.desc())
        .limit(max(1, min(int(limit or 50), 500)))
    )
    return list((await session.execute(stmt)).scalars().all())
