from __future__ import annotations

from datetime import timedelta
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from dam.db.base import as_aware, utcnow
from dam.models.asset import Asset
from dam.models.incident import IncidentSourceType, SystemIncident, Ticket, TicketStatus
from dam.services.incidents import TICKET_SOURCE


def _percent(part: int, whole: int) -> float | None:
    if whole <= 0:
        return None
    return round(100.0 * part / whole, 2)


async def compute(session: AsyncSession, *, window_days: int = 7) -> dict[str, Any]:
    """Operational reliability over the trailing window."""
    now = utcnow()
    window_days = max(1, int(window_days))
    window_start = now - timedelta(days=window_days)

    live_assets = int(
        (await session.scalar(select(func.count()).select_from(Asset).where(Asset.deleted_at.is_(None)))) or 0
    )
    assets_with_incident = int(
        (
            await session.scalar(
                select(func.count(func.distinct(SystemIncident.source_id))).where(
                    SystemIncident.resolved_at.is_(None),
                    SystemIncident.source_type == IncidentSourceType.asset,
                    SystemIncident.source_id.in_(select(Asset.id).where(Asset.deleted_at.is_(None))),
                )
            )
        )
        or 0
    )
    healthy = max(0, live_assets - assets_with_incident)

    resolved_rows = (
        await session.execute(
            select(SystemIncident.detected_at, SystemIncident.resolved_at, SystemIncident.auto_resolved).where(
                SystemIncident.resolved_at.is_not(None),
                SystemIncident.resolved_at >= window_start,
            )
        )
    ).all()
    durations = [
        max(0.0, (as_aware(resolved_at) - as_aware(detected_at)).total_seconds() / 60.0)
        for detected_at, resolved_at, _auto in resolved_rows
        if detected_at and resolved_at
    ]
    auto_resolved = sum(1 for _d, _r, auto in resolved_rows if auto)
    resolved_total = len(resolved_rows)

    unresolved_incidents = int(
        (await session.scalar(select(func.count()).select_from(SystemIncident).where(SystemIncident.resolved_at.is_(None))))
        or 0
    )
    opened_in_window = int(
        (
            await session.scalar(
                select(func.count()).select_from(SystemIncident).where(SystemIncident.detected_at >= window_start)
            )
        )
        or 0
    )

    open_tickets = (await session.execute(select(Ticket.meta).where(Ticket.status == TicketStatus.open))).scalars().all()
    operational_open = sum(1 for meta in open_tickets if (meta or {}).get("source") == TICKET_SOURCE)

    return {
        "window_days": window_days,
        "generated_at": now.isoformat(),
        "integrity": {
            "rate_percent": _percent(healthy, live_assets) if live_assets else 100.0,
            "live_assets": live_assets,
            "assets_with_open_incident": assets_with_incident,
        },
        "mttr": {
            "mttr_minutes_avg": round(sum(durations) / len(durations), 2) if durations else None,
            "resolved_count": resolved_total,
        },
        "recovery_success": {
            "recovery_rate_percent": _percent(auto_resolved, resolved_total),
            "auto_resolved_count": auto_resolved,
            "resolved_count": resolved_total,
        },
        "ticket_escalation": {
            "unresolved_count": operational_open,
        },
        "incidents": {
            "unresolved_count": unresolved_incidents,
            "opened_in_window": opened_in_window,
        },
    }
