from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any
from uuid import UUID

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.elements import ColumnElement

from dam.core import metrics
from dam.core.config import settings
from dam.db.base import utcnow
from dam.models.incident import (
    IncidentSeverity,
    IncidentSourceType,
    SystemIncident,
    Ticket,
    TicketPriority,
    TicketStatus,
)
from dam.models.pipeline import PipelineJob, PipelineJobStatus

logger = logging.getLogger(__name__)

TICKET_SOURCE = "operations_incident"
RESOLVED_TRIAGE_STATES = ("resolved", "ignored")
_SEVERITY_RANK = {
    IncidentSeverity.info: 0,
    IncidentSeverity.warning: 1,
    IncidentSeverity.error: 2,
    IncidentSeverity.critical: 3,
}
_TICKET_PRIORITY = {
    IncidentSeverity.critical: TicketPriority.P0,
    IncidentSeverity.error: TicketPriority.P1,
}


@dataclass(slots=True)
class IncidentListFilters:
    page: int = 1
    limit: int = 50
    severity: str = ""
    source_type: str = ""
    source_id: UUID | None = None
    tenant_id: UUID | None = None
    unresolved_only: bool = True


async def record_incident(
    session: AsyncSession,
    *,
    source_type: IncidentSourceType,
    source_id: UUID,
    tenant_id: UUID | None,
    severity: IncidentSeverity,
    title: str,
    message: str | None = None,
    retryable: bool = False,
    unique_signature: str | None = None,
    meta: dict[str, Any] | None = None,
) -> tuple[SystemIncident, bool]:
    """Open an incident, or bump the unresolved one carrying the same signature. Returns (incident, created)."""
    if unique_signature:
        existing = await session.scalar(
            select(SystemIncident).where(
                SystemIncident.unique_signature == unique_signature,
                SystemIncident.resolved_at.is_(None),
            )
        )
        if existing is not None:
            if _SEVERITY_RANK[severity] > _SEVERITY_RANK[existing.severity]:
                existing.severity = severity
            existing.message = message or existing.message
            existing.retryable = bool(retryable)
            existing.update_meta(
                **(meta or {}),
                occurrences=int((existing.meta or {}).get("occurrences") or 1) + 1,
                last_seen_at=utcnow().isoformat(),
            )
            session.add(existing)
            await session.flush()
            return existing, False

    incident = SystemIncident(
        source_type=source_type,
        source_id=source_id,
        tenant_id=tenant_id,
        severity=severity,
        title=(title or "").strip()[:255] or "Incident",
        message=message,
        retryable=bool(retryable),
        unique_signature=unique_signature,
        meta={"repair_attempts": 0, "occurrences": 1, **(meta or {})},
        detected_at=utcnow(),
    )
    session.add(incident)
    await session.flush()
    metrics.record_incident_opened()
    logger.warning(
        "incident_opened",
        extra={
            "incident_id": str(incident.id),
            "source_type": source_type.value,
            "source_id": str(source_id),
            "severity": severity.value,
            "signature": unique_signature,
        },
    )
    return incident, True


async def get_incident_or_404(session: AsyncSession, incident_id: UUID) -> SystemIncident:
    row = await session.get(SystemIncident, incident_id)
    if row is None:
        raise ValueError("Incident not found")
    return row


async def open_incidents_for_asset(session: AsyncSession, asset_id: UUID) -> list[SystemIncident]:
    rows = await session.execute(
        select(SystemIncident)
        .where(
            SystemIncident.resolved_at.is_(None),
            SystemIncident.source_type == IncidentSourceType.asset,
            SystemIncident.source_id == asset_id,
        )
        .order_by(SystemIncident.detected_at.desc())
    )
    return list(rows.scalars().all())


async def list_incidents(session: AsyncSession, filters: IncidentListFilters) -> tuple[list[SystemIncident], dict[str, int]]:
    clauses: list[ColumnElement[bool]] = []
    if filters.unresolved_only:
        clauses.append(SystemIncident.resolved_at.is_(None))
    if filters.severity:
        clauses.append(SystemIncident.severity == IncidentSeverity(filters.severity))
    if filters.source_type:
        clauses.append(SystemIncident.source_type == IncidentSourceType(filters.source_type))
    if filters.source_id:
        clauses.append(SystemIncident.source_id == filters.source_id)
    if filters.tenant_id:
        clauses.append(SystemIncident.tenant_id == filters.tenant_id)

    stmt = select(SystemIncident)
    count_stmt = select(func.count()).select_from(SystemIncident)
    if clauses:
        stmt = stmt.where(and_(*clauses))
        count_stmt = count_stmt.where(and_(*clauses))
    stmt = (
        stmt.order_by(SystemIncident.detected_at.desc(), SystemIncident.id.desc())
        .offset((filters.page - 1) * filters.limit)
        .limit(filters.limit)
    )
    total_items = int((await session.scalar(count_stmt)) or 0)
    total_pages = max(1, (total_items + filters.limit - 1) // filters.limit) if total_items else 1
    rows = (await session.execute(stmt)).scalars().all()
    return list(rows), {"total_items": total_items, "total_pages": total_pages, "page": filters.page, "limit": filters.limit}


async def resolve(session: AsyncSession, incident: SystemIncident, *, auto: bool, note: str | None = None) -> SystemIncident:
    if incident.resolved_at is not None:
        return incident
    incident.resolved_at = utcnow()
    incident.auto_resolved = bool(auto)
    changes: dict[str, Any] = {"auto_recovered": bool(auto)}
    if note:
        changes["resolution_note"] = note
    incident.update_meta(**changes)
    session.add(incident)
    if incident.source_type == IncidentSourceType.job and incident.source_id is not None:
        # The watchdog only dedupes open incidents, so the dead letter itself has to leave the triage queue.
        job = await session.get(PipelineJob, incident.source_id)
        if (
            job is not None
            and job.status == PipelineJobStatus.dead_letter
            and job.triage_state not in RESOLVED_TRIAGE_STATES
        ):
            job.triage_state = "resolved"
            session.add(job)
    await session.flush()
    if auto:
        metrics.record_incident_auto_resolved()
    logger.info(
        "incident_resolved",
        extra={"incident_id": str(incident.id), "auto_resolved": bool(auto)},
    )
    return incident


def should_create_ticket_by_severity(incident: SystemIncident) -> bool:
    if incident.severity == IncidentSeverity.info:
        return False
    if incident.severity in (IncidentSeverity.error, IncidentSeverity.critical):
        return True
    return incident.repair_attempts >= 2


def should_escalate(incident: SystemIncident) -> bool:
    threshold = max(1, int(getattr(settings, "incident_escalation_attempts", 3) or 3))
    return incident.repair_attempts >= threshold


def incident_asset_id(incident: SystemIncident) -> UUID | None:
    if incident.source_type == IncidentSourceType.asset:
        return incident.source_id
    raw = (incident.meta or {}).get("asset_id")
    try:
        return UUID(str(raw)) if raw else None
    except ValueError:
        return None


async def find_open_ticket(session: AsyncSession, *, tenant_id: UUID | None, asset_id: UUID | None) -> Ticket | None:
    if asset_id is None:
        return None
    stmt = select(Ticket).where(Ticket.status == TicketStatus.open)
    if tenant_id is not None:
        stmt = stmt.where(Ticket.tenant_id == tenant_id)
    rows = (await session.execute(stmt.order_by(Ticket.created_at.desc()).limit(500))).scalars().all()
    for ticket in rows:
        meta = ticket.meta or {}
        if meta.get("source") == TICKET_SOURCE and meta.get("asset_id") == str(asset_id):
            return ticket
    return None


async def create_ticket(session: AsyncSession, incident: SystemIncident) -> tuple[Ticket, bool]:
    """Open an operations ticket for the incident's asset, reusing the open one if present."""
    asset_id = incident_asset_id(incident)
    existing = await find_open_ticket(session, tenant_id=incident.tenant_id, asset_id=asset_id)
    if existing is not None:
        if (incident.meta or {}).get("ticket_id") != str(existing.id):
            incident.update_meta(ticket_id=str(existing.id))
            session.add(incident)
            await session.flush()
        return existing, False

    ticket = Ticket(
        tenant_id=incident.tenant_id,
        subject=f"[Operations] {incident.title}"[:255],
        description=incident.message,
        priority=_TICKET_PRIORITY.get(incident.severity, TicketPriority.P2),
        status=TicketStatus.open,
        meta={
            "source": TICKET_SOURCE,
            "incident_id": str(incident.id),
            "asset_id": str(asset_id) if asset_id else None,
            "severity": incident.severity.value,
            "repair_attempts": incident.repair_attempts,
        },
    )
    session.add(ticket)
    await session.flush()
    incident.update_meta(ticket_id=str(ticket.id))
    session.add(incident)
    await session.flush()
    metrics.record_ticket_created()
    logger.warning(
        "incident_ticket_created",
        extra={"incident_id": str(incident.id), "ticket_id": str(ticket.id), "priority": ticket.priority.value},
    )
    return ticket, True
