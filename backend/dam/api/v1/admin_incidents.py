from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from dam.api.v1._errors import http_error
from dam.core.dependencies import Operator, get_operator
from dam.db.session import get_session
from dam.schemas.asset import RepairResponse
from dam.schemas.incident import IncidentListResponse, IncidentRead, IncidentResolveRequest, TicketRead
from dam.services import incident_recovery, reliability_metrics
from dam.services import incidents as incident_service

router = APIRouter(prefix="/admin", tags=["admin-incidents"])


@router.get("/incidents", response_model=IncidentListResponse)
async def admin_list_incidents(
    severity: str = Query(default="", pattern="^(|info|warning|error|critical)$"),
    source_type: str = Query(default="", pattern="^(|asset|job)$"),
    source_id: UUID | None = Query(default=None),
    tenant_id: UUID | None = Query(default=None),
    unresolved_only: bool = Query(default=True),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    session: AsyncSession = Depends(get_session),
    _: Operator = Depends(get_operator),
) -> IncidentListResponse:
    rows, meta = await incident_service.list_incidents(
        session,
        incident_service.IncidentListFilters(
            page=page,
            limit=limit,
            severity=severity,
            source_type=source_type,
            source_id=source_id,
            tenant_id=tenant_id,
            unresolved_only=unresolved_only,
        ),
    )
    return IncidentListResponse(items=[IncidentRead.model_validate(row) for row in rows], meta=meta)


@router.post("/incidents/{incident_id}/repair", response_model=RepairResponse)
async def admin_repair_incident(
    incident_id: UUID,
    session: AsyncSession = Depends(get_session),
    _: Operator = Depends(get_operator),
) -> RepairResponse:
    try:
        incident = await incident_service.get_incident_or_404(session, incident_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    outcome = await incident_recovery.attempt_repair(session, incident)
    return RepairResponse(updated=bool(outcome["updated"]), changes=list(outcome["changes"]), resolved=bool(outcome["resolved"]))


@router.post("/incidents/{incident_id}/resolve", response_model=IncidentRead)
async def admin_resolve_incident(
    incident_id: UUID,
    payload: IncidentResolveRequest,
    session: AsyncSession = Depends(get_session),
    operator: Operator = Depends(get_operator),
) -> IncidentRead:
    try:
        incident = await incident_service.get_incident_or_404(session, incident_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    if operator.id is not None:
        incident.update_meta(resolved_by_operator_id=str(operator.id))
    await incident_service.resolve(session, incident, auto=False, note=(payload.note or "").strip() or None)
    await session.commit()
    return IncidentRead.model_validate(incident)


@router.post("/incidents/{incident_id}/ticket", response_model=TicketRead)
async def admin_create_incident_ticket(
    incident_id: UUID,
    session: AsyncSession = Depends(get_session),
    _: Operator = Depends(get_operator),
) -> TicketRead:
    try:
        incident = await incident_service.get_incident_or_404(session, incident_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    ticket, _created = await incident_service.create_ticket(session, incident)
    await session.commit()
    return TicketRead.model_validate(ticket)


@router.get("/reliability/metrics")
async def admin_reliability_metrics(
    window_days: int = Query(default=7, ge=1, le=90),
    session: AsyncSession = Depends(get_session),
    _: Operator = Depends(get_operator),
) -> dict[str, Any]:
    return await reliability_metrics.compute(session, window_days=window_days)
