from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


IncidentSeverityLiteral = Literal["info", "warning", "error", "critical"]


class IncidentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    source_type: Literal["asset", "job"]
    source_id: UUID
    tenant_id: UUID | None = None
    severity: IncidentSeverityLiteral
    title: str
    message: str | None = None
    retryable: bool
    unique_signature: str | None = None
    meta: dict[str, Any] | None = Field(default=None, serialization_alias="metadata")
    detected_at: datetime
    resolved_at: datetime | None = None
    auto_resolved: bool = False


class IncidentListResponse(BaseModel):
    items: list[IncidentRead]
    meta: dict[str, int]


class IncidentResolveRequest(BaseModel):
    note: str | None = Field(default=None, max_length=2000)


class TicketRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID | None = None
    subject: str
    description: str | None = None
    priority: Literal["P0", "P1", "P2"]
    status: Literal["open", "resolved"]
    meta: dict[str, Any] | None = Field(default=None, serialization_alias="metadata")
    created_at: datetime
