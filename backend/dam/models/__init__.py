from dam.db.base import Base  # noqa: F401
from dam.models.tenant import Brand, Tenant  # noqa: F401
from dam.models.asset import (  # noqa: F401
    AnalysisStatus,
    Asset,
    AssetComplianceScore,
    AssetEmbedding,
    AssetEvent,
    AssetStatus,
    ThumbnailStatus,
)
from dam.models.pipeline import PipelineJob, PipelineJobEvent, PipelineJobStatus, PipelineJobType  # noqa: F401
from dam.models.incident import (  # noqa: F401
    IncidentSeverity,
    IncidentSourceType,
    SystemIncident,
    Ticket,
    TicketPriority,
    TicketStatus,
)

__all__ = [
    "Base",
    "Tenant",
    "Brand",
    "Asset",
    "AssetEvent",
    "AssetEmbedding",
    "AssetComplianceScore",
    "AssetStatus",
    "AnalysisStatus",
    "ThumbnailStatus",
    "PipelineJob",
    "PipelineJobEvent",
    "PipelineJobStatus",
    "PipelineJobType",
    "SystemIncident",
    "IncidentSeverity",
    "IncidentSourceType",
    "Ticket",
    "TicketPriority",
    "TicketStatus",
]
