from fastapi import APIRouter

from dam.api.v1 import admin_assets, admin_incidents, admin_pipeline, uploads
from dam.core.metrics import snapshot as metrics_snapshot

api_router = APIRouter()

api_router.include_router(uploads.router)
api_router.include_router(admin_assets.router)
api_router.include_router(admin_pipeline.router)
api_router.include_router(admin_incidents.router)


@api_router.get("/health", tags=["health"])
def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@api_router.get("/metrics", tags=["metrics"])
def metrics() -> dict:
    return metrics_snapshot()
