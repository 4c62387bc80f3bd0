from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from dam.api.v1._errors import http_error
from dam.core.dependencies import Operator, get_operator
from dam.db.session import get_session
from dam.schemas.asset import AssetRead
from dam.services import assets as asset_service

router = APIRouter(prefix="/assets", tags=["assets"])


class AssetUploadResponse(BaseModel):
    asset: AssetRead
    job_id: UUID


@router.post("/upload", response_model=AssetUploadResponse, status_code=status.HTTP_201_CREATED)
async def upload_asset(
    file: UploadFile = File(...),
    tenant_id: UUID = Form(...),
    brand_id: UUID | None = Form(default=None),
    title: str | None = Form(default=None),
    session: AsyncSession = Depends(get_session),
    operator: Operator = Depends(get_operator),
) -> AssetUploadResponse:
    if not (file.filename or "").strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="File name is required")
    try:
        asset, job_id = await asset_service.create_asset_from_upload(
            session,
            file=file,
            tenant_id=tenant_id,
            brand_id=brand_id,
            title=title,
            created_by_operator_id=operator.id,
        )
    except ValueError as exc:
        raise http_error(exc) from exc
    return AssetUploadResponse(asset=asset_service.asset_to_read(asset), job_id=job_id)
