from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session

from bulkops.api.deps import get_current_user, get_storage, get_upload_limiter
from bulkops.database import get_sync_db
from bulkops.models.stored_file import UploadPurpose
from bulkops.schemas.upload import (
    PartUrlRequest,
    PartUrlResponse,
    UploadCompleteRequest,
    UploadCompleteResponse,
    UploadInitiateRequest,
    UploadInitiateResponse,
    UploadStatusResponse,
)
from bulkops.services.auth_service import TokenClaims
from bulkops.services.concurrency import ConcurrencyLimiter
from bulkops.services.storage import S3StorageProvider
from bulkops.services.upload_service import UploadSessionManager

router = APIRouter(prefix="/uploads", tags=["uploads"])


def get_upload_manager(
    db: Session = Depends(get_sync_db),
    storage: S3StorageProvider = Depends(get_storage),
    limiter: ConcurrencyLimiter = Depends(get_upload_limiter),
) -> UploadSessionManager:
    return UploadSessionManager(db, storage, limiter)


@router.post("/initiate", response_model=dict, status_code=201)
def initiate_upload(
    body: UploadInitiateRequest,
    manager: UploadSessionManager = Depends(get_upload_manager),
    current_user: TokenClaims = Depends(get_current_user),
) -> dict:
    result = manager.initiate_upload(
        user_id=current_user.user_id,
        company_id=current_user.company_id,
        filename=body.filename,
        mime_type=body.mime_type,
        size=body.size,
        path=body.path,
        tier=current_user.tier,
        purpose=UploadPurpose(body.purpose),
        part_size=body.part_size,
    )
    return {"data": UploadInitiateResponse.model_validate(result)}


@router.post("/{file_id}/parts/{part_number}/url", response_model=dict)
def generate_part_url(
    file_id: uuid.UUID,
    part_number: int,
    body: PartUrlRequest,
    manager: UploadSessionManager = Depends(get_upload_manager),
    current_user: TokenClaims = Depends(get_current_user),
) -> dict:
    result = manager.generate_part_url(
        file_id, part_number, body.part_size_bytes, current_user.user_id, body.expiry_seconds
    )
    return {"data": PartUrlResponse.model_validate(result)}


@router.post("/{file_id}/complete", response_model=dict)
def complete_upload(
    file_id: uuid.UUID,
    body: UploadCompleteRequest,
    manager: UploadSessionManager = Depends(get_upload_manager),
    current_user: TokenClaims = Depends(get_current_user),
) -> dict:
    result = manager.complete_upload(
        file_id, [p.model_dump() for p in body.parts], current_user.user_id
    )
    return {"data": UploadCompleteResponse.model_validate(result)}


@router.get("/{file_id}/status", response_model=dict)
def upload_status(
    file_id: uuid.UUID,
    manager: UploadSessionManager = Depends(get_upload_manager),
    current_user: TokenClaims = Depends(get_current_user),
) -> dict:
    result = manager.get_upload_status(file_id, current_user.user_id, current_user.company_id)
    return {"data": UploadStatusResponse.model_validate(result)}


@router.post("/{file_id}/heartbeat", status_code=204)
def heartbeat(
    file_id: uuid.UUID,
    manager: UploadSessionManager = Depends(get_upload_manager),
    current_user: TokenClaims = Depends(get_current_user),
) -> Response:
    manager.heartbeat(file_id, current_user.user_id)
    return Response(status_code=204)


@router.delete("/{file_id}", status_code=204)
def abort_upload(
    file_id: uuid.UUID,
    manager: UploadSessionManager = Depends(get_upload_manager),
    current_user: TokenClaims = Depends(get_current_user),
) -> Response:
    manager.abort_upload(file_id, current_user.user_id)
    return Response(status_code=204)
