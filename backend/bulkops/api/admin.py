from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from bulkops.api.deps import get_admin_user, get_bulk_limiter, get_storage, get_upload_limiter
from bulkops.database import get_sync_db
from bulkops.schemas.upload import ConcurrencyStatusResponse
from bulkops.services.auth_service import TokenClaims
from bulkops.services.concurrency import ConcurrencyLimiter
from bulkops.services.storage import S3StorageProvider
from bulkops.services.upload_service import UploadSessionManager

router = APIRouter(prefix="/admin", tags=["admin"])


def _concurrency_status(
    user_id: uuid.UUID, uploads: ConcurrencyLimiter, bulk_jobs: ConcurrencyLimiter
) -> ConcurrencyStatusResponse:
    return ConcurrencyStatusResponse(
        user_id=user_id,
        uploads=uploads.get_current_count(user_id),
        bulk_jobs=bulk_jobs.get_current_count(user_id),
        upload_limit=uploads.max_concurrent,
        bulk_job_limit=bulk_jobs.max_concurrent,
    )


@router.get("/concurrency/{user_id}", response_model=dict)
def get_concurrency(
    user_id: uuid.UUID,
    uploads: ConcurrencyLimiter = Depends(get_upload_limiter),
    bulk_jobs: ConcurrencyLimiter = Depends(get_bulk_limiter),
    _admin: TokenClaims = Depends(get_admin_user),
) -> dict:
    return {"data": _concurrency_status(user_id, uploads, bulk_jobs)}


@router.delete("/concurrency/{user_id}", response_model=dict)
def clear_concurrency(
    user_id: uuid.UUID,
    uploads: ConcurrencyLimiter = Depends(get_upload_limiter),
    bulk_jobs: ConcurrencyLimiter = Depends(get_bulk_limiter),
    _admin: TokenClaims = Depends(get_admin_user),
) -> dict:
    uploads.clear_user_slots(user_id)
    bulk_jobs.clear_user_slots(user_id)
    return {"data": _concurrency_status(user_id, uploads, bulk_jobs)}


@router.post("/uploads/cleanup", response_model=dict)
def cleanup_uploads(
    inactivity_threshold_minutes: int | None = Query(default=None, ge=1),
    db: Session = Depends(get_sync_db),
    storage: S3StorageProvider = Depends(get_storage),
    uploads: ConcurrencyLimiter = Depends(get_upload_limiter),
    _admin: TokenClaims = Depends(get_admin_user),
) -> dict:
    manager = UploadSessionManager(db, storage, uploads)
    cleaned = manager.cleanup_expired_uploads(inactivity_threshold_minutes)
    return {"data": {"cleaned": cleaned}}
