from __future__ import annotations

import uuid
from typing import Literal

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from bulkops.api.deps import get_bulk_limiter, get_current_user, get_dispatcher, get_queue_bridge
from bulkops.database import get_sync_db
from bulkops.models.bulk_request import BulkProcessingStatus, BulkProcessingType
from bulkops.schemas.bulk_request import (
    BulkProcessingCancel,
    BulkProcessingCreate,
    BulkProcessingResponse,
    BulkProcessingStatusResponse,
    CancellationResponse,
)
from bulkops.services import bulk_service
from bulkops.services.auth_service import TokenClaims
from bulkops.services.concurrency import ConcurrencyLimiter
from bulkops.services.event_handlers import BulkEventDispatcher
from bulkops.services.queue_bridge import JobQueueBridge

router = APIRouter(prefix="/bulk-processing", tags=["bulk-processing"])


@router.post("", response_model=dict, status_code=202)
def create_request(
    body: BulkProcessingCreate,
    db: Session = Depends(get_sync_db),
    bridge: JobQueueBridge = Depends(get_queue_bridge),
    limiter: ConcurrencyLimiter = Depends(get_bulk_limiter),
    current_user: TokenClaims = Depends(get_current_user),
) -> dict:
    request = bulk_service.create_bulk_processing_request(
        db,
        bridge,
        limiter,
        BulkProcessingType(body.type),
        body.file_id,
        company_id=current_user.company_id,
        requested_by=current_user.user_id,
        options=body.options,
    )
    return {"data": BulkProcessingResponse.model_validate(request)}


@router.get("", response_model=dict)
def list_requests(
    status: Literal["pending", "processing", "completed", "failed", "cancelling", "cancelled"] | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_sync_db),
    current_user: TokenClaims = Depends(get_current_user),
) -> dict:
    requests, total = bulk_service.list_bulk_processing_requests(
        db,
        current_user.company_id,
        status=BulkProcessingStatus(status) if status else None,
        limit=limit,
        offset=offset,
    )
    return {
        "data": [BulkProcessingResponse.model_validate(r) for r in requests],
        "total": total,
    }


@router.get("/{request_id}", response_model=dict)
def get_request_status(
    request_id: uuid.UUID,
    db: Session = Depends(get_sync_db),
    current_user: TokenClaims = Depends(get_current_user),
) -> dict:
    data = bulk_service.get_bulk_processing_status(db, request_id, current_user.company_id)
    return {"data": BulkProcessingStatusResponse.model_validate(data)}


@router.post("/{request_id}/cancel", response_model=dict)
def cancel_request(
    request_id: uuid.UUID,
    body: BulkProcessingCancel | None = None,
    db: Session = Depends(get_sync_db),
    bridge: JobQueueBridge = Depends(get_queue_bridge),
    dispatcher: BulkEventDispatcher = Depends(get_dispatcher),
    current_user: TokenClaims = Depends(get_current_user),
) -> dict:
    result = bulk_service.cancel_bulk_processing_request(
        db,
        bridge,
        dispatcher,
        request_id,
        company_id=current_user.company_id,
        user_id=current_user.user_id,
        reason=body.reason if body else None,
    )
    return {"data": CancellationResponse.model_validate(result)}


@router.get("/{request_id}/report")
def download_report(
    request_id: uuid.UUID,
    db: Session = Depends(get_sync_db),
    current_user: TokenClaims = Depends(get_current_user),
) -> Response:
    csv_text = bulk_service.build_error_report(db, request_id, current_user.company_id)
    return Response(
        content=csv_text.encode("utf-8"),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="bulk-{request_id}-report.csv"'},
    )
