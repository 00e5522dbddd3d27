from __future__ import annotations

import logging
import uuid
from typing import Any

import pandas as pd
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from bulkops.exceptions import (
    BulkProcessingFileNotFoundException,
    BulkProcessingInvalidFileStatusException,
    BulkProcessingInvalidStatusException,
    BulkProcessingNoErrorsFoundException,
    BulkProcessingRequestNotFoundException,
    QueueUnavailableException,
    StorageOperationFailedException,
    UnauthorizedBulkProcessingRequestAccessException,
)
from bulkops.models.bulk_request import (
    CANCELLABLE_STATUSES,
    BulkProcessingRequest,
    BulkProcessingStatus,
    BulkProcessingType,
)
from bulkops.models.stored_file import FileStatus, StoredFile
from bulkops.schemas.bulk_request import ProcessingOptions
from bulkops.services import bulk_repository as repo
from bulkops.services import queue_bridge as qb
from bulkops.services.bulk_lifecycle import BulkLifecycle
from bulkops.services.concurrency import ConcurrencyLimiter
from bulkops.services.event_handlers import BulkEventDispatcher
from bulkops.services.upload_service import validate_bulk_import_file

logger = logging.getLogger(__name__)

REPORT_COLUMNS = ["Row Number", "Outcome", "Entity ID", "Errors", "Warnings", "Message", "Processed At"]


def create_bulk_processing_request(
    db: Session,
    bridge: qb.JobQueueBridge,
    limiter: ConcurrencyLimiter,
    processing_type: BulkProcessingType,
    file_id: uuid.UUID,
    company_id: uuid.UUID,
    requested_by: uuid.UUID,
    options: ProcessingOptions | None = None,
) -> BulkProcessingRequest:
    """Validate the source file, persist a PENDING request and enqueue its job."""
    if processing_type.is_reserved:
        raise UnauthorizedBulkProcessingRequestAccessException(
            f"Processing type '{processing_type.value}' is reserved for internal use"
        )

    stored = db.execute(
        select(StoredFile).where(StoredFile.id == file_id, StoredFile.company_id == company_id)
    ).scalar_one_or_none()
    if stored is None:
        raise BulkProcessingFileNotFoundException(f"File {file_id} not found", {"file_id": str(file_id)})
    if stored.status != FileStatus.UPLOADED:
        raise BulkProcessingInvalidFileStatusException(
            f"File {file_id} is '{stored.status.value}'; it must be fully uploaded",
            {"file_id": str(file_id), "status": stored.status.value},
        )
    validate_bulk_import_file(stored.filename, stored.mime_type)

    limiter.acquire_slot(requested_by)

    options = options or ProcessingOptions()
    request = BulkProcessingRequest(
        id=uuid.uuid4(),
        type=processing_type,
        file_id=stored.id,
        file_name=stored.filename,
        status=BulkProcessingStatus.PENDING,
        company_id=company_id,
        requested_by=requested_by,
        options=options.model_dump(mode="json"),
        metadata_=dict(options.metadata),
    )
    request.job_id = qb.generate_job_id(processing_type, request.id)
    try:
        db.add(request)
        db.commit()
    except Exception:
        db.rollback()
        _release_quietly(limiter, requested_by)
        raise

    try:
        bridge.enqueue(request.id, company_id, processing_type, job_id=request.job_id)
    except QueueUnavailableException:
        logger.error("Queue unavailable; discarding bulk request %s", request.id)
        db.delete(request)
        db.commit()
        _release_quietly(limiter, requested_by)
        raise

    logger.info(
        "Created %s bulk request %s for file %s (company %s)",
        processing_type.value, request.id, file_id, company_id,
    )
    return request


def _release_quietly(limiter: ConcurrencyLimiter, user_id: uuid.UUID) -> None:
    try:
        limiter.release_slot(user_id)
    except StorageOperationFailedException:
        logger.warning("Could not release bulk job slot for user %s", user_id)


def cancel_bulk_processing_request(
    db: Session,
    bridge: qb.JobQueueBridge,
    dispatcher: BulkEventDispatcher,
    request_id: uuid.UUID,
    company_id: uuid.UUID,
    user_id: uuid.UUID,
    reason: str | None = None,
) -> dict[str, Any]:
    """
    Cancel a request.

    PENDING and PROCESSING requests move to CANCELLING first (persisted before
    the queue is touched). Jobs that are not running are cancelled on the spot;
    a running job finishes the cancellation when it observes the token.
    Cancelling an already cancelling or cancelled request is a no-op.
    """
    request = repo.get_request(db, request_id, company_id)
    if request is None:
        raise BulkProcessingRequestNotFoundException(request_id)
    if request.type.is_reserved:
        raise UnauthorizedBulkProcessingRequestAccessException(
            f"Requests of type '{request.type.value}' cannot be cancelled"
        )
    if request.status in (BulkProcessingStatus.CANCELLING, BulkProcessingStatus.CANCELLED):
        return _cancellation_result(request, None, "Cancellation already in progress or done")
    request.ensure_can_transition(BulkProcessingStatus.CANCELLING)

    if not repo.transition_status(db, request.id, BulkProcessingStatus.CANCELLING, CANCELLABLE_STATUSES):
        # Lost a race with the worker
        request = repo.get_request(db, request.id, company_id)
        if request.status in (BulkProcessingStatus.CANCELLING, BulkProcessingStatus.CANCELLED):
            return _cancellation_result(request, None, "Cancellation already in progress or done")
        raise BulkProcessingInvalidStatusException(request.status, BulkProcessingStatus.CANCELLING)
    logger.info("User %s requested cancellation of bulk request %s (%s)", user_id, request.id, reason or "no reason")

    previous_state = None
    if request.job_id:
        # Queue errors surface to the caller; CANCELLING is already persisted
        result = bridge.cancel_job(request.job_id)
        previous_state = result.previous_state
        if previous_state == qb.ACTIVE:
            request = repo.get_request(db, request.id, company_id)
            return _cancellation_result(request, previous_state, result.message)

    BulkLifecycle(db, bridge, dispatcher).finalize_cancellation(request.id, reason=reason or "cancelled by user")
    request = repo.get_request(db, request.id, company_id)
    return _cancellation_result(request, previous_state, "Request cancelled")


def _cancellation_result(request: BulkProcessingRequest, previous_state: str | None, message: str) -> dict[str, Any]:
    return {
        "request_id": request.id,
        "status": request.status.value,
        "previous_job_state": previous_state,
        "message": message,
    }


def get_bulk_processing_status(db: Session, request_id: uuid.UUID, company_id: uuid.UUID) -> dict[str, Any]:
    request = repo.get_request(db, request_id, company_id)
    if request is None:
        raise BulkProcessingRequestNotFoundException(request_id)
    return to_status_dict(request)


def to_status_dict(request: BulkProcessingRequest, include_logs: bool = True) -> dict[str, Any]:
    data = {
        "id": request.id,
        "type": request.type.value,
        "file_id": request.file_id,
        "file_name": request.file_name,
        "status": request.status.value,
        "job_id": request.job_id,
        "total_rows": request.total_rows,
        "processed_rows": request.processed_rows,
        "successful_rows": request.successful_rows,
        "failed_rows": request.failed_rows,
        "progress_percentage": request.progress_percentage,
        "error_message": request.error_message,
        "company_id": request.company_id,
        "requested_by": request.requested_by,
        "started_at": request.started_at,
        "completed_at": request.completed_at,
        "created_at": request.created_at,
        "has_errors": request.has_errors(),
        "is_cancellable": request.is_cancellable(),
        "success_rate": request.success_rate,
    }
    if include_logs:
        data["row_logs"] = list(request.row_logs or [])
    return data


def list_bulk_processing_requests(
    db: Session,
    company_id: uuid.UUID,
    status: BulkProcessingStatus | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[BulkProcessingRequest], int]:
    query = select(BulkProcessingRequest).where(BulkProcessingRequest.company_id == company_id)
    count_query = select(func.count()).select_from(BulkProcessingRequest).where(
        BulkProcessingRequest.company_id == company_id
    )
    if status is not None:
        query = query.where(BulkProcessingRequest.status == status)
        count_query = count_query.where(BulkProcessingRequest.status == status)
    total = db.execute(count_query).scalar_one()
    rows = db.execute(
        query.order_by(BulkProcessingRequest.created_at.desc()).limit(limit).offset(offset)
    ).scalars().all()
    return list(rows), total


def build_error_report(db: Session, request_id: uuid.UUID, company_id: uuid.UUID) -> str:
    """Render the stored row logs as CSV text with a UTF-8 BOM for spreadsheet apps."""
    request = repo.get_request(db, request_id, company_id)
    if request is None:
        raise BulkProcessingRequestNotFoundException(request_id)
    logs = request.row_logs or []
    if not logs:
        raise BulkProcessingNoErrorsFoundException(
            f"Bulk request {request_id} has no recorded errors or warnings"
        )
    frame = pd.DataFrame(
        [
            {
                "Row Number": entry.get("row_number"),
                "Outcome": entry.get("outcome"),
                "Entity ID": entry.get("entity_id") or "",
                "Errors": "; ".join(entry.get("errors") or []),
                "Warnings": "; ".join(entry.get("warnings") or []),
                "Message": entry.get("message", ""),
                "Processed At": entry.get("processed_at", ""),
            }
            for entry in sorted(logs, key=lambda e: e.get("row_number") or 0)
        ],
        columns=REPORT_COLUMNS,
    )
    return "\ufeff" + frame.to_csv(index=False)


def reconcile_stuck_cancelling(
    db: Session,
    bridge: qb.JobQueueBridge,
    dispatcher: BulkEventDispatcher,
    older_than_seconds: int | None = None,
) -> int:
    return BulkLifecycle(db, bridge, dispatcher).reconcile_stuck_cancelling(older_than_seconds)


def fail_stalled_requests(
    db: Session,
    bridge: qb.JobQueueBridge,
    dispatcher: BulkEventDispatcher,
    older_than_seconds: int | None = None,
) -> int:
    return BulkLifecycle(db, bridge, dispatcher).fail_stalled(older_than_seconds)


def handle_job_failure(
    db: Session,
    bridge: qb.JobQueueBridge,
    dispatcher: BulkEventDispatcher,
    request_id: uuid.UUID,
    error: BaseException,
) -> BulkProcessingStatus:
    """Fail a request whose job ran out of retries."""
    message = getattr(error, "message", None) or str(error) or error.__class__.__name__
    logger.error("Bulk request %s failed permanently: %s", request_id, message)
    return BulkLifecycle(db, bridge, dispatcher).fail(request_id, message)
