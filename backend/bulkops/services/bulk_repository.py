"""Persistence helpers for bulk processing requests.

Status changes and counter updates are single UPDATE statements so a status
read by another process never sees ``processed_rows`` out of step with the
success and failure counters, and a worker never overwrites a cancellation.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from bulkops.models.bulk_request import (
    PROGRESS_STATUSES,
    BulkProcessingRequest,
    BulkProcessingStatus,
    accept_row_log,
    count_stored_logs,
    utcnow,
)


def get_request(
    db: Session, request_id: uuid.UUID, company_id: uuid.UUID | None = None
) -> BulkProcessingRequest | None:
    query = select(BulkProcessingRequest).where(BulkProcessingRequest.id == request_id)
    if company_id is not None:
        query = query.where(BulkProcessingRequest.company_id == company_id)
    return db.execute(query.execution_options(populate_existing=True)).scalar_one_or_none()


def transition_status(
    db: Session,
    request_id: uuid.UUID,
    to_status: BulkProcessingStatus,
    from_statuses: set[BulkProcessingStatus] | frozenset[BulkProcessingStatus],
    **values: Any,
) -> bool:
    """Move the request to ``to_status`` only if it is currently in ``from_statuses``."""
    allowed = [s for s in from_statuses if s.can_transition_to(to_status)]
    if not allowed:
        return False
    result = db.execute(
        update(BulkProcessingRequest)
        .where(
            BulkProcessingRequest.id == request_id,
            BulkProcessingRequest.status.in_(allowed),
        )
        .values(status=to_status, updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def apply_progress(
    db: Session,
    request_id: uuid.UUID,
    successful: int,
    failed: int,
    new_logs: list[dict[str, Any]] | None = None,
    max_stored_errors: int = 1000,
    max_stored_warnings: int = 1000,
) -> bool:
    """Add a batch of row outcomes to the counters and append the logs that fit under the caps.

    Only a request that is still running accepts progress; returns False once
    another process has finished it.
    """
    values: dict[str, Any] = {
        "processed_rows": BulkProcessingRequest.processed_rows + successful + failed,
        "successful_rows": BulkProcessingRequest.successful_rows + successful,
        "failed_rows": BulkProcessingRequest.failed_rows + failed,
        "updated_at": utcnow(),
    }
    if new_logs:
        # The owning worker is the only writer of row_logs
        current = db.execute(
            select(BulkProcessingRequest.row_logs).where(BulkProcessingRequest.id == request_id)
        ).scalar_one()
        logs = list(current or [])
        stored = count_stored_logs(logs)
        for entry in new_logs:
            if accept_row_log(entry, stored, max_stored_errors, max_stored_warnings):
                logs.append(entry)
        values["row_logs"] = logs

    result = db.execute(
        update(BulkProcessingRequest)
        .where(
            BulkProcessingRequest.id == request_id,
            BulkProcessingRequest.status.in_(PROGRESS_STATUSES),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def set_total_rows(db: Session, request_id: uuid.UUID, total_rows: int) -> bool:
    """Set ``total_rows`` once; later calls leave the stored value alone."""
    result = db.execute(
        update(BulkProcessingRequest)
        .where(
            BulkProcessingRequest.id == request_id,
            BulkProcessingRequest.total_rows.is_(None),
        )
        .values(total_rows=total_rows)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def update_metadata(db: Session, request_id: uuid.UUID, **values: Any) -> None:
    current = db.execute(
        select(BulkProcessingRequest.metadata_).where(BulkProcessingRequest.id == request_id)
    ).scalar_one()
    db.execute(
        update(BulkProcessingRequest)
        .where(BulkProcessingRequest.id == request_id)
        .values({BulkProcessingRequest.metadata_: {**(current or {}), **values}})
        .execution_options(synchronize_session=False)
    )
    db.commit()


def find_stuck_cancelling(db: Session, older_than: datetime) -> list[BulkProcessingRequest]:
    return list(
        db.execute(
            select(BulkProcessingRequest).where(
                BulkProcessingRequest.status == BulkProcessingStatus.CANCELLING,
                BulkProcessingRequest.updated_at < older_than,
            )
        ).scalars()
    )


def find_stalled_processing(db: Session, older_than: datetime) -> list[BulkProcessingRequest]:
    return list(
        db.execute(
            select(BulkProcessingRequest).where(
                BulkProcessingRequest.status == BulkProcessingStatus.PROCESSING,
                BulkProcessingRequest.updated_at < older_than,
            )
        ).scalars()
    )
