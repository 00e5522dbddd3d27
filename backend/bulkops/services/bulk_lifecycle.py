"""Terminal transitions of a bulk request and their side effects.

The worker, the cancel command and the maintenance sweeps all finish requests
through this class. Whoever wins the conditional status UPDATE runs the side
effects (file status, job record, event handlers); everyone else is a no-op.
"""
from __future__ import annotations

import logging
import uuid
from datetime import timedelta

from sqlalchemy import update
from sqlalchemy.orm import Session

from bulkops.config import settings
from bulkops.exceptions import BulkOpsException
from bulkops.models.bulk_request import (
    CANCELLABLE_STATUSES,
    BulkProcessingRequest,
    BulkProcessingStatus,
    BulkProcessingType,
    utcnow,
)
from bulkops.models.stored_file import FileStatus, StoredFile
from bulkops.plugins import registry
from bulkops.services import bulk_repository as repo
from bulkops.services import queue_bridge as qb
from bulkops.services.event_handlers import BulkEventDispatcher, BulkRequestOutcome

logger = logging.getLogger(__name__)


class BulkLifecycle:
    def __init__(self, db: Session, bridge: qb.JobQueueBridge, dispatcher: BulkEventDispatcher):
        self.db = db
        self.bridge = bridge
        self.dispatcher = dispatcher

    # --- source file ---

    def mark_file_processing(self, request: BulkProcessingRequest) -> None:
        stored = self.db.get(StoredFile, request.file_id)
        if stored is None:
            return
        if "original_file_status" not in (request.metadata_ or {}):
            repo.update_metadata(self.db, request.id, original_file_status=stored.status.value)
        self._set_file_status(stored.id, FileStatus.PROCESSING, {FileStatus.UPLOADED})

    def restore_file(self, request: BulkProcessingRequest) -> None:
        original = (request.metadata_ or {}).get("original_file_status", FileStatus.UPLOADED.value)
        try:
            self._set_file_status(request.file_id, FileStatus(original), {FileStatus.PROCESSING})
        except Exception:
            logger.exception("Could not restore status of file %s", request.file_id)
            self.db.rollback()

    def _set_file_status(self, file_id: uuid.UUID, status: FileStatus, from_statuses: set[FileStatus]) -> bool:
        result = self.db.execute(
            update(StoredFile)
            .where(StoredFile.id == file_id, StoredFile.status.in_(from_statuses))
            .values(status=status, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount == 1

    def schedule_file_cleanup(self, request: BulkProcessingRequest) -> str | None:
        """Mark the consumed source file for erasure and queue a cleanup job."""
        try:
            if not self._set_file_status(request.file_id, FileStatus.ERASING, {FileStatus.PROCESSING, FileStatus.UPLOADED}):
                return None
            file_ids = [str(request.file_id)]
            return self.bridge.enqueue(
                request.id,
                request.company_id,
                BulkProcessingType.CLEANUP_TEMP_FILES,
                job_id=qb.generate_cleanup_job_id(file_ids),
                payload={"file_ids": file_ids},
            )
        except Exception:
            logger.exception("Could not schedule cleanup of file %s for request %s", request.file_id, request.id)
            self.db.rollback()
            return None

    # --- terminal transitions ---

    def _reload(self, request_id: uuid.UUID) -> BulkProcessingRequest:
        request = repo.get_request(self.db, request_id)
        if request is None:
            raise BulkOpsException(f"Bulk processing request {request_id} disappeared")
        return request

    def complete(self, request_id: uuid.UUID) -> BulkProcessingStatus:
        if not repo.transition_status(
            self.db, request_id, BulkProcessingStatus.COMPLETED, {BulkProcessingStatus.PROCESSING},
            completed_at=utcnow(),
        ):
            request = self._reload(request_id)
            if request.status == BulkProcessingStatus.CANCELLING:
                return self.finalize_cancellation(request_id, reason="cancelled while finishing")
            return request.status

        request = self._reload(request_id)
        if request.job_id:
            self.bridge.mark_finished(request.job_id, qb.COMPLETED)
        self.schedule_file_cleanup(request)
        self.dispatcher.on_completed(BulkRequestOutcome.from_request(request))
        return request.status

    def fail(self, request_id: uuid.UUID, message: str) -> BulkProcessingStatus:
        """Fail the request unless it is already terminal; a cancelling request is cancelled instead."""
        if not repo.transition_status(
            self.db, request_id, BulkProcessingStatus.FAILED,
            {BulkProcessingStatus.PENDING, BulkProcessingStatus.PROCESSING},
            error_message=message[:2000], completed_at=utcnow(),
        ):
            request = self._reload(request_id)
            if request.status == BulkProcessingStatus.CANCELLING:
                return self.finalize_cancellation(request_id, reason="cancelled while failing")
            logger.info("Request %s already %s; not marking failed", request_id, request.status.value)
            return request.status

        request = self._reload(request_id)
        self.restore_file(request)
        if request.job_id:
            self.bridge.mark_finished(request.job_id, qb.FAILED, message)
        self.dispatcher.on_failed(BulkRequestOutcome.from_request(request))
        return request.status

    def finalize_cancellation(self, request_id: uuid.UUID, reason: str | None = None) -> BulkProcessingStatus:
        """Drive a request to CANCELLED, passing through CANCELLING when needed."""
        repo.transition_status(self.db, request_id, BulkProcessingStatus.CANCELLING, CANCELLABLE_STATUSES)
        job_id = self._reload(request_id).job_id
        if not repo.transition_status(
            self.db, request_id, BulkProcessingStatus.CANCELLED, {BulkProcessingStatus.CANCELLING},
            job_id=None, completed_at=utcnow(),
        ):
            return self._reload(request_id).status

        request = self._reload(request_id)
        self.restore_file(request)
        if job_id:
            self.bridge.mark_finished(job_id, qb.FAILED, "cancelled")
        plugin = registry.get("processor", request.type.value)
        if plugin is not None:
            try:
                removed = plugin.on_cancelled(self.db, request.id, request.company_id)
                if removed:
                    logger.info("Removed %d entities written by cancelled request %s", removed, request.id)
            except Exception:
                logger.exception("Cancellation cleanup failed for request %s", request.id)
                self.db.rollback()
        self.dispatcher.on_cancelled(BulkRequestOutcome.from_request(request, reason=reason))
        return request.status

    # --- sweeps ---

    def reconcile_stuck_cancelling(self, older_than_seconds: int | None = None) -> int:
        """Finish CANCELLING requests whose worker is gone."""
        seconds = older_than_seconds or settings.BULK_CANCELLING_RECONCILE_SECONDS
        cutoff = utcnow() - timedelta(seconds=seconds)
        finished = 0
        for request in repo.find_stuck_cancelling(self.db, cutoff):
            if request.job_id:
                state = self.bridge.get_job_status(request.job_id).state
                if state == qb.ACTIVE:
                    continue
            if self.finalize_cancellation(request.id, reason="reconciled") == BulkProcessingStatus.CANCELLED:
                finished += 1
        if finished:
            logger.info("Reconciled %d stuck cancelling requests", finished)
        return finished

    def fail_stalled(self, older_than_seconds: int | None = None) -> int:
        """Fail PROCESSING requests that stopped reporting progress and whose job is not running."""
        seconds = older_than_seconds or settings.BULK_JOB_STALLED_SECONDS
        cutoff = utcnow() - timedelta(seconds=seconds)
        failed = 0
        for request in repo.find_stalled_processing(self.db, cutoff):
            state = self.bridge.get_job_status(request.job_id).state if request.job_id else qb.NOT_FOUND
            if state in (qb.ACTIVE, qb.WAITING, qb.DELAYED):
                continue
            minutes = seconds // 60
            if self.fail(request.id, f"Job stalled: no progress for more than {minutes} minutes") == BulkProcessingStatus.FAILED:
                failed += 1
        if failed:
            logger.warning("Failed %d stalled bulk requests", failed)
        return failed
