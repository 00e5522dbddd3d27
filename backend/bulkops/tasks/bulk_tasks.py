from __future__ import annotations

import logging
import uuid

from sqlalchemy.exc import OperationalError

from bulkops.config import settings
from bulkops.database import sync_session_factory
from bulkops.exceptions import QueueUnavailableException, StorageOperationFailedException
from bulkops.plugins import registry
from bulkops.services.bulk_lifecycle import BulkLifecycle
from bulkops.services.bulk_service import handle_job_failure
from bulkops.services.concurrency import BULK_JOBS_SCOPE, ConcurrencyLimiter
from bulkops.services.event_handlers import BulkEventDispatcher
from bulkops.services.queue_bridge import COMPLETED, JobQueueBridge
from bulkops.services.redis_client import get_redis
from bulkops.services.row_engine import RowProcessingEngine
from bulkops.services.storage import build_storage_provider
from bulkops.services.upload_service import erase_stored_files
from bulkops.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (OperationalError, StorageOperationFailedException, QueueUnavailableException)


def retry_countdown(retries: int) -> int:
    """Exponential backoff in seconds for the given retry number, capped."""
    return min(
        settings.BULK_JOB_RETRY_BACKOFF_SECONDS * (2 ** retries),
        settings.BULK_JOB_RETRY_BACKOFF_MAX_SECONDS,
    )


def build_dispatcher() -> BulkEventDispatcher:
    client = get_redis()
    return BulkEventDispatcher(
        client=client,
        limiter=ConcurrencyLimiter(client, scope=BULK_JOBS_SCOPE),
        storage=build_storage_provider(),
    )


@celery_app.task(
    name="bulkops.tasks.bulk_tasks.process_bulk_request",
    bind=True,
    max_retries=settings.BULK_JOB_MAX_RETRIES,
    acks_late=True,
)
def process_bulk_request(self, job_id: str, request_id: str, company_id: str) -> dict:  # type: ignore[no-untyped-def]
    """Run one bulk request through the row engine."""
    registry.ensure_discovered()
    request_uuid = uuid.UUID(request_id)
    bridge = JobQueueBridge(celery_app, get_redis())
    dispatcher = build_dispatcher()

    with sync_session_factory() as db:
        lifecycle = BulkLifecycle(db, bridge, dispatcher)
        engine = RowProcessingEngine(db, dispatcher.storage, bridge, lifecycle)
        try:
            status = engine.run(job_id, request_uuid, uuid.UUID(company_id))
        except TRANSIENT_ERRORS as exc:
            db.rollback()
            if self.request.retries >= self.max_retries:
                logger.error("Job %s exhausted %d retries", job_id, self.max_retries)
                status = handle_job_failure(db, bridge, dispatcher, request_uuid, exc)
                return {"job_id": job_id, "request_id": request_id, "status": status.value}
            countdown = retry_countdown(self.request.retries)
            logger.warning("Job %s hit a transient error, retrying in %ds: %s", job_id, countdown, exc)
            bridge.mark_delayed(job_id, str(exc))
            raise self.retry(exc=exc, countdown=countdown)
        except Exception as exc:
            logger.exception("Job %s failed", job_id)
            db.rollback()
            status = handle_job_failure(db, bridge, dispatcher, request_uuid, exc)

    return {
        "job_id": job_id,
        "request_id": request_id,
        "status": status.value if status is not None else None,
    }


@celery_app.task(name="bulkops.tasks.bulk_tasks.cleanup_temp_files")
def cleanup_temp_files(job_id: str, request_id: str, company_id: str, file_ids: list[str]) -> dict:
    """Erase source files consumed by a completed bulk request."""
    bridge = JobQueueBridge(celery_app, get_redis())
    bridge.claim(job_id)
    with sync_session_factory() as db:
        erased = erase_stored_files(db, build_storage_provider(), file_ids)
    bridge.mark_finished(job_id, COMPLETED)
    logger.info("Cleanup job %s for request %s erased %d files", job_id, request_id, erased)
    return {"job_id": job_id, "erased": erased, "total": len(file_ids)}
