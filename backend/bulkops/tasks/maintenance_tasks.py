from __future__ import annotations

import logging

from bulkops.database import sync_session_factory
from bulkops.plugins import registry
from bulkops.services.bulk_service import fail_stalled_requests, reconcile_stuck_cancelling
from bulkops.services.concurrency import BULK_JOBS_SCOPE, UPLOADS_SCOPE, ConcurrencyLimiter
from bulkops.services.queue_bridge import JobQueueBridge
from bulkops.services.redis_client import get_redis
from bulkops.services.upload_service import UploadSessionManager
from bulkops.tasks.bulk_tasks import build_dispatcher
from bulkops.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(name="bulkops.tasks.maintenance_tasks.cleanup_expired_uploads")
def cleanup_expired_uploads(inactivity_threshold_minutes: int | None = None) -> dict:
    """Periodic task: abort multipart uploads nobody touched for a while."""
    dispatcher = build_dispatcher()
    limiter = ConcurrencyLimiter(get_redis(), scope=UPLOADS_SCOPE)
    with sync_session_factory() as db:
        manager = UploadSessionManager(db, dispatcher.storage, limiter)
        cleaned = manager.cleanup_expired_uploads(inactivity_threshold_minutes)
    return {"cleaned": cleaned}


@celery_app.task(name="bulkops.tasks.maintenance_tasks.reconcile_bulk_requests")
def reconcile_bulk_requests() -> dict:
    """Periodic task: finish stuck cancellations and fail stalled jobs."""
    registry.ensure_discovered()
    bridge = JobQueueBridge(celery_app, get_redis())
    dispatcher = build_dispatcher()
    with sync_session_factory() as db:
        cancelled = reconcile_stuck_cancelling(db, bridge, dispatcher)
        failed = fail_stalled_requests(db, bridge, dispatcher)
    return {"cancelled": cancelled, "failed": failed}


@celery_app.task(name="bulkops.tasks.maintenance_tasks.prune_concurrency_index")
def prune_concurrency_index() -> dict:
    """Periodic task: drop users whose slot counters expired from the active-user sets."""
    client = get_redis()
    pruned = {}
    for scope in (UPLOADS_SCOPE, BULK_JOBS_SCOPE):
        pruned[scope] = ConcurrencyLimiter(client, scope=scope).prune_active_users()
    if any(pruned.values()):
        logger.info("Pruned concurrency index: %s", pruned)
    return pruned
