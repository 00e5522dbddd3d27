from __future__ import annotations

from celery import Celery
from celery.signals import worker_init

from bulkops.config import settings

celery_app = Celery(
    "bulkops",
    broker=settings.broker_url,
    include=["bulkops.tasks.bulk_tasks", "bulkops.tasks.maintenance_tasks"],
)
celery_app.conf.update(
    result_backend=settings.REDIS_URL,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    task_default_queue=settings.BULK_QUEUE_NAME,
    # Redeliver jobs whose worker died mid-file; the engine resumes them
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    beat_schedule={
        "cleanup-expired-uploads": {
            "task": "bulkops.tasks.maintenance_tasks.cleanup_expired_uploads",
            "schedule": settings.UPLOAD_CLEANUP_INTERVAL_SECONDS,
        },
        "reconcile-bulk-requests": {
            "task": "bulkops.tasks.maintenance_tasks.reconcile_bulk_requests",
            "schedule": settings.BULK_RECONCILE_INTERVAL_SECONDS,
        },
        "prune-concurrency-index": {
            "task": "bulkops.tasks.maintenance_tasks.prune_concurrency_index",
            "schedule": settings.CONCURRENCY_SLOT_TTL_SECONDS,
        },
    },
)


@worker_init.connect
def on_worker_init(**kwargs):  # type: ignore[no-untyped-def]
    """Discover plugins when the Celery worker starts."""
    from bulkops.plugins import registry
    registry.discover()
