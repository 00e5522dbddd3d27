"""Bridge between bulk requests and the Celery queue.

Celery alone cannot tell a waiting job from an unknown one, so the bridge keeps
a small job record in Redis (``bulkops:job:<job_id>``). The worker claims the
record when it starts and the cancel path flags it; both run as Lua scripts,
so a job is either claimed before the flag lands (and sees it on its next
check) or refuses to start.
"""
from __future__ import annotations

import hashlib
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

import redis
from kombu.exceptions import OperationalError

from bulkops.config import settings
from bulkops.exceptions import QueueUnavailableException
from bulkops.models.bulk_request import BulkProcessingType

logger = logging.getLogger(__name__)

PROCESS_TASK_NAME = "bulkops.tasks.bulk_tasks.process_bulk_request"
CLEANUP_TASK_NAME = "bulkops.tasks.bulk_tasks.cleanup_temp_files"

WAITING = "waiting"
ACTIVE = "active"
DELAYED = "delayed"
COMPLETED = "completed"
FAILED = "failed"
STALLED = "stalled"
NOT_FOUND = "not_found"

# Returns {outcome, previous_state}; outcome is claimed, cancelled or finished
_CLAIM_LUA = """
local key = KEYS[1]
local state = redis.call('HGET', key, 'state') or ''
if redis.call('HGET', key, 'cancelled') == '1' then
  return {'cancelled', state}
end
if state == 'completed' or state == 'failed' then
  return {'finished', state}
end
redis.call('HSET', key, 'state', 'active', 'heartbeat_at', ARGV[1])
return {'claimed', state}
"""

# Returns the state the job was in when the flag was set
_CANCEL_LUA = """
local key = KEYS[1]
if redis.call('EXISTS', key) == 0 then
  return 'not_found'
end
local state = redis.call('HGET', key, 'state') or 'waiting'
if state == 'completed' or state == 'failed' then
  return state
end
redis.call('HSET', key, 'cancelled', '1', 'cancelled_at', ARGV[1])
return state
"""


@dataclass
class CancellationResult:
    success: bool
    previous_state: str
    message: str = ""


@dataclass
class JobStatus:
    exists: bool
    state: str
    progress: int = 0
    data: dict[str, Any] = field(default_factory=dict)
    failed_reason: str | None = None


def _text(value: Any) -> str:
    return value.decode() if isinstance(value, bytes) else str(value)


def generate_job_id(processing_type: BulkProcessingType, request_id: uuid.UUID) -> str:
    """One job id per request, so re-enqueueing the same request is idempotent."""
    return f"{processing_type.value}-{request_id}"


def generate_cleanup_job_id(file_ids: list[str]) -> str:
    digest = hashlib.sha256(",".join(sorted(file_ids)).encode()).hexdigest()[:24]
    return f"{BulkProcessingType.CLEANUP_TEMP_FILES.value}-{digest}"


class JobQueueBridge:
    def __init__(self, celery_app: Any, client: redis.Redis):
        self.celery_app = celery_app
        self.redis = client
        self._claim = client.register_script(_CLAIM_LUA)
        self._cancel = client.register_script(_CANCEL_LUA)

    @staticmethod
    def job_key(job_id: str) -> str:
        return f"bulkops:job:{job_id}"

    # --- producer side ---

    def enqueue(
        self,
        request_id: uuid.UUID,
        company_id: uuid.UUID,
        processing_type: BulkProcessingType,
        job_id: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> str:
        """Record the job as waiting and hand it to Celery. Raises QueueUnavailableException."""
        job_id = job_id or generate_job_id(processing_type, request_id)
        key = self.job_key(job_id)
        try:
            existing = self.redis.hget(key, "state")
            if existing is not None and _text(existing) not in (COMPLETED, FAILED):
                logger.info("Job %s already queued (%s); not dispatching again", job_id, _text(existing))
                return job_id
            self.redis.delete(key)
            self.redis.hset(
                key,
                mapping={
                    "state": WAITING,
                    "request_id": str(request_id),
                    "company_id": str(company_id),
                    "type": processing_type.value,
                    "progress": 0,
                    "enqueued_at": time.time(),
                },
            )
        except redis.RedisError as exc:
            raise QueueUnavailableException(f"Could not record job {job_id}: {exc}") from exc

        task_name = (
            CLEANUP_TASK_NAME if processing_type == BulkProcessingType.CLEANUP_TEMP_FILES else PROCESS_TASK_NAME
        )
        kwargs = {"job_id": job_id, "request_id": str(request_id), "company_id": str(company_id)}
        kwargs.update(payload or {})
        try:
            self.celery_app.send_task(
                task_name,
                kwargs=kwargs,
                task_id=job_id,
                queue=settings.BULK_QUEUE_NAME,
            )
        except (OperationalError, redis.RedisError, ConnectionError) as exc:
            logger.error("Failed to dispatch job %s: %s", job_id, exc)
            try:
                self.redis.delete(key)
            except redis.RedisError:
                logger.warning("Could not remove record of undispatched job %s", job_id)
            raise QueueUnavailableException(f"Could not enqueue job {job_id}: {exc}") from exc

        logger.info("Enqueued %s job %s for request %s", processing_type.value, job_id, request_id)
        return job_id

    def cancel_job(self, job_id: str) -> CancellationResult:
        """
        Flag a job as cancelled.

        Waiting and delayed jobs are also revoked, which makes the cancellation
        definitive. Active jobs only get the flag and stop at their next check.
        """
        try:
            previous = _text(self._cancel(keys=[self.job_key(job_id)], args=[time.time()]))
            if previous == ACTIVE and self._is_stalled(job_id):
                previous = STALLED
        except redis.RedisError as exc:
            raise QueueUnavailableException(f"Could not cancel job {job_id}: {exc}") from exc

        if previous == NOT_FOUND:
            return CancellationResult(False, NOT_FOUND, f"Job {job_id} not found")
        if previous in (COMPLETED, FAILED):
            return CancellationResult(False, previous, f"Job {job_id} already {previous}")
        if previous == ACTIVE:
            return CancellationResult(True, ACTIVE, "Cancellation requested; the worker will stop at its next check")

        try:
            self.celery_app.control.revoke(job_id)
        except (OperationalError, redis.RedisError, ConnectionError) as exc:
            # The flag is already set, so the job refuses to start even if the revoke is lost
            logger.warning("Could not revoke job %s: %s", job_id, exc)
        return CancellationResult(True, previous, f"Job {job_id} cancelled while {previous}")

    def get_job_status(self, job_id: str) -> JobStatus:
        try:
            raw = self.redis.hgetall(self.job_key(job_id))
        except redis.RedisError as exc:
            raise QueueUnavailableException(f"Could not read job {job_id}: {exc}") from exc
        if not raw:
            return JobStatus(exists=False, state=NOT_FOUND)
        data = {_text(k): _text(v) for k, v in raw.items()}
        state = data.get("state", WAITING)
        if state == ACTIVE and self._heartbeat_expired(data):
            state = STALLED
        return JobStatus(
            exists=True,
            state=state,
            progress=int(float(data.get("progress", 0) or 0)),
            data=data,
            failed_reason=data.get("failed_reason") or None,
        )

    # --- worker side ---

    def claim(self, job_id: str) -> str:
        """Mark the job active. Returns ``claimed``, ``cancelled`` or ``finished``."""
        try:
            outcome, _previous = self._claim(keys=[self.job_key(job_id)], args=[time.time()])
        except redis.RedisError as exc:
            raise QueueUnavailableException(f"Could not claim job {job_id}: {exc}") from exc
        return _text(outcome)

    def is_cancelled(self, job_id: str) -> bool:
        try:
            flag = self.redis.hget(self.job_key(job_id), "cancelled")
        except redis.RedisError:
            logger.warning("Could not read cancellation flag for job %s", job_id)
            return False
        return flag is not None and _text(flag) == "1"

    def heartbeat(self, job_id: str, progress: int | None = None) -> None:
        values: dict[str, Any] = {"heartbeat_at": time.time()}
        if progress is not None:
            values["progress"] = progress
        try:
            self.redis.hset(self.job_key(job_id), mapping=values)
        except redis.RedisError:
            logger.warning("Could not record heartbeat for job %s", job_id)

    def mark_delayed(self, job_id: str, reason: str) -> None:
        try:
            self.redis.hset(self.job_key(job_id), mapping={"state": DELAYED, "failed_reason": reason[:500]})
        except redis.RedisError:
            logger.warning("Could not mark job %s as delayed", job_id)

    def mark_finished(self, job_id: str, state: str, failed_reason: str | None = None) -> None:
        key = self.job_key(job_id)
        values: dict[str, Any] = {"state": state, "finished_at": time.time()}
        if failed_reason:
            values["failed_reason"] = failed_reason[:500]
        try:
            self.redis.hset(key, mapping=values)
            self.redis.expire(key, settings.BULK_JOB_RECORD_TTL_SECONDS)
        except redis.RedisError:
            logger.warning("Could not mark job %s as %s", job_id, state)

    # --- helpers ---

    def _is_stalled(self, job_id: str) -> bool:
        heartbeat = self.redis.hget(self.job_key(job_id), "heartbeat_at")
        return self._heartbeat_expired({"heartbeat_at": _text(heartbeat) if heartbeat is not None else ""})

    @staticmethod
    def _heartbeat_expired(data: dict[str, str]) -> bool:
        try:
            last = float(data.get("heartbeat_at") or 0)
        except ValueError:
            return False
        return last > 0 and time.time() - last > settings.BULK_JOB_STALLED_SECONDS


def build_queue_bridge() -> JobQueueBridge:
    from bulkops.services.redis_client import get_redis
    from bulkops.tasks.celery_app import celery_app

    return JobQueueBridge(celery_app, get_redis())
