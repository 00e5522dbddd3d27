"""Reactions to a bulk request reaching a terminal state.

Handlers run after the terminal transition is committed. Each step is guarded
on its own: a broken notifier or metrics store is logged and never changes the
outcome of the request.
"""
from __future__ import annotations

import asyncio
import enum
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import redis

from bulkops.models.bulk_request import BulkProcessingRequest
from bulkops.plugins import registry
from bulkops.services.concurrency import ConcurrencyLimiter
from bulkops.services.storage import S3StorageProvider

logger = logging.getLogger(__name__)


class FailureKind(str, enum.Enum):
    TOTAL_FAILURE = "total_failure"
    PARTIAL_FAILURE = "partial_failure"


@dataclass
class BulkRequestOutcome:
    request_id: uuid.UUID
    company_id: uuid.UUID
    requested_by: uuid.UUID
    type: str
    status: str
    file_id: uuid.UUID
    file_name: str
    job_id: str | None
    total_rows: int | None
    processed_rows: int
    successful_rows: int
    failed_rows: int
    error_message: str | None = None
    reason: str | None = None

    @classmethod
    def from_request(cls, request: BulkProcessingRequest, reason: str | None = None) -> BulkRequestOutcome:
        return cls(
            request_id=request.id,
            company_id=request.company_id,
            requested_by=request.requested_by,
            type=request.type.value,
            status=request.status.value,
            file_id=request.file_id,
            file_name=request.file_name,
            job_id=request.job_id,
            total_rows=request.total_rows,
            processed_rows=request.processed_rows,
            successful_rows=request.successful_rows,
            failed_rows=request.failed_rows,
            error_message=request.error_message,
            reason=reason,
        )

    @property
    def has_errors(self) -> bool:
        return self.failed_rows > 0

    @property
    def success_rate(self) -> float:
        if self.processed_rows == 0:
            return 0.0
        return round(self.successful_rows / self.processed_rows * 100, 2)


def classify_failure(outcome: BulkRequestOutcome) -> FailureKind:
    if outcome.successful_rows == 0:
        return FailureKind.TOTAL_FAILURE
    return FailureKind.PARTIAL_FAILURE


def media_prefix(company_id: uuid.UUID, request_id: uuid.UUID) -> str:
    return f"{company_id}/media/{request_id}/"


class BulkEventDispatcher:
    def __init__(
        self,
        client: redis.Redis | None = None,
        limiter: ConcurrencyLimiter | None = None,
        storage: S3StorageProvider | None = None,
    ):
        self.redis = client
        self.limiter = limiter
        self.storage = storage

    # --- events ---

    def on_completed(self, outcome: BulkRequestOutcome) -> None:
        logger.info(
            "Bulk request %s completed: %d/%d rows succeeded (%.2f%%)",
            outcome.request_id, outcome.successful_rows, outcome.processed_rows, outcome.success_rate,
        )
        self._guard("release slot", outcome, lambda: self._release_slot(outcome))
        self._guard(
            "metrics",
            outcome,
            lambda: self._record_metrics(
                outcome,
                {
                    "completed": 1,
                    "completed_with_errors": 1 if outcome.has_errors else 0,
                    "rows_processed": outcome.processed_rows,
                    "rows_failed": outcome.failed_rows,
                },
            ),
        )
        subject = "Bulk processing completed"
        if outcome.has_errors:
            subject = "Bulk processing completed with errors"
        body = (
            f"{outcome.file_name}: {outcome.successful_rows} of {outcome.processed_rows} rows imported, "
            f"{outcome.failed_rows} failed."
        )
        self._guard("notify", outcome, lambda: self._notify(subject, body, outcome))

    def on_failed(self, outcome: BulkRequestOutcome) -> None:
        kind = classify_failure(outcome)
        logger.error(
            "Bulk request %s failed (%s): %s [processed=%d successful=%d failed=%d job=%s]",
            outcome.request_id, kind.value, outcome.error_message, outcome.processed_rows,
            outcome.successful_rows, outcome.failed_rows, outcome.job_id,
        )
        self._guard("release slot", outcome, lambda: self._release_slot(outcome))
        self._guard(
            "metrics",
            outcome,
            lambda: self._record_metrics(
                outcome,
                {
                    "failed": 1,
                    f"failed_{kind.value}": 1,
                    "rows_processed": outcome.processed_rows,
                    "rows_failed": outcome.failed_rows,
                },
            ),
        )
        body = (
            f"{outcome.file_name}: processing failed after {outcome.processed_rows} rows "
            f"({outcome.successful_rows} imported). Reason: {outcome.error_message or 'unknown'}"
        )
        self._guard("notify", outcome, lambda: self._notify("Bulk processing failed", body, outcome))
        if kind == FailureKind.TOTAL_FAILURE:
            self._guard("cleanup", outcome, lambda: self._cleanup_partial(outcome))

    def on_cancelled(self, outcome: BulkRequestOutcome) -> None:
        logger.info(
            "Bulk request %s cancelled after %d rows (%s)",
            outcome.request_id, outcome.processed_rows, outcome.reason or "no reason given",
        )
        self._guard("release slot", outcome, lambda: self._release_slot(outcome))
        self._guard("metrics", outcome, lambda: self._record_metrics(outcome, {"cancelled": 1}))
        self._guard("cleanup", outcome, lambda: self._cleanup_partial(outcome))
        body = f"{outcome.file_name}: processing was cancelled after {outcome.processed_rows} rows."
        self._guard("notify", outcome, lambda: self._notify("Bulk processing cancelled", body, outcome))

    # --- steps ---

    def _guard(self, step: str, outcome: BulkRequestOutcome, fn: Callable[[], Any]) -> None:
        try:
            fn()
        except Exception:
            logger.exception("Post-%s step '%s' failed for bulk request %s", outcome.status, step, outcome.request_id)

    def _release_slot(self, outcome: BulkRequestOutcome) -> None:
        if self.limiter is not None:
            self.limiter.release_slot(outcome.requested_by)

    def _record_metrics(self, outcome: BulkRequestOutcome, counters: dict[str, int]) -> None:
        if self.redis is None:
            return
        key = f"bulkops:metrics:{outcome.company_id}"
        pipe = self.redis.pipeline()
        for field, amount in counters.items():
            if amount:
                pipe.hincrby(key, f"{outcome.type}:{field}", amount)
        pipe.execute()

    def _cleanup_partial(self, outcome: BulkRequestOutcome) -> None:
        if self.storage is None:
            return
        keys = self.storage.list_prefix(media_prefix(outcome.company_id, outcome.request_id))
        for key in keys:
            self.storage.delete_object(key)
        if keys:
            logger.info("Removed %d media objects of bulk request %s", len(keys), outcome.request_id)

    def _notify(self, subject: str, body: str, outcome: BulkRequestOutcome) -> None:
        notifiers = list(registry.get_all("notification").values())
        if not notifiers:
            return

        async def _send_all() -> list[Any]:
            return await asyncio.gather(
                *(
                    n.send(
                        subject,
                        body,
                        recipient=str(outcome.requested_by),
                        request_id=str(outcome.request_id),
                        status=outcome.status,
                    )
                    for n in notifiers
                ),
                return_exceptions=True,
            )

        for notifier, result in zip(notifiers, asyncio.run(_send_all())):
            if isinstance(result, Exception) or result is False:
                logger.warning("Notifier %s failed for bulk request %s: %s", notifier.name, outcome.request_id, result)
