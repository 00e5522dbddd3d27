"""Streams a bulk request's spreadsheet through its row processor.

Counters are flushed in batches with atomic increments, and the job's
cancellation token is polled between rows. A redelivered job resumes after
the rows already counted, so counters never go backwards. A flush that finds
the request already finished by another process stops the worker.

Media is downloaded per row by default. With ``process_media_in_first_phase``
turned off, rows are saved with their URLs pending and a second phase
downloads media for the whole request in chunks under one concurrency cap.
"""
from __future__ import annotations

import logging
import posixpath
import uuid
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse

import httpx
from sqlalchemy.exc import DBAPIError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from bulkops.config import settings
from bulkops.exceptions import (
    BulkProcessingExcelParsingException,
    BulkProcessingRequestClosedException,
    JobCancelledException,
    StorageOperationFailedException,
)
from bulkops.models.bulk_request import (
    BulkProcessingRequest,
    BulkProcessingStatus,
    RowOutcome,
    build_row_log,
    utcnow,
)
from bulkops.models.stored_file import StoredFile
from bulkops.plugins import registry
from bulkops.plugins.base import PendingMedia, RowContext, RowProcessorPlugin
from bulkops.schemas.bulk_request import ProcessingOptions
from bulkops.services import bulk_repository as repo
from bulkops.services import queue_bridge as qb
from bulkops.services.bulk_lifecycle import BulkLifecycle
from bulkops.services.event_handlers import media_prefix
from bulkops.services.media import MediaDownloader, MediaResult
from bulkops.services.spreadsheet import SheetRow, spool_to_tempfile, stream_rows
from bulkops.services.storage import S3StorageProvider

logger = logging.getLogger(__name__)

MEDIA_PHASE_CHUNK_SIZE = 50


@dataclass
class RowResult:
    outcome: RowOutcome
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    entity_id: str | None = None


@dataclass
class _ProgressBatch:
    successful: int = 0
    failed: int = 0
    logs: list[dict[str, Any]] = field(default_factory=list)

    @property
    def size(self) -> int:
        return self.successful + self.failed

    def add(self, row_number: int, result: RowResult) -> None:
        if result.outcome == RowOutcome.FAILED:
            self.failed += 1
        else:
            self.successful += 1
        entry = build_row_log(result.outcome, row_number, result.errors, result.warnings, result.entity_id)
        if entry is not None:
            self.logs.append(entry)


class RowProcessingEngine:
    def __init__(
        self,
        db: Session,
        storage: S3StorageProvider,
        bridge: qb.JobQueueBridge,
        lifecycle: BulkLifecycle,
        flush_interval: int | None = None,
        cancellation_check_interval: int | None = None,
        media_transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.db = db
        self.storage = storage
        self.bridge = bridge
        self.lifecycle = lifecycle
        self.flush_interval = max(1, flush_interval or settings.BULK_PROGRESS_FLUSH_INTERVAL)
        self.check_interval = max(1, cancellation_check_interval or settings.BULK_CANCELLATION_CHECK_INTERVAL)
        self.media_transport = media_transport

    def run(self, job_id: str, request_id: uuid.UUID, company_id: uuid.UUID) -> BulkProcessingStatus | None:
        """Process one job to a terminal state, or raise for a transient error."""
        request = repo.get_request(self.db, request_id, company_id)
        if request is None:
            logger.error("Bulk request %s not found for job %s", request_id, job_id)
            self.bridge.mark_finished(job_id, qb.FAILED, "request not found")
            return None

        claim = self.bridge.claim(job_id)
        if claim == "cancelled":
            logger.info("Job %s was cancelled before it started", job_id)
            return self.lifecycle.finalize_cancellation(request.id, reason="cancelled before start")
        if claim == "finished" or request.status.is_terminal:
            logger.info("Job %s already finished (%s); skipping", job_id, request.status.value)
            return request.status
        if request.status == BulkProcessingStatus.CANCELLING:
            return self.lifecycle.finalize_cancellation(request.id)

        plugin = registry.get("processor", request.type.value)
        if plugin is None:
            return self.lifecycle.fail(request.id, f"No row processor registered for '{request.type.value}'")

        resume_after = 0
        if request.status == BulkProcessingStatus.PENDING:
            if not repo.transition_status(
                self.db, request.id, BulkProcessingStatus.PROCESSING, {BulkProcessingStatus.PENDING},
                started_at=utcnow(),
            ):
                current = repo.get_request(self.db, request.id)
                if current is not None and current.status == BulkProcessingStatus.CANCELLING:
                    return self.lifecycle.finalize_cancellation(request.id)
                return current.status if current is not None else None
            self.lifecycle.mark_file_processing(request)
            logger.info("Started bulk request %s (job %s)", request.id, job_id)
        else:
            resume_after = request.processed_rows
            logger.info("Resuming bulk request %s after %d processed rows", request.id, resume_after)

        request = repo.get_request(self.db, request.id)
        stored = self.db.get(StoredFile, request.file_id)
        if stored is None:
            return self.lifecycle.fail(request.id, f"Source file {request.file_id} no longer exists")

        options = ProcessingOptions.model_validate(request.options or {})
        try:
            return self._process_file(job_id, request, stored, plugin, options, resume_after)
        except JobCancelledException:
            logger.info("Job %s observed cancellation", job_id)
            return self.lifecycle.finalize_cancellation(request.id, reason="cancelled while processing")
        except BulkProcessingExcelParsingException as exc:
            logger.warning("Bulk request %s has an unreadable spreadsheet: %s", request.id, exc.message)
            return self.lifecycle.fail(request.id, exc.message)
        except BulkProcessingRequestClosedException as exc:
            logger.warning("Job %s stopped: %s", job_id, exc.message)
            current = repo.get_request(self.db, request.id)
            return current.status if current is not None else None

    def _process_file(
        self,
        job_id: str,
        request: BulkProcessingRequest,
        stored: StoredFile,
        plugin: RowProcessorPlugin,
        options: ProcessingOptions,
        resume_after: int,
    ) -> BulkProcessingStatus:
        body = self.storage.get_object_stream(stored.object_key, bucket=stored.bucket)
        try:
            handle = spool_to_tempfile(body)
        finally:
            body.close()

        downloads_media = not options.skip_media_download and not options.dry_run
        context = RowContext(
            db=self.db,
            request_id=request.id,
            company_id=request.company_id,
            requested_by=request.requested_by,
            options=options,
            defer_media=downloads_media and not options.process_media_in_first_phase,
        )
        downloader = self._downloader_for(options)
        batch = _ProgressBatch()
        processed = resume_after
        data_rows = 0
        try:
            rows = stream_rows(
                handle,
                stored.filename,
                plugin.column_mapping,
                start_row=options.start_row,
                skip_empty_rows=options.skip_empty_rows,
                trim_values=options.trim_values,
                sheet_name=options.sheet_name,
            )
            try:
                for row in rows:
                    data_rows += 1
                    if data_rows <= resume_after:
                        continue
                    if (data_rows - 1) % self.check_interval == 0:
                        if self.bridge.is_cancelled(job_id):
                            self._flush(request, batch, options, job_id, processed)
                            raise JobCancelledException(f"Job {job_id} cancelled before row {row.row_number}")
                        self.bridge.heartbeat(job_id, processed)

                    result = self.process_row(plugin, row, context, options, downloader)
                    batch.add(row.row_number, result)
                    processed += 1

                    if result.outcome == RowOutcome.FAILED and options.stops_on_row_failure:
                        self._flush(request, batch, options, job_id, processed)
                        reason = "; ".join(result.errors)
                        return self.lifecycle.fail(
                            request.id, f"Stopping at row {row.row_number} due to validation errors: {reason}"
                        )
                    if batch.size >= self.flush_interval:
                        self._flush(request, batch, options, job_id, processed)
            finally:
                rows.close()
        except (OperationalError, StorageOperationFailedException):
            # Keep what was done so a retry resumes after it
            try:
                self._flush(request, batch, options, job_id, processed)
            except SQLAlchemyError:
                logger.warning("Could not save progress of request %s before retry", request.id)
                self.db.rollback()
            raise
        finally:
            handle.close()

        self._flush(request, batch, options, job_id, processed)
        repo.set_total_rows(self.db, request.id, data_rows)
        logger.info("Bulk request %s streamed %d rows", request.id, data_rows)
        if context.defer_media:
            self._process_pending_media(job_id, request, plugin, context, options, downloader, processed)
        return self.lifecycle.complete(request.id)

    def _flush(
        self,
        request: BulkProcessingRequest,
        batch: _ProgressBatch,
        options: ProcessingOptions,
        job_id: str,
        processed: int,
    ) -> None:
        if batch.size == 0:
            return
        applied = repo.apply_progress(
            self.db,
            request.id,
            successful=batch.successful,
            failed=batch.failed,
            new_logs=batch.logs,
            max_stored_errors=options.max_stored_errors,
            max_stored_warnings=options.max_stored_warnings,
        )
        if not applied:
            raise BulkProcessingRequestClosedException(
                f"Request {request.id} was finished elsewhere; {batch.size} rows were not counted",
                {"request_id": str(request.id)},
            )
        logger.debug("Request %s: %d rows processed", request.id, processed)
        self.bridge.heartbeat(job_id, processed)
        batch.successful = 0
        batch.failed = 0
        batch.logs = []

    def process_row(
        self,
        plugin: RowProcessorPlugin,
        row: SheetRow,
        context: RowContext,
        options: ProcessingOptions,
        downloader: MediaDownloader | None = None,
    ) -> RowResult:
        values = row.values
        if options.skip_validation:
            errors, warnings = [], []
        else:
            errors, warnings = plugin.validate_row(values, options)
        if options.treat_warnings_as_errors and warnings:
            errors, warnings = errors + warnings, []
        if errors:
            return RowResult(RowOutcome.FAILED, errors, warnings)

        media: dict[str, list[str]] = {}
        if not options.skip_media_download and not options.dry_run and not context.defer_media:
            urls = plugin.media_urls(values)
            if urls:
                media, media_errors = self._download_media(
                    downloader or self._downloader_for(options), urls, row.row_number, context
                )
                if media_errors:
                    if not options.continue_on_media_error:
                        return RowResult(RowOutcome.FAILED, media_errors, warnings)
                    warnings = warnings + media_errors

        if options.dry_run:
            return RowResult(RowOutcome.WARNING if warnings else RowOutcome.SUCCESS, [], warnings)

        try:
            entity_id = plugin.persist_row(values, row.row_number, media, context)
        except (OperationalError, DBAPIError) as exc:
            self.db.rollback()
            if isinstance(exc, OperationalError) or exc.connection_invalidated:
                raise
            return RowResult(RowOutcome.FAILED, [f"Could not save row: {exc.orig}"], warnings)
        except (SQLAlchemyError, ValueError, TypeError) as exc:
            self.db.rollback()
            return RowResult(RowOutcome.FAILED, [f"Could not save row: {exc}"], warnings)
        outcome = RowOutcome.WARNING if warnings else RowOutcome.SUCCESS
        return RowResult(outcome, [], warnings, entity_id)

    def _downloader_for(self, options: ProcessingOptions) -> MediaDownloader:
        return MediaDownloader(
            max_concurrency=options.max_media_concurrency,
            timeout_seconds=options.media_download_timeout,
            transport=self.media_transport,
        )

    def _download_media(
        self,
        downloader: MediaDownloader,
        urls: dict[str, list[str]],
        row_number: int,
        context: RowContext,
    ) -> tuple[dict[str, list[str]], list[str]]:
        flat = [(kind, url) for kind, kind_urls in urls.items() for url in kind_urls]
        results = downloader.download([url for _kind, url in flat])
        return self._store_media(flat, results, row_number, context)

    def _store_media(
        self,
        flat: list[tuple[str, str]],
        results: list[MediaResult],
        row_number: int,
        context: RowContext,
    ) -> tuple[dict[str, list[str]], list[str]]:
        stored: dict[str, list[str]] = {}
        errors: list[str] = []
        prefix = media_prefix(context.company_id, context.request_id)
        for index, ((kind, url), result) in enumerate(zip(flat, results), start=1):
            if not result.ok:
                errors.append(f"Failed to download {kind} {url}: {result.error}")
                continue
            name = posixpath.basename(urlparse(url).path) or "file"
            key = f"{prefix}{row_number}/{index}_{name}"
            try:
                self.storage.put_object(key, result.content or b"", result.content_type or "application/octet-stream")
            except StorageOperationFailedException as exc:
                errors.append(f"Failed to store {kind} {url}: {exc.message}")
                continue
            stored.setdefault(kind, []).append(key)
        return stored, errors

    def _process_pending_media(
        self,
        job_id: str,
        request: BulkProcessingRequest,
        plugin: RowProcessorPlugin,
        context: RowContext,
        options: ProcessingOptions,
        downloader: MediaDownloader,
        processed: int,
    ) -> None:
        """Download media for every row saved with pending URLs, one chunk at a time.

        All URLs of a chunk share the downloader's concurrency cap. Rows were
        already counted, so failed downloads become row warnings.
        """
        attached = 0
        while True:
            if self.bridge.is_cancelled(job_id):
                raise JobCancelledException(f"Job {job_id} cancelled during media download")
            self.bridge.heartbeat(job_id, processed)
            pending = plugin.pending_media(self.db, request.id, request.company_id, MEDIA_PHASE_CHUNK_SIZE)
            if not pending:
                break

            flat: list[tuple[PendingMedia, str, str]] = [
                (entry, kind, url) for entry in pending for kind, urls in entry.urls.items() for url in urls
            ]
            results = downloader.download([url for _entry, _kind, url in flat])

            logs: list[dict[str, Any]] = []
            offset = 0
            for entry in pending:
                count = sum(len(urls) for urls in entry.urls.values())
                item_flat = [(kind, url) for _entry, kind, url in flat[offset:offset + count]]
                media, errors = self._store_media(item_flat, results[offset:offset + count], entry.row_number, context)
                offset += count
                plugin.attach_media(self.db, entry.entity_id, media)
                if errors:
                    log = build_row_log(RowOutcome.WARNING, entry.row_number, [], errors, entry.entity_id)
                    if log is not None:
                        logs.append(log)
            attached += len(pending)

            # Also bumps updated_at so the stall sweep leaves the request alone
            if not repo.apply_progress(
                self.db,
                request.id,
                successful=0,
                failed=0,
                new_logs=logs,
                max_stored_errors=options.max_stored_errors,
                max_stored_warnings=options.max_stored_warnings,
            ):
                raise BulkProcessingRequestClosedException(
                    f"Request {request.id} was finished elsewhere during media download",
                    {"request_id": str(request.id)},
                )
            logger.debug("Request %s: media attached to %d rows", request.id, attached)

        logger.info("Bulk request %s attached media to %d rows", request.id, attached)
