from __future__ import annotations

import time
import uuid
from datetime import timedelta
from unittest.mock import MagicMock

import httpx
import pytest
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from bulkops.config import settings
from bulkops.exceptions import StorageOperationFailedException
from bulkops.models.bulk_request import BulkProcessingRequest, BulkProcessingStatus, BulkProcessingType, utcnow
from bulkops.models.product_catalog import ProductCatalogItem
from bulkops.models.stored_file import FileStatus, StoredFile
from bulkops.plugins import registry
from bulkops.schemas.bulk_request import ProcessingOptions
from bulkops.services import queue_bridge as qb
from bulkops.services import row_engine
from bulkops.services.bulk_lifecycle import BulkLifecycle
from bulkops.services.bulk_service import cancel_bulk_processing_request, create_bulk_processing_request
from bulkops.services.concurrency import ConcurrencyLimiter
from bulkops.services.event_handlers import BulkEventDispatcher
from bulkops.services.queue_bridge import JobQueueBridge
from bulkops.services.row_engine import RowProcessingEngine
from bulkops.services.storage import S3StorageProvider


def _media_handler(request: httpx.Request) -> httpx.Response:
    if request.url.path.endswith("/missing.jpg"):
        return httpx.Response(404)
    return httpx.Response(200, content=b"\xff\xd8image", headers={"content-type": "image/jpeg"})


@pytest.fixture()
def engine(
    db: Session,
    storage: S3StorageProvider,
    bridge: JobQueueBridge,
    lifecycle: BulkLifecycle,
) -> RowProcessingEngine:
    return RowProcessingEngine(
        db,
        storage,
        bridge,
        lifecycle,
        flush_interval=2,
        cancellation_check_interval=1,
        media_transport=httpx.MockTransport(_media_handler),
    )


@pytest.fixture()
def submit(
    db: Session,
    bridge: JobQueueBridge,
    bulk_limiter: ConcurrencyLimiter,
    uploaded_file,
    make_xlsx,
    company_id: uuid.UUID,
    user_id: uuid.UUID,
):
    def _submit(rows: list[list], **options) -> BulkProcessingRequest:
        stored = uploaded_file(make_xlsx(rows))
        return create_bulk_processing_request(
            db,
            bridge,
            bulk_limiter,
            BulkProcessingType.PRODUCT_CATALOG,
            stored.id,
            company_id=company_id,
            requested_by=user_id,
            options=ProcessingOptions(**options),
        )

    return _submit


def _reload(db: Session, request: BulkProcessingRequest) -> BulkProcessingRequest:
    return db.get(BulkProcessingRequest, request.id, populate_existing=True)


def _items(db: Session) -> list[ProductCatalogItem]:
    return list(db.execute(select(ProductCatalogItem)).scalars())


def _file_status(db: Session, request: BulkProcessingRequest) -> FileStatus:
    return db.get(StoredFile, request.file_id, populate_existing=True).status


def test_processes_all_rows(
    engine: RowProcessingEngine,
    submit,
    make_catalog_row,
    db: Session,
    bridge: JobQueueBridge,
    bulk_limiter: ConcurrencyLimiter,
    celery_mock: MagicMock,
    company_id: uuid.UUID,
    user_id: uuid.UUID,
):
    request = submit([make_catalog_row() for _ in range(5)])
    assert bulk_limiter.get_current_count(user_id) == 1

    status = engine.run(request.job_id, request.id, company_id)

    assert status == BulkProcessingStatus.COMPLETED
    request = _reload(db, request)
    assert request.total_rows == 5
    assert request.processed_rows == 5
    assert request.successful_rows == 5
    assert request.failed_rows == 0
    assert request.progress_percentage == 100
    assert request.started_at is not None
    assert request.completed_at is not None
    assert request.metadata_["original_file_status"] == "uploaded"
    assert len(_items(db)) == 5

    assert _file_status(db, request) == FileStatus.ERASING
    assert celery_mock.send_task.call_args.args[0] == qb.CLEANUP_TASK_NAME
    assert celery_mock.send_task.call_args.kwargs["kwargs"]["file_ids"] == [str(request.file_id)]
    assert bridge.get_job_status(request.job_id).state == qb.COMPLETED
    assert bulk_limiter.get_current_count(user_id) == 0


def test_stop_on_first_error(
    engine: RowProcessingEngine,
    submit,
    make_catalog_row,
    db: Session,
    bulk_limiter: ConcurrencyLimiter,
    company_id: uuid.UUID,
    user_id: uuid.UUID,
):
    rows = [make_catalog_row(), make_catalog_row(), make_catalog_row(industry=None), make_catalog_row()]
    request = submit(rows, stop_on_first_error=True)

    status = engine.run(request.job_id, request.id, company_id)

    assert status == BulkProcessingStatus.FAILED
    request = _reload(db, request)
    assert request.processed_rows == 3
    assert request.successful_rows == 2
    assert request.failed_rows == 1
    assert request.error_message.startswith("Stopping at row 4")
    assert "Industry is required" in request.error_message
    assert request.total_rows is None
    assert request.progress_percentage is None
    assert _file_status(db, request) == FileStatus.UPLOADED
    assert bulk_limiter.get_current_count(user_id) == 0


def test_continue_on_error_records_row_logs(
    engine: RowProcessingEngine,
    submit,
    make_catalog_row,
    db: Session,
    company_id: uuid.UUID,
):
    rows = [
        make_catalog_row(),
        make_catalog_row(list_price=None),
        make_catalog_row(industry=None, payment_options="BARTER"),
        make_catalog_row(),
    ]
    request = submit(rows)

    status = engine.run(request.job_id, request.id, company_id)

    assert status == BulkProcessingStatus.COMPLETED
    request = _reload(db, request)
    assert request.processed_rows == 4
    assert request.successful_rows == 3
    assert request.failed_rows == 1
    assert request.has_errors()
    logs = {entry["row_number"]: entry for entry in request.row_logs}
    assert logs[3]["outcome"] == "warning"
    assert logs[3]["entity_id"]
    assert logs[4]["outcome"] == "failed"
    assert logs[4]["errors"] == ["Industry is required", "Invalid payment options: BARTER"]
    assert len(_items(db)) == 3


def test_stored_logs_are_capped(
    engine: RowProcessingEngine,
    submit,
    make_catalog_row,
    db: Session,
    company_id: uuid.UUID,
):
    request = submit([make_catalog_row(industry=None) for _ in range(5)], max_stored_errors=2)

    engine.run(request.job_id, request.id, company_id)

    request = _reload(db, request)
    assert request.failed_rows == 5
    assert len(request.row_logs) == 2


def test_cancel_while_processing(
    engine: RowProcessingEngine,
    submit,
    make_catalog_row,
    db: Session,
    bridge: JobQueueBridge,
    dispatcher: BulkEventDispatcher,
    bulk_limiter: ConcurrencyLimiter,
    monkeypatch: pytest.MonkeyPatch,
    company_id: uuid.UUID,
    user_id: uuid.UUID,
):
    request = submit([make_catalog_row() for _ in range(6)])
    plugin = registry.get("processor", BulkProcessingType.PRODUCT_CATALOG.value)
    original = plugin.persist_row
    cancel_results: list[dict] = []

    def _persist_then_cancel(values, row_number, media, context):
        entity_id = original(values, row_number, media, context)
        if row_number == 4:
            cancel_results.append(
                cancel_bulk_processing_request(db, bridge, dispatcher, request.id, company_id, user_id)
            )
        return entity_id

    monkeypatch.setattr(plugin, "persist_row", _persist_then_cancel)

    status = engine.run(request.job_id, request.id, company_id)

    assert cancel_results[0]["status"] == "cancelling"
    assert cancel_results[0]["previous_job_state"] == qb.ACTIVE
    assert status == BulkProcessingStatus.CANCELLED
    request = _reload(db, request)
    assert request.processed_rows == 3
    assert request.job_id is None
    assert request.completed_at is not None
    assert _items(db) == []
    assert _file_status(db, request) == FileStatus.UPLOADED
    assert bulk_limiter.get_current_count(user_id) == 0


def test_request_failed_by_stall_sweep_stops_the_worker(
    engine: RowProcessingEngine,
    submit,
    make_catalog_row,
    db: Session,
    bridge: JobQueueBridge,
    lifecycle: BulkLifecycle,
    bulk_limiter: ConcurrencyLimiter,
    monkeypatch: pytest.MonkeyPatch,
    company_id: uuid.UUID,
    user_id: uuid.UUID,
):
    request = submit([make_catalog_row() for _ in range(6)])
    plugin = registry.get("processor", BulkProcessingType.PRODUCT_CATALOG.value)
    original = plugin.persist_row
    swept: list[int] = []

    def _persist_then_sweep(values, row_number, media, context):
        entity_id = original(values, row_number, media, context)
        if row_number == 4:
            db.execute(
                update(BulkProcessingRequest)
                .where(BulkProcessingRequest.id == request.id)
                .values(updated_at=utcnow() - timedelta(hours=1))
            )
            db.commit()
            bridge.redis.hset(
                bridge.job_key(request.job_id), "heartbeat_at", time.time() - settings.BULK_JOB_STALLED_SECONDS - 60
            )
            swept.append(lifecycle.fail_stalled(older_than_seconds=60))
        return entity_id

    monkeypatch.setattr(plugin, "persist_row", _persist_then_sweep)

    status = engine.run(request.job_id, request.id, company_id)

    assert swept == [1]
    assert status == BulkProcessingStatus.FAILED
    request = _reload(db, request)
    assert request.status == BulkProcessingStatus.FAILED
    assert request.error_message.startswith("Job stalled")
    # Only the batch flushed before the sweep is counted
    assert request.processed_rows == 2
    assert request.successful_rows == 2
    assert request.total_rows is None
    assert bridge.get_job_status(request.job_id).state == qb.FAILED
    assert bulk_limiter.get_current_count(user_id) == 0


def test_heartbeat_sent_at_every_cancellation_check(
    db: Session,
    storage: S3StorageProvider,
    bridge: JobQueueBridge,
    lifecycle: BulkLifecycle,
    submit,
    make_catalog_row,
    monkeypatch: pytest.MonkeyPatch,
    company_id: uuid.UUID,
):
    engine = RowProcessingEngine(db, storage, bridge, lifecycle, flush_interval=100, cancellation_check_interval=1)
    request = submit([make_catalog_row() for _ in range(3)])
    beats: list[int | None] = []
    original = bridge.heartbeat

    def _record(job_id, progress=None):
        beats.append(progress)
        original(job_id, progress)

    monkeypatch.setattr(bridge, "heartbeat", _record)

    assert engine.run(request.job_id, request.id, company_id) == BulkProcessingStatus.COMPLETED
    assert beats == [0, 1, 2, 3]


def test_job_cancelled_before_start_never_runs(
    engine: RowProcessingEngine,
    submit,
    make_catalog_row,
    db: Session,
    bridge: JobQueueBridge,
    dispatcher: BulkEventDispatcher,
    celery_mock: MagicMock,
    company_id: uuid.UUID,
    user_id: uuid.UUID,
):
    request = submit([make_catalog_row() for _ in range(3)])
    job_id = request.job_id

    result = cancel_bulk_processing_request(db, bridge, dispatcher, request.id, company_id, user_id)
    assert result["status"] == "cancelled"
    celery_mock.control.revoke.assert_called_once_with(job_id)

    status = engine.run(job_id, request.id, company_id)

    assert status == BulkProcessingStatus.CANCELLED
    request = _reload(db, request)
    assert request.processed_rows == 0
    assert request.started_at is None
    assert _items(db) == []


def test_redelivered_job_resumes_after_counted_rows(
    engine: RowProcessingEngine,
    submit,
    make_catalog_row,
    db: Session,
    company_id: uuid.UUID,
):
    request = submit([make_catalog_row() for _ in range(5)])
    db.execute(
        update(BulkProcessingRequest)
        .where(BulkProcessingRequest.id == request.id)
        .values(status=BulkProcessingStatus.PROCESSING, processed_rows=2, successful_rows=2)
    )
    db.commit()

    status = engine.run(request.job_id, request.id, company_id)

    assert status == BulkProcessingStatus.COMPLETED
    request = _reload(db, request)
    assert request.processed_rows == 5
    assert request.successful_rows == 5
    assert request.total_rows == 5
    assert sorted(i.source_row_number for i in _items(db)) == [4, 5, 6]


def test_terminal_request_is_not_reprocessed(
    engine: RowProcessingEngine,
    submit,
    make_catalog_row,
    db: Session,
    company_id: uuid.UUID,
):
    request = submit([make_catalog_row()])
    engine.run(request.job_id, request.id, company_id)

    assert engine.run(request.job_id, request.id, company_id) == BulkProcessingStatus.COMPLETED
    assert _reload(db, request).processed_rows == 1


def test_empty_sheet_completes_with_zero_rows(
    engine: RowProcessingEngine, submit, db: Session, company_id: uuid.UUID
):
    request = submit([])

    assert engine.run(request.job_id, request.id, company_id) == BulkProcessingStatus.COMPLETED
    request = _reload(db, request)
    assert request.total_rows == 0
    assert request.processed_rows == 0
    assert request.progress_percentage == 0


def test_dry_run_writes_nothing(
    engine: RowProcessingEngine, submit, make_catalog_row, db: Session, company_id: uuid.UUID
):
    request = submit([make_catalog_row() for _ in range(3)], dry_run=True)

    assert engine.run(request.job_id, request.id, company_id) == BulkProcessingStatus.COMPLETED
    request = _reload(db, request)
    assert request.successful_rows == 3
    assert _items(db) == []


def test_media_is_downloaded_and_stored(
    engine: RowProcessingEngine,
    submit,
    make_catalog_row,
    db: Session,
    storage: S3StorageProvider,
    company_id: uuid.UUID,
):
    request = submit([make_catalog_row(photo_links="https://cdn.example.com/img/ok.jpg")])

    assert engine.run(request.job_id, request.id, company_id) == BulkProcessingStatus.COMPLETED

    [item] = _items(db)
    [key] = item.media["photo"]
    assert key == f"{company_id}/media/{request.id}/2/1_ok.jpg"
    assert storage.object_exists(key)


def test_media_failure_fails_the_row(
    engine: RowProcessingEngine, submit, make_catalog_row, db: Session, company_id: uuid.UUID
):
    request = submit([make_catalog_row(photo_links="https://cdn.example.com/missing.jpg")])

    engine.run(request.job_id, request.id, company_id)

    request = _reload(db, request)
    assert request.failed_rows == 1
    assert "Failed to download photo" in request.row_logs[0]["message"]
    assert _items(db) == []


def test_media_failure_as_warning(
    engine: RowProcessingEngine, submit, make_catalog_row, db: Session, company_id: uuid.UUID
):
    request = submit(
        [make_catalog_row(photo_links="https://cdn.example.com/missing.jpg")],
        continue_on_media_error=True,
    )

    engine.run(request.job_id, request.id, company_id)

    request = _reload(db, request)
    assert request.successful_rows == 1
    assert request.row_logs[0]["outcome"] == "warning"
    [item] = _items(db)
    assert item.media == {}


def test_skip_media_download(
    engine: RowProcessingEngine, submit, make_catalog_row, db: Session, company_id: uuid.UUID
):
    request = submit(
        [make_catalog_row(photo_links="https://cdn.example.com/missing.jpg")],
        skip_media_download=True,
    )

    engine.run(request.job_id, request.id, company_id)

    assert _reload(db, request).successful_rows == 1


def test_media_downloaded_after_all_rows_are_saved(
    db: Session,
    storage: S3StorageProvider,
    bridge: JobQueueBridge,
    lifecycle: BulkLifecycle,
    submit,
    make_catalog_row,
    monkeypatch: pytest.MonkeyPatch,
    company_id: uuid.UUID,
):
    events: list[str] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        events.append("media")
        return _media_handler(request)

    engine = RowProcessingEngine(
        db, storage, bridge, lifecycle, flush_interval=2, media_transport=httpx.MockTransport(_handler)
    )
    monkeypatch.setattr(row_engine, "MEDIA_PHASE_CHUNK_SIZE", 1)
    plugin = registry.get("processor", BulkProcessingType.PRODUCT_CATALOG.value)
    original = plugin.persist_row

    def _record_persist(values, row_number, media, context):
        assert media == {}
        events.append("row")
        return original(values, row_number, media, context)

    monkeypatch.setattr(plugin, "persist_row", _record_persist)
    request = submit(
        [
            make_catalog_row(photo_links="https://cdn.example.com/img/ok.jpg"),
            make_catalog_row(photo_links="https://cdn.example.com/missing.jpg"),
            make_catalog_row(),
        ],
        process_media_in_first_phase=False,
    )

    assert engine.run(request.job_id, request.id, company_id) == BulkProcessingStatus.COMPLETED

    assert events == ["row", "row", "row", "media", "media"]
    request = _reload(db, request)
    assert request.successful_rows == 3
    assert request.failed_rows == 0
    [log] = request.row_logs
    assert log["row_number"] == 3
    assert log["outcome"] == "warning"
    assert "Failed to download photo" in log["message"]

    items = {i.source_row_number: i for i in _items(db)}
    assert items[2].media == {"photo": [f"{company_id}/media/{request.id}/2/1_ok.jpg"]}
    assert storage.object_exists(items[2].media["photo"][0])
    assert items[3].media == {}
    assert all(i.pending_media is None and i.pending_media_request_id is None for i in items.values())


def test_cancel_during_media_phase(
    engine: RowProcessingEngine,
    submit,
    make_catalog_row,
    db: Session,
    bridge: JobQueueBridge,
    dispatcher: BulkEventDispatcher,
    monkeypatch: pytest.MonkeyPatch,
    company_id: uuid.UUID,
    user_id: uuid.UUID,
):
    monkeypatch.setattr(row_engine, "MEDIA_PHASE_CHUNK_SIZE", 1)
    request = submit(
        [make_catalog_row(photo_links=f"https://cdn.example.com/img/{n}.jpg") for n in range(3)],
        process_media_in_first_phase=False,
    )
    plugin = registry.get("processor", BulkProcessingType.PRODUCT_CATALOG.value)
    original = plugin.pending_media
    cancel_results: list[dict] = []

    def _cancel_then_list(db_, request_id, company_id_, limit):
        if not cancel_results:
            cancel_results.append(
                cancel_bulk_processing_request(db, bridge, dispatcher, request.id, company_id, user_id)
            )
        return original(db_, request_id, company_id_, limit)

    monkeypatch.setattr(plugin, "pending_media", _cancel_then_list)

    status = engine.run(request.job_id, request.id, company_id)

    assert cancel_results[0]["status"] == "cancelling"
    assert status == BulkProcessingStatus.CANCELLED
    request = _reload(db, request)
    assert request.processed_rows == 3
    assert _items(db) == []


def test_unreadable_spreadsheet_fails_request(
    engine: RowProcessingEngine,
    db: Session,
    bridge: JobQueueBridge,
    bulk_limiter: ConcurrencyLimiter,
    uploaded_file,
    company_id: uuid.UUID,
    user_id: uuid.UUID,
):
    stored = uploaded_file(b"not a workbook")
    request = create_bulk_processing_request(
        db, bridge, bulk_limiter, BulkProcessingType.PRODUCT_CATALOG, stored.id, company_id, user_id
    )

    assert engine.run(request.job_id, request.id, company_id) == BulkProcessingStatus.FAILED
    request = _reload(db, request)
    assert request.error_message
    assert bridge.get_job_status(request.job_id).state == qb.FAILED
    assert _file_status(db, request) == FileStatus.UPLOADED


def test_missing_object_is_a_transient_error(
    engine: RowProcessingEngine,
    submit,
    make_catalog_row,
    db: Session,
    storage: S3StorageProvider,
    company_id: uuid.UUID,
):
    request = submit([make_catalog_row()])
    stored = db.get(StoredFile, request.file_id)
    storage.delete_object(stored.object_key)

    with pytest.raises(StorageOperationFailedException):
        engine.run(request.job_id, request.id, company_id)
    assert _reload(db, request).status == BulkProcessingStatus.PROCESSING


def test_unknown_request(engine: RowProcessingEngine, bridge: JobQueueBridge, company_id: uuid.UUID):
    assert engine.run("product_catalog-gone", uuid.uuid4(), company_id) is None
    assert bridge.get_job_status("product_catalog-gone").state == qb.FAILED
