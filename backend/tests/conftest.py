from __future__ import annotations

import io
import os
import uuid
from collections.abc import AsyncGenerator, Callable, Generator
from typing import Any
from unittest.mock import MagicMock

# Fake credentials before any boto3 client exists
os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
os.environ.setdefault("AWS_SECURITY_TOKEN", "testing")
os.environ.setdefault("AWS_SESSION_TOKEN", "testing")
os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")

import boto3
import fakeredis
import httpx
import pytest
from moto import mock_aws
from openpyxl import Workbook
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from bulkops.api import deps
from bulkops.database import Base, get_sync_db
from bulkops.main import app
from bulkops.models import *  # noqa: F401, F403
from bulkops.models.stored_file import FileStatus, StoredFile, UploadPurpose
from bulkops.plugins import registry
from bulkops.services.auth_service import create_access_token
from bulkops.services.bulk_lifecycle import BulkLifecycle
from bulkops.services.concurrency import BULK_JOBS_SCOPE, UPLOADS_SCOPE, ConcurrencyLimiter
from bulkops.services.event_handlers import BulkEventDispatcher
from bulkops.services.queue_bridge import JobQueueBridge
from bulkops.services.storage import S3StorageProvider

TEST_BUCKET = "bulkops-test"
XLSX_MIME = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

CATALOG_HEADER = [
    "ID", "Industry", "Product/Service", "Type", "Subcategory", "List Price", "Payment Options",
    "Description", "Language", "Link", "PDF Links", "Photo Links", "Video Links",
]


@pytest.fixture(autouse=True)
def _plugins() -> None:
    registry.discover()


@pytest.fixture()
def db() -> Generator[Session]:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    session_factory = sessionmaker(engine, expire_on_commit=False)

    with session_factory() as session:
        yield session

    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture()
def redis_client() -> fakeredis.FakeRedis:
    return fakeredis.FakeRedis(server=fakeredis.FakeServer())


@pytest.fixture()
def storage() -> Generator[S3StorageProvider]:
    with mock_aws():
        client = boto3.client("s3", region_name="us-east-1")
        client.create_bucket(Bucket=TEST_BUCKET)
        yield S3StorageProvider(client, TEST_BUCKET)


@pytest.fixture()
def celery_mock() -> MagicMock:
    return MagicMock()


@pytest.fixture()
def bridge(celery_mock: MagicMock, redis_client: fakeredis.FakeRedis) -> JobQueueBridge:
    return JobQueueBridge(celery_mock, redis_client)


@pytest.fixture()
def upload_limiter(redis_client: fakeredis.FakeRedis) -> ConcurrencyLimiter:
    return ConcurrencyLimiter(redis_client, scope=UPLOADS_SCOPE, max_concurrent=3)


@pytest.fixture()
def bulk_limiter(redis_client: fakeredis.FakeRedis) -> ConcurrencyLimiter:
    return ConcurrencyLimiter(redis_client, scope=BULK_JOBS_SCOPE, max_concurrent=5)


@pytest.fixture()
def dispatcher(
    redis_client: fakeredis.FakeRedis,
    bulk_limiter: ConcurrencyLimiter,
    storage: S3StorageProvider,
) -> BulkEventDispatcher:
    return BulkEventDispatcher(client=redis_client, limiter=bulk_limiter, storage=storage)


@pytest.fixture()
def lifecycle(db: Session, bridge: JobQueueBridge, dispatcher: BulkEventDispatcher) -> BulkLifecycle:
    return BulkLifecycle(db, bridge, dispatcher)


@pytest.fixture()
def company_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture()
def user_id() -> uuid.UUID:
    return uuid.uuid4()


def catalog_row(**overrides: Any) -> list[Any]:
    """A valid product catalog row; keyword arguments replace single fields."""
    values = {
        "id": f"SKU-{uuid.uuid4().hex[:6]}",
        "industry": "Retail",
        "product_service": "Widget",
        "type": "Product",
        "subcategory": "Tools",
        "list_price": 19.99,
        "payment_options": "CASH, CREDIT",
        "description": "A sturdy widget",
        "lang_code": "en",
        "link": "https://example.com/widget",
        "pdf_links": None,
        "photo_links": None,
        "video_links": None,
    }
    values.update(overrides)
    return list(values.values())


@pytest.fixture()
def make_catalog_row() -> Callable[..., list[Any]]:
    return catalog_row


@pytest.fixture()
def make_xlsx() -> Callable[..., bytes]:
    def _build(rows: list[list[Any]], header: list[str] | None = None, sheet_title: str | None = None) -> bytes:
        workbook = Workbook()
        sheet = workbook.active
        if sheet_title:
            sheet.title = sheet_title
        sheet.append(header or CATALOG_HEADER)
        for row in rows:
            sheet.append(row)
        buffer = io.BytesIO()
        workbook.save(buffer)
        return buffer.getvalue()

    return _build


@pytest.fixture()
def uploaded_file(
    db: Session,
    storage: S3StorageProvider,
    company_id: uuid.UUID,
    user_id: uuid.UUID,
) -> Callable[..., StoredFile]:
    """Store bytes in the bucket and record them as a fully uploaded file."""

    def _create(
        content: bytes,
        filename: str = "catalog.xlsx",
        mime_type: str = XLSX_MIME,
        status: FileStatus = FileStatus.UPLOADED,
        owner_company: uuid.UUID | None = None,
    ) -> StoredFile:
        owner = owner_company or company_id
        file_id = uuid.uuid4()
        key = f"{owner}/{file_id.hex[:8]}_{filename}"
        storage.put_object(key, content, mime_type)
        stored = StoredFile(
            id=file_id,
            bucket=TEST_BUCKET,
            object_key=key,
            storage_path="",
            filename=filename,
            mime_type=mime_type,
            size=len(content),
            part_size=len(content),
            total_parts=1,
            status=status,
            purpose=UploadPurpose.BULK_IMPORT,
            user_id=user_id,
            company_id=owner,
        )
        db.add(stored)
        db.commit()
        return stored

    return _create


@pytest.fixture()
def auth_token(user_id: uuid.UUID, company_id: uuid.UUID) -> str:
    return create_access_token(user_id, company_id)


@pytest.fixture()
def admin_token(company_id: uuid.UUID) -> str:
    return create_access_token(uuid.uuid4(), company_id, is_admin=True)


@pytest.fixture()
async def client(
    db: Session,
    storage: S3StorageProvider,
    redis_client: fakeredis.FakeRedis,
    bridge: JobQueueBridge,
) -> AsyncGenerator[httpx.AsyncClient]:
    def _override_get_db() -> Generator[Session]:
        yield db

    app.dependency_overrides[get_sync_db] = _override_get_db
    app.dependency_overrides[deps.get_storage] = lambda: storage
    app.dependency_overrides[deps.get_redis_client] = lambda: redis_client
    app.dependency_overrides[deps.get_queue_bridge] = lambda: bridge

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()
