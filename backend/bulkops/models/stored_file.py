from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import BigInteger, DateTime, Enum, Index, Integer, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from bulkops.database import Base
from bulkops.models.bulk_request import utcnow


class FileStatus(str, enum.Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    ERASING = "erasing"
    COPYING = "copying"


class UploadPurpose(str, enum.Enum):
    GENERAL = "general"
    BULK_IMPORT = "bulk_import"


class StoredFile(Base):
    """A file in object storage, including the state of its multipart upload."""

    __tablename__ = "stored_files"
    __table_args__ = (
        Index("ix_stored_files_status_activity", "status", "last_activity_at"),
        Index("ix_stored_files_company", "company_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(), primary_key=True, default=uuid.uuid4)
    bucket: Mapped[str] = mapped_column(String(255))
    object_key: Mapped[str] = mapped_column(String(1024), unique=True)
    storage_path: Mapped[str] = mapped_column(String(512))
    filename: Mapped[str] = mapped_column(String(255))
    mime_type: Mapped[str] = mapped_column(String(255))
    size: Mapped[int] = mapped_column(BigInteger)
    part_size: Mapped[int] = mapped_column(BigInteger)
    total_parts: Mapped[int] = mapped_column(Integer)
    upload_id: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    status: Mapped[FileStatus] = mapped_column(
        Enum(FileStatus, name="file_status_enum", create_constraint=False, values_callable=lambda e: [m.value for m in e]),
        default=FileStatus.PENDING,
    )
    purpose: Mapped[UploadPurpose] = mapped_column(
        Enum(UploadPurpose, name="upload_purpose_enum", create_constraint=False, values_callable=lambda e: [m.value for m in e]),
        default=UploadPurpose.GENERAL,
    )
    etag: Mapped[str | None] = mapped_column(String(255), nullable=True)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid())
    company_id: Mapped[uuid.UUID] = mapped_column(Uuid())
    last_activity_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    def __init__(self, **kwargs: Any) -> None:
        kwargs.setdefault("status", FileStatus.PENDING)
        kwargs.setdefault("purpose", UploadPurpose.GENERAL)
        super().__init__(**kwargs)

    @property
    def extension(self) -> str:
        _, dot, ext = self.filename.rpartition(".")
        return f".{ext.lower()}" if dot else ""
