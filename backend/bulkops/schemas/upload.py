from __future__ import annotations

import uuid
from typing import Literal

from pydantic import BaseModel, Field

FileStatusLiteral = Literal["pending", "uploading", "uploaded", "processing", "erasing", "copying"]


class UploadInitiateRequest(BaseModel):
    filename: str = Field(min_length=1, max_length=255)
    mime_type: str = Field(min_length=1, max_length=255)
    size: int = Field(gt=0)
    path: str = ""
    purpose: Literal["general", "bulk_import"] = "general"
    part_size: int | None = Field(default=None, gt=0)


class PartUrl(BaseModel):
    part_number: int
    url: str


class UploadInitiateResponse(BaseModel):
    file_id: uuid.UUID
    upload_id: str
    object_key: str
    part_size: int
    total_parts: int
    part_urls: list[PartUrl] | None = None
    part_url_template: str | None = None


class PartUrlRequest(BaseModel):
    part_size_bytes: int = Field(gt=0)
    expiry_seconds: int | None = Field(default=None, gt=0)


class PartUrlResponse(BaseModel):
    file_id: uuid.UUID
    part_number: int
    url: str
    expires_in: int


class CompletedPart(BaseModel):
    part_number: int
    etag: str


class UploadCompleteRequest(BaseModel):
    parts: list[CompletedPart] = Field(min_length=1)


class UploadCompleteResponse(BaseModel):
    file_id: uuid.UUID
    status: FileStatusLiteral
    etag: str | None
    object_key: str
    size: int


class UploadedPart(BaseModel):
    part_number: int
    etag: str
    size: int


class UploadStatusResponse(BaseModel):
    file_id: uuid.UUID
    status: FileStatusLiteral
    upload_id: str | None
    total_parts_count: int
    completed_parts_count: int
    uploaded_bytes: int
    next_part_number: int | None
    max_bytes: int
    remaining_bytes: int
    can_complete: bool
    progress: int
    parts: list[UploadedPart] = []
    message: str | None = None


class ConcurrencyStatusResponse(BaseModel):
    user_id: uuid.UUID
    uploads: int
    bulk_jobs: int
    upload_limit: int
    bulk_job_limit: int
