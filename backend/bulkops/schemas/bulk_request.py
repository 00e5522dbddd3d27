from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from bulkops.config import settings
from bulkops.models.bulk_request import BulkProcessingStatus, BulkProcessingType


class ProcessingOptions(BaseModel):
    """Per-request processing switches. Every field is optional."""

    # Media
    skip_media_download: bool = False
    continue_on_media_error: bool = False
    max_media_concurrency: int = Field(default_factory=lambda: settings.BULK_MAX_MEDIA_CONCURRENCY, ge=1, le=32)
    media_download_timeout: float = Field(
        default_factory=lambda: settings.BULK_MEDIA_DOWNLOAD_TIMEOUT_SECONDS, gt=0, le=600
    )
    validate_media_extensions: bool = True
    # Off: save rows first, then download media for the whole request
    process_media_in_first_phase: bool = True

    # Validation
    skip_validation: bool = False
    continue_on_validation_error: bool = True
    treat_warnings_as_errors: bool = False
    max_stored_errors: int = Field(default_factory=lambda: settings.BULK_MAX_STORED_ERRORS, ge=0)
    max_stored_warnings: int = Field(default_factory=lambda: settings.BULK_MAX_STORED_WARNINGS, ge=0)

    # Parsing
    start_row: int = Field(default=1, ge=1)
    skip_empty_rows: bool = True
    trim_values: bool = True
    sheet_name: str | None = None

    # Behavior
    stop_on_first_error: bool = False
    dry_run: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "ignore"}

    @property
    def stops_on_row_failure(self) -> bool:
        return self.stop_on_first_error or not self.continue_on_validation_error


class BulkProcessingCreate(BaseModel):
    type: Literal["product_catalog", "cleanup_temp_files"]
    file_id: uuid.UUID
    options: ProcessingOptions | None = None


class BulkProcessingCancel(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class RowLogResponse(BaseModel):
    row_number: int
    outcome: Literal["failed", "warning"]
    message: str
    errors: list[str] = []
    warnings: list[str] = []
    entity_id: str | None = None


class BulkProcessingResponse(BaseModel):
    id: uuid.UUID
    type: BulkProcessingType
    file_id: uuid.UUID
    file_name: str
    status: BulkProcessingStatus
    job_id: str | None
    total_rows: int | None
    processed_rows: int
    successful_rows: int
    failed_rows: int
    progress_percentage: int | None
    error_message: str | None
    company_id: uuid.UUID
    requested_by: uuid.UUID
    started_at: datetime | None
    completed_at: datetime | None
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class BulkProcessingStatusResponse(BulkProcessingResponse):
    has_errors: bool
    is_cancellable: bool = False
    success_rate: float
    row_logs: list[RowLogResponse] = []


class CancellationResponse(BaseModel):
    request_id: uuid.UUID
    status: BulkProcessingStatus
    previous_job_state: str | None = None
    message: str
