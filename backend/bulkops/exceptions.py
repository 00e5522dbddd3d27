"""
Domain exceptions for bulkops.

Every exception carries a human readable ``message``, a stable ``code`` used in
API error bodies, and an optional ``context`` dict with identifiers useful for
logging. HTTP status mapping lives in ``bulkops.api.errors``.
"""
from __future__ import annotations

from typing import Any


class BulkOpsException(Exception):
    """Base exception for all application errors."""

    code = "BULKOPS_ERROR"

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)


# --- Storage / uploads -------------------------------------------------------


class StorageException(BulkOpsException):
    code = "STORAGE_ERROR"


class InvalidParameterException(StorageException):
    code = "INVALID_PARAMETER"


class InvalidPathException(InvalidParameterException):
    code = "INVALID_PATH"


class FileTypeNotAllowedException(StorageException):
    code = "FILE_TYPE_NOT_ALLOWED"


class FileSizeLimitExceededException(StorageException):
    code = "FILE_SIZE_LIMIT_EXCEEDED"


class InvalidPartNumberException(StorageException):
    code = "INVALID_PART_NUMBER"


class UploadNotFoundException(StorageException):
    code = "UPLOAD_NOT_FOUND"


class UploadAlreadyCompletedException(StorageException):
    code = "UPLOAD_ALREADY_COMPLETED"


class UploadExpiredException(StorageException):
    code = "UPLOAD_EXPIRED"


class InvalidFileStateException(StorageException):
    code = "INVALID_FILE_STATE"


class UploadFailedException(StorageException):
    code = "UPLOAD_FAILED"


class StorageOperationFailedException(StorageException):
    """Raised when the object storage provider rejects or fails a call."""

    code = "STORAGE_OPERATION_FAILED"


class ConcurrencyLimitExceededException(StorageException):
    code = "CONCURRENCY_LIMIT_EXCEEDED"

    def __init__(self, user_id: str, limit: int, current: int, scope: str = "uploads"):
        super().__init__(
            f"Concurrent {scope} limit reached ({current}/{limit})",
            {"user_id": user_id, "limit": limit, "current": current, "scope": scope},
        )
        self.limit = limit
        self.current = current


# --- Bulk processing ---------------------------------------------------------


class BulkProcessingException(BulkOpsException):
    code = "BULK_PROCESSING_ERROR"


class BulkProcessingRequestNotFoundException(BulkProcessingException):
    code = "BULK_PROCESSING_REQUEST_NOT_FOUND"

    def __init__(self, request_id: Any):
        super().__init__(
            f"Bulk processing request {request_id} not found",
            {"request_id": str(request_id)},
        )


class UnauthorizedBulkProcessingRequestAccessException(BulkProcessingException):
    code = "UNAUTHORIZED_BULK_PROCESSING_ACCESS"


class InvalidBulkProcessingFileException(BulkProcessingException):
    code = "INVALID_BULK_PROCESSING_FILE"


class BulkProcessingInvalidStatusException(BulkProcessingException):
    code = "BULK_PROCESSING_INVALID_STATUS"

    def __init__(self, current: Any, target: Any | None = None, message: str | None = None):
        current_value = getattr(current, "value", current)
        target_value = getattr(target, "value", target)
        if message is None:
            if target is None:
                message = f"Operation not allowed while request is '{current_value}'"
            else:
                message = f"Cannot transition from '{current_value}' to '{target_value}'"
        super().__init__(message, {"current": current_value, "target": target_value})


class BulkProcessingFileNotFoundException(BulkProcessingException):
    code = "BULK_PROCESSING_FILE_NOT_FOUND"


class BulkProcessingInvalidFileStatusException(BulkProcessingException):
    code = "BULK_PROCESSING_INVALID_FILE_STATUS"


class BulkProcessingExcelParsingException(BulkProcessingException):
    code = "BULK_PROCESSING_EXCEL_PARSING_ERROR"


class BulkProcessingNoErrorsFoundException(BulkProcessingException):
    code = "BULK_PROCESSING_NO_ERRORS_FOUND"


class JobCancelledException(BulkProcessingException):
    """Raised inside a worker when the job's cancellation token is set."""

    code = "JOB_CANCELLED"


class BulkProcessingRequestClosedException(BulkProcessingException):
    """Raised inside a worker when another process already finished its request."""

    code = "BULK_PROCESSING_REQUEST_CLOSED"


class QueueUnavailableException(BulkProcessingException):
    code = "QUEUE_UNAVAILABLE"
