from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from bulkops.exceptions import (
    BulkOpsException,
    BulkProcessingExcelParsingException,
    BulkProcessingFileNotFoundException,
    BulkProcessingInvalidFileStatusException,
    BulkProcessingInvalidStatusException,
    BulkProcessingNoErrorsFoundException,
    BulkProcessingRequestNotFoundException,
    ConcurrencyLimitExceededException,
    FileSizeLimitExceededException,
    FileTypeNotAllowedException,
    InvalidBulkProcessingFileException,
    InvalidFileStateException,
    InvalidParameterException,
    InvalidPartNumberException,
    QueueUnavailableException,
    StorageOperationFailedException,
    UnauthorizedBulkProcessingRequestAccessException,
    UploadAlreadyCompletedException,
    UploadExpiredException,
    UploadFailedException,
    UploadNotFoundException,
)

logger = logging.getLogger(__name__)

# Most specific classes first; the first isinstance match wins
STATUS_CODES: list[tuple[type[BulkOpsException], int]] = [
    (InvalidParameterException, 400),
    (FileTypeNotAllowedException, 400),
    (InvalidPartNumberException, 400),
    (InvalidBulkProcessingFileException, 400),
    (BulkProcessingExcelParsingException, 400),
    (UnauthorizedBulkProcessingRequestAccessException, 403),
    (UploadNotFoundException, 404),
    (BulkProcessingRequestNotFoundException, 404),
    (BulkProcessingFileNotFoundException, 404),
    (BulkProcessingNoErrorsFoundException, 404),
    (UploadAlreadyCompletedException, 409),
    (InvalidFileStateException, 409),
    (BulkProcessingInvalidStatusException, 409),
    (BulkProcessingInvalidFileStatusException, 409),
    (UploadExpiredException, 410),
    (FileSizeLimitExceededException, 413),
    (UploadFailedException, 422),
    (ConcurrencyLimitExceededException, 429),
    (StorageOperationFailedException, 502),
    (QueueUnavailableException, 503),
]


def status_code_for(exc: BulkOpsException) -> int:
    for exc_type, status_code in STATUS_CODES:
        if isinstance(exc, exc_type):
            return status_code
    return 500


def register_exception_handlers(app: FastAPI) -> None:
    """Map domain exceptions to JSON error responses."""

    @app.exception_handler(BulkOpsException)
    async def handle_domain_error(request: Request, exc: BulkOpsException) -> JSONResponse:
        status_code = status_code_for(exc)
        if status_code >= 500:
            logger.error("%s %s failed: %s %s", request.method, request.url.path, exc.code, exc.message)
        headers = None
        if isinstance(exc, ConcurrencyLimitExceededException):
            headers = {"Retry-After": "30"}
        return JSONResponse(
            status_code=status_code,
            content={"error": exc.code, "message": exc.message},
            headers=headers,
        )
