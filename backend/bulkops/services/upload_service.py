"""Multipart upload sessions: initiate, presign parts, complete, abort, sweep.

State lives in the ``stored_files`` table. Every status change that can race
(completion against the stale sweep, abort against completion) is a single
conditional UPDATE whose row count decides the winner.
"""
from __future__ import annotations

import logging
import math
import re
import uuid
from datetime import timedelta
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from bulkops.config import settings
from bulkops.exceptions import (
    FileSizeLimitExceededException,
    FileTypeNotAllowedException,
    InvalidBulkProcessingFileException,
    InvalidFileStateException,
    InvalidParameterException,
    InvalidPartNumberException,
    InvalidPathException,
    StorageOperationFailedException,
    UploadAlreadyCompletedException,
    UploadExpiredException,
    UploadFailedException,
    UploadNotFoundException,
)
from bulkops.models.bulk_request import utcnow
from bulkops.models.stored_file import FileStatus, StoredFile, UploadPurpose
from bulkops.services.concurrency import ConcurrencyLimiter
from bulkops.services.storage import S3StorageProvider

logger = logging.getLogger(__name__)

MAX_PATH_LENGTH = 512
MAX_FILENAME_LENGTH = 255
_PATH_SEGMENT = re.compile(r"^[A-Za-z0-9._\- ]+$")


def file_extension(filename: str) -> str:
    _, dot, ext = filename.rpartition(".")
    return f".{ext.lower()}" if dot and ext else ""


def normalize_etag(etag: str) -> str:
    return etag.strip().strip('"')


def validate_storage_path(path: str) -> str:
    """Return the normalized relative folder path or raise InvalidPathException."""
    if path is None:
        return ""
    if not isinstance(path, str) or len(path) > MAX_PATH_LENGTH:
        raise InvalidPathException("Path must be a string of at most 512 characters")
    cleaned = path.strip()
    if cleaned in ("", "/"):
        return ""
    if cleaned.startswith("/") or "\\" in cleaned:
        raise InvalidPathException(f"Path must be relative and use '/' separators: {path!r}")
    segments = cleaned.rstrip("/").split("/")
    for segment in segments:
        if segment in ("", ".", "..") or not _PATH_SEGMENT.match(segment):
            raise InvalidPathException(f"Invalid path segment {segment!r} in {path!r}")
    return "/".join(segments)


def validate_filename(filename: str) -> str:
    if not filename or not isinstance(filename, str):
        raise InvalidParameterException("Filename is required")
    name = filename.strip()
    if len(name) > MAX_FILENAME_LENGTH or "/" in name or "\\" in name or name in (".", ".."):
        raise InvalidParameterException(f"Invalid filename: {filename!r}")
    return name


def validate_bulk_import_file(filename: str, mime_type: str) -> None:
    """Spreadsheet imports accept .xlsx/.xls only, and the MIME type must match the extension."""
    ext = file_extension(filename)
    allowed = settings.BULK_IMPORT_ALLOWED_TYPES
    if ext not in allowed:
        raise InvalidBulkProcessingFileException(
            f"File extension '{ext or '(none)'}' is not supported for bulk processing",
            {"filename": filename, "allowed": sorted(allowed)},
        )
    if (mime_type or "").lower() not in allowed[ext]:
        raise InvalidBulkProcessingFileException(
            f"MIME type '{mime_type}' does not match a supported spreadsheet type for '{ext}'",
            {"filename": filename, "mime_type": mime_type},
        )


def validate_upload_policy(
    tier: str,
    filename: str,
    mime_type: str,
    size: int,
    purpose: UploadPurpose = UploadPurpose.GENERAL,
) -> None:
    if isinstance(size, bool) or not isinstance(size, int) or size <= 0:
        raise InvalidParameterException("File size must be a positive integer")
    if purpose == UploadPurpose.BULK_IMPORT:
        validate_bulk_import_file(filename, mime_type)

    policy = settings.UPLOAD_TIERS.get(tier)
    if policy is None:
        raise InvalidParameterException(f"Unknown storage tier '{tier}'")
    if size > policy["max_file_size"]:
        raise FileSizeLimitExceededException(
            f"File size {size} exceeds the {tier} tier limit of {policy['max_file_size']} bytes",
            {"size": size, "max_file_size": policy["max_file_size"]},
        )
    ext = file_extension(filename)
    allowed_mimes = policy["allowed_types"].get(ext)
    if not allowed_mimes or (mime_type or "").lower() not in allowed_mimes:
        raise FileTypeNotAllowedException(
            f"File type '{ext or '(none)'}' with MIME '{mime_type}' is not allowed",
            {"extension": ext, "mime_type": mime_type, "tier": tier},
        )


def plan_parts(size: int, requested_part_size: int | None = None) -> tuple[int, int]:
    """Return (part_size, total_parts) for an upload of ``size`` bytes."""
    if requested_part_size is not None:
        if not settings.UPLOAD_MIN_PART_SIZE <= requested_part_size <= settings.UPLOAD_MAX_PART_SIZE:
            # A single-part upload may use any size
            if not (0 < requested_part_size and size <= requested_part_size):
                raise InvalidParameterException(
                    f"Part size must be between {settings.UPLOAD_MIN_PART_SIZE} "
                    f"and {settings.UPLOAD_MAX_PART_SIZE} bytes"
                )
        part_size = requested_part_size
    else:
        part_size = max(settings.UPLOAD_DEFAULT_PART_SIZE, math.ceil(size / settings.UPLOAD_MAX_PARTS))
    total_parts = math.ceil(size / part_size)
    if total_parts > settings.UPLOAD_MAX_PARTS:
        raise InvalidParameterException(
            f"Upload would need {total_parts} parts; the maximum is {settings.UPLOAD_MAX_PARTS}"
        )
    return part_size, total_parts


class UploadSessionManager:
    def __init__(self, db: Session, storage: S3StorageProvider, limiter: ConcurrencyLimiter):
        self.db = db
        self.storage = storage
        self.limiter = limiter

    # --- lookups ---

    def _get_owned(self, file_id: uuid.UUID, user_id: uuid.UUID) -> StoredFile:
        stored = self.db.execute(
            select(StoredFile).where(StoredFile.id == file_id, StoredFile.user_id == user_id)
        ).scalar_one_or_none()
        if stored is None:
            raise UploadNotFoundException(f"Upload {file_id} not found", {"file_id": str(file_id)})
        return stored

    def _require_uploading(self, stored: StoredFile) -> None:
        if stored.status == FileStatus.UPLOADED:
            raise UploadAlreadyCompletedException(
                f"Upload {stored.id} is already completed", {"file_id": str(stored.id)}
            )
        if stored.status == FileStatus.ERASING:
            raise self._expired(stored)
        if stored.status != FileStatus.UPLOADING:
            raise InvalidFileStateException(
                f"Upload {stored.id} is '{stored.status.value}', expected 'uploading'",
                {"file_id": str(stored.id), "status": stored.status.value},
            )

    @staticmethod
    def _expired(stored: StoredFile) -> UploadExpiredException:
        """The upload was aborted, swept as stale or consumed, and is being erased."""
        return UploadExpiredException(
            f"Upload {stored.id} is no longer available; it is being removed", {"file_id": str(stored.id)}
        )

    def _touch(self, file_id: uuid.UUID) -> bool:
        """Refresh last activity if the upload is still in progress."""
        result = self.db.execute(
            update(StoredFile)
            .where(StoredFile.id == file_id, StoredFile.status == FileStatus.UPLOADING)
            .values(last_activity_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount == 1

    def _release_slot(self, user_id: uuid.UUID) -> None:
        try:
            self.limiter.release_slot(user_id)
        except StorageOperationFailedException:
            logger.warning("Could not release upload slot for user %s; it will expire", user_id)

    # --- operations ---

    def initiate_upload(
        self,
        user_id: uuid.UUID,
        company_id: uuid.UUID,
        filename: str,
        mime_type: str,
        size: int,
        path: str = "",
        tier: str = "standard",
        purpose: UploadPurpose = UploadPurpose.GENERAL,
        part_size: int | None = None,
    ) -> dict[str, Any]:
        filename = validate_filename(filename)
        storage_path = validate_storage_path(path)
        validate_upload_policy(tier, filename, mime_type, size, purpose)
        part_size, total_parts = plan_parts(size, part_size)

        # Slot first: nothing touches storage for a user over the limit
        self.limiter.acquire_slot(user_id)

        file_id = uuid.uuid4()
        prefix = f"{company_id}/{storage_path}" if storage_path else str(company_id)
        object_key = f"{prefix}/{file_id.hex[:8]}_{filename}"
        stored = StoredFile(
            id=file_id,
            bucket=self.storage.bucket,
            object_key=object_key,
            storage_path=storage_path,
            filename=filename,
            mime_type=mime_type,
            size=size,
            part_size=part_size,
            total_parts=total_parts,
            status=FileStatus.PENDING,
            purpose=purpose,
            user_id=user_id,
            company_id=company_id,
            last_activity_at=utcnow(),
        )
        persisted = False
        try:
            self.db.add(stored)
            self.db.commit()
            persisted = True

            upload_id = self.storage.initiate_multipart_upload(object_key, mime_type, bucket=stored.bucket)
            stored.upload_id = upload_id
            stored.status = FileStatus.UPLOADING
            stored.last_activity_at = utcnow()
            self.db.commit()

            result: dict[str, Any] = {
                "file_id": file_id,
                "upload_id": upload_id,
                "object_key": object_key,
                "part_size": part_size,
                "total_parts": total_parts,
                "part_urls": None,
                "part_url_template": None,
            }
            if total_parts <= settings.UPLOAD_PRESIGN_INLINE_MAX_PARTS:
                result["part_urls"] = [
                    {
                        "part_number": n,
                        "url": self.storage.presign_upload_part(
                            object_key, upload_id, n, settings.UPLOAD_PRESIGN_EXPIRY_SECONDS, bucket=stored.bucket
                        ),
                    }
                    for n in range(1, total_parts + 1)
                ]
            else:
                result["part_url_template"] = f"/api/v1/uploads/{file_id}/parts/{{part_number}}/url"
        except Exception:
            logger.exception("Failed to initiate upload %s for user %s", file_id, user_id)
            self.db.rollback()
            if persisted:
                self._discard(stored)
            self._release_slot(user_id)
            raise

        logger.info(
            "Initiated upload %s (%s, %d bytes, %d parts) for user %s",
            file_id, filename, size, total_parts, user_id,
        )
        return result

    def _discard(self, stored: StoredFile) -> None:
        if stored.upload_id:
            try:
                self.storage.abort_multipart_upload(stored.object_key, stored.upload_id, bucket=stored.bucket)
            except StorageOperationFailedException:
                logger.warning("Could not abort multipart upload for %s", stored.id)
        self.db.delete(stored)
        self.db.commit()

    def generate_part_url(
        self,
        file_id: uuid.UUID,
        part_number: int,
        part_size_bytes: int,
        user_id: uuid.UUID,
        expiry_seconds: int | None = None,
    ) -> dict[str, Any]:
        stored = self._get_owned(file_id, user_id)
        self._require_uploading(stored)

        max_part = min(stored.total_parts, settings.UPLOAD_MAX_PARTS)
        if isinstance(part_number, bool) or not isinstance(part_number, int) or not 1 <= part_number <= max_part:
            raise InvalidPartNumberException(
                f"Part number must be between 1 and {max_part}", {"part_number": part_number}
            )
        if isinstance(part_size_bytes, bool) or not isinstance(part_size_bytes, int) or part_size_bytes <= 0:
            raise InvalidParameterException("Part size must be a positive integer")
        if part_size_bytes > stored.part_size:
            raise InvalidParameterException(
                f"Part size {part_size_bytes} exceeds the session part size {stored.part_size}"
            )

        expires_in = expiry_seconds or settings.UPLOAD_PRESIGN_EXPIRY_SECONDS
        expires_in = max(
            settings.UPLOAD_PRESIGN_MIN_EXPIRY_SECONDS,
            min(expires_in, settings.UPLOAD_PRESIGN_MAX_EXPIRY_SECONDS),
        )
        url = self.storage.presign_upload_part(
            stored.object_key, stored.upload_id, part_number, expires_in, bucket=stored.bucket
        )
        self._touch(stored.id)
        return {"file_id": stored.id, "part_number": part_number, "url": url, "expires_in": expires_in}

    def complete_upload(
        self,
        file_id: uuid.UUID,
        parts: list[dict[str, Any]],
        user_id: uuid.UUID,
    ) -> dict[str, Any]:
        stored = self._get_owned(file_id, user_id)
        self._require_uploading(stored)
        submitted = self._validate_submitted_parts(stored, parts)

        # Claim: refreshing activity under the status guard keeps the stale sweep off this row
        if not self._touch(stored.id):
            self.db.refresh(stored)
            if stored.status == FileStatus.ERASING:
                raise self._expired(stored)
            raise UploadFailedException(
                f"Upload {file_id} is no longer in progress ({stored.status.value})",
                {"file_id": str(file_id)},
            )

        try:
            listed = {p["part_number"]: p for p in self.storage.list_parts(stored.object_key, stored.upload_id, bucket=stored.bucket)}
        except StorageOperationFailedException as exc:
            raise UploadFailedException(f"Could not verify parts for upload {file_id}: {exc.message}") from exc

        uploaded_bytes = 0
        for part in submitted:
            provider_part = listed.get(part["part_number"])
            if provider_part is None:
                raise UploadFailedException(f"Part {part['part_number']} was never uploaded")
            if normalize_etag(provider_part["etag"]) != normalize_etag(part["etag"]):
                raise UploadFailedException(f"ETag mismatch for part {part['part_number']}")
            uploaded_bytes += provider_part["size"]
        if uploaded_bytes != stored.size:
            raise UploadFailedException(
                f"Uploaded {uploaded_bytes} bytes but {stored.size} were declared",
                {"uploaded_bytes": uploaded_bytes, "size": stored.size},
            )

        try:
            etag = self.storage.complete_multipart_upload(
                stored.object_key, stored.upload_id, submitted, bucket=stored.bucket
            )
        except StorageOperationFailedException as exc:
            raise UploadFailedException(f"Storage rejected completion of {file_id}: {exc.message}") from exc

        result = self.db.execute(
            update(StoredFile)
            .where(StoredFile.id == stored.id, StoredFile.status == FileStatus.UPLOADING)
            .values(status=FileStatus.UPLOADED, etag=normalize_etag(etag), last_activity_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if result.rowcount != 1:
            raise UploadFailedException(f"Upload {file_id} changed state during completion")
        self.db.refresh(stored)
        self._release_slot(user_id)

        logger.info("Completed upload %s (%d bytes, %d parts)", file_id, stored.size, len(submitted))
        return {
            "file_id": stored.id,
            "status": stored.status.value,
            "etag": stored.etag,
            "object_key": stored.object_key,
            "size": stored.size,
        }

    def _validate_submitted_parts(self, stored: StoredFile, parts: list[dict[str, Any]]) -> list[dict[str, Any]]:
        if not parts:
            raise InvalidParameterException("At least one part is required")
        seen: set[int] = set()
        cleaned: list[dict[str, Any]] = []
        for part in parts:
            number = part.get("part_number")
            etag = part.get("etag")
            if isinstance(number, bool) or not isinstance(number, int) or not 1 <= number <= stored.total_parts:
                raise InvalidPartNumberException(
                    f"Part number must be between 1 and {stored.total_parts}", {"part_number": number}
                )
            if not isinstance(etag, str) or not etag.strip():
                raise InvalidParameterException(f"Part {number} is missing its ETag")
            if number in seen:
                raise InvalidParameterException(f"Part {number} was submitted more than once")
            seen.add(number)
            cleaned.append({"part_number": number, "etag": etag.strip()})

        missing = sorted(set(range(1, stored.total_parts + 1)) - seen)
        if missing:
            raise UploadFailedException(
                f"Missing parts: {missing[:20]}", {"missing_parts": missing[:100]}
            )
        return sorted(cleaned, key=lambda p: p["part_number"])

    def abort_upload(self, file_id: uuid.UUID, user_id: uuid.UUID, reason: str | None = None) -> None:
        stored = self._get_owned(file_id, user_id)
        if stored.status == FileStatus.UPLOADED:
            raise UploadAlreadyCompletedException(f"Upload {file_id} is already completed")
        claimed = self.db.execute(
            update(StoredFile)
            .where(
                StoredFile.id == stored.id,
                StoredFile.status.in_([FileStatus.PENDING, FileStatus.UPLOADING]),
            )
            .values(status=FileStatus.ERASING)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if claimed.rowcount != 1:
            self.db.refresh(stored)
            if stored.status == FileStatus.ERASING:
                raise self._expired(stored)
            raise InvalidFileStateException(
                f"Upload {file_id} cannot be aborted while '{stored.status.value}'"
            )
        self.db.refresh(stored)
        self._discard(stored)
        self._release_slot(user_id)
        logger.info("Aborted upload %s for user %s (%s)", file_id, user_id, reason or "no reason given")

    def heartbeat(self, file_id: uuid.UUID, user_id: uuid.UUID) -> None:
        stored = self._get_owned(file_id, user_id)
        self._require_uploading(stored)
        self._touch(stored.id)
        self.limiter.heartbeat(user_id)

    def get_upload_status(
        self,
        file_id: uuid.UUID,
        user_id: uuid.UUID,
        company_id: uuid.UUID,
    ) -> dict[str, Any]:
        stored = self.db.execute(
            select(StoredFile).where(
                StoredFile.id == file_id,
                StoredFile.user_id == user_id,
                StoredFile.company_id == company_id,
            )
        ).scalar_one_or_none()
        if stored is None:
            raise UploadNotFoundException(f"Upload {file_id} not found", {"file_id": str(file_id)})

        status: dict[str, Any] = {
            "file_id": stored.id,
            "status": stored.status.value,
            "upload_id": stored.upload_id,
            "total_parts_count": stored.total_parts,
            "completed_parts_count": 0,
            "uploaded_bytes": 0,
            "next_part_number": 1,
            "max_bytes": stored.size,
            "remaining_bytes": stored.size,
            "can_complete": False,
            "progress": 0,
            "parts": [],
            "message": None,
        }

        if stored.status == FileStatus.UPLOADED:
            status.update(
                completed_parts_count=stored.total_parts,
                uploaded_bytes=stored.size,
                next_part_number=None,
                remaining_bytes=0,
                progress=100,
                message="Upload completed",
            )
            return status
        if stored.status != FileStatus.UPLOADING or not stored.upload_id:
            status["message"] = f"Upload is {stored.status.value}"
            return status

        try:
            parts = self.storage.list_parts(stored.object_key, stored.upload_id, bucket=stored.bucket)
        except StorageOperationFailedException as exc:
            logger.warning("Could not list parts for upload %s: %s", file_id, exc.message)
            status["message"] = "Part information is temporarily unavailable"
            return status

        completed = [p for p in parts if p.get("etag")]
        numbers = {p["part_number"] for p in completed}
        uploaded_bytes = sum(p["size"] for p in completed)
        expected = set(range(1, stored.total_parts + 1))
        gaps = sorted(expected - numbers)
        if gaps:
            next_part: int | None = gaps[0]
        elif numbers and max(numbers) < stored.total_parts:
            next_part = max(numbers) + 1
        else:
            next_part = None

        status.update(
            completed_parts_count=len(completed),
            uploaded_bytes=uploaded_bytes,
            next_part_number=next_part,
            remaining_bytes=max(0, stored.size - uploaded_bytes),
            can_complete=not gaps and uploaded_bytes == stored.size,
            progress=min(100, round(uploaded_bytes / stored.size * 100)) if stored.size else 0,
            parts=[
                {"part_number": p["part_number"], "etag": normalize_etag(p["etag"]), "size": p["size"]}
                for p in completed
            ],
        )
        if uploaded_bytes > stored.size:
            status["message"] = "Uploaded bytes exceed the declared file size"
        return status

    def cleanup_expired_uploads(self, inactivity_threshold_minutes: int | None = None) -> int:
        """Abort uploads idle longer than the threshold. Returns how many were cleaned."""
        minutes = inactivity_threshold_minutes or settings.UPLOAD_STALE_MINUTES
        cutoff = utcnow() - timedelta(minutes=minutes)
        candidates = self.db.execute(
            select(StoredFile.id).where(
                StoredFile.status == FileStatus.UPLOADING,
                StoredFile.last_activity_at < cutoff,
            )
        ).scalars().all()

        cleaned = 0
        for file_id in candidates:
            claimed = self.db.execute(
                update(StoredFile)
                .where(
                    StoredFile.id == file_id,
                    StoredFile.status == FileStatus.UPLOADING,
                    StoredFile.last_activity_at < cutoff,
                )
                .values(status=FileStatus.ERASING)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
            if claimed.rowcount != 1:
                # Completed or touched since the scan
                continue
            stored = self.db.get(StoredFile, file_id, populate_existing=True)
            if stored is None:
                continue
            try:
                self._discard(stored)
            except Exception:
                logger.exception("Failed to clean up expired upload %s", file_id)
                self.db.rollback()
                continue
            self._release_slot(stored.user_id)
            cleaned += 1

        if cleaned:
            logger.info("Cleaned %d expired uploads idle for more than %d minutes", cleaned, minutes)
        return cleaned


def erase_stored_files(db: Session, storage: S3StorageProvider, file_ids: list[str]) -> int:
    """Delete consumed source files marked ERASING. Best effort; returns how many were erased."""
    erased = 0
    for raw_id in file_ids:
        try:
            file_id = uuid.UUID(str(raw_id))
        except ValueError:
            logger.warning("Skipping invalid file id %r in cleanup", raw_id)
            continue
        stored = db.get(StoredFile, file_id, populate_existing=True)
        if stored is None:
            continue
        if stored.status != FileStatus.ERASING:
            logger.info("File %s is %s; not erasing", file_id, stored.status.value)
            continue
        try:
            storage.delete_object(stored.object_key, bucket=stored.bucket)
            db.delete(stored)
            db.commit()
        except Exception:
            logger.exception("Failed to erase file %s", file_id)
            db.rollback()
            continue
        erased += 1
    if erased:
        logger.info("Erased %d consumed source files", erased)
    return erased
