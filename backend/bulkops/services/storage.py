"""
S3-compatible object storage provider.

Wraps the boto3 client calls the upload manager and the bulk workers need.
Every provider error is re-raised as StorageOperationFailedException so
callers never see botocore types.
"""
from __future__ import annotations

import logging
from typing import Any, BinaryIO

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from bulkops.config import settings
from bulkops.exceptions import StorageOperationFailedException

logger = logging.getLogger(__name__)


class S3StorageProvider:
    """Object storage operations against one default bucket."""

    def __init__(self, client: Any, default_bucket: str):
        self.client = client
        self.bucket = default_bucket

    # --- multipart ---

    def initiate_multipart_upload(self, key: str, content_type: str, bucket: str | None = None) -> str:
        try:
            response = self.client.create_multipart_upload(
                Bucket=bucket or self.bucket, Key=key, ContentType=content_type
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageOperationFailedException(f"Failed to initiate multipart upload: {e}") from e
        return response["UploadId"]

    def presign_upload_part(
        self,
        key: str,
        upload_id: str,
        part_number: int,
        expires_in: int,
        bucket: str | None = None,
    ) -> str:
        try:
            return self.client.generate_presigned_url(
                "upload_part",
                Params={
                    "Bucket": bucket or self.bucket,
                    "Key": key,
                    "UploadId": upload_id,
                    "PartNumber": part_number,
                },
                ExpiresIn=expires_in,
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageOperationFailedException(f"Failed to presign part {part_number}: {e}") from e

    def list_parts(self, key: str, upload_id: str, bucket: str | None = None) -> list[dict[str, Any]]:
        """
        List the parts the provider holds for an upload.

        Returns:
            list of {"part_number", "etag", "size"} sorted by part number
        """
        parts: list[dict[str, Any]] = []
        params: dict[str, Any] = {"Bucket": bucket or self.bucket, "Key": key, "UploadId": upload_id}
        try:
            while True:
                response = self.client.list_parts(**params)
                for part in response.get("Parts", []):
                    parts.append(
                        {
                            "part_number": part["PartNumber"],
                            "etag": part["ETag"],
                            "size": part["Size"],
                        }
                    )
                if not response.get("IsTruncated"):
                    break
                params["PartNumberMarker"] = response["NextPartNumberMarker"]
        except (ClientError, BotoCoreError) as e:
            raise StorageOperationFailedException(f"Failed to list parts: {e}") from e
        return sorted(parts, key=lambda p: p["part_number"])

    def complete_multipart_upload(
        self,
        key: str,
        upload_id: str,
        parts: list[dict[str, Any]],
        bucket: str | None = None,
    ) -> str:
        try:
            response = self.client.complete_multipart_upload(
                Bucket=bucket or self.bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={
                    "Parts": [
                        {"PartNumber": p["part_number"], "ETag": p["etag"]} for p in parts
                    ]
                },
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageOperationFailedException(f"Failed to complete multipart upload: {e}") from e
        return response.get("ETag", "")

    def abort_multipart_upload(self, key: str, upload_id: str, bucket: str | None = None) -> None:
        try:
            self.client.abort_multipart_upload(Bucket=bucket or self.bucket, Key=key, UploadId=upload_id)
        except ClientError as e:
            # Already aborted or completed uploads are gone, which is the goal
            if e.response.get("Error", {}).get("Code") == "NoSuchUpload":
                logger.info("Multipart upload %s for %s no longer exists", upload_id, key)
                return
            raise StorageOperationFailedException(f"Failed to abort multipart upload: {e}") from e
        except BotoCoreError as e:
            raise StorageOperationFailedException(f"Failed to abort multipart upload: {e}") from e

    # --- objects ---

    def put_object(self, key: str, body: bytes | BinaryIO, content_type: str, bucket: str | None = None) -> str:
        try:
            response = self.client.put_object(
                Bucket=bucket or self.bucket, Key=key, Body=body, ContentType=content_type
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageOperationFailedException(f"Failed to store object {key}: {e}") from e
        return response.get("ETag", "")

    def get_object_stream(self, key: str, bucket: str | None = None) -> Any:
        """Return the streaming body of an object; the caller must close it."""
        try:
            response = self.client.get_object(Bucket=bucket or self.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise StorageOperationFailedException(f"Failed to read object {key}: {e}") from e
        return response["Body"]

    def head_object(self, key: str, bucket: str | None = None) -> dict[str, Any] | None:
        try:
            response = self.client.head_object(Bucket=bucket or self.bucket, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return None
            raise StorageOperationFailedException(f"Failed to stat object {key}: {e}") from e
        except BotoCoreError as e:
            raise StorageOperationFailedException(f"Failed to stat object {key}: {e}") from e
        return {
            "size": response.get("ContentLength", 0),
            "etag": response.get("ETag"),
            "content_type": response.get("ContentType"),
        }

    def object_exists(self, key: str, bucket: str | None = None) -> bool:
        return self.head_object(key, bucket) is not None

    def delete_object(self, key: str, bucket: str | None = None) -> None:
        try:
            self.client.delete_object(Bucket=bucket or self.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise StorageOperationFailedException(f"Failed to delete object {key}: {e}") from e

    def list_prefix(self, prefix: str, bucket: str | None = None) -> list[str]:
        keys: list[str] = []
        try:
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=bucket or self.bucket, Prefix=prefix):
                keys.extend(obj["Key"] for obj in page.get("Contents", []))
        except (ClientError, BotoCoreError) as e:
            raise StorageOperationFailedException(f"Failed to list prefix {prefix}: {e}") from e
        return keys


def build_storage_provider() -> S3StorageProvider:
    client = boto3.client(
        "s3",
        region_name=settings.STORAGE_REGION,
        endpoint_url=settings.STORAGE_ENDPOINT_URL,
        config=Config(
            connect_timeout=settings.STORAGE_CONNECT_TIMEOUT_SECONDS,
            read_timeout=settings.STORAGE_READ_TIMEOUT_SECONDS,
            retries={"max_attempts": settings.STORAGE_MAX_ATTEMPTS, "mode": "standard"},
            signature_version="s3v4",
        ),
    )
    return S3StorageProvider(client, settings.STORAGE_BUCKET)
