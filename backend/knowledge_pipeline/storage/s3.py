"""
S3 Storage Service

Holds the raw bytes of uploaded documents and the extracted text of
fetched web/video sources.

Key layout:
    bots/<bot_id>/documents/<file_name>     uploaded by the web tier
    bots/<bot_id>/extracted/<document_id>.txt  written by DocumentService.fetch_source

Keys are always built server-side; `Document.file_path` stores the full
key for uploads.
"""

from __future__ import annotations

import logging
import mimetypes
from dataclasses import dataclass

import aioboto3
from botocore.exceptions import BotoCoreError, ClientError

from knowledge_pipeline.core.config import settings

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised for storage failures other than a missing object."""


@dataclass(frozen=True)
class S3Object:
    """Represents a stored object — returned by put_object."""
    key:          str
    bucket:       str
    size_bytes:   int
    content_type: str
    etag:         str


def extracted_text_key(bot_id: str, document_id: str) -> str:
    return f"bots/{bot_id}/extracted/{document_id}.txt"


class S3StorageService:
    """Async S3 operations against the configured bucket."""

    def __init__(self, bucket: str | None = None) -> None:
        self._bucket = bucket or settings.s3_bucket
        self._session = aioboto3.Session()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _client(self):
        """Return a scoped async S3 client context manager."""
        kwargs: dict = {"region_name": settings.aws_region}
        # Local dev reads static keys; production relies on the task role
        if settings.aws_access_key_id:
            kwargs["aws_access_key_id"] = settings.aws_access_key_id
            kwargs["aws_secret_access_key"] = settings.aws_secret_access_key
        return self._session.client("s3", **kwargs)

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def get_object(self, key: str) -> bytes:
        """Download an object. Missing keys raise FileNotFoundError."""
        async with self._client() as s3:
            try:
                resp = await s3.get_object(Bucket=self._bucket, Key=key)
                body = await resp["Body"].read()
            except ClientError as exc:
                code = exc.response["Error"]["Code"]
                if code in ("NoSuchKey", "404"):
                    raise FileNotFoundError(f"Object not found: {key}") from exc
                raise StorageError(f"S3 get failed for {key}: {code}") from exc
            except BotoCoreError as exc:
                raise StorageError(f"S3 get failed for {key}: {exc}") from exc

        logger.info("S3 download ok | key=%s size=%d", key, len(body))
        return body

    async def put_object(
        self,
        key: str,
        body: bytes,
        content_type: str | None = None,
    ) -> S3Object:
        ct = content_type or mimetypes.guess_type(key)[0] or "application/octet-stream"
        async with self._client() as s3:
            try:
                resp = await s3.put_object(
                    Bucket=self._bucket, Key=key, Body=body, ContentType=ct,
                )
            except (ClientError, BotoCoreError) as exc:
                raise StorageError(f"S3 put failed for {key}: {exc}") from exc

        logger.info("S3 upload ok | key=%s size=%d", key, len(body))
        return S3Object(
            key=key,
            bucket=self._bucket,
            size_bytes=len(body),
            content_type=ct,
            etag=resp.get("ETag", "").strip('"'),
        )

    async def delete_object(self, key: str) -> None:
        async with self._client() as s3:
            try:
                await s3.delete_object(Bucket=self._bucket, Key=key)
            except (ClientError, BotoCoreError) as exc:
                raise StorageError(f"S3 delete failed for {key}: {exc}") from exc
        logger.info("S3 delete | key=%s", key)
