"""
S3 Blob Store

Objects are stored under the same locator the records keep:

    s3://<BUCKET>/uploads/<subject-slug>/<category-slug>/<uuid>.<ext>

The locator is built server-side (storage.base.build_locator); the client
never supplies a raw S3 key.

Deletion is a hard delete: the record is already gone by the time the blob
is removed, and nothing else references the object.
"""

from __future__ import annotations

import logging
import mimetypes

import aioboto3
from botocore.exceptions import BotoCoreError, ClientError

from courseindex.core.config import settings
from courseindex.core.errors import StorageError
from courseindex.schemas.documents import UploadErrors
from courseindex.storage.base import BlobStore

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = ("NoSuchKey", "404", "NotFound")


class S3BlobStore(BlobStore):
    """Async S3 operations on a single bucket."""

    def __init__(self, bucket: str | None = None, region: str | None = None) -> None:
        self._bucket  = bucket or settings.s3_bucket
        self._region  = region or settings.aws_region
        self._session = aioboto3.Session()

    def _client(self):
        """Return a scoped async S3 client context manager."""
        return self._session.client(
            "s3",
            region_name=self._region,
            # In production: IAM role assumed via ECS task role / IRSA.
            # In local dev: reads AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY.
        )

    async def put(self, locator: str, data: bytes, content_type: str | None = None) -> None:
        ct = content_type or mimetypes.guess_type(locator)[0] or "application/octet-stream"
        try:
            async with self._client() as s3:
                await s3.put_object(Bucket=self._bucket, Key=locator, Body=data, ContentType=ct)
        except (ClientError, BotoCoreError) as exc:
            logger.error("S3 upload failed | key=%s error=%s", locator, exc)
            raise StorageError(UploadErrors.storage_error(str(exc))) from exc

        logger.info("S3 upload ok | bucket=%s key=%s size=%d", self._bucket, locator, len(data))

    async def get(self, locator: str) -> bytes:
        async with self._client() as s3:
            try:
                resp = await s3.get_object(Bucket=self._bucket, Key=locator)
                return await resp["Body"].read()
            except ClientError as exc:
                code = exc.response["Error"]["Code"]
                if code in _NOT_FOUND_CODES:
                    raise FileNotFoundError(f"Object not found: {locator}") from exc
                raise StorageError(UploadErrors.storage_error(str(exc))) from exc
            except BotoCoreError as exc:
                raise StorageError(UploadErrors.storage_error(str(exc))) from exc

    async def delete(self, locator: str) -> bool:
        async with self._client() as s3:
            try:
                await s3.head_object(Bucket=self._bucket, Key=locator)
            except ClientError as exc:
                if exc.response["Error"]["Code"] in _NOT_FOUND_CODES:
                    return False
                raise StorageError(UploadErrors.storage_error(str(exc))) from exc
            try:
                await s3.delete_object(Bucket=self._bucket, Key=locator)
            except (ClientError, BotoCoreError) as exc:
                raise StorageError(UploadErrors.storage_error(str(exc))) from exc

        logger.info("S3 delete | bucket=%s key=%s", self._bucket, locator)
        return True
