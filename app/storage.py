"""Music Ingest Pipeline - Object storage adapter.

Uploads staged bytes to remote storage and returns a canonical URL.

Backends:
- local: filesystem under STORAGE_DIR (development and tests)
- s3: any S3-compatible bucket through boto3

How bytes are wrapped for the provider (BytesIO body for S3, atomic file
write for local) stays inside the backend. Callers only see
upload(data, filename, folder) -> UploadResult. Provider failures of any kind
surface as StorageUploadError, which the queue retries.
"""

from __future__ import annotations

import asyncio
import io
import logging
import mimetypes
from dataclasses import dataclass
from pathlib import Path

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from app.config import (
    S3_BUCKET_NAME,
    S3_ENDPOINT_URL,
    S3_REGION,
    STORAGE_BACKEND,
    STORAGE_DIR,
    STORAGE_PUBLIC_BASE_URL,
)
from app.errors import StorageUploadError
from app.utils.atomic_io import atomic_write_bytes

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UploadResult:
    """Where an object landed."""

    url: str
    provider_id: str


def object_key(folder: str, filename: str) -> str:
    """Join a folder like "/music-files" and a filename into a bucket key."""
    folder = folder.strip("/")
    return f"{folder}/{filename}" if folder else filename


class ObjectStorage:
    """Base class for storage backends."""

    async def upload(self, data: bytes, filename: str, folder: str) -> UploadResult:
        """Upload bytes without blocking the event loop.

        Raises:
            StorageUploadError: On any provider-side failure.
        """
        if not data:
            raise StorageUploadError(filename, "empty content")
        try:
            result = await asyncio.to_thread(self._put, data, filename, folder)
        except StorageUploadError:
            raise
        except Exception as e:
            raise StorageUploadError(filename, str(e)) from e
        logger.info("Uploaded %s to %s (%d bytes)", filename, result.url, len(data))
        return result

    def _put(self, data: bytes, filename: str, folder: str) -> UploadResult:
        raise NotImplementedError


class LocalObjectStorage(ObjectStorage):
    """Stores objects as files under a root directory."""

    def __init__(self, root: str | Path = STORAGE_DIR, public_base_url: str = ""):
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")

    def _put(self, data: bytes, filename: str, folder: str) -> UploadResult:
        key = object_key(folder, filename)
        dest = self.root / key
        try:
            atomic_write_bytes(dest, data)
        except OSError as e:
            raise StorageUploadError(filename, f"local write failed: {e}") from e

        if self.public_base_url:
            url = f"{self.public_base_url}/{key}"
        else:
            url = dest.resolve().as_uri()
        return UploadResult(url=url, provider_id=key)


class S3ObjectStorage(ObjectStorage):
    """Stores objects in an S3-compatible bucket."""

    def __init__(self, bucket: str, client=None, public_base_url: str = "", region: str = S3_REGION):
        if not bucket:
            raise ValueError("S3 bucket name is not set")
        self.bucket = bucket
        self.region = region
        self.public_base_url = public_base_url.rstrip("/")
        self._client = client or boto3.client(
            "s3",
            region_name=region,
            endpoint_url=S3_ENDPOINT_URL,
        )

    def _url_for(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    def _put(self, data: bytes, filename: str, folder: str) -> UploadResult:
        key = object_key(folder, filename)
        content_type = mimetypes.guess_type(filename)[0] or "application/octet-stream"
        try:
            response = self._client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=io.BytesIO(data),
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageUploadError(filename, f"S3 put_object failed: {e}") from e

        provider_id = response.get("VersionId") or key
        return UploadResult(url=self._url_for(key), provider_id=provider_id)


def create_storage(backend: str | None = None) -> ObjectStorage:
    """Build the configured storage backend.

    Args:
        backend: "local" or "s3". Defaults to config.STORAGE_BACKEND.
    """
    backend = (backend or STORAGE_BACKEND).lower()
    if backend == "s3":
        logger.info("Using S3 bucket: %s", S3_BUCKET_NAME)
        return S3ObjectStorage(S3_BUCKET_NAME, public_base_url=STORAGE_PUBLIC_BASE_URL)
    if backend == "local":
        logger.info("Using local object storage at %s", STORAGE_DIR)
        return LocalObjectStorage(STORAGE_DIR, public_base_url=STORAGE_PUBLIC_BASE_URL)
    raise ValueError(f"Unknown storage backend: {backend}")
