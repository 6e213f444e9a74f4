"""Blob store selection from STORAGE_BACKEND (local | s3)."""

from __future__ import annotations

from courseindex.core.config import settings
from courseindex.storage.base import BlobStore


def get_blob_store(backend: str | None = None) -> BlobStore:
    backend = (backend or settings.storage_backend).lower()

    if backend == "local":
        from courseindex.storage.local import LocalBlobStore
        return LocalBlobStore()

    if backend == "s3":
        from courseindex.storage.s3 import S3BlobStore
        return S3BlobStore()

    raise ValueError(
        f"Unknown storage backend: '{backend}'. "
        f"Valid options: 'local', 's3'"
    )
