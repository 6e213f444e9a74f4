"""Filesystem blob store rooted at settings.storage_local_root."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from courseindex.core.config import settings
from courseindex.core.errors import StorageError
from courseindex.schemas.documents import UploadErrors
from courseindex.storage.base import BlobStore

logger = logging.getLogger(__name__)


class LocalBlobStore(BlobStore):
    """
    Stores each blob as a file under root/<locator>.

    File I/O runs in the default thread pool so the event loop never blocks
    on disk.
    """

    def __init__(self, root: str | Path | None = None) -> None:
        self._root = Path(root or settings.storage_local_root).resolve()

    def _path(self, locator: str) -> Path:
        path = (self._root / locator).resolve()
        # Locators are server-built, but never let one escape the root
        if self._root not in path.parents:
            raise StorageError(UploadErrors.storage_error(f"Invalid locator: {locator}"))
        return path

    async def put(self, locator: str, data: bytes, content_type: str | None = None) -> None:
        path = self._path(locator)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        try:
            await asyncio.to_thread(_write)
        except OSError as exc:
            logger.error("Local put failed | locator=%s error=%s", locator, exc)
            raise StorageError(UploadErrors.storage_error(str(exc))) from exc
        logger.info("Local put ok | locator=%s size=%d", locator, len(data))

    async def get(self, locator: str) -> bytes:
        path = self._path(locator)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            raise
        except OSError as exc:
            raise StorageError(UploadErrors.storage_error(str(exc))) from exc

    async def delete(self, locator: str) -> bool:
        path = self._path(locator)
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise StorageError(UploadErrors.storage_error(str(exc))) from exc
        logger.info("Local delete | locator=%s", locator)
        return True
