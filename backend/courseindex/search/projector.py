"""
Index Projector — system-of-record rows → search-index documents

Owns the failure policy for the search index, which is a disposable
acceleration layer:

  Writes
    upsert()              retried with exponential back-off; raises
                          SearchIndexError after the last attempt so the
                          worker can record status=failed.
    delete()              idempotent, never raises (False on failure).
    rename_field_value()  never raises; 0 on failure. Callers invoke it only
                          after the system-of-record update has committed.

  Reads
    search(), files_by_subject(), aggregate_by(), comprehensive_stats()
    never raise; a failing backend yields an empty result with total=0.

Every index document is rebuilt from a Document row plus freshly extracted
text, so reindex() can restore the whole index from the system of record.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Iterable

from courseindex.core.config import settings
from courseindex.core.errors import SearchIndexError
from courseindex.models.documents import Document
from courseindex.search.base import KEYWORD_FIELDS, IndexResults, SearchIndexBackend

logger = logging.getLogger(__name__)

RETRY_MAX_DELAY = 10.0   # seconds


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def build_index_document(doc: Document, text: str) -> dict[str, Any]:
    """The complete index document; written as one unit on every upsert."""
    return {
        "file_id":           str(doc.id),
        "user_id":           str(doc.user_id),
        "filename":          doc.filename,
        "original_filename": doc.original_filename,
        "filepath":          doc.filepath,
        "subject_name":      doc.subject_name,
        "category":          doc.category,
        "file_extension":    doc.file_extension,
        "file_size":         int(doc.file_size),
        "content":           text,
        "created_at":        _iso(doc.created_at),
        "updated_at":        _iso(doc.updated_at),
    }


def _require_keyword(field_name: str) -> None:
    if field_name not in KEYWORD_FIELDS:
        raise ValueError(
            f"'{field_name}' is not a keyword field. Allowed: {', '.join(sorted(KEYWORD_FIELDS))}"
        )


class IndexProjector:
    """
    Failure-policy wrapper around a SearchIndexBackend.

    Usage:
        projector = IndexProjector(InMemorySearchIndex())
        await projector.upsert(doc, text)
        results = await projector.search("mitosis", {"subject_name": "Biology"})
    """

    def __init__(
        self,
        backend:    SearchIndexBackend,
        retries:    int | None = None,
        base_delay: float | None = None,
    ) -> None:
        self.backend    = backend
        self.retries    = settings.index_write_retries if retries is None else retries
        self.base_delay = settings.index_retry_base_delay if base_delay is None else base_delay

    async def ensure_index(self) -> bool:
        try:
            await self.backend.ensure_index()
        except SearchIndexError as exc:
            logger.error("Index setup failed | error=%s", exc)
            return False
        return True

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def upsert(self, doc: Document, text: str) -> None:
        """
        Write the full index document for one record.

        Raises:
            SearchIndexError once every attempt has failed.
        """
        document = build_index_document(doc, text)
        doc_id = document["file_id"]
        last_error: SearchIndexError | None = None

        for attempt in range(self.retries):
            if attempt > 0:
                delay = min(self.base_delay * (2 ** (attempt - 1)), RETRY_MAX_DELAY)
                logger.warning(
                    "Index upsert retry | doc=%s attempt=%d delay=%.1fs error=%s",
                    doc_id, attempt, delay, last_error,
                )
                await asyncio.sleep(delay)
            try:
                await self.backend.upsert(doc_id, document)
                logger.info("Index upsert | doc=%s chars=%d", doc_id, len(text))
                return
            except SearchIndexError as exc:
                last_error = exc

        logger.error("Index upsert failed | doc=%s attempts=%d error=%s", doc_id, self.retries, last_error)
        raise last_error or SearchIndexError("upsert", "no attempts were made")

    async def delete(self, doc_id: str) -> bool:
        try:
            existed = await self.backend.delete(doc_id)
        except SearchIndexError as exc:
            logger.error("Index delete failed | doc=%s error=%s", doc_id, exc)
            return False
        logger.info("Index delete | doc=%s existed=%s", doc_id, existed)
        return True

    async def rename_field_value(self, field_name: str, old_value: str, new_value: str) -> int:
        _require_keyword(field_name)
        try:
            updated = await self.backend.rename_field_value(field_name, old_value, new_value)
        except SearchIndexError as exc:
            logger.error(
                "Index rename failed | field=%s old=%r new=%r error=%s",
                field_name, old_value, new_value, exc,
            )
            return 0
        logger.info(
            "Index rename | field=%s old=%r new=%r updated=%d",
            field_name, old_value, new_value, updated,
        )
        return updated

    async def reindex(self, records: Iterable[tuple[Document, str]]) -> tuple[int, int]:
        """Upsert every (record, text) pair. Returns (indexed, failed)."""
        indexed = failed = 0
        for doc, text in records:
            try:
                await self.upsert(doc, text)
                indexed += 1
            except SearchIndexError:
                failed += 1
        return indexed, failed

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def search(
        self,
        query:   str,
        filters: dict[str, str] | None = None,
        size:    int = 20,
    ) -> IndexResults:
        try:
            return await self.backend.search(query, filters, size)
        except SearchIndexError as exc:
            logger.warning("Index search degraded | query=%r error=%s", query, exc)
            return IndexResults.empty()

    async def files_by_subject(self, subject_name: str, size: int = 1000) -> IndexResults:
        try:
            return await self.backend.files_by_subject(subject_name, size)
        except SearchIndexError as exc:
            logger.warning("Index subject listing degraded | subject=%r error=%s", subject_name, exc)
            return IndexResults.empty()

    async def aggregate_by(self, field_name: str, size: int = 1000) -> list[tuple[str, int]]:
        _require_keyword(field_name)
        try:
            return await self.backend.aggregate_by(field_name, size)
        except SearchIndexError as exc:
            logger.warning("Index aggregation degraded | field=%s error=%s", field_name, exc)
            return []

    async def comprehensive_stats(self) -> dict[str, Any]:
        """Totals across the whole index; zeros when the index is unavailable."""
        try:
            total_files = await self.backend.count()
            subjects    = await self.backend.aggregate_by("subject_name")
            storage     = await self.backend.sum_field("file_size")
            categories  = await self.backend.aggregate_by("category")
            extensions  = await self.backend.aggregate_by("file_extension")
        except SearchIndexError as exc:
            logger.warning("Index stats degraded | error=%s", exc)
            return {
                "total_files": 0,
                "total_subjects": 0,
                "total_storage_bytes": 0,
                "files_by_category": [],
                "files_by_extension": [],
            }
        return {
            "total_files":         total_files,
            "total_subjects":      len(subjects),
            "total_storage_bytes": storage,
            "files_by_category":   [{"category": k, "count": c} for k, c in categories],
            "files_by_extension":  [{"file_extension": k, "count": c} for k, c in extensions],
        }

    async def ping(self) -> bool:
        return await self.backend.ping()
