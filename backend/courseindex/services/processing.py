"""
Document Processing Service — the background worker's state machine driver

One call to DocumentProcessor.process(document_id):

  1. Claim        UPDATE ... SET processing WHERE id=? AND status='pending'
                  (not claimed → skip: another worker has it, it already
                  finished, or it was deleted)
  2. Load bytes   blob store; a missing/unreadable blob counts as empty text
  3. Extract      ContentExtractor under the wall-clock budget; timeout or
                  decode failure → empty text, never an error
  4. Re-check     the record may have been deleted while we extracted;
                  if so, skip the upsert instead of resurrecting it
  5. Upsert       IndexProjector, retried with back-off
  6. Re-check     a delete that landed during the upsert removed the record
                  and then the (not yet written) index doc; drop ours
  7. Complete     orchestrator sets completed | failed and invalidates caches

Safe under at-least-once delivery: a duplicate message fails the claim in
step 1 and does nothing. A task retried after a database error passes
resume=True, which also claims a record it left in processing; every step
after the claim is repeatable.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from courseindex.core.errors import SearchIndexError, StorageError
from courseindex.db.documents import repository_scope
from courseindex.processing.extractor import ContentExtractor, run_with_budget
from courseindex.schemas.documents import ProcessingStatus
from courseindex.search.projector import IndexProjector
from courseindex.services.ingestion import IngestionOrchestrator
from courseindex.storage.base import BlobStore

logger = logging.getLogger(__name__)

SKIPPED = "skipped"


@dataclass
class ProcessingOutcome:
    """
    Result of one process() call, returned by the Celery task.

    status   : "completed" | "failed" | "skipped"
    reason   : why it was skipped / failed, None on success
    chars    : extracted text length written to the index
    strategy : extraction strategy used, None when skipped before extraction
    """
    document_id: uuid.UUID
    status:      str
    reason:      str | None = None
    chars:       int = 0
    strategy:    str | None = None
    elapsed_ms:  float = 0.0

    def as_dict(self) -> dict:
        return {
            "document_id": str(self.document_id),
            "status":      self.status,
            "reason":      self.reason,
            "chars":       self.chars,
            "strategy":    self.strategy,
            "elapsed_ms":  round(self.elapsed_ms, 1),
        }


class DocumentProcessor:
    """Stateless per-process worker logic; all collaborators injected."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        blob_store:      BlobStore,
        projector:       IndexProjector,
        orchestrator:    IngestionOrchestrator,
        extractor:       ContentExtractor | None = None,
        extract_timeout: float | None = None,
    ) -> None:
        self._sessions     = session_factory
        self._blobs        = blob_store
        self._projector    = projector
        self._orchestrator = orchestrator
        self._extractor    = extractor or ContentExtractor()
        self._timeout      = extract_timeout

    async def process(self, document_id: uuid.UUID, resume: bool = False) -> ProcessingOutcome:
        t0 = time.monotonic()

        def outcome(status: str, **kwargs) -> ProcessingOutcome:
            return ProcessingOutcome(
                document_id=document_id,
                status=status,
                elapsed_ms=(time.monotonic() - t0) * 1000,
                **kwargs,
            )

        # ── Step 1: Atomic claim ─────────────────────────────────────────
        async with repository_scope(self._sessions, "claim") as repo:
            claimed = await repo.claim(document_id, resume=resume)
            doc = await repo.get(document_id) if claimed else None

        if doc is None:
            logger.info("Processing skipped | doc=%s reason=not_pending", document_id)
            return outcome(SKIPPED, reason="not_pending")

        logger.info(
            "Processing claimed | doc=%s ext=%s size=%d",
            document_id, doc.file_extension, doc.file_size,
        )

        # ── Step 2: Load bytes ───────────────────────────────────────────
        try:
            data = await self._blobs.get(doc.filepath)
        except (FileNotFoundError, StorageError) as exc:
            logger.warning("Blob unavailable | doc=%s locator=%s error=%s", document_id, doc.filepath, exc)
            data = b""

        # ── Step 3: Extract under budget ─────────────────────────────────
        extraction = await run_with_budget(self._extractor, data, doc.file_extension, self._timeout)
        del data

        # ── Step 4: Record still there? ──────────────────────────────────
        async with repository_scope(self._sessions, "recheck") as repo:
            current = await repo.get(document_id)
        if current is None:
            logger.info("Processing skipped | doc=%s reason=deleted_during_extraction", document_id)
            return outcome(SKIPPED, reason="deleted", strategy=extraction.strategy_used)

        # ── Step 5: Upsert ───────────────────────────────────────────────
        try:
            await self._projector.upsert(current, extraction.text)
            indexed, error = True, None
        except SearchIndexError as exc:
            indexed, error = False, str(exc)

        # ── Step 6: Deleted while we were writing? ───────────────────────
        if indexed:
            async with repository_scope(self._sessions, "recheck") as repo:
                still_there = await repo.exists(document_id)
            if not still_there:
                await self._projector.delete(str(document_id))
                logger.info("Processing skipped | doc=%s reason=deleted_during_upsert", document_id)
                return outcome(SKIPPED, reason="deleted", strategy=extraction.strategy_used)

        # ── Step 7: Terminal status + invalidation ───────────────────────
        await self._orchestrator.complete_processing(document_id, indexed, error)

        status = ProcessingStatus.COMPLETED if indexed else ProcessingStatus.FAILED
        result = outcome(
            status.value,
            reason=error if not indexed else extraction.skipped_reason,
            chars=extraction.total_chars,
            strategy=extraction.strategy_used,
        )
        logger.info(
            "Processing done | doc=%s status=%s chars=%d strategy=%s elapsed_ms=%.0f",
            document_id, result.status, result.chars, result.strategy, result.elapsed_ms,
        )
        return result

    async def extract_text(self, document_id: uuid.UUID, filepath: str, ext: str) -> str:
        """Re-run extraction for an existing record (used by reindex)."""
        try:
            data = await self._blobs.get(filepath)
        except (FileNotFoundError, StorageError) as exc:
            logger.warning("Blob unavailable | doc=%s locator=%s error=%s", document_id, filepath, exc)
            return ""
        extraction = await run_with_budget(self._extractor, data, ext, self._timeout)
        return extraction.text

    async def reindex_all(self, batch_size: int = 100) -> dict[str, int]:
        """
        Rebuild the index from the system of record.

        Only completed records are re-projected: pending/processing ones are
        in flight and failed ones go through an explicit reprocess.
        Statuses are not touched.
        """
        await self._projector.ensure_index()
        offset = indexed = failed = 0
        while True:
            async with repository_scope(self._sessions, "reindex") as repo:
                batch = list(await repo.page_by_status(ProcessingStatus.COMPLETED, offset, batch_size))
            if not batch:
                break

            pairs = [
                (doc, await self.extract_text(doc.id, doc.filepath, doc.file_extension))
                for doc in batch
            ]
            ok, bad = await self._projector.reindex(pairs)
            indexed += ok
            failed  += bad
            offset  += batch_size
            logger.info("Reindex batch | offset=%d indexed=%d failed=%d", offset, ok, bad)

        await self._orchestrator.refresh_caches()
        logger.info("Reindex done | indexed=%d failed=%d", indexed, failed)
        return {"indexed": indexed, "failed": failed}
