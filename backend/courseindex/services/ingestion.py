"""
Document Ingestion Service

Top-level state machine of the upload lifecycle:

  received → persisted (record written, status=pending) → enqueued
           → [worker] → projected | degraded → cache_invalidated

The synchronous contract to the caller ends at persisted + enqueued; the
upload returns as soon as the task is handed to the broker.

Mutation ordering (delete, rename, completion):
  1. system-of-record mutation, committed   — failure is fatal, nothing else runs
  2. search-index mutation                   — failure is logged, never fatal
  3. cache invalidation                      — never raises
  4. (delete only) blob removal, best effort

Invariants enforced here:
  - Validation (format, size, category, subject) happens before any side
    effect, so a rejected upload persists nothing and enqueues nothing.
  - The record is committed before its task is published; a worker can never
    receive an id that does not exist yet.
  - Broker failures are non-fatal: the record stays pending and the stale
    scanner re-publishes it.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from courseindex.cache.coordinator import ALL_TAGS, CacheCoordinator
from courseindex.core.config import settings
from courseindex.core.errors import (
    AccessDenied,
    DocumentNotFound,
    InvalidStateTransition,
    StorageError,
    ValidationFailed,
)
from courseindex.db.documents import DocumentRepository, repository_scope
from courseindex.models.documents import Document, utcnow
from courseindex.processing.extractor import is_supported, supported_extensions
from courseindex.schemas.documents import (
    ALL_CATEGORIES,
    MAX_SUBJECT_NAME_LENGTH,
    DocumentStatusResponse,
    DocumentUploadResponse,
    IngestionStage,
    ProcessingStatus,
    RenameSubjectResponse,
    UploadErrors,
)
from courseindex.search.projector import IndexProjector
from courseindex.storage.base import BlobStore, build_locator

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Caller identity
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Requester:
    """Identity supplied by the authenticating gateway."""
    user_id:  uuid.UUID
    is_admin: bool = False

    def may_modify(self, doc: Document) -> bool:
        return self.is_admin or doc.user_id == self.user_id


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------

def get_extension(filename: str) -> str:
    """Lowercased extension without the dot; '' when there is none."""
    basename = filename.replace("\\", "/").rsplit("/", 1)[-1]
    parts = basename.rsplit(".", 1)
    return parts[-1].lower() if len(parts) == 2 else ""


def _validate_upload(
    data:              bytes,
    original_filename: str,
    subject_name:      str,
    category:          str,
) -> tuple[str, str]:
    """Return (extension, subject_name) or raise ValidationFailed."""
    ext = get_extension(original_filename)
    if not is_supported(ext):
        raise ValidationFailed(
            UploadErrors.unsupported_file_type(original_filename, ext, supported_extensions())
        )
    if not data:
        raise ValidationFailed(UploadErrors.missing_file())
    if len(data) > settings.max_upload_bytes:
        raise ValidationFailed(
            UploadErrors.file_too_large(len(data), settings.max_upload_bytes),
            status_code=413,
        )
    if category not in ALL_CATEGORIES:
        raise ValidationFailed(UploadErrors.invalid_category(category))

    subject = (subject_name or "").strip()
    if not subject or len(subject) > MAX_SUBJECT_NAME_LENGTH:
        raise ValidationFailed(UploadErrors.invalid_subject_name(subject_name or ""))
    return ext, subject


def _status_view(doc: Document) -> DocumentStatusResponse:
    return DocumentStatusResponse(
        id=doc.id,
        processing_status=ProcessingStatus(doc.processing_status),
        processing_error=doc.processing_error,
        processed_at=doc.processed_at,
        updated_at=doc.updated_at,
    )


# ---------------------------------------------------------------------------
# Core ingestion orchestrator
# ---------------------------------------------------------------------------

class IngestionOrchestrator:
    """
    Owns every write to uploaded_files except the worker's status claim.

    All collaborators are injected (testable, no hidden globals); one
    instance per process is enough.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        blob_store:      BlobStore,
        projector:       IndexProjector,
        cache:           CacheCoordinator,
        publisher:       "TaskPublisher",
    ) -> None:
        self._sessions  = session_factory
        self._blobs     = blob_store
        self._projector = projector
        self._cache     = cache
        self._publisher = publisher

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    async def upload(
        self,
        data:              bytes,
        original_filename: str,
        subject_name:      str,
        category:          str,
        user_id:           uuid.UUID,
    ) -> DocumentUploadResponse:
        """
        Validate, store, persist (pending), invalidate, enqueue.

        Raises:
            ValidationFailed  before any side effect
            StorageError      blob store rejected the bytes; nothing persisted
            RecordStoreError  record could not be written; blob removed again
        """
        ext, subject = _validate_upload(data, original_filename, subject_name, category)
        document_id = uuid.uuid4()
        logger.info(
            "Ingest | stage=%s doc=%s user=%s file=%r size=%d",
            IngestionStage.RECEIVED.value, document_id, user_id, original_filename, len(data),
        )

        # ---- Step 1: Store blob -------------------------------------
        stored_name = f"{document_id}.{ext}"
        locator = build_locator(subject, category, stored_name)
        await self._blobs.put(locator, data)

        # ---- Step 2: Persist record (status=pending) ----------------
        doc = Document(
            id=document_id,
            user_id=user_id,
            filename=stored_name,
            original_filename=original_filename,
            filepath=locator,
            subject_name=subject,
            category=category,
            file_size=len(data),
            file_extension=ext,
            processing_status=ProcessingStatus.PENDING.value,
        )
        try:
            async with repository_scope(self._sessions, "upload") as repo:
                await repo.add(doc)
        except Exception:
            await self._remove_blob(locator)
            raise
        logger.info("Ingest | stage=%s doc=%s", IngestionStage.PERSISTED.value, document_id)

        # ---- Step 3: Invalidate listings that now include the record --
        await self._cache.invalidate(ALL_TAGS)

        # ---- Step 4: Publish async processing task ------------------
        await self._enqueue(document_id)

        return DocumentUploadResponse(
            id=document_id,
            processing_status=ProcessingStatus.PENDING,
            original_filename=original_filename,
            subject_name=subject,
            category=category,
            file_size=len(data),
            file_extension=ext,
            created_at=doc.created_at or utcnow(),
        )

    async def _enqueue(self, document_id: uuid.UUID) -> bool:
        try:
            await self._publisher.publish_processing_task(document_id)
        except Exception as exc:
            # Non-fatal: the record is committed as pending and the stale
            # scanner re-publishes it.
            logger.error("Failed to publish processing task | doc=%s error=%s", document_id, exc)
            return False
        logger.info("Ingest | stage=%s doc=%s", IngestionStage.ENQUEUED.value, document_id)
        return True

    # ------------------------------------------------------------------
    # Worker completion
    # ------------------------------------------------------------------

    async def complete_processing(
        self,
        document_id: uuid.UUID,
        indexed:     bool,
        error:       str | None = None,
    ) -> bool:
        """
        processing → completed (indexed) | failed (index write gave up).

        Returns False if the record was no longer in processing (deleted or
        failed by the stale scanner meanwhile).
        """
        status = ProcessingStatus.COMPLETED if indexed else ProcessingStatus.FAILED
        async with repository_scope(self._sessions, "complete_processing") as repo:
            updated = await repo.finish(document_id, status, None if indexed else error)

        stage = IngestionStage.PROJECTED if indexed else IngestionStage.DEGRADED
        logger.info(
            "Ingest | stage=%s doc=%s status=%s updated=%s",
            stage.value, document_id, status.value, updated,
        )
        await self._cache.invalidate(ALL_TAGS)
        logger.info("Ingest | stage=%s doc=%s", IngestionStage.CACHE_INVALIDATED.value, document_id)
        return updated

    # ------------------------------------------------------------------
    # Delete / rename / reprocess
    # ------------------------------------------------------------------

    async def delete(self, document_id: uuid.UUID, requester: Requester) -> None:
        async with repository_scope(self._sessions, "delete") as repo:
            doc = await self._load_for_write(repo, document_id, requester)
            locator = doc.filepath
            await repo.delete(document_id)

        await self._projector.delete(str(document_id))
        await self._cache.invalidate(ALL_TAGS)
        await self._remove_blob(locator)
        logger.info("Document deleted | doc=%s by=%s", document_id, requester.user_id)

    async def rename_subject(self, old_name: str, new_name: str) -> RenameSubjectResponse:
        old_name, new_name = old_name.strip(), new_name.strip()
        if not new_name or len(new_name) > MAX_SUBJECT_NAME_LENGTH:
            raise ValidationFailed(UploadErrors.invalid_subject_name(new_name))
        if old_name == new_name:
            return RenameSubjectResponse(
                old_name=old_name, new_name=new_name, records_updated=0, index_updated=0,
            )

        async with repository_scope(self._sessions, "rename_subject") as repo:
            records = await repo.rename_subject(old_name, new_name)

        indexed = await self._projector.rename_field_value("subject_name", old_name, new_name)
        await self._cache.invalidate(ALL_TAGS)
        logger.info(
            "Subject renamed | old=%r new=%r records=%d index=%d",
            old_name, new_name, records, indexed,
        )
        return RenameSubjectResponse(
            old_name=old_name, new_name=new_name, records_updated=records, index_updated=indexed,
        )

    async def reprocess(self, document_id: uuid.UUID, requester: Requester) -> DocumentStatusResponse:
        """completed | failed → pending, then enqueue again."""
        async with repository_scope(self._sessions, "reprocess") as repo:
            doc = await self._load_for_write(repo, document_id, requester)
            if not await repo.reset_for_reprocessing(document_id):
                raise InvalidStateTransition(
                    UploadErrors.invalid_state(doc.processing_status, "reprocess")
                )
            await repo.refresh(doc)

        await self._cache.invalidate(ALL_TAGS)
        await self._enqueue(document_id)
        return _status_view(doc)

    async def get_status(self, document_id: uuid.UUID, requester: Requester) -> DocumentStatusResponse:
        """Owner-only view. Other identities get 404, not 403, so ids don't leak."""
        async with repository_scope(self._sessions, "get_status") as repo:
            doc = await repo.get(document_id)
        if doc is None or doc.user_id != requester.user_id:
            raise DocumentNotFound(UploadErrors.document_not_found(document_id))
        return _status_view(doc)

    # ------------------------------------------------------------------
    # Stale-task recovery (Celery Beat)
    # ------------------------------------------------------------------

    async def recover_stale(self) -> dict[str, int]:
        """
        Re-publish records stuck in pending (lost broker message) and fail
        records stuck in processing (crashed worker). processing never goes
        back to pending; reprocess() is the way out of failed.
        """
        now = utcnow()
        pending_cutoff    = now - timedelta(seconds=settings.stale_pending_after_seconds)
        processing_cutoff = now - timedelta(seconds=settings.stale_processing_after_seconds)

        async with repository_scope(self._sessions, "recover_stale") as repo:
            stale_pending = [
                doc.id for doc in
                await repo.find_stale_pending(pending_cutoff, settings.stale_scan_batch_size)
            ]
            failed = await repo.fail_stale_processing(
                processing_cutoff, "Processing timed out; request reprocessing to retry.",
            )

        requeued = 0
        for document_id in stale_pending:
            if await self._enqueue(document_id):
                requeued += 1
        if failed:
            await self._cache.invalidate(ALL_TAGS)

        logger.info("Stale scan | requeued=%d failed=%d", requeued, failed)
        return {"requeued": requeued, "failed": failed}

    async def refresh_caches(self) -> None:
        """Drop every cached read, e.g. after a full reindex."""
        await self._cache.invalidate(ALL_TAGS)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _load_for_write(
        repo:        DocumentRepository,
        document_id: uuid.UUID,
        requester:   Requester,
    ) -> Document:
        doc = await repo.get(document_id)
        if doc is None:
            raise DocumentNotFound(UploadErrors.document_not_found(document_id))
        if not requester.may_modify(doc):
            raise AccessDenied(UploadErrors.forbidden())
        return doc

    async def _remove_blob(self, locator: str) -> None:
        try:
            await self._blobs.delete(locator)
        except StorageError as exc:
            logger.warning("Blob removal failed | locator=%s error=%s", locator, exc)


# ---------------------------------------------------------------------------
# Task publisher: thin abstraction over Celery .apply_async()
# Injected into IngestionOrchestrator so it can be mocked in tests.
# ---------------------------------------------------------------------------

class TaskPublisher:
    """
    Sends tasks to the Celery broker.
    Import is deferred so the broker connection is not required at module load time.
    """

    async def publish_processing_task(self, document_id: uuid.UUID) -> str:
        """
        Dispatch process_document to the ingest queue.
        Runs in a thread executor to avoid blocking the async event loop.
        """
        from courseindex.workers.tasks import process_document

        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(
            None,
            lambda: process_document.apply_async(kwargs={"document_id": str(document_id)}),
        )
        logger.info("Processing task published | doc=%s task=%s", document_id, result.id)
        return result.id

    async def publish_reindex_task(self) -> str:
        from courseindex.workers.tasks import reindex_all

        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(None, lambda: reindex_all.apply_async())
        logger.info("Reindex task published | task=%s", result.id)
        return result.id
