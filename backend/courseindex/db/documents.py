"""
Document repository — every SQL statement against uploaded_files.

All writes are single statements so they are atomic on their own:
  - claim():   UPDATE ... SET processing WHERE id=? AND status='pending'
               exactly one concurrent caller sees rowcount == 1.
  - finish():  UPDATE ... WHERE id=? AND status='processing'
               a record deleted or reset in the meantime is left alone.
  - rename_subject(): one bulk UPDATE, committed before the index is touched.

Transaction boundaries belong to the caller (session.begin() blocks in the
services), never to this module.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from courseindex.core.errors import RecordStoreError
from courseindex.models.documents import Document, utcnow
from courseindex.schemas.documents import (
    TERMINAL_STATUSES,
    FileFilter,
    ProcessingStatus,
    UploadErrors,
)

logger = logging.getLogger(__name__)


class DocumentRepository:
    """Thin query object bound to one session."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Single-record access
    # ------------------------------------------------------------------

    async def add(self, doc: Document) -> Document:
        self._session.add(doc)
        await self._session.flush()
        return doc

    async def get(self, document_id: uuid.UUID) -> Document | None:
        return await self._session.get(Document, document_id)

    async def refresh(self, doc: Document) -> None:
        await self._session.refresh(doc)

    async def exists(self, document_id: uuid.UUID) -> bool:
        result = await self._session.execute(
            select(Document.id).where(Document.id == document_id)
        )
        return result.first() is not None

    async def delete(self, document_id: uuid.UUID) -> bool:
        result = await self._session.execute(
            delete(Document)
            .where(Document.id == document_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Status machine
    # ------------------------------------------------------------------

    async def claim(self, document_id: uuid.UUID, resume: bool = False) -> bool:
        """
        Atomically move pending → processing. False if someone else won.

        resume=True also accepts a record already in processing: a retry of
        the task that claimed it and then lost the database.
        """
        claimable = [ProcessingStatus.PENDING.value]
        if resume:
            claimable.append(ProcessingStatus.PROCESSING.value)
        result = await self._session.execute(
            update(Document)
            .where(
                Document.id == document_id,
                Document.processing_status.in_(claimable),
            )
            .values(
                processing_status=ProcessingStatus.PROCESSING.value,
                processing_error=None,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def finish(
        self,
        document_id: uuid.UUID,
        status: ProcessingStatus,
        error: str | None = None,
    ) -> bool:
        """processing → completed | failed."""
        now = utcnow()
        result = await self._session.execute(
            update(Document)
            .where(
                Document.id == document_id,
                Document.processing_status == ProcessingStatus.PROCESSING.value,
            )
            .values(
                processing_status=status.value,
                processing_error=error,
                processed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def reset_for_reprocessing(self, document_id: uuid.UUID) -> bool:
        """completed | failed → pending (explicit reprocess request only)."""
        result = await self._session.execute(
            update(Document)
            .where(
                Document.id == document_id,
                Document.processing_status.in_(TERMINAL_STATUSES),
            )
            .values(
                processing_status=ProcessingStatus.PENDING.value,
                processing_error=None,
                processed_at=None,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def find_stale_pending(self, older_than: datetime, limit: int) -> list[Document]:
        result = await self._session.execute(
            select(Document)
            .where(
                Document.processing_status == ProcessingStatus.PENDING.value,
                Document.updated_at < older_than,
            )
            .order_by(Document.updated_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def fail_stale_processing(self, older_than: datetime, reason: str) -> int:
        now = utcnow()
        result = await self._session.execute(
            update(Document)
            .where(
                Document.processing_status == ProcessingStatus.PROCESSING.value,
                Document.updated_at < older_than,
            )
            .values(
                processing_status=ProcessingStatus.FAILED.value,
                processing_error=reason,
                processed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    # ------------------------------------------------------------------
    # Bulk mutations
    # ------------------------------------------------------------------

    async def rename_subject(self, old_name: str, new_name: str) -> int:
        result = await self._session.execute(
            update(Document)
            .where(Document.subject_name == old_name)
            .values(subject_name=new_name, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    # ------------------------------------------------------------------
    # Read paths (cache misses fall through to these)
    # ------------------------------------------------------------------

    async def list_files(self, flt: FileFilter) -> tuple[list[Document], int]:
        conditions = []
        if flt.subject_name:
            conditions.append(Document.subject_name == flt.subject_name)
        if flt.category:
            conditions.append(Document.category == flt.category.value)
        if flt.extension:
            conditions.append(Document.file_extension == flt.extension.lower())
        if flt.user_id:
            conditions.append(Document.user_id == flt.user_id)

        total = await self._session.scalar(
            select(func.count()).select_from(Document).where(*conditions)
        )
        result = await self._session.execute(
            select(Document)
            .where(*conditions)
            .order_by(Document.created_at.desc(), Document.id)
            .offset((flt.page - 1) * flt.per_page)
            .limit(flt.per_page)
        )
        return list(result.scalars().all()), int(total or 0)

    async def distinct_subjects(self) -> list[str]:
        result = await self._session.execute(
            select(Document.subject_name)
            .group_by(Document.subject_name)
            .order_by(Document.subject_name)
        )
        return [row[0] for row in result.all()]

    async def category_counts(self, subject_name: str) -> dict[str, int]:
        result = await self._session.execute(
            select(Document.category, func.count())
            .where(Document.subject_name == subject_name)
            .group_by(Document.category)
        )
        return {category: int(count) for category, count in result.all()}

    async def page_by_status(self, status: ProcessingStatus, offset: int, limit: int) -> Sequence[Document]:
        result = await self._session.execute(
            select(Document)
            .where(Document.processing_status == status.value)
            .order_by(Document.created_at, Document.id)
            .offset(offset)
            .limit(limit)
        )
        return result.scalars().all()


# ---------------------------------------------------------------------------
# Unit of work
# ---------------------------------------------------------------------------

@asynccontextmanager
async def repository_scope(
    session_factory: async_sessionmaker[AsyncSession],
    operation: str,
) -> AsyncIterator[DocumentRepository]:
    """
    One committed transaction around a DocumentRepository.

    Any SQLAlchemyError becomes RecordStoreError: a system-of-record failure
    aborts the enclosing mutation before the index or cache are touched.
    Domain errors raised inside the block roll back and propagate unchanged.
    """
    try:
        async with session_factory() as session:
            async with session.begin():
                yield DocumentRepository(session)
    except SQLAlchemyError as exc:
        logger.exception("Record store failure | op=%s", operation)
        raise RecordStoreError(UploadErrors.record_store_error()) from exc
