"""
SQLAlchemy ORM Models — Uploaded course documents

The system of record for the ingestion pipeline. The search index and the
cache are projections of this table and can always be rebuilt from it.

Using SQLAlchemy 2.x mapped classes for full async support. Column types are
dialect-neutral so the same models run on PostgreSQL (asyncpg) in production
and SQLite (aiosqlite) in tests.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Index,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Declarative base: shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Document model: uploaded_files
# ---------------------------------------------------------------------------

class Document(Base):
    """
    One uploaded course file, from intake to searchable.

    State machine (processing_status column):
        pending    — record written, processing task enqueued
        processing — claimed by exactly one worker (atomic UPDATE ... WHERE)
        completed  — text extracted (possibly empty) and index document written
        failed     — index write failed after retries, or the claim went stale

    Only the ingestion orchestrator writes rows; the worker touches
    processing_status / processing_error / processed_at and nothing else.
    """

    __tablename__ = "uploaded_files"
    __table_args__ = (
        CheckConstraint(
            "processing_status IN ('pending', 'processing', 'completed', 'failed')",
            name="uploaded_files_status_check",
        ),
        Index("idx_uploaded_files_subject",          "subject_name"),
        Index("idx_uploaded_files_subject_category", "subject_name", "category"),
        Index("idx_uploaded_files_status",           "processing_status", "updated_at"),
        Index("idx_uploaded_files_user",             "user_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    # Owning user: identity supplied by the authenticating gateway
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    filename: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Server-generated stored name: <uuid>.<ext>",
    )
    original_filename: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Client filename, shown to users and indexed",
    )
    filepath: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Blob storage locator: uploads/<subject>/<category>/<filename>",
    )

    subject_name: Mapped[str] = mapped_column(String(200), nullable=False)
    category:     Mapped[str] = mapped_column(String(32), nullable=False)

    file_size:      Mapped[int] = mapped_column(BigInteger, nullable=False)
    file_extension: Mapped[str] = mapped_column(String(10), nullable=False)

    # Ingestion state machine
    processing_status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="pending",
        server_default="pending",
    )
    processing_error: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Populated only when processing_status='failed'",
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
    )

    def __repr__(self) -> str:
        return (
            f"<Document id={self.id} subject={self.subject_name!r} "
            f"status={self.processing_status} file={self.original_filename!r}>"
        )
