"""
Course Documents — Pydantic Request/Response Schemas

Covers the ingestion and read paths:
  - Upload response (202 Accepted) and processing-status polling
  - File listings, search hits, subject listings and statistics
  - Subject rename and reindex (admin)
  - All structured error bodies (400, 403, 404, 413, 422, 500)

Design decisions:
  - document id is always server-generated (UUID4); never client-supplied.
  - processing_status is the async pipeline state, separate from HTTP status.
  - category is a closed enumeration; anything else is a validation error.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ---------------------------------------------------------------------------
# Categories: the fixed set every subject is organised by
# ---------------------------------------------------------------------------

class Category(str, Enum):
    PREDNASKY = "Prednasky"   # lectures
    OTAZKY    = "Otazky"      # exam questions
    MATERIALY = "Materialy"   # study materials
    SEMINARE  = "Seminare"    # seminars


ALL_CATEGORIES: tuple[str, ...] = tuple(sorted(c.value for c in Category))

MAX_SUBJECT_NAME_LENGTH: int = 200


# ---------------------------------------------------------------------------
# Processing pipeline state machine
# ---------------------------------------------------------------------------

class ProcessingStatus(str, Enum):
    """
    Maps to uploaded_files.processing_status.
    Transitions: pending → processing → completed | failed
    Only an explicit reprocess request leaves completed/failed (back to pending).
    """
    PENDING    = "pending"      # persisted, not yet claimed by a worker
    PROCESSING = "processing"   # claimed by exactly one worker
    COMPLETED  = "completed"    # extracted + indexed (text may be empty)
    FAILED     = "failed"       # index write failed after retries, or stuck


TERMINAL_STATUSES: frozenset[str] = frozenset(
    {ProcessingStatus.COMPLETED.value, ProcessingStatus.FAILED.value}
)


class IngestionStage(str, Enum):
    """Upload lifecycle as seen by the orchestrator (logged, not persisted)."""
    RECEIVED         = "received"
    PERSISTED        = "persisted"
    ENQUEUED         = "enqueued"
    PROJECTED        = "projected"
    DEGRADED         = "degraded"
    CACHE_INVALIDATED = "cache_invalidated"


# ---------------------------------------------------------------------------
# Upload + status
# ---------------------------------------------------------------------------

class DocumentUploadResponse(BaseModel):
    """
    Returned immediately after a successful upload.
    HTTP 202 — the record is persisted but processing is async.
    """
    id:                UUID             = Field(..., description="Server-generated document UUID")
    processing_status: ProcessingStatus = Field(
        ProcessingStatus.PENDING,
        description="Async pipeline state — poll /files/{id}/status for updates",
    )
    original_filename: str
    subject_name:      str
    category:          Category
    file_size:         int
    file_extension:    str
    created_at:        datetime


class DocumentStatusResponse(BaseModel):
    """Polled by the owning user to track async processing progress."""
    id:                UUID
    processing_status: ProcessingStatus
    processing_error:  str | None = None
    processed_at:      datetime | None = None
    updated_at:        datetime | None = None


# ---------------------------------------------------------------------------
# Listings
# ---------------------------------------------------------------------------

class DocumentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id:                UUID
    user_id:           UUID
    filename:          str
    original_filename: str
    subject_name:      str
    category:          str
    file_size:         int
    file_extension:    str
    processing_status: str
    created_at:        datetime | None = None


class FileFilter(BaseModel):
    """Query parameters of GET /files — also the cache-key material."""
    subject_name: str | None = None
    category:     Category | None = None
    extension:    str | None = None
    user_id:      UUID | None = None
    page:         int = Field(1, ge=1)
    per_page:     int = Field(20, ge=1, le=1000)

    @property
    def is_subject_only(self) -> bool:
        return bool(self.subject_name) and not (self.category or self.extension or self.user_id)


class FileListResponse(BaseModel):
    data:     list[dict[str, Any]]
    total:    int
    page:     int = 1
    per_page: int = 20


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------

class SearchHit(BaseModel):
    file_id:   str
    score:     float
    source:    dict[str, Any]
    highlight: dict[str, list[str]] = Field(default_factory=dict)


class SearchResponse(BaseModel):
    query:   str
    total:   int
    results: list[SearchHit]


# ---------------------------------------------------------------------------
# Subjects + stats
# ---------------------------------------------------------------------------

class SubjectCount(BaseModel):
    subject_name: str
    file_count:   int


class CategoryCount(BaseModel):
    category:   str
    file_count: int


class SubjectDetailResponse(BaseModel):
    subject_name: str
    categories:   list[CategoryCount]


class SystemStats(BaseModel):
    total_files:         int = 0
    total_subjects:      int = 0
    total_storage_bytes: int = 0
    files_by_category:   list[dict[str, Any]] = Field(default_factory=list)
    files_by_extension:  list[dict[str, Any]] = Field(default_factory=list)


class RenameSubjectRequest(BaseModel):
    old_name: str = Field(..., min_length=1, max_length=MAX_SUBJECT_NAME_LENGTH)
    new_name: str = Field(..., min_length=1, max_length=MAX_SUBJECT_NAME_LENGTH)

    @field_validator("old_name", "new_name")
    @classmethod
    def _strip(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("subject name must not be blank")
        return value


class RenameSubjectResponse(BaseModel):
    old_name:        str
    new_name:        str
    records_updated: int
    index_updated:   int


class ReindexResponse(BaseModel):
    task_id: str | None = None
    queued:  bool


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error — may appear in a list."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str         = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    error_code: str               = Field(..., description="Stable machine-readable code")
    message:    str               = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: str | None        = Field(None, description="Trace ID for log correlation")


# ---------------------------------------------------------------------------
# Pre-defined error factories (keeps services and routes thin)
# ---------------------------------------------------------------------------

class UploadErrors:
    """Factories for every documented error case."""

    @staticmethod
    def unsupported_file_type(filename: str, extension: str, allowed: list[str]) -> ErrorResponse:
        return ErrorResponse(
            error_code="UNSUPPORTED_FILE_TYPE",
            message=f"File type '{extension or 'unknown'}' is not supported.",
            details=[
                ErrorDetail(
                    field="file",
                    message=(
                        f"'{filename}' has an unsupported extension. "
                        f"Allowed: {', '.join(allowed).upper()}."
                    ),
                    code="UNSUPPORTED_FILE_TYPE",
                )
            ],
        )

    @staticmethod
    def file_too_large(size_bytes: int, limit_bytes: int) -> ErrorResponse:
        return ErrorResponse(
            error_code="FILE_TOO_LARGE",
            message=f"Uploaded file exceeds the {limit_bytes // (1024 * 1024)} MB limit.",
            details=[
                ErrorDetail(
                    field="file",
                    message=f"Received {size_bytes:,} bytes; limit is {limit_bytes:,} bytes.",
                    code="FILE_TOO_LARGE",
                )
            ],
        )

    @staticmethod
    def missing_file() -> ErrorResponse:
        return ErrorResponse(
            error_code="MISSING_FILE",
            message="No file content was provided.",
            details=[
                ErrorDetail(field="file", message="The uploaded file is empty.", code="MISSING_FILE")
            ],
        )

    @staticmethod
    def invalid_category(category: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="INVALID_CATEGORY",
            message=f"Category '{category}' is not one of {', '.join(ALL_CATEGORIES)}.",
            details=[
                ErrorDetail(field="category", message="Unknown category.", code="INVALID_CATEGORY")
            ],
        )

    @staticmethod
    def invalid_subject_name(name: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="INVALID_SUBJECT_NAME",
            message="The subject name is empty or too long.",
            details=[
                ErrorDetail(
                    field="subject_name",
                    message=f"'{name[:50]}' must be 1-{MAX_SUBJECT_NAME_LENGTH} characters.",
                    code="INVALID_SUBJECT_NAME",
                )
            ],
        )

    @staticmethod
    def unauthenticated() -> ErrorResponse:
        return ErrorResponse(
            error_code="UNAUTHENTICATED",
            message="A valid X-User-ID header is required.",
            details=[],
        )

    @staticmethod
    def admin_required() -> ErrorResponse:
        return ErrorResponse(
            error_code="ADMIN_REQUIRED",
            message="This operation requires the admin role.",
            details=[],
        )

    @staticmethod
    def forbidden() -> ErrorResponse:
        return ErrorResponse(
            error_code="FORBIDDEN",
            message="You do not have access to this document.",
            details=[],
        )

    @staticmethod
    def invalid_state(current: str, action: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="INVALID_STATE",
            message=f"Cannot {action} a document whose status is '{current}'.",
            details=[],
        )

    @staticmethod
    def storage_error(detail: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="STORAGE_ERROR",
            message="Failed to store the document. Please retry.",
            details=(
                [ErrorDetail(field=None, message=detail, code="STORAGE_ERROR")]
                if detail
                else []
            ),
        )

    @staticmethod
    def record_store_error() -> ErrorResponse:
        return ErrorResponse(
            error_code="RECORD_STORE_ERROR",
            message="The document database rejected the operation. Nothing was changed.",
            details=[],
        )

    @staticmethod
    def internal_error(request_id: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="The request could not be completed; it has been logged under request_id.",
            details=[],
            request_id=request_id,
        )

    @staticmethod
    def document_not_found(document_id: UUID) -> ErrorResponse:
        return ErrorResponse(
            error_code="DOCUMENT_NOT_FOUND",
            message=f"Document '{document_id}' was not found.",
            details=[],
        )
