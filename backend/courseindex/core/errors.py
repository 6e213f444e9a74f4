"""Domain exceptions for the ingestion, indexing and cache pipeline.

Services raise these; the API layer turns them into ``ErrorResponse`` bodies
with the carried HTTP status.  Index and cache errors never cross the
projector / coordinator read paths: they exist so backends can signal failure
to the component that owns the degradation policy.
"""

from __future__ import annotations

from fastapi import status

from courseindex.schemas.documents import ErrorResponse


class CourseIndexError(Exception):
    """Base class carrying an HTTP status and a structured error body."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, error: ErrorResponse, status_code: int | None = None) -> None:
        self.error = error
        if status_code is not None:
            self.status_code = status_code
        super().__init__(error.message)


class ValidationFailed(CourseIndexError):
    """Rejected synchronously; nothing was persisted or enqueued."""

    status_code = status.HTTP_400_BAD_REQUEST


class NotAuthenticated(CourseIndexError):
    """No caller identity was forwarded by the gateway."""

    status_code = status.HTTP_401_UNAUTHORIZED


class DocumentNotFound(CourseIndexError):
    status_code = status.HTTP_404_NOT_FOUND


class AccessDenied(CourseIndexError):
    status_code = status.HTTP_403_FORBIDDEN


class InvalidStateTransition(CourseIndexError):
    status_code = status.HTTP_409_CONFLICT


class RecordStoreError(CourseIndexError):
    """System-of-record failure — fatal, aborts the enclosing mutation."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class StorageError(CourseIndexError):
    """Blob store failure while accepting an upload."""

    status_code = status.HTTP_502_BAD_GATEWAY


class SearchIndexError(Exception):
    """Raised by search backends; handled by the IndexProjector."""

    def __init__(self, operation: str, message: str) -> None:
        self.operation = operation
        super().__init__(f"Search index {operation} failed: {message}")


class CacheBackendError(Exception):
    """Raised by cache backends; handled by the CacheCoordinator."""
