"""
Course Files API Router

  POST   /api/v1/files                 upload (multipart) → 202, processing is async
  GET    /api/v1/files                 paginated listing with filters
  GET    /api/v1/files/{id}/status     poll processing status (owner only)
  DELETE /api/v1/files/{id}            owner or admin
  POST   /api/v1/files/{id}/reprocess  completed | failed → pending

Request lifecycle of an upload:
  ┌─────────────────────────────────────────────────────────┐
  │ 1. Identity from X-User-ID (gateway-authenticated)      │
  │ 2. Validation: extension, size, category, subject       │
  │ 3. Blob stored under uploads/<subject>/<category>/      │
  │ 4. DB insert (status=pending)                           │
  │ 5. Listing caches invalidated                           │
  │ 6. Celery task published → returns 202                  │
  └─────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import logging
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, File, Form, Query, UploadFile, status
from fastapi.responses import JSONResponse

from courseindex.api.dependencies import AppServices, BypassCache, CurrentUser
from courseindex.core.config import settings
from courseindex.core.errors import ValidationFailed
from courseindex.schemas.documents import (
    Category,
    DocumentStatusResponse,
    DocumentUploadResponse,
    ErrorResponse,
    FileFilter,
    FileListResponse,
    UploadErrors,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/files", tags=["Course Files"])

# Read at most this much past the limit to tell "too large" from "exactly at it"
_READ_SLACK = 1


# ---------------------------------------------------------------------------
# POST /files
# ---------------------------------------------------------------------------

@router.post(
    "",
    response_model=DocumentUploadResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Upload a course file",
    description=(
        "Accepts PDF, DOC(X), PPT(X) or TXT files up to the configured limit. "
        "Returns 202 immediately; text extraction and indexing run in the background. "
        "Poll GET /files/{id}/status for progress."
    ),
    responses={
        400: {"model": ErrorResponse, "description": "Unsupported type, empty file, bad category or subject"},
        401: {"model": ErrorResponse, "description": "Missing X-User-ID"},
        413: {"model": ErrorResponse, "description": "File exceeds the upload limit"},
        500: {"model": ErrorResponse, "description": "Record could not be persisted"},
        502: {"model": ErrorResponse, "description": "Blob storage unavailable"},
    },
)
async def upload_file(
    user:         CurrentUser,
    services:     AppServices,
    file:         UploadFile = File(..., description="Course file"),
    subject_name: str        = Form(..., description="Subject the file belongs to"),
    category:     str        = Form(..., description=f"One of {', '.join(c.value for c in Category)}"),
) -> JSONResponse:
    data = await file.read(settings.max_upload_bytes + _READ_SLACK)
    if len(data) > settings.max_upload_bytes:
        raise ValidationFailed(
            UploadErrors.file_too_large(len(data), settings.max_upload_bytes),
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
        )

    result = await services.orchestrator.upload(
        data=data,
        original_filename=file.filename or "",
        subject_name=subject_name,
        category=category,
        user_id=user.user_id,
    )
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content=result.model_dump(mode="json"),
        headers={
            "X-Document-ID": str(result.id),
            "Location":      f"/api/v1/files/{result.id}/status",
        },
    )


# ---------------------------------------------------------------------------
# GET /files
# ---------------------------------------------------------------------------

@router.get("", response_model=FileListResponse, summary="List course files")
async def list_files(
    services:     AppServices,
    bypass:       BypassCache,
    subject_name: str | None      = None,
    category:     Category | None = None,
    extension:    str | None      = None,
    user_id:      UUID | None     = None,
    page:         Annotated[int, Query(ge=1)] = 1,
    per_page:     Annotated[int, Query(ge=1, le=1000)] = 20,
) -> FileListResponse:
    flt = FileFilter(
        subject_name=subject_name or None,
        category=category,
        extension=extension.lower().lstrip(".") if extension else None,
        user_id=user_id,
        page=page,
        per_page=per_page,
    )
    return await services.queries.list_files(flt, bypass=bypass)


# ---------------------------------------------------------------------------
# GET /files/{id}/status
# ---------------------------------------------------------------------------

@router.get(
    "/{document_id}/status",
    response_model=DocumentStatusResponse,
    summary="Poll async processing status",
    responses={404: {"model": ErrorResponse}},
)
async def get_file_status(
    document_id: UUID,
    user:        CurrentUser,
    services:    AppServices,
) -> DocumentStatusResponse:
    return await services.orchestrator.get_status(document_id, user)


# ---------------------------------------------------------------------------
# DELETE /files/{id}
# ---------------------------------------------------------------------------

@router.delete(
    "/{document_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a course file",
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def delete_file(
    document_id: UUID,
    user:        CurrentUser,
    services:    AppServices,
) -> None:
    await services.orchestrator.delete(document_id, user)


# ---------------------------------------------------------------------------
# POST /files/{id}/reprocess
# ---------------------------------------------------------------------------

@router.post(
    "/{document_id}/reprocess",
    response_model=DocumentStatusResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Queue a finished file for another extraction + indexing run",
    responses={
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse, "description": "File is still pending or processing"},
    },
)
async def reprocess_file(
    document_id: UUID,
    user:        CurrentUser,
    services:    AppServices,
) -> DocumentStatusResponse:
    return await services.orchestrator.reprocess(document_id, user)
