"""
Search API — full-text search over course files

GET /api/v1/search?q=...&subject_name=...&category=...&file_extension=...&size=...

Fuzzy multi-field match (filename, original filename, subject, extracted
content) with highlighted fragments. An empty q lists everything matching the
filters. When the index is unavailable the result is empty, never an error.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Query

from courseindex.api.dependencies import AppServices, BypassCache
from courseindex.schemas.documents import Category, SearchResponse

router = APIRouter(prefix="/search", tags=["Search"])


@router.get("", response_model=SearchResponse, summary="Search course files")
async def search_files(
    services:       AppServices,
    bypass:         BypassCache,
    q:              Annotated[str, Query(max_length=500)] = "",
    subject_name:   str | None      = None,
    category:       Category | None = None,
    file_extension: str | None      = None,
    size:           Annotated[int, Query(ge=1, le=100)] = 20,
) -> SearchResponse:
    filters = {
        "subject_name":   subject_name,
        "category":       category.value if category else None,
        "file_extension": file_extension.lower().lstrip(".") if file_extension else None,
    }
    return await services.queries.search(q, filters, size, bypass=bypass)
