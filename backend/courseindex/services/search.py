"""
Search Query Service — the cached read path

Every read goes  cache → (miss) index or system of record → cache.

  Read                    Source            Cache
  ─────────────────────   ───────────────   ─────────────────────────────────
  search()                index             tagged files+subjects
  list_files() subject    index (*)         tagged files+subjects
  list_files() other      system of record  tagged files+subjects
  subject_detail()        system of record  tagged subjects+files
  subjects_with_counts()  index aggregation fast path → tagged files+subjects
  subject_list()          system of record  fast path → tagged subjects+files
  comprehensive_stats()   index aggregation fast path → tagged stats

(*) pages reaching past MAX_RESULT_WINDOW hits come from the system of record.

The fast-path keys sit in front of the tagged entry and may lag a mutation by
up to settings.cache_fast_path_ttl seconds.

bypass=True (diagnostic identity) skips every cache layer.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from courseindex.cache.coordinator import (
    FAST_SUBJECT_LIST,
    FAST_SUBJECTS_WITH_COUNTS,
    FAST_SYSTEM_STATS,
    LISTING_TAGS,
    TAG_STATS,
    CacheCoordinator,
    derive_key,
)
from courseindex.core.config import settings
from courseindex.db.documents import repository_scope
from courseindex.schemas.documents import (
    Category,
    CategoryCount,
    DocumentOut,
    FileFilter,
    FileListResponse,
    SearchHit,
    SearchResponse,
    SubjectCount,
    SubjectDetailResponse,
    SystemStats,
)
from courseindex.search.base import MAX_RESULT_WINDOW
from courseindex.search.projector import IndexProjector

logger = logging.getLogger(__name__)

T = TypeVar("T")

# The index keeps the whole extracted text; listings never need it
_LISTING_EXCLUDED_FIELDS = frozenset({"content"})


class SearchQueryService:

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        projector:       IndexProjector,
        cache:           CacheCoordinator,
    ) -> None:
        self._sessions  = session_factory
        self._projector = projector
        self._cache     = cache

    # ------------------------------------------------------------------
    # Cache plumbing
    # ------------------------------------------------------------------

    async def _tagged(
        self,
        key:     str,
        tags:    tuple[str, ...],
        ttl:     int,
        compute: Callable[[], Awaitable[T]],
        bypass:  bool,
    ) -> T:
        if bypass:
            return await self._cache.bypass(key, compute)
        return await self._cache.read_through(key, tags, ttl, compute)

    async def _fast(
        self,
        fast_key: str,
        inner:    Callable[[], Awaitable[T]],
        bypass:   bool,
    ) -> T:
        if bypass:
            return await self._cache.bypass(fast_key, inner)
        return await self._cache.fast_path(fast_key, inner)

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search(
        self,
        query:   str,
        filters: dict[str, str] | None = None,
        size:    int = 20,
        bypass:  bool = False,
    ) -> SearchResponse:
        filters = {name: value for name, value in (filters or {}).items() if value}
        key = derive_key("search", q=query.strip(), size=size, **filters)

        async def compute() -> dict[str, Any]:
            results = await self._projector.search(query, filters, size)
            return SearchResponse(
                query=query,
                total=results.total,
                results=[
                    SearchHit(file_id=hit.doc_id, score=hit.score, source=hit.source, highlight=hit.highlight)
                    for hit in results.hits
                ],
            ).model_dump(mode="json")

        payload = await self._tagged(key, LISTING_TAGS, settings.cache_tagged_ttl, compute, bypass)
        return SearchResponse.model_validate(payload)

    # ------------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------------

    async def list_files(self, flt: FileFilter, bypass: bool = False) -> FileListResponse:
        if flt.is_subject_only and flt.page * flt.per_page <= MAX_RESULT_WINDOW:
            key = derive_key(
                "files:es:subject", subject=flt.subject_name, page=flt.page, per_page=flt.per_page,
            )
            source = self._list_from_index
        else:
            key = derive_key("files", **flt.model_dump(mode="json"))
            source = self._list_from_records

        async def compute() -> dict[str, Any]:
            return await source(flt)

        payload = await self._tagged(key, LISTING_TAGS, settings.cache_tagged_ttl, compute, bypass)
        return FileListResponse.model_validate(payload)

    async def _list_from_index(self, flt: FileFilter) -> dict[str, Any]:
        results = await self._projector.files_by_subject(flt.subject_name, size=flt.page * flt.per_page)
        start = (flt.page - 1) * flt.per_page
        data = [
            {k: v for k, v in hit.source.items() if k not in _LISTING_EXCLUDED_FIELDS}
            for hit in results.hits[start:start + flt.per_page]
        ]
        return FileListResponse(
            data=data, total=results.total, page=flt.page, per_page=flt.per_page,
        ).model_dump(mode="json")

    async def _list_from_records(self, flt: FileFilter) -> dict[str, Any]:
        async with repository_scope(self._sessions, "list_files") as repo:
            rows, total = await repo.list_files(flt)
            data = [DocumentOut.model_validate(row).model_dump(mode="json") for row in rows]
        return FileListResponse(
            data=data, total=total, page=flt.page, per_page=flt.per_page,
        ).model_dump(mode="json")

    # ------------------------------------------------------------------
    # Subjects
    # ------------------------------------------------------------------

    async def subjects_with_counts(self, bypass: bool = False) -> list[SubjectCount]:
        async def compute() -> list[dict[str, Any]]:
            buckets = await self._projector.aggregate_by("subject_name")
            return [{"subject_name": name, "file_count": count} for name, count in buckets]

        async def tagged() -> list[dict[str, Any]]:
            return await self._cache.read_through(
                FAST_SUBJECTS_WITH_COUNTS, LISTING_TAGS, settings.cache_tagged_ttl, compute,
            )

        payload = await self._fast(FAST_SUBJECTS_WITH_COUNTS, compute if bypass else tagged, bypass)
        return [SubjectCount.model_validate(item) for item in payload]

    async def subject_list(self, bypass: bool = False) -> list[str]:
        async def compute() -> list[str]:
            async with repository_scope(self._sessions, "subject_list") as repo:
                return await repo.distinct_subjects()

        async def tagged() -> list[str]:
            return await self._cache.read_through(
                FAST_SUBJECT_LIST, LISTING_TAGS, settings.cache_tagged_ttl, compute,
            )

        return await self._fast(FAST_SUBJECT_LIST, compute if bypass else tagged, bypass)

    async def subject_detail(self, subject_name: str, bypass: bool = False) -> SubjectDetailResponse:
        """All four categories, zero-filled."""
        key = f"{derive_key('subject', name=subject_name)}:categories"

        async def compute() -> dict[str, Any]:
            async with repository_scope(self._sessions, "subject_detail") as repo:
                counts = await repo.category_counts(subject_name)
            return SubjectDetailResponse(
                subject_name=subject_name,
                categories=[
                    CategoryCount(category=c.value, file_count=counts.get(c.value, 0))
                    for c in Category
                ],
            ).model_dump(mode="json")

        payload = await self._tagged(key, LISTING_TAGS, settings.cache_tagged_ttl, compute, bypass)
        return SubjectDetailResponse.model_validate(payload)

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    async def comprehensive_stats(self, bypass: bool = False) -> SystemStats:
        async def compute() -> dict[str, Any]:
            return SystemStats(**await self._projector.comprehensive_stats()).model_dump(mode="json")

        async def tagged() -> dict[str, Any]:
            return await self._cache.read_through(
                "stats:comprehensive", (TAG_STATS,), settings.cache_stats_ttl, compute,
            )

        payload = await self._fast(FAST_SYSTEM_STATS, compute if bypass else tagged, bypass)
        return SystemStats.model_validate(payload)

    # ------------------------------------------------------------------
    # Warm-up (Celery Beat / after deploy)
    # ------------------------------------------------------------------

    async def warm(self) -> dict[str, int]:
        subjects = await self.subjects_with_counts()
        names    = await self.subject_list()
        stats    = await self.comprehensive_stats()
        logger.info(
            "Cache warm | subjects=%d names=%d total_files=%d",
            len(subjects), len(names), stats.total_files,
        )
        return {"subjects": len(subjects), "names": len(names), "total_files": stats.total_files}
