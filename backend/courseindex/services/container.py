"""
Service wiring

Builds the object graph once per process (API lifespan) or once per task
(Celery worker):

    session factory ─┬─ IngestionOrchestrator ─┬─ DocumentProcessor
    blob store ──────┤                         │
    IndexProjector ──┤                         │
    CacheCoordinator ┴─ SearchQueryService     │
    TaskPublisher ─────────────────────────────┘

Backends default to the configured ones; tests pass in-memory instances.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from courseindex.cache.base import CacheBackend
from courseindex.cache.coordinator import CacheCoordinator
from courseindex.cache.factory import build_cache
from courseindex.search.base import SearchIndexBackend
from courseindex.search.factory import build_projector
from courseindex.search.projector import IndexProjector
from courseindex.services.ingestion import IngestionOrchestrator, TaskPublisher
from courseindex.services.processing import DocumentProcessor
from courseindex.services.search import SearchQueryService
from courseindex.storage.base import BlobStore
from courseindex.storage.factory import get_blob_store

logger = logging.getLogger(__name__)


@dataclass
class Services:
    session_factory: async_sessionmaker[AsyncSession]
    blob_store:      BlobStore
    projector:       IndexProjector
    cache:           CacheCoordinator
    publisher:       TaskPublisher
    orchestrator:    IngestionOrchestrator
    processor:       DocumentProcessor
    queries:         SearchQueryService

    async def close(self) -> None:
        await self.projector.backend.close()
        await self.cache.backend.close()


def build_services(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    search_backend: SearchIndexBackend | None = None,
    cache_backend:  CacheBackend | None = None,
    blob_store:     BlobStore | None = None,
    publisher:      TaskPublisher | None = None,
    extract_timeout: float | None = None,
) -> Services:
    blobs     = blob_store or get_blob_store()
    projector = build_projector(search_backend)
    cache     = build_cache(cache_backend)
    publisher = publisher or TaskPublisher()

    orchestrator = IngestionOrchestrator(
        session_factory=session_factory,
        blob_store=blobs,
        projector=projector,
        cache=cache,
        publisher=publisher,
    )
    processor = DocumentProcessor(
        session_factory=session_factory,
        blob_store=blobs,
        projector=projector,
        orchestrator=orchestrator,
        extract_timeout=extract_timeout,
    )
    queries = SearchQueryService(
        session_factory=session_factory,
        projector=projector,
        cache=cache,
    )
    logger.info(
        "Services built | search=%s cache=%s storage=%s",
        type(projector.backend).__name__, type(cache.backend).__name__, type(blobs).__name__,
    )
    return Services(
        session_factory=session_factory,
        blob_store=blobs,
        projector=projector,
        cache=cache,
        publisher=publisher,
        orchestrator=orchestrator,
        processor=processor,
        queries=queries,
    )
