"""
Search Index Factory

Selects the backend (elasticsearch | memory) from SEARCH_BACKEND.
Services only ever see the IndexProjector built here, never the concrete
backend classes.
"""

from __future__ import annotations

from courseindex.core.config import settings
from courseindex.search.base import SearchIndexBackend
from courseindex.search.projector import IndexProjector


def get_search_backend(backend: str | None = None) -> SearchIndexBackend:
    """Return a new backend instance for the configured engine."""
    backend = (backend or settings.search_backend).lower()

    if backend == "elasticsearch":
        from courseindex.search.elasticsearch_index import ElasticsearchIndex
        return ElasticsearchIndex()

    if backend == "memory":
        from courseindex.search.memory_index import InMemorySearchIndex
        return InMemorySearchIndex()

    raise ValueError(
        f"Unknown search backend: '{backend}'. "
        f"Valid options: 'elasticsearch', 'memory'"
    )


def build_projector(backend: SearchIndexBackend | None = None) -> IndexProjector:
    return IndexProjector(backend or get_search_backend())
