"""Search index: backends, factory, and the IndexProjector failure policy."""

from courseindex.search.base import IndexHit, IndexResults, SearchIndexBackend
from courseindex.search.factory import build_projector, get_search_backend
from courseindex.search.projector import IndexProjector, build_index_document

__all__ = [
    "IndexHit",
    "IndexResults",
    "SearchIndexBackend",
    "IndexProjector",
    "build_index_document",
    "build_projector",
    "get_search_backend",
]
