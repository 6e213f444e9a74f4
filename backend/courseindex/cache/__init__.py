"""Cache layer: backends plus the CacheCoordinator (read-through, tags, fast path)."""

from courseindex.cache.base import CacheBackend
from courseindex.cache.coordinator import (
    ALL_TAGS,
    LISTING_TAGS,
    TAG_FILES,
    TAG_STATS,
    TAG_SUBJECTS,
    CacheCoordinator,
    derive_key,
)
from courseindex.cache.factory import build_cache, get_cache_backend

__all__ = [
    "ALL_TAGS",
    "LISTING_TAGS",
    "TAG_FILES",
    "TAG_STATS",
    "TAG_SUBJECTS",
    "CacheBackend",
    "CacheCoordinator",
    "build_cache",
    "derive_key",
    "get_cache_backend",
]
