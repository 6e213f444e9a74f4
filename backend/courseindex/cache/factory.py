"""
Cache Factory

Selects the backend (redis | memory) from CACHE_BACKEND and wraps it in the
CacheCoordinator that services receive.
"""

from __future__ import annotations

import logging

from courseindex.cache.base import CacheBackend
from courseindex.cache.coordinator import CacheCoordinator
from courseindex.core.config import settings

logger = logging.getLogger(__name__)


def get_cache_backend(backend: str | None = None) -> CacheBackend:
    backend = (backend or settings.cache_backend).lower()

    if backend == "redis":
        from courseindex.cache.redis_cache import RedisCache
        logger.info("Cache backend | type=redis url=%s", settings.redis_url)
        return RedisCache()

    if backend == "memory":
        from courseindex.cache.memory_cache import InMemoryCache
        logger.info("Cache backend | type=memory")
        return InMemoryCache()

    raise ValueError(
        f"Unknown cache backend: '{backend}'. "
        f"Valid options: 'redis', 'memory'"
    )


def build_cache(backend: CacheBackend | None = None) -> CacheCoordinator:
    return CacheCoordinator(backend or get_cache_backend())
