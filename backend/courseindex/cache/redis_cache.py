"""Redis-backed cache shared by every API and worker process."""

from __future__ import annotations

import logging

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from courseindex.cache.base import CacheBackend
from courseindex.core.config import settings
from courseindex.core.errors import CacheBackendError

logger = logging.getLogger(__name__)


class RedisCache(CacheBackend):
    """
    Thin wrapper over redis.asyncio.

    Short socket timeouts: a slow cache must degrade to a miss quickly
    rather than stall the read path.
    """

    def __init__(self, redis_url: str | None = None, client: aioredis.Redis | None = None) -> None:
        self._redis = client or aioredis.from_url(
            redis_url or settings.redis_url,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
        )

    async def get(self, key: str) -> str | None:
        try:
            return await self._redis.get(key)
        except RedisError as exc:
            raise CacheBackendError(f"GET {key}: {exc}") from exc

    async def get_many(self, keys: list[str]) -> list[str | None]:
        if not keys:
            return []
        try:
            return await self._redis.mget(keys)
        except RedisError as exc:
            raise CacheBackendError(f"MGET {len(keys)} keys: {exc}") from exc

    async def set(self, key: str, value: str, ttl: int | None = None) -> None:
        try:
            await self._redis.set(key, value, ex=ttl)
        except RedisError as exc:
            raise CacheBackendError(f"SET {key}: {exc}") from exc

    async def add(self, key: str, value: str) -> bool:
        try:
            return bool(await self._redis.set(key, value, nx=True))
        except RedisError as exc:
            raise CacheBackendError(f"SET NX {key}: {exc}") from exc

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            return int(await self._redis.delete(*keys))
        except RedisError as exc:
            raise CacheBackendError(f"DEL {len(keys)} keys: {exc}") from exc

    async def incr(self, key: str) -> int:
        try:
            return int(await self._redis.incr(key))
        except RedisError as exc:
            raise CacheBackendError(f"INCR {key}: {exc}") from exc

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except RedisError as exc:
            logger.warning("Redis ping failed: %s", exc)
            return False

    async def close(self) -> None:
        await self._redis.aclose()
