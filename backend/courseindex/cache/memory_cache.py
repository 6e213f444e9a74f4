"""Process-local cache with TTL expiry (development and tests)."""

from __future__ import annotations

import time

from courseindex.cache.base import CacheBackend


class InMemoryCache(CacheBackend):
    """
    Dict of key → (value, expires_at). Expiry uses the monotonic clock and is
    checked lazily on read. Not shared between processes.
    """

    def __init__(self) -> None:
        self._store: dict[str, tuple[str, float | None]] = {}

    def _live(self, key: str) -> str | None:
        entry = self._store.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and time.monotonic() >= expires_at:
            del self._store[key]
            return None
        return value

    async def get(self, key: str) -> str | None:
        return self._live(key)

    async def get_many(self, keys: list[str]) -> list[str | None]:
        return [self._live(key) for key in keys]

    async def set(self, key: str, value: str, ttl: int | None = None) -> None:
        expires_at = time.monotonic() + ttl if ttl else None
        self._store[key] = (value, expires_at)

    async def add(self, key: str, value: str) -> bool:
        if self._live(key) is not None:
            return False
        self._store[key] = (value, None)
        return True

    async def delete(self, *keys: str) -> int:
        return sum(1 for key in keys if self._store.pop(key, None) is not None)

    async def incr(self, key: str) -> int:
        value = int(self._live(key) or 0) + 1
        _, expires_at = self._store.get(key, ("", None))
        self._store[key] = (str(value), expires_at)
        return value

    async def ping(self) -> bool:
        return True

    @property
    def size(self) -> int:
        """Entries currently stored (may include expired)."""
        return len(self._store)
