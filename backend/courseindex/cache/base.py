"""
Cache Backend — Abstract Base

A plain string key/value store with TTLs and atomic counters. Tags are not a
backend feature; the CacheCoordinator emulates them on top of incr().

Every failure is raised as CacheBackendError. Only the coordinator catches
it: to callers a broken cache is indistinguishable from an empty one.
"""

from __future__ import annotations

from abc import ABC, abstractmethod


class CacheBackend(ABC):

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Value, or None when missing or expired."""

    @abstractmethod
    async def get_many(self, keys: list[str]) -> list[str | None]:
        """Values in key order, None for misses."""

    @abstractmethod
    async def set(self, key: str, value: str, ttl: int | None = None) -> None:
        """Store value; ttl in seconds, None means no expiry."""

    @abstractmethod
    async def add(self, key: str, value: str) -> bool:
        """Set only if absent (no expiry). True if this call stored it."""

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        """Remove keys. Returns how many existed."""

    @abstractmethod
    async def incr(self, key: str) -> int:
        """Atomically increment an integer counter and return the new value."""

    @abstractmethod
    async def ping(self) -> bool:
        """True if reachable. Never raises."""

    async def close(self) -> None:
        """Release connections. No-op by default."""
