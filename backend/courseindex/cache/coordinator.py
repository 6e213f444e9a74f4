"""
Cache Coordinator — read-through caching with tag-scoped invalidation
═════════════════════════════════════════════════════════════════════

Tag emulation
─────────────
Each tag has a version counter stored at  <prefix>:tag:<tag>:v  (no TTL).
A tagged entry is written under a physical key that embeds the current
version of every one of its tags:

    <prefix>:<logical key>|files=17,subjects=4

invalidate(["files"]) increments tag:files:v. From that moment every entry
written under files=17 is unreachable: readers compute files=18 and miss.
The orphaned entries are reclaimed by their TTL. Nothing is enumerated, so
invalidation costs one INCR per tag regardless of how many entries exist.

A compute that started before an invalidation writes its (stale) value under
the old version, where no later reader will look.

A missing version counter (first use, or evicted) is seeded with the current
time in nanoseconds instead of 0, by readers and by invalidate() alike, so a
reseeded counter never lands back on a version that older entries were
written under.

Fast path
─────────
A few hot, coarse aggregates are cached under a single untagged key with a
short TTL (settings.cache_fast_path_ttl). Readers may see a value up to that
TTL old after a mutation. invalidate() also deletes the fast-path keys
registered for the tags it bumps, but a compute racing with the invalidation
can still write a stale value back for at most one TTL.

Failure policy
──────────────
CacheBackendError never leaves this module: reads degrade to a miss
(compute runs, nothing is written) and invalidate() logs and carries on.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from typing import Any, Awaitable, Callable, Iterable, TypeVar

from courseindex.cache.base import CacheBackend
from courseindex.core.config import settings
from courseindex.core.errors import CacheBackendError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Tags and keys
# ---------------------------------------------------------------------------

TAG_FILES    = "files"
TAG_SUBJECTS = "subjects"
TAG_STATS    = "stats"

LISTING_TAGS: tuple[str, ...] = (TAG_FILES, TAG_SUBJECTS)
ALL_TAGS:     tuple[str, ...] = (TAG_FILES, TAG_SUBJECTS, TAG_STATS)

FAST_SUBJECTS_WITH_COUNTS = "subjects:with_counts"
FAST_SUBJECT_LIST         = "subjects:list"
FAST_SYSTEM_STATS         = "system:stats:comprehensive"

# Fast-path key → tags whose invalidation should also drop it
FAST_PATH_KEYS: dict[str, frozenset[str]] = {
    FAST_SUBJECTS_WITH_COUNTS: frozenset({TAG_FILES, TAG_SUBJECTS}),
    FAST_SUBJECT_LIST:         frozenset({TAG_FILES, TAG_SUBJECTS}),
    FAST_SYSTEM_STATS:         frozenset({TAG_FILES, TAG_STATS}),
}


def derive_key(namespace: str, **params: Any) -> str:
    """
    Deterministic key for a parameterised read.

    None-valued parameters are dropped and the rest serialised as canonical
    JSON (sorted keys), so identical semantic requests share a key and any
    differing filter yields a different one.
    """
    material = {name: value for name, value in params.items() if value is not None}
    canonical = json.dumps(material, sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.md5(canonical.encode("utf-8")).hexdigest()
    return f"{namespace}:{digest}"


class CacheCoordinator:
    """
    Single entry point for every cached read and every invalidation.

    Constructed once per process and passed explicitly to services.

    Usage:
        cache = CacheCoordinator(InMemoryCache())
        value = await cache.read_through(key, LISTING_TAGS, 300, compute)
        await cache.invalidate(LISTING_TAGS)
    """

    def __init__(
        self,
        backend:       CacheBackend,
        prefix:        str | None = None,
        fast_path_ttl: int | None = None,
    ) -> None:
        self.backend       = backend
        self.prefix        = prefix or settings.cache_key_prefix
        self.fast_path_ttl = fast_path_ttl or settings.cache_fast_path_ttl

    # ------------------------------------------------------------------
    # Key layout
    # ------------------------------------------------------------------

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def _tag_key(self, tag: str) -> str:
        return f"{self.prefix}:tag:{tag}:v"

    @staticmethod
    def _seed_version() -> str:
        return str(time.time_ns())

    async def _tag_versions(self, tags: Iterable[str]) -> dict[str, str]:
        ordered = sorted(set(tags))
        if not ordered:
            return {}
        tag_keys = [self._tag_key(tag) for tag in ordered]
        values = await self.backend.get_many(tag_keys)
        versions: dict[str, str] = {}
        for tag, tag_key, value in zip(ordered, tag_keys, values):
            if value is None:
                await self.backend.add(tag_key, self._seed_version())
                value = await self.backend.get(tag_key)
                if value is None:
                    raise CacheBackendError(f"tag version for '{tag}' could not be seeded")
            versions[tag] = value
        return versions

    def _physical_key(self, key: str, versions: dict[str, str]) -> str:
        if not versions:
            return self._key(key)
        stamp = ",".join(f"{tag}={version}" for tag, version in versions.items())
        return f"{self._key(key)}|{stamp}"

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def read_through(
        self,
        key:     str,
        tags:    Iterable[str],
        ttl:     int,
        compute: Callable[[], Awaitable[T]],
    ) -> T:
        """Cached value if present, else compute(), store under tags, return."""
        try:
            physical = self._physical_key(key, await self._tag_versions(tags))
            raw = await self.backend.get(physical)
        except CacheBackendError as exc:
            logger.warning("Cache read degraded | key=%s error=%s", key, exc)
            return await compute()

        if raw is not None:
            logger.debug("Cache hit | key=%s", key)
            return json.loads(raw)

        logger.debug("Cache miss | key=%s", key)
        value = await compute()
        await self._store(physical, value, ttl)
        return value

    async def fast_path(
        self,
        key:     str,
        compute: Callable[[], Awaitable[T]],
        ttl:     int | None = None,
    ) -> T:
        """Untagged read-through with its own short TTL."""
        physical = self._key(key)
        try:
            raw = await self.backend.get(physical)
        except CacheBackendError as exc:
            logger.warning("Cache fast-path degraded | key=%s error=%s", key, exc)
            return await compute()

        if raw is not None:
            return json.loads(raw)

        value = await compute()
        await self._store(physical, value, ttl or self.fast_path_ttl)
        return value

    async def bypass(self, key: str, compute: Callable[[], Awaitable[T]]) -> T:
        """Skip both the cache read and the cache write."""
        logger.info("Cache bypass | key=%s", key)
        return await compute()

    async def _store(self, physical: str, value: Any, ttl: int) -> None:
        try:
            await self.backend.set(physical, json.dumps(value, default=str), ttl)
        except CacheBackendError as exc:
            logger.warning("Cache write skipped | key=%s error=%s", physical, exc)

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    async def invalidate(self, tags: Iterable[str]) -> None:
        """
        Make every entry carrying any of tags unreadable. Idempotent, never
        raises; safe to call repeatedly for the same mutation.
        """
        tag_set = set(tags)
        for tag in sorted(tag_set):
            tag_key = self._tag_key(tag)
            try:
                # A lost counter is reseeded from the clock, never bumped from 0
                await self.backend.add(tag_key, self._seed_version())
                version = await self.backend.incr(tag_key)
                logger.info("Cache invalidate | tag=%s version=%d", tag, version)
            except CacheBackendError as exc:
                logger.error("Cache invalidate failed | tag=%s error=%s", tag, exc)

        stale_fast_keys = [
            self._key(key) for key, key_tags in FAST_PATH_KEYS.items() if key_tags & tag_set
        ]
        if stale_fast_keys:
            try:
                await self.backend.delete(*stale_fast_keys)
            except CacheBackendError as exc:
                logger.warning("Cache fast-path delete failed | keys=%s error=%s", stale_fast_keys, exc)

    async def ping(self) -> bool:
        return await self.backend.ping()
