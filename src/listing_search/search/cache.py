"""In-memory TTL cache for assembled search results."""

import asyncio
import copy
import hashlib
import threading
import time
from collections import OrderedDict
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

import structlog

from listing_search.search.schemas import SearchFilters

logger = structlog.get_logger()


@dataclass(frozen=True)
class CacheStats:
    """Cache counters for diagnostics."""

    size: int
    capacity: int
    hits: int
    misses: int
    evictions: int
    invalidations: int


@dataclass
class _Entry:
    value: Any
    written_at: float
    expires_at: float
    tags: frozenset[str]


def make_key(filters: SearchFilters, path: str) -> str:
    """Derive a cache key from normalized filters and the execution path.

    Args:
        filters: Normalized search filters.
        path: Execution path ("index" or "fallback").

    Returns:
        Hex SHA-256 digest.
    """
    payload = f"{path}:{filters.model_dump_json()}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class ResultCache:
    """Bounded TTL cache with tag-based invalidation.

    Evicts the least recently inserted entry when full. Every operation
    holds the lock; values are copied in and out so callers never share
    a mutable result.
    """

    def __init__(self, capacity: int = 1000, default_ttl: float = 300.0) -> None:
        """Initialize cache.

        Args:
            capacity: Maximum number of entries.
            default_ttl: Seconds an entry stays valid when no TTL is given.
        """
        self._capacity = max(1, capacity)
        self._default_ttl = default_ttl
        self._entries: OrderedDict[str, _Entry] = OrderedDict()
        self._tags: dict[str, set[str]] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._invalidations = 0
        self._generation = 0

    @property
    def generation(self) -> int:
        """Counter bumped by every invalidation and clear."""
        with self._lock:
            return self._generation

    def get(self, key: str) -> Any | None:
        """Return a copy of the cached value, or None if absent or expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if entry.expires_at <= time.time():
                self._drop(key)
                self._misses += 1
                return None
            self._hits += 1
            return copy.deepcopy(entry.value)

    def set(
        self,
        key: str,
        value: Any,
        ttl: float | None = None,
        tags: Iterable[str] = (),
        generation: int | None = None,
    ) -> bool:
        """Store a value.

        A value computed before an invalidation is refused: pass the
        generation read before computing it.

        Args:
            key: Cache key.
            value: Value to cache; copied on write.
            ttl: Seconds until expiry, defaults to the cache TTL.
            tags: Invalidation tags.
            generation: Generation observed before the value was computed.

        Returns:
            False if the value was refused as stale.
        """
        now = time.time()
        entry = _Entry(
            value=copy.deepcopy(value),
            written_at=now,
            expires_at=now + (ttl if ttl is not None else self._default_ttl),
            tags=frozenset(tags),
        )
        with self._lock:
            if generation is not None and generation != self._generation:
                return False
            if key in self._entries:
                self._drop(key)
            while len(self._entries) >= self._capacity:
                oldest = next(iter(self._entries))
                self._drop(oldest)
                self._evictions += 1
            self._entries[key] = entry
            for tag in entry.tags:
                self._tags.setdefault(tag, set()).add(key)
        return True

    def invalidate(self, tag_or_key: str) -> int:
        """Remove every entry carrying a tag, or the entry with that key.

        Returns:
            Number of entries removed.
        """
        with self._lock:
            keys = set(self._tags.get(tag_or_key, ()))
            if tag_or_key in self._entries:
                keys.add(tag_or_key)
            for key in keys:
                self._drop(key)
            self._invalidations += len(keys)
            self._generation += 1
        if keys:
            logger.debug("cache_invalidated", target=tag_or_key, removed=len(keys))
        return len(keys)

    def clear(self) -> int:
        """Remove all entries.

        Returns:
            Number of entries removed.
        """
        with self._lock:
            removed = len(self._entries)
            self._entries.clear()
            self._tags.clear()
            self._invalidations += removed
            self._generation += 1
        return removed

    def sweep(self) -> int:
        """Remove expired entries.

        Returns:
            Number of entries removed.
        """
        now = time.time()
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.expires_at <= now]
            for key in expired:
                self._drop(key)
        return len(expired)

    def stats(self) -> CacheStats:
        """Snapshot of cache counters."""
        with self._lock:
            return CacheStats(
                size=len(self._entries),
                capacity=self._capacity,
                hits=self._hits,
                misses=self._misses,
                evictions=self._evictions,
                invalidations=self._invalidations,
            )

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _drop(self, key: str) -> None:
        entry = self._entries.pop(key, None)
        if entry is None:
            return
        for tag in entry.tags:
            keys = self._tags.get(tag)
            if keys is not None:
                keys.discard(key)
                if not keys:
                    del self._tags[tag]

    async def run_sweeper(self, interval: float) -> None:
        """Periodically remove expired entries until cancelled.

        Args:
            interval: Seconds between sweeps.
        """
        logger.info("cache_sweeper_started", interval_seconds=interval)
        try:
            while True:
                await asyncio.sleep(interval)
                removed = self.sweep()
                if removed:
                    logger.debug("cache_swept", removed=removed)
        except asyncio.CancelledError:
            logger.info("cache_sweeper_stopped")
            raise
