"""
LocationCache - Bounded LRU cache of geolocation results.

Features:
- Fixed capacity, no TTL: eviction is purely by recency
- Negative caching: an entry may hold "no location" (None)
- A hit counts as a touch and moves the entry to most-recently-used
- Async lock around every read-modify-write
"""

import asyncio
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any

from loguru import logger

from dnsgeo.models import LocationResult


@dataclass(frozen=True)
class CacheEntry:
    """A cached lookup outcome. ``location`` is None for a negative entry."""

    location: LocationResult | None

    @property
    def is_negative(self) -> bool:
        return self.location is None


class LocationCache:
    """
    Async-safe LRU cache keyed by normalized IP string.

    Usage:
        cache = LocationCache(max_size=10000)

        entry = await cache.get("8.8.8.8")
        if entry is not None:
            return entry.location

        await cache.put("8.8.8.8", location)
    """

    def __init__(self, max_size: int = 10000, debug: bool = False):
        if max_size <= 0:
            raise ValueError(f"max_size must be positive, got {max_size}")
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._max_size = max_size
        self._debug = debug
        self._lock = asyncio.Lock()
        self._stats = CacheStats(max_size=max_size)

    async def get(self, key: str) -> CacheEntry | None:
        """Return the entry for ``key`` and mark it most-recently-used."""
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._log(f"MISS: {key}")
                return None

            self._entries.move_to_end(key)
            self._log(f"HIT: {key}{' (negative)' if entry.is_negative else ''}")
            return entry

    async def put(self, key: str, location: LocationResult | None) -> None:
        """
        Insert or overwrite ``key``.

        If the insert takes the cache past capacity, exactly one
        least-recently-used entry is evicted.
        """
        async with self._lock:
            self._entries[key] = CacheEntry(location=location)
            self._entries.move_to_end(key)

            if len(self._entries) > self._max_size:
                oldest_key, _ = self._entries.popitem(last=False)
                self._stats.evictions += 1
                self._log(f"EVICT: {oldest_key}")

            self._log(f"SET: {key}{' (negative)' if location is None else ''}")

    async def clear(self) -> None:
        """Clear all cache entries."""
        async with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._log(f"CLEAR: {count} entries removed")

    def keys(self) -> list[str]:
        """Cached keys, least-recently-used first."""
        return list(self._entries.keys())

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        # Membership test, does not touch recency
        return key in self._entries

    def get_stats(self) -> "CacheStats":
        """Get cache statistics."""
        self._stats.size = len(self._entries)
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[LocationCache] {message}")


@dataclass
class CacheStats:
    """Cache statistics."""

    size: int = 0
    max_size: int = 0
    evictions: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "size": self.size,
            "max_size": self.max_size,
            "evictions": self.evictions,
        }
