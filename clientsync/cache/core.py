"""
Core cache data structures.
"""
import time
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Hashable
from enum import Enum

logger = logging.getLogger("cache.core")


class CacheSource(Enum):
    """Source of a value handed to a caller."""
    FRESH = "fresh"       # Within TTL
    STALE = "stale"       # Past TTL, served only as a fallback
    UPSTREAM = "upstream" # Fetched from the authority server


@dataclass
class CacheEntry:
    """
    A cached value with the monotonic timestamp it was stored at.

    Entries are replaced whole on every write, never patched.
    """
    value: Any
    stored_at: float
    ttl_seconds: float

    def age_seconds(self, now: float) -> float:
        """Seconds since the value was stored."""
        return now - self.stored_at

    def is_fresh(self, now: float) -> bool:
        """Check if the value is within its TTL."""
        return self.age_seconds(now) < self.ttl_seconds


@dataclass
class CacheRead:
    """Result of a cache hit."""
    value: Any
    fresh: bool
    age_seconds: float
    stored_at: float

    @property
    def source(self) -> CacheSource:
        return CacheSource.FRESH if self.fresh else CacheSource.STALE


class TimedCache:
    """
    Value cache with a per-entry time-to-live.

    Freshness is computed when an entry is read, so expiry is lazy: stale
    entries stay in place (callers may still serve them as a fallback) until
    they are overwritten or invalidated. Invalidation removes the entry so
    the next read is a hard miss.

    Usage:
        cache = TimedCache(default_ttl=120)
        cache.set("entitlement", snapshot)
        hit = cache.get("entitlement")
        if hit and hit.fresh:
            ...
    """

    def __init__(
        self,
        default_ttl: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the cache.

        Args:
            default_ttl: TTL in seconds for entries stored without one
            clock: Monotonic time source
        """
        self._entries: Dict[Hashable, CacheEntry] = {}
        self._default_ttl = default_ttl
        self._clock = clock
        self._stats = {
            "hits_fresh": 0,
            "hits_stale": 0,
            "misses": 0,
        }

    @property
    def default_ttl(self) -> float:
        return self._default_ttl

    def get(self, key: Hashable) -> Optional[CacheRead]:
        """
        Read an entry without blocking.

        Returns:
            CacheRead with a freshness flag, or None on a miss
        """
        entry = self._entries.get(key)
        if entry is None:
            self._stats["misses"] += 1
            return None

        now = self._clock()
        fresh = entry.is_fresh(now)
        if fresh:
            self._stats["hits_fresh"] += 1
        else:
            self._stats["hits_stale"] += 1
        logger.debug(
            f"CACHE HIT ({'fresh' if fresh else 'stale'}): {key} "
            f"[age={entry.age_seconds(now):.1f}s]"
        )
        return CacheRead(
            value=entry.value,
            fresh=fresh,
            age_seconds=entry.age_seconds(now),
            stored_at=entry.stored_at,
        )

    def set(self, key: Hashable, value: Any, ttl: Optional[float] = None) -> CacheEntry:
        """Store a value, replacing any previous entry for the key."""
        entry = CacheEntry(
            value=value,
            stored_at=self._clock(),
            ttl_seconds=self._default_ttl if ttl is None else ttl,
        )
        self._entries[key] = entry
        return entry

    def invalidate(self, key: Optional[Hashable] = None) -> int:
        """
        Remove one entry, or every entry when no key is given.

        Returns:
            Number of entries removed
        """
        if key is None:
            count = len(self._entries)
            self._entries.clear()
            if count:
                logger.info(f"Cleared {count} cache entries")
            return count

        if key in self._entries:
            del self._entries[key]
            logger.info(f"Invalidated cache: {key}")
            return 1
        return 0

    def __contains__(self, key: Hashable) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        total_hits = self._stats["hits_fresh"] + self._stats["hits_stale"]
        total_reads = total_hits + self._stats["misses"]
        hit_rate = (total_hits / total_reads * 100) if total_reads > 0 else 0

        return {
            "entries": len(self._entries),
            "hits_fresh": self._stats["hits_fresh"],
            "hits_stale": self._stats["hits_stale"],
            "misses": self._stats["misses"],
            "hit_rate_percent": round(hit_rate, 1),
        }
