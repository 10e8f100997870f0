"""
Cache Entry Store

In-memory key -> (value, stored_at, ttl) map shared by the higher cache tiers.

Expiry is lazy: an entry is checked when it is read and evicted if its TTL
has elapsed. There is no background sweep.
"""

import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Dict, Iterator, List, Union


logger = logging.getLogger(__name__)

Clock = Callable[[], float]
TTL = Union[timedelta, float, int]


class _Miss:
    """Sentinel returned by ``get`` for absent or expired keys."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISS"


MISS = _Miss()


def ttl_seconds(ttl: TTL) -> float:
    """Normalize a TTL given as timedelta or seconds."""
    if isinstance(ttl, timedelta):
        return ttl.total_seconds()
    return float(ttl)


@dataclass
class CacheEntry:
    """Cache entry with metadata."""
    value: Any
    stored_at: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        """Valid while ``now - stored_at <= ttl``."""
        return now - self.stored_at > self.ttl

    def remaining(self, now: float) -> float:
        return max(self.ttl - (now - self.stored_at), 0.0)


@dataclass
class CacheStats:
    """Cache operation statistics."""
    hits: int = 0
    misses: int = 0
    writes: int = 0
    evictions: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "writes": self.writes,
            "evictions": self.evictions,
            "hit_rate_percent": round(self.hit_rate * 100, 2),
        }


class CacheEntryStore:
    """
    Generic TTL store.

    All operations are total: nothing here raises for an unknown or
    expired key.
    """

    def __init__(self, clock: Clock = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._stats = CacheStats()

    def set(self, key: str, value: Any, ttl: TTL) -> None:
        """Store a value with a fresh timestamp."""
        self._entries[key] = CacheEntry(
            value=value,
            stored_at=self._clock(),
            ttl=ttl_seconds(ttl),
        )
        self._stats.writes += 1

    def _live_entry(self, key: str):
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            del self._entries[key]
            self._stats.evictions += 1
            logger.debug(f"Evicted expired cache entry: {key}")
            return None
        return entry

    def get(self, key: str) -> Any:
        """Return the stored value, or ``MISS`` if absent or expired."""
        entry = self._live_entry(key)
        if entry is None:
            self._stats.misses += 1
            return MISS
        self._stats.hits += 1
        return entry.value

    def has(self, key: str) -> bool:
        return self._live_entry(key) is not None

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def delete_prefix(self, prefix: str) -> int:
        """Delete every key starting with ``prefix``. Returns count deleted."""
        doomed = [key for key in self._entries if key.startswith(prefix)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    def clear(self) -> None:
        self._entries.clear()

    def keys(self) -> List[str]:
        """Snapshot of stored keys (expired ones included until read)."""
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(self.keys())

    def get_stats(self) -> Dict[str, Any]:
        stats = self._stats.as_dict()
        stats["entries"] = len(self._entries)
        return stats
