"""
TourDash Caching Layer

Overlapping cache tiers for dashboard delivery:
- Cache Entry Store: in-memory TTL map with lazy expiry
- Keyed Query Cache: get-or-fetch by (resource, filters), per-resource TTLs
- Managed Fetch Cache: stale-while-revalidate with polling and prefix invalidation
- Persistent Preference Cache: durable per-user preferences (SQL)

The process-wide instance of every tier lives in ``tourdash.cache.service``:

    service = await get_cache_service()
    clients = await service.query_cache.get_or_fetch(
        "clients", {"creator_id": creator_id}, fetch_clients, CacheTTL.CLIENTS
    )
    service.query_cache.invalidate_resource("clients")
"""

from tourdash.cache.config import QUERY_PRESETS, CacheConfig, CacheTTL, get_cache_config
from tourdash.cache.entry_store import MISS, CacheEntry, CacheEntryStore, CacheStats
from tourdash.cache.query_cache import KeyedQueryCache, canonicalize, resource_prefix
from tourdash.cache.managed import (
    ManagedCacheRecord,
    ManagedFetchCache,
    QueryObserver,
    QueryOptions,
    QueryResult,
)
from tourdash.cache.preferences import PREFERENCE_PRESETS, PersistentPreferenceCache

__all__ = [
    "QUERY_PRESETS",
    "CacheConfig",
    "CacheTTL",
    "get_cache_config",
    "MISS",
    "CacheEntry",
    "CacheEntryStore",
    "CacheStats",
    "KeyedQueryCache",
    "canonicalize",
    "resource_prefix",
    "ManagedCacheRecord",
    "ManagedFetchCache",
    "QueryObserver",
    "QueryOptions",
    "QueryResult",
    "PREFERENCE_PRESETS",
    "PersistentPreferenceCache",
]
