"""
Keyed Query Cache

Wraps the entry store with get-or-fetch semantics keyed by
(resource name, normalized filter set).

Two logically identical queries always map to the same key, whatever the
insertion order of their filters. Keys keep the resource as a plain prefix
so a whole resource can be dropped without knowing which filters were used
when the entries were written.

Concurrent *first* callers for a key are not deduplicated unless
``coalesce=True``: both may fetch, the last result wins.

A fetch that was running when its resource got invalidated still returns
its rows to the caller, but they are not stored: they may predate the
change that caused the invalidation.
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from tourdash.cache.config import CacheConfig, get_cache_config
from tourdash.cache.entry_store import MISS, CacheEntryStore, TTL


logger = logging.getLogger(__name__)

FetchFn = Callable[[], Awaitable[Any]]


def canonicalize(resource: str, filters: Optional[Dict[str, Any]] = None) -> str:
    """
    Build the cache key for a query.

    ``clients:{"creator_id": "c1"}`` - filters are serialized with sorted
    keys so permutations of the same map give the same key.
    """
    param_str = json.dumps(filters or {}, sort_keys=True, default=str)
    return f"{resource}:{param_str}"


def resource_prefix(resource: str) -> str:
    """Prefix shared by every key of ``resource``."""
    return f"{resource}:{{"


class KeyedQueryCache:
    """
    Resource-keyed cache in front of remote queries.

    Usage:
        clients = await query_cache.get_or_fetch(
            "clients", {"creator_id": creator_id}, fetch_clients, CacheTTL.CLIENTS
        )
        query_cache.invalidate_resource("clients")
    """

    def __init__(
        self,
        store: Optional[CacheEntryStore] = None,
        config: Optional[CacheConfig] = None,
        coalesce: Optional[bool] = None,
    ):
        self.config = config or get_cache_config()
        # An empty store is falsy (__len__), so compare against None
        self.store = store if store is not None else CacheEntryStore()
        self.coalesce = self.config.coalesce_requests if coalesce is None else coalesce
        self._inflight: Dict[str, asyncio.Future] = {}
        self._fetches = 0
        self._epoch = 0
        self._generations: Dict[str, int] = {}
        self._discarded = 0

    def _generation(self, resource: str) -> Tuple[int, int]:
        return self._epoch, self._generations.get(resource, 0)

    def _bump(self, resource: str) -> None:
        self._generations[resource] = self._generations.get(resource, 0) + 1
        prefix = resource_prefix(resource)
        for key in [k for k in self._inflight if k.startswith(prefix)]:
            # Later callers must not join a fetch that predates the change
            del self._inflight[key]

    def _store_if_current(
        self,
        key: str,
        resource: str,
        generation: Tuple[int, int],
        value: Any,
        ttl: TTL,
    ) -> None:
        if self._generation(resource) != generation:
            self._discarded += 1
            logger.debug(f"Discarding result for {key}: invalidated during fetch")
            return
        self.store.set(key, value, ttl)

    async def get_or_fetch(
        self,
        resource: str,
        filters: Optional[Dict[str, Any]],
        fetch_fn: FetchFn,
        ttl: Optional[TTL] = None,
    ) -> Any:
        """
        Return the cached value for (resource, filters) or fetch and store it.

        Args:
            resource: Resource name, also the key prefix (e.g. ``"clients"``)
            filters: Column -> value map; order of keys does not matter
            fetch_fn: Coroutine function doing the remote read
            ttl: Entry lifetime, defaults to ``config.default_ttl``

        Returns:
            The cached or freshly fetched value.

        A failing ``fetch_fn`` stores nothing and the error propagates. A
        result whose resource was invalidated while it was being fetched is
        returned but not stored.
        """
        if ttl is None:
            ttl = self.config.default_ttl

        if not self.config.enabled:
            self._fetches += 1
            return await fetch_fn()

        key = canonicalize(resource, filters)

        cached = self.store.get(key)
        if cached is not MISS:
            logger.debug(f"Query cache hit: {key}")
            return cached

        if self.coalesce:
            pending = self._inflight.get(key)
            if pending is not None:
                logger.debug(f"Joining in-flight fetch: {key}")
                return await asyncio.shield(pending)
            return await self._fetch_shared(key, resource, fetch_fn, ttl)

        logger.debug(f"Query cache miss, fetching: {key}")
        generation = self._generation(resource)
        self._fetches += 1
        value = await fetch_fn()
        self._store_if_current(key, resource, generation, value, ttl)
        return value

    async def _fetch_shared(self, key: str, resource: str, fetch_fn: FetchFn, ttl: TTL) -> Any:
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        self._inflight[key] = future
        generation = self._generation(resource)
        self._fetches += 1
        try:
            value = await fetch_fn()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            if not future.done():
                future.set_exception(e)
                # Mark retrieved so a waiter-less failure is not reported twice
                future.exception()
            raise
        else:
            self._store_if_current(key, resource, generation, value, ttl)
            if not future.done():
                future.set_result(value)
            return value
        finally:
            if self._inflight.get(key) is future:
                del self._inflight[key]

    def peek(self, resource: str, filters: Optional[Dict[str, Any]] = None) -> Any:
        """Cached value or ``MISS``, never fetches."""
        return self.store.get(canonicalize(resource, filters))

    def generation(self, resource: str) -> Tuple[int, int]:
        """Token that changes whenever ``resource`` is invalidated."""
        return self._generation(resource)

    def put(
        self,
        resource: str,
        filters: Optional[Dict[str, Any]],
        value: Any,
        ttl: Optional[TTL] = None,
    ) -> str:
        """Write a value directly (used to seed granular slices)."""
        key = canonicalize(resource, filters)
        self.store.set(key, value, ttl if ttl is not None else self.config.default_ttl)
        return key

    def invalidate(self, resource: str, filters: Optional[Dict[str, Any]] = None) -> bool:
        """Invalidate one (resource, filters) entry."""
        self._bump(resource)
        return self.store.delete(canonicalize(resource, filters))

    def invalidate_resource(self, resource: str) -> int:
        """
        Invalidate every entry of a resource, whatever its filters.

        Fetches of the resource already in flight will not be stored.

        Returns:
            Number of entries removed.
        """
        self._bump(resource)
        count = self.store.delete_prefix(resource_prefix(resource))
        logger.info(f"Invalidated {count} query cache entries for resource: {resource}")
        return count

    def invalidate_all(self) -> None:
        self._epoch += 1
        self._inflight.clear()
        self.store.clear()
        logger.info("Cleared all query cache entries")

    def get_stats(self) -> Dict[str, Any]:
        stats = self.store.get_stats()
        stats["enabled"] = self.config.enabled
        stats["remote_fetches"] = self._fetches
        stats["coalesce"] = self.coalesce
        stats["inflight"] = len(self._inflight)
        stats["discarded"] = self._discarded
        return stats
