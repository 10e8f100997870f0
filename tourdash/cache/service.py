"""
Cache Service

Owns the process-wide cache tiers and the change stream, with an explicit
lifecycle:

    service = CacheService()
    await service.init()       # process start
    ...
    await service.dispose()    # teardown

Consumers receive the service (or its tiers) by injection instead of
importing module-level caches.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from tourdash.cache.config import CacheConfig, get_cache_config
from tourdash.cache.entry_store import CacheEntryStore
from tourdash.cache.managed import ManagedFetchCache, QueryOptions
from tourdash.cache.preferences import PersistentPreferenceCache
from tourdash.cache.query_cache import KeyedQueryCache
from tourdash.notifications import LoggingNotifier, Notifier
from tourdash.realtime.listener import ChangeNotificationListener
from tourdash.realtime.stream import ChangeStream, RedisChangeBridge


logger = logging.getLogger(__name__)


class CacheService:
    """
    Single definitive instance of every cache tier.

    Features:
    - Keyed query cache over an in-memory entry store
    - Managed fetch cache for dashboard screens
    - Persistent preference cache (SQL)
    - Change stream + debounced listener, optionally fed from Redis
    """

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        session_factory: Optional[Callable[[], Session]] = None,
        notifier: Optional[Notifier] = None,
        bridge: Optional[RedisChangeBridge] = None,
    ):
        self.config = config or get_cache_config()
        self.notifier = notifier or LoggingNotifier()

        self.entry_store = CacheEntryStore()
        self.query_cache = KeyedQueryCache(self.entry_store, self.config)
        self.managed = ManagedFetchCache(QueryOptions.from_preset("dashboard"))
        self.preferences = PersistentPreferenceCache(
            session_factory=session_factory,
            enabled=self.config.preferences_enabled,
        )
        self.stream = ChangeStream()
        self.listener = ChangeNotificationListener(self.stream, config=self.config)

        self._bridge = bridge
        self._initialized = False
        self._disposed = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def bridge(self) -> Optional[RedisChangeBridge]:
        return self._bridge

    async def init(self) -> None:
        """Start background transports. Safe to call twice."""
        if self._initialized:
            return
        if self._disposed:
            raise RuntimeError("CacheService has been disposed")

        if self._bridge is None and self.config.redis_url:
            self._bridge = RedisChangeBridge(self.stream, self.config)

        if self._bridge is not None:
            try:
                await self._bridge.start()
            except Exception as e:
                # Local changes still flow through the in-process stream
                logger.error(f"Redis change bridge unavailable, continuing without it: {e}")
                self._bridge = None

        self._initialized = True
        logger.info(
            f"Cache service initialized (namespace={self.config.namespace}, "
            f"enabled={self.config.enabled}, coalesce={self.query_cache.coalesce})"
        )

    def clear(self) -> None:
        """Drop every cached value, keep subscriptions."""
        self.query_cache.invalidate_all()
        self.managed.clear()

    async def dispose(self) -> None:
        """Cancel subscriptions and timers, stop transports, drop caches."""
        if self._disposed:
            return
        self.listener.close()
        if self._bridge is not None:
            await self._bridge.stop()
        await self.managed.dispose()
        self.stream.close()
        self.query_cache.invalidate_all()
        self._initialized = False
        self._disposed = True
        logger.info("Cache service disposed")

    # =========================================================================
    # Statistics and Health
    # =========================================================================

    def get_stats(self) -> Dict[str, Any]:
        return {
            "initialized": self._initialized,
            "query_cache": self.query_cache.get_stats(),
            "managed": self.managed.get_stats(),
            "preferences": self.preferences.get_stats(),
            "realtime": {
                "subscribers": self.stream.subscriber_count,
                "listeners": self.listener.subscription_count,
                "published": self.stream.published,
                "bridge": self._bridge is not None and self._bridge.running,
            },
        }

    async def health_check(self) -> Dict[str, Any]:
        """
        Perform health check.

        Returns:
            Dict with ``healthy``, ``status`` and ``stats``. Status is
            ``connected`` while the Redis bridge forwards, ``disconnected``
            once its forwarder has died, ``local`` without a bridge.
        """
        if not self.config.enabled:
            return {"healthy": True, "status": "disabled", "stats": self.get_stats()}
        if not self._initialized:
            return {"healthy": False, "status": "not_initialized"}

        if self._bridge is None:
            healthy, status = True, "local"
        elif self._bridge.running:
            healthy, status = True, "connected"
        else:
            healthy, status = False, "disconnected"
        return {
            "healthy": healthy,
            "status": status,
            "stats": self.get_stats(),
        }


# Singleton instance
_cache_service: Optional[CacheService] = None
_cache_service_lock = asyncio.Lock()


async def get_cache_service() -> CacheService:
    """Get singleton cache service instance."""
    global _cache_service

    if _cache_service is not None:
        return _cache_service

    async with _cache_service_lock:
        if _cache_service is not None:
            return _cache_service

        _cache_service = CacheService()
        await _cache_service.init()
        return _cache_service


async def close_cache_service():
    """Dispose singleton cache service instance."""
    global _cache_service

    if _cache_service:
        await _cache_service.dispose()
        _cache_service = None
