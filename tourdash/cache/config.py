"""
Cache Configuration

Centralized configuration for the caching layer.
TTLs are tuned per resource by how often the underlying table churns.

Key insight: analytics rows arrive continuously while assets and
support data barely move, so each dashboard slice gets its own TTL
instead of one global expiry.
"""

import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional
from functools import lru_cache


@dataclass(frozen=True)
class CacheTTL:
    """
    Cache TTL configuration by resource.

    These values are used for:
    - Keyed query cache entries (one per resource + filter set)
    - Granular dashboard slices written after a composite fetch
    """

    # Dashboard slices (creator-owned, rarely edited)
    CLIENTS: timedelta = timedelta(minutes=10)
    PROJECTS: timedelta = timedelta(minutes=5)
    CHATBOTS: timedelta = timedelta(minutes=5)
    REQUESTS: timedelta = timedelta(minutes=3)

    # Less critical data, cached longer
    SUPPORT_REQUESTS: timedelta = timedelta(minutes=10)
    CHATBOT_REQUESTS: timedelta = timedelta(minutes=10)
    ASSETS: timedelta = timedelta(minutes=15)

    # Leads and analytics churn the most
    LEADS: timedelta = timedelta(minutes=5)
    ANALYTICS: timedelta = timedelta(minutes=2)
    IMPORTED_ANALYTICS: timedelta = timedelta(minutes=2)

    # Fallback
    DEFAULT: timedelta = timedelta(minutes=5)

    @classmethod
    def for_resource(cls, resource: str) -> timedelta:
        """Get TTL for a resource name."""
        mapping = {
            "clients": cls.CLIENTS,
            "end_clients": cls.CLIENTS,
            "projects": cls.PROJECTS,
            "chatbots": cls.CHATBOTS,
            "requests": cls.REQUESTS,
            "support_requests": cls.SUPPORT_REQUESTS,
            "chatbot_requests": cls.CHATBOT_REQUESTS,
            "assets": cls.ASSETS,
            "leads": cls.LEADS,
            "analytics": cls.ANALYTICS,
            "imported_analytics": cls.IMPORTED_ANALYTICS,
        }
        return mapping.get(resource, cls.DEFAULT)


def _env_bool(key: str, default: str) -> bool:
    return os.getenv(key, default).lower() == "true"


@dataclass
class CacheConfig:
    """
    Main cache configuration.

    Settings can be overridden via environment variables:
    - CACHE_ENABLED: Enable/disable the keyed query cache globally
    - CACHE_COALESCE_REQUESTS: Share in-flight fetches between first callers
    - REALTIME_DEBOUNCE_SECONDS: Debounce window for change bursts
    """

    # Cache namespace (for key prefixes and pub/sub channels)
    namespace: str = field(default_factory=lambda: os.getenv(
        "CACHE_NAMESPACE",
        "tourdash"
    ))

    # Global cache toggle
    enabled: bool = field(default_factory=lambda: _env_bool(
        "CACHE_ENABLED",
        "true"
    ))

    # Keyed query cache settings
    default_ttl_seconds: float = field(default_factory=lambda: float(os.getenv(
        "CACHE_DEFAULT_TTL_SECONDS",
        "300"
    )))
    coalesce_requests: bool = field(default_factory=lambda: _env_bool(
        "CACHE_COALESCE_REQUESTS",
        "false"
    ))

    # Persistent preference cache
    preferences_enabled: bool = field(default_factory=lambda: _env_bool(
        "PREFERENCES_CACHE_ENABLED",
        "true"
    ))

    # Real-time settings
    debounce_seconds: float = field(default_factory=lambda: float(os.getenv(
        "REALTIME_DEBOUNCE_SECONDS",
        "1.0"
    )))
    redis_url: Optional[str] = field(default_factory=lambda: os.getenv(
        "REDIS_URL"
    ))

    @property
    def default_ttl(self) -> timedelta:
        return timedelta(seconds=self.default_ttl_seconds)


@lru_cache(maxsize=1)
def get_cache_config() -> CacheConfig:
    """Get singleton cache configuration."""
    return CacheConfig()


# Managed fetch cache presets for different data types
QUERY_PRESETS = {
    "dashboard": {
        # B2B data doesn't change frequently
        "stale_time": timedelta(minutes=5),
        "gc_time": timedelta(minutes=10),
        "refetch_interval": timedelta(minutes=2),
        "refetch_on_focus": False,
        "retry": 2,
    },
    "analytics": {
        # Fresh numbers matter more here
        "stale_time": timedelta(minutes=1),
        "gc_time": timedelta(minutes=5),
        "refetch_interval": timedelta(minutes=1),
        "refetch_on_focus": True,
        "retry": 2,
    },
    "static": {
        # Reference data, never polled
        "stale_time": timedelta(hours=1),
        "gc_time": timedelta(hours=2),
        "refetch_interval": None,
        "refetch_on_focus": False,
        "retry": 1,
    },
}
