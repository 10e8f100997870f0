"""
Cache Management API

Provides endpoints for cache monitoring and manual operations.

Endpoints:
- Health check for monitoring/alerting
- Statistics for dashboard insights
- Manual invalidation for debugging
"""

import logging
from datetime import datetime
from typing import Any, Dict, List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from api.deps import get_service
from tourdash.cache.service import CacheService


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/cache", tags=["Cache Management"])


# =============================================================================
# RESPONSE MODELS
# =============================================================================

class CacheHealthResponse(BaseModel):
    """Cache health check response."""
    status: str = Field(..., description="healthy or unhealthy")
    backend: str = Field(..., description="connected, disconnected, local, disabled or not_initialized")
    cached_entries: int = Field(..., description="Number of live query cache entries")
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class CacheStatsResponse(BaseModel):
    """Cache statistics response."""
    initialized: bool
    query_cache: Dict[str, Any]
    managed: Dict[str, Any]
    preferences: Dict[str, Any]
    realtime: Dict[str, Any]


class InvalidationResponse(BaseModel):
    """Cache invalidation response."""
    success: bool
    keys_invalidated: int
    duration_ms: float
    errors: List[str] = []


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.get("/health", response_model=CacheHealthResponse)
async def cache_health_check(service: CacheService = Depends(get_service)):
    """
    Check cache infrastructure health.

    Use this endpoint for monitoring and alerting systems.
    """
    health = await service.health_check()
    entries = service.query_cache.get_stats().get("entries", 0)

    return CacheHealthResponse(
        status="healthy" if health["healthy"] else "unhealthy",
        backend=health["status"],
        cached_entries=entries,
        timestamp=datetime.utcnow(),
    )


@router.get("/stats", response_model=CacheStatsResponse)
async def get_cache_stats(service: CacheService = Depends(get_service)):
    """
    Get current cache statistics.

    Note: Stats are reset on application restart.
    """
    return CacheStatsResponse(**service.get_stats())


@router.post("/invalidate/all", response_model=InvalidationResponse)
async def invalidate_all_cache(service: CacheService = Depends(get_service)):
    """
    Drop every cached value in the query and managed caches.

    WARNING: The next dashboard loads go to the remote store.
    """
    start = datetime.utcnow()
    count = len(service.query_cache.store.keys()) + len(service.managed.keys())
    service.clear()
    duration = (datetime.utcnow() - start).total_seconds() * 1000

    logger.warning(f"Invalidated all cache entries ({count})")
    return InvalidationResponse(success=True, keys_invalidated=count, duration_ms=duration)


@router.post("/invalidate/{resource}", response_model=InvalidationResponse)
async def invalidate_resource_cache(
    resource: str,
    service: CacheService = Depends(get_service),
):
    """
    Invalidate every cached query of one resource.

    Managed records whose key starts with the resource are marked stale too.
    """
    start = datetime.utcnow()
    count = service.query_cache.invalidate_resource(resource)
    count += service.managed.invalidate((resource,))
    duration = (datetime.utcnow() - start).total_seconds() * 1000

    logger.info(f"Invalidated {count} cache entries for resource {resource}")
    return InvalidationResponse(success=True, keys_invalidated=count, duration_ms=duration)
