"""
Dashboard API

Endpoints for the creator dashboard composite:
- Load (cached, stale-while-revalidate)
- Refresh (forced or background)
- Granular slice invalidation
- Single slice reads without re-triggering the composite
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from api.deps import get_facade
from tourdash.cache.managed import QueryResult
from tourdash.dashboard.facade import DashboardAggregationFacade
from tourdash.dashboard.models import (
    SLICES,
    CreatorNotFoundError,
    DataIntegrityError,
    DuplicateCreatorError,
)
from tourdash.integrations.base import RemoteFetchError


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/dashboard", tags=["Dashboard"])


# =============================================================================
# RESPONSE MODELS
# =============================================================================

class DashboardResponse(BaseModel):
    """Dashboard composite with freshness flags."""
    user_id: str
    data: Dict[str, Any]
    is_stale: bool = False
    is_refetching: bool = False
    error: Optional[str] = None


class RefreshResponse(BaseModel):
    user_id: str
    forced: bool
    is_stale: bool
    is_refetching: bool
    error: Optional[str] = None


class InvalidationResponse(BaseModel):
    success: bool
    resource: str
    keys_invalidated: int
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class SliceResponse(BaseModel):
    resource: str
    count: int
    items: List[Dict[str, Any]]


def raise_for_load_error(error: Exception, user_id: str):
    """Map load failures to HTTP errors."""
    if isinstance(error, CreatorNotFoundError):
        raise HTTPException(status_code=404, detail=str(error))
    if isinstance(error, DuplicateCreatorError):
        raise HTTPException(status_code=409, detail=str(error))
    if isinstance(error, DataIntegrityError):
        raise HTTPException(status_code=409, detail=str(error))
    if isinstance(error, RemoteFetchError):
        logger.error(f"Remote fetch failed for dashboard {user_id}: {error}")
        raise HTTPException(status_code=502, detail=str(error))
    raise error


def _error_text(result: QueryResult) -> Optional[str]:
    return str(result.error) if result.error is not None else None


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.get("/{user_id}", response_model=DashboardResponse)
async def get_dashboard(
    user_id: str,
    facade: DashboardAggregationFacade = Depends(get_facade),
):
    """
    Get the creator dashboard for a user.

    Stale data is served immediately while a refetch runs in the background.
    """
    try:
        composite = await facade.load(user_id)
    except (DataIntegrityError, RemoteFetchError) as e:
        raise_for_load_error(e, user_id)

    state = facade.state(user_id)
    return DashboardResponse(
        user_id=user_id,
        data=composite.to_dict(),
        is_stale=state.is_stale,
        is_refetching=state.is_refetching,
        error=_error_text(state),
    )


@router.post("/{user_id}/refresh", response_model=RefreshResponse)
async def refresh_dashboard(
    user_id: str,
    force: bool = Query(False, description="Refetch now instead of in the background"),
    facade: DashboardAggregationFacade = Depends(get_facade),
):
    try:
        result = await facade.refresh(user_id, force=force)
    except (DataIntegrityError, RemoteFetchError) as e:
        raise_for_load_error(e, user_id)

    return RefreshResponse(
        user_id=user_id,
        forced=force,
        is_stale=result.is_stale,
        is_refetching=result.is_refetching,
        error=_error_text(result),
    )


@router.post("/{user_id}/invalidate/{resource}", response_model=InvalidationResponse)
async def invalidate_slice(
    user_id: str,
    resource: str,
    facade: DashboardAggregationFacade = Depends(get_facade),
):
    """
    Invalidate one slice for a user. Use ``dashboard`` for the composite.
    """
    if resource not in SLICES and resource != "dashboard":
        raise HTTPException(status_code=404, detail=f"Unknown resource: {resource}")

    count = facade.invalidate(resource, user_id)
    return InvalidationResponse(success=True, resource=resource, keys_invalidated=count)


@router.get("/{user_id}/slices/{resource}", response_model=SliceResponse)
async def get_slice(
    user_id: str,
    resource: str,
    facade: DashboardAggregationFacade = Depends(get_facade),
):
    if resource not in SLICES:
        raise HTTPException(status_code=404, detail=f"Unknown resource: {resource}")

    try:
        items = await facade.get_slice(user_id, resource)
    except (DataIntegrityError, RemoteFetchError) as e:
        raise_for_load_error(e, user_id)

    return SliceResponse(resource=resource, count=len(items), items=items)
