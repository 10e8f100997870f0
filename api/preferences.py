"""
Preferences API

Durable per-user preferences (theme, dashboard filters, recent searches).
Named presets fall back to their defaults; other keys return 404 when
missing or expired.
"""

import logging
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from api.deps import get_service
from tourdash.cache.entry_store import MISS
from tourdash.cache.preferences import PREFERENCE_PRESETS, PersistentPreferenceCache
from tourdash.cache.service import CacheService


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/preferences", tags=["Preferences"])


class PreferenceResponse(BaseModel):
    owner_id: str
    key: str
    value: Any = None


class PreferenceWrite(BaseModel):
    value: Any
    ttl_seconds: Optional[float] = Field(
        default=None, gt=0, description="Defaults to the preset TTL, or 24h"
    )


class PreferenceWriteResponse(BaseModel):
    success: bool
    owner_id: str
    key: str


class RecentSearchRequest(BaseModel):
    term: str = Field(..., min_length=1)


class RecentSearchResponse(BaseModel):
    owner_id: str
    searches: List[str]


def get_preferences(service: CacheService = Depends(get_service)) -> PersistentPreferenceCache:
    return service.preferences


@router.get("/{owner_id}/{key}", response_model=PreferenceResponse)
def read_preference(
    owner_id: str,
    key: str,
    prefs: PersistentPreferenceCache = Depends(get_preferences),
):
    if key in PREFERENCE_PRESETS:
        value = prefs.read_preset(key, owner_id=owner_id)
    else:
        value = prefs.read(key, MISS, owner_id=owner_id)
        if value is MISS:
            raise HTTPException(status_code=404, detail=f"Preference not found: {key}")

    return PreferenceResponse(owner_id=owner_id, key=key, value=value)


@router.put("/{owner_id}/{key}", response_model=PreferenceWriteResponse)
def write_preference(
    owner_id: str,
    key: str,
    body: PreferenceWrite,
    prefs: PersistentPreferenceCache = Depends(get_preferences),
):
    if body.ttl_seconds is None and key in PREFERENCE_PRESETS:
        ok = prefs.write_preset(key, body.value, owner_id=owner_id)
    else:
        ok = prefs.write(key, body.value, ttl=body.ttl_seconds, owner_id=owner_id)

    if not ok:
        raise HTTPException(status_code=503, detail="Preference store unavailable")
    return PreferenceWriteResponse(success=True, owner_id=owner_id, key=key)


@router.delete("/{owner_id}/{key}", response_model=PreferenceWriteResponse)
def delete_preference(
    owner_id: str,
    key: str,
    prefs: PersistentPreferenceCache = Depends(get_preferences),
):
    removed = prefs.remove(key, owner_id=owner_id)
    return PreferenceWriteResponse(success=removed, owner_id=owner_id, key=key)


@router.post("/{owner_id}/recent-searches", response_model=RecentSearchResponse)
def add_recent_search(
    owner_id: str,
    body: RecentSearchRequest,
    prefs: PersistentPreferenceCache = Depends(get_preferences),
):
    searches = prefs.push_recent_search(body.term, owner_id=owner_id)
    return RecentSearchResponse(owner_id=owner_id, searches=searches)
