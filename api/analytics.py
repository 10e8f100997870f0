"""
Analytics API

Endpoints:
- Unified KPIs for one project, end client or creator
- Daily series for charts
- CSV import (with dry-run validation)
- Reset of a client's analytics
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from api.deps import get_importer, get_reconciler
from tourdash.analytics.importer import AnalyticsImporter, parse_analytics_csv
from tourdash.analytics.models import AnalyticsScope
from tourdash.analytics.reconciler import UnifiedAnalyticsReconciler
from tourdash.integrations.base import RemoteFetchError


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/analytics", tags=["Analytics"])


# =============================================================================
# REQUEST / RESPONSE MODELS
# =============================================================================

class AnalyticsResponse(BaseModel):
    """Unified analytics for one scope."""
    scope: str
    total_views: float
    total_visitors: float
    avg_engagement_time: int
    total_leads: float
    conversion_rate: float
    avg_satisfaction: float
    last_activity: Optional[str] = None
    metric_count: int = 0
    error: Optional[str] = None


class DailyPointResponse(BaseModel):
    date: str
    views: float
    visitors: float
    leads: float
    avg_time: float
    metrics: Dict[str, float] = {}


class ImportRequest(BaseModel):
    """CSV export plus the client and project it belongs to."""
    csv: str = Field(..., description="Raw CSV text")
    project_id: str
    end_client_id: str
    creator_id: Optional[str] = None
    dry_run: bool = Field(default=False, description="Validate only, write nothing")


class ImportResponse(BaseModel):
    success: bool
    imported: int = 0
    dry_run: bool = False
    warnings: List[str] = []
    summary: Dict[str, Any] = {}


class ResetResponse(BaseModel):
    success: bool
    end_client_id: str
    deleted: Dict[str, int]


def scope_from_query(
    project_id: Optional[str] = Query(None),
    end_client_id: Optional[str] = Query(None),
    creator_id: Optional[str] = Query(None),
) -> AnalyticsScope:
    """Exactly one of the three ids must be given."""
    try:
        return AnalyticsScope(
            project_id=project_id,
            end_client_id=end_client_id,
            creator_id=creator_id,
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.get("", response_model=AnalyticsResponse)
async def get_analytics(
    scope: AnalyticsScope = Depends(scope_from_query),
    reconciler: UnifiedAnalyticsReconciler = Depends(get_reconciler),
):
    """
    Unified analytics across event and imported rows.

    Source failures do not fail the request: the last good figures are
    returned with ``error`` set.
    """
    result = await reconciler.compute(scope)
    data = result.to_dict()
    data.pop("computed_at", None)
    return AnalyticsResponse(scope=str(scope), **data)


@router.get("/daily", response_model=List[DailyPointResponse])
async def get_daily_analytics(
    scope: AnalyticsScope = Depends(scope_from_query),
    reconciler: UnifiedAnalyticsReconciler = Depends(get_reconciler),
):
    try:
        points = await reconciler.daily(scope)
    except RemoteFetchError as e:
        logger.error(f"Daily analytics failed for {scope}: {e}")
        raise HTTPException(status_code=502, detail=str(e))

    return [
        DailyPointResponse(
            date=p.date,
            views=p.views,
            visitors=p.visitors,
            leads=p.leads,
            avg_time=p.avg_time,
            metrics=p.metrics,
        )
        for p in points
    ]


@router.post("/import", response_model=ImportResponse)
async def import_analytics(
    request: ImportRequest,
    importer: AnalyticsImporter = Depends(get_importer),
):
    """
    Validate and import a CSV export.

    Any row error rejects the whole file with 422 and the list of errors.
    """
    validation = parse_analytics_csv(request.csv)
    if not validation.is_valid:
        raise HTTPException(
            status_code=422,
            detail={"errors": validation.errors, "warnings": validation.warnings},
        )

    summary = {
        "total_rows": validation.summary.total_rows,
        "total_views": validation.summary.total_views,
        "total_visitors": validation.summary.total_visitors,
        "avg_duration": validation.summary.avg_duration,
        "date_start": validation.summary.date_start,
        "date_end": validation.summary.date_end,
        "resource_codes": validation.summary.resource_codes,
    }

    if request.dry_run:
        return ImportResponse(
            success=True,
            dry_run=True,
            warnings=validation.warnings,
            summary=summary,
        )

    try:
        count = await importer.import_rows(
            validation,
            project_id=request.project_id,
            end_client_id=request.end_client_id,
            creator_id=request.creator_id,
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail={"errors": [str(e)], "warnings": validation.warnings})
    except RemoteFetchError as e:
        logger.error(f"Analytics import failed for client {request.end_client_id}: {e}")
        raise HTTPException(status_code=502, detail=str(e))

    return ImportResponse(
        success=True,
        imported=count,
        warnings=validation.warnings,
        summary=summary,
    )


@router.delete("/clients/{end_client_id}", response_model=ResetResponse)
async def reset_client_analytics(
    end_client_id: str,
    importer: AnalyticsImporter = Depends(get_importer),
):
    try:
        deleted = await importer.reset(end_client_id)
    except RemoteFetchError as e:
        logger.error(f"Analytics reset failed for client {end_client_id}: {e}")
        raise HTTPException(status_code=502, detail=str(e))

    return ResetResponse(success=True, end_client_id=end_client_id, deleted=deleted)
