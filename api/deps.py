"""
Shared API dependencies.

The app builds one set of components at startup (cache service, remote data
source, facade, reconciler, importer) and stores it on ``app.state``.
Routers receive the pieces they need through ``Depends``.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, Request

from tourdash.analytics.importer import AnalyticsImporter
from tourdash.analytics.reconciler import UnifiedAnalyticsReconciler
from tourdash.cache.service import CacheService
from tourdash.dashboard.facade import DashboardAggregationFacade
from tourdash.integrations.base import RemoteDataSource


@dataclass
class Components:
    service: CacheService
    source: Optional[RemoteDataSource]
    facade: Optional[DashboardAggregationFacade] = None
    reconciler: Optional[UnifiedAnalyticsReconciler] = None
    importer: Optional[AnalyticsImporter] = None


def build_components(service: CacheService, source: Optional[RemoteDataSource]) -> Components:
    components = Components(service=service, source=source)
    if source is None:
        return components

    components.facade = DashboardAggregationFacade(
        source,
        service.query_cache,
        service.managed,
        listener=service.listener,
        notifier=service.notifier,
    )
    components.reconciler = UnifiedAnalyticsReconciler(
        source,
        query_cache=service.query_cache,
        listener=service.listener,
        notifier=service.notifier,
    )
    components.importer = AnalyticsImporter(
        source,
        stream=service.stream,
        query_cache=service.query_cache,
    )
    return components


def get_components(request: Request) -> Components:
    components = getattr(request.app.state, "components", None)
    if components is None:
        raise HTTPException(status_code=503, detail="Service is starting up")
    return components


def get_service(components: Components = Depends(get_components)) -> CacheService:
    return components.service


def _require_source(components: Components) -> None:
    if components.source is None:
        raise HTTPException(status_code=503, detail="Remote data source is not configured")


def get_facade(components: Components = Depends(get_components)) -> DashboardAggregationFacade:
    _require_source(components)
    return components.facade


def get_reconciler(components: Components = Depends(get_components)) -> UnifiedAnalyticsReconciler:
    _require_source(components)
    return components.reconciler


def get_importer(components: Components = Depends(get_components)) -> AnalyticsImporter:
    _require_source(components)
    return components.importer
