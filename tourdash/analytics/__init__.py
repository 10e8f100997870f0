"""
Unified analytics.

Event rows (``analytics``) and spreadsheet imports (``imported_analytics``)
are normalized into ``CanonicalMetric`` and aggregated per scope.
"""

from tourdash.analytics.models import (
    AnalyticsScope,
    CanonicalMetric,
    DailyPoint,
    EventMetric,
    ImportedMetric,
    MetricType,
    RawMetric,
    ScopeKind,
    UnifiedAnalytics,
)
from tourdash.analytics.normalize import normalize, normalize_rows
from tourdash.analytics.reconciler import (
    UnifiedAnalyticsReconciler,
    aggregate,
    daily_series,
)
from tourdash.analytics.importer import (
    AnalyticsImporter,
    ImportValidation,
    parse_analytics_csv,
)

__all__ = [
    "AnalyticsScope",
    "CanonicalMetric",
    "DailyPoint",
    "EventMetric",
    "ImportedMetric",
    "MetricType",
    "RawMetric",
    "ScopeKind",
    "UnifiedAnalytics",
    "normalize",
    "normalize_rows",
    "UnifiedAnalyticsReconciler",
    "aggregate",
    "daily_series",
    "AnalyticsImporter",
    "ImportValidation",
    "parse_analytics_csv",
]
