"""
Unified Analytics Reconciler

Merges the ``analytics`` (event rows) and ``imported_analytics``
(spreadsheet rows) tables into one canonical metric set per scope and
derives the dashboard KPIs from it.

Rules:
- Both tables are fetched in parallel. If either fails the whole
  computation fails; totals are never derived from one source alone.
- On failure the result carries ``error`` next to the last good
  aggregates for the scope (zeros if there never was a good one).
- Sources are additive. An imported view of 120 plus an event view of 50
  is 170; nothing is deduplicated across tables.
- Aggregates do not depend on row order.
"""

import asyncio
import inspect
import logging
import math
from collections import defaultdict
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from tourdash.analytics.models import (
    AnalyticsScope,
    CanonicalMetric,
    DailyPoint,
    MetricType,
    UnifiedAnalytics,
    parse_timestamp,
)
from tourdash.analytics.normalize import normalize_rows
from tourdash.cache.config import CacheTTL
from tourdash.cache.query_cache import KeyedQueryCache
from tourdash.integrations.base import RemoteDataSource, filters_from_dict
from tourdash.notifications import LoggingNotifier, NotificationKind, Notifier
from tourdash.realtime.events import ANALYTICS_TABLES
from tourdash.realtime.listener import ChangeNotificationListener, ListenerSubscription


logger = logging.getLogger(__name__)

ResultCallback = Callable[[UnifiedAnalytics], Any]


def round_half_up(value: float, digits: int = 0):
    """Round halves away from zero for positive values (2.5 -> 3)."""
    factor = 10 ** digits
    rounded = math.floor(value * factor + 0.5) / factor
    return int(rounded) if digits == 0 else rounded


def _values(metrics: Iterable[CanonicalMetric], metric_type: MetricType) -> List[float]:
    return [m.value for m in metrics if m.metric_type == metric_type.value]


def _mean(values: List[float]) -> float:
    return math.fsum(values) / len(values) if values else 0.0


def _total(values: List[float]):
    total = math.fsum(values)
    return int(total) if total.is_integer() else total


def latest_activity(metrics: Iterable[CanonicalMetric]) -> Optional[str]:
    """Raw ``created_at`` of the most recent metric, or None."""
    best = None
    for metric in metrics:
        parsed = parse_timestamp(metric.created_at)
        if parsed is None:
            continue
        candidate = (parsed, metric.created_at)
        if best is None or candidate > best:
            best = candidate
    return best[1] if best else None


def aggregate(metrics: List[CanonicalMetric]) -> UnifiedAnalytics:
    """Derive the KPIs from a merged metric list."""
    total_views = _total(_values(metrics, MetricType.VIEW))
    total_leads = _total(_values(metrics, MetricType.LEAD_GENERATED))

    conversion_rate = 0.0
    if total_views > 0:
        conversion_rate = round_half_up(total_leads / total_views * 100, 2)

    return UnifiedAnalytics(
        total_views=total_views,
        total_visitors=_total(_values(metrics, MetricType.UNIQUE_VISITOR)),
        avg_engagement_time=round_half_up(_mean(_values(metrics, MetricType.TIME_SPENT))),
        total_leads=total_leads,
        conversion_rate=conversion_rate,
        avg_satisfaction=round_half_up(_mean(_values(metrics, MetricType.SATISFACTION)), 2),
        last_activity=latest_activity(metrics),
        metric_count=len(metrics),
        computed_at=datetime.now(timezone.utc),
    )


def daily_series(metrics: Iterable[CanonicalMetric]) -> List[DailyPoint]:
    """Per-date totals, oldest first. Metrics without a date are skipped."""
    by_date: Dict[str, Dict[str, float]] = defaultdict(lambda: defaultdict(float))
    time_samples: Dict[str, List[float]] = defaultdict(list)

    for metric in metrics:
        if not metric.date:
            continue
        by_date[metric.date][metric.metric_type] += metric.value
        if metric.metric_type == MetricType.TIME_SPENT.value:
            time_samples[metric.date].append(metric.value)

    points = []
    for day in sorted(by_date):
        totals = by_date[day]
        points.append(DailyPoint(
            date=day,
            views=totals.get(MetricType.VIEW.value, 0),
            visitors=totals.get(MetricType.UNIQUE_VISITOR.value, 0),
            leads=totals.get(MetricType.LEAD_GENERATED.value, 0),
            avg_time=round_half_up(_mean(time_samples[day]), 2),
            metrics=dict(totals),
        ))
    return points


class UnifiedAnalyticsReconciler:
    """
    Computes ``UnifiedAnalytics`` for a scope and keeps it current.

    Usage:
        reconciler = UnifiedAnalyticsReconciler(source, listener=listener)
        result = await reconciler.compute(AnalyticsScope.project(project_id))
        sub = await reconciler.watch(scope, on_result)
    """

    def __init__(
        self,
        source: RemoteDataSource,
        query_cache: Optional[KeyedQueryCache] = None,
        listener: Optional[ChangeNotificationListener] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.source = source
        self.query_cache = query_cache
        self.listener = listener
        self.notifier = notifier or LoggingNotifier()
        self._last_good: Dict[AnalyticsScope, UnifiedAnalytics] = {}
        self._last: Dict[AnalyticsScope, UnifiedAnalytics] = {}
        self._sequence: Dict[AnalyticsScope, int] = {}

    async def _fetch_table(self, table: str, scope: AnalyticsScope) -> List[Dict[str, Any]]:
        filters = scope.as_filters()

        async def fetch():
            return await self.source.query(table, filters_from_dict(filters))

        if self.query_cache is None:
            return await fetch()
        return await self.query_cache.get_or_fetch(
            table, filters, fetch, CacheTTL.for_resource(table)
        )

    async def fetch_metrics(self, scope: AnalyticsScope) -> List[CanonicalMetric]:
        """Fetch both sources in parallel and normalize them together."""
        event_rows, imported_rows = await asyncio.gather(
            self._fetch_table("analytics", scope),
            self._fetch_table("imported_analytics", scope),
        )
        logger.debug(
            f"Fetched {len(event_rows)} event rows and {len(imported_rows)} "
            f"imported rows for {scope}"
        )
        return normalize_rows(event_rows, imported_rows)

    async def _compute(self, scope: AnalyticsScope) -> Tuple[UnifiedAnalytics, bool]:
        """Result plus whether it is still the newest compute for ``scope``."""
        sequence = self._sequence.get(scope, 0) + 1
        self._sequence[scope] = sequence
        try:
            metrics = await self.fetch_metrics(scope)
            result = aggregate(metrics)
        except Exception as e:
            logger.error(f"Analytics reconciliation failed for {scope}: {e}")
            previous = self._last_good.get(scope) or UnifiedAnalytics()
            result = replace(previous, error=str(e))
            if self._sequence[scope] != sequence:
                return result, False
            self._last[scope] = result
            self.notifier.notify(NotificationKind.ERROR, f"Failed to load analytics: {e}")
            return result, True

        if self._sequence[scope] != sequence:
            logger.debug(f"Analytics compute for {scope} superseded by a newer one")
            return result, False

        self._last_good[scope] = result
        self._last[scope] = result
        logger.info(
            f"Analytics for {scope}: views={result.total_views} "
            f"visitors={result.total_visitors} leads={result.total_leads}"
        )
        return result, True

    async def compute(self, scope: AnalyticsScope) -> UnifiedAnalytics:
        """
        Aggregate KPIs for ``scope``. Never raises for source failures.

        Args:
            scope: Exactly one of end client, project or creator

        Returns:
            UnifiedAnalytics. On failure, the last good result for the scope
            (or zeros) with ``error`` set.

        When computes for one scope overlap, only the one started last
        updates ``last_result``.
        """
        result, _ = await self._compute(scope)
        return result

    async def daily(self, scope: AnalyticsScope) -> List[DailyPoint]:
        """Chart series for ``scope``. Source failures propagate."""
        return daily_series(await self.fetch_metrics(scope))

    def last_result(self, scope: AnalyticsScope) -> Optional[UnifiedAnalytics]:
        return self._last.get(scope)

    def invalidate(self, scope: Optional[AnalyticsScope] = None) -> None:
        """Drop cached source rows so the next compute reads the remote."""
        if self.query_cache is None:
            return
        for table in sorted(ANALYTICS_TABLES):
            if scope is None:
                self.query_cache.invalidate_resource(table)
            else:
                self.query_cache.invalidate(table, scope.as_filters())

    async def watch(
        self,
        scope: AnalyticsScope,
        on_result: Optional[ResultCallback] = None,
    ) -> ListenerSubscription:
        """
        Compute now, then recompute after every burst of changes on either
        analytics table. Cancel the returned subscription to stop.

        Args:
            scope: Scope to keep current
            on_result: Called with each new result; may be async. A result
                overtaken by a newer compute is not delivered.

        Returns:
            ListenerSubscription for the analytics tables.
        """
        if self.listener is None:
            raise RuntimeError("watch() needs a ChangeNotificationListener")

        async def recompute(tables=frozenset()):
            self.invalidate(scope)
            result, current = await self._compute(scope)
            if not current:
                return result
            if on_result is not None:
                outcome = on_result(result)
                if inspect.isawaitable(outcome):
                    await outcome
            return result

        subscription = self.listener.subscribe(ANALYTICS_TABLES, recompute)
        await recompute()
        return subscription
