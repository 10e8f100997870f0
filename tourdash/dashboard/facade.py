"""
Dashboard Aggregation Facade

Loads everything a creator dashboard shows in one pass and keeps it fresh.

Flow for ``load(user_id)``:
1. Managed Fetch Cache lookup for ``("dashboard", user_id)``.
2. On miss: one nested select for creator -> clients -> projects ->
   {chatbots, analytics, requests}, then support requests, chatbot
   requests, leads and assets in parallel through the Keyed Query Cache,
   each with its own TTL.
3. The flattened slices are deep-copied into the Keyed Query Cache under
   ``(resource, {"user_id": ...})`` and into the Managed Fetch Cache under
   ``(resource, user_id)``.

The Managed Fetch Cache is authoritative. The Keyed Query Cache is a
best-effort secondary index and may briefly disagree with it.
"""

import asyncio
import copy
import logging
from typing import Any, Callable, Dict, List, Optional

from tourdash.cache.config import CacheTTL
from tourdash.cache.entry_store import MISS
from tourdash.cache.managed import ManagedFetchCache, QueryObserver, QueryOptions, QueryResult
from tourdash.cache.query_cache import KeyedQueryCache
from tourdash.dashboard.models import (
    SLICES,
    CreatorNotFoundError,
    DashboardComposite,
    DashboardStats,
    DataIntegrityError,
    DuplicateCreatorError,
    flatten_creator_tree,
)
from tourdash.integrations.base import Filter, RemoteDataSource, filters_from_dict
from tourdash.notifications import LoggingNotifier, NotificationKind, Notifier
from tourdash.realtime.events import DASHBOARD_TABLES, TABLE_TO_RESOURCE
from tourdash.realtime.listener import ChangeNotificationListener, ListenerSubscription


logger = logging.getLogger(__name__)

COMPOSITE_RESOURCE = "dashboard"

COMPOSITE_SELECT = (
    "*,end_clients(*,projects(*,chatbots(*),analytics(*),requests(*)))"
)

ChangeCallback = Callable[[QueryResult], Any]


def _not_integrity_error(error: Exception) -> bool:
    return not isinstance(error, DataIntegrityError)


class DashboardWatch:
    """Live dashboard: managed-cache observer plus change listener."""

    def __init__(self, observer: QueryObserver, subscription: Optional[ListenerSubscription]):
        self.observer = observer
        self.subscription = subscription

    @property
    def active(self) -> bool:
        return self.observer.active

    @property
    def result(self) -> QueryResult:
        return self.observer.result

    def cancel(self) -> None:
        """Idempotent. In-flight fetches still complete and fill the caches."""
        self.observer.unsubscribe()
        if self.subscription is not None:
            self.subscription.cancel()


class DashboardAggregationFacade:
    """
    Usage:
        facade = DashboardAggregationFacade(source, query_cache, managed, listener)
        composite = await facade.load(user_id)
        facade.invalidate("clients", user_id)
        await facade.refresh(user_id, force=True)
    """

    def __init__(
        self,
        source: RemoteDataSource,
        query_cache: KeyedQueryCache,
        managed: ManagedFetchCache,
        listener: Optional[ChangeNotificationListener] = None,
        notifier: Optional[Notifier] = None,
        options: Optional[QueryOptions] = None,
    ):
        self.source = source
        self.query_cache = query_cache
        self.managed = managed
        self.listener = listener
        self.notifier = notifier or LoggingNotifier()
        self.options = options or QueryOptions.from_preset(
            "dashboard", retry_if=_not_integrity_error
        )

    @staticmethod
    def composite_key(user_id: str):
        return (COMPOSITE_RESOURCE, user_id)

    @staticmethod
    def slice_key(user_id: str, resource: str):
        return (resource, user_id)

    # =========================================================================
    # Remote Fetch
    # =========================================================================

    async def _fetch_creator(self, user_id: str) -> Dict[str, Any]:
        rows = await self.source.query(
            "creators",
            [Filter.eq("user_id", user_id)],
            select=COMPOSITE_SELECT,
            order_by=None,
        )
        if not rows:
            raise CreatorNotFoundError(f"No creator found for user {user_id}", user_id)
        if len(rows) > 1:
            raise DuplicateCreatorError(
                f"{len(rows)} creators found for user {user_id}, expected exactly one",
                user_id,
            )
        return rows[0]

    async def _cached_query(self, resource: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Sub-query through the Keyed Query Cache. Empty ``in`` lists skip the remote."""
        if any(isinstance(v, list) and not v for v in filters.values()):
            return []

        async def fetch():
            return await self.source.query(
                resource,
                filters_from_dict(filters),
                order_by="created_at",
                descending=True,
            )

        rows = await self.query_cache.get_or_fetch(
            resource, filters, fetch, CacheTTL.for_resource(resource)
        )
        return copy.deepcopy(rows)

    async def _fetch_composite(self, user_id: str) -> DashboardComposite:
        generations = {resource: self.query_cache.generation(resource) for resource in SLICES}
        creator_row = await self._fetch_creator(user_id)
        creator, nested = flatten_creator_tree(creator_row)
        creator_id = creator.get("id")

        project_ids = sorted(str(p["id"]) for p in nested["projects"] if "id" in p)
        chatbot_ids = sorted(str(c["id"]) for c in nested["chatbots"] if "id" in c)

        support_requests, chatbot_requests, leads, assets = await asyncio.gather(
            self._cached_query("support_requests", {"creator_id": creator_id}),
            self._cached_query("chatbot_requests", {"project_id": project_ids}),
            self._cached_query("leads", {"chatbot_id": chatbot_ids}),
            self._cached_query("assets", {"creator_id": creator_id}),
        )

        composite = DashboardComposite(
            creator=creator,
            clients=nested["clients"],
            projects=nested["projects"],
            chatbots=nested["chatbots"],
            analytics=nested["analytics"],
            requests=nested["requests"],
            support_requests=support_requests,
            chatbot_requests=chatbot_requests,
            leads=leads,
            assets=assets,
            stats=DashboardStats.from_slices(
                nested["clients"],
                nested["projects"],
                nested["chatbots"],
                leads,
                nested["analytics"],
            ),
        )
        self._write_slices(user_id, composite, generations)

        logger.info(
            f"Dashboard loaded for user {user_id}: {len(composite.clients)} clients, "
            f"{len(composite.projects)} projects, {len(composite.chatbots)} chatbots, "
            f"{len(composite.leads)} leads"
        )
        return composite

    def _write_slices(
        self,
        user_id: str,
        composite: DashboardComposite,
        generations: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Seed both tiers. Slices invalidated while the composite was read are skipped."""
        filters = {"user_id": user_id}
        for resource in SLICES:
            if generations is not None and self.query_cache.generation(resource) != generations[resource]:
                logger.debug(f"Not seeding {resource} for {user_id}: invalidated during fetch")
                continue
            self.query_cache.put(
                resource,
                filters,
                composite.get_slice(resource),
                CacheTTL.for_resource(resource),
            )
            self.managed.set_query_data(
                self.slice_key(user_id, resource),
                composite.get_slice(resource),
                self.options,
            )

    def _fetcher(self, user_id: str):
        async def fetch():
            return await self._fetch_composite(user_id)
        return fetch

    # =========================================================================
    # Public API
    # =========================================================================

    def _raise_blocking(self, user_id: str, result: QueryResult) -> None:
        """First-load failure: no data to fall back on."""
        if result.data is None and result.error is not None:
            error = result.error
            if isinstance(error, DataIntegrityError):
                self.notifier.notify(NotificationKind.ERROR, str(error))
            else:
                self.notifier.notify(
                    NotificationKind.ERROR,
                    f"Failed to load dashboard data: {error}",
                )
            raise error

    async def load(self, user_id: str) -> DashboardComposite:
        """
        Cached or fresh composite for ``user_id``.

        Args:
            user_id: Auth user id of the creator

        Returns:
            DashboardComposite; stale data is served while it refetches.

        Raises:
            CreatorNotFoundError, DuplicateCreatorError or RemoteFetchError
            on first-load failure. Once data exists, later failures keep
            serving it and show up in ``state(user_id).error``.
        """
        result = await self.managed.query(
            self.composite_key(user_id),
            self._fetcher(user_id),
            self.options,
        )
        self._raise_blocking(user_id, result)
        if result.error is not None:
            logger.warning(f"Serving last good dashboard for {user_id}: {result.error}")
        return result.data

    async def refresh(self, user_id: str, force: bool = False) -> QueryResult:
        """
        ``force=True`` refetches the composite now, ignoring freshness.
        Otherwise the composite is marked stale and refetched in the
        background while the current data keeps being served.

        Returns:
            QueryResult for the composite key.
        """
        key = self.composite_key(user_id)
        if force:
            result = await self.managed.fetch(key, self._fetcher(user_id), self.options)
            self._raise_blocking(user_id, result)
            return result

        self.managed.invalidate(key, refetch=False)
        result = await self.managed.query(key, self._fetcher(user_id), self.options)
        self._raise_blocking(user_id, result)
        return result

    def invalidate(self, sub_resource: str, user_id: Optional[str] = None) -> int:
        """
        Drop one slice (for one user, or all users) from both tiers.

        The composite itself is untouched; snapshots already returned never
        change.

        Args:
            sub_resource: Slice or table name (``"clients"``, ``"end_clients"``,
                ``"leads"``...), or ``"dashboard"`` for the composite
            user_id: Limit to one user; None covers every user

        Returns:
            Number of keyed-cache entries (or composite records) dropped.
        """
        resource = TABLE_TO_RESOURCE.get(sub_resource, sub_resource)
        if resource == COMPOSITE_RESOURCE:
            prefix = (COMPOSITE_RESOURCE,) if user_id is None else self.composite_key(user_id)
            return self.managed.invalidate(prefix)

        if user_id is None:
            removed = self.query_cache.invalidate_resource(resource)
            prefix = (resource,)
        else:
            removed = int(self.query_cache.invalidate(resource, {"user_id": user_id}))
            prefix = self.slice_key(user_id, resource)
        self.managed.invalidate(prefix)
        return removed

    def state(self, user_id: str) -> QueryResult:
        return self.managed.peek(self.composite_key(user_id)) or QueryResult()

    async def get_slice(self, user_id: str, resource: str) -> List[Dict[str, Any]]:
        """
        One slice without re-triggering the composite when it is cached.
        Falls back to a full load.
        """
        if resource not in SLICES:
            raise KeyError(f"Unknown dashboard slice: {resource}")

        cached = self.query_cache.peek(resource, {"user_id": user_id})
        if cached is not MISS:
            return copy.deepcopy(cached)

        data = self.managed.get_query_data(self.slice_key(user_id, resource))
        if data is not None:
            return copy.deepcopy(data)

        composite = await self.load(user_id)
        return composite.get_slice(resource)

    def watch(self, user_id: str, on_change: Optional[ChangeCallback] = None) -> DashboardWatch:
        """
        Keep the composite live: poll on the refetch interval and refetch
        once per burst of remote changes.
        """
        key = self.composite_key(user_id)
        observer = self.managed.subscribe(key, self._fetcher(user_id), self.options, on_change)

        subscription = None
        if self.listener is not None:
            def on_burst(tables):
                for table in sorted(tables):
                    resource = TABLE_TO_RESOURCE.get(table, table)
                    if resource in SLICES:
                        self.query_cache.invalidate_resource(resource)
                self.managed.invalidate(key)

            subscription = self.listener.subscribe(DASHBOARD_TABLES, on_burst)

        return DashboardWatch(observer, subscription)
