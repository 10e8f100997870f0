"""
Managed Fetch Cache

Stale-while-revalidate cache the dashboard screens read from directly.

Each key moves through:

    Empty -> Loading -> Fresh -> Stale -> Refetching -> Fresh
    any state -> Evicted (past gc_at with no observers)

- A stale record is served immediately while a background refetch runs.
- A failed background refetch keeps the stale data and sets ``error``.
- ``invalidate(prefix)`` marks records stale, never empty, so a manual
  refresh never flashes a loading state when data already exists.
- An invalidation that lands while a fetch is running outlives it: the
  result is stored but stays stale, and observed records fetch once more.
- Observers (``subscribe``) keep a record alive, poll it on
  ``refetch_interval`` and are told about every state change.

Keys are tuples, e.g. ``("dashboard", user_id)``. Invalidation and removal
match on a tuple prefix, so ``("dashboard",)`` covers every user.
"""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, Union

from tourdash.cache.config import QUERY_PRESETS
from tourdash.cache.entry_store import Clock, TTL, ttl_seconds


logger = logging.getLogger(__name__)

QueryKey = Tuple[Any, ...]
KeyLike = Union[QueryKey, List[Any], str]
FetchFn = Callable[[], Awaitable[Any]]

MAX_RETRY_DELAY = 30.0


def as_key(key: KeyLike) -> QueryKey:
    """Normalize a key or prefix to a tuple."""
    if isinstance(key, tuple):
        return key
    if isinstance(key, list):
        return tuple(key)
    return (key,)


def matches_prefix(key: QueryKey, prefix: QueryKey) -> bool:
    return key[:len(prefix)] == prefix


@dataclass
class QueryOptions:
    """Per-query freshness and polling settings."""
    stale_time: TTL = timedelta(minutes=5)
    gc_time: TTL = timedelta(minutes=10)
    refetch_interval: Optional[TTL] = timedelta(minutes=2)
    refetch_on_focus: bool = False
    retry: int = 2
    retry_delay: float = 1.0
    retry_if: Optional[Callable[[Exception], bool]] = None

    @classmethod
    def from_preset(cls, name: str, **overrides) -> "QueryOptions":
        """Build options from a named entry of ``QUERY_PRESETS``."""
        values = dict(QUERY_PRESETS[name])
        values.update(overrides)
        return cls(**values)


@dataclass
class ManagedCacheRecord:
    """One cached query and its bookkeeping."""
    key: QueryKey
    options: QueryOptions
    fetch_fn: Optional[FetchFn] = None
    data: Any = None
    has_data: bool = False
    data_updated_at: Optional[float] = None
    stale_at: float = 0.0
    gc_at: float = 0.0
    error: Optional[BaseException] = None
    invalidated: bool = False
    # Bumped by invalidate() and forced fetches; a task remembers its start value
    generation: int = 0
    task_generation: int = 0
    refetch_queued: bool = False
    task: Optional[asyncio.Task] = None
    observers: Set["QueryObserver"] = field(default_factory=set)

    @property
    def is_fetching(self) -> bool:
        return self.task is not None and not self.task.done()

    @property
    def is_refetching(self) -> bool:
        return self.is_fetching and self.has_data

    def is_stale(self, now: float) -> bool:
        return self.invalidated or not self.has_data or now >= self.stale_at

    def is_collectable(self, now: float) -> bool:
        return not self.observers and not self.is_fetching and now > self.gc_at


@dataclass(frozen=True)
class QueryResult:
    """Snapshot of a query as seen by a caller."""
    data: Any = None
    is_loading: bool = False
    is_stale: bool = False
    is_refetching: bool = False
    error: Optional[BaseException] = None
    data_updated_at: Optional[float] = None

    @property
    def status(self) -> str:
        if self.is_loading:
            return "loading"
        if self.error is not None and self.data_updated_at is None:
            return "error"
        if self.data_updated_at is None:
            return "idle"
        return "success"


ObserverListener = Callable[[QueryResult], Any]


class QueryObserver:
    """
    Active subscription to one key.

    ``unsubscribe`` stops the poller and detaches the listener. It is
    idempotent and never cancels a fetch already in flight.
    """

    def __init__(
        self,
        cache: "ManagedFetchCache",
        key: QueryKey,
        listener: Optional[ObserverListener] = None,
    ):
        self.cache = cache
        self.key = key
        self.listener = listener
        self.active = True
        self._poller: Optional[asyncio.Task] = None

    @property
    def result(self) -> QueryResult:
        return self.cache.peek(self.key) or QueryResult()

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        if self._poller is not None:
            self._poller.cancel()
            self._poller = None
        self.cache._detach(self)
        logger.debug(f"Observer detached from {self.key}")


class ManagedFetchCache:
    """
    Query cache with stale-time / gc-time semantics.

    Usage:
        result = await managed.query(("dashboard", user_id), load, options)
        observer = managed.subscribe(("dashboard", user_id), load, options, on_change)
        managed.invalidate(("dashboard",))
    """

    def __init__(
        self,
        defaults: Optional[QueryOptions] = None,
        clock: Clock = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.defaults = defaults or QueryOptions()
        self._clock = clock
        self._sleep = sleep
        self._records: Dict[QueryKey, ManagedCacheRecord] = {}
        self._listener_tasks: Set[asyncio.Task] = set()

    # =========================================================================
    # Record Lookup
    # =========================================================================

    def _record(self, key: QueryKey) -> Optional[ManagedCacheRecord]:
        """Live record for key, evicting it first if collectable."""
        record = self._records.get(key)
        if record is not None and record.is_collectable(self._clock()):
            del self._records[key]
            logger.debug(f"Evicted managed cache record: {key}")
            return None
        return record

    def _ensure_record(
        self,
        key: QueryKey,
        fetch_fn: Optional[FetchFn],
        options: Optional[QueryOptions],
    ) -> ManagedCacheRecord:
        record = self._record(key)
        if record is None:
            record = ManagedCacheRecord(key=key, options=options or self.defaults)
            self._records[key] = record
        if fetch_fn is not None:
            record.fetch_fn = fetch_fn
        if options is not None:
            record.options = options
        return record

    def _snapshot(self, record: ManagedCacheRecord) -> QueryResult:
        return QueryResult(
            data=record.data if record.has_data else None,
            is_loading=record.is_fetching and not record.has_data,
            is_stale=record.has_data and record.is_stale(self._clock()),
            is_refetching=record.is_refetching,
            error=record.error,
            data_updated_at=record.data_updated_at,
        )

    # =========================================================================
    # Core Operations
    # =========================================================================

    async def query(
        self,
        key: KeyLike,
        fetch_fn: FetchFn,
        options: Optional[QueryOptions] = None,
    ) -> QueryResult:
        """
        Read a query.

        Fresh data is returned as is. Stale data is returned immediately and
        a background refetch is started. With no data the first fetch is
        awaited; a failed first load comes back with ``error`` set and no
        ``data``.

        Args:
            key: Query key, e.g. ``("dashboard", user_id)``
            fetch_fn: Coroutine function producing the data
            options: Freshness settings; the record keeps the last ones given

        Returns:
            QueryResult snapshot taken after the call.
        """
        key = as_key(key)
        record = self._ensure_record(key, fetch_fn, options)

        if not record.has_data:
            task = self._start_fetch(record)
            await asyncio.shield(task)
            return self._snapshot(record)

        if record.is_stale(self._clock()):
            self._start_fetch(record)

        return self._snapshot(record)

    async def fetch(
        self,
        key: KeyLike,
        fetch_fn: Optional[FetchFn] = None,
        options: Optional[QueryOptions] = None,
    ) -> QueryResult:
        """
        Fetch now, ignoring freshness, and wait for the result.

        A fetch already running is joined only if it started after this
        call; an older one is awaited and followed by a new fetch.

        Returns:
            QueryResult snapshot once a fetch started by or after this call
            has finished.
        """
        key = as_key(key)
        record = self._ensure_record(key, fetch_fn, options)
        record.generation += 1
        target = record.generation
        while True:
            task = self._start_fetch(record)
            if task is None:
                break
            started = record.task_generation
            await asyncio.shield(task)
            if started >= target:
                break
        return self._snapshot(record)

    def subscribe(
        self,
        key: KeyLike,
        fetch_fn: FetchFn,
        options: Optional[QueryOptions] = None,
        listener: Optional[ObserverListener] = None,
    ) -> QueryObserver:
        """
        Attach an observer. Starts a fetch when the record is empty or
        stale, and a poller when ``refetch_interval`` is set.

        Args:
            key: Query key
            fetch_fn: Coroutine function used for every refetch
            options: Freshness and polling settings
            listener: Called with a QueryResult on every state change;
                may return an awaitable

        Returns:
            QueryObserver; call ``unsubscribe()`` to release the record.
        """
        key = as_key(key)
        record = self._ensure_record(key, fetch_fn, options)
        observer = QueryObserver(self, key, listener)
        record.observers.add(observer)

        if record.is_stale(self._clock()):
            self._start_fetch(record)

        interval = record.options.refetch_interval
        if interval:
            observer._poller = asyncio.create_task(
                self._poll(observer, ttl_seconds(interval))
            )
        return observer

    def peek(self, key: KeyLike) -> Optional[QueryResult]:
        """Current snapshot without fetching, or None for an empty key."""
        record = self._record(as_key(key))
        if record is None:
            return None
        return self._snapshot(record)

    def get_query_data(self, key: KeyLike) -> Any:
        record = self._record(as_key(key))
        if record is None or not record.has_data:
            return None
        return record.data

    def set_query_data(
        self,
        key: KeyLike,
        data: Any,
        options: Optional[QueryOptions] = None,
    ) -> None:
        """Write data directly with fresh timestamps."""
        key = as_key(key)
        record = self._ensure_record(key, None, options)
        self._store(record, data)
        self._notify(record)

    def invalidate(self, prefix: KeyLike = (), refetch: bool = True) -> int:
        """
        Mark every record under ``prefix`` stale.

        Observed records with a fetch function are refetched in the
        background. When a fetch is already running its result is kept
        stale, and observed records get one more fetch after it.

        Args:
            prefix: Key prefix; ``()`` matches every record
            refetch: Start background refetches for observed records

        Returns:
            Number of records touched.
        """
        prefix = as_key(prefix)
        count = 0
        for record in list(self._records.values()):
            if not matches_prefix(record.key, prefix):
                continue
            record.invalidated = True
            record.generation += 1
            count += 1
            if refetch and record.observers:
                if record.is_fetching:
                    record.refetch_queued = True
                else:
                    self._start_fetch(record)
            self._notify(record)
        logger.info(f"Invalidated {count} managed queries under {prefix}")
        return count

    def on_focus(self) -> int:
        """Refetch observed stale queries that opted into focus refetching."""
        now = self._clock()
        started = 0
        for record in list(self._records.values()):
            if (record.observers
                    and record.options.refetch_on_focus
                    and record.is_stale(now)):
                if self._start_fetch(record) is not None:
                    started += 1
        return started

    def collect_garbage(self) -> int:
        """Drop every record past gc_at that nobody observes."""
        now = self._clock()
        doomed = [
            key for key, record in self._records.items()
            if record.is_collectable(now)
        ]
        for key in doomed:
            del self._records[key]
        if doomed:
            logger.debug(f"Garbage collected {len(doomed)} managed queries")
        return len(doomed)

    def remove(self, prefix: KeyLike) -> int:
        """Drop records under ``prefix`` outright, detaching their observers."""
        prefix = as_key(prefix)
        doomed = [key for key in self._records if matches_prefix(key, prefix)]
        for key in doomed:
            record = self._records.pop(key)
            for observer in list(record.observers):
                observer.unsubscribe()
        return len(doomed)

    def clear(self) -> None:
        self.remove(())

    def keys(self) -> List[QueryKey]:
        return list(self._records)

    async def wait_idle(self) -> None:
        """Wait until no fetch or async listener is pending."""
        while True:
            pending = [
                record.task for record in self._records.values()
                if record.is_fetching
            ]
            pending.extend(t for t in self._listener_tasks if not t.done())
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def dispose(self) -> None:
        """Detach all observers, cancel in-flight work and drop every record."""
        tasks = []
        for record in self._records.values():
            for observer in list(record.observers):
                observer.unsubscribe()
            if record.is_fetching:
                record.task.cancel()
                tasks.append(record.task)
        for task in self._listener_tasks:
            task.cancel()
            tasks.append(task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._listener_tasks.clear()
        self._records.clear()
        logger.info("Managed fetch cache disposed")

    def get_stats(self) -> Dict[str, Any]:
        now = self._clock()
        records = list(self._records.values())
        return {
            "queries": len(records),
            "fetching": sum(1 for r in records if r.is_fetching),
            "stale": sum(1 for r in records if r.has_data and r.is_stale(now)),
            "observed": sum(1 for r in records if r.observers),
            "errored": sum(1 for r in records if r.error is not None),
        }

    # =========================================================================
    # Fetching
    # =========================================================================

    def _start_fetch(self, record: ManagedCacheRecord) -> Optional[asyncio.Task]:
        """Start a fetch unless one is already running for this record."""
        if record.is_fetching:
            return record.task
        if record.fetch_fn is None:
            logger.debug(f"No fetch function for {record.key}, serving as is")
            return None
        record.task_generation = record.generation
        record.refetch_queued = False
        record.task = asyncio.create_task(self._run_fetch(record))
        self._notify(record)
        return record.task

    async def _run_fetch(self, record: ManagedCacheRecord) -> None:
        generation = record.task_generation
        try:
            value = await self._fetch_with_retry(record)
        except asyncio.CancelledError:
            record.task = None
            raise
        except Exception as e:
            record.error = e
            if record.has_data:
                logger.warning(f"Background refetch failed for {record.key}, keeping stale data: {e}")
            else:
                # Keep the failed record (and its error) around for gc_time
                record.gc_at = self._clock() + ttl_seconds(record.options.gc_time)
                logger.error(f"Initial fetch failed for {record.key}: {e}")
        else:
            self._store(record, value)
            if record.generation != generation:
                record.invalidated = True
                logger.debug(f"Fetch for {record.key} was superseded, result stays stale")

        record.task = None
        self._notify(record)
        if record.refetch_queued and record.observers:
            logger.debug(f"Refetching {record.key} after invalidation during fetch")
            self._start_fetch(record)

    async def _fetch_with_retry(self, record: ManagedCacheRecord) -> Any:
        options = record.options
        attempt = 0
        while True:
            try:
                return await record.fetch_fn()
            except Exception as e:
                if attempt >= options.retry:
                    raise
                if options.retry_if is not None and not options.retry_if(e):
                    raise
                delay = min(options.retry_delay * (2 ** attempt), MAX_RETRY_DELAY)
                attempt += 1
                logger.debug(
                    f"Fetch for {record.key} failed ({e}), "
                    f"retry {attempt}/{options.retry} in {delay:.1f}s"
                )
                await self._sleep(delay)

    def _store(self, record: ManagedCacheRecord, value: Any) -> None:
        now = self._clock()
        record.data = value
        record.has_data = True
        record.data_updated_at = now
        record.stale_at = now + ttl_seconds(record.options.stale_time)
        record.gc_at = now + ttl_seconds(record.options.gc_time)
        record.error = None
        record.invalidated = False

    async def _poll(self, observer: QueryObserver, interval: float) -> None:
        while observer.active:
            await self._sleep(interval)
            if not observer.active:
                return
            record = self._records.get(observer.key)
            if record is None:
                return
            self._start_fetch(record)

    # =========================================================================
    # Observers
    # =========================================================================

    def _detach(self, observer: QueryObserver) -> None:
        record = self._records.get(observer.key)
        if record is not None:
            record.observers.discard(observer)

    def _notify(self, record: ManagedCacheRecord) -> None:
        if not record.observers:
            return
        snapshot = self._snapshot(record)
        for observer in list(record.observers):
            if not observer.active or observer.listener is None:
                continue
            try:
                outcome = observer.listener(snapshot)
            except Exception as e:
                logger.error(f"Observer listener for {record.key} failed: {e}")
                continue
            if inspect.isawaitable(outcome):
                task = asyncio.ensure_future(outcome)
                self._listener_tasks.add(task)
                task.add_done_callback(self._listener_done)

    def _listener_done(self, task: asyncio.Task) -> None:
        self._listener_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Async observer listener failed: {task.exception()}")
