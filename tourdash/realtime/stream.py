"""
Change Stream

In-process fan-out of change events. Each subscriber owns an
``asyncio.Queue`` and a predicate; ``publish`` offers the event to every
subscriber whose predicate accepts it. Cancelling a subscription is
idempotent and wakes any consumer blocked on it.

``RedisChangeBridge`` feeds a stream from Redis pub/sub so that writers in
other processes (API workers, import jobs) reach every dashboard.
"""

import asyncio
import logging
from typing import Callable, Iterable, List, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from tourdash.cache.config import CacheConfig, get_cache_config
from tourdash.realtime.events import ChangeEvent, ChangeKind


logger = logging.getLogger(__name__)

Predicate = Callable[[ChangeEvent], bool]

_CLOSED = object()


def for_tables(tables: Iterable[str]) -> Predicate:
    """Predicate accepting events for any of ``tables``."""
    wanted = frozenset(tables)
    return lambda event: event.table in wanted


class ChangeSubscription:
    """
    Cancellable handle on a stream.

    Usage:
        sub = stream.subscribe(for_tables(["leads"]))
        async for event in sub:
            ...
        sub.cancel()
    """

    def __init__(self, stream: "ChangeStream", predicate: Optional[Predicate] = None):
        self._stream = stream
        self._predicate = predicate
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def accepts(self, event: ChangeEvent) -> bool:
        return self._predicate is None or self._predicate(event)

    def offer(self, event: ChangeEvent) -> bool:
        if self.closed or not self.accepts(event):
            return False
        self.queue.put_nowait(event)
        return True

    async def get(self) -> Optional[ChangeEvent]:
        """Next event, or None once cancelled."""
        if self.closed and self.queue.empty():
            return None
        item = await self.queue.get()
        if item is _CLOSED:
            return None
        return item

    def __aiter__(self):
        return self

    async def __anext__(self) -> ChangeEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event

    def cancel(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._stream._remove(self)
        self.queue.put_nowait(_CLOSED)


class ChangeStream:
    """Subscribe-by-predicate stream of change events."""

    def __init__(self):
        self._subscriptions: List[ChangeSubscription] = []
        self.published = 0

    def subscribe(self, predicate: Optional[Predicate] = None) -> ChangeSubscription:
        subscription = ChangeSubscription(self, predicate)
        self._subscriptions.append(subscription)
        return subscription

    def publish(self, event: ChangeEvent) -> int:
        """Deliver to every matching subscriber. Returns delivery count."""
        self.published += 1
        delivered = 0
        for subscription in list(self._subscriptions):
            if subscription.offer(event):
                delivered += 1
        logger.debug(f"Change on {event.table} ({event.kind.value}) delivered to {delivered}")
        return delivered

    def emit(self, table: str, kind: ChangeKind = ChangeKind.UPDATE, payload=None) -> int:
        return self.publish(ChangeEvent(table=table, kind=kind, payload=payload or {}))

    def _remove(self, subscription: ChangeSubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def close(self) -> None:
        for subscription in list(self._subscriptions):
            subscription.cancel()


# =============================================================================
# Redis Transport
# =============================================================================

def change_channel(namespace: str, table: str) -> str:
    return f"{namespace}:changes:{table}"


async def publish_change(
    redis: Redis,
    event: ChangeEvent,
    namespace: Optional[str] = None,
) -> int:
    """Publish a change event on Redis. Returns the receiver count."""
    namespace = namespace or get_cache_config().namespace
    return await redis.publish(change_channel(namespace, event.table), event.to_json())


class RedisChangeBridge:
    """
    Forwards Redis pub/sub change messages into a ``ChangeStream``.

    Malformed messages are logged and skipped; the bridge keeps running.
    """

    def __init__(
        self,
        stream: ChangeStream,
        config: Optional[CacheConfig] = None,
        redis: Optional[Redis] = None,
    ):
        self.stream = stream
        self.config = config or get_cache_config()
        self._redis = redis
        self._owns_client = redis is None
        self._pubsub = None
        self._task: Optional[asyncio.Task] = None
        self.forwarded = 0

    @property
    def pattern(self) -> str:
        return change_channel(self.config.namespace, "*")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        if self._redis is None:
            if not self.config.redis_url:
                raise RuntimeError("REDIS_URL is not configured")
            self._redis = Redis.from_url(self.config.redis_url, decode_responses=True)

        try:
            self._pubsub = self._redis.pubsub()
            await self._pubsub.psubscribe(self.pattern)
        except RedisError as e:
            logger.error(f"Failed to subscribe to {self.pattern}: {e}")
            self._pubsub = None
            if self._owns_client:
                await self._redis.close()
                self._redis = None
            raise

        self._task = asyncio.create_task(self._forward())
        self._task.add_done_callback(self._forward_done)
        logger.info(f"Redis change bridge listening on {self.pattern}")

    def _forward_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Redis change bridge stopped forwarding: {error}")
        else:
            logger.warning(f"Redis subscription on {self.pattern} ended")

    async def _forward(self) -> None:
        async for message in self._pubsub.listen():
            if message.get("type") not in ("message", "pmessage"):
                continue
            try:
                event = ChangeEvent.from_json(message["data"])
            except ValueError as e:
                logger.warning(f"Dropping malformed change message: {e}")
                continue
            self.forwarded += 1
            self.stream.publish(event)

    async def publish(self, event: ChangeEvent) -> int:
        if self._redis is None:
            raise RuntimeError("Bridge not started")
        return await publish_change(self._redis, event, self.config.namespace)

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            # A failed forwarder was already logged by _forward_done
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        if self._pubsub is not None:
            try:
                await self._pubsub.punsubscribe(self.pattern)
                await self._pubsub.close()
            except RedisError as e:
                logger.warning(f"Error closing Redis subscription: {e}")
            self._pubsub = None
        if self._redis is not None and self._owns_client:
            await self._redis.close()
            self._redis = None
        logger.info("Redis change bridge stopped")
