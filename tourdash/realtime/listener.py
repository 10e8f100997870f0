"""
Change Notification Listener

Turns bursts of change events into a single refresh trigger per consumer.

Each subscription owns its own stream subscription, consumer task and
debounce window, so two open dashboards never share timers. ``on_burst``
receives the set of tables touched during the burst.
"""

import asyncio
import logging
from typing import Any, Callable, FrozenSet, Iterable, List, Optional, Set

from tourdash.cache.config import CacheConfig, get_cache_config
from tourdash.realtime.debounce import DebounceState, Debouncer
from tourdash.realtime.stream import ChangeStream, ChangeSubscription, for_tables


logger = logging.getLogger(__name__)

BurstCallback = Callable[[FrozenSet[str]], Any]


class ListenerSubscription:
    """Handle returned by ``ChangeNotificationListener.subscribe``."""

    def __init__(
        self,
        listener: "ChangeNotificationListener",
        tables: FrozenSet[str],
        on_burst: BurstCallback,
        window: float,
    ):
        self.tables = tables
        self._listener = listener
        self._on_burst = on_burst
        self._touched: Set[str] = set()
        self._debouncer = Debouncer(window, self._fire, name=f"listener[{','.join(sorted(tables))}]")
        self._subscription: ChangeSubscription = listener.stream.subscribe(for_tables(tables))
        self._consumer = asyncio.create_task(self._consume())
        self.events_seen = 0

    @property
    def state(self) -> DebounceState:
        return self._debouncer.state

    @property
    def bursts(self) -> int:
        return self._debouncer.fire_count

    @property
    def active(self) -> bool:
        return self._debouncer.state is not DebounceState.CANCELLED

    async def _consume(self) -> None:
        async for event in self._subscription:
            self.events_seen += 1
            self._touched.add(event.table)
            self._debouncer.trigger()

    def _fire(self):
        touched = frozenset(self._touched)
        self._touched.clear()
        logger.debug(f"Change burst on {sorted(touched)}")
        return self._on_burst(touched)

    def cancel(self) -> None:
        """Stop listening. Idempotent; drops any pending burst."""
        if not self.active:
            return
        self._debouncer.cancel()
        self._subscription.cancel()
        self._consumer.cancel()
        self._listener._forget(self)
        logger.debug(f"Listener for {sorted(self.tables)} cancelled")

    async def wait(self) -> None:
        """Wait for a burst callback that is still running."""
        await self._debouncer.wait()


class ChangeNotificationListener:
    """
    Usage:
        listener = ChangeNotificationListener(stream)
        sub = listener.subscribe(["leads", "projects"], on_burst)
        ...
        sub.cancel()
    """

    def __init__(
        self,
        stream: ChangeStream,
        window: Optional[float] = None,
        config: Optional[CacheConfig] = None,
    ):
        self.stream = stream
        config = config or get_cache_config()
        self.window = config.debounce_seconds if window is None else window
        self._subscriptions: List[ListenerSubscription] = []

    def subscribe(
        self,
        tables: Iterable[str],
        on_burst: BurstCallback,
        window: Optional[float] = None,
    ) -> ListenerSubscription:
        tables = frozenset(tables)
        if not tables:
            raise ValueError("At least one table is required")
        subscription = ListenerSubscription(
            self,
            tables,
            on_burst,
            self.window if window is None else window,
        )
        self._subscriptions.append(subscription)
        return subscription

    def _forget(self, subscription: ListenerSubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    def close(self) -> None:
        for subscription in list(self._subscriptions):
            subscription.cancel()
