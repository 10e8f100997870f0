"""
Real-time change propagation.

- ChangeStream: queue-backed fan-out of remote change events
- RedisChangeBridge: cross-process transport over Redis pub/sub
- ChangeNotificationListener: debounced burst triggers per consumer
"""

from tourdash.realtime.events import (
    ANALYTICS_TABLES,
    DASHBOARD_TABLES,
    ChangeEvent,
    ChangeKind,
)
from tourdash.realtime.stream import (
    ChangeStream,
    ChangeSubscription,
    RedisChangeBridge,
    for_tables,
    publish_change,
)
from tourdash.realtime.debounce import DebounceState, Debouncer
from tourdash.realtime.listener import ChangeNotificationListener, ListenerSubscription

__all__ = [
    "ANALYTICS_TABLES",
    "DASHBOARD_TABLES",
    "ChangeEvent",
    "ChangeKind",
    "ChangeStream",
    "ChangeSubscription",
    "RedisChangeBridge",
    "for_tables",
    "publish_change",
    "DebounceState",
    "Debouncer",
    "ChangeNotificationListener",
    "ListenerSubscription",
]
