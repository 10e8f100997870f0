"""
Change events emitted by the remote store.

Events arrive asynchronously and unordered relative to in-flight fetches.
Consumers only rely on "refetch after the last event of a burst".
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet


class ChangeKind(str, Enum):
    """Row-level mutation kinds."""
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


# Tables a creator dashboard depends on
DASHBOARD_TABLES: FrozenSet[str] = frozenset({
    "creators",
    "end_clients",
    "projects",
    "chatbots",
    "analytics",
    "imported_analytics",
    "requests",
    "support_requests",
    "chatbot_requests",
    "leads",
    "assets",
})

ANALYTICS_TABLES: FrozenSet[str] = frozenset({"analytics", "imported_analytics"})

# Remote table -> dashboard slice it feeds
TABLE_TO_RESOURCE: Dict[str, str] = {
    "end_clients": "clients",
}


@dataclass(frozen=True)
class ChangeEvent:
    """A single row mutation on a remote table."""
    table: str
    kind: ChangeKind
    payload: Dict[str, Any] = field(default_factory=dict)
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def resource(self) -> str:
        return TABLE_TO_RESOURCE.get(self.table, self.table)

    def to_json(self) -> str:
        return json.dumps({
            "table": self.table,
            "kind": self.kind.value,
            "payload": self.payload,
        }, default=str)

    @classmethod
    def from_json(cls, raw) -> "ChangeEvent":
        """Parse a transport message. Raises ValueError on malformed input."""
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        data = json.loads(raw)
        try:
            return cls(
                table=data["table"],
                kind=ChangeKind(str(data["kind"]).lower()),
                payload=data.get("payload") or {},
            )
        except (KeyError, TypeError) as e:
            raise ValueError(f"Malformed change event: {e}") from e
