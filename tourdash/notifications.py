"""
User-facing notification surface.

The data layer never renders anything; it emits ``notify(kind, message)``
and lets the host application decide how to show it.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Union


logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    INFO = "info"
    WARNING = "warning"


class Notifier(ABC):
    """Base notifier. Subclasses implement ``notify``."""

    @abstractmethod
    def notify(self, kind: Union[NotificationKind, str], message: str) -> None:
        """Deliver one notification. Must not raise."""


class LoggingNotifier(Notifier):
    """Default notifier: writes notifications to the log."""

    _LEVELS = {
        NotificationKind.SUCCESS: logging.INFO,
        NotificationKind.INFO: logging.INFO,
        NotificationKind.WARNING: logging.WARNING,
        NotificationKind.ERROR: logging.ERROR,
    }

    def notify(self, kind: Union[NotificationKind, str], message: str) -> None:
        kind = NotificationKind(kind)
        logger.log(self._LEVELS[kind], f"[{kind.value}] {message}")


@dataclass
class Notification:
    kind: NotificationKind
    message: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class RecordingNotifier(Notifier):
    """Keeps the most recent notifications in memory."""

    def __init__(self, limit: int = 100):
        self.limit = limit
        self.notifications: List[Notification] = []

    def notify(self, kind: Union[NotificationKind, str], message: str) -> None:
        self.notifications.append(Notification(NotificationKind(kind), message))
        if len(self.notifications) > self.limit:
            self.notifications = self.notifications[-self.limit:]
        LoggingNotifier().notify(kind, message)

    def of_kind(self, kind: Union[NotificationKind, str]) -> List[Notification]:
        kind = NotificationKind(kind)
        return [n for n in self.notifications if n.kind is kind]
