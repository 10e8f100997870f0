"""
Tests for the notification surface.
"""

import pytest

from tourdash.notifications import (
    LoggingNotifier,
    NotificationKind,
    Notifier,
    RecordingNotifier,
)


class TestNotifier:
    """Test the notifier base class and its implementations."""

    def test_base_class_is_abstract(self):
        with pytest.raises(TypeError):
            Notifier()

    def test_subclass_without_notify_is_rejected(self):
        class Silent(Notifier):
            pass

        with pytest.raises(TypeError):
            Silent()

    def test_logging_notifier_logs_at_kind_level(self, caplog):
        with caplog.at_level("WARNING", logger="tourdash.notifications"):
            LoggingNotifier().notify("warning", "Quota almost reached")
        assert "[warning] Quota almost reached" in caplog.text

    def test_recording_notifier_keeps_recent(self):
        notifier = RecordingNotifier(limit=2)
        notifier.notify(NotificationKind.INFO, "one")
        notifier.notify(NotificationKind.ERROR, "two")
        notifier.notify("success", "three")
        assert [n.message for n in notifier.notifications] == ["two", "three"]
        assert [n.message for n in notifier.of_kind("error")] == ["two"]
