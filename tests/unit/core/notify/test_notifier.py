"""Tests for the notification collaborator."""

from __future__ import annotations

import logging

from conftest import RecordingNotifier

from careflow.core.notify.notifier import (
    ALERTS_UPDATE,
    LoggingNotifier,
    Notifier,
    notify_all,
)


class TestNotifyAll:
    def test_fans_out_once_per_user(self):
        notifier = RecordingNotifier()
        notify_all(notifier, ["dr-a", "dr-b", "dr-a"], ALERTS_UPDATE, {"alert_id": "a1"})
        assert notifier.recipients(ALERTS_UPDATE) == ["dr-a", "dr-b"]

    def test_failing_recipient_does_not_stop_others(self):
        class _Flaky(RecordingNotifier):
            def notify(self, user_id, event_type, payload):
                if user_id == "dr-a":
                    raise ConnectionError("socket closed")
                super().notify(user_id, event_type, payload)

        notifier = _Flaky()
        notify_all(notifier, ["dr-a", "dr-b"], ALERTS_UPDATE, {})
        assert notifier.recipients(ALERTS_UPDATE) == ["dr-b"]

    def test_empty_recipients(self):
        notifier = RecordingNotifier()
        notify_all(notifier, [], ALERTS_UPDATE, {})
        assert notifier.sent == []


class TestLoggingNotifier:
    def test_logs_payload_keys_only(self, caplog):
        with caplog.at_level(logging.INFO, logger="careflow.core.notify.notifier"):
            LoggingNotifier().notify("p1", ALERTS_UPDATE, {"alert_id": "secret-id"})
        assert ALERTS_UPDATE in caplog.text
        assert "secret-id" not in caplog.text

    def test_satisfies_protocol(self):
        assert isinstance(LoggingNotifier(), Notifier)
