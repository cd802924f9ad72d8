"""Notification collaborator — fire-and-forget delivery to users.

Delivery itself (email, SMS, push, sockets) lives outside this service;
the engine only calls ``notify(user_id, event_type, payload)`` after its
unit of work has committed and never looks at the result.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

ALERTS_UPDATE = "careplan.alerts_update"
TASK_DUE = "careplan.task_due"
PLAN_SIGNED = "careplan.plan_signed"


@runtime_checkable
class Notifier(Protocol):
    def notify(self, user_id: str, event_type: str, payload: dict[str, Any]) -> None:
        ...


class LoggingNotifier:
    """Notifier that only writes a log line; the default when nothing is wired in."""

    def notify(self, user_id: str, event_type: str, payload: dict[str, Any]) -> None:
        logger.info("notify %s -> %s (%s)", event_type, user_id, sorted(payload))


def notify_all(
    notifier: Notifier, user_ids: list[str], event_type: str, payload: dict[str, Any]
) -> None:
    """Best-effort fan-out: one failing recipient does not stop the others."""
    for user_id in dict.fromkeys(user_ids):
        try:
            notifier.notify(user_id, event_type, payload)
        except Exception:
            logger.exception("Notification %s to %s failed", event_type, user_id)
