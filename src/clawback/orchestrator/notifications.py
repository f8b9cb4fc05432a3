"""Notification persistence and in-process fan-out.

Delivery is fire-and-forget: a failing subscriber is logged and dropped from
that broadcast, never surfaced to the code that raised the notification.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from clawback.orchestrator.models import Notification, NotificationType
from clawback.orchestrator.storage import NotificationStore

logger = logging.getLogger(__name__)

Subscriber = Callable[[Notification], None]


class NotificationService:
    def __init__(self, store: NotificationStore | None = None) -> None:
        self._store = store
        self._subscribers: dict[str, Subscriber] = {}
        self._lock = threading.Lock()

    def subscribe(self, key: str, subscriber: Subscriber) -> None:
        with self._lock:
            self._subscribers[key] = subscriber

    def notify(
        self,
        *,
        type: NotificationType,
        title: str,
        message: str,
        run_id: str | None = None,
        owner_id: str | None = None,
    ) -> Notification:
        notification = Notification(
            type=type, title=title, message=message, run_id=run_id, owner_id=owner_id
        )
        if self._store is not None:
            try:
                self._store.insert(notification)
            except OSError:
                logger.exception("Failed to persist notification", extra={"title": title})
        self._broadcast(notification)
        return notification

    def _broadcast(self, notification: Notification) -> None:
        with self._lock:
            subscribers = list(self._subscribers.items())
        for key, subscriber in subscribers:
            try:
                subscriber(notification)
            except Exception:
                logger.exception("Notification subscriber failed", extra={"subscriber": key})
