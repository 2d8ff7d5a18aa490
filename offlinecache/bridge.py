"""Message passing between the caching worker and foreground clients.

The worker and its clients share no state. Outbound update notifications
are copied into one queue per subscriber; inbound client messages (such as
SKIP_WAITING) go into a single inbox the worker drains on its own thread.
Delivery is best-effort: nothing is kept for clients that are not listening.
"""

import logging
import queue
import threading
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .models import UpdateNotification

logger = logging.getLogger(__name__)

# Inbound message type asking the worker to activate a waiting generation.
SKIP_WAITING = "SKIP_WAITING"


class DeliveryStatus(Enum):
    """Outcome of an update notification."""

    DELIVERED = "delivered"
    NO_FOREGROUND_LISTENER = "no-foreground-listener"


class Subscription:
    """A foreground listener's view of update notifications."""

    def __init__(self, bridge: "ClientBridge") -> None:
        self._bridge = bridge
        self._queue: queue.Queue[UpdateNotification] = queue.Queue()
        self._seen: set[str] = set()
        self._lock = threading.Lock()
        self._closed = False

    def _offer(self, notification: UpdateNotification) -> bool:
        """Queue a notification unless this subscription already saw its version."""
        with self._lock:
            if self._closed or notification.version_id in self._seen:
                return False
            self._seen.add(notification.version_id)
        self._queue.put(notification)
        return True

    def receive(self, timeout: float | None = None) -> UpdateNotification | None:
        """Wait for the next notification.

        Returns:
            The notification, or None if none arrived within timeout.
        """
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        with self._lock:
            self._closed = True
        self._bridge._unsubscribe(self)

    @property
    def closed(self) -> bool:
        return self._closed

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class ClientBridge:
    """Delivers update notifications out and client messages in."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: list[Subscription] = []
        self._inbox: queue.Queue[dict[str, Any]] = queue.Queue()

    def subscribe(self) -> Subscription:
        """Register a foreground listener."""
        subscription = Subscription(self)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    @property
    def listener_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def notify(self, version_id: str) -> DeliveryStatus:
        """Tell every current listener that version_id is now current."""
        notification = UpdateNotification(version_id=version_id, activated_at=datetime.now(UTC))
        with self._lock:
            subscriptions = list(self._subscriptions)

        delivered = sum(1 for subscription in subscriptions if subscription._offer(notification))
        if delivered == 0:
            logger.debug("No foreground listener for update %s", version_id)
            return DeliveryStatus.NO_FOREGROUND_LISTENER

        logger.info("Update %s delivered to %d listener(s)", version_id, delivered)
        return DeliveryStatus.DELIVERED

    def post_message(self, message: dict[str, Any]) -> None:
        """Send a message from a foreground client to the worker."""
        self._inbox.put(message)

    def next_message(self, timeout: float | None = None) -> dict[str, Any] | None:
        """Take the next client message, waiting up to timeout seconds."""
        try:
            return self._inbox.get(timeout=timeout)
        except queue.Empty:
            return None
