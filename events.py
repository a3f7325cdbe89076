"""Broadcast boundary: event names and an in-process fan-out sink.

Subscribers are plain callables taking (event, payload). The WebSocket
endpoint in main.py subscribes one per connected client. Delivery is
best effort: a failing subscriber is logged and skipped.
"""

import logging
import threading
from typing import Any, Callable, List

logger = logging.getLogger(__name__)

PRICE_UPDATE = "priceUpdate"
MISSION_UPDATE = "missionUpdate"
LISTING_CLAIMED = "listingClaimed"
LISTINGS_COLLECTED = "listingsCollected"
NEW_LISTING = "newListing"
LISTING_EXPIRED = "listingExpired"

Subscriber = Callable[[str, Any], None]


class Broadcaster:
    def __init__(self) -> None:
        self._subscribers: List[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a subscriber and return a function that removes it."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, event: str, payload: Any) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event, payload)
            except Exception:
                logger.exception("Subscriber failed while handling %s", event)
