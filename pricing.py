"""Price decay.

A listing's price falls linearly from its initial price at creation to
zero at `free_at`. PriceDecayScheduler applies the model to every active
listing on a fixed interval from a single background thread.

Writes are conditional on `status == "active"`: a listing claimed
between the read and the write keeps its claimed state and its price.
Once a listing's window has fully elapsed the same write moves it to
`expired`.
"""

import logging
import math
import os
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from pymongo.errors import PyMongoError

from clusters import ClusterEngine
from database import utcnow
from events import LISTING_EXPIRED, PRICE_UPDATE

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = float(os.getenv("PRICE_DECAY_INTERVAL_SECONDS", 60))


@dataclass(frozen=True)
class DecayedPrice:
    price_per_unit: float
    current_price: float
    expired: bool


@dataclass(frozen=True)
class TickReport:
    scanned: int = 0
    updated: int = 0
    expired: int = 0
    failed: int = 0


def decayed_price(initial_price: float, quantity: float, created_at: datetime, free_at: datetime, now: datetime) -> DecayedPrice:
    window = (free_at - created_at).total_seconds()
    elapsed = max(0.0, (now - created_at).total_seconds())

    if elapsed >= window:
        return DecayedPrice(price_per_unit=0, current_price=0, expired=True)

    decay_factor = 1 - elapsed / window
    price_per_unit = max(0, math.floor((initial_price / quantity) * decay_factor))
    return DecayedPrice(price_per_unit=price_per_unit, current_price=price_per_unit * quantity, expired=False)


class PriceDecayScheduler:
    def __init__(
        self,
        db,
        broadcaster,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._listings = db["listings"]
        self._clusters = ClusterEngine(db)
        self._broadcaster = broadcaster
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._lock:
            if self.running:
                logger.warning("Price decay scheduler already running")
                return
            # a thread left over from a timed-out stop keeps its own, already set, event
            self._stop = threading.Event()
            self._thread = threading.Thread(target=self._run, args=(self._stop,), name="price-decay", daemon=True)
            self._thread.start()
        logger.info("Price decay scheduler started (every %ss)", self.interval_seconds)

    def stop(self, timeout: Optional[float] = None) -> None:
        with self._lock:
            thread = self._thread
            self._stop.set()
            self._thread = None
        if thread is not None:
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("Price decay thread still finishing its tick after %ss", timeout)
            else:
                logger.info("Price decay scheduler stopped")

    def _run(self, stop: threading.Event) -> None:
        while not stop.wait(self.interval_seconds):
            try:
                self.tick()
            except Exception:
                logger.exception("Price decay tick failed")

    def tick(self, now: Optional[datetime] = None) -> TickReport:
        now = now or self._clock()
        scanned = updated = expired = failed = 0

        for listing in self._listings.find({"status": "active"}):
            scanned += 1
            try:
                outcome = self._apply(listing, now)
            except PyMongoError:
                logger.exception("Failed to persist decayed price for listing %s", listing.get("_id"))
                failed += 1
                continue
            except (KeyError, TypeError, ValueError):
                logger.exception("Listing %s is malformed, skipping decay", listing.get("_id"))
                failed += 1
                continue
            if outcome == "updated":
                updated += 1
            elif outcome == "expired":
                expired += 1

        if expired:
            try:
                self._clusters.publish(self._broadcaster, now)
            except PyMongoError:
                logger.exception("Could not recompute missions after expiry")

        if updated or expired or failed:
            logger.info(
                "Price decay tick: %d scanned, %d repriced, %d expired, %d failed",
                scanned, updated, expired, failed,
            )
        return TickReport(scanned=scanned, updated=updated, expired=expired, failed=failed)

    def _apply(self, listing: Dict[str, Any], now: datetime) -> Optional[str]:
        quantity = listing.get("quantity") or 0
        if quantity <= 0:
            logger.warning("Listing %s has no quantity, skipping decay", listing["_id"])
            return None

        price = decayed_price(
            listing.get("initial_price") or 0,
            quantity,
            listing["created_at"],
            listing["free_at"],
            now,
        )
        changes: Dict[str, Any] = {}
        price_changed = (
            price.current_price != listing.get("current_price")
            or price.price_per_unit != listing.get("price_per_unit")
        )
        if price_changed:
            changes["price_per_unit"] = price.price_per_unit
            changes["current_price"] = price.current_price
        if price.expired:
            changes["status"] = "expired"
            changes["expired_at"] = now
        if not changes:
            return None

        result = self._listings.update_one({"_id": listing["_id"], "status": "active"}, {"$set": changes})
        if result.modified_count == 0:
            # claimed or collected since it was read
            return None

        listing_id = str(listing["_id"])
        if price_changed:
            self._broadcaster.publish(PRICE_UPDATE, {
                "id": listing_id,
                "newPrice": price.current_price,
                "newUnitPrice": price.price_per_unit,
            })
        if price.expired:
            self._broadcaster.publish(LISTING_EXPIRED, {"id": listing_id})
            return "expired"
        return "updated"
