"""Impact stats: CO2 estimates and gamification points.

Awards are applied with `$inc` on the user documents, never as a
read-modify-write. Each transition is recorded once in the
`impact_ledger` collection before its increments are issued, so a
replayed claim or collection does not pay out twice.

Failures here never undo a listing transition: they are logged and
swallowed by the caller-facing methods.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Dict, Iterable

from pymongo.errors import DuplicateKeyError, PyMongoError

from database import id_filter, utcnow

logger = logging.getLogger(__name__)

CO2_FACTORS = {
    "produce": 2.5,
    "bakery": 2.5,
    "prepared": 2.5,
    "cooked": 2.5,
    "furniture": 20,
    "electronics": 20,
    "clothing": 5,
}
DEFAULT_CO2_FACTOR = 0.5

# quantities in these units are converted to kg / litres first
MILLI_UNITS = ("g", "ml")

CLAIMANT_POINTS = 10
DONOR_POINTS = 50
COLLECTOR_POINTS = 10


def co2_saved(category: str, unit: str, quantity: float) -> float:
    factor = CO2_FACTORS.get(category, DEFAULT_CO2_FACTOR)
    amount = quantity or 1
    if unit in MILLI_UNITS:
        amount = amount / 1000
    return round(amount * factor, 1)


def listing_co2(listing: Dict[str, Any]) -> float:
    return co2_saved(listing.get("category"), listing.get("unit"), listing.get("quantity"))


@dataclass(frozen=True)
class CollectionImpact:
    co2_saved: float
    meals_saved: int


class ImpactAggregator:
    def __init__(self, db) -> None:
        self._users = db["users"]
        self._ledger = db["impact_ledger"]

    def record_claim(self, listing: Dict[str, Any], claimant_id: str) -> float:
        """Credit the claimant and the donor for one claimed listing.

        Returns the CO2 estimate for the listing whether or not the
        increments could be written.
        """
        co2 = listing_co2(listing)
        donor_id = listing.get("donor")
        if not self._enter_ledger("claim", listing, claimant_id, co2):
            return co2

        self._increment(claimant_id, {
            "stats.co2_saved": co2,
            "stats.meals_saved": 1,
            "stats.points": CLAIMANT_POINTS,
        })

        if donor_id:
            donor_deltas = {
                "stats.co2_saved": co2,
                "stats.meals_saved": 1,
                "stats.points": DONOR_POINTS,
            }
            # sold if it still had a price when claimed, donated once it decayed to free
            if (listing.get("current_price") or 0) > 0:
                donor_deltas["stats.items_sold"] = 1
            else:
                donor_deltas["stats.items_donated"] = 1
            self._increment(donor_id, donor_deltas)
        return co2

    def record_collection(self, listings: Iterable[Dict[str, Any]], collector_id: str) -> CollectionImpact:
        total_co2 = 0.0
        total_meals = 0
        credited_co2 = 0.0
        credited = 0
        donor_impacts: Dict[str, Dict[str, float]] = defaultdict(
            lambda: {"stats.co2_saved": 0.0, "stats.meals_saved": 0, "stats.points": 0}
        )

        for listing in listings:
            co2 = listing_co2(listing)
            total_co2 += co2
            total_meals += 1
            if not self._enter_ledger("collect", listing, collector_id, co2):
                continue
            credited_co2 += co2
            credited += 1
            donor_id = listing.get("donor")
            if donor_id:
                impact = donor_impacts[donor_id]
                impact["stats.co2_saved"] += co2
                impact["stats.meals_saved"] += 1
                impact["stats.points"] += DONOR_POINTS

        if credited:
            self._increment(collector_id, {
                "stats.co2_saved": round(credited_co2, 1),
                "stats.meals_saved": credited,
                "stats.points": credited * COLLECTOR_POINTS,
                "stats.families_helped": credited,
            })
        for donor_id, deltas in donor_impacts.items():
            deltas["stats.co2_saved"] = round(deltas["stats.co2_saved"], 1)
            self._increment(donor_id, deltas)

        return CollectionImpact(co2_saved=round(total_co2, 1), meals_saved=total_meals)

    def _enter_ledger(self, kind: str, listing: Dict[str, Any], actor_id: str, co2: float) -> bool:
        """Record the transition; False when it was already applied or cannot be recorded."""
        entry = {
            "_id": f"{kind}:{listing['_id']}",
            "kind": kind,
            "listing_id": str(listing["_id"]),
            "actor": actor_id,
            "donor": listing.get("donor"),
            "co2_saved": co2,
            "recorded_at": utcnow(),
        }
        try:
            self._ledger.insert_one(entry)
        except DuplicateKeyError:
            logger.warning("Impact for %s already recorded, skipping", entry["_id"])
            return False
        except PyMongoError:
            logger.exception("Could not record impact for %s", entry["_id"])
            return False
        return True

    def _increment(self, user_id: str, deltas: Dict[str, Any]) -> bool:
        try:
            self._users.update_one(id_filter(user_id), {"$inc": deltas})
        except PyMongoError:
            logger.exception("Error updating stats for user %s", user_id)
            return False
        return True
