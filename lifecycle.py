"""Listing lifecycle: create, claim, collect.

    active -> claimed -> collected
    active -> collected          (bulk collection by an organization)
    active -> expired            (written by the price decay tick)

Every transition is one conditional MongoDB write whose filter requires
`status == "active"`. That precondition is the only concurrency guard:
when it fails someone else got there first and the request is answered
with InvalidState rather than retried.

After a transition is committed, stats, mission recomputation and
broadcasts are side channels. Their failures are logged and never undo
the transition.
"""

import logging
import random
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from pydantic import ValidationError as SchemaValidationError
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import PyMongoError

from clusters import ClusterEngine
from database import as_naive_utc, object_id, serialize, utcnow
from errors import EmptyResult, InvalidState, NotFound, PersistenceError, ValidationError
from events import LISTING_CLAIMED, LISTINGS_COLLECTED, NEW_LISTING
from impact import ImpactAggregator
from schemas import Listing

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("name", "quantity", "unit", "location")
DEFAULT_EXPIRY_WINDOW_HOURS = 4


def generate_claim_code() -> str:
    return str(random.randint(1000, 9999))


@dataclass(frozen=True)
class ClaimResult:
    listing: Dict[str, Any]
    otp: str
    co2_saved: float


@dataclass(frozen=True)
class CollectResult:
    collected_ids: List[str]
    requested: int
    co2_saved: float
    meals_saved: int

    @property
    def count(self) -> int:
        return len(self.collected_ids)


class ListingLifecycle:
    def __init__(
        self,
        db,
        broadcaster,
        clock: Callable[[], datetime] = utcnow,
        code_factory: Callable[[], str] = generate_claim_code,
        impact: Optional[ImpactAggregator] = None,
        clusters: Optional[ClusterEngine] = None,
    ) -> None:
        self._listings = db["listings"]
        self.broadcaster = broadcaster
        self.clock = clock
        self.code_factory = code_factory
        self.impact = impact or ImpactAggregator(db)
        self.clusters = clusters or ClusterEngine(db)

    # ------------------ Create ------------------

    def create(self, donor_id: str, attributes: Dict[str, Any]) -> Dict[str, Any]:
        missing = [name for name in REQUIRED_FIELDS if attributes.get(name) in (None, "", {})]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}", fields=missing)

        now = self.clock()
        doc = self._build_listing(donor_id, attributes, now)
        try:
            result = self._listings.insert_one(doc)
        except PyMongoError as exc:
            logger.exception("Failed to create listing for donor %s", donor_id)
            raise PersistenceError("Could not save listing") from exc
        doc["_id"] = result.inserted_id

        listing = serialize(doc)
        logger.info("Listing %s created by donor %s", listing["id"], donor_id)
        self._publish(NEW_LISTING, {"listing": listing})
        self._publish_missions()
        return listing

    def _build_listing(self, donor_id: str, attributes: Dict[str, Any], now: datetime) -> Dict[str, Any]:
        try:
            quantity = float(attributes["quantity"])
            window_hours = float(attributes.get("expiry_window_hours") or DEFAULT_EXPIRY_WINDOW_HOURS)
            price_per_unit = attributes.get("price_per_unit")
            initial_price = attributes.get("initial_price")
            if initial_price is None:
                initial_price = float(price_per_unit or 0) * quantity
            if price_per_unit is None:
                price_per_unit = float(initial_price) / quantity if quantity else 0

            free_at = attributes.get("free_at")
            if free_at is None:
                free_at = now + timedelta(hours=window_hours)
            elif isinstance(free_at, datetime):
                free_at = as_naive_utc(free_at)

            listing = Listing(
                donor=donor_id,
                name=attributes["name"],
                category=attributes.get("category") or "other",
                unit=attributes["unit"],
                quantity=quantity,
                price_per_unit=price_per_unit,
                initial_price=initial_price,
                current_price=initial_price,
                expiry_window_hours=window_hours,
                free_at=free_at,
                created_at=now,
                location=attributes["location"],
                description=attributes.get("description"),
                image_url=attributes.get("image_url") or "",
            )
        except (TypeError, ValueError) as exc:
            # pydantic's ValidationError is a ValueError as well
            fields = []
            if isinstance(exc, SchemaValidationError):
                fields = [".".join(str(part) for part in err["loc"]) for err in exc.errors()]
            raise ValidationError(f"Invalid listing: {exc}", fields=fields) from exc

        if as_naive_utc(listing.free_at) <= now:
            raise ValidationError("free_at must be in the future", fields=["free_at"])

        doc = listing.model_dump()
        doc["free_at"] = as_naive_utc(listing.free_at)
        return doc

    # ------------------ Claim ------------------

    def claim(self, listing_id: str, actor_id: str) -> ClaimResult:
        oid = object_id(listing_id)
        if oid is None:
            raise NotFound("Listing not found")

        otp = self.code_factory()
        now = self.clock()
        try:
            # past free_at but not yet swept by the decay tick counts as expired
            doc = self._listings.find_one_and_update(
                {"_id": oid, "status": "active", "free_at": {"$gt": now}},
                {"$set": {
                    "status": "claimed",
                    "claimed_by": actor_id,
                    "claimed_at": now,
                    "claim_code": otp,
                }},
                return_document=ReturnDocument.AFTER,
            )
            if doc is None:
                existing = self._listings.find_one({"_id": oid}, {"status": 1})
        except PyMongoError as exc:
            logger.exception("Failed to claim listing %s for %s", listing_id, actor_id)
            raise PersistenceError("Could not claim listing") from exc

        if doc is None:
            if existing is None:
                raise NotFound("Listing not found")
            status = existing["status"]
            if status == "active":
                logger.warning("Claim on listing %s by %s rejected: past free_at", listing_id, actor_id)
                raise InvalidState("Listing expired", status="expired")
            logger.warning("Claim on listing %s by %s lost: status is %s", listing_id, actor_id, status)
            raise InvalidState(f"Listing already {status} or not available", status=status)

        logger.info("Listing %s claimed by %s", listing_id, actor_id)
        co2 = self.impact.record_claim(doc, actor_id)
        self._publish(LISTING_CLAIMED, {
            "id": str(doc["_id"]),
            "claimedBy": actor_id,
            "donor": doc.get("donor"),
        })
        self._publish_missions()
        return ClaimResult(listing=serialize(doc), otp=otp, co2_saved=co2)

    # ------------------ Collect ------------------

    def collect(self, listing_ids: Sequence[str], actor_id: str) -> CollectResult:
        if not isinstance(listing_ids, (list, tuple)):
            raise ValidationError("Invalid listing IDs", fields=["listing_ids"])

        oids = [oid for oid in (object_id(i) for i in listing_ids) if oid is not None]
        batch = uuid.uuid4().hex
        try:
            candidates = [doc["_id"] for doc in self._listings.find({"_id": {"$in": oids}, "status": "active"}, {"_id": 1})]
            if candidates:
                self._listings.update_many(
                    {"_id": {"$in": candidates}, "status": "active"},
                    {"$set": {
                        "status": "collected",
                        "claimed_by": actor_id,
                        "collected_at": self.clock(),
                        "collection_batch": batch,
                    }},
                )
                # only documents carrying this batch were collected by this request
                collected = list(self._listings.find({"collection_batch": batch}))
            else:
                collected = []
        except PyMongoError as exc:
            logger.exception("Failed to collect listings for %s", actor_id)
            raise PersistenceError("Could not collect listings") from exc

        if not collected:
            raise EmptyResult("No active listings found to collect")

        collected_ids = [str(doc["_id"]) for doc in collected]
        logger.info("%s collected %d of %d requested listings", actor_id, len(collected_ids), len(listing_ids))
        impact = self.impact.record_collection(collected, actor_id)
        self._publish(LISTINGS_COLLECTED, {"ids": collected_ids, "collectedBy": actor_id})
        self._publish_missions()
        return CollectResult(
            collected_ids=collected_ids,
            requested=len(listing_ids),
            co2_saved=impact.co2_saved,
            meals_saved=impact.meals_saved,
        )

    # ------------------ Queries ------------------

    def get(self, listing_id: str) -> Dict[str, Any]:
        oid = object_id(listing_id)
        doc = self._listings.find_one({"_id": oid}) if oid is not None else None
        if doc is None:
            raise NotFound("Listing not found")
        return serialize(doc)

    def active_listings(self, category: Optional[str] = None) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {"status": "active", "free_at": {"$gt": self.clock()}}
        if category and category != "all":
            query["category"] = category
        return self._find(query)

    def listings_for_donor(self, donor_id: str) -> List[Dict[str, Any]]:
        return self._find({"donor": donor_id})

    def listings_for_claimant(self, user_id: str) -> List[Dict[str, Any]]:
        return self._find({"claimed_by": user_id, "status": {"$in": ["claimed", "collected"]}})

    def _find(self, query: Dict[str, Any]) -> List[Dict[str, Any]]:
        cursor = self._listings.find(query).sort("created_at", DESCENDING)
        return [serialize(doc) for doc in cursor]

    # ------------------ Side channels ------------------

    def _publish(self, event: str, payload: Dict[str, Any]) -> None:
        self.broadcaster.publish(event, payload)

    def _publish_missions(self) -> None:
        try:
            self.clusters.publish(self.broadcaster, self.clock())
        except PyMongoError:
            logger.exception("Could not recompute missions")
