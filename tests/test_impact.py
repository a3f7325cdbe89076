"""Tests for CO2 estimates and the stats increments applied on claim and
collection."""

import pytest
from bson import ObjectId
from pymongo.errors import PyMongoError

from conftest import insert_user, stats_of
from impact import ImpactAggregator, co2_saved


@pytest.mark.parametrize(
    "category, unit, quantity, expected",
    [
        ("produce", "kg", 4, 10.0),
        ("cooked", "items", 2, 5.0),
        ("produce", "g", 2000, 5.0),
        ("packaged", "ml", 3000, 1.5),
        ("furniture", "items", 2, 40.0),
        ("electronics", "items", 1, 20.0),
        ("clothing", "bags", 3, 15.0),
        ("other", "items", 3, 1.5),
        ("medical", "boxes", 1, 0.5),
    ],
)
def test_co2_saved(category, unit, quantity, expected) -> None:
    assert co2_saved(category, unit, quantity) == expected


def _listing(donor: str = "donor-1", **overrides) -> dict:
    doc = {
        "_id": ObjectId(),
        "donor": donor,
        "category": "produce",
        "unit": "kg",
        "quantity": 4,
        "current_price": 20,
    }
    doc.update(overrides)
    return doc


class TestRecordClaim:
    def test_claim_credits_claimant_and_donor(self, db) -> None:
        insert_user(db, "donor-1", role="donor")
        insert_user(db, "consumer-1")

        co2 = ImpactAggregator(db).record_claim(_listing(), "consumer-1")

        assert co2 == 10.0
        claimant = stats_of(db, "consumer-1")
        assert claimant["co2_saved"] == 10.0
        assert claimant["points"] == 10
        assert claimant["meals_saved"] == 1
        donor = stats_of(db, "donor-1")
        assert donor["co2_saved"] == 10.0
        assert donor["points"] == 50
        assert donor["meals_saved"] == 1
        assert donor["items_sold"] == 1
        assert donor["items_donated"] == 0

    def test_free_claim_counts_as_donation(self, db) -> None:
        insert_user(db, "donor-1", role="donor")
        insert_user(db, "consumer-1")

        ImpactAggregator(db).record_claim(_listing(current_price=0), "consumer-1")

        donor = stats_of(db, "donor-1")
        assert donor["items_donated"] == 1
        assert donor["items_sold"] == 0

    def test_replayed_claim_is_not_paid_twice(self, db) -> None:
        insert_user(db, "donor-1", role="donor")
        insert_user(db, "consumer-1")
        aggregator = ImpactAggregator(db)
        listing = _listing()

        aggregator.record_claim(listing, "consumer-1")
        aggregator.record_claim(listing, "consumer-1")

        assert stats_of(db, "consumer-1")["points"] == 10
        assert stats_of(db, "donor-1")["points"] == 50

    def test_store_failure_is_swallowed(self, db, monkeypatch) -> None:
        insert_user(db, "consumer-1")
        aggregator = ImpactAggregator(db)

        def fail(*args, **kwargs):
            raise PyMongoError("users unavailable")

        monkeypatch.setattr(aggregator._users, "update_one", fail)

        assert aggregator.record_claim(_listing(), "consumer-1") == 10.0
        assert stats_of(db, "consumer-1")["points"] == 0


class TestRecordCollection:
    def test_collection_aggregates_per_donor(self, db) -> None:
        insert_user(db, "donor-1", role="donor")
        insert_user(db, "donor-2", role="donor")
        insert_user(db, "org-1", role="organization")
        listings = [
            _listing("donor-1"),
            _listing("donor-1", category="clothing", unit="bags", quantity=2),
            _listing("donor-2", category="other", unit="items", quantity=3),
        ]

        impact = ImpactAggregator(db).record_collection(listings, "org-1")

        assert impact.co2_saved == 21.5
        assert impact.meals_saved == 3
        collector = stats_of(db, "org-1")
        assert collector["co2_saved"] == 21.5
        assert collector["points"] == 30
        assert collector["families_helped"] == 3
        assert collector["meals_saved"] == 3
        first = stats_of(db, "donor-1")
        assert first["co2_saved"] == 20.0
        assert first["points"] == 100
        assert first["meals_saved"] == 2
        second = stats_of(db, "donor-2")
        assert second["co2_saved"] == 1.5
        assert second["points"] == 50

    def test_already_recorded_listing_is_skipped(self, db) -> None:
        insert_user(db, "donor-1", role="donor")
        insert_user(db, "org-1", role="organization")
        aggregator = ImpactAggregator(db)
        listing = _listing()

        aggregator.record_collection([listing], "org-1")
        aggregator.record_collection([listing], "org-1")

        assert stats_of(db, "org-1")["families_helped"] == 1
        assert stats_of(db, "donor-1")["points"] == 50

    def test_stats_only_grow(self, db) -> None:
        insert_user(db, "donor-1", role="donor")
        insert_user(db, "org-1", role="organization")
        aggregator = ImpactAggregator(db)
        before = stats_of(db, "org-1")

        aggregator.record_collection([_listing(), _listing()], "org-1")

        after = stats_of(db, "org-1")
        assert all(after[key] >= before[key] for key in before)
