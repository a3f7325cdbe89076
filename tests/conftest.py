"""Shared fixtures: an in-memory MongoDB per test, a broadcaster with a
recording subscriber, and a controllable clock."""

import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Tuple

import mongomock
import pytest
from bson import ObjectId

from events import Broadcaster

NOW = datetime(2026, 10, 19, 12, 0, 0)


class Clock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class EventRecorder:
    def __init__(self) -> None:
        self.events: List[Tuple[str, Any]] = []

    def __call__(self, event: str, payload: Any) -> None:
        self.events.append((event, payload))

    def named(self, event: str) -> List[Any]:
        return [payload for name, payload in self.events if name == event]


@pytest.fixture
def db():
    client = mongomock.MongoClient()
    return client[f"marketplace_{uuid.uuid4().hex}"]


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def broadcaster() -> Broadcaster:
    return Broadcaster()


@pytest.fixture
def recorder(broadcaster: Broadcaster) -> EventRecorder:
    rec = EventRecorder()
    broadcaster.subscribe(rec)
    return rec


def insert_listing(db, **overrides) -> str:
    """Insert a listing document directly, bypassing the lifecycle."""
    created_at = overrides.pop("created_at", NOW - timedelta(hours=1))
    doc: Dict[str, Any] = {
        "_id": ObjectId(),
        "donor": "donor-1",
        "name": "Bread",
        "category": "bakery",
        "unit": "items",
        "quantity": 10,
        "price_per_unit": 10,
        "initial_price": 100,
        "current_price": 100,
        "expiry_window_hours": 4,
        "created_at": created_at,
        "free_at": created_at + timedelta(hours=4),
        "location": {"lat": 12.9716, "lng": 77.5946, "address": "MG Road"},
        "image_url": "",
        "status": "active",
        "claimed_by": None,
        "claim_code": None,
        "claimed_at": None,
    }
    doc.update(overrides)
    db["listings"].insert_one(doc)
    return str(doc["_id"])


def insert_user(db, user_id: str, role: str = "consumer") -> str:
    db["users"].insert_one({
        "_id": user_id,
        "name": user_id,
        "email": f"{user_id}@example.com",
        "role": role,
        "stats": {
            "co2_saved": 0,
            "meals_saved": 0,
            "points": 0,
            "items_sold": 0,
            "items_donated": 0,
            "families_helped": 0,
        },
    })
    return user_id


def stats_of(db, user_id: str) -> Dict[str, Any]:
    return db["users"].find_one({"_id": user_id})["stats"]
