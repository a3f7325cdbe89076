"""
Database Schemas for the surplus rescue marketplace

Each Pydantic model below maps to a MongoDB collection (listings, users).
We use these for validation before documents are written through the
services and database.py helpers. MissionCluster is derived data and is
never persisted.
"""

from pydantic import BaseModel, Field, EmailStr
from typing import Optional, List, Literal, Dict, Any
from datetime import datetime

Role = Literal["donor", "consumer", "organization"]

Category = Literal[
    "produce",
    "bakery",
    "prepared",
    "cooked",
    "packaged",
    "construction",
    "furniture",
    "clothing",
    "electronics",
    "medical",
    "school",
    "household",
    "general",
    "other",
]

Unit = Literal["kg", "g", "l", "ml", "items", "boxes", "bags"]

ListingStatus = Literal["active", "claimed", "collected", "expired"]


class GeoPoint(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    address: Optional[str] = None


class UserStats(BaseModel):
    co2_saved: float = 0
    meals_saved: int = 0
    points: int = 0
    items_sold: int = 0
    items_donated: int = 0
    families_helped: int = 0


class User(BaseModel):
    name: str
    email: EmailStr
    password_hash: str
    role: Role = "consumer"
    location: Optional[GeoPoint] = None
    stats: UserStats = Field(default_factory=UserStats)
    created_at: datetime


class Listing(BaseModel):
    donor: str
    name: str = Field(..., min_length=1)
    category: Category = "other"
    unit: Unit = "items"
    quantity: float = Field(..., gt=0)
    price_per_unit: float = Field(0, ge=0)
    initial_price: float = Field(0, ge=0)
    current_price: float = Field(0, ge=0)
    expiry_window_hours: float = Field(4, gt=0, description="Hours until the item is free")
    free_at: datetime
    created_at: datetime
    location: GeoPoint
    description: Optional[str] = None
    image_url: str = ""
    status: ListingStatus = "active"
    claimed_by: Optional[str] = None
    claim_code: Optional[str] = None
    claimed_at: Optional[datetime] = None


class MissionCluster(BaseModel):
    id: str
    center: Dict[str, Any]
    items: List[Dict[str, Any]]
    total_weight: float
    stops: int
