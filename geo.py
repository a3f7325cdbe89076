import math
from typing import Any, Mapping

EARTH_RADIUS_KM = 6371


def haversine_km(lat1, lon1, lat2, lon2):
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(dlon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def distance_between(a: Mapping[str, Any], b: Mapping[str, Any]) -> float:
    """Great-circle distance in km between two {lat, lng} points."""
    return haversine_km(a["lat"], a["lng"], b["lat"], b["lng"])


def same_category(a: Mapping[str, Any], b: Mapping[str, Any]) -> bool:
    return a.get("category") == b.get("category")
