"""Mission clustering: groups nearby active listings of one category so an
organization can collect them in a single run.

The grouping is greedy and anchor-only. Listings are walked in creation
order; each unassigned listing anchors a new cluster and pulls in every
other unassigned listing of the same category within CLUSTER_RADIUS_KM
of the anchor. Neighbours of neighbours are not followed. Clusters with
fewer than two members are dropped.
"""

import hashlib
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from database import serialize, utcnow
from events import MISSION_UPDATE
from geo import distance_between, same_category
from schemas import MissionCluster

logger = logging.getLogger(__name__)

CLUSTER_RADIUS_KM = 2.0
MIN_CLUSTER_SIZE = 2


def mission_id(member_ids: Iterable[str]) -> str:
    """Stable id for a cluster: the same members always give the same id."""
    digest = hashlib.sha1(",".join(sorted(member_ids)).encode("utf-8")).hexdigest()
    return f"mission-{digest[:12]}"


def build_clusters(listings: Sequence[Dict[str, Any]], radius_km: float = CLUSTER_RADIUS_KM) -> List[MissionCluster]:
    items = [serialize(doc) for doc in listings]
    assigned = set()
    clusters: List[MissionCluster] = []

    for anchor in items:
        if anchor["id"] in assigned:
            continue
        assigned.add(anchor["id"])
        members = [anchor]

        for candidate in items:
            if candidate["id"] in assigned:
                continue
            if not same_category(anchor, candidate):
                continue
            if distance_between(anchor["location"], candidate["location"]) <= radius_km:
                members.append(candidate)
                assigned.add(candidate["id"])

        if len(members) < MIN_CLUSTER_SIZE:
            continue
        clusters.append(
            MissionCluster(
                id=mission_id(m["id"] for m in members),
                center=dict(anchor["location"]),
                items=members,
                # units are mixed, quantities are summed as raw numbers
                total_weight=sum(m.get("quantity") or 0 for m in members),
                stops=len(members),
            )
        )
    return clusters


class ClusterEngine:
    def __init__(self, db, radius_km: float = CLUSTER_RADIUS_KM) -> None:
        self._listings = db["listings"]
        self._radius_km = radius_km

    def snapshot(self, now: Optional[datetime] = None) -> List[dict]:
        now = now or utcnow()
        cursor = self._listings.find({"status": "active", "free_at": {"$gt": now}})
        return list(cursor.sort([("created_at", 1), ("_id", 1)]))

    def compute(self, now: Optional[datetime] = None) -> List[MissionCluster]:
        clusters = build_clusters(self.snapshot(now), self._radius_km)
        logger.info("Formed %d missions", len(clusters))
        return clusters

    def publish(self, broadcaster, now: Optional[datetime] = None) -> List[MissionCluster]:
        clusters = self.compute(now)
        broadcaster.publish(MISSION_UPDATE, {"clusters": [c.model_dump() for c in clusters]})
        return clusters
