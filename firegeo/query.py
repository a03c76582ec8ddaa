import asyncio
import logging
import math
from typing import Dict, Iterable, List, Optional, Set

from . import geohash as gh
from .distance import distance_km
from .exceptions import InvalidArgument
from .models import (
    FeedUser,
    IndexEntry,
    LocationRecord,
    NearbyUser,
    NearbyUserLocation,
    UserPrivate,
)
from .store import (
    GEO_INDEX,
    LIVE_LOCATIONS,
    LOCATIONS,
    USERS_PRIVATE,
    USERS_PUBLIC,
    Document,
    DocumentStore,
    doc_path,
)

logger = logging.getLogger(__name__)


def _check_radius(radius_km: float) -> None:
    if isinstance(radius_km, bool) or not isinstance(radius_km, (int, float)) or math.isnan(radius_km):
        raise InvalidArgument("Radius must be a number")


async def blocked_by(store: DocumentStore, requester_id: str) -> Set[str]:
    data = await store.get(doc_path(USERS_PRIVATE, requester_id))
    if not data:
        return set()
    return set(UserPrivate.model_validate(data).connections.blocked_by)


class ProximityQueryEngine:
    """
    Finds users within a radius in two phases: a coarse scan of the index
    buckets covering the center cell and its neighbors, then an exact
    distance filter against each candidate's location record.
    """

    def __init__(self, store: DocumentStore, index_precision: int = 5, max_radius_km: float = 50.0):
        self.store = store
        self.index_precision = index_precision
        self.max_radius_km = max_radius_km

    def candidate_buckets(self, latitude: float, longitude: float) -> List[str]:
        center = gh.encode(latitude, longitude, self.index_precision)
        return [center] + [b for b in gh.neighbors(center) if b != center]

    async def _bucket_entries(self, bucket: str) -> List[Document]:
        return await self.store.list_documents(f"{GEO_INDEX}/{bucket}/users")

    async def find_nearby(
        self,
        requester_id: str,
        latitude: float,
        longitude: float,
        radius_km: float,
        limit: int = 50,
    ) -> List[NearbyUser]:
        gh.validate_coordinates(latitude, longitude)
        _check_radius(radius_km)
        if radius_km <= 0:
            raise InvalidArgument("Radius must be greater than 0")
        radius_km = min(radius_km, self.max_radius_km)
        if limit < 1:
            raise InvalidArgument("Limit must be at least 1")

        buckets = self.candidate_buckets(latitude, longitude)
        blocked, *bucket_docs = await asyncio.gather(
            blocked_by(self.store, requester_id),
            *(self._bucket_entries(b) for b in buckets),
        )

        # A user mid-move can briefly show up in two buckets
        candidates: Dict[str, IndexEntry] = {}
        for docs in bucket_docs:
            for doc in docs:
                entry = IndexEntry.model_validate(doc.data)
                if entry.user_id == requester_id or entry.user_id in blocked:
                    continue
                candidates.setdefault(entry.user_id, entry)

        records = await asyncio.gather(
            *(self.store.get(doc_path(LOCATIONS, user_id)) for user_id in candidates)
        )

        nearby = []
        for entry, data in zip(candidates.values(), records):
            if data is None:
                logger.warning(f"Index entry for {entry.user_id} has no location record")
                continue
            record = LocationRecord.model_validate(data)
            distance = distance_km(latitude, longitude, record.location.latitude, record.location.longitude)
            if distance > radius_km:
                continue
            nearby.append((distance, NearbyUser(
                user_id=entry.user_id,
                display_name=entry.display_name,
                profile_image_url=entry.profile_image_url,
                mood_temperature=entry.mood_temperature,
                location=NearbyUserLocation(
                    latitude=record.location.latitude,
                    longitude=record.location.longitude,
                    accuracy=record.location.accuracy,
                    last_updated=record.last_updated,
                ),
                distance=round(distance, 2),
                movement_state=record.movement_state,
            )))

        # order on the unrounded distance
        nearby.sort(key=lambda item: (item[0], item[1].user_id))
        result = [user for _, user in nearby[:limit]]

        logger.info(
            f"Nearby query for {requester_id}: {len(buckets)} buckets, "
            f"{len(candidates)} candidates, {len(result)} within {radius_km}km"
        )
        return result


class RealtimeFeedQuery:
    """
    Lower-precision lookup against the live location feed.

    Scans a single geohash prefix range (no neighbor cells, no distance
    filter), then fetches profiles in batches of at most ``batch_size`` ids.
    Results are ordered by most recent update.
    """

    def __init__(
        self,
        store: DocumentStore,
        batch_size: int = 10,
        min_radius_km: float = 0.1,
        max_radius_km: float = 50.0,
        default_radius_km: float = 5.0,
    ):
        self.store = store
        self.batch_size = batch_size
        self.default_radius_km = default_radius_km
        self.min_radius_km = min_radius_km
        self.max_radius_km = max_radius_km

    @staticmethod
    def prefix_precision(radius_km: float) -> int:
        return 6 if radius_km <= 1.0 else 5

    async def fetch_profiles(self, user_ids: Iterable[str]) -> Dict[str, Dict]:
        ids = list(dict.fromkeys(user_ids))
        batches = [ids[i:i + self.batch_size] for i in range(0, len(ids), self.batch_size)]
        results = await asyncio.gather(
            *(self.store.query(USERS_PUBLIC, "__name__", "in", batch) for batch in batches)
        )
        profiles: Dict[str, Dict] = {}
        for docs in results:
            for doc in docs:
                profiles.setdefault(doc.id, doc.data)
        return profiles

    async def find_recent(
        self,
        requester_id: str,
        latitude: float,
        longitude: float,
        radius_km: Optional[float] = None,
    ) -> List[FeedUser]:
        gh.validate_coordinates(latitude, longitude)
        if radius_km is None:
            radius_km = self.default_radius_km
        _check_radius(radius_km)
        radius_km = min(max(radius_km, self.min_radius_km), self.max_radius_km)

        prefix = gh.encode(latitude, longitude, self.prefix_precision(radius_km))
        start, end = gh.prefix_range(prefix)
        docs, blocked = await asyncio.gather(
            self.store.query_range(LIVE_LOCATIONS, "geohash", start, end),
            blocked_by(self.store, requester_id),
        )

        last_updated: Dict[str, float] = {}
        for doc in docs:
            if doc.id == requester_id or doc.id in blocked:
                continue
            if doc.data.get("lat") is None or doc.data.get("lng") is None:
                continue
            last_updated.setdefault(doc.id, doc.data.get("timestamp") or 0.0)

        if not last_updated:
            logger.info(f"Feed query for {requester_id}: no users under prefix {prefix}")
            return []

        profiles = await self.fetch_profiles(last_updated)

        users = []
        for user_id, profile in profiles.items():
            users.append(FeedUser(
                id=user_id,
                user_id=user_id,
                display_name=profile.get("displayName") or "Unknown User",
                profile_image_url=profile.get("photoURL") or profile.get("profileImageUrl") or "",
                mood_temperature=profile.get("moodTemperature") or "Neutral",
                last_updated=last_updated[user_id],
            ))
        users.sort(key=lambda user: user.last_updated, reverse=True)

        logger.info(f"Feed query for {requester_id}: {len(users)} users under prefix {prefix}")
        return users
