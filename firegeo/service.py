import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from . import geohash as gh
from .config import Settings
from .distance import distance_km
from .exceptions import StaleLocationUpdate, Unauthenticated
from .index import SpatialIndexStore
from .models import (
    FeedQuery,
    FeedResponse,
    LocationRecord,
    LocationSnapshot,
    LocationUpdate,
    LocationUpdateResult,
    NearbyQuery,
    NearbyUsersResponse,
    PrivacySettingsResult,
    PrivacySettingsUpdate,
    PrivacyZone,
    utcnow,
)
from .query import ProximityQueryEngine, RealtimeFeedQuery
from .store import LOCATIONS, USERS_PRIVATE, DocumentStore, doc_path

logger = logging.getLogger(__name__)


def find_privacy_zone(latitude: float, longitude: float, zones: List[PrivacyZone]) -> Optional[PrivacyZone]:
    """First zone whose circle contains the coordinate."""
    for zone in zones:
        meters = distance_km(latitude, longitude, zone.center.latitude, zone.center.longitude) * 1000
        if meters <= zone.radius_meters:
            return zone
    return None


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def require_user(user_id: Optional[str]) -> str:
    if not user_id:
        raise Unauthenticated("User must be authenticated")
    return user_id


class LocationService:
    """Request handlers for location writes, proximity queries and privacy changes."""

    def __init__(self, store: DocumentStore, settings: Settings):
        self.store = store
        self.settings = settings
        self.index = SpatialIndexStore(store, settings.storage_precision, settings.index_precision)
        self.engine = ProximityQueryEngine(store, settings.index_precision, settings.max_radius_km)
        self.feed = RealtimeFeedQuery(
            store,
            batch_size=settings.profile_batch_size,
            min_radius_km=settings.min_feed_radius_km,
            max_radius_km=settings.max_radius_km,
            default_radius_km=settings.default_radius_km,
        )

    async def _check_stale(self, user_id: str, captured_at: datetime) -> None:
        data = await self.store.get(doc_path(LOCATIONS, user_id))
        if data is None:
            return
        # only client clocks are comparable with each other
        stored = LocationRecord.model_validate(data).client_captured_at
        if stored is None:
            return
        stored = _as_utc(stored)
        if stored > _as_utc(captured_at):
            raise StaleLocationUpdate(
                f"Location captured at {captured_at.isoformat()} is older than stored {stored.isoformat()}"
            )

    async def update_location(self, user_id: Optional[str], update: LocationUpdate) -> LocationUpdateResult:
        user_id = require_user(user_id)
        state = await self.index.load_state(user_id)

        if update.captured_at is not None and self.settings.reject_stale_updates:
            await self._check_stale(user_id, update.captured_at)

        privacy = state.private.privacy_settings
        zone = find_privacy_zone(update.latitude, update.longitude, privacy.privacy_zones)

        now = utcnow()
        geohash = gh.encode(update.latitude, update.longitude, self.settings.storage_precision)
        record = LocationRecord(
            user_id=user_id,
            location=LocationSnapshot(
                latitude=update.latitude,
                longitude=update.longitude,
                accuracy=update.accuracy or 0,
                altitude=update.altitude,
                heading=update.heading,
                speed=update.speed,
                timestamp=now,
            ),
            geohash=geohash,
            movement_state=update.movement_state or "stationary",
            battery_level=update.battery_level,
            location_method=update.location_method or "gps",
            captured_at=_as_utc(update.captured_at) if update.captured_at else now,
            client_captured_at=_as_utc(update.captured_at) if update.captured_at else None,
            last_updated=now,
            last_active=now,
            in_privacy_zone=zone is not None,
            privacy_zone_id=zone.zone_id if zone else None,
        )

        await self.index.upsert(
            user_id,
            update.latitude,
            update.longitude,
            display=state.display,
            private=state.private,
            record=record,
            suppress=zone is not None and self.settings.privacy_zone_suppresses_index,
        )

        return LocationUpdateResult(
            user_id=user_id,
            geohash=geohash,
            in_privacy_zone=zone is not None,
            ghost_mode=privacy.ghost_mode,
        )

    async def query_nearby(self, requester_id: Optional[str], query: NearbyQuery) -> NearbyUsersResponse:
        requester_id = require_user(requester_id)
        radius_km = self.settings.default_radius_km if query.radius_km is None else query.radius_km
        limit = self.settings.default_limit if query.limit is None else query.limit
        users = await self.engine.find_nearby(requester_id, query.latitude, query.longitude, radius_km, limit)
        return NearbyUsersResponse(users=users, count=len(users))

    async def get_nearby_users(self, requester_id: Optional[str], query: FeedQuery) -> FeedResponse:
        requester_id = require_user(requester_id)
        users = await self.feed.find_recent(requester_id, query.latitude, query.longitude, query.radius_km)
        return FeedResponse(users=users, count=len(users))

    async def sign_out(self, user_id: Optional[str]) -> Dict[str, Any]:
        user_id = require_user(user_id)
        state = await self.index.load_private(user_id)
        if not state.private_exists:
            return {"success": True, "message": "No user data to update"}

        now = utcnow().isoformat()
        batch = self.store.batch()
        self.index.add_removal(batch, user_id, state.private)
        batch.set(doc_path(USERS_PRIVATE, user_id), {"isOnline": False, "lastActive": now}, merge=True)
        if await self.store.get(doc_path(LOCATIONS, user_id)) is not None:
            batch.update(doc_path(LOCATIONS, user_id), {"lastActive": now})
        await batch.commit()

        logger.info(f"User {user_id} signed out")
        return {"success": True, "message": "User signed out successfully"}

    async def update_privacy_settings(self, user_id: Optional[str], update: PrivacySettingsUpdate) -> PrivacySettingsResult:
        user_id = require_user(user_id)
        settings = await self.index.update_privacy(user_id, update.ghost_mode, update.privacy_zones)
        return PrivacySettingsResult(privacy_settings=settings)

    async def health(self) -> bool:
        return await self.store.ping()
