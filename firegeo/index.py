"""
Spatial index maintenance.

Each visible user has exactly one entry at ``geo_index/{bucket}/users/{uid}``
where ``bucket`` is their geohash truncated to the index precision. The
entry path is recorded on ``users_private/{uid}.currentGeoIndexPath`` so a
move can delete the old entry in the same batch that writes the new one.
"""
import asyncio
import logging
from typing import List, NamedTuple, Optional

from . import geohash as gh
from .exceptions import InvalidArgument, InvalidGeohash, UserProfileNotFound
from .models import (
    DisplayFields,
    IndexEntry,
    IndexUpsertResult,
    LiveLocation,
    LocationRecord,
    PrivacySettings,
    PrivacyZone,
    UserPrivate,
    utcnow,
)
from .store import (
    GEO_INDEX,
    LIVE_LOCATIONS,
    LOCATIONS,
    USERS_PRIVATE,
    USERS_PUBLIC,
    DocumentStore,
    WriteBatch,
    doc_path,
)

logger = logging.getLogger(__name__)


class UserState(NamedTuple):
    display: DisplayFields
    private: UserPrivate
    private_exists: bool


def index_entry_path(bucket: str, user_id: str) -> str:
    return doc_path(GEO_INDEX, bucket, "users", user_id)


def bucket_from_path(path: Optional[str]) -> Optional[str]:
    """Extract the bucket from a recorded index path, or None if unusable."""
    if not path:
        return None
    parts = path.split("/")
    # older records used geo_index/{bucket}/{uid}
    if parts[0] != GEO_INDEX or len(parts) not in (3, 4) or (len(parts) == 4 and parts[2] != "users"):
        logger.warning(f"Ignoring unrecognized geo index path {path!r}")
        return None
    bucket = parts[1]
    try:
        gh.decode_bounds(bucket)
    except InvalidGeohash:
        logger.error(f"Corrupted geo index path {path!r}: bucket {bucket!r} is not a geohash")
        raise
    return bucket


class SpatialIndexStore:
    def __init__(self, store: DocumentStore, storage_precision: int = 9, index_precision: int = 5):
        if index_precision > storage_precision:
            raise InvalidArgument("Index precision cannot exceed storage precision")
        self.store = store
        self.storage_precision = storage_precision
        self.index_precision = index_precision

    async def load_private(self, user_id: str) -> UserState:
        data = await self.store.get(doc_path(USERS_PRIVATE, user_id))
        return UserState(DisplayFields(), UserPrivate.model_validate(data or {}), data is not None)

    async def load_state(self, user_id: str) -> UserState:
        public, private = await asyncio.gather(
            self.store.get(doc_path(USERS_PUBLIC, user_id)),
            self.store.get(doc_path(USERS_PRIVATE, user_id)),
        )
        if public is None:
            raise UserProfileNotFound(user_id)
        return UserState(
            DisplayFields.from_public_profile(public),
            UserPrivate.model_validate(private or {}),
            private is not None,
        )

    def _previous_bucket(self, batch: WriteBatch, private: UserPrivate) -> Optional[str]:
        path = private.current_geo_index_path
        try:
            return bucket_from_path(path)
        except InvalidGeohash:
            # drop the corrupted entry so the user can be re-indexed
            if len(path.split("/")) % 2 == 0:
                batch.delete(path)
            return None

    def add_removal(self, batch: WriteBatch, user_id: str, private: UserPrivate) -> Optional[str]:
        """Queue deletion of the user's index and feed entries. Returns the bucket left, if any."""
        bucket = self._previous_bucket(batch, private)
        if bucket:
            batch.delete(index_entry_path(bucket, user_id))
        batch.delete(doc_path(LIVE_LOCATIONS, user_id))
        batch.set(doc_path(USERS_PRIVATE, user_id), {"currentGeoIndexPath": None}, merge=True)
        return bucket

    async def upsert(
        self,
        user_id: str,
        latitude: float,
        longitude: float,
        display: Optional[DisplayFields] = None,
        private: Optional[UserPrivate] = None,
        index_precision: Optional[int] = None,
        record: Optional[LocationRecord] = None,
        suppress: bool = False,
    ) -> IndexUpsertResult:
        """
        Move the user's index entry to the bucket containing the coordinate.

        The location record (when given), the old-entry delete, the new entry
        and the recorded path are committed in one batch. Under ghost mode,
        or when ``suppress`` is set, the user is removed from the index
        instead of being written to it.
        """
        precision = index_precision or self.index_precision
        if not 1 <= precision <= self.storage_precision:
            raise InvalidArgument(f"Index precision must be between 1 and {self.storage_precision}")

        geohash = gh.encode(latitude, longitude, self.storage_precision)
        bucket = geohash[:precision]

        if display is None or private is None:
            state = await self.load_state(user_id)
            display = display or state.display
            private = private or state.private

        batch = self.store.batch()
        if record is not None:
            batch.set(doc_path(LOCATIONS, user_id), record.to_document())

        if private.privacy_settings.ghost_mode or suppress:
            left = self.add_removal(batch, user_id, private)
            await batch.commit()
            logger.info(f"User {user_id} not indexed (ghost={private.privacy_settings.ghost_mode}, suppressed={suppress})")
            return IndexUpsertResult(geohash=geohash, bucket=bucket, was_relocated=left is not None, indexed=False)

        previous_bucket = self._previous_bucket(batch, private)
        relocated = previous_bucket is not None and previous_bucket != bucket
        if relocated:
            batch.delete(index_entry_path(previous_bucket, user_id))

        now = utcnow()
        entry_path = index_entry_path(bucket, user_id)
        entry = IndexEntry(user_id=user_id, geohash=geohash, last_updated=now, **display.model_dump())
        batch.set(entry_path, entry.to_document())
        batch.set(
            doc_path(LIVE_LOCATIONS, user_id),
            LiveLocation(lat=latitude, lng=longitude, geohash=geohash, timestamp=now.timestamp()).model_dump(),
        )
        batch.set(doc_path(USERS_PRIVATE, user_id), {"currentGeoIndexPath": entry_path}, merge=True)
        await batch.commit()

        if relocated:
            logger.info(f"User {user_id} moved from bucket {previous_bucket} to {bucket}")
        else:
            logger.info(f"User {user_id} indexed in bucket {bucket}")
        return IndexUpsertResult(geohash=geohash, bucket=bucket, was_relocated=relocated, indexed=True)

    async def remove(self, user_id: str) -> Optional[str]:
        """Drop the user's index entry. Removing an absent entry is not an error."""
        state = await self.load_private(user_id)
        batch = self.store.batch()
        left = self.add_removal(batch, user_id, state.private)
        await batch.commit()
        logger.info(f"User {user_id} removed from geo index (bucket={left})")
        return left

    async def update_privacy(
        self,
        user_id: str,
        ghost_mode: Optional[bool] = None,
        privacy_zones: Optional[List[PrivacyZone]] = None,
    ) -> PrivacySettings:
        state = await self.load_private(user_id)
        if not state.private_exists:
            raise UserProfileNotFound(user_id)
        current = state.private.privacy_settings
        settings = PrivacySettings(
            ghost_mode=current.ghost_mode if ghost_mode is None else ghost_mode,
            privacy_zones=current.privacy_zones if privacy_zones is None else privacy_zones,
        )

        batch = self.store.batch()
        batch.set(doc_path(USERS_PRIVATE, user_id), {"privacySettings": settings.to_document()}, merge=True)
        # Turning ghost mode off doesn't re-index; the next location update does.
        if settings.ghost_mode:
            self.add_removal(batch, user_id, state.private)
        await batch.commit()
        logger.info(f"Privacy settings updated for {user_id}: ghost={settings.ghost_mode}, zones={len(settings.privacy_zones)}")
        return settings

    async def set_ghost_mode(self, user_id: str, enabled: bool) -> PrivacySettings:
        return await self.update_privacy(user_id, ghost_mode=enabled)

