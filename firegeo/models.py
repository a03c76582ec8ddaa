from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Latitude = Annotated[float, Field(ge=-90, le=90, strict=True, allow_inf_nan=False)]
Longitude = Annotated[float, Field(ge=-180, le=180, strict=True, allow_inf_nan=False)]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Base for documents and payloads exchanged with clients in camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class Coordinate(CamelModel):
    latitude: Latitude
    longitude: Longitude


# Requests

class LocationUpdate(CamelModel):
    """Single location update sent by the owning user's client"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    latitude: Latitude
    longitude: Longitude
    accuracy: Optional[float] = Field(None, ge=0, description="Location accuracy in meters")
    altitude: Optional[float] = None
    heading: Optional[float] = Field(None, ge=0, le=360, description="Direction of travel in degrees")
    speed: Optional[float] = Field(None, ge=0, description="Speed in meters per second")
    battery_level: Optional[float] = Field(None, ge=0, le=100)
    location_method: Optional[str] = Field(None, max_length=32)
    movement_state: Optional[str] = Field(None, max_length=32)
    captured_at: Optional[datetime] = None


class NearbyQuery(CamelModel):
    latitude: Latitude
    longitude: Longitude
    # unset fields fall back to the service defaults
    radius_km: Optional[Annotated[float, Field(gt=0, le=50, allow_inf_nan=False)]] = None
    limit: Optional[Annotated[int, Field(ge=1, le=500)]] = None


class FeedQuery(CamelModel):
    latitude: Latitude
    longitude: Longitude
    radius_km: Optional[Annotated[float, Field(allow_inf_nan=False)]] = None


class PrivacyZone(CamelModel):
    zone_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    center: Coordinate
    radius_meters: float = Field(..., ge=0, allow_inf_nan=False)


class PrivacySettings(CamelModel):
    ghost_mode: bool = False
    privacy_zones: List[PrivacyZone] = Field(default_factory=list)


class PrivacySettingsUpdate(CamelModel):
    ghost_mode: Optional[bool] = None
    privacy_zones: Optional[List[PrivacyZone]] = None


# Stored documents

class DisplayFields(CamelModel):
    """Public profile fields copied into every index entry"""
    display_name: str = ""
    profile_image_url: str = ""
    mood_temperature: str = "neutral"

    @classmethod
    def from_public_profile(cls, data: Dict[str, Any]) -> "DisplayFields":
        return cls(
            display_name=data.get("displayName") or "",
            profile_image_url=data.get("photoURL") or data.get("profileImageUrl") or "",
            mood_temperature=data.get("moodTemperature") or "neutral",
        )


class Connections(CamelModel):
    blocked_by: List[str] = Field(default_factory=list)


class UserPrivate(CamelModel):
    privacy_settings: PrivacySettings = Field(default_factory=PrivacySettings)
    connections: Connections = Field(default_factory=Connections)
    current_geo_index_path: Optional[str] = None
    is_online: Optional[bool] = None


class LocationSnapshot(CamelModel):
    latitude: float
    longitude: float
    accuracy: float = 0
    altitude: Optional[float] = None
    heading: Optional[float] = None
    speed: Optional[float] = None
    timestamp: datetime = Field(default_factory=utcnow)


class LocationRecord(CamelModel):
    """A user's single current location. Overwritten on every update."""
    user_id: str
    location: LocationSnapshot
    geohash: str
    movement_state: str = "stationary"
    battery_level: Optional[float] = None
    location_method: str = "gps"
    captured_at: datetime = Field(default_factory=utcnow)
    client_captured_at: Optional[datetime] = None
    last_updated: datetime = Field(default_factory=utcnow)
    last_active: datetime = Field(default_factory=utcnow)
    in_privacy_zone: bool = False
    privacy_zone_id: Optional[str] = None


class IndexEntry(DisplayFields):
    user_id: str
    geohash: str
    last_updated: datetime = Field(default_factory=utcnow)


class LiveLocation(BaseModel):
    """Entry in the ephemeral realtime location feed"""
    lat: float
    lng: float
    geohash: str
    timestamp: float


# Results

class IndexUpsertResult(BaseModel):
    geohash: str
    bucket: str
    was_relocated: bool
    indexed: bool


class LocationUpdateResult(CamelModel):
    success: bool = True
    user_id: str
    geohash: str
    in_privacy_zone: bool
    ghost_mode: bool


class NearbyUserLocation(CamelModel):
    latitude: float
    longitude: float
    accuracy: float
    last_updated: datetime


class NearbyUser(DisplayFields):
    user_id: str
    location: NearbyUserLocation
    distance: float
    movement_state: str


class NearbyUsersResponse(CamelModel):
    success: bool = True
    users: List[NearbyUser]
    count: int


class FeedUser(CamelModel):
    id: str
    user_id: str
    display_name: str = "Unknown User"
    profile_image_url: str = ""
    mood_temperature: str = "Neutral"
    last_updated: float


class FeedResponse(CamelModel):
    success: bool = True
    users: List[FeedUser]
    count: int


class PrivacySettingsResult(CamelModel):
    success: bool = True
    privacy_settings: PrivacySettings
