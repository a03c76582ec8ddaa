import math
from typing import Iterable, List, Optional, Tuple

from firegeo.distance import EARTH_RADIUS_KM
from firegeo.store import DocumentStore, InMemoryDocumentStore

SF_CENTER = (37.7749, -122.4194)
SF_NEARBY = (37.7755, -122.4201)


def offset_north(latitude: float, longitude: float, km: float) -> Tuple[float, float]:
    """Point ``km`` kilometers due north; haversine distance to it is exactly ``km``."""
    return latitude + math.degrees(km / EARTH_RADIUS_KM), longitude


async def seed_users(store: DocumentStore, user_ids: Iterable[str], blocked_by: Optional[dict] = None) -> None:
    """Create public and private profile documents for each user."""
    blocked_by = blocked_by or {}
    batch = store.batch()
    for user_id in user_ids:
        batch.set(f"users_public/{user_id}", {
            "displayName": f"User {user_id}",
            "photoURL": f"https://example.com/{user_id}.png",
            "moodTemperature": "happy",
        })
        batch.set(f"users_private/{user_id}", {
            "connections": {"blockedBy": list(blocked_by.get(user_id, []))},
        })
    await batch.commit()


def index_entries(store: InMemoryDocumentStore, user_id: str) -> List[str]:
    """Every geo index entry path that belongs to ``user_id``."""
    return [
        path for path in store.dump()
        if path.startswith("geo_index/") and path.endswith(f"/users/{user_id}")
    ]
