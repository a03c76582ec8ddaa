from .base import Document, DocumentStore, WriteBatch, WriteOp, doc_path, split_path
from .memory import InMemoryDocumentStore

# Collections
USERS_PUBLIC = "users_public"
USERS_PRIVATE = "users_private"
LOCATIONS = "locations"
GEO_INDEX = "geo_index"
LIVE_LOCATIONS = "live_locations"

RANGE_INDEXES = {LIVE_LOCATIONS: ["geohash"]}


def create_store(settings) -> DocumentStore:
    if settings.store_backend == "redis":
        from .redis_store import RedisDocumentStore
        return RedisDocumentStore.from_url(settings.redis_url, RANGE_INDEXES)
    return InMemoryDocumentStore()


__all__ = [
    'Document',
    'DocumentStore',
    'WriteBatch',
    'WriteOp',
    'InMemoryDocumentStore',
    'doc_path',
    'split_path',
    'create_store',
    'USERS_PUBLIC',
    'USERS_PRIVATE',
    'LOCATIONS',
    'GEO_INDEX',
    'LIVE_LOCATIONS',
]
