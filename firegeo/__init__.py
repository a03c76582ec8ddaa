"""
FireGeo - geohash spatial index and proximity queries over a document store
"""

from .distance import distance_km, to_radians
from .exceptions import (
    BackingStoreUnavailable,
    DocumentNotFound,
    GeoError,
    InvalidArgument,
    InvalidGeohash,
    RateLimitExceeded,
    StaleLocationUpdate,
    Unauthenticated,
    UserProfileNotFound,
)
from .geohash import decode, encode, neighbors, precision_for_radius
from .index import SpatialIndexStore
from .query import ProximityQueryEngine, RealtimeFeedQuery
from .service import LocationService

__all__ = [
    'encode',
    'decode',
    'neighbors',
    'precision_for_radius',
    'distance_km',
    'to_radians',
    'SpatialIndexStore',
    'ProximityQueryEngine',
    'RealtimeFeedQuery',
    'LocationService',
    'GeoError',
    'InvalidArgument',
    'Unauthenticated',
    'UserProfileNotFound',
    'BackingStoreUnavailable',
    'InvalidGeohash',
    'StaleLocationUpdate',
    'RateLimitExceeded',
    'DocumentNotFound',
]

__version__ = '1.0.0'
