"""
Geohash encoding, decoding and neighbor lookup.

Bits alternate between longitude and latitude, starting with longitude,
five bits per base-32 character.
"""
import logging
from typing import List, NamedTuple, Tuple

from .exceptions import InvalidArgument, InvalidGeohash

logger = logging.getLogger(__name__)

BASE32 = "0123456789bcdefghjkmnpqrstuvwxyz"
_BASE32_INDEX = {c: i for i, c in enumerate(BASE32)}

# Approximate cell width at the equator for each precision
PRECISION_WIDTHS_KM = [
    (1, 5000.0),
    (2, 1250.0),
    (3, 156.0),
    (4, 39.0),
    (5, 4.9),
    (6, 1.2),
    (7, 0.152),
    (8, 0.038),
    (9, 0.005),
]

MAX_PRECISION = 12


class DecodedGeohash(NamedTuple):
    latitude: float
    longitude: float
    latitude_error: float
    longitude_error: float


def validate_coordinates(latitude: float, longitude: float) -> None:
    if isinstance(latitude, bool) or not isinstance(latitude, (int, float)):
        raise InvalidArgument("Latitude must be a number")
    if isinstance(longitude, bool) or not isinstance(longitude, (int, float)):
        raise InvalidArgument("Longitude must be a number")
    if not (-90 <= latitude <= 90):
        raise InvalidArgument("Latitude must be between -90 and 90 degrees")
    if not (-180 <= longitude <= 180):
        raise InvalidArgument("Longitude must be between -180 and 180 degrees")


def encode(latitude: float, longitude: float, precision: int = 9) -> str:
    """
    Encode a coordinate as a geohash of ``precision`` characters.

    Precision 0 yields an empty string.
    """
    if precision < 0:
        raise InvalidArgument("Geohash precision cannot be negative")
    if precision > MAX_PRECISION:
        raise InvalidArgument(f"Geohash precision cannot exceed {MAX_PRECISION}")
    validate_coordinates(latitude, longitude)

    lat_min, lat_max = -90.0, 90.0
    lon_min, lon_max = -180.0, 180.0

    geohash = []
    is_lon = True

    while len(geohash) < precision:
        val = 0
        for bit in range(5):
            if is_lon:
                mid = (lon_min + lon_max) / 2
                if longitude >= mid:
                    val |= (1 << (4 - bit))
                    lon_min = mid
                else:
                    lon_max = mid
            else:
                mid = (lat_min + lat_max) / 2
                if latitude >= mid:
                    val |= (1 << (4 - bit))
                    lat_min = mid
                else:
                    lat_max = mid
            is_lon = not is_lon
        geohash.append(BASE32[val])

    return ''.join(geohash)


def decode_bounds(geohash: str) -> Tuple[float, float, float, float]:
    """Return ``(lat_min, lat_max, lon_min, lon_max)`` of the geohash cell."""
    lat_min, lat_max = -90.0, 90.0
    lon_min, lon_max = -180.0, 180.0

    is_lon = True
    for char in geohash:
        idx = _BASE32_INDEX.get(char)
        if idx is None:
            raise InvalidGeohash(f"Invalid geohash character {char!r} in {geohash!r}")
        for bit in range(5):
            if is_lon:
                mid = (lon_min + lon_max) / 2
                if idx & (1 << (4 - bit)):
                    lon_min = mid
                else:
                    lon_max = mid
            else:
                mid = (lat_min + lat_max) / 2
                if idx & (1 << (4 - bit)):
                    lat_min = mid
                else:
                    lat_max = mid
            is_lon = not is_lon

    return lat_min, lat_max, lon_min, lon_max


def decode(geohash: str) -> DecodedGeohash:
    """Decode a geohash to its cell center and half-width error bounds."""
    lat_min, lat_max, lon_min, lon_max = decode_bounds(geohash)
    return DecodedGeohash(
        latitude=(lat_min + lat_max) / 2,
        longitude=(lon_min + lon_max) / 2,
        latitude_error=(lat_max - lat_min) / 2,
        longitude_error=(lon_max - lon_min) / 2,
    )


def neighbors(geohash: str) -> List[str]:
    """
    Return the cells surrounding ``geohash`` at the same precision.

    Neighbors are found by re-encoding points one cell away from the center
    in each compass direction, so cells at the poles and the antimeridian
    get fewer than eight. The input cell itself is never included.
    """
    precision = len(geohash)
    if precision == 0:
        return []

    center = decode(geohash)
    lat_delta = center.latitude_error * 2
    lon_delta = center.longitude_error * 2

    neighbor_coords = [
        (center.latitude + lat_delta, center.longitude),              # n
        (center.latitude + lat_delta, center.longitude + lon_delta),  # ne
        (center.latitude, center.longitude + lon_delta),              # e
        (center.latitude - lat_delta, center.longitude + lon_delta),  # se
        (center.latitude - lat_delta, center.longitude),              # s
        (center.latitude - lat_delta, center.longitude - lon_delta),  # sw
        (center.latitude, center.longitude - lon_delta),              # w
        (center.latitude + lat_delta, center.longitude - lon_delta),  # nw
    ]

    result = []
    for lat, lon in neighbor_coords:
        if -90 <= lat <= 90 and -180 <= lon <= 180:
            gh = encode(lat, lon, precision)
            if gh != geohash and gh not in result:
                result.append(gh)

    return result


def precision_for_radius(radius_km: float) -> int:
    """Pick the coarsest precision whose cell is smaller than the radius."""
    for precision, width_km in PRECISION_WIDTHS_KM:
        if radius_km > width_km:
            return precision
    return 9


def prefix_range(prefix: str) -> Tuple[str, str]:
    """Lexicographic ``(start, end)`` range matching every geohash with ``prefix``."""
    return prefix, prefix + "~"
