"""Great-circle distance and radius filtering for public memorials.

The proximity query is a full scan over the public records followed by a
haversine check, which is fine for the handful of records a single map
screen shows. ``position_key`` is a fixed-precision lookup token, not a
geohash, and cannot be used for prefix-based proximity search.
"""

from typing import Iterable, List, Optional, Sequence, Tuple

from haversine import Unit, haversine

EARTH_RADIUS_KM = 6371.0
POSITION_KEY_PRECISION = 5

Coordinate = Tuple[float, float]


def distance_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Haversine distance in kilometers using a mean Earth radius of 6371 km."""
    if lat1 == lat2 and lon1 == lon2:
        return 0.0
    return haversine((lat1, lon1), (lat2, lon2), unit=Unit.RADIANS) * EARTH_RADIUS_KM


def position_key(latitude: float, longitude: float, precision: int = POSITION_KEY_PRECISION) -> str:
    return f"{latitude:.{precision}f},{longitude:.{precision}f}"


def parse_position_key(key: str) -> Coordinate:
    lat, lng = key.split(",")
    return float(lat), float(lng)


def within_radius(viewer: Coordinate, memorials: Iterable, radius_km: float) -> List[Tuple[object, float, bool]]:
    """Annotate every located memorial with its distance and in-range flag.

    Memorials without coordinates are dropped. A memorial is in range when
    ``distance <= radius_km``.
    """
    results = []
    for memorial in memorials:
        if memorial.latitude is None or memorial.longitude is None:
            continue
        dist = distance_km(viewer[0], viewer[1], memorial.latitude, memorial.longitude)
        results.append((memorial, dist, dist <= radius_km))
    return results


def bounds(coordinates: Sequence[Coordinate]) -> Optional[List[List[float]]]:
    """South-west / north-east corners as ``[[lat, lng], [lat, lng]]``."""
    if not coordinates:
        return None
    lats = [c[0] for c in coordinates]
    lngs = [c[1] for c in coordinates]
    return [[min(lats), min(lngs)], [max(lats), max(lngs)]]
