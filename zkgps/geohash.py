"""
Geohash encoding/decoding for zkGPS.

A geohash is a hierarchical spatial hash: each character adds five bits of
bisection (longitude first, then latitude, alternating), so a longer hash
denotes a smaller cell and reveals more of the location.

Precision table (approximate cell size):
    1 char  = ~5000 km (continent)
    4 chars = ~39 km (metro)
    6 chars = ~1.2 km (neighborhood)
    8 chars = ~38 m (building)
    10 chars = ~1.2 m (exact)
"""

from __future__ import annotations

import math
from collections import deque
from enum import IntEnum
from typing import Dict, List, Sequence, Set, Tuple

from zkgps.errors import InvalidArgument
from zkgps.models import Coordinate, GeohashBounds

# Base32 alphabet (excludes a, i, l, o)
BASE32 = "0123456789bcdefghjkmnpqrstuvwxyz"
_DECODE_MAP = {c: i for i, c in enumerate(BASE32)}

MIN_PRECISION = 1
MAX_PRECISION = 12

EARTH_RADIUS_M = 6371000.0
METERS_PER_DEGREE = 111000.0

Polygon = Sequence[Tuple[float, float]]


class GeohashLevel(IntEnum):
    """Named geohash precision levels."""

    CONTINENT = 1      # ~5000 km
    LARGE_COUNTRY = 2  # ~1250 km
    STATE = 3          # ~156 km
    METRO = 4          # ~39 km
    DISTRICT = 5       # ~5 km
    NEIGHBORHOOD = 6   # ~1.2 km
    BLOCK = 7          # ~153 m
    BUILDING = 8       # ~38 m
    ROOM = 9           # ~5 m
    EXACT = 10         # ~1.2 m


# Approximate cell dimensions at each precision (metres, at the equator)
PRECISION_CELL_SIZE: Dict[int, Tuple[float, float]] = {
    1: (5000000.0, 5000000.0),
    2: (1250000.0, 625000.0),
    3: (156000.0, 156000.0),
    4: (39000.0, 19500.0),
    5: (4900.0, 4900.0),
    6: (1200.0, 610.0),
    7: (153.0, 153.0),
    8: (38.0, 19.0),
    9: (4.8, 4.8),
    10: (1.2, 0.6),
    11: (0.15, 0.15),
    12: (0.037, 0.019),
}


def check_precision(precision: int) -> None:
    if isinstance(precision, bool) or not isinstance(precision, int):
        raise InvalidArgument(f"Precision must be an integer, got {precision!r}")
    if not (MIN_PRECISION <= precision <= MAX_PRECISION):
        raise InvalidArgument(
            f"Precision must be between {MIN_PRECISION} and {MAX_PRECISION}"
        )


def check_coordinate(lat: float, lng: float) -> None:
    if not (-90.0 <= lat <= 90.0):
        raise InvalidArgument("Latitude must be between -90 and 90")
    if not (-180.0 <= lng <= 180.0):
        raise InvalidArgument("Longitude must be between -180 and 180")


def encode(lat: float, lng: float, precision: int = 9) -> str:
    """
    Encode latitude/longitude to a geohash string.

    Args:
        lat: Latitude (-90 to 90)
        lng: Longitude (-180 to 180)
        precision: Number of characters (1-12)

    Returns:
        Geohash string of length ``precision``

    Raises:
        InvalidArgument: If precision or coordinates are out of range

    Example:
        >>> encode(0, 0, 1)
        's'
    """
    check_precision(precision)
    check_coordinate(lat, lng)

    min_lat, max_lat = -90.0, 90.0
    min_lng, max_lng = -180.0, 180.0
    out: List[str] = []
    bit = 0
    ch = 0
    is_lng = True

    while len(out) < precision:
        if is_lng:
            mid = (min_lng + max_lng) / 2
            if lng >= mid:
                ch |= 1 << (4 - bit)
                min_lng = mid
            else:
                max_lng = mid
        else:
            mid = (min_lat + max_lat) / 2
            if lat >= mid:
                ch |= 1 << (4 - bit)
                min_lat = mid
            else:
                max_lat = mid

        is_lng = not is_lng
        bit += 1

        if bit == 5:
            out.append(BASE32[ch])
            bit = 0
            ch = 0

    return "".join(out)


def decode_bounds(geohash: str) -> GeohashBounds:
    """
    Decode a geohash to the bounding box of its cell.

    Raises:
        InvalidArgument: If the hash is empty or has a non-base32 character
    """
    if not geohash:
        raise InvalidArgument("Geohash must be non-empty")

    min_lat, max_lat = -90.0, 90.0
    min_lng, max_lng = -180.0, 180.0
    is_lng = True

    for c in geohash.lower():
        bits = _DECODE_MAP.get(c)
        if bits is None:
            raise InvalidArgument(f"Invalid geohash character: {c!r}")

        for i in range(4, -1, -1):
            bit = (bits >> i) & 1
            if is_lng:
                mid = (min_lng + max_lng) / 2
                if bit:
                    min_lng = mid
                else:
                    max_lng = mid
            else:
                mid = (min_lat + max_lat) / 2
                if bit:
                    min_lat = mid
                else:
                    max_lat = mid
            is_lng = not is_lng

    return GeohashBounds(min_lat=min_lat, max_lat=max_lat, min_lng=min_lng, max_lng=max_lng)


def decode(geohash: str) -> Coordinate:
    """Decode a geohash to the centre point of its cell."""
    b = decode_bounds(geohash)
    return Coordinate(lat=(b.min_lat + b.max_lat) / 2, lng=(b.min_lng + b.max_lng) / 2)


def neighbors(geohash: str) -> List[str]:
    """
    Get the 8 neighbouring cells, in order N, NE, E, SE, S, SW, W, NW.

    Longitude wraps at the antimeridian; latitude clamps at the poles.
    """
    bounds = decode_bounds(geohash)
    center = decode(geohash)
    lat_delta = bounds.max_lat - bounds.min_lat
    lng_delta = bounds.max_lng - bounds.min_lng
    precision = len(geohash)

    directions = [
        (lat_delta, 0.0),          # N
        (lat_delta, lng_delta),    # NE
        (0.0, lng_delta),          # E
        (-lat_delta, lng_delta),   # SE
        (-lat_delta, 0.0),         # S
        (-lat_delta, -lng_delta),  # SW
        (0.0, -lng_delta),         # W
        (lat_delta, -lng_delta),   # NW
    ]

    out = []
    for d_lat, d_lng in directions:
        new_lat = center.lat + d_lat
        new_lng = center.lng + d_lng

        if new_lng > 180:
            new_lng -= 360
        elif new_lng < -180:
            new_lng += 360

        new_lat = max(-90.0, min(90.0, new_lat))
        out.append(encode(new_lat, new_lng, precision))
    return out


def contains(lat: float, lng: float, geohash: str) -> bool:
    """Check if a point lies inside (or on the edge of) a geohash cell."""
    b = decode_bounds(geohash)
    return b.min_lat <= lat <= b.max_lat and b.min_lng <= lng <= b.max_lng


def haversine_distance(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two points in metres."""
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    a = min(1.0, a)
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def closest_point_distance(geohash: str, lat: float, lng: float) -> float:
    """Distance from (lat, lng) to the nearest point of a cell's bounding box."""
    b = decode_bounds(geohash)
    closest_lat = max(b.min_lat, min(b.max_lat, lat))
    closest_lng = max(b.min_lng, min(b.max_lng, lng))
    return haversine_distance(lat, lng, closest_lat, closest_lng)


def cells_in_radius(
    center_lat: float,
    center_lng: float,
    radius_meters: float,
    precision: int,
) -> Set[str]:
    """
    Get all cells at ``precision`` that intersect a circle.

    Breadth-first flood fill from the centre cell; a neighbour is admitted
    when the closest point of its box is within ``radius_meters``. The centre
    cell is always included.
    """
    if radius_meters < 0:
        raise InvalidArgument("Radius must be non-negative")

    center_hash = encode(center_lat, center_lng, precision)
    cells = {center_hash}
    visited = {center_hash}
    queue = deque([center_hash])

    while queue:
        current = queue.popleft()
        for neighbor in neighbors(current):
            if neighbor in visited:
                continue
            visited.add(neighbor)
            if closest_point_distance(neighbor, center_lat, center_lng) <= radius_meters:
                cells.add(neighbor)
                queue.append(neighbor)

    return cells


def polygon_bounds(polygon: Polygon) -> GeohashBounds:
    """Bounding box of a polygon given as (lat, lng) pairs."""
    if not polygon:
        raise InvalidArgument("Polygon must have at least one vertex")
    lats = [p[0] for p in polygon]
    lngs = [p[1] for p in polygon]
    return GeohashBounds(min_lat=min(lats), max_lat=max(lats), min_lng=min(lngs), max_lng=max(lngs))


def point_in_polygon(lat: float, lng: float, polygon: Polygon) -> bool:
    """Ray casting point-in-polygon test."""
    inside = False
    n = len(polygon)
    j = n - 1
    for i in range(n):
        yi, xi = polygon[i]
        yj, xj = polygon[j]
        if (yi > lat) != (yj > lat) and lng < (xj - xi) * (lat - yi) / (yj - yi) + xi:
            inside = not inside
        j = i
    return inside


def cells_in_polygon(polygon: Polygon, precision: int) -> Set[str]:
    """
    Get cells covering a polygon (approximation).

    Samples the polygon's bounding box on a grid at half the cell size and
    keeps the cell of every sample point that passes the ray casting test.
    Thin slivers narrower than half a cell can be missed.

    Args:
        polygon: Sequence of (lat, lng) vertices; closing vertex optional
        precision: Geohash precision

    Returns:
        Set of geohash strings
    """
    check_precision(precision)
    if len(polygon) < 3:
        raise InvalidArgument("Polygon must have at least 3 vertices")
    for lat, lng in polygon:
        check_coordinate(lat, lng)

    b = polygon_bounds(polygon)
    cell_lat, cell_lng = PRECISION_CELL_SIZE[precision]
    lat_step = cell_lat / METERS_PER_DEGREE * 0.5
    lng_step = cell_lng / (METERS_PER_DEGREE * math.cos(math.radians((b.min_lat + b.max_lat) / 2))) * 0.5

    cells: Set[str] = set()
    lat = b.min_lat
    while lat <= b.max_lat:
        lng = b.min_lng
        while lng <= b.max_lng:
            if point_in_polygon(lat, lng, polygon):
                cells.add(encode(lat, lng, precision))
            lng += lng_step
        lat += lat_step
    return cells


def truncate(geohash: str, precision: int) -> str:
    """Truncate a geohash to a lower precision (reveal less)."""
    if precision >= len(geohash):
        return geohash
    if precision < 1:
        return ""
    return geohash[:precision]


def shares_prefix(hash1: str, hash2: str, min_length: int) -> bool:
    """True if both hashes agree on their first ``min_length`` characters."""
    return truncate(hash1, min_length) == truncate(hash2, min_length)


def precision_for_radius(radius_meters: float) -> int:
    """
    Precision whose cells are the largest that still fit the circle's diameter.

    Scans from coarse to fine and returns the first precision with a cell
    side of at most ``2 * radius_meters``, so a circle spans a handful of
    cells per axis. Radii below the finest cell get MAX_PRECISION.

    Example:
        >>> precision_for_radius(500)
        7
    """
    if radius_meters < 0:
        raise InvalidArgument("Radius must be non-negative")
    for p in range(MIN_PRECISION, MAX_PRECISION + 1):
        if max(PRECISION_CELL_SIZE[p]) <= radius_meters * 2:
            return p
    return MAX_PRECISION
