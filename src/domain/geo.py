"""
Geodesy helpers on a spherical Earth.

Points are ``(longitude, latitude)`` pairs in degrees, the same order used
on the wire (GeoJSON style).  Distances are great-circle (Haversine)
distances in **km**; no routing engine is involved.

Complexity: O(1) per call, O(n) for ``route_length_km``.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Sequence

EARTH_RADIUS_KM = 6_371.0
DEFAULT_AVG_SPEED_KMH = 30.0

Point = Sequence[float]


@dataclass(frozen=True)
class BoundingBox:
    min_lat: float
    max_lat: float
    min_lon: float
    max_lon: float

    def contains(self, point: Point) -> bool:
        lon, lat = point[0], point[1]
        return self.min_lat <= lat <= self.max_lat and any(
            lo <= lon <= hi for lo, hi in self.longitude_ranges()
        )

    def longitude_ranges(self) -> list[tuple[float, float]]:
        """
        The longitude span as ``(lo, hi)`` ranges inside ``[-180, 180]``.

        A box crossing the antimeridian becomes two ranges, one on each side.
        """
        if self.max_lon - self.min_lon >= 360:
            return [(-180.0, 180.0)]
        if self.min_lon < -180:
            return [(self.min_lon + 360, 180.0), (-180.0, self.max_lon)]
        if self.max_lon > 180:
            return [(self.min_lon, 180.0), (-180.0, self.max_lon - 360)]
        return [(self.min_lon, self.max_lon)]


def round_half_up(value: float) -> int:
    """Round .5 away from zero for positives (``round`` would go to even)."""
    return math.floor(value + 0.5)


def haversine_km(p1: Point, p2: Point) -> float:
    """Return the great-circle distance in **km** between two points."""
    lon1, lat1 = p1[0], p1[1]
    lon2, lat2 = p2[0], p2[1]
    lat1_r, lat2_r = math.radians(lat1), math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)

    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1_r) * math.cos(lat2_r) * math.sin(dlon / 2) ** 2
    )
    return 2 * EARTH_RADIUS_KM * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def bearing_deg(p1: Point, p2: Point) -> float:
    """Initial compass bearing from *p1* to *p2*, in ``[0, 360)``."""
    lon1, lat1 = math.radians(p1[0]), math.radians(p1[1])
    lon2, lat2 = math.radians(p2[0]), math.radians(p2[1])

    y = math.sin(lon2 - lon1) * math.cos(lat2)
    x = math.cos(lat1) * math.sin(lat2) - math.sin(lat1) * math.cos(
        lat2
    ) * math.cos(lon2 - lon1)
    return (math.degrees(math.atan2(y, x)) + 360) % 360


def eta_minutes(
    distance_km: float, avg_speed_kmh: float = DEFAULT_AVG_SPEED_KMH
) -> int:
    return round_half_up(distance_km / avg_speed_kmh * 60)


def is_within_radius(center: Point, point: Point, radius_km: float) -> bool:
    return haversine_km(center, point) <= radius_km


def bounding_box(center: Point, radius_km: float) -> BoundingBox:
    """
    Lat/lon rectangle enclosing the circle of *radius_km* around *center*.

    Used as a cheap index-friendly prefilter before exact Haversine checks.
    The longitude span grows with ``1 / cos(lat)`` and is not clamped near
    the poles.
    """
    lon, lat = center[0], center[1]
    lat_change = math.degrees(radius_km / EARTH_RADIUS_KM)
    lon_change = lat_change / math.cos(math.radians(lat))
    return BoundingBox(
        min_lat=lat - lat_change,
        max_lat=lat + lat_change,
        min_lon=lon - lon_change,
        max_lon=lon + lon_change,
    )


def route_length_km(points: Iterable[Point]) -> float:
    """Sum of consecutive Haversine hops along an ordered route."""
    total = 0.0
    previous = None
    for point in points:
        if previous is not None:
            total += haversine_km(previous, point)
        previous = point
    return total


def validate_coordinates(point: Point) -> tuple[float, float]:
    """Return ``(lon, lat)`` or raise ``ValueError`` when out of range."""
    if len(point) != 2:
        raise ValueError("Coordinates must be [longitude, latitude]")
    lon, lat = float(point[0]), float(point[1])
    if not -180 <= lon <= 180 or not -90 <= lat <= 90:
        raise ValueError(f"Coordinates out of range: [{lon}, {lat}]")
    return lon, lat
