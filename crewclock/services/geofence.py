"""
Geofence math.
Haversine distance, inside/outside classification and the flat-Earth offset
used to place synthesized positions around a site.
"""
import math
from dataclasses import dataclass
from typing import Optional
from ..config import settings


EARTH_RADIUS_M = 6371000
METERS_PER_DEGREE_LAT = 111320


@dataclass(frozen=True)
class Coordinate:
    lat: float
    lng: float

    def is_finite(self) -> bool:
        return _is_finite(self.lat) and _is_finite(self.lng)

    def is_null_island(self) -> bool:
        # (0, 0) is what devices and imports report when they have no fix
        return self.lat == 0 and self.lng == 0


def _is_finite(value) -> bool:
    if value is None or isinstance(value, bool):
        return False
    try:
        return math.isfinite(float(value))
    except (TypeError, ValueError):
        return False


def to_coordinate(lat, lng) -> Optional[Coordinate]:
    """Build a Coordinate from loose values, or None when either part is missing or non-finite."""
    if not (_is_finite(lat) and _is_finite(lng)):
        return None
    return Coordinate(float(lat), float(lng))


def haversine_distance(a: Coordinate, b: Coordinate) -> float:
    """
    Calculate the great circle distance between two points on Earth.

    Args:
        a: First coordinate
        b: Second coordinate

    Returns:
        Distance in meters
    """
    phi1 = math.radians(a.lat)
    phi2 = math.radians(b.lat)
    delta_phi = math.radians(b.lat - a.lat)
    delta_lambda = math.radians(b.lng - a.lng)

    h = (
        math.sin(delta_phi / 2) ** 2 +
        math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))

    return EARTH_RADIUS_M * c


def is_inside(distance_m: float, radius_m) -> bool:
    """
    Inside test against a geofence radius.

    Fails closed: a missing, non-finite or non-positive radius is never inside.
    """
    if not _is_finite(radius_m) or float(radius_m) <= 0:
        return False
    if not _is_finite(distance_m):
        return False
    return float(distance_m) <= float(radius_m)


def effective_radius(radius_m) -> float:
    """Site radius, or the configured default when absent/non-finite/non-positive."""
    if _is_finite(radius_m) and float(radius_m) > 0:
        return float(radius_m)
    return float(settings.geo_radius_m_default)


def round_meters(distance_m: float) -> int:
    # Half-up, so 279.5 -> 280 regardless of banker's rounding
    return int(math.floor(distance_m + 0.5))


def offset_point(origin: Coordinate, meters: float, bearing_rad: float) -> Coordinate:
    """
    Project a point `meters` away from `origin` along `bearing_rad`.

    Local flat-Earth approximation: 111,320 m per degree of latitude and the
    longitude degree scaled by cos(latitude). At the poles the scale is zero
    and the longitude offset is dropped.
    """
    d_north = meters * math.cos(bearing_rad)
    d_east = meters * math.sin(bearing_rad)

    d_lat = d_north / METERS_PER_DEGREE_LAT
    lng_scale = METERS_PER_DEGREE_LAT * math.cos(math.radians(origin.lat))
    d_lng = d_east / lng_scale if abs(lng_scale) > 1e-9 else 0.0

    return Coordinate(origin.lat + d_lat, origin.lng + d_lng)


def measure(position: Optional[Coordinate], site_lat, site_lng, radius_m) -> tuple[Optional[int], Optional[bool]]:
    """
    Distance/inside pair for a position against a site's geometry.

    Returns (None, None) when the position or the site center is unknown,
    including the (0, 0) "no fix" sentinel, so "no data" stays distinguishable
    from "confirmed outside".
    """
    center = to_coordinate(site_lat, site_lng)
    if position is None or center is None:
        return None, None
    if not position.is_finite() or position.is_null_island() or center.is_null_island():
        return None, None
    distance = round_meters(haversine_distance(position, center))
    return distance, is_inside(distance, effective_radius(radius_m))
