"""
Distance calculation using the Haversine formula.

Assumption
----------
Drivers are ranked by great-circle (Haversine) distance to the pickup, not
by road distance or ETA.  Route/ETA computation belongs to the mapping
service and is not part of dispatch.

Complexity: O(1) per call.
"""

from __future__ import annotations

import math

from .entities import Location
from .errors import InvalidCoordinates

EARTH_RADIUS_KM = 6_371.0


def validate_location(point: Location) -> Location:
    """Return *point* unchanged, or raise ``InvalidCoordinates``."""
    lat, lng = point.lat, point.lng
    if not (math.isfinite(lat) and math.isfinite(lng)):
        raise InvalidCoordinates(f"Non-finite coordinate: ({lat}, {lng})")
    if not -90.0 <= lat <= 90.0:
        raise InvalidCoordinates(f"Latitude out of range: {lat}")
    if not -180.0 <= lng <= 180.0:
        raise InvalidCoordinates(f"Longitude out of range: {lng}")
    return point


def haversine_km(a: Location, b: Location) -> float:
    """Return the great-circle distance in **km** between two points."""
    validate_location(a)
    validate_location(b)

    lat1_r, lat2_r = math.radians(a.lat), math.radians(b.lat)
    dlat = math.radians(b.lat - a.lat)
    dlng = math.radians(b.lng - a.lng)

    h = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1_r) * math.cos(lat2_r) * math.sin(dlng / 2) ** 2
    )
    # min() guards against h drifting a hair above 1.0 for antipodal points
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(min(1.0, h)))
