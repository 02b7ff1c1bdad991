"""
Straight-line distance estimates.

Used only when no routing service is configured (local development, or
coordinates supplied by the client app).  Great-circle distance is scaled
by ``ROAD_FACTOR`` because roads are never straight lines.  In production
the Google distance-matrix client returns real road distances.

Complexity: O(1) per leg.
"""

import math

EARTH_RADIUS_KM = 6_371.0
ROAD_FACTOR = 1.4


def haversine_km(
    lat1: float, lng1: float, lat2: float, lng2: float
) -> float:
    """Return the great-circle distance in **km** between two points."""
    lat1_r, lat2_r = math.radians(lat1), math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)

    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1_r) * math.cos(lat2_r) * math.sin(dlng / 2) ** 2
    )
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


def road_distance_km(points: list[tuple[float, float]]) -> float:
    """Estimated road distance along an ordered list of (lat, lng) stops."""
    total = 0.0
    for (lat1, lng1), (lat2, lng2) in zip(points, points[1:]):
        total += haversine_km(lat1, lng1, lat2, lng2)
    return round(total * ROAD_FACTOR, 1)
