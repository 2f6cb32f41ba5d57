from __future__ import annotations

import math

MEAN_EARTH_RADIUS_METERS = 6_371_000.0


def haversine_meters(
    lat1: float,
    lon1: float,
    lat2: float,
    lon2: float,
    radius: float = MEAN_EARTH_RADIUS_METERS,
) -> float:
    """Great-circle distance in meters between two points given in degrees."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    # Rounding can push a a hair past 1 for antipodal points.
    a = min(1.0, max(0.0, a))
    return radius * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
