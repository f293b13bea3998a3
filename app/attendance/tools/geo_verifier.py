# app/attendance/tools/geo_verifier.py

import math

EARTH_RADIUS_M = 6371000.0
DEFAULT_ALLOWED_RADIUS_M = 50.0

# Absorbs floating point error so two points exactly `allowed_radius` apart pass.
DISTANCE_TOLERANCE_M = 1e-6


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Great-circle distance between two coordinates on a spherical earth.

    Args:
        lat1, lon1: First point in decimal degrees.
        lat2, lon2: Second point in decimal degrees.

    Returns:
        float: Distance in meters. NaN inputs propagate as NaN; callers must
        reject non-finite coordinates before calling.
    """
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = (math.sin(d_phi / 2) ** 2
         + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def within_radius(distance: float, allowed_radius: float) -> bool:
    return distance <= allowed_radius + DISTANCE_TOLERANCE_M


def is_valid_coordinate(latitude, longitude) -> bool:
    """True when both values are finite numbers inside the WGS84 ranges."""
    try:
        lat = float(latitude)
        lng = float(longitude)
    except (TypeError, ValueError):
        return False
    if not (math.isfinite(lat) and math.isfinite(lng)):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0


def format_radius(allowed_radius: float) -> str:
    # 50.0 -> "50", 12.5 -> "12.5"
    return f"{allowed_radius:g}"


def describe_distance(distance: float, allowed_radius: float) -> str:
    """Only the rounded distance and the limit are disclosed to the caller."""
    return f"Too far: {round(distance)}m away (max {format_radius(allowed_radius)}m)"
