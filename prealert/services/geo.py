"""Closed-form distance and travel-time estimates.

Everything here is pure: no I/O and no hidden state. The routed estimate
in ``routing.py`` falls back to these helpers when the routing service
cannot be used.
"""

import math

from prealert.models.geo import Coordinates, RouteEstimate

EARTH_RADIUS_KM = 6371.0
DEFAULT_SPEED_KMH = 40.0
MIN_ETA_MINUTES = 3
# Conservative stand-in for a routed duration: 2 minutes per km
FALLBACK_SECONDS_PER_KM = 120.0


def is_usable(point: Coordinates | None) -> bool:
    """Return True when ``point`` holds finite, in-range coordinates."""
    if point is None:
        return False
    try:
        lat, lng = float(point.lat), float(point.lng)
    except (AttributeError, TypeError, ValueError):
        return False
    if not (math.isfinite(lat) and math.isfinite(lng)):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0


def haversine_km(a: Coordinates, b: Coordinates) -> float:
    """Great-circle distance in km, unrounded."""
    d_lat = math.radians(b.lat - a.lat)
    d_lng = math.radians(b.lng - a.lng)
    h = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(a.lat)) * math.cos(math.radians(b.lat)) * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def estimate_straight_line(a: Coordinates, b: Coordinates) -> float:
    """Haversine distance in km, rounded to one decimal for display."""
    return round(haversine_km(a, b), 1)


def estimate_eta(distance_km, speed_kmh: float = DEFAULT_SPEED_KMH) -> int:
    """Whole minutes to cover ``distance_km`` at ``speed_kmh``.

    Rounds up with a 3 minute floor. Zero, negative, non-finite or
    non-numeric distances give 0 rather than an error.
    """
    if isinstance(distance_km, bool) or not isinstance(distance_km, (int, float)):
        return 0
    if not math.isfinite(distance_km) or distance_km <= 0:
        return 0
    if not speed_kmh or speed_kmh <= 0:
        speed_kmh = DEFAULT_SPEED_KMH
    # round() first so 2 km at 40 km/h is 3 minutes, not 4
    minutes = math.ceil(round(distance_km * 60 / speed_kmh, 6))
    return max(MIN_ETA_MINUTES, minutes)


def straight_line_route(a: Coordinates, b: Coordinates) -> RouteEstimate:
    """Routed-shape estimate built from the haversine distance."""
    meters = haversine_km(a, b) * 1000
    return RouteEstimate(
        distance_meters=meters,
        duration_seconds=(meters / 1000) * FALLBACK_SECONDS_PER_KM,
        coordinates=[(a.lng, a.lat), (b.lng, b.lat)],
        source="straight_line",
    )


def is_within_radius(a: Coordinates, b: Coordinates, radius_meters: float) -> bool:
    return haversine_km(a, b) * 1000 <= radius_meters


def format_distance(meters: float) -> str:
    if meters < 1000:
        return f"{round(meters)} m"
    return f"{meters / 1000:.1f} km"


def format_duration(seconds: float) -> str:
    minutes = round(seconds / 60)
    if minutes < 60:
        return f"{minutes} min"
    return f"{minutes // 60}h {minutes % 60}m"
