"""
radius_utils.py — Distances between people and shelters.

Everything here works in decimal degrees and kilometres on a spherical
Earth (R = 6371 km):

    a = sin²(Δφ/2) + cos φ₁ · cos φ₂ · sin²(Δλ/2)
    d = 2R · atan2(√a, √(1 − a))

Walking budgets are a few hundred metres, where the spherical error is far
below GPS noise. Distances are never rounded: the tracking thresholds are
10 m.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Callable, Iterable, List, NamedTuple, Optional, Tuple, TypeVar

EARTH_RADIUS_KM: float = 6371.0

T = TypeVar("T")


@dataclass(frozen=True)
class Coordinate:
    """A WGS84 point. Out-of-range values raise ``ValueError``."""
    latitude: float
    longitude: float

    def __post_init__(self) -> None:
        if not -90.0 <= self.latitude <= 90.0:
            raise ValueError(f"Latitude {self.latitude} outside [-90, 90]")
        if not -180.0 <= self.longitude <= 180.0:
            raise ValueError(f"Longitude {self.longitude} outside [-180, 180]")

    @property
    def is_unset(self) -> bool:
        """Mobile clients report (0, 0) before they have a GPS fix."""
        return is_missing_location(self.latitude, self.longitude)

    def to_dict(self) -> dict:
        return {"lat": self.latitude, "lon": self.longitude}


def is_missing_location(lat: Optional[float], lon: Optional[float]) -> bool:
    if lat is None or lon is None:
        return True
    return lat == 0.0 and lon == 0.0


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Great-circle distance in km between two raw latitude/longitude pairs.

    Examples
    --------
    >>> round(haversine_km(32.0853, 34.7818, 31.7683, 35.2137), 1)
    53.9
    >>> haversine_km(32.08, 34.78, 32.08, 34.78)
    0.0
    """
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    half_dphi = (phi2 - phi1) / 2.0
    half_dlambda = math.radians(lon2 - lon1) / 2.0
    a = math.sin(half_dphi) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(half_dlambda) ** 2
    return 2.0 * EARTH_RADIUS_KM * math.atan2(math.sqrt(a), math.sqrt(1.0 - a))


def haversine(point1: Coordinate, point2: Coordinate) -> float:
    return haversine_km(point1.latitude, point1.longitude, point2.latitude, point2.longitude)


# ═══════════════════════════════════════════════════════════════════════════
# Radius search
# ═══════════════════════════════════════════════════════════════════════════

class _Window(NamedTuple):
    """Latitude band plus a longitude half-width around the centre."""
    min_lat: float
    max_lat: float
    center_lon: float
    half_width_lon: float  # 180 means every longitude


def _bounding_box(center: Coordinate, radius_km: float) -> _Window:
    span = math.degrees(radius_km / EARTH_RADIUS_KM)
    min_lat = center.latitude - span
    max_lat = center.latitude + span
    if min_lat <= -90.0 or max_lat >= 90.0:
        # The circle covers a pole.
        return _Window(max(min_lat, -90.0), min(max_lat, 90.0), center.longitude, 180.0)
    half_width = span / math.cos(math.radians(center.latitude))
    return _Window(min_lat, max_lat, center.longitude, min(half_width, 180.0))


def _inside_bbox(point: Coordinate, window: _Window) -> bool:
    if not window.min_lat <= point.latitude <= window.max_lat:
        return False
    # Longitude gap folded into [0, 180] so the antimeridian is not an edge.
    gap = abs((point.longitude - window.center_lon + 180.0) % 360.0 - 180.0)
    return gap <= window.half_width_lon


def filter_within_radius(
    center: Coordinate,
    items: Iterable[T],
    radius_km: float,
    location_of: Callable[[T], Coordinate],
) -> List[Tuple[T, float]]:
    """
    Items whose location is at most ``radius_km`` from ``center``.

    Parameters
    ----------
    center : Coordinate
        Usually the person looking for a shelter.
    items : Iterable[T]
        Candidates such as shelters.
    radius_km : float
        Inclusive radius; must be positive.
    location_of : Callable[[T], Coordinate]
        Maps an item to its coordinate.

    Returns
    -------
    list of (item, distance_km)
        Nearest first. Equal distances keep their input order.
    """
    if radius_km <= 0:
        raise ValueError(f"Radius must be positive, got {radius_km}")

    window = _bounding_box(center, radius_km)
    found = []
    for item in items:
        where = location_of(item)
        if _inside_bbox(where, window):
            km = haversine(center, where)
            if km <= radius_km:
                found.append((item, km))
    # list.sort is stable
    found.sort(key=lambda hit: hit[1])
    return found


def format_distance(km: float) -> str:
    """'450 m' below one kilometre, '3.73 km' above."""
    if km < 1.0:
        return f"{km * 1000:.0f} m"
    return f"{km:.2f} km"
