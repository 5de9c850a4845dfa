"""
geo_fence.py — Polygon zone membership and alert lookup for a coordinate.

═══════════════════════════════════════════════════════════════════════════
POINT-IN-POLYGON (crossing number)
═══════════════════════════════════════════════════════════════════════════

Cast a horizontal ray from the point towards +longitude and count how many
polygon edges it crosses; an odd count means inside.

For each edge (p1 → p2), with y = latitude and x = longitude, the ray can
only cross it when

    min(p1.y, p2.y) < lat ≤ max(p1.y, p2.y)      (half-open vertical span)
    lon ≤ max(p1.x, p2.x)
    p1.y ≠ p2.y                                    (horizontal edges never count)

and the crossing x-coordinate is

    x_int = (lat − p1.y) · (p2.x − p1.x) / (p2.y − p1.y) + p1.x

The half-open span means a ray passing exactly through a shared vertex is
counted once, for exactly one of the two edges meeting there.

Zones are a few dozen vertices, so the O(n) walk per zone is negligible.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional, Sequence

from findcover.app.alerts.models import (
    ActiveAlert,
    AlertZone,
    LocationCheckResult,
    Vertex,
    _now,
)

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Geometry
# ═══════════════════════════════════════════════════════════════════════════

def contains_point(polygon: Sequence[Vertex], lat: float, lon: float) -> bool:
    """
    Crossing-number test of (lat, lon) against a polygon.

    Parameters
    ----------
    polygon : sequence of (lat, lon)
        Ordered ring; the closing edge is implied.
    lat, lon : float
        Point to test, decimal degrees.

    Returns
    -------
    bool
        True when the point is inside. Polygons with fewer than three
        vertices contain nothing.

    Examples
    --------
    >>> tri = [(0.0, 0.0), (0.0, 2.0), (2.0, 1.0)]
    >>> contains_point(tri, 0.66, 1.0)
    True
    >>> contains_point(tri, 10.0, 10.0)
    False
    """
    n = len(polygon)
    if n < 3:
        return False

    inside = False
    p1y, p1x = polygon[0]
    for i in range(1, n + 1):
        p2y, p2x = polygon[i % n]
        if (
            min(p1y, p2y) < lat <= max(p1y, p2y)
            and lon <= max(p1x, p2x)
            and p1y != p2y
        ):
            x_int = (lat - p1y) * (p2x - p1x) / (p2y - p1y) + p1x
            if p1x == p2x or lon <= x_int:
                inside = not inside
        p1y, p1x = p2y, p2x

    return inside


def normalize_zone_name(name: Optional[str]) -> str:
    """Canonical form used to match alert area names to zones."""
    if not name:
        return ""
    return name.strip().replace(" ", "").replace("-", "").casefold()


def matches_alert_area(zone_name: str, area_name: str) -> bool:
    """True when a zone and an alert's area name refer to the same place."""
    return normalize_zone_name(zone_name) == normalize_zone_name(area_name)


# ═══════════════════════════════════════════════════════════════════════════
# Matcher
# ═══════════════════════════════════════════════════════════════════════════

class GeofenceMatcher:
    """
    Answers "is this coordinate inside an alerted zone, and for how long".

    Zones and alerts are read from the entity store on every call so the
    matcher never holds stale state; ``clock`` is injectable for tests.
    """

    def __init__(self, store, clock: Callable[[], datetime] = _now):
        self.store = store
        self.clock = clock

    def find_zone(self, lat: float, lon: float) -> Optional[AlertZone]:
        """First zone (store order) whose polygon contains the point."""
        for zone in self.store.list_zones():
            if contains_point(zone.polygon, lat, lon):
                return zone
        return None

    def find_active_alert(self, zone_name: str) -> Optional[ActiveAlert]:
        for alert in self.store.list_active_alerts():
            if matches_alert_area(zone_name, alert.zone_name):
                return alert
        return None

    def check_location(self, lat: float, lon: float) -> LocationCheckResult:
        now = self.clock()
        zone = self.find_zone(lat, lon)
        if zone is None:
            return LocationCheckResult(
                is_in_zone=False,
                has_active_alert=False,
                message="Location is not inside any alert zone",
                timestamp=now,
            )

        alert = self.find_active_alert(zone.name)
        if alert is None:
            return LocationCheckResult(
                is_in_zone=True,
                zone_name=zone.name,
                has_active_alert=False,
                message=f"No active alert in {zone.name}",
                timestamp=now,
            )

        remaining = zone.response_time_seconds - int(alert.elapsed_seconds(now))
        if remaining > 0:
            message = (
                f"Active alert in {zone.name} - "
                f"{remaining} seconds left to reach a shelter"
            )
        else:
            message = f"Active alert in {zone.name} - stay in the protected space"

        logger.info(
            "Location (%.5f, %.5f) inside alerted zone %s, %ds remaining",
            lat, lon, zone.name, remaining,
            extra={"alert_id": alert.id, "zone_name": zone.name},
        )
        return LocationCheckResult(
            is_in_zone=True,
            zone_name=zone.name,
            has_active_alert=True,
            alert_id=alert.id,
            response_time_remaining=remaining,
            message=message,
            timestamp=now,
        )

    def check_user(self, user_id: int) -> LocationCheckResult:
        """Run ``check_location`` against the user's last recorded position."""
        location = self.store.get_last_location(user_id)
        if location is None:
            return LocationCheckResult(
                is_in_zone=False,
                has_active_alert=False,
                message="No known location for user",
                timestamp=self.clock(),
            )
        return self.check_location(location.latitude, location.longitude)
