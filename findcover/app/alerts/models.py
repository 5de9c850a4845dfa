"""
models.py — Data structures for alert zones and active alerts.

Defines:
    • AlertZone           — a named polygon with a response-time budget
    • ActiveAlert         — an alert currently (or previously) raised for a zone
    • LocationCheckResult — outcome of testing a coordinate against the zones

═══════════════════════════════════════════════════════════════════════════
ZONE ↔ ALERT CORRELATION
═══════════════════════════════════════════════════════════════════════════

Alerts arrive from an external feed that names the affected area in its own
spelling ("Tel-Aviv Center", "tel aviv  center"). Zones are matched to
alerts by *normalised* name:

    normalise(s) = s.strip() with spaces and "-" removed, compared casefold

At most one active alert may exist per zone at a time.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from findcover.app.spatial.radius_utils import Coordinate


def _now() -> datetime:
    return datetime.now(timezone.utc)


# (lat, lon) vertex, decimal degrees
Vertex = Tuple[float, float]


# ═══════════════════════════════════════════════════════════════════════════
# Data Structures
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class AlertZone:
    """
    A geographic zone that alerts can be raised for.

    Attributes
    ----------
    id : int
        Store identifier.
    name : str
        Display name, also the key alerts are matched on.
    polygon : list of (lat, lon)
        Ordered vertices; the ring is closed implicitly. Fewer than three
        vertices describe no area and never contain a point.
    response_time_seconds : int
        Time people in the zone have to reach cover after an alert starts.
    """
    id: int
    name: str
    polygon: List[Vertex] = field(default_factory=list)
    response_time_seconds: int = 90

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "polygon": [{"lat": lat, "lon": lon} for lat, lon in self.polygon],
            "response_time_seconds": self.response_time_seconds,
        }


@dataclass
class ActiveAlert:
    """An alert raised for a zone. ``is_active`` flips to False on end."""
    id: int
    zone_name: str
    center: Coordinate
    started_at: datetime = field(default_factory=_now)
    alert_type: str = "missile"
    is_active: bool = True
    ended_at: Optional[datetime] = None

    def elapsed_seconds(self, now: datetime) -> float:
        return (now - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "zone_name": self.zone_name,
            "center": self.center.to_dict(),
            "started_at": self.started_at.isoformat(),
            "alert_type": self.alert_type,
            "is_active": self.is_active,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
        }


@dataclass
class LocationCheckResult:
    """Result of ``GeofenceMatcher.check_location``."""
    is_in_zone: bool
    has_active_alert: bool
    message: str
    timestamp: datetime = field(default_factory=_now)
    zone_name: Optional[str] = None
    alert_id: Optional[int] = None
    response_time_remaining: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_in_zone": self.is_in_zone,
            "zone_name": self.zone_name,
            "has_active_alert": self.has_active_alert,
            "alert_id": self.alert_id,
            "response_time_remaining": self.response_time_remaining,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }
