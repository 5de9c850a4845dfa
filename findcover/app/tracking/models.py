"""
models.py — Allocation records and per-user tracking sessions.

Allocation lifecycle:

    EN_ROUTE ──(< 10 m)──▶ ARRIVED ──(> 50 m, alert active)──▶ LEFT_SHELTER
        ▲                     ▲                                      │
        │                     └─────────────(< 10 m)─────────────────┘
        │
    any non-terminal ──(alert end)──▶ COMPLETED
    any non-terminal ──(release)────▶ RELEASED

COMPLETED and RELEASED are terminal. At most one non-terminal allocation
exists per (user, alert).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from findcover.app.routing.provider import RouteSummary
from findcover.app.spatial.radius_utils import Coordinate


def _now() -> datetime:
    return datetime.now(timezone.utc)


class AllocationStatus(str, Enum):
    EN_ROUTE     = "EN_ROUTE"
    ARRIVED      = "ARRIVED"
    LEFT_SHELTER = "LEFT_SHELTER"
    RELEASED     = "RELEASED"
    COMPLETED    = "COMPLETED"

    @property
    def is_terminal(self) -> bool:
        return self in (AllocationStatus.RELEASED, AllocationStatus.COMPLETED)


class ActionType(str, Enum):
    """What the client should do next."""
    NAVIGATE          = "NAVIGATE"
    FIND_ALTERNATIVE  = "FIND_ALTERNATIVE"
    ROUTE_UPDATED     = "ROUTE_UPDATED"
    RETURN_TO_SHELTER = "RETURN_TO_SHELTER"


class UserStatus(str, Enum):
    """Status reported by the emergency-status check."""
    NOT_ALLOCATED = "NOT_ALLOCATED"
    NO_ALERT      = "NO_ALERT"
    ALERT_ENDED   = "ALERT_ENDED"
    EN_ROUTE      = "EN_ROUTE"
    ARRIVED       = "ARRIVED"
    LEFT_SHELTER  = "LEFT_SHELTER"


@dataclass
class Allocation:
    """A user bound to a shelter for one alert."""
    id: int
    user_id: int
    shelter_id: int
    alert_id: int
    distance_km: float
    allocated_at: datetime = field(default_factory=_now)
    status: AllocationStatus = AllocationStatus.EN_ROUTE
    arrived_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return not self.status.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "shelter_id": self.shelter_id,
            "alert_id": self.alert_id,
            "distance_km": round(self.distance_km, 4),
            "allocated_at": self.allocated_at.isoformat(),
            "status": self.status.value,
            "arrived_at": self.arrived_at.isoformat() if self.arrived_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
        }


@dataclass
class TrackingSession:
    user_id: int
    shelter_id: int
    alert_id: int
    allocation_id: int
    shelter_location: Coordinate
    last_location: Coordinate
    last_update: datetime
    status: AllocationStatus = AllocationStatus.EN_ROUTE
    closest_distance_km: float = float("inf")
    route: Optional[RouteSummary] = None


@dataclass
class TrackingUpdate:
    """Outcome of feeding one location fix into the state machine."""
    is_tracked: bool
    status: Optional[AllocationStatus] = None
    shelter_id: Optional[int] = None
    distance_km: Optional[float] = None
    estimated_seconds: Optional[float] = None
    has_arrived: bool = False
    has_left: bool = False
    route_updated: bool = False
    route: Optional[RouteSummary] = None

    @property
    def current_instruction(self) -> Optional[str]:
        return self.route.current_instruction if self.route else None
