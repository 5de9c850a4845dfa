"""
models.py — Results returned by the emergency response service.

The API layer maps these onto its pydantic response schemas.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from findcover.app.allocation.models import Shelter
from findcover.app.tracking.models import ActionType, UserStatus


@dataclass
class ShelterDetails:
    shelter_id: int
    name: str
    address: str
    latitude: float
    longitude: float
    distance_km: Optional[float] = None

    @classmethod
    def from_shelter(cls, shelter: Shelter, distance_km: Optional[float] = None) -> "ShelterDetails":
        return cls(
            shelter_id=shelter.id,
            name=shelter.name,
            address=shelter.address,
            latitude=shelter.location.latitude,
            longitude=shelter.location.longitude,
            distance_km=distance_km,
        )


@dataclass
class RouteInfo:
    distance_km: float
    duration_seconds: float
    estimated_arrival_time: datetime
    polyline: str = ""
    instructions: List[str] = field(default_factory=list)
    is_estimate: bool = False  # True when the routing provider was unavailable

    @property
    def current_instruction(self) -> Optional[str]:
        return self.instructions[0] if self.instructions else None


@dataclass
class ShelterRouteResult:
    success: bool
    message: str
    requires_action: bool = False
    action_type: Optional[ActionType] = None
    has_arrived: bool = False
    alert_id: Optional[int] = None
    shelter: Optional[ShelterDetails] = None
    route: Optional[RouteInfo] = None


@dataclass
class LocationUpdateResult:
    success: bool
    message: str
    is_tracked: bool = False
    requires_action: bool = False
    action_type: Optional[ActionType] = None
    has_arrived: bool = False
    distance_remaining_km: Optional[float] = None
    estimated_time_remaining_seconds: Optional[float] = None
    current_instruction: Optional[str] = None
    updated_route: Optional[RouteInfo] = None


@dataclass
class EmergencyStatusResult:
    is_alert_active: bool
    user_status: UserStatus
    message: Optional[str] = None
    shelter_id: Optional[int] = None
    time_in_shelter_seconds: Optional[float] = None
    requires_action: bool = False
    action_type: Optional[ActionType] = None


@dataclass
class AreaSheltersStatus:
    total_shelters: int
    available_shelters: int
    full_shelters: int
    shelters: List[Dict[str, Any]] = field(default_factory=list)
