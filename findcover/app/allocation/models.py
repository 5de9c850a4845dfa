"""
models.py — Data structures for shelter allocation.

Defines:
    • Person, Family         — who needs cover
    • Shelter, ShelterStatus — where they can go, and how full it is
    • PrioritySettings       — age priority + walking-distance budget
    • Assignment             — one person bound to one shelter
    • AllocationStatistics   — summary of a run
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from findcover.app.spatial.radius_utils import Coordinate


class ShelterStatus(str, Enum):
    """Occupancy band reported to clients."""
    AVAILABLE   = "Available"
    MODERATE    = "Moderate"     # ≥ 50 % occupied
    ALMOST_FULL = "AlmostFull"   # ≥ 80 % occupied
    FULL        = "Full"


def classify_occupancy(capacity: int, occupancy: int) -> ShelterStatus:
    if occupancy >= capacity:
        return ShelterStatus.FULL
    if occupancy >= 0.8 * capacity:
        return ShelterStatus.ALMOST_FULL
    if occupancy >= 0.5 * capacity:
        return ShelterStatus.MODERATE
    return ShelterStatus.AVAILABLE


def occupancy_percentage(capacity: int, occupancy: int) -> float:
    """A zero-capacity shelter is reported as 100 % occupied."""
    if capacity <= 0:
        return 100.0
    return round(occupancy / capacity * 100.0, 1)


@dataclass(frozen=True)
class Person:
    id: int
    age: int
    location: Coordinate
    name: str = ""
    needs_accessibility: bool = False


@dataclass
class Family:
    """Members must all land in the same shelter, or none of them do."""
    id: int
    member_ids: List[int] = field(default_factory=list)

    @property
    def size(self) -> int:
        return len(self.member_ids)


@dataclass
class Shelter:
    """
    A shelter as registered by its provider.

    ``occupancy`` is the value at registration time; while the service runs
    the occupancy ledger is the authoritative count.
    """
    id: int
    name: str
    location: Coordinate
    capacity: int
    occupancy: int = 0
    address: str = ""
    provider_id: Optional[int] = None
    is_accessible: bool = False
    pets_friendly: bool = False
    is_active: bool = True

    def __post_init__(self) -> None:
        if self.capacity < 0:
            raise ValueError(f"Shelter capacity must be >= 0, got {self.capacity}")
        if not (0 <= self.occupancy <= self.capacity):
            raise ValueError(
                f"Shelter occupancy must be in [0, {self.capacity}], got {self.occupancy}"
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "address": self.address,
            "lat": self.location.latitude,
            "lon": self.location.longitude,
            "capacity": self.capacity,
            "provider_id": self.provider_id,
            "is_accessible": self.is_accessible,
            "pets_friendly": self.pets_friendly,
            "is_active": self.is_active,
        }


@dataclass(frozen=True)
class PrioritySettings:
    """
    Knobs for a single allocation run.

    Attributes
    ----------
    enable_age_priority : bool
        When False every candidate pair scores 0 and only distance matters.
    max_travel_time_minutes : float
        Time budget to reach a shelter.
    walking_speed_km_per_minute : float
        Converts the time budget into a distance cap.
    """
    enable_age_priority: bool = True
    max_travel_time_minutes: float = 1.0
    walking_speed_km_per_minute: float = 0.6

    @property
    def max_distance_km(self) -> float:
        return self.max_travel_time_minutes * self.walking_speed_km_per_minute

    @classmethod
    def from_settings(cls, settings) -> "PrioritySettings":
        return cls(
            enable_age_priority=settings.ENABLE_AGE_PRIORITY,
            max_travel_time_minutes=settings.MAX_TRAVEL_TIME_MINUTES,
            walking_speed_km_per_minute=settings.WALKING_SPEED_KM_PER_MINUTE,
        )


@dataclass(frozen=True)
class Assignment:
    person_id: int
    shelter_id: int
    distance_km: float
    family_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "person_id": self.person_id,
            "shelter_id": self.shelter_id,
            "distance_km": round(self.distance_km, 4),
            "family_id": self.family_id,
        }


@dataclass
class AllocationStatistics:
    total_people: int = 0
    assigned_count: int = 0
    unassigned_count: int = 0
    assignment_percentage: float = 0.0
    total_capacity: int = 0
    average_distance_km: float = 0.0
    min_distance_km: float = 0.0
    max_distance_km: float = 0.0
    execution_time_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_people": self.total_people,
            "assigned_count": self.assigned_count,
            "unassigned_count": self.unassigned_count,
            "assignment_percentage": round(self.assignment_percentage, 2),
            "total_capacity": self.total_capacity,
            "average_distance_km": round(self.average_distance_km, 4),
            "min_distance_km": round(self.min_distance_km, 4),
            "max_distance_km": round(self.max_distance_km, 4),
            "execution_time_ms": round(self.execution_time_ms, 2),
        }
