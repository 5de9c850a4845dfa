"""
Pydantic schemas for the shelter allocation API.

Separated from the route handlers so they are reusable across the routers
and tests. Request coordinates are range-checked here; the "(0, 0) means no
fix" rule is enforced by the service so every entry point shares it.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Shared
# ---------------------------------------------------------------------------

class PolygonPoint(BaseModel):
    lat: float = Field(..., ge=-90.0, le=90.0)
    lon: float = Field(..., ge=-180.0, le=180.0)


# ---------------------------------------------------------------------------
# Location / emergency requests
# ---------------------------------------------------------------------------

class LocationRequest(BaseModel):
    latitude: float = Field(..., ge=-90.0, le=90.0, examples=[32.0853])
    longitude: float = Field(..., ge=-180.0, le=180.0, examples=[34.7818])


class UserLocationRequest(LocationRequest):
    user_id: int = Field(..., ge=1, examples=[7])


# ---------------------------------------------------------------------------
# Location / emergency responses
# ---------------------------------------------------------------------------

class LocationCheckResponse(BaseModel):
    is_in_zone: bool
    zone_name: Optional[str] = None
    has_active_alert: bool
    alert_id: Optional[int] = None
    response_time_remaining: Optional[int] = None
    message: str
    timestamp: datetime


class ShelterDetailsOut(BaseModel):
    shelter_id: int
    name: str
    address: str = ""
    latitude: float
    longitude: float
    distance_km: Optional[float] = None


class RouteInfoOut(BaseModel):
    distance_km: float
    duration_seconds: float
    estimated_arrival_time: datetime
    polyline: str = ""
    current_instruction: Optional[str] = None
    instructions: List[str] = Field(default_factory=list)
    is_estimate: bool = False


class ShelterRouteResponse(BaseModel):
    success: bool
    message: str
    has_arrived: bool = False
    alert_id: Optional[int] = None
    shelter_details: Optional[ShelterDetailsOut] = None
    route_info: Optional[RouteInfoOut] = None
    requires_action: bool = False
    action_type: Optional[str] = None


class LocationUpdateResponse(BaseModel):
    success: bool
    message: str
    has_arrived: bool = False
    distance_remaining_km: Optional[float] = None
    estimated_time_remaining_seconds: Optional[float] = None
    current_instruction: Optional[str] = None
    updated_route: Optional[RouteInfoOut] = None
    requires_action: bool = False
    action_type: Optional[str] = None


class EmergencyStatusResponse(BaseModel):
    is_alert_active: bool
    user_status: str
    message: Optional[str] = None
    shelter_id: Optional[int] = None
    time_in_shelter_seconds: Optional[float] = None
    requires_action: bool = False
    action_type: Optional[str] = None


class AreaShelterOut(BaseModel):
    id: int
    name: str
    address: str = ""
    lat: float
    lon: float
    capacity: int
    occupancy: int
    available_spaces: int
    occupancy_percentage: float
    status: str
    distance_km: float


class AreaSheltersStatusResponse(BaseModel):
    total_shelters: int
    available_shelters: int
    full_shelters: int
    shelters: List[AreaShelterOut]


class ReleaseResponse(BaseModel):
    user_id: int
    released_allocations: int


# ---------------------------------------------------------------------------
# Batch allocation
# ---------------------------------------------------------------------------

class PersonInput(BaseModel):
    id: int
    age: int = Field(..., ge=0, le=130)
    latitude: float = Field(..., ge=-90.0, le=90.0)
    longitude: float = Field(..., ge=-180.0, le=180.0)


class FamilyInput(BaseModel):
    id: int
    member_ids: List[int] = Field(..., min_length=1)


class ShelterInput(BaseModel):
    id: int
    name: str = ""
    latitude: float = Field(..., ge=-90.0, le=90.0)
    longitude: float = Field(..., ge=-180.0, le=180.0)
    capacity: int = Field(..., ge=0)
    occupancy: int = Field(0, ge=0)
    address: str = ""
    is_accessible: bool = False

    @field_validator("occupancy")
    @classmethod
    def occupancy_within_capacity(cls, v: int, info) -> int:
        capacity = info.data.get("capacity")
        if capacity is not None and v > capacity:
            raise ValueError("occupancy cannot exceed capacity")
        return v


class PrioritySettingsInput(BaseModel):
    enable_age_priority: bool = True
    max_travel_time_minutes: float = Field(1.0, gt=0)
    walking_speed_km_per_minute: float = Field(0.6, gt=0)


class AllocationRunRequest(BaseModel):
    people: List[PersonInput] = Field(..., min_length=1)
    shelters: List[ShelterInput] = Field(..., min_length=1)
    families: List[FamilyInput] = Field(default_factory=list)
    priority_settings: Optional[PrioritySettingsInput] = None
    use_walking_distances: bool = False
    include_routes: bool = False


class AssignmentOut(BaseModel):
    person_id: int
    shelter_id: int
    distance_km: float
    family_id: Optional[int] = None
    route: Optional[RouteInfoOut] = None


class AllocationStatisticsOut(BaseModel):
    total_people: int
    assigned_count: int
    unassigned_count: int
    assignment_percentage: float
    total_capacity: int
    average_distance_km: float
    min_distance_km: float
    max_distance_km: float
    execution_time_ms: float


class AllocationRunResponse(BaseModel):
    assignments: List[AssignmentOut]
    unassigned_person_ids: List[int]
    statistics: AllocationStatisticsOut


# ---------------------------------------------------------------------------
# Administration: zones, alerts, shelters, users
# ---------------------------------------------------------------------------

class ZoneCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, examples=["Tel Aviv - Center"])
    polygon: List[PolygonPoint] = Field(..., min_length=3)
    response_time_seconds: int = Field(90, ge=0)


class ZoneOut(BaseModel):
    id: int
    name: str
    polygon: List[PolygonPoint]
    response_time_seconds: int


class AlertCreateRequest(BaseModel):
    zone_name: str = Field(..., min_length=1)
    latitude: Optional[float] = Field(None, ge=-90.0, le=90.0)
    longitude: Optional[float] = Field(None, ge=-180.0, le=180.0)
    alert_type: str = "missile"


class AlertOut(BaseModel):
    id: int
    zone_name: str
    center: PolygonPoint
    started_at: datetime
    alert_type: str
    is_active: bool
    ended_at: Optional[datetime] = None


class AlertEndResponse(BaseModel):
    alert: AlertOut
    allocations_completed: int


class ShelterCreateRequest(BaseModel):
    name: str = Field(..., min_length=1)
    latitude: float = Field(..., ge=-90.0, le=90.0)
    longitude: float = Field(..., ge=-180.0, le=180.0)
    capacity: int = Field(..., ge=0)
    address: str = ""
    provider_id: Optional[int] = None
    is_accessible: bool = False
    pets_friendly: bool = False


class ShelterOut(BaseModel):
    id: int
    name: str
    address: str
    lat: float
    lon: float
    capacity: int
    provider_id: Optional[int] = None
    is_accessible: bool
    pets_friendly: bool
    is_active: bool


class UserCreateRequest(BaseModel):
    id: int = Field(..., ge=1)
    age: int = Field(..., ge=0, le=130)
    name: str = ""
    needs_accessibility: bool = False


class UserPreferencesRequest(BaseModel):
    needs_accessibility: bool


class ShelterStatusRequest(BaseModel):
    is_active: bool
