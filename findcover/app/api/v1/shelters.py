"""
FastAPI routes: shelter and user registration.

Provides endpoints to:
    POST /api/v1/shelters                  — register a shelter (409 on duplicate by provider + location)
    GET  /api/v1/shelters                  — list active shelters (?include_inactive=true for all)
    PUT  /api/v1/shelters/{id}/status      — open or close a shelter for new allocations
    POST /api/v1/users                     — register a user (id + age drive allocation priority)
    PUT  /api/v1/users/{id}/preferences    — set whether the user needs step-free access
"""

from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, Query

from findcover.app.allocation.models import Person, Shelter
from findcover.app.api.dependencies import get_service
from findcover.app.api.schemas import (
    ShelterCreateRequest,
    ShelterOut,
    ShelterStatusRequest,
    UserCreateRequest,
    UserPreferencesRequest,
)
from findcover.app.services.emergency_service import EmergencyResponseService, to_coordinate
from findcover.app.spatial.radius_utils import Coordinate

router = APIRouter(prefix="/api/v1/shelters", tags=["shelters"])
users_router = APIRouter(prefix="/api/v1/users", tags=["users"])


def _user_out(user: Person) -> dict:
    return {
        "id": user.id,
        "age": user.age,
        "name": user.name,
        "needs_accessibility": user.needs_accessibility,
    }


@router.post("", response_model=ShelterOut, status_code=201)
async def create_shelter(
    body: ShelterCreateRequest,
    service: EmergencyResponseService = Depends(get_service),
) -> ShelterOut:
    shelter = service.add_shelter(Shelter(
        id=0,
        name=body.name,
        location=to_coordinate(body.latitude, body.longitude),
        capacity=body.capacity,
        address=body.address,
        provider_id=body.provider_id,
        is_accessible=body.is_accessible,
        pets_friendly=body.pets_friendly,
    ))
    return ShelterOut(**shelter.to_dict())


@router.get("", response_model=List[ShelterOut])
async def list_shelters(
    include_inactive: bool = Query(False),
    service: EmergencyResponseService = Depends(get_service),
) -> List[ShelterOut]:
    shelters = service.store.list_shelters(active_only=not include_inactive)
    return [ShelterOut(**s.to_dict()) for s in shelters]


@router.put("/{shelter_id}/status", response_model=ShelterOut)
async def set_shelter_status(
    shelter_id: int,
    body: ShelterStatusRequest,
    service: EmergencyResponseService = Depends(get_service),
) -> ShelterOut:
    shelter = service.set_shelter_active(shelter_id, body.is_active)
    return ShelterOut(**shelter.to_dict())


@users_router.post("", status_code=201)
async def register_user(
    body: UserCreateRequest,
    service: EmergencyResponseService = Depends(get_service),
) -> dict:
    # Location is supplied per request; (0, 0) marks "unknown" until then.
    user = Person(
        id=body.id,
        age=body.age,
        name=body.name,
        needs_accessibility=body.needs_accessibility,
        location=Coordinate(0.0, 0.0),
    )
    service.store.add_user(user)
    return _user_out(user)


@users_router.put("/{user_id}/preferences")
async def set_user_preferences(
    user_id: int,
    body: UserPreferencesRequest,
    service: EmergencyResponseService = Depends(get_service),
) -> dict:
    return _user_out(service.set_user_preferences(user_id, body.needs_accessibility))
