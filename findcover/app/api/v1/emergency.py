"""
FastAPI routes: emergency response for individual users.

Provides endpoints to:
    POST /api/v1/location/check                    — is this point in an alerted zone?
    POST /api/v1/emergency/shelter-route           — allocate (or resume) a shelter + route
    POST /api/v1/emergency/update-location         — periodic tracking update
    GET  /api/v1/emergency/status                  — alert / allocation status for a user
    GET  /api/v1/emergency/area-shelters-status    — occupancy of shelters around a point
    POST /api/v1/emergency/release/{user_id}       — give up the user's shelter place
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from findcover.app.api.dependencies import get_service
from findcover.app.api.schemas import (
    AreaShelterOut,
    AreaSheltersStatusResponse,
    EmergencyStatusResponse,
    LocationCheckResponse,
    LocationRequest,
    LocationUpdateResponse,
    ReleaseResponse,
    RouteInfoOut,
    ShelterDetailsOut,
    ShelterRouteResponse,
    UserLocationRequest,
)
from findcover.app.services.emergency_service import EmergencyResponseService
from findcover.app.services.models import RouteInfo, ShelterDetails

location_router = APIRouter(prefix="/api/v1/location", tags=["location"])
router = APIRouter(prefix="/api/v1/emergency", tags=["emergency"])


# ---------------------------------------------------------------------------
# Converters
# ---------------------------------------------------------------------------

def _to_route_out(route: Optional[RouteInfo]) -> Optional[RouteInfoOut]:
    if route is None:
        return None
    return RouteInfoOut(
        distance_km=round(route.distance_km, 4),
        duration_seconds=round(route.duration_seconds, 1),
        estimated_arrival_time=route.estimated_arrival_time,
        polyline=route.polyline,
        current_instruction=route.current_instruction,
        instructions=route.instructions,
        is_estimate=route.is_estimate,
    )


def _to_shelter_out(details: Optional[ShelterDetails]) -> Optional[ShelterDetailsOut]:
    if details is None:
        return None
    return ShelterDetailsOut(
        shelter_id=details.shelter_id,
        name=details.name,
        address=details.address,
        latitude=details.latitude,
        longitude=details.longitude,
        distance_km=round(details.distance_km, 4) if details.distance_km is not None else None,
    )


def _action(action_type) -> Optional[str]:
    return action_type.value if action_type is not None else None


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@location_router.post("/check", response_model=LocationCheckResponse)
async def check_location(
    body: LocationRequest,
    service: EmergencyResponseService = Depends(get_service),
) -> LocationCheckResponse:
    result = service.check_location(body.latitude, body.longitude)
    return LocationCheckResponse(**result.to_dict())


@router.post("/shelter-route", response_model=ShelterRouteResponse)
async def get_shelter_route(
    body: UserLocationRequest,
    service: EmergencyResponseService = Depends(get_service),
) -> ShelterRouteResponse:
    result = await service.request_shelter_route(body.user_id, body.latitude, body.longitude)
    return ShelterRouteResponse(
        success=result.success,
        message=result.message,
        has_arrived=result.has_arrived,
        alert_id=result.alert_id,
        shelter_details=_to_shelter_out(result.shelter),
        route_info=_to_route_out(result.route),
        requires_action=result.requires_action,
        action_type=_action(result.action_type),
    )


@router.post("/update-location", response_model=LocationUpdateResponse)
async def update_location(
    body: UserLocationRequest,
    service: EmergencyResponseService = Depends(get_service),
) -> LocationUpdateResponse:
    result = await service.update_user_location(body.user_id, body.latitude, body.longitude)
    return LocationUpdateResponse(
        success=result.success,
        message=result.message,
        has_arrived=result.has_arrived,
        distance_remaining_km=result.distance_remaining_km,
        estimated_time_remaining_seconds=result.estimated_time_remaining_seconds,
        current_instruction=result.current_instruction,
        updated_route=_to_route_out(result.updated_route),
        requires_action=result.requires_action,
        action_type=_action(result.action_type),
    )


@router.get("/status", response_model=EmergencyStatusResponse)
async def check_emergency_status(
    user_id: int = Query(..., ge=1),
    service: EmergencyResponseService = Depends(get_service),
) -> EmergencyStatusResponse:
    result = service.check_emergency_status(user_id)
    return EmergencyStatusResponse(
        is_alert_active=result.is_alert_active,
        user_status=result.user_status.value,
        message=result.message,
        shelter_id=result.shelter_id,
        time_in_shelter_seconds=result.time_in_shelter_seconds,
        requires_action=result.requires_action,
        action_type=_action(result.action_type),
    )


@router.get("/area-shelters-status", response_model=AreaSheltersStatusResponse)
async def area_shelters_status(
    latitude: float = Query(..., ge=-90.0, le=90.0),
    longitude: float = Query(..., ge=-180.0, le=180.0),
    radius_km: Optional[float] = Query(None, gt=0, le=50.0),
    service: EmergencyResponseService = Depends(get_service),
) -> AreaSheltersStatusResponse:
    result = service.get_area_shelters_status(latitude, longitude, radius_km)
    return AreaSheltersStatusResponse(
        total_shelters=result.total_shelters,
        available_shelters=result.available_shelters,
        full_shelters=result.full_shelters,
        shelters=[AreaShelterOut(**entry) for entry in result.shelters],
    )


@router.post("/release/{user_id}", response_model=ReleaseResponse)
async def release_user(
    user_id: int,
    service: EmergencyResponseService = Depends(get_service),
) -> ReleaseResponse:
    released = service.release_user(user_id)
    return ReleaseResponse(user_id=user_id, released_allocations=len(released))
