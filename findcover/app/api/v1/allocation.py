"""
FastAPI route: batch allocation (simulation / planning).

Provides endpoints to:
    POST /api/v1/allocation/run    — allocate a supplied population to supplied shelters

The run uses its own ledger seeded from the request, so it never touches
live shelter occupancy.
"""

from __future__ import annotations

from datetime import timedelta

from fastapi import APIRouter, Depends

from findcover.app.allocation.models import Family, Person, PrioritySettings, Shelter
from findcover.app.api.dependencies import get_service
from findcover.app.api.schemas import (
    AllocationRunRequest,
    AllocationRunResponse,
    AllocationStatisticsOut,
    AssignmentOut,
    RouteInfoOut,
)
from findcover.app.services.emergency_service import EmergencyResponseService
from findcover.app.spatial.radius_utils import Coordinate

router = APIRouter(prefix="/api/v1/allocation", tags=["allocation"])


@router.post("/run", response_model=AllocationRunResponse)
async def run_allocation(
    body: AllocationRunRequest,
    service: EmergencyResponseService = Depends(get_service),
) -> AllocationRunResponse:
    people = [
        Person(id=p.id, age=p.age, location=Coordinate(p.latitude, p.longitude))
        for p in body.people
    ]
    shelters = [
        Shelter(
            id=s.id,
            name=s.name or f"Shelter {s.id}",
            location=Coordinate(s.latitude, s.longitude),
            capacity=s.capacity,
            occupancy=s.occupancy,
            address=s.address,
            is_accessible=s.is_accessible,
        )
        for s in body.shelters
    ]
    families = [Family(id=f.id, member_ids=list(f.member_ids)) for f in body.families]
    priority = None
    if body.priority_settings is not None:
        priority = PrioritySettings(**body.priority_settings.model_dump())

    assignments, stats = await service.run_allocation(
        people, shelters, priority, families or None,
        use_walking_distances=body.use_walking_distances,
    )

    routes = {}
    if body.include_routes and assignments:
        routes = await service.routes_for(people, shelters, assignments)

    now = service.clock()
    out = []
    for person in people:
        a = assignments.get(person.id)
        if a is None:
            continue
        route = routes.get(person.id)
        out.append(AssignmentOut(
            person_id=a.person_id,
            shelter_id=a.shelter_id,
            distance_km=round(a.distance_km, 4),
            family_id=a.family_id,
            route=RouteInfoOut(
                distance_km=route.distance_km,
                duration_seconds=route.duration_seconds,
                estimated_arrival_time=now + timedelta(seconds=route.duration_seconds),
                polyline=route.polyline,
                current_instruction=route.current_instruction,
                instructions=route.instructions,
            ) if route is not None else None,
        ))

    return AllocationRunResponse(
        assignments=out,
        unassigned_person_ids=[p.id for p in people if p.id not in assignments],
        statistics=AllocationStatisticsOut(**stats.to_dict()),
    )
