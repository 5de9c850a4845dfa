"""
emergency_service.py — Orchestrates geofence, allocation, routing and tracking.

═══════════════════════════════════════════════════════════════════════════
SHELTER ROUTE REQUEST
═══════════════════════════════════════════════════════════════════════════

    validate coordinates ─▶ record location ─▶ geofence check
          │                                        │ no active alert
          │                                        ▼
          │                               success=False, no action
          ▼
    open allocation for (user, alert)?
          │ yes ─▶ feed the fix to the tracker
          │          arrived  → HAS_ARRIVED
          │          otherwise → fresh route, NAVIGATE
          ▼ no
    candidate shelters (haversine ≤ max distance, active)
          │
    walking distances from the route cache      ← outside the ledger lock
          │
    ┌─ ledger.transaction() ───────────────────────────────┐
    │   allocate(person) → reserve 1 place                 │
    │   store.add_allocation(...)   raises → rolled back   │
    └──────────────────────────────────────────────────────┘
          │
    start tracking ─▶ route lookup (None → straight-line estimate) ─▶ NAVIGATE

Routing failures never fail the request: the response carries a
straight-line estimate instead. Store failures surface as
``PersistenceError`` with no place left reserved.

When several shelters are equally close, accessible shelters are preferred
for users who need step-free access, then the emptier one wins.
"""

from __future__ import annotations

import dataclasses
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from findcover.app.alerts.alert_service import AlertService
from findcover.app.alerts.geo_fence import GeofenceMatcher
from findcover.app.alerts.models import LocationCheckResult
from findcover.app.allocation.engine import DistanceTable, allocate, run_allocation
from findcover.app.allocation.ledger import OccupancyLedger, build_ledger
from findcover.app.allocation.models import (
    AllocationStatistics,
    Assignment,
    Family,
    Person,
    PrioritySettings,
    Shelter,
    ShelterStatus,
    classify_occupancy,
    occupancy_percentage,
)
from findcover.app.core.config import Settings, settings as default_settings
from findcover.app.core.errors import NotFoundError, ValidationError
from findcover.app.core.logging_config import bind_request_context
from findcover.app.routing.provider import RouteSummary
from findcover.app.routing.route_cache import DistanceRouteCache
from findcover.app.services.models import (
    AreaSheltersStatus,
    EmergencyStatusResult,
    LocationUpdateResult,
    RouteInfo,
    ShelterDetails,
    ShelterRouteResult,
)
from findcover.app.spatial.radius_utils import (
    Coordinate,
    filter_within_radius,
    is_missing_location,
)
from findcover.app.tracking.models import ActionType, Allocation, UserStatus, _now
from findcover.app.tracking.state_machine import TrackingStateMachine

logger = logging.getLogger(__name__)


def to_coordinate(lat: Optional[float], lon: Optional[float], field: str = "location") -> Coordinate:
    """Validate a client-supplied coordinate."""
    if is_missing_location(lat, lon):
        raise ValidationError("Location coordinates are required", field=field)
    try:
        return Coordinate(lat, lon)
    except ValueError as e:
        raise ValidationError(str(e), field=field) from e


class EmergencyResponseService:
    """
    Entry point for every user-facing emergency operation.

    Holds no per-request state; the ledger, tracker and store it is built
    with are shared between requests.
    """

    def __init__(
        self,
        store,
        ledger: OccupancyLedger,
        tracker: TrackingStateMachine,
        route_cache: Optional[DistanceRouteCache] = None,
        config: Settings = default_settings,
        clock: Callable[[], datetime] = _now,
    ):
        self.store = store
        self.ledger = ledger
        self.tracker = tracker
        self.route_cache = route_cache
        self.config = config
        self.clock = clock
        self.geofence = GeofenceMatcher(store, clock=clock)
        self.alerts = AlertService(store, tracker, clock=clock)
        self.priority = PrioritySettings.from_settings(config)

    # ═══════════════════════════════════════════════════════════════════
    # Helpers
    # ═══════════════════════════════════════════════════════════════════

    def _route_info(
        self,
        route: Optional[RouteSummary],
        fallback_distance_km: float,
    ) -> RouteInfo:
        now = self.clock()
        if route is None:
            seconds = self.tracker.estimate_seconds(fallback_distance_km)
            return RouteInfo(
                distance_km=fallback_distance_km,
                duration_seconds=seconds,
                estimated_arrival_time=now + timedelta(seconds=seconds),
                is_estimate=True,
            )
        return RouteInfo(
            distance_km=route.distance_km,
            duration_seconds=route.duration_seconds,
            estimated_arrival_time=now + timedelta(seconds=route.duration_seconds),
            polyline=route.polyline,
            instructions=list(route.instructions),
        )

    async def _fetch_route(self, origin: Coordinate, shelter: Shelter) -> Optional[RouteSummary]:
        if self.route_cache is None:
            return None
        return await self.route_cache.get_route(origin, shelter.location)

    async def _walking_distances(
        self, people: Sequence[Person], shelters: Sequence[Shelter],
    ) -> DistanceTable:
        if self.route_cache is None or not people or not shelters:
            return {}
        found = await self.route_cache.get_distances(
            [p.location for p in people], [s.location for s in shelters],
        )
        return {
            (people[i].id, shelters[j].id): result.distance_km
            for (i, j), result in found.items()
        }

    def _current_occupancy(self, shelter: Shelter) -> int:
        if shelter.id in self.ledger:
            return self.ledger.occupancy(shelter.id)
        return shelter.occupancy

    def _ranked_candidates(
        self, location: Coordinate, needs_accessibility: bool = False,
    ) -> List[Shelter]:
        """Active shelters with room whose straight-line distance is within reach."""
        nearby = filter_within_radius(
            location,
            self.store.list_shelters(active_only=True),
            self.priority.max_distance_km,
            lambda s: s.location,
        )
        candidates = [
            s for s, _ in nearby
            if s.id in self.ledger and self.ledger.remaining(s.id) > 0
        ]
        # Stable order seen by the engine: accessible first when needed, then emptier.
        candidates.sort(key=lambda s: (
            not (needs_accessibility and s.is_accessible),
            occupancy_percentage(s.capacity, self._current_occupancy(s)),
        ))
        return candidates

    # ═══════════════════════════════════════════════════════════════════
    # Operations
    # ═══════════════════════════════════════════════════════════════════

    def check_location(self, lat: float, lon: float) -> LocationCheckResult:
        to_coordinate(lat, lon)
        return self.geofence.check_location(lat, lon)

    def add_shelter(self, shelter: Shelter) -> Shelter:
        saved = self.store.add_shelter(shelter)
        if saved.is_active:
            self.ledger.register(saved)
        logger.info(
            "Shelter %d '%s' registered (capacity %d)", saved.id, saved.name, saved.capacity,
            extra={"shelter_id": saved.id},
        )
        return saved

    def set_shelter_active(self, shelter_id: int, is_active: bool) -> Shelter:
        """
        Open or close a shelter for new allocations.

        Closing keeps the places already held so that people en route can
        still arrive and release them; the shelter is just never offered
        again. Reopening registers it in the ledger with those places held.
        """
        shelter = self.store.get_shelter(shelter_id)
        if shelter is None:
            raise NotFoundError("Shelter", id=shelter_id)
        updated = dataclasses.replace(shelter, is_active=is_active)
        self.store.save_shelter(updated)

        if is_active and shelter_id not in self.ledger:
            held = len([
                a for a in self.store.list_allocations(open_only=True)
                if a.shelter_id == shelter_id
            ])
            self.ledger.register_capacity(shelter_id, updated.capacity, held)

        logger.info(
            "Shelter %d %s", shelter_id, "opened" if is_active else "closed",
            extra={"shelter_id": shelter_id},
        )
        return updated

    def set_user_preferences(self, user_id: int, needs_accessibility: bool) -> Person:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User", id=user_id)
        updated = dataclasses.replace(user, needs_accessibility=needs_accessibility)
        self.store.add_user(updated)
        return updated

    async def request_shelter_route(
        self, user_id: int, lat: float, lon: float,
    ) -> ShelterRouteResult:
        location = to_coordinate(lat, lon)
        bind_request_context(user_id=user_id)
        self.store.record_location(user_id, location, self.clock())

        check = self.geofence.check_location(lat, lon)
        if not check.has_active_alert or check.alert_id is None:
            return ShelterRouteResult(
                success=False,
                message="No active alert in your area",
                requires_action=False,
            )
        alert_id = check.alert_id

        existing = self.store.list_allocations(user_id=user_id, alert_id=alert_id, open_only=True)
        if existing:
            return await self._continue_existing(user_id, location, existing[0])

        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User", id=user_id)
        person = dataclasses.replace(user, location=location)

        candidates = self._ranked_candidates(location, user.needs_accessibility)
        distances = await self._walking_distances([person], candidates)

        with self.ledger.transaction():
            assignment = allocate(
                [person], candidates, self.ledger, self.priority, distances=distances,
            ).get(user_id)
            if assignment is None:
                logger.warning(
                    "No shelter within %.2f km for user %d",
                    self.priority.max_distance_km, user_id,
                    extra={"user_id": user_id, "alert_id": alert_id},
                )
                return ShelterRouteResult(
                    success=False,
                    message="No shelter with free space within reach - move away from windows and find the nearest protected room",
                    requires_action=True,
                    action_type=ActionType.FIND_ALTERNATIVE,
                    alert_id=alert_id,
                )
            allocation = self.store.add_allocation(
                user_id, assignment.shelter_id, alert_id, assignment.distance_km,
            )

        shelter = self.store.get_shelter(assignment.shelter_id)
        self.tracker.start(allocation, shelter.location, location)
        route = await self._fetch_route(location, shelter)
        session = self.tracker.session(user_id)
        if session is not None:
            session.route = route

        logger.info(
            "User %d allocated to shelter %d (%.3f km)",
            user_id, shelter.id, assignment.distance_km,
            extra={
                "user_id": user_id,
                "shelter_id": shelter.id,
                "alert_id": alert_id,
                "distance_km": assignment.distance_km,
            },
        )
        return ShelterRouteResult(
            success=True,
            message="Shelter assigned - start navigating",
            requires_action=True,
            action_type=ActionType.NAVIGATE,
            alert_id=alert_id,
            shelter=ShelterDetails.from_shelter(shelter, assignment.distance_km),
            route=self._route_info(route, assignment.distance_km),
        )

    async def _continue_existing(
        self, user_id: int, location: Coordinate, allocation: Allocation,
    ) -> ShelterRouteResult:
        shelter = self.store.get_shelter(allocation.shelter_id)
        if shelter is None:
            raise NotFoundError("Shelter", id=allocation.shelter_id)

        if self.tracker.session(user_id) is None:
            self.tracker.start(allocation, shelter.location, location)
        update = await self.tracker.update(user_id, location)
        details = ShelterDetails.from_shelter(shelter, update.distance_km)

        if update.has_arrived:
            return ShelterRouteResult(
                success=True,
                message="You have arrived at the shelter",
                has_arrived=True,
                alert_id=allocation.alert_id,
                shelter=details,
            )

        route = await self._fetch_route(location, shelter)
        remaining = update.distance_km if update.distance_km is not None else allocation.distance_km
        return ShelterRouteResult(
            success=True,
            message="Continue navigating to the shelter",
            requires_action=True,
            action_type=ActionType.NAVIGATE,
            alert_id=allocation.alert_id,
            shelter=details,
            route=self._route_info(route, remaining),
        )

    async def update_user_location(
        self, user_id: int, lat: float, lon: float,
    ) -> LocationUpdateResult:
        location = to_coordinate(lat, lon)
        bind_request_context(user_id=user_id)
        update = await self.tracker.update(user_id, location)

        if not update.is_tracked:
            return LocationUpdateResult(success=True, message="No active tracking")

        if update.has_arrived:
            return LocationUpdateResult(
                success=True,
                message="You have arrived at the shelter!",
                is_tracked=True,
                has_arrived=True,
                distance_remaining_km=update.distance_km,
            )

        if update.has_left:
            return LocationUpdateResult(
                success=True,
                message="You left the shelter while the alert is still active",
                is_tracked=True,
                requires_action=True,
                action_type=ActionType.RETURN_TO_SHELTER,
                distance_remaining_km=update.distance_km,
                estimated_time_remaining_seconds=update.estimated_seconds,
            )

        if update.route_updated:
            return LocationUpdateResult(
                success=True,
                message="Route recalculated",
                is_tracked=True,
                requires_action=True,
                action_type=ActionType.ROUTE_UPDATED,
                distance_remaining_km=update.distance_km,
                estimated_time_remaining_seconds=update.estimated_seconds,
                current_instruction=update.current_instruction,
                updated_route=self._route_info(update.route, update.distance_km),
            )

        return LocationUpdateResult(
            success=True,
            message="Tracking continues",
            is_tracked=True,
            distance_remaining_km=update.distance_km,
            estimated_time_remaining_seconds=update.estimated_seconds,
            current_instruction=update.current_instruction,
        )

    def check_emergency_status(self, user_id: int) -> EmergencyStatusResult:
        open_allocations = self.store.list_allocations(user_id=user_id, open_only=True)
        if not open_allocations:
            return EmergencyStatusResult(
                is_alert_active=False, user_status=UserStatus.NOT_ALLOCATED,
            )
        allocation = max(open_allocations, key=lambda a: (a.allocated_at, a.id))

        alert = self.store.get_alert(allocation.alert_id)
        if alert is None:
            return EmergencyStatusResult(
                is_alert_active=False,
                user_status=UserStatus.NO_ALERT,
                message="No active alert",
            )

        if not alert.is_active:
            self.tracker.end_for_user(user_id, alert.id)
            return EmergencyStatusResult(
                is_alert_active=False,
                user_status=UserStatus.ALERT_ENDED,
                message="The alert has ended - you may leave the shelter",
            )

        if self.tracker.check_left_shelter(user_id):
            return EmergencyStatusResult(
                is_alert_active=True,
                user_status=UserStatus.LEFT_SHELTER,
                message="You left the shelter while the alert is still active",
                shelter_id=allocation.shelter_id,
                requires_action=True,
                action_type=ActionType.RETURN_TO_SHELTER,
            )

        allocation = self.store.get_allocation(allocation.id) or allocation
        in_shelter = None
        if allocation.arrived_at is not None:
            in_shelter = (self.clock() - allocation.arrived_at).total_seconds()
        return EmergencyStatusResult(
            is_alert_active=True,
            user_status=UserStatus(allocation.status.value),
            shelter_id=allocation.shelter_id,
            time_in_shelter_seconds=in_shelter,
        )

    def get_area_shelters_status(
        self, lat: float, lon: float, radius_km: Optional[float] = None,
    ) -> AreaSheltersStatus:
        center = to_coordinate(lat, lon)
        radius = self.config.DEFAULT_AREA_RADIUS_KM if radius_km is None else radius_km
        if radius <= 0:
            raise ValidationError("Radius must be positive", field="radius_km")

        entries = []
        for shelter, distance in filter_within_radius(
            center, self.store.list_shelters(active_only=True), radius, lambda s: s.location,
        ):
            occupancy = self._current_occupancy(shelter)
            status = classify_occupancy(shelter.capacity, occupancy)
            entries.append({
                "id": shelter.id,
                "name": shelter.name,
                "address": shelter.address,
                "lat": shelter.location.latitude,
                "lon": shelter.location.longitude,
                "capacity": shelter.capacity,
                "occupancy": occupancy,
                "available_spaces": max(0, shelter.capacity - occupancy),
                "occupancy_percentage": occupancy_percentage(shelter.capacity, occupancy),
                "status": status.value,
                "distance_km": round(distance, 4),
            })

        return AreaSheltersStatus(
            total_shelters=len(entries),
            available_shelters=sum(e["status"] == ShelterStatus.AVAILABLE.value for e in entries),
            full_shelters=sum(e["status"] == ShelterStatus.FULL.value for e in entries),
            shelters=entries,
        )

    async def run_allocation(
        self,
        people: Sequence[Person],
        shelters: Sequence[Shelter],
        priority: Optional[PrioritySettings] = None,
        families: Optional[Sequence[Family]] = None,
        use_walking_distances: bool = False,
    ) -> Tuple[Dict[int, Assignment], AllocationStatistics]:
        """Batch allocation against its own ledger; live occupancy is untouched."""
        if not people:
            raise ValidationError("At least one person is required", field="people")
        if not shelters:
            raise ValidationError("At least one shelter is required", field="shelters")

        distances: DistanceTable = {}
        if use_walking_distances:
            distances = await self._walking_distances(list(people), list(shelters))

        assignments, stats = run_allocation(
            people, shelters, priority or self.priority, families, distances,
        )
        logger.info(
            "Batch allocation: %d/%d assigned in %.1fms",
            stats.assigned_count, stats.total_people, stats.execution_time_ms,
            extra={"assigned_count": stats.assigned_count},
        )
        return assignments, stats

    async def routes_for(
        self, people: Sequence[Person], shelters: Sequence[Shelter],
        assignments: Dict[int, Assignment],
    ) -> Dict[int, Optional[RouteSummary]]:
        """Walking routes for a batch of assignments, person id → route."""
        if self.route_cache is None:
            return {}
        by_shelter = {s.id: s for s in shelters}
        pairs = [
            (p, by_shelter[assignments[p.id].shelter_id])
            for p in people if p.id in assignments
        ]
        routes = await self.route_cache.get_routes([(p.location, s.location) for p, s in pairs])
        return {p.id: route for (p, _), route in zip(pairs, routes)}

    def release_user(self, user_id: int) -> List[Allocation]:
        if self.store.get_user(user_id) is None:
            raise NotFoundError("User", id=user_id)
        return self.tracker.release(user_id)


def build_emergency_service(
    store,
    route_cache: Optional[DistanceRouteCache] = None,
    config: Settings = default_settings,
    clock: Callable[[], datetime] = _now,
) -> EmergencyResponseService:
    """Wire a service over ``store`` with a ledger seeded from its shelters."""
    ledger = build_ledger(store.list_shelters(active_only=True))
    # Open allocations already hold places.
    for allocation in store.list_allocations(open_only=True):
        if allocation.shelter_id in ledger and ledger.remaining(allocation.shelter_id) > 0:
            ledger.reserve(allocation.shelter_id, 1)
    tracker = TrackingStateMachine(store, ledger, route_cache, config=config, clock=clock)
    return EmergencyResponseService(store, ledger, tracker, route_cache, config=config, clock=clock)
