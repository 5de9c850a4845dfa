"""
test_emergency_service.py — End-to-end tests for the emergency response flow.

Covers:
    • Shelter route request: no alert, new allocation, repeat request,
      no shelter in reach, full shelters, accessible tie-break only
      for users who need step-free access
    • Walking distances from the route cache steering the choice
    • Degraded routing (provider down → straight-line estimate)
    • Location updates: arrival, leaving, route recalculation
    • Emergency status: NOT_ALLOCATED / ARRIVED / LEFT_SHELTER / ALERT_ENDED
    • Area shelter status, batch allocation, explicit release
    • Closing and reopening shelters; tracking after a service rebuild
    • Validation, not-found, conflict and persistence failures
      (no ledger place left reserved)

Run with:
    pytest tests/test_emergency_service.py -v
"""

from __future__ import annotations

import asyncio
import dataclasses
import math
from datetime import datetime, timedelta, timezone

import pytest

from findcover.app.allocation.models import Family, Person, Shelter
from findcover.app.core.config import Settings
from findcover.app.core.errors import (
    ConflictError,
    NotFoundError,
    PersistenceError,
    UpstreamServiceError,
    ValidationError,
)
from findcover.app.routing.provider import DistanceResult, RouteSummary
from findcover.app.routing.route_cache import DistanceRouteCache
from findcover.app.services.emergency_service import build_emergency_service
from findcover.app.spatial.radius_utils import EARTH_RADIUS_KM, Coordinate, haversine
from findcover.app.store.memory_store import InMemoryEntityStore
from findcover.app.tracking.models import ActionType, AllocationStatus, UserStatus


# ═══════════════════════════════════════════════════════════════════════════
# Test Fixtures
# ═══════════════════════════════════════════════════════════════════════════

BASE_LAT = 32.08
BASE_LON = 34.78
KM_PER_DEG_LAT = EARTH_RADIUS_KM * math.pi / 180.0
T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

ZONE_NAME = "Tel Aviv - Center"
ZONE_POLYGON = [(32.05, 34.75), (32.05, 34.81), (32.11, 34.81), (32.11, 34.75)]

CONFIG = Settings(REDIS_ENABLED=False, GOOGLE_MAPS_API_KEY=None)


def _north(km: float) -> Coordinate:
    return Coordinate(BASE_LAT + km / KM_PER_DEG_LAT, BASE_LON)


class _Clock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeRouteCache:
    """Route cache double; ``overrides`` maps shelter coordinate → walking km."""

    def __init__(self, overrides=None):
        self.overrides = overrides or {}
        self.route_calls = 0

    async def get_distances(self, origins, destinations):
        return {
            (i, j): DistanceResult(self.overrides.get(d, haversine(o, d)), 60.0)
            for i, o in enumerate(origins)
            for j, d in enumerate(destinations)
        }

    async def get_route(self, origin, destination, *, force_refresh=False):
        self.route_calls += 1
        return RouteSummary(
            0.25, 200.0, polyline="xyz", instructions=["Walk north on Ibn Gabirol"],
        )

    async def get_routes(self, pairs):
        return [await self.get_route(o, d) for o, d in pairs]


class DownProvider:
    """Routing provider that is always unreachable."""

    async def distance_matrix(self, origins, destinations):
        raise UpstreamServiceError("google_maps", "timeout")

    async def directions(self, origin, destination):
        raise UpstreamServiceError("google_maps", "timeout")


class FailingAllocationStore(InMemoryEntityStore):
    def add_allocation(self, user_id, shelter_id, alert_id, distance_km):
        raise PersistenceError("add_allocation", "database unavailable")


def _make_shelter(name: str, km: float, capacity: int = 5, **kw) -> Shelter:
    return Shelter(id=0, name=name, location=_north(km), capacity=capacity, **kw)


def _make_world(store=None, route_cache=None, shelters=None, users=(1,), ages=None):
    """
    Service over a store holding one zone, the given shelters and users.
    No alert is declared yet.
    """
    store = store or InMemoryEntityStore()
    clock = _Clock()
    store.add_zone(ZONE_NAME, ZONE_POLYGON, 90)
    service = build_emergency_service(store, route_cache, config=CONFIG, clock=clock)
    for shelter in shelters if shelters is not None else [_make_shelter("Main", 0.0)]:
        service.add_shelter(shelter)
    ages = ages or {}
    for uid in users:
        store.add_user(Person(id=uid, age=ages.get(uid, 35), location=Coordinate(0.0, 0.0)))
    return service, store, clock


def _declare(service):
    return service.alerts.declare_alert(ZONE_NAME)


def _request(service, user_id: int, km: float):
    loc = _north(km)
    return asyncio.run(service.request_shelter_route(user_id, loc.latitude, loc.longitude))


def _move(service, user_id: int, km: float):
    loc = _north(km)
    return asyncio.run(service.update_user_location(user_id, loc.latitude, loc.longitude))


# ═══════════════════════════════════════════════════════════════════════════
# Shelter route request
# ═══════════════════════════════════════════════════════════════════════════

class TestRequestShelterRoute:

    def test_no_active_alert(self):
        service, store, _ = _make_world()
        result = _request(service, 1, 0.2)

        assert result.success is False
        assert result.requires_action is False
        assert result.message == "No active alert in your area"
        assert store.get_last_location(1) == _north(0.2)

    def test_outside_zone(self):
        service, _, _ = _make_world()
        _declare(service)
        result = asyncio.run(service.request_shelter_route(1, 31.5, 34.9))
        assert result.success is False

    def test_new_allocation(self):
        service, store, _ = _make_world()
        alert = _declare(service)

        result = _request(service, 1, 0.2)

        assert result.success is True
        assert result.action_type == ActionType.NAVIGATE
        assert result.alert_id == alert.id
        assert result.shelter.name == "Main"
        assert result.shelter.distance_km == pytest.approx(0.2, abs=1e-6)
        # No route cache configured: straight-line estimate at walking speed.
        assert result.route.is_estimate is True
        assert result.route.duration_seconds == pytest.approx(20.0, abs=1e-3)
        assert result.route.estimated_arrival_time == T0 + timedelta(seconds=result.route.duration_seconds)

        shelter_id = result.shelter.shelter_id
        assert service.ledger.occupancy(shelter_id) == 1
        (allocation,) = store.list_allocations(user_id=1)
        assert allocation.status == AllocationStatus.EN_ROUTE
        assert service.tracker.session(1) is not None

    def test_repeat_request_reuses_allocation(self):
        service, store, _ = _make_world()
        _declare(service)
        first = _request(service, 1, 0.2)

        again = _request(service, 1, 0.15)

        assert again.success is True
        assert again.message == "Continue navigating to the shelter"
        assert again.shelter.shelter_id == first.shelter.shelter_id
        assert again.shelter.distance_km == pytest.approx(0.15, abs=1e-6)
        assert len(store.list_allocations(user_id=1)) == 1
        assert service.ledger.occupancy(first.shelter.shelter_id) == 1

    def test_repeat_request_at_shelter_reports_arrival(self):
        service, _, _ = _make_world()
        _declare(service)
        _request(service, 1, 0.2)

        result = _request(service, 1, 0.0)

        assert result.has_arrived is True
        assert result.message == "You have arrived at the shelter"
        assert result.route is None

    def test_unknown_user(self):
        service, _, _ = _make_world(users=())
        _declare(service)
        with pytest.raises(NotFoundError):
            _request(service, 42, 0.2)

    def test_missing_location_rejected(self):
        service, _, _ = _make_world()
        _declare(service)
        with pytest.raises(ValidationError) as exc:
            asyncio.run(service.request_shelter_route(1, 0.0, 0.0))
        assert exc.value.status_code == 422

    def test_no_shelter_in_reach(self):
        service, store, _ = _make_world(shelters=[_make_shelter("Far", 1.5)])
        alert = _declare(service)

        result = _request(service, 1, 0.0)

        assert result.success is False
        assert result.requires_action is True
        assert result.action_type == ActionType.FIND_ALTERNATIVE
        assert result.alert_id == alert.id
        assert store.list_allocations() == []

    def test_full_shelter_skipped(self):
        shelters = [_make_shelter("Tiny", 0.0, capacity=1), _make_shelter("Backup", 0.4)]
        service, _, _ = _make_world(shelters=shelters, users=(1, 2))
        _declare(service)

        first = _request(service, 1, 0.1)
        second = _request(service, 2, 0.1)

        assert first.shelter.name == "Tiny"
        assert second.shelter.name == "Backup"

    def test_accessible_shelter_preferred_on_tie_when_needed(self):
        shelters = [
            _make_shelter("Stairs", 0.0),
            _make_shelter("Ramp", 0.0, provider_id=9, is_accessible=True),
        ]
        service, _, _ = _make_world(shelters=shelters)
        service.set_user_preferences(1, needs_accessibility=True)
        _declare(service)

        assert _request(service, 1, 0.2).shelter.name == "Ramp"

    def test_accessible_shelter_not_preferred_without_need(self):
        shelters = [
            _make_shelter("Stairs", 0.0),
            _make_shelter("Ramp", 0.0, provider_id=9, is_accessible=True),
        ]
        service, _, _ = _make_world(shelters=shelters)
        _declare(service)

        # Equal distance and occupancy: registration order decides.
        assert _request(service, 1, 0.2).shelter.name == "Stairs"

    def test_preferences_for_unknown_user(self):
        service, _, _ = _make_world()
        with pytest.raises(NotFoundError):
            service.set_user_preferences(404, needs_accessibility=True)

    def test_walking_distance_overrides_straight_line(self):
        near = _make_shelter("Across the highway", 0.05)
        other = _make_shelter("Same side", 0.3)
        routes = FakeRouteCache(overrides={near.location: 0.9})
        service, _, _ = _make_world(route_cache=routes, shelters=[near, other])
        _declare(service)

        result = _request(service, 1, 0.0)

        assert result.shelter.name == "Same side"
        assert result.route.is_estimate is False
        assert result.route.current_instruction == "Walk north on Ibn Gabirol"
        assert result.route.polyline == "xyz"

    def test_routing_outage_degrades_to_estimate(self):
        cache = DistanceRouteCache(DownProvider(), backend=None, config=CONFIG)
        service, _, _ = _make_world(route_cache=cache)
        _declare(service)

        result = _request(service, 1, 0.3)

        assert result.success is True
        assert result.route.is_estimate is True
        assert result.route.distance_km == pytest.approx(0.3, abs=1e-6)

    def test_persistence_failure_leaves_no_reservation(self):
        service, _, _ = _make_world(store=FailingAllocationStore())
        _declare(service)

        with pytest.raises(PersistenceError) as exc:
            _request(service, 1, 0.2)

        assert exc.value.status_code == 503
        shelter = service.store.list_shelters()[0]
        assert service.ledger.occupancy(shelter.id) == 0
        assert service.tracker.session(1) is None


# ═══════════════════════════════════════════════════════════════════════════
# Location updates and status
# ═══════════════════════════════════════════════════════════════════════════

class TestTrackingFlow:

    def test_full_journey(self):
        service, store, clock = _make_world()
        alert = _declare(service)
        _request(service, 1, 0.3)

        moving = _move(service, 1, 0.2)
        assert moving.is_tracked is True
        assert moving.message == "Tracking continues"
        assert moving.distance_remaining_km == pytest.approx(0.2, abs=1e-6)
        assert moving.estimated_time_remaining_seconds == pytest.approx(20.0, abs=1e-3)

        arrived = _move(service, 1, 0.005)
        assert arrived.has_arrived is True
        assert arrived.message == "You have arrived at the shelter!"

        clock.advance(45)
        status = service.check_emergency_status(1)
        assert status.is_alert_active is True
        assert status.user_status == UserStatus.ARRIVED
        assert status.time_in_shelter_seconds == pytest.approx(45.0)

        left = _move(service, 1, 0.08)
        assert left.action_type == ActionType.RETURN_TO_SHELTER
        assert left.requires_action is True
        assert service.check_emergency_status(1).user_status == UserStatus.LEFT_SHELTER

        summary = service.alerts.end_alert(alert.id)
        assert summary["allocations_completed"] == 1
        shelter_id = store.list_allocations(user_id=1)[0].shelter_id
        assert service.ledger.occupancy(shelter_id) == 0
        assert service.check_emergency_status(1).user_status == UserStatus.NOT_ALLOCATED
        assert _move(service, 1, 0.0).is_tracked is False

    def test_route_recalculated_after_deviation(self):
        service, _, _ = _make_world(route_cache=FakeRouteCache())
        _declare(service)
        _request(service, 1, 0.3)
        _move(service, 1, 0.2)

        update = _move(service, 1, 0.35)

        assert update.action_type == ActionType.ROUTE_UPDATED
        assert update.message == "Route recalculated"
        assert update.updated_route is not None
        assert update.current_instruction == "Walk north on Ibn Gabirol"

    def test_untracked_update(self):
        service, _, _ = _make_world()
        result = _move(service, 1, 0.1)
        assert result.success is True
        assert result.is_tracked is False
        assert result.message == "No active tracking"

    def test_tracking_survives_service_rebuild(self):
        service, store, clock = _make_world()
        _declare(service)
        assert _request(service, 1, 0.2).success is True

        rebuilt = build_emergency_service(store, config=CONFIG, clock=clock)
        result = _move(rebuilt, 1, 0.0)

        assert result.is_tracked is True
        assert result.has_arrived is True
        (allocation,) = store.list_allocations(user_id=1)
        assert allocation.status == AllocationStatus.ARRIVED

    def test_status_without_allocation(self):
        service, _, _ = _make_world()
        status = service.check_emergency_status(1)
        assert status.user_status == UserStatus.NOT_ALLOCATED
        assert status.is_alert_active is False

    def test_status_after_alert_ended_elsewhere(self):
        service, store, _ = _make_world()
        alert = _declare(service)
        result = _request(service, 1, 0.2)
        # Alert closed directly in the store, without the sweep.
        store.save_alert(dataclasses.replace(store.get_alert(alert.id), is_active=False))

        status = service.check_emergency_status(1)

        assert status.user_status == UserStatus.ALERT_ENDED
        assert status.is_alert_active is False
        assert store.list_allocations(user_id=1)[0].status == AllocationStatus.COMPLETED
        assert service.ledger.occupancy(result.shelter.shelter_id) == 0

    def test_release_user(self):
        service, store, _ = _make_world()
        _declare(service)
        result = _request(service, 1, 0.2)

        released = service.release_user(1)

        assert len(released) == 1
        assert store.list_allocations(user_id=1)[0].status == AllocationStatus.RELEASED
        assert service.ledger.occupancy(result.shelter.shelter_id) == 0

    def test_release_unknown_user(self):
        service, _, _ = _make_world()
        with pytest.raises(NotFoundError):
            service.release_user(404)


# ═══════════════════════════════════════════════════════════════════════════
# Shelters and area status
# ═══════════════════════════════════════════════════════════════════════════

class TestShelters:

    def test_duplicate_shelter_from_same_provider(self):
        service, _, _ = _make_world(shelters=[])
        service.add_shelter(_make_shelter("A", 0.1, provider_id=7))

        with pytest.raises(ConflictError) as exc:
            service.add_shelter(_make_shelter("A again", 0.1, provider_id=7))
        assert exc.value.status_code == 409
        assert exc.value.message == "User added this shelter already"

    def test_same_spot_different_provider_allowed(self):
        service, _, _ = _make_world(shelters=[])
        service.add_shelter(_make_shelter("A", 0.1, provider_id=7))
        service.add_shelter(_make_shelter("B", 0.1, provider_id=8))
        assert len(service.store.list_shelters()) == 2

    def test_area_status(self):
        shelters = [
            _make_shelter("Near", 0.1, capacity=1),
            _make_shelter("Mid", 0.5, capacity=4),
            _make_shelter("Outside", 5.0),
        ]
        service, _, _ = _make_world(shelters=shelters)
        _declare(service)
        _request(service, 1, 0.1)

        area = service.get_area_shelters_status(BASE_LAT, BASE_LON, radius_km=1.0)

        assert area.total_shelters == 2
        assert area.full_shelters == 1
        assert area.available_shelters == 1
        near, mid = area.shelters
        assert near["name"] == "Near"
        assert near["occupancy"] == 1
        assert near["available_spaces"] == 0
        assert near["occupancy_percentage"] == 100.0
        assert near["status"] == "Full"
        assert mid["status"] == "Available"
        assert mid["distance_km"] == pytest.approx(0.5, abs=1e-4)

    def test_area_status_invalid_radius(self):
        service, _, _ = _make_world()
        with pytest.raises(ValidationError):
            service.get_area_shelters_status(BASE_LAT, BASE_LON, radius_km=0)

    def test_ledger_seeded_from_open_allocations(self):
        store = InMemoryEntityStore()
        shelter = store.add_shelter(_make_shelter("Main", 0.0, capacity=3))
        alert = store.add_alert(ZONE_NAME, _north(0.0))
        store.add_allocation(1, shelter.id, alert.id, 0.2)

        service = build_emergency_service(store, config=CONFIG)

        assert service.ledger.occupancy(shelter.id) == 1

    def test_closed_shelter_never_allocated(self):
        shelters = [_make_shelter("Near", 0.0), _make_shelter("Backup", 0.4)]
        service, store, _ = _make_world(shelters=shelters, users=(1, 2))
        near = store.list_shelters()[0]
        _declare(service)

        closed = service.set_shelter_active(near.id, False)

        assert closed.is_active is False
        assert store.get_shelter(near.id).is_active is False
        assert _request(service, 1, 0.0).shelter.name == "Backup"
        assert _request(service, 2, 0.05).shelter.name == "Backup"
        assert service.ledger.occupancy(near.id) == 0

    def test_closing_only_shelter_leaves_nothing_to_offer(self):
        service, store, _ = _make_world()
        service.set_shelter_active(store.list_shelters()[0].id, False)
        _declare(service)

        result = _request(service, 1, 0.1)

        assert result.success is False
        assert result.action_type == ActionType.FIND_ALTERNATIVE
        assert store.list_allocations() == []

    def test_closing_keeps_places_of_people_en_route(self):
        service, store, _ = _make_world()
        shelter = store.list_shelters()[0]
        _declare(service)
        _request(service, 1, 0.2)

        service.set_shelter_active(shelter.id, False)

        assert service.ledger.occupancy(shelter.id) == 1
        assert _move(service, 1, 0.0).has_arrived is True
        service.release_user(1)
        assert service.ledger.occupancy(shelter.id) == 0

    def test_reopened_shelter_registered_with_held_places(self):
        store = InMemoryEntityStore()
        shelter = store.add_shelter(_make_shelter("Main", 0.0, capacity=3, is_active=False))
        alert = store.add_alert(ZONE_NAME, _north(0.0))
        store.add_allocation(1, shelter.id, alert.id, 0.2)
        service = build_emergency_service(store, config=CONFIG)
        assert shelter.id not in service.ledger

        service.set_shelter_active(shelter.id, True)

        assert service.ledger.capacity(shelter.id) == 3
        assert service.ledger.occupancy(shelter.id) == 1
        assert [s.id for s in store.list_shelters()] == [shelter.id]

    def test_status_change_for_unknown_shelter(self):
        service, _, _ = _make_world()
        with pytest.raises(NotFoundError) as exc:
            service.set_shelter_active(404, False)
        assert exc.value.status_code == 404


# ═══════════════════════════════════════════════════════════════════════════
# Batch allocation
# ═══════════════════════════════════════════════════════════════════════════

class TestBatchAllocation:

    def _population(self):
        people = [
            Person(id=i, age=age, location=_north(0.05 * i))
            for i, age in enumerate([30, 75, 8, 40, 66], start=1)
        ]
        shelters = [
            Shelter(id=100, name="A", location=_north(0.0), capacity=2),
            Shelter(id=200, name="B", location=_north(0.3), capacity=2),
        ]
        return people, shelters

    def test_run_allocation_leaves_live_ledger_alone(self):
        service, _, _ = _make_world()
        live = service.store.list_shelters()[0]
        people, shelters = self._population()

        assignments, stats = asyncio.run(service.run_allocation(people, shelters))

        assert stats.assigned_count == 4
        assert stats.total_capacity == 4
        # Elderly and child are always placed; one of the two adults is not.
        assert {2, 3, 5} <= set(assignments)
        assert len({1, 4} & set(assignments)) == 1
        assert service.ledger.occupancy(live.id) == 0

    def test_run_allocation_with_families_and_walking_distances(self):
        service, _, _ = _make_world(route_cache=FakeRouteCache())
        people, shelters = self._population()

        assignments, _ = asyncio.run(service.run_allocation(
            people, shelters, families=[Family(1, [1, 2])], use_walking_distances=True,
        ))

        assert assignments[1].shelter_id == assignments[2].shelter_id
        assert assignments[1].family_id == 1

    def test_routes_for_assignments(self):
        service, _, _ = _make_world(route_cache=FakeRouteCache())
        people, shelters = self._population()
        assignments, _ = asyncio.run(service.run_allocation(people, shelters))

        routes = asyncio.run(service.routes_for(people, shelters, assignments))

        assert set(routes) == set(assignments)

    def test_empty_people_rejected(self):
        service, _, _ = _make_world()
        _, shelters = self._population()
        with pytest.raises(ValidationError):
            asyncio.run(service.run_allocation([], shelters))

    def test_empty_shelters_rejected(self):
        service, _, _ = _make_world()
        people, _ = self._population()
        with pytest.raises(ValidationError):
            asyncio.run(service.run_allocation(people, []))
