"""
state_machine.py — Per-user tracking driven by client location polling.

Every location fix is compared against the assigned shelter:

    distance < ARRIVAL_THRESHOLD_KM (0.01)          EN_ROUTE/LEFT_SHELTER → ARRIVED
    distance > LEAVE_THRESHOLD_KM (0.05), alert on  ARRIVED → LEFT_SHELTER
    distance > closest_seen + DEVIATION (0.1)       ROUTE_UPDATED signal,
                                                    status stays EN_ROUTE

The deviation check uses the closest distance reached so far in the
session: walking away from the shelter by more than the tolerance means the
user left the suggested route, so a fresh route is fetched (bypassing the
route cache) and the baseline resets to the current distance.

Feeding the same coordinate twice never changes state.

Ending an alert completes every open allocation for it, releases the
places they held in the ledger and drops their sessions. Each transition is
persisted before the in-memory session moves, and ledger releases run in a
ledger transaction so a failed save leaves occupancy untouched.
"""

from __future__ import annotations

import dataclasses
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional

from findcover.app.allocation.ledger import OccupancyLedger
from findcover.app.core.config import Settings, settings as default_settings
from findcover.app.routing.provider import RouteSummary
from findcover.app.routing.route_cache import DistanceRouteCache
from findcover.app.spatial.radius_utils import Coordinate, haversine
from findcover.app.tracking.models import (
    Allocation,
    AllocationStatus,
    TrackingSession,
    TrackingUpdate,
    _now,
)

logger = logging.getLogger(__name__)


class TrackingStateMachine:

    def __init__(
        self,
        store,
        ledger: OccupancyLedger,
        route_cache: Optional[DistanceRouteCache] = None,
        config: Settings = default_settings,
        clock: Callable[[], datetime] = _now,
    ):
        self.store = store
        self.ledger = ledger
        self.route_cache = route_cache
        self.clock = clock
        self.arrival_km = config.ARRIVAL_THRESHOLD_KM
        self.leave_km = config.LEAVE_THRESHOLD_KM
        self.deviation_km = config.ROUTE_DEVIATION_THRESHOLD_KM
        self.walking_speed = config.WALKING_SPEED_KM_PER_MINUTE
        self._sessions: Dict[int, TrackingSession] = {}

    # ── Sessions ──

    def session(self, user_id: int) -> Optional[TrackingSession]:
        return self._sessions.get(user_id)

    @property
    def active_sessions(self) -> int:
        return len(self._sessions)

    def start(
        self,
        allocation: Allocation,
        shelter_location: Coordinate,
        location: Coordinate,
        route: Optional[RouteSummary] = None,
    ) -> TrackingSession:
        session = TrackingSession(
            user_id=allocation.user_id,
            shelter_id=allocation.shelter_id,
            alert_id=allocation.alert_id,
            allocation_id=allocation.id,
            shelter_location=shelter_location,
            last_location=location,
            last_update=self.clock(),
            status=allocation.status,
            closest_distance_km=haversine(location, shelter_location),
            route=route,
        )
        self._sessions[allocation.user_id] = session
        logger.info(
            "Tracking user %d → shelter %d (alert %d)",
            allocation.user_id, allocation.shelter_id, allocation.alert_id,
            extra={
                "user_id": allocation.user_id,
                "shelter_id": allocation.shelter_id,
                "alert_id": allocation.alert_id,
            },
        )
        return session

    def resume(self, user_id: int, location: Coordinate) -> Optional[TrackingSession]:
        """
        Rebuild a session from the user's open allocation in the store.

        Sessions live in memory only, so after a restart an allocation can
        be open with no session behind it.
        """
        open_allocations = self.store.list_allocations(user_id=user_id, open_only=True)
        if not open_allocations:
            return None
        allocation = max(open_allocations, key=lambda a: (a.allocated_at, a.id))
        shelter = self.store.get_shelter(allocation.shelter_id)
        if shelter is None:
            logger.warning(
                "Open allocation %d points at unknown shelter %d",
                allocation.id, allocation.shelter_id,
                extra={"user_id": user_id, "shelter_id": allocation.shelter_id},
            )
            return None
        return self.start(allocation, shelter.location, location)

    def stop(self, user_id: int) -> None:
        self._sessions.pop(user_id, None)

    def estimate_seconds(self, distance_km: float) -> float:
        return distance_km / self.walking_speed * 60.0

    def _alert_active(self, alert_id: int) -> bool:
        alert = self.store.get_alert(alert_id)
        return bool(alert and alert.is_active)

    def _next_status(
        self, current: AllocationStatus, distance_km: float, alert_active: bool,
    ) -> AllocationStatus:
        if current in (AllocationStatus.EN_ROUTE, AllocationStatus.LEFT_SHELTER):
            if distance_km < self.arrival_km:
                return AllocationStatus.ARRIVED
        elif current == AllocationStatus.ARRIVED:
            if distance_km > self.leave_km and alert_active:
                return AllocationStatus.LEFT_SHELTER
        return current

    def _persist_status(
        self, session: TrackingSession, status: AllocationStatus, now: datetime,
    ) -> None:
        allocation = self.store.get_allocation(session.allocation_id)
        if allocation is None:
            return
        changes = {"status": status}
        if status == AllocationStatus.ARRIVED and allocation.arrived_at is None:
            changes["arrived_at"] = now
        self.store.save_allocation(dataclasses.replace(allocation, **changes))
        logger.info(
            "User %d %s → %s (shelter %d)",
            session.user_id, session.status.value, status.value, session.shelter_id,
            extra={"user_id": session.user_id, "shelter_id": session.shelter_id},
        )

    # ── Location updates ──

    async def update(self, user_id: int, location: Coordinate) -> TrackingUpdate:
        """Feed one location fix; returns the resulting state and guidance."""
        now = self.clock()
        self.store.record_location(user_id, location, now)

        session = self._sessions.get(user_id) or self.resume(user_id, location)
        if session is None:
            return TrackingUpdate(is_tracked=False)

        distance = haversine(location, session.shelter_location)
        status = self._next_status(
            session.status, distance, self._alert_active(session.alert_id),
        )
        if status != session.status:
            self._persist_status(session, status, now)

        route_updated = False
        remaining = distance
        if status == AllocationStatus.EN_ROUTE:
            if distance > session.closest_distance_km + self.deviation_km:
                route_updated = True
                session.closest_distance_km = distance
                logger.info(
                    "User %d deviated from route (%.3f km from shelter %d)",
                    user_id, distance, session.shelter_id,
                    extra={"user_id": user_id, "distance_km": distance},
                )
                if self.route_cache is not None:
                    route = await self.route_cache.get_route(
                        location, session.shelter_location, force_refresh=True,
                    )
                    if route is not None:
                        session.route = route
                        remaining = route.distance_km
            else:
                session.closest_distance_km = min(session.closest_distance_km, distance)

        session.status = status
        session.last_location = location
        session.last_update = now

        return TrackingUpdate(
            is_tracked=True,
            status=status,
            shelter_id=session.shelter_id,
            distance_km=remaining,
            estimated_seconds=self.estimate_seconds(remaining),
            has_arrived=status == AllocationStatus.ARRIVED,
            has_left=status == AllocationStatus.LEFT_SHELTER,
            route_updated=route_updated,
            route=session.route,
        )

    def check_left_shelter(self, user_id: int) -> bool:
        """
        Re-evaluate an ARRIVED user against their last known position.

        Returns True when this call moved them to LEFT_SHELTER.
        """
        session = self._sessions.get(user_id)
        if session is None or session.status != AllocationStatus.ARRIVED:
            return False
        last = self.store.get_last_location(user_id) or session.last_location
        distance = haversine(last, session.shelter_location)
        status = self._next_status(
            session.status, distance, self._alert_active(session.alert_id),
        )
        if status == session.status:
            return False
        self._persist_status(session, status, self.clock())
        session.status = status
        return True

    # ── Termination ──

    def _terminate(self, allocation: Allocation, status: AllocationStatus) -> Allocation:
        ended = dataclasses.replace(allocation, status=status, ended_at=self.clock())
        with self.ledger.transaction():
            if allocation.shelter_id in self.ledger:
                self.ledger.release(allocation.shelter_id, 1)
            self.store.save_allocation(ended)
        return ended

    def end_for_user(self, user_id: int, alert_id: int) -> List[Allocation]:
        """Complete the user's allocation for an ended alert, plus any stale duplicates."""
        completed = [
            self._terminate(a, AllocationStatus.COMPLETED)
            for a in self.store.list_allocations(
                user_id=user_id, alert_id=alert_id, open_only=True,
            )
        ]
        session = self._sessions.get(user_id)
        if session is not None and session.alert_id == alert_id:
            self.stop(user_id)
        if len(completed) > 1:
            logger.warning(
                "Purged %d stale allocations for user %d, alert %d",
                len(completed) - 1, user_id, alert_id,
                extra={"user_id": user_id, "alert_id": alert_id},
            )
        return completed

    def end_for_alert(self, alert_id: int) -> int:
        """Alert-end sweep. Returns the number of allocations completed."""
        users = {
            a.user_id
            for a in self.store.list_allocations(alert_id=alert_id, open_only=True)
        }
        total = sum(len(self.end_for_user(uid, alert_id)) for uid in sorted(users))
        logger.info(
            "Alert %d ended: %d allocations completed for %d users",
            alert_id, total, len(users),
            extra={"alert_id": alert_id},
        )
        return total

    def release(self, user_id: int) -> List[Allocation]:
        """Explicitly release every open allocation the user holds."""
        released = [
            self._terminate(a, AllocationStatus.RELEASED)
            for a in self.store.list_allocations(user_id=user_id, open_only=True)
        ]
        self.stop(user_id)
        if released:
            logger.info(
                "Released user %d from %d allocation(s)", user_id, len(released),
                extra={"user_id": user_id},
            )
        return released
