"""
memory_store.py — In-process entity store.

Holds users, their last known location, shelters, alert zones, alerts and
allocations behind the ``EntityStore`` protocol that the services depend on.
Reads return ``None`` for unknown ids; uniqueness rules raise
``ConflictError``:

    • a provider may register a shelter at a given location only once
    • a zone may have only one active alert
    • a user may hold only one open allocation per alert

A database-backed store implements the same protocol and raises
``PersistenceError`` when the backing service is unreachable.
"""

from __future__ import annotations

import itertools
import logging
import threading
from datetime import datetime
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from findcover.app.alerts.geo_fence import matches_alert_area
from findcover.app.alerts.models import ActiveAlert, AlertZone, Vertex, _now
from findcover.app.allocation.models import Person, Shelter
from findcover.app.core.errors import ConflictError, ValidationError
from findcover.app.spatial.radius_utils import Coordinate
from findcover.app.tracking.models import Allocation

logger = logging.getLogger(__name__)

_LOCATION_DECIMALS = 6  # ≈ 0.1 m, duplicate-shelter comparison


class EntityStore(Protocol):
    def ping(self) -> bool: ...

    def add_user(self, person: Person) -> Person: ...
    def get_user(self, user_id: int) -> Optional[Person]: ...

    def record_location(self, user_id: int, location: Coordinate, at: datetime) -> None: ...
    def get_last_location(self, user_id: int) -> Optional[Coordinate]: ...

    def add_shelter(self, shelter: Shelter) -> Shelter: ...
    def get_shelter(self, shelter_id: int) -> Optional[Shelter]: ...
    def save_shelter(self, shelter: Shelter) -> None: ...
    def list_shelters(self, active_only: bool = True) -> List[Shelter]: ...

    def add_zone(self, name: str, polygon: Sequence[Vertex], response_time_seconds: int) -> AlertZone: ...
    def list_zones(self) -> List[AlertZone]: ...

    def add_alert(
        self, zone_name: str, center: Coordinate, alert_type: str = ...,
        started_at: Optional[datetime] = None,
    ) -> ActiveAlert: ...
    def get_alert(self, alert_id: int) -> Optional[ActiveAlert]: ...
    def save_alert(self, alert: ActiveAlert) -> None: ...
    def list_active_alerts(self) -> List[ActiveAlert]: ...

    def add_allocation(self, user_id: int, shelter_id: int, alert_id: int, distance_km: float) -> Allocation: ...
    def get_allocation(self, allocation_id: int) -> Optional[Allocation]: ...
    def save_allocation(self, allocation: Allocation) -> None: ...
    def list_allocations(
        self,
        user_id: Optional[int] = None,
        alert_id: Optional[int] = None,
        open_only: bool = False,
    ) -> List[Allocation]: ...


class InMemoryEntityStore:
    """Dict-backed ``EntityStore``; safe to share between request handlers."""

    def __init__(self):
        self._lock = threading.Lock()
        self._users: Dict[int, Person] = {}
        self._locations: Dict[int, Tuple[datetime, Coordinate]] = {}
        self._shelters: Dict[int, Shelter] = {}
        self._zones: Dict[int, AlertZone] = {}
        self._alerts: Dict[int, ActiveAlert] = {}
        self._allocations: Dict[int, Allocation] = {}
        self._shelter_ids = itertools.count(1)
        self._zone_ids = itertools.count(1)
        self._alert_ids = itertools.count(1)
        self._allocation_ids = itertools.count(1)

    def ping(self) -> bool:
        return True

    # ── Users ──

    def add_user(self, person: Person) -> Person:
        with self._lock:
            self._users[person.id] = person
        return person

    def get_user(self, user_id: int) -> Optional[Person]:
        return self._users.get(user_id)

    def record_location(self, user_id: int, location: Coordinate, at: datetime) -> None:
        with self._lock:
            self._locations[user_id] = (at, location)

    def get_last_location(self, user_id: int) -> Optional[Coordinate]:
        last = self._locations.get(user_id)
        return last[1] if last else None

    # ── Shelters ──

    def add_shelter(self, shelter: Shelter) -> Shelter:
        """Register a shelter; ``shelter.id`` of 0 means "assign one"."""
        key = (
            round(shelter.location.latitude, _LOCATION_DECIMALS),
            round(shelter.location.longitude, _LOCATION_DECIMALS),
        )
        with self._lock:
            if shelter.provider_id is not None:
                for existing in self._shelters.values():
                    same_spot = (
                        round(existing.location.latitude, _LOCATION_DECIMALS),
                        round(existing.location.longitude, _LOCATION_DECIMALS),
                    ) == key
                    if existing.provider_id == shelter.provider_id and same_spot:
                        raise ConflictError(
                            "User added this shelter already",
                            provider_id=shelter.provider_id,
                            shelter_id=existing.id,
                        )
            if shelter.id == 0:
                shelter.id = next(self._shelter_ids)
            elif shelter.id in self._shelters:
                raise ConflictError("Shelter id already registered", shelter_id=shelter.id)
            self._shelters[shelter.id] = shelter
        return shelter

    def get_shelter(self, shelter_id: int) -> Optional[Shelter]:
        return self._shelters.get(shelter_id)

    def save_shelter(self, shelter: Shelter) -> None:
        with self._lock:
            self._shelters[shelter.id] = shelter

    def list_shelters(self, active_only: bool = True) -> List[Shelter]:
        return [s for s in self._shelters.values() if s.is_active or not active_only]

    # ── Zones ──

    def add_zone(
        self, name: str, polygon: Sequence[Vertex], response_time_seconds: int,
    ) -> AlertZone:
        if not name or not name.strip():
            raise ValidationError("Zone name is required", field="name")
        with self._lock:
            zone = AlertZone(
                id=next(self._zone_ids),
                name=name.strip(),
                polygon=list(polygon),
                response_time_seconds=response_time_seconds,
            )
            self._zones[zone.id] = zone
        return zone

    def list_zones(self) -> List[AlertZone]:
        return list(self._zones.values())

    # ── Alerts ──

    def add_alert(
        self, zone_name: str, center: Coordinate, alert_type: str = "missile",
        started_at: Optional[datetime] = None,
    ) -> ActiveAlert:
        with self._lock:
            for existing in self._alerts.values():
                if existing.is_active and matches_alert_area(existing.zone_name, zone_name):
                    raise ConflictError(
                        f"Zone {zone_name} already has an active alert",
                        alert_id=existing.id,
                    )
            alert = ActiveAlert(
                id=next(self._alert_ids),
                zone_name=zone_name,
                center=center,
                started_at=started_at or _now(),
                alert_type=alert_type,
            )
            self._alerts[alert.id] = alert
        return alert

    def get_alert(self, alert_id: int) -> Optional[ActiveAlert]:
        return self._alerts.get(alert_id)

    def save_alert(self, alert: ActiveAlert) -> None:
        with self._lock:
            self._alerts[alert.id] = alert

    def list_active_alerts(self) -> List[ActiveAlert]:
        return [a for a in self._alerts.values() if a.is_active]

    # ── Allocations ──

    def add_allocation(
        self, user_id: int, shelter_id: int, alert_id: int, distance_km: float,
    ) -> Allocation:
        with self._lock:
            for existing in self._allocations.values():
                if existing.user_id == user_id and existing.alert_id == alert_id and existing.is_open:
                    raise ConflictError(
                        "User already holds an allocation for this alert",
                        user_id=user_id, alert_id=alert_id, allocation_id=existing.id,
                    )
            allocation = Allocation(
                id=next(self._allocation_ids),
                user_id=user_id,
                shelter_id=shelter_id,
                alert_id=alert_id,
                distance_km=distance_km,
            )
            self._allocations[allocation.id] = allocation
        return allocation

    def get_allocation(self, allocation_id: int) -> Optional[Allocation]:
        return self._allocations.get(allocation_id)

    def save_allocation(self, allocation: Allocation) -> None:
        with self._lock:
            self._allocations[allocation.id] = allocation

    def list_allocations(
        self,
        user_id: Optional[int] = None,
        alert_id: Optional[int] = None,
        open_only: bool = False,
    ) -> List[Allocation]:
        return [
            a for a in self._allocations.values()
            if (user_id is None or a.user_id == user_id)
            and (alert_id is None or a.alert_id == alert_id)
            and (not open_only or a.is_open)
        ]
