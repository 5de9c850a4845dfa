"""
alert_service.py — Alert lifecycle: declare, end, and the end-of-alert sweep.

═══════════════════════════════════════════════════════════════════════════
LIFECYCLE
═══════════════════════════════════════════════════════════════════════════

    ┌─────────────────────┐
    │  declare_alert      │  zone must exist (normalised name match)
    │                     │  zone must not already have an active alert
    └─────────┬───────────┘
              │   people check in, get allocated, get tracked
              ▼
    ┌─────────────────────┐
    │  end_alert          │  mark alert inactive, stamp ended_at
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  sweep              │  every open allocation for the alert:
    │                     │    release its ledger place
    │                     │    stop the tracking session
    │                     │    mark COMPLETED (stale duplicates too)
    └─────────────────────┘

Ending an alert twice is a no-op for the second call.
"""

from __future__ import annotations

import dataclasses
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from findcover.app.alerts.geo_fence import matches_alert_area
from findcover.app.alerts.models import ActiveAlert, AlertZone, _now
from findcover.app.core.errors import NotFoundError, ValidationError
from findcover.app.spatial.radius_utils import Coordinate, is_missing_location
from findcover.app.tracking.state_machine import TrackingStateMachine

logger = logging.getLogger(__name__)


class AlertService:
    """
    Usage:
        alerts = AlertService(store, tracker)
        alert = alerts.declare_alert("Haifa Port", Coordinate(32.82, 35.0))
        ...
        summary = alerts.end_alert(alert.id)
    """

    def __init__(
        self,
        store,
        tracker: TrackingStateMachine,
        clock: Callable[[], datetime] = _now,
    ):
        self.store = store
        self.tracker = tracker
        self.clock = clock

    def _find_zone(self, zone_name: str) -> Optional[AlertZone]:
        for zone in self.store.list_zones():
            if matches_alert_area(zone.name, zone_name):
                return zone
        return None

    def declare_alert(
        self,
        zone_name: str,
        center: Optional[Coordinate] = None,
        alert_type: str = "missile",
    ) -> ActiveAlert:
        zone = self._find_zone(zone_name)
        if zone is None:
            raise NotFoundError("AlertZone", name=zone_name)

        if center is None or is_missing_location(center.latitude, center.longitude):
            if not zone.polygon:
                raise ValidationError("Alert center is required", field="center")
            # Fall back to the vertex centroid of the zone.
            lats = [v[0] for v in zone.polygon]
            lons = [v[1] for v in zone.polygon]
            center = Coordinate(sum(lats) / len(lats), sum(lons) / len(lons))

        alert = self.store.add_alert(zone.name, center, alert_type, started_at=self.clock())
        logger.warning(
            "Alert %d declared for zone %s (%s)", alert.id, zone.name, alert_type,
            extra={"alert_id": alert.id, "zone_name": zone.name},
        )
        return alert

    def end_alert(self, alert_id: int) -> Dict[str, Any]:
        alert = self.store.get_alert(alert_id)
        if alert is None:
            raise NotFoundError("Alert", id=alert_id)

        if alert.is_active:
            alert = dataclasses.replace(alert, is_active=False, ended_at=self.clock())
            self.store.save_alert(alert)
            logger.info(
                "Alert %d for zone %s ended", alert.id, alert.zone_name,
                extra={"alert_id": alert.id, "zone_name": alert.zone_name},
            )

        completed = self.tracker.end_for_alert(alert_id)
        return {"alert": alert.to_dict(), "allocations_completed": completed}

    def active_alerts(self) -> List[ActiveAlert]:
        return self.store.list_active_alerts()
