"""
FastAPI routes: alert zones and alert lifecycle.

Provides endpoints to:
    POST /api/v1/zones                — register an alert zone polygon
    GET  /api/v1/zones                — list zones
    POST /api/v1/alerts               — declare an alert for a zone
    GET  /api/v1/alerts/active        — list active alerts
    POST /api/v1/alerts/{id}/end      — end an alert and release its shelters
"""

from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends

from findcover.app.alerts.models import ActiveAlert, AlertZone
from findcover.app.api.dependencies import get_service
from findcover.app.api.schemas import (
    AlertCreateRequest,
    AlertEndResponse,
    AlertOut,
    PolygonPoint,
    ZoneCreateRequest,
    ZoneOut,
)
from findcover.app.services.emergency_service import EmergencyResponseService, to_coordinate

zones_router = APIRouter(prefix="/api/v1/zones", tags=["alert-zones"])
router = APIRouter(prefix="/api/v1/alerts", tags=["alerts"])


def _to_zone_out(zone: AlertZone) -> ZoneOut:
    return ZoneOut(
        id=zone.id,
        name=zone.name,
        polygon=[PolygonPoint(lat=lat, lon=lon) for lat, lon in zone.polygon],
        response_time_seconds=zone.response_time_seconds,
    )


def _to_alert_out(alert: ActiveAlert) -> AlertOut:
    return AlertOut(
        id=alert.id,
        zone_name=alert.zone_name,
        center=PolygonPoint(lat=alert.center.latitude, lon=alert.center.longitude),
        started_at=alert.started_at,
        alert_type=alert.alert_type,
        is_active=alert.is_active,
        ended_at=alert.ended_at,
    )


@zones_router.post("", response_model=ZoneOut, status_code=201)
async def create_zone(
    body: ZoneCreateRequest,
    service: EmergencyResponseService = Depends(get_service),
) -> ZoneOut:
    zone = service.store.add_zone(
        body.name,
        [(p.lat, p.lon) for p in body.polygon],
        body.response_time_seconds,
    )
    return _to_zone_out(zone)


@zones_router.get("", response_model=List[ZoneOut])
async def list_zones(
    service: EmergencyResponseService = Depends(get_service),
) -> List[ZoneOut]:
    return [_to_zone_out(z) for z in service.store.list_zones()]


@router.post("", response_model=AlertOut, status_code=201)
async def declare_alert(
    body: AlertCreateRequest,
    service: EmergencyResponseService = Depends(get_service),
) -> AlertOut:
    center = None
    if body.latitude is not None and body.longitude is not None:
        center = to_coordinate(body.latitude, body.longitude, field="center")
    alert = service.alerts.declare_alert(body.zone_name, center, body.alert_type)
    return _to_alert_out(alert)


@router.get("/active", response_model=List[AlertOut])
async def active_alerts(
    service: EmergencyResponseService = Depends(get_service),
) -> List[AlertOut]:
    return [_to_alert_out(a) for a in service.alerts.active_alerts()]


@router.post("/{alert_id}/end", response_model=AlertEndResponse)
async def end_alert(
    alert_id: int,
    service: EmergencyResponseService = Depends(get_service),
) -> AlertEndResponse:
    summary = service.alerts.end_alert(alert_id)
    alert = service.store.get_alert(alert_id)
    return AlertEndResponse(
        alert=_to_alert_out(alert),
        allocations_completed=summary["allocations_completed"],
    )
