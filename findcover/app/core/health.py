"""
Health probes for the shelter service.

``run_health_check`` inspects the pieces a shelter request depends on:

    redis             optional; DEGRADED when disabled or unreachable
    routing           DEGRADED when running on straight-line estimates
    entity_store      UNHEALTHY when the store does not answer
    occupancy_ledger  UNHEALTHY when any shelter is over capacity or negative

The overall status is the worst component status.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from findcover.app.core.cache import redis_ping
from findcover.app.core.config import Settings, settings

logger = logging.getLogger(__name__)

_PROCESS_STARTED = time.monotonic()


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"

    @property
    def severity(self) -> int:
        return ("healthy", "degraded", "unhealthy").index(self.value)


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus = HealthStatus.HEALTHY
    message: str = ""
    latency_ms: float = 0.0
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "message": self.message,
            "latency_ms": round(self.latency_ms, 2),
        }
        if self.details:
            out["details"] = self.details
        return out


@dataclass
class HealthReport:
    components: List[ComponentHealth] = field(default_factory=list)
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def status(self) -> HealthStatus:
        if not self.components:
            return HealthStatus.HEALTHY
        return max((c.status for c in self.components), key=lambda s: s.severity)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "timestamp": self.checked_at.isoformat(),
            "uptime_seconds": round(time.monotonic() - _PROCESS_STARTED, 1),
            "components": [c.to_dict() for c in self.components],
        }


async def check_redis(config: Optional[Settings] = None) -> ComponentHealth:
    config = config or settings
    comp = ComponentHealth(name="redis", details={"url": config.REDIS_URL.split("@")[-1]})
    if not config.REDIS_ENABLED:
        comp.status = HealthStatus.DEGRADED
        comp.message = "Caching disabled"
        return comp
    started = time.perf_counter()
    ok = await redis_ping(config)
    comp.latency_ms = (time.perf_counter() - started) * 1000
    if ok:
        comp.message = "Cache reachable"
    else:
        comp.status = HealthStatus.DEGRADED
        comp.message = "Cache unreachable, every distance goes to the routing provider"
    return comp


async def check_routing(config: Optional[Settings] = None) -> ComponentHealth:
    config = config or settings
    if config.routing_enabled:
        return ComponentHealth(
            name="routing",
            message="Google Maps walking routes",
            details={"base_url": config.GOOGLE_MAPS_BASE_URL},
        )
    return ComponentHealth(
        name="routing",
        status=HealthStatus.DEGRADED,
        message="No Google Maps key, using straight-line estimates",
    )


async def check_store(store) -> ComponentHealth:
    comp = ComponentHealth(name="entity_store")
    started = time.perf_counter()
    try:
        reachable = store.ping()
    except Exception as e:
        logger.error("Entity store ping raised: %s", e)
        reachable = False
        comp.details = {"error": str(e)}
    comp.latency_ms = (time.perf_counter() - started) * 1000
    if reachable:
        comp.message = "Store reachable"
    else:
        comp.status = HealthStatus.UNHEALTHY
        comp.message = "Store did not answer"
    return comp


async def check_ledger(ledger) -> ComponentHealth:
    snapshot = ledger.snapshot()
    comp = ComponentHealth(
        name="occupancy_ledger",
        message="Occupancy within capacity",
        details={
            "shelters": len(snapshot),
            "occupied_places": sum(s["occupancy"] for s in snapshot.values()),
        },
    )
    broken = ledger.violations()
    if broken:
        logger.error("Occupancy outside [0, capacity] for shelters %s", broken)
        comp.status = HealthStatus.UNHEALTHY
        comp.message = f"Occupancy out of bounds for shelters {broken}"
    return comp


async def run_health_check(service, config: Optional[Settings] = None) -> HealthReport:
    """Probe the subsystems behind an ``EmergencyResponseService``."""
    report = HealthReport()
    report.components.append(await check_redis(config))
    report.components.append(await check_routing(config))
    report.components.append(await check_store(service.store))
    report.components.append(await check_ledger(service.ledger))
    return report
