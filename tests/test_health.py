"""
test_health.py — Tests for the health probes.

Covers:
    • Redis probe: disabled, reachable, unreachable, app config over process settings
    • Routing probe with and without a Google Maps key
    • Entity store probe, including a store that raises
    • Ledger probe flags occupancy outside [0, capacity]
    • Overall status is the worst component

Run with:
    pytest tests/test_health.py -v
"""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

from findcover.app.allocation.ledger import OccupancyLedger
from findcover.app.core import health as health_module
from findcover.app.core.config import Settings
from findcover.app.core.health import (
    ComponentHealth,
    HealthReport,
    HealthStatus,
    check_ledger,
    check_redis,
    check_routing,
    check_store,
    run_health_check,
)


# ═══════════════════════════════════════════════════════════════════════════
# Test Fixtures
# ═══════════════════════════════════════════════════════════════════════════

def _use_settings(monkeypatch, **overrides) -> None:
    monkeypatch.setattr(health_module, "settings", Settings(**overrides))


def _fake_ping(result: bool):
    async def _ping(config=None) -> bool:
        return result
    return _ping


def _ledger(capacity: int = 5, occupancy: int = 2) -> OccupancyLedger:
    ledger = OccupancyLedger()
    ledger.register_capacity(1, capacity, occupancy)
    return ledger


# ═══════════════════════════════════════════════════════════════════════════
# Component probes
# ═══════════════════════════════════════════════════════════════════════════

class TestComponentProbes:

    def test_redis_disabled_is_degraded(self, monkeypatch):
        _use_settings(monkeypatch, REDIS_ENABLED=False)
        comp = asyncio.run(check_redis())
        assert comp.status == HealthStatus.DEGRADED

    def test_redis_reachable(self, monkeypatch):
        _use_settings(monkeypatch, REDIS_ENABLED=True, REDIS_URL="redis://:secret@cache:6379/0")
        monkeypatch.setattr(health_module, "redis_ping", _fake_ping(True))

        comp = asyncio.run(check_redis())

        assert comp.status == HealthStatus.HEALTHY
        assert comp.details == {"url": "cache:6379/0"}

    def test_redis_unreachable(self, monkeypatch):
        _use_settings(monkeypatch, REDIS_ENABLED=True)
        monkeypatch.setattr(health_module, "redis_ping", _fake_ping(False))
        assert asyncio.run(check_redis()).status == HealthStatus.DEGRADED

    def test_explicit_config_wins_over_process_settings(self, monkeypatch):
        _use_settings(monkeypatch, REDIS_ENABLED=True)
        pinged = []

        async def _ping(config=None):
            pinged.append(config)
            return True

        monkeypatch.setattr(health_module, "redis_ping", _ping)
        app_config = Settings(REDIS_ENABLED=False, GOOGLE_MAPS_API_KEY="key")

        assert asyncio.run(check_redis(app_config)).message == "Caching disabled"
        assert asyncio.run(check_routing(app_config)).status == HealthStatus.HEALTHY
        assert pinged == []

    def test_routing_modes(self, monkeypatch):
        _use_settings(monkeypatch, GOOGLE_MAPS_API_KEY=None)
        assert asyncio.run(check_routing()).status == HealthStatus.DEGRADED

        _use_settings(monkeypatch, GOOGLE_MAPS_API_KEY="key")
        assert asyncio.run(check_routing()).status == HealthStatus.HEALTHY

    def test_store_ping(self):
        store = MagicMock()
        store.ping.return_value = True
        assert asyncio.run(check_store(store)).status == HealthStatus.HEALTHY

        store.ping.return_value = False
        assert asyncio.run(check_store(store)).status == HealthStatus.UNHEALTHY

    def test_store_raising_is_unhealthy(self):
        store = MagicMock()
        store.ping.side_effect = RuntimeError("connection reset")

        comp = asyncio.run(check_store(store))

        assert comp.status == HealthStatus.UNHEALTHY
        assert comp.details["error"] == "connection reset"

    def test_ledger_within_capacity(self):
        comp = asyncio.run(check_ledger(_ledger()))
        assert comp.status == HealthStatus.HEALTHY
        assert comp.details == {"shelters": 1, "occupied_places": 2}

    def test_ledger_violation(self):
        ledger = MagicMock()
        ledger.snapshot.return_value = {1: {"capacity": 2, "occupancy": 3}}
        ledger.violations.return_value = [1]

        comp = asyncio.run(check_ledger(ledger))

        assert comp.status == HealthStatus.UNHEALTHY
        assert "[1]" in comp.message


# ═══════════════════════════════════════════════════════════════════════════
# Aggregation
# ═══════════════════════════════════════════════════════════════════════════

class TestHealthReport:

    def test_worst_status_wins(self):
        report = HealthReport(components=[
            ComponentHealth(name="a"),
            ComponentHealth(name="b", status=HealthStatus.DEGRADED),
        ])
        assert report.status == HealthStatus.DEGRADED

        report.components.append(ComponentHealth(name="c", status=HealthStatus.UNHEALTHY))
        assert report.status == HealthStatus.UNHEALTHY

    def test_empty_report_is_healthy(self):
        assert HealthReport().status == HealthStatus.HEALTHY

    def test_run_health_check(self, monkeypatch):
        _use_settings(monkeypatch, REDIS_ENABLED=False, GOOGLE_MAPS_API_KEY=None)
        service = MagicMock()
        service.store.ping.return_value = True
        service.ledger = _ledger()

        out = asyncio.run(run_health_check(service)).to_dict()

        assert out["status"] == "degraded"
        assert [c["name"] for c in out["components"]] == [
            "redis", "routing", "entity_store", "occupancy_ledger",
        ]
