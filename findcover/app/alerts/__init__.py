"""
alerts — Alert zones, active alerts and geofence matching.

Sub-modules:
    alert_service   — Declare / end alerts and run the end-of-alert sweep
    geo_fence       — Point-in-polygon zone membership and alert lookup
    models          — AlertZone, ActiveAlert, LocationCheckResult
"""
