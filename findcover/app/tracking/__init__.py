"""
tracking — Following allocated users until they reach cover.

Sub-modules:
    models         — Allocation, TrackingSession, status / action enums
    state_machine  — Arrival, leave and route-deviation detection; alert-end sweep
"""
