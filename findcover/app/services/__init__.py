"""
services — Request-level orchestration over the domain packages.

Sub-modules:
    emergency_service  — Location checks, shelter routes, tracking, area status, batch runs
    models             — Result dataclasses handed to the API layer
"""
