"""FastAPI dependencies shared by the v1 routers."""

from __future__ import annotations

from fastapi import Request

from findcover.app.services.emergency_service import EmergencyResponseService


def get_service(request: Request) -> EmergencyResponseService:
    """The service wired at startup (see ``main.lifespan``)."""
    return request.app.state.emergency_service
