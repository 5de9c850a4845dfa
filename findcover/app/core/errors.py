"""
Error types raised by the shelter service, and their HTTP rendering.

Each exception carries an ``ErrorKind``; the kind alone decides the HTTP
status, so services raise domain errors without knowing about HTTP:

    kind                 status   raised for
    validation           422      missing or (0, 0) coordinates, bad payloads
    not_found            404      unknown user, shelter, alert or zone
    conflict             409      duplicate shelter, second active alert, full shelter
    upstream_failure     502      routing provider errors
    persistence_failure  503      entity store failures
    internal             500      anything unexpected

Every error response has the same body::

    {"error": {"code": "NOT_FOUND", "kind": "not_found", "message": "User not found",
               "status": 404, "details": {...}, "path": "...", "method": "..."}}

``path`` and ``method`` are omitted in production.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from findcover.app.core.config import settings

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    UPSTREAM_FAILURE = "upstream_failure"
    PERSISTENCE_FAILURE = "persistence_failure"
    INTERNAL = "internal"

    @property
    def http_status(self) -> int:
        return {
            "validation": 422,
            "not_found": 404,
            "conflict": 409,
            "upstream_failure": 502,
            "persistence_failure": 503,
        }.get(self.value, 500)


# ═══════════════════════════════════════════════════════════════════════════
# Exceptions
# ═══════════════════════════════════════════════════════════════════════════

class FindCoverError(Exception):
    kind: ErrorKind = ErrorKind.INTERNAL
    error_code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = {k: v for k, v in details.items() if v is not None}

    @property
    def status_code(self) -> int:
        return self.kind.http_status


class ValidationError(FindCoverError):
    kind = ErrorKind.VALIDATION
    error_code = "VALIDATION_ERROR"

    def __init__(self, message: str, *, field: Optional[str] = None, **details: Any):
        super().__init__(message, field=field, **details)


class NotFoundError(FindCoverError):
    """``NotFoundError("Shelter", id=3)`` renders as "Shelter not found"."""

    kind = ErrorKind.NOT_FOUND
    error_code = "NOT_FOUND"

    def __init__(self, resource: str, **identifiers: Any):
        super().__init__(f"{resource} not found", resource=resource, **identifiers)


class ConflictError(FindCoverError):
    kind = ErrorKind.CONFLICT
    error_code = "CONFLICT"


class CapacityExceededError(ConflictError):
    """A reservation asked for more places than the shelter has left."""

    error_code = "CAPACITY_EXCEEDED"

    def __init__(self, shelter_id: int, requested: int, available: int):
        super().__init__(
            f"Shelter {shelter_id} has {available} free spaces, {requested} requested",
            shelter_id=shelter_id, requested=requested, available=available,
        )
        self.shelter_id = shelter_id
        self.requested = requested
        self.available = available


class UpstreamServiceError(FindCoverError):
    kind = ErrorKind.UPSTREAM_FAILURE
    error_code = "UPSTREAM_SERVICE_ERROR"

    def __init__(self, service: str, message: str = "", **details: Any):
        super().__init__(f"{service} request failed: {message}", service=service, **details)
        self.service = service


class PersistenceError(FindCoverError):
    kind = ErrorKind.PERSISTENCE_FAILURE
    error_code = "PERSISTENCE_ERROR"

    def __init__(self, operation: str, message: str = "", **details: Any):
        super().__init__(f"Store {operation} failed: {message}", operation=operation, **details)
        self.operation = operation


# ═══════════════════════════════════════════════════════════════════════════
# HTTP rendering
# ═══════════════════════════════════════════════════════════════════════════

def _envelope(
    request: Request,
    kind: ErrorKind,
    code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    error: Dict[str, Any] = {
        "code": code,
        "kind": kind.value,
        "message": message,
        "status": kind.http_status,
    }
    if details:
        error["details"] = details
    if not settings.is_production:
        error["path"] = request.url.path
        error["method"] = request.method
    return JSONResponse(
        status_code=kind.http_status, content=jsonable_encoder({"error": error}),
    )


def register_error_handlers(app: FastAPI) -> None:

    @app.exception_handler(FindCoverError)
    async def _domain_error(request: Request, exc: FindCoverError):
        if exc.status_code >= 500:
            logger.error("%s: %s %s", exc.error_code, exc.message, exc.details)
        else:
            logger.info("%s: %s", exc.error_code, exc.message)
        return _envelope(request, exc.kind, exc.error_code, exc.message, exc.details)

    @app.exception_handler(RequestValidationError)
    async def _bad_payload(request: Request, exc: RequestValidationError):
        return _envelope(
            request, ErrorKind.VALIDATION, "VALIDATION_ERROR",
            "Request payload is invalid", {"errors": exc.errors()},
        )

    @app.exception_handler(ValueError)
    async def _bad_value(request: Request, exc: ValueError):
        return _envelope(request, ErrorKind.VALIDATION, "VALIDATION_ERROR", str(exc))

    @app.exception_handler(Exception)
    async def _unexpected(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        message = str(exc) if settings.DEBUG else "An error occurred while processing your request"
        return _envelope(request, ErrorKind.INTERNAL, "INTERNAL_ERROR", message)
