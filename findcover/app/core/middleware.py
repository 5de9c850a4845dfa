"""
Per-request bookkeeping: correlation id, timing, one access log line.

Clients may send ``X-Request-ID`` (kept) and ``X-User-ID`` (bound to the
log context so tracking logs of that request name the user). The response
echoes the request id and carries ``X-Process-Time``.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Dict

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from findcover.app.core.logging_config import set_request_context

logger = logging.getLogger(__name__)

# Probe and documentation traffic is not worth an access line.
_UNLOGGED = ("/docs", "/redoc", "/openapi", "/favicon", "/health")


def _context_for(request: Request) -> Dict[str, Any]:
    ctx: Dict[str, Any] = {
        "request_id": request.headers.get("X-Request-ID") or uuid.uuid4().hex[:16],
        "client_ip": request.client.host if request.client else "unknown",
        "endpoint": request.url.path,
        "method": request.method,
    }
    user = request.headers.get("X-User-ID")
    if user:
        ctx["user_id"] = user
    return ctx


def _access_line(ctx: Dict[str, Any], status: int, elapsed_ms: float) -> None:
    if ctx["endpoint"].startswith(_UNLOGGED) and status < 500:
        return
    level = logging.INFO
    if status >= 500:
        level = logging.ERROR
    elif status >= 400:
        level = logging.WARNING
    logger.log(
        level,
        "%s %s %d %.1fms",
        ctx["method"], ctx["endpoint"], status, elapsed_ms,
        extra={"duration_ms": round(elapsed_ms, 1), "status_code": status},
    )


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Bind request context, time the handler, write the access log."""

    async def dispatch(self, request: Request, call_next) -> Response:
        ctx = _context_for(request)
        set_request_context(**ctx)
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            _access_line(ctx, 500, (time.perf_counter() - started) * 1000)
            set_request_context()
            raise

        elapsed_ms = (time.perf_counter() - started) * 1000
        response.headers["X-Request-ID"] = ctx["request_id"]
        response.headers["X-Process-Time"] = f"{elapsed_ms:.1f}ms"
        _access_line(ctx, response.status_code, elapsed_ms)
        set_request_context()
        return response
