"""
FindCover API.

    uvicorn findcover.app.main:app --reload --port 8000

The emergency service is built in the lifespan hook and kept on
``app.state``; routers reach it through ``api.dependencies.get_service``.
"""

from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from findcover.app.core.cache import RedisCacheBackend, close_redis
from findcover.app.core.config import Settings, settings
from findcover.app.core.errors import register_error_handlers
from findcover.app.core.health import HealthStatus, run_health_check
from findcover.app.core.logging_config import get_logger, setup_logging
from findcover.app.core.middleware import RequestLoggingMiddleware
from findcover.app.routing.provider import build_routing_provider
from findcover.app.routing.route_cache import DistanceRouteCache
from findcover.app.services.emergency_service import build_emergency_service
from findcover.app.store.memory_store import InMemoryEntityStore

from findcover.app.api.v1.alerts import router as alert_router, zones_router
from findcover.app.api.v1.allocation import router as allocation_router
from findcover.app.api.v1.emergency import location_router, router as emergency_router
from findcover.app.api.v1.shelters import router as shelter_router, users_router

setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    config: Settings = app.state.config
    provider = build_routing_provider(config)
    app.state.emergency_service = build_emergency_service(
        InMemoryEntityStore(),
        DistanceRouteCache(provider, RedisCacheBackend(config=config), config=config),
        config=config,
    )
    logger.info(
        "%s %s ready (%s, routing=%s, redis=%s)",
        config.APP_NAME, config.APP_VERSION, config.ENVIRONMENT,
        "google" if config.routing_enabled else "straight-line",
        "on" if config.REDIS_ENABLED else "off",
    )
    try:
        yield
    finally:
        if hasattr(provider, "close"):
            await provider.close()
        await close_redis()
        logger.info("%s stopped", config.APP_NAME)


health_router = APIRouter(prefix="/health", tags=["health"])


@health_router.get("")
async def health(request: Request):
    """Status of Redis, routing, the entity store and the occupancy ledger."""
    report = await run_health_check(
        request.app.state.emergency_service, request.app.state.config,
    )
    return report.to_dict()


@health_router.get("/live")
async def liveness():
    return {"status": "alive"}


@health_router.get("/ready")
async def readiness(request: Request):
    report = await run_health_check(
        request.app.state.emergency_service, request.app.state.config,
    )
    code = 503 if report.status == HealthStatus.UNHEALTHY else 200
    return JSONResponse(status_code=code, content=report.to_dict())


def create_app(config: Settings = settings) -> FastAPI:
    application = FastAPI(
        title=config.APP_NAME,
        version=config.APP_VERSION,
        description=(
            "Shelter allocation during missile alerts: zone checks, "
            "walking-distance shelter assignment with priority for the "
            "elderly and children, and live tracking until arrival."
        ),
        lifespan=lifespan,
    )
    application.state.config = config

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if config.CORS_ALLOW_ALL else config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.add_middleware(RequestLoggingMiddleware)
    register_error_handlers(application)

    for router in (
        location_router, emergency_router, allocation_router,
        zones_router, alert_router, shelter_router, users_router, health_router,
    ):
        application.include_router(router)
    return application


app = create_app()
