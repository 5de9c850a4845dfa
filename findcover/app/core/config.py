"""
Settings for the shelter service, read from the environment (and ``.env``).

Services take a ``Settings`` in their constructor, so a test builds the
variant it needs directly::

    Settings(REDIS_ENABLED=False, ARRIVAL_THRESHOLD_KM=0.02)

The module-level ``settings`` object is what the running app uses.
"""

from __future__ import annotations

from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ── Service ──
    APP_NAME: str = "FindCover Shelter Service"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development | staging | production
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:5173"]
    CORS_ALLOW_ALL: bool = True

    # ── Redis (distance / route cache) ──
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_ENABLED: bool = True
    REDIS_CACHE_TTL: int = Field(300, gt=0)
    REDIS_DISTANCE_TTL: int = Field(3600, gt=0)
    REDIS_ROUTE_TTL: int = Field(900, gt=0)
    DISTANCE_CACHE_PRECISION_DEG: float = Field(0.0005, gt=0)  # about 50 m
    ROUTE_CACHE_PRECISION_DEG: float = Field(0.0001, gt=0)  # about 11 m

    # ── Google Maps walking routes ──
    GOOGLE_MAPS_API_KEY: Optional[str] = None
    GOOGLE_MAPS_BASE_URL: str = "https://maps.googleapis.com/maps/api"
    ROUTING_TIMEOUT: int = Field(15, gt=0)
    ROUTING_MAX_RETRIES: int = Field(3, ge=1)
    ROUTING_MAX_ELEMENTS: int = Field(100, ge=1)  # origins x destinations per matrix call
    ROUTING_BATCH_DELAY_SECONDS: float = Field(0.1, ge=0)
    ROUTING_DIRECTIONS_DELAY_SECONDS: float = Field(0.05, ge=0)

    # ── Allocation ──
    MAX_TRAVEL_TIME_MINUTES: float = Field(1.0, gt=0)
    WALKING_SPEED_KM_PER_MINUTE: float = Field(0.6, gt=0)
    ENABLE_AGE_PRIORITY: bool = True
    DEFAULT_AREA_RADIUS_KM: float = Field(2.0, gt=0)

    # ── Tracking ──
    ARRIVAL_THRESHOLD_KM: float = Field(0.01, gt=0)
    LEAVE_THRESHOLD_KM: float = Field(0.05, gt=0)
    ROUTE_DEVIATION_THRESHOLD_KM: float = Field(0.1, gt=0)

    @field_validator("LOG_LEVEL")
    @classmethod
    def _known_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level {v!r}")
        return level

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def routing_enabled(self) -> bool:
        """True when walking distances come from Google Maps."""
        return bool(self.GOOGLE_MAPS_API_KEY)


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
