"""
provider.py — Walking distance and route providers.

Two implementations of the ``RoutingProvider`` protocol:

    GoogleMapsRoutingProvider    Distance Matrix + Directions HTTP APIs
    StraightLineRoutingProvider  haversine distance, walking-speed duration;
                                 used when no API key is configured and as
                                 the fallback shape for degraded responses

Distance Matrix request shape (walking mode):

    GET {base}/distancematrix/json
        ?origins=lat,lon|lat,lon&destinations=lat,lon|...&mode=walking&key=...

    rows[i].elements[j] = {status, distance.value (m), duration.value (s)}

One call may carry at most ``ROUTING_MAX_ELEMENTS`` origin × destination
elements; batching to respect that lives in the route cache.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx

from findcover.app.core.config import Settings, settings as default_settings
from findcover.app.core.errors import UpstreamServiceError
from findcover.app.spatial.radius_utils import Coordinate, haversine

logger = logging.getLogger(__name__)

_HTML_TAG = re.compile(r"<[^>]+>")
RETRY_BACKOFF_BASE = 2.0


# ═══════════════════════════════════════════════════════════════════════════
# Result types
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class DistanceResult:
    """One origin → destination element of a distance matrix."""
    distance_km: float
    duration_seconds: float
    status: str = "OK"

    @property
    def ok(self) -> bool:
        return self.status == "OK"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "distance_km": self.distance_km,
            "duration_seconds": self.duration_seconds,
            "status": self.status,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DistanceResult":
        return cls(
            distance_km=float(data["distance_km"]),
            duration_seconds=float(data["duration_seconds"]),
            status=data.get("status", "OK"),
        )


@dataclass
class RouteSummary:
    """Walking route from a user to a shelter."""
    distance_km: float
    duration_seconds: float
    polyline: str = ""
    instructions: List[str] = field(default_factory=list)

    @property
    def current_instruction(self) -> Optional[str]:
        return self.instructions[0] if self.instructions else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "distance_km": self.distance_km,
            "duration_seconds": self.duration_seconds,
            "polyline": self.polyline,
            "instructions": list(self.instructions),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RouteSummary":
        return cls(
            distance_km=float(data["distance_km"]),
            duration_seconds=float(data["duration_seconds"]),
            polyline=data.get("polyline", ""),
            instructions=list(data.get("instructions", [])),
        )


class RoutingProvider(Protocol):
    """Contract the route cache calls through."""

    async def distance_matrix(
        self,
        origins: Sequence[Coordinate],
        destinations: Sequence[Coordinate],
    ) -> List[List[DistanceResult]]:
        """Row per origin, column per destination."""
        ...

    async def directions(
        self, origin: Coordinate, destination: Coordinate,
    ) -> Optional[RouteSummary]:
        ...


# ═══════════════════════════════════════════════════════════════════════════
# Offline provider
# ═══════════════════════════════════════════════════════════════════════════

class StraightLineRoutingProvider:
    """Great-circle distances with a walking-speed duration estimate."""

    def __init__(self, walking_speed_km_per_minute: float = 0.6):
        self.walking_speed_km_per_minute = walking_speed_km_per_minute

    def _result(self, origin: Coordinate, destination: Coordinate) -> DistanceResult:
        km = haversine(origin, destination)
        return DistanceResult(
            distance_km=km,
            duration_seconds=km / self.walking_speed_km_per_minute * 60.0,
        )

    async def distance_matrix(self, origins, destinations):
        return [[self._result(o, d) for d in destinations] for o in origins]

    async def directions(self, origin, destination):
        leg = self._result(origin, destination)
        return RouteSummary(
            distance_km=leg.distance_km,
            duration_seconds=leg.duration_seconds,
            instructions=["Head directly toward the shelter"],
        )


# ═══════════════════════════════════════════════════════════════════════════
# Google Maps provider
# ═══════════════════════════════════════════════════════════════════════════

def _fmt(point: Coordinate) -> str:
    return f"{point.latitude},{point.longitude}"


class GoogleMapsRoutingProvider:
    """
    Walking distances and routes from the Google Maps web services.

    Usage:
        provider = GoogleMapsRoutingProvider(api_key="...")
        rows = await provider.distance_matrix([user], [shelter_a, shelter_b])
        route = await provider.directions(user, shelter_a)
        await provider.close()
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        config: Settings = default_settings,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key or config.GOOGLE_MAPS_API_KEY
        if not self.api_key:
            raise ValueError("GoogleMapsRoutingProvider requires an API key")
        self.base_url = config.GOOGLE_MAPS_BASE_URL.rstrip("/")
        self.timeout = config.ROUTING_TIMEOUT
        self.max_retries = config.ROUTING_MAX_RETRIES
        self._http_client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=float(self.timeout))
        return self._http_client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    async def _get_json(self, endpoint: str, params: Dict[str, Any]) -> Dict[str, Any]:
        client = await self._get_client()
        url = f"{self.base_url}/{endpoint}/json"
        params = {**params, "mode": "walking", "key": self.api_key}

        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries):
            try:
                response = await client.get(url, params=params)
                response.raise_for_status()
                data = response.json()
            except httpx.HTTPStatusError as e:
                last_error = e
                if e.response.status_code != 429:
                    raise UpstreamServiceError(
                        "google_maps", f"HTTP {e.response.status_code}", endpoint=endpoint,
                    ) from e
                wait_time = RETRY_BACKOFF_BASE ** attempt
                logger.warning(
                    "Google Maps rate limited, waiting %.1f seconds (attempt %d/%d)",
                    wait_time, attempt + 1, self.max_retries,
                )
                await asyncio.sleep(wait_time)
                continue
            except httpx.HTTPError as e:
                last_error = e
                wait_time = RETRY_BACKOFF_BASE ** attempt
                logger.warning(
                    "Google Maps request failed: %s, retrying in %.1f seconds (attempt %d/%d)",
                    e, wait_time, attempt + 1, self.max_retries,
                )
                await asyncio.sleep(wait_time)
                continue

            status = data.get("status", "UNKNOWN_ERROR")
            if status not in ("OK", "ZERO_RESULTS"):
                raise UpstreamServiceError(
                    "google_maps", status,
                    endpoint=endpoint, error_message=data.get("error_message"),
                )
            return data

        raise UpstreamServiceError(
            "google_maps",
            f"gave up after {self.max_retries} attempts: {last_error}",
            endpoint=endpoint,
        )

    async def distance_matrix(
        self,
        origins: Sequence[Coordinate],
        destinations: Sequence[Coordinate],
    ) -> List[List[DistanceResult]]:
        data = await self._get_json(
            "distancematrix",
            {
                "origins": "|".join(_fmt(o) for o in origins),
                "destinations": "|".join(_fmt(d) for d in destinations),
            },
        )

        rows: List[List[DistanceResult]] = []
        for row in data.get("rows", []):
            parsed = []
            for element in row.get("elements", []):
                status = element.get("status", "UNKNOWN_ERROR")
                if status == "OK":
                    parsed.append(DistanceResult(
                        distance_km=element["distance"]["value"] / 1000.0,
                        duration_seconds=float(element["duration"]["value"]),
                    ))
                else:
                    parsed.append(DistanceResult(0.0, 0.0, status=status))
            rows.append(parsed)

        if len(rows) != len(origins) or any(len(r) != len(destinations) for r in rows):
            raise UpstreamServiceError(
                "google_maps", "distance matrix shape mismatch",
                origins=len(origins), destinations=len(destinations),
            )
        return rows

    async def directions(
        self, origin: Coordinate, destination: Coordinate,
    ) -> Optional[RouteSummary]:
        data = await self._get_json(
            "directions",
            {"origin": _fmt(origin), "destination": _fmt(destination)},
        )
        routes = data.get("routes") or []
        if not routes or not routes[0].get("legs"):
            return None

        route = routes[0]
        leg = route["legs"][0]
        return RouteSummary(
            distance_km=leg["distance"]["value"] / 1000.0,
            duration_seconds=float(leg["duration"]["value"]),
            polyline=route.get("overview_polyline", {}).get("points", ""),
            instructions=[
                _HTML_TAG.sub("", step.get("html_instructions", "")).strip()
                for step in leg.get("steps", [])
            ],
        )


def build_routing_provider(config: Settings = default_settings) -> RoutingProvider:
    """Google Maps when a key is configured, straight-line otherwise."""
    if config.routing_enabled:
        logger.info("Routing via Google Maps")
        return GoogleMapsRoutingProvider(config=config)
    logger.warning("GOOGLE_MAPS_API_KEY not set, using straight-line routing")
    return StraightLineRoutingProvider(config.WALKING_SPEED_KM_PER_MINUTE)
