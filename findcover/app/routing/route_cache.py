"""
route_cache.py — Cache-aside layer in front of the routing provider.

═══════════════════════════════════════════════════════════════════════════
KEYS
═══════════════════════════════════════════════════════════════════════════

Coordinates are snapped to a grid before keying so that GPS jitter still
hits the cache:

    distance lookups   0.0005°  (≈ 50 m)    dist:{olat}:{olon}:{dlat}:{dlon}
    route lookups      0.0001°  (≈ 11 m)    route:{olat}:{olon}:{dlat}:{dlon}

═══════════════════════════════════════════════════════════════════════════
MISS HANDLING
═══════════════════════════════════════════════════════════════════════════

    1. Look every requested pair up in the backend.
    2. Collect the misses; de-duplicate their origins and destinations by
       snapped key.
    3. Cover unique-origins × unique-destinations with provider calls of at
       most ROUTING_MAX_ELEMENTS elements each, spaced by
       ROUTING_BATCH_DELAY_SECONDS.
    4. Fan each element back out to every requesting pair that snapped onto
       it; write only successful elements back to the backend.

A failed batch is logged and its pairs are simply absent from the result;
callers fall back to haversine. Backend read/write errors are swallowed.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from findcover.app.core.cache import CacheBackend
from findcover.app.core.config import Settings, settings as default_settings
from findcover.app.routing.provider import DistanceResult, RouteSummary, RoutingProvider
from findcover.app.spatial.radius_utils import Coordinate

logger = logging.getLogger(__name__)

PairKey = Tuple[int, int]  # (origin index, destination index)


def snap(value: float, precision: float) -> str:
    """Round a degree value onto the tolerance grid, as a stable string."""
    return f"{round(value / precision) * precision:.4f}"


def _point_key(point: Coordinate, precision: float) -> str:
    return f"{snap(point.latitude, precision)}:{snap(point.longitude, precision)}"


def _chunks(items: Sequence[Any], size: int) -> List[Sequence[Any]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class DistanceRouteCache:
    """
    Walking distances and routes, cached per snapped (origin, destination).

    Usage:
        cache = DistanceRouteCache(provider, backend=RedisCacheBackend())
        found = await cache.get_distances([user_a, user_b], [s1, s2, s3])
        found[(0, 2)].distance_km   # user_a → s3, if the provider answered
        route = await cache.get_route(user_a, s3)
    """

    def __init__(
        self,
        provider: RoutingProvider,
        backend: Optional[CacheBackend] = None,
        config: Settings = default_settings,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.provider = provider
        self.backend = backend
        self.distance_precision = config.DISTANCE_CACHE_PRECISION_DEG
        self.route_precision = config.ROUTE_CACHE_PRECISION_DEG
        self.distance_ttl = config.REDIS_DISTANCE_TTL
        self.route_ttl = config.REDIS_ROUTE_TTL
        self.max_elements = max(1, config.ROUTING_MAX_ELEMENTS)
        self.batch_delay = config.ROUTING_BATCH_DELAY_SECONDS
        self.directions_delay = config.ROUTING_DIRECTIONS_DELAY_SECONDS
        self._sleep = sleep
        self.provider_calls = 0

    # ── Keys ──

    def distance_key(self, origin: Coordinate, destination: Coordinate) -> str:
        p = self.distance_precision
        return f"dist:{_point_key(origin, p)}:{_point_key(destination, p)}"

    def route_key(self, origin: Coordinate, destination: Coordinate) -> str:
        p = self.route_precision
        return f"route:{_point_key(origin, p)}:{_point_key(destination, p)}"

    # ── Backend access (failures swallowed) ──

    async def _backend_get(self, key: str) -> Optional[Any]:
        if self.backend is None:
            return None
        try:
            return await self.backend.get(key)
        except Exception as e:
            logger.warning("Route cache GET error for %s: %s", key, e)
            return None

    async def _backend_set(self, key: str, value: Any, ttl: int) -> None:
        if self.backend is None:
            return
        try:
            await self.backend.set(key, value, ttl=ttl)
        except Exception as e:
            logger.warning("Route cache SET error for %s: %s", key, e)

    # ── Distances ──

    def _plan_batches(self, n_origins: int, n_destinations: int) -> List[Tuple[range, range]]:
        dest_size = min(n_destinations, self.max_elements)
        origin_size = max(1, self.max_elements // dest_size)
        batches = []
        for o_start in range(0, n_origins, origin_size):
            for d_start in range(0, n_destinations, dest_size):
                batches.append((
                    range(o_start, min(o_start + origin_size, n_origins)),
                    range(d_start, min(d_start + dest_size, n_destinations)),
                ))
        return batches

    async def get_distances(
        self,
        origins: Sequence[Coordinate],
        destinations: Sequence[Coordinate],
    ) -> Dict[PairKey, DistanceResult]:
        """
        Walking distance for every (origin, destination) pair.

        Returns
        -------
        dict
            (origin index, destination index) → DistanceResult for each pair
            that resolved successfully. Missing pairs failed upstream.
        """
        results: Dict[PairKey, DistanceResult] = {}
        misses: Dict[PairKey, str] = {}

        for i, origin in enumerate(origins):
            for j, destination in enumerate(destinations):
                key = self.distance_key(origin, destination)
                cached = await self._backend_get(key)
                if cached is not None:
                    try:
                        results[(i, j)] = DistanceResult.from_dict(cached)
                        continue
                    except (KeyError, TypeError, ValueError) as e:
                        logger.warning("Discarding malformed cache entry %s: %s", key, e)
                misses[(i, j)] = key

        if not misses:
            return results

        # De-duplicate by snapped key, keeping the first coordinate seen as representative.
        p = self.distance_precision
        origin_reps: Dict[str, Coordinate] = {}
        dest_reps: Dict[str, Coordinate] = {}
        for i, j in misses:
            origin_reps.setdefault(_point_key(origins[i], p), origins[i])
            dest_reps.setdefault(_point_key(destinations[j], p), destinations[j])
        origin_keys = list(origin_reps)
        dest_keys = list(dest_reps)

        fetched: Dict[Tuple[str, str], DistanceResult] = {}
        batches = self._plan_batches(len(origin_keys), len(dest_keys))
        for n, (o_range, d_range) in enumerate(batches):
            if n > 0 and self.batch_delay > 0:
                await self._sleep(self.batch_delay)
            batch_origins = [origin_reps[origin_keys[k]] for k in o_range]
            batch_dests = [dest_reps[dest_keys[k]] for k in d_range]
            self.provider_calls += 1
            try:
                rows = await self.provider.distance_matrix(batch_origins, batch_dests)
            except Exception as e:
                logger.warning(
                    "Distance batch %d/%d failed (%d×%d): %s",
                    n + 1, len(batches), len(batch_origins), len(batch_dests), e,
                )
                continue
            for row_idx, ok in enumerate(o_range):
                for col_idx, dk in enumerate(d_range):
                    element = rows[row_idx][col_idx]
                    if element.ok:
                        fetched[(origin_keys[ok], dest_keys[dk])] = element

        for (i, j), key in misses.items():
            element = fetched.get((_point_key(origins[i], p), _point_key(destinations[j], p)))
            if element is None:
                continue
            results[(i, j)] = element
            await self._backend_set(key, element.to_dict(), self.distance_ttl)

        logger.debug(
            "Distance lookup: %d pairs, %d misses, %d resolved, %d batches",
            len(origins) * len(destinations), len(misses), len(results), len(batches),
        )
        return results

    # ── Routes ──

    async def get_route(
        self,
        origin: Coordinate,
        destination: Coordinate,
        *,
        force_refresh: bool = False,
    ) -> Optional[RouteSummary]:
        """Route summary, or None when the provider cannot supply one."""
        key = self.route_key(origin, destination)
        if not force_refresh:
            cached = await self._backend_get(key)
            if cached is not None:
                try:
                    return RouteSummary.from_dict(cached)
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning("Discarding malformed cache entry %s: %s", key, e)

        self.provider_calls += 1
        try:
            route = await self.provider.directions(origin, destination)
        except Exception as e:
            logger.warning("Route lookup failed for %s: %s", key, e)
            return None

        if route is not None:
            await self._backend_set(key, route.to_dict(), self.route_ttl)
        return route

    async def get_routes(
        self, pairs: Sequence[Tuple[Coordinate, Coordinate]],
    ) -> List[Optional[RouteSummary]]:
        """Sequential route lookups spaced by the directions delay."""
        routes: List[Optional[RouteSummary]] = []
        for n, (origin, destination) in enumerate(pairs):
            if n > 0 and self.directions_delay > 0:
                await self._sleep(self.directions_delay)
            routes.append(await self.get_route(origin, destination))
        return routes
