"""
Redis-backed key/value cache for walking distances and routes.

Values are stored as JSON strings. The cache is an optimisation only: any
Redis error is logged at WARNING and reported as a miss (reads) or as
``False`` (writes), so a request never fails because Redis is down.

Every call takes the ``Settings`` it should honour (the process-wide
``settings`` by default); clients are shared per Redis URL.

    from findcover.app.core.cache import cache_get, cache_set

    await cache_set("findcover:dist:32.0805:34.7805:32.0810:34.7810", 0.42, ttl=3600)
    await cache_get("findcover:dist:32.0805:34.7805:32.0810:34.7810")   # 0.42
"""

from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, TypeVar

import redis.asyncio as aioredis

from findcover.app.core.config import Settings, settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

_clients: Dict[str, aioredis.Redis] = {}


async def _get_redis(config: Optional[Settings] = None) -> Optional[aioredis.Redis]:
    """Shared client for ``config.REDIS_URL``; None when caching is off."""
    config = config or settings
    if not config.REDIS_ENABLED:
        return None
    client = _clients.get(config.REDIS_URL)
    if client is None:
        client = aioredis.from_url(
            config.REDIS_URL, encoding="utf-8", decode_responses=True,
        )
        _clients[config.REDIS_URL] = client
        logger.info("Redis client created for %s", config.REDIS_URL.split("@")[-1])
    return client


async def _guarded(
    op: str,
    key: str,
    call: Callable[[aioredis.Redis], Awaitable[T]],
    fallback: T,
    config: Optional[Settings] = None,
) -> T:
    client = await _get_redis(config)
    if client is None:
        return fallback
    try:
        return await call(client)
    except (aioredis.RedisError, OSError, ValueError) as e:
        logger.warning("Redis %s failed for %s: %s", op, key, e)
        return fallback


async def cache_get(key: str, config: Optional[Settings] = None) -> Optional[Any]:
    """Decoded value for ``key``, or None on miss or error."""

    async def _read(client: aioredis.Redis) -> Optional[Any]:
        raw = await client.get(key)
        return None if raw is None else json.loads(raw)

    return await _guarded("GET", key, _read, None, config)


async def cache_set(
    key: str, value: Any, ttl: Optional[int] = None, config: Optional[Settings] = None,
) -> bool:
    """Store ``value`` for ``ttl`` seconds (``REDIS_CACHE_TTL`` by default)."""
    config = config or settings
    payload = json.dumps(value, default=str)

    async def _write(client: aioredis.Redis) -> bool:
        await client.set(key, payload, ex=ttl or config.REDIS_CACHE_TTL)
        return True

    return await _guarded("SET", key, _write, False, config)


async def redis_ping(config: Optional[Settings] = None) -> bool:
    async def _ping(client: aioredis.Redis) -> bool:
        return bool(await client.ping())

    return await _guarded("PING", "-", _ping, False, config)


async def close_redis() -> None:
    while _clients:
        _url, client = _clients.popitem()
        await client.aclose()
        logger.info("Redis client closed")


# ═══════════════════════════════════════════════════════════════════════════
# Backend seam for the route cache
# ═══════════════════════════════════════════════════════════════════════════

class CacheBackend(Protocol):
    """What ``DistanceRouteCache`` needs from a store. Tests pass a dict-backed fake."""

    async def get(self, key: str) -> Optional[Any]: ...

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool: ...


class RedisCacheBackend:
    """``CacheBackend`` over the shared Redis client, with keys under ``namespace:``."""

    def __init__(self, namespace: str = "findcover", config: Settings = settings):
        self.namespace = namespace
        self.config = config

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def get(self, key: str) -> Optional[Any]:
        return await cache_get(self._key(key), config=self.config)

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        return await cache_set(self._key(key), value, ttl=ttl, config=self.config)
