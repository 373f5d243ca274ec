import asyncio
import time
from typing import Any, Awaitable, Callable

import structlog

from observatory.cache import CacheError, DerivedStateCache
from observatory.store.base import RecordStore, StoreError

logger = structlog.get_logger()

CONNECTED = "connected"
DISCONNECTED = "disconnected"


class HealthChecker:
    """
    reports connectivity of the record store and the cache. Both
    probes run concurrently, each bounded by its client's timeout.
    """

    def __init__(self, store: "RecordStore", cache: "DerivedStateCache") -> "None":
        self._store = store
        self._cache = cache
        self._started = time.monotonic()

    async def _probe(
        self, dependency: "str", ping: "Callable[[], Awaitable[None]]"
    ) -> "str":
        try:
            await ping()
        except (StoreError, CacheError) as exc:
            logger.warning("health_probe_failed", dependency=dependency, error=str(exc))
            return DISCONNECTED
        return CONNECTED

    async def check(self) -> "dict[str, Any]":
        database, redis = await asyncio.gather(
            self._probe("database", self._store.ping),
            self._probe("redis", self._cache.ping),
        )
        healthy = database == CONNECTED and redis == CONNECTED
        return {
            "status": "healthy" if healthy else "degraded",
            "database": database,
            "redis": redis,
            "uptime_seconds": round(time.monotonic() - self._started, 3),
        }
