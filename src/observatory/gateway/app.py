"""
HTTP and websocket surface of the realtime gateway.

Routes:
- WS  /ws                                  -> initial_data snapshot, then events and pings
- GET /health                              -> store and cache connectivity
- GET /api/costs                           -> latest cost rollup
- GET /api/analytics/duplicates            -> latest duplicate groups
- GET /api/analytics/cache-recommendations -> latest cache recommendations
- GET /api/analytics/anomalies             -> latest cost anomalies
- GET /api/dashboard/summary               -> all of the above in one payload

The analytics routes answer with the bare item list, /api/costs with the
cost envelope. Expired or never computed artifacts read as their empty
default.
"""
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator

import structlog
from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from observatory.artifacts import (
    ANOMALIES,
    CACHE_RECOMMENDATIONS,
    COSTS,
    DUPLICATES,
    ArtifactSpec,
)
from observatory.cache import DerivedStateCache
from observatory.gateway.connection import (
    DEFAULT_PING_INTERVAL_SECONDS,
    ClientConnection,
    WebSocketLike,
)
from observatory.gateway.hub import Broadcaster
from observatory.gateway.registry import ConnectionRegistry
from observatory.health import HealthChecker
from observatory.metrics import ObservatoryMetrics

logger = structlog.get_logger()

SERVICE_NAME = "API Observatory Gateway"
SERVICE_VERSION = "0.1.0"


async def _items(cache: "DerivedStateCache", spec: "ArtifactSpec") -> "list[Any]":
    artifact = await cache.read_artifact(spec)
    items = artifact.get("items")
    return items if isinstance(items, list) else []


class Gateway:
    """
    Gateway owns the shared pieces every realtime connection uses:
    the cache client, the hub and the connection registry.
    """

    def __init__(
        self,
        cache: "DerivedStateCache",
        metrics: "ObservatoryMetrics",
        ping_interval: "float" = DEFAULT_PING_INTERVAL_SECONDS,
        max_connections: "int" = 1000,
        queue_size: "int" = 100,
    ) -> "None":
        self.cache = cache
        self.metrics = metrics
        self.hub = Broadcaster(cache, metrics, queue_size=queue_size)
        self.registry = ConnectionRegistry(max_connections)
        self._ping_interval = ping_interval

    def connection(self, websocket: "WebSocketLike") -> "ClientConnection":
        return ClientConnection(
            websocket,
            self.cache,
            self.hub,
            self.registry,
            self.metrics,
            ping_interval=self._ping_interval,
        )


def create_app(gateway: "Gateway", health: "HealthChecker") -> "FastAPI":
    @asynccontextmanager
    async def lifespan(app: "FastAPI") -> "AsyncIterator[None]":
        gateway.hub.start()
        logger.info("gateway_started")
        yield
        await gateway.hub.close()
        logger.info("gateway_stopped")

    app = FastAPI(title=SERVICE_NAME, version=SERVICE_VERSION, lifespan=lifespan)
    # the dashboard is served from another origin
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    @app.get("/")
    async def root() -> "dict[str, str]":
        return {"service": SERVICE_NAME, "status": "running", "version": SERVICE_VERSION}

    @app.get("/health")
    async def health_check() -> "JSONResponse":
        report = await health.check()
        status_code = 200 if report["status"] == "healthy" else 503
        return JSONResponse(report, status_code=status_code)

    @app.get("/api/costs")
    async def get_costs() -> "dict[str, Any]":
        return await gateway.cache.read_artifact(COSTS)

    @app.get("/api/analytics/duplicates")
    async def get_duplicates() -> "list[Any]":
        return await _items(gateway.cache, DUPLICATES)

    @app.get("/api/analytics/cache-recommendations")
    async def get_cache_recommendations() -> "list[Any]":
        return await _items(gateway.cache, CACHE_RECOMMENDATIONS)

    @app.get("/api/analytics/anomalies")
    async def get_anomalies() -> "list[Any]":
        return await _items(gateway.cache, ANOMALIES)

    @app.get("/api/dashboard/summary")
    async def get_dashboard_summary() -> "dict[str, Any]":
        return {
            "costs": await gateway.cache.read_artifact(COSTS),
            "duplicates": await _items(gateway.cache, DUPLICATES),
            "cache_recommendations": await _items(gateway.cache, CACHE_RECOMMENDATIONS),
            "anomalies": await _items(gateway.cache, ANOMALIES),
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: "WebSocket") -> "None":
        await gateway.connection(websocket).serve()

    return app
