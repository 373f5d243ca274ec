import asyncio
import enum
import itertools
import json
import time
from typing import Any, Callable, Protocol

import structlog

from observatory.artifacts import COSTS
from observatory.cache import DerivedStateCache
from observatory.gateway.hub import Broadcaster, Subscription
from observatory.gateway.registry import ConnectionRegistry
from observatory.metrics import ObservatoryMetrics

logger = structlog.get_logger()

DEFAULT_PING_INTERVAL_SECONDS = 30.0
# websocket close code "try again later", used on eviction
CLOSE_TRY_AGAIN_LATER = 1013

_connection_ids = itertools.count(1)


class WebSocketLike(Protocol):
    """
    the subset of starlette's WebSocket a connection drives.
    receive() returns raw ASGI messages so binary or otherwise odd
    client frames never raise.
    """

    async def accept(self) -> "None": ...

    async def receive(self) -> "dict[str, Any]": ...

    async def send_text(self, data: "str") -> "None": ...

    async def close(self, code: "int" = 1000) -> "None": ...


class ConnectionState(enum.Enum):
    CONNECTING = "connecting"
    UPGRADED = "upgraded"
    STREAMING = "streaming"
    CLOSED = "closed"


class ClientConnection:
    """
    ClientConnection drives one dashboard client through
    CONNECTING -> UPGRADED -> STREAMING -> CLOSED.

    Once upgraded it sends the current cost rollup as an initial_data
    snapshot, then streams hub notifications and periodic pings from
    a single writer task while a reader task watches the socket for
    disconnection. Whichever side ends first closes the connection;
    close() releases the subscription, the registry slot, both tasks
    and the socket exactly once.
    """

    def __init__(
        self,
        websocket: "WebSocketLike",
        cache: "DerivedStateCache",
        hub: "Broadcaster",
        registry: "ConnectionRegistry",
        metrics: "ObservatoryMetrics",
        ping_interval: "float" = DEFAULT_PING_INTERVAL_SECONDS,
        clock: "Callable[[], float]" = time.time,
    ) -> "None":
        self._websocket = websocket
        self._cache = cache
        self._hub = hub
        self._registry = registry
        self._metrics = metrics
        self._ping_interval = ping_interval
        self._clock = clock
        self._connection_id = f"conn-{next(_connection_ids)}"
        self._last_activity = time.monotonic()
        self._subscription: "Subscription | None" = None
        self._tasks: "list[asyncio.Task[None]]" = []
        self.state = ConnectionState.CONNECTING

    @property
    def connection_id(self) -> "str":
        return self._connection_id

    @property
    def last_activity(self) -> "float":
        return self._last_activity

    async def _send(self, message: "dict[str, Any]") -> "None":
        await self._websocket.send_text(json.dumps(message))

    async def serve(self) -> "None":
        """
        runs the connection to completion. Never raises for I/O
        errors on this connection.
        """
        try:
            await self._websocket.accept()
        except Exception as exc:
            logger.warning(
                "websocket_upgrade_failed", connection=self._connection_id, error=str(exc)
            )
            await self.close(reason="upgrade_failed")
            return

        self.state = ConnectionState.UPGRADED
        # subscribe before reading the snapshot so nothing published
        # in between is missed; it is delivered after the snapshot
        subscription = self._hub.subscribe()
        self._subscription = subscription
        evicted = self._registry.register(self)
        self._metrics.set_connections(len(self._registry))
        logger.info("websocket_client_connected", connection=self._connection_id)

        if evicted is not None:
            self._metrics.inc_evictions()
            logger.info(
                "websocket_client_evicted",
                connection=evicted.connection_id,
                replaced_by=self._connection_id,
            )
            await evicted.close(code=CLOSE_TRY_AGAIN_LATER, reason="evicted")

        snapshot = await self._cache.read_artifact(COSTS)
        try:
            await self._send(
                {
                    "type": "initial_data",
                    "data": snapshot,
                    "timestamp": int(self._clock()),
                }
            )
        except Exception as exc:
            logger.info(
                "websocket_snapshot_failed", connection=self._connection_id, error=str(exc)
            )
            await self.close(reason="snapshot_failed")
            return

        # evicted while the snapshot was in flight
        if self.state is ConnectionState.CLOSED:
            return

        self.state = ConnectionState.STREAMING
        self._tasks = [
            asyncio.create_task(self._read_loop(), name=f"{self._connection_id}:read"),
            asyncio.create_task(
                self._write_loop(subscription),
                name=f"{self._connection_id}:write",
            ),
        ]
        try:
            await asyncio.wait(self._tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            await self.close(reason="stream_ended")

    async def _read_loop(self) -> "None":
        """
        drains client frames until the client goes away. Frame contents
        are ignored; they only count as activity.
        """
        while True:
            try:
                message = await self._websocket.receive()
            except Exception as exc:
                logger.debug(
                    "websocket_read_failed", connection=self._connection_id, error=str(exc)
                )
                return
            if message.get("type") == "websocket.disconnect":
                return
            self._last_activity = time.monotonic()

    async def _write_loop(self, subscription: "Subscription") -> "None":
        """
        forwards notifications in arrival order and sends a ping every
        ping_interval. The ping deadline is fixed and is not pushed
        back by other traffic.
        """
        loop = asyncio.get_running_loop()
        next_ping = loop.time() + self._ping_interval

        while True:
            timeout = next_ping - loop.time()
            try:
                if timeout <= 0:
                    await self._send({"type": "ping"})
                    next_ping += self._ping_interval
                    continue

                try:
                    message = await asyncio.wait_for(
                        subscription.get(), timeout=timeout
                    )
                except TimeoutError:
                    continue
                await self._send(message)
            except Exception as exc:
                logger.info(
                    "websocket_write_failed", connection=self._connection_id, error=str(exc)
                )
                return

    async def close(self, code: "int" = 1000, reason: "str" = "closed") -> "None":
        """
        moves the connection to CLOSED and releases everything it holds.
        Safe to call more than once and from any task.
        """
        if self.state is ConnectionState.CLOSED:
            return
        self.state = ConnectionState.CLOSED

        current = asyncio.current_task()
        others = [t for t in self._tasks if t is not current and not t.done()]
        for task in others:
            task.cancel()
        if others:
            await asyncio.gather(*others, return_exceptions=True)

        if self._subscription is not None:
            self._hub.unsubscribe(self._subscription)
            self._subscription = None
        self._registry.unregister(self)
        self._metrics.set_connections(len(self._registry))

        try:
            await self._websocket.close(code=code)
        except Exception as exc:
            # already closed by the peer
            logger.debug(
                "websocket_close_failed", connection=self._connection_id, error=str(exc)
            )

        logger.info(
            "websocket_client_disconnected", connection=self._connection_id, reason=reason
        )
