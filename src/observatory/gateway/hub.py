import asyncio
import contextlib
import json
from typing import Any

import structlog

from observatory.artifacts import EVENTS_CHANNEL
from observatory.cache import CacheError, DerivedStateCache
from observatory.metrics import ObservatoryMetrics

logger = structlog.get_logger()


class Subscription:
    """
    Subscription is one connection's private, bounded inbox. When it
    is full the oldest pending message is discarded, so a client that
    stops reading only ever loses its own messages.
    """

    def __init__(self, maxsize: "int" = 100) -> "None":
        self._queue: "asyncio.Queue[dict[str, Any]]" = asyncio.Queue(maxsize=maxsize)

    def offer(self, message: "dict[str, Any]") -> "bool":
        """
        enqueues without waiting. Returns False if an older message
        had to be dropped to make room.
        """
        try:
            self._queue.put_nowait(message)
            return True
        except asyncio.QueueFull:
            self._queue.get_nowait()
            self._queue.put_nowait(message)
            return False

    async def get(self) -> "dict[str, Any]":
        return await self._queue.get()

    def pending(self) -> "int":
        return self._queue.qsize()


class Broadcaster:
    """
    Broadcaster holds the single upstream subscription to the events
    channel and copies every message into each registered
    Subscription. Delivery to one subscriber never waits on another.

    When the upstream subscription breaks it is re-established with
    exponential backoff; messages published in between are lost.
    """

    def __init__(
        self,
        cache: "DerivedStateCache",
        metrics: "ObservatoryMetrics",
        channel: "str" = EVENTS_CHANNEL,
        queue_size: "int" = 100,
        retry_initial_seconds: "float" = 1.0,
        retry_max_seconds: "float" = 30.0,
    ) -> "None":
        self._cache = cache
        self._metrics = metrics
        self._channel = channel
        self._queue_size = queue_size
        self._retry_initial = retry_initial_seconds
        self._retry_max = retry_max_seconds
        self._subscriptions: "set[Subscription]" = set()
        self._task: "asyncio.Task[None] | None" = None

    @property
    def subscriber_count(self) -> "int":
        return len(self._subscriptions)

    def subscribe(self) -> "Subscription":
        subscription = Subscription(self._queue_size)
        self._subscriptions.add(subscription)
        return subscription

    def unsubscribe(self, subscription: "Subscription") -> "None":
        self._subscriptions.discard(subscription)

    def dispatch(self, raw: "str | bytes") -> "int":
        """
        decodes one upstream payload and offers it to every subscriber.
        Payloads that are not JSON objects are ignored. Returns the
        number of subscribers it was offered to.
        """
        try:
            message = json.loads(raw)
        except ValueError:
            logger.debug("hub_message_not_json")
            return 0
        if not isinstance(message, dict):
            logger.debug("hub_message_not_object")
            return 0

        for subscription in self._subscriptions:
            if not subscription.offer(message):
                self._metrics.inc_dropped()
        return len(self._subscriptions)

    async def run(self) -> "None":
        """
        consumes the upstream channel until cancelled.
        """
        backoff = self._retry_initial
        while True:
            try:
                logger.info("hub_subscribing", channel=self._channel)
                async for raw in self._cache.subscribe(self._channel):
                    backoff = self._retry_initial
                    self.dispatch(raw)
                logger.warning("hub_subscription_ended", channel=self._channel)
            except CacheError as exc:
                logger.warning(
                    "hub_subscription_lost",
                    channel=self._channel,
                    error=str(exc),
                    retry_in=backoff,
                )
            except Exception:
                logger.exception(
                    "hub_subscription_error", channel=self._channel, retry_in=backoff
                )

            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, self._retry_max)

    def start(self) -> "None":
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="hub")

    async def close(self) -> "None":
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
