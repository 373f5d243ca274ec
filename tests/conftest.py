import asyncio
import json
from collections import defaultdict
from datetime import timedelta
from typing import Any, AsyncIterator

import pytest
from prometheus_client import CollectorRegistry
from redis.exceptions import ConnectionError as RedisConnectionError

from observatory.cache import DerivedStateCache
from observatory.metrics import ObservatoryMetrics
from observatory.models import CostBreakdown, DuplicateGroup, EndpointStats, HourlyCost


@pytest.fixture()
def registry() -> "CollectorRegistry":
    """
    fresh Prometheus registry to avoid cross-test state.
    """
    return CollectorRegistry()


@pytest.fixture()
def metrics(registry: "CollectorRegistry") -> "ObservatoryMetrics":
    return ObservatoryMetrics(registry=registry)


class FakePubSub:
    def __init__(self, redis: "FakeRedis") -> "None":
        self._redis = redis
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self._channels: "list[str]" = []
        self.closed = False

    async def subscribe(self, channel: "str") -> "None":
        await self._redis.check()
        self._channels.append(channel)
        self._redis.subscribers[channel].append(self._queue)

    async def listen(self) -> "AsyncIterator[dict[str, Any]]":
        while True:
            item = await self._queue.get()
            if isinstance(item, Exception):
                raise item
            yield {"type": "message", "channel": "api_events", "data": item}

    async def aclose(self) -> "None":
        self.closed = True
        for channel in self._channels:
            self._redis.subscribers[channel].remove(self._queue)


class FakeRedis:
    """
    In-memory stand-in for a redis.asyncio client: values with expiry
    against a manually advanced clock, and pub/sub delivered through
    per-subscriber queues.
    """

    def __init__(self) -> "None":
        self.now = 0.0
        self.values: "dict[str, tuple[str, float | None]]" = {}
        self.published: "list[tuple[str, str]]" = []
        self.subscribers: "dict[str, list[asyncio.Queue[Any]]]" = defaultdict(list)
        self.pubsubs: "list[FakePubSub]" = []
        self.fail = False
        self.delay = 0.0

    async def check(self) -> "None":
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RedisConnectionError("connection refused")

    def advance(self, seconds: "float") -> "None":
        self.now += seconds

    def ttl_of(self, key: "str") -> "float | None":
        expires_at = self.values[key][1]
        return None if expires_at is None else expires_at - self.now

    async def set(self, key: "str", value: "str", ex: "timedelta | None" = None) -> "bool":
        await self.check()
        expires_at = None if ex is None else self.now + ex.total_seconds()
        self.values[key] = (value, expires_at)
        return True

    async def get(self, key: "str") -> "str | None":
        await self.check()
        if key not in self.values:
            return None
        value, expires_at = self.values[key]
        if expires_at is not None and self.now >= expires_at:
            del self.values[key]
            return None
        return value

    async def publish(self, channel: "str", message: "str") -> "int":
        await self.check()
        self.published.append((channel, message))
        for queue in self.subscribers[channel]:
            queue.put_nowait(message)
        return len(self.subscribers[channel])

    def break_subscriptions(self, channel: "str") -> "None":
        for queue in self.subscribers[channel]:
            queue.put_nowait(RedisConnectionError("connection reset"))

    async def ping(self) -> "bool":
        await self.check()
        return True

    def pubsub(self, ignore_subscribe_messages: "bool" = False) -> "FakePubSub":
        pubsub = FakePubSub(self)
        self.pubsubs.append(pubsub)
        return pubsub

    async def aclose(self) -> "None":
        pass


class FakeStore:
    """
    RecordStore returning canned rows, or raising `error` when set.
    """

    def __init__(self) -> "None":
        self.duplicates: "list[DuplicateGroup]" = []
        self.endpoints: "list[EndpointStats]" = []
        self.hourly: "list[HourlyCost]" = []
        self.providers: "list[CostBreakdown]" = []
        self.error: "Exception | None" = None
        self.delay = 0.0
        self.calls: "list[str]" = []

    async def _check(self, name: "str") -> "None":
        self.calls.append(name)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error

    async def duplicate_groups(self, window: "timedelta", limit: "int") -> "list[DuplicateGroup]":
        await self._check("duplicate_groups")
        return list(self.duplicates)

    async def endpoint_stats(
        self, window: "timedelta", min_requests: "int"
    ) -> "list[EndpointStats]":
        await self._check("endpoint_stats")
        return list(self.endpoints)

    async def hourly_costs(self, window: "timedelta") -> "list[HourlyCost]":
        await self._check("hourly_costs")
        return list(self.hourly)

    async def provider_costs(self, window: "timedelta") -> "list[CostBreakdown]":
        await self._check("provider_costs")
        return list(self.providers)

    async def ping(self) -> "None":
        await self._check("ping")


class FakeWebSocket:
    """
    Minimal websocket driven by the test: frames pushed into
    `incoming` are what the server reads, `sent` holds decoded
    server messages.
    """

    def __init__(self) -> "None":
        self.incoming: "asyncio.Queue[dict[str, Any]]" = asyncio.Queue()
        self.sent: "list[dict[str, Any]]" = []
        self.accepted = False
        self.close_codes: "list[int]" = []
        self.fail_send = False

    async def accept(self) -> "None":
        self.accepted = True

    async def receive(self) -> "dict[str, Any]":
        return await self.incoming.get()

    async def send_text(self, data: "str") -> "None":
        if self.fail_send:
            raise RuntimeError("socket closed")
        self.sent.append(json.loads(data))

    async def close(self, code: "int" = 1000) -> "None":
        self.close_codes.append(code)

    def client_sends(self, text: "str") -> "None":
        self.incoming.put_nowait({"type": "websocket.receive", "text": text})

    def client_sends_bytes(self, data: "bytes") -> "None":
        self.incoming.put_nowait({"type": "websocket.receive", "bytes": data})

    def client_disconnects(self) -> "None":
        self.incoming.put_nowait({"type": "websocket.disconnect", "code": 1000})

    def types_sent(self) -> "list[str | None]":
        return [m.get("type") for m in self.sent]


@pytest.fixture()
def fake_redis() -> "FakeRedis":
    return FakeRedis()


@pytest.fixture()
def cache(fake_redis: "FakeRedis") -> "DerivedStateCache":
    return DerivedStateCache(fake_redis, timeout=0.5)


@pytest.fixture()
def store() -> "FakeStore":
    return FakeStore()


@pytest.fixture()
def make_websocket() -> "type[FakeWebSocket]":
    return FakeWebSocket
