import asyncio
from datetime import datetime, timezone
from typing import Callable

import pytest

from observatory.artifacts import ANOMALIES, COSTS
from observatory.cache import CacheError, DerivedStateCache

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


async def _until(predicate: "Callable[[], bool]") -> "None":
    for _ in range(100):
        if predicate():
            return
        await asyncio.sleep(0.001)
    raise AssertionError("condition never became true")


class TestArtifacts:
    @pytest.mark.asyncio
    async def test_write_then_read(
        self, cache: "DerivedStateCache", fake_redis: "FakeRedis"
    ) -> "None":
        payload = {"breakdown": [], "total_cost": 1.5, "updated_at": NOW}

        value = await cache.write_artifact(COSTS, payload)

        assert fake_redis.values["costs:24h:by_provider"][0] == value
        assert fake_redis.ttl_of("costs:24h:by_provider") == 300
        assert await cache.read_artifact(COSTS) == {
            "breakdown": [],
            "total_cost": 1.5,
            "updated_at": NOW.isoformat(),
        }

    @pytest.mark.asyncio
    async def test_expired_artifact_reads_as_empty(
        self, cache: "DerivedStateCache", fake_redis: "FakeRedis"
    ) -> "None":
        await cache.write_artifact(ANOMALIES, {"items": [1], "count": 1})

        fake_redis.advance(599)
        assert (await cache.read_artifact(ANOMALIES))["count"] == 1
        fake_redis.advance(1)
        assert await cache.read_artifact(ANOMALIES) == {"items": [], "count": 0}

    @pytest.mark.asyncio
    async def test_never_written_reads_as_empty(self, cache: "DerivedStateCache") -> "None":
        assert await cache.read_artifact(COSTS) == {"breakdown": [], "total_cost": 0.0}

    @pytest.mark.asyncio
    async def test_unavailable_cache_reads_as_empty(
        self, cache: "DerivedStateCache", fake_redis: "FakeRedis"
    ) -> "None":
        fake_redis.fail = True
        assert await cache.read_artifact(ANOMALIES) == {"items": [], "count": 0}

    @pytest.mark.asyncio
    async def test_write_failure_raises(
        self, cache: "DerivedStateCache", fake_redis: "FakeRedis"
    ) -> "None":
        fake_redis.fail = True
        with pytest.raises(CacheError):
            await cache.write_artifact(COSTS, {"breakdown": [], "total_cost": 0.0})


class TestCommands:
    @pytest.mark.asyncio
    async def test_timeout_raises_cache_error(self, fake_redis: "FakeRedis") -> "None":
        cache = DerivedStateCache(fake_redis, timeout=0.05)
        fake_redis.delay = 0.5
        with pytest.raises(CacheError, match="timed out"):
            await cache.get("costs:24h:by_provider")

    @pytest.mark.asyncio
    async def test_ping(self, cache: "DerivedStateCache", fake_redis: "FakeRedis") -> "None":
        await cache.ping()
        fake_redis.fail = True
        with pytest.raises(CacheError):
            await cache.ping()

    @pytest.mark.asyncio
    async def test_publish_returns_receivers(self, cache: "DerivedStateCache") -> "None":
        assert await cache.publish("api_events", '{"type":"x"}') == 0


class TestSubscribe:
    @pytest.mark.asyncio
    async def test_yields_published_payloads(
        self, cache: "DerivedStateCache", fake_redis: "FakeRedis"
    ) -> "None":
        stream = cache.subscribe("api_events")
        first = asyncio.ensure_future(stream.__anext__())
        await _until(lambda: len(fake_redis.subscribers["api_events"]) == 1)

        assert await cache.publish("api_events", '{"type":"costs_updated"}') == 1
        assert await first == '{"type":"costs_updated"}'

        await stream.aclose()
        assert fake_redis.pubsubs[0].closed is True
        assert fake_redis.subscribers["api_events"] == []

    @pytest.mark.asyncio
    async def test_lost_connection_raises_and_releases(
        self, cache: "DerivedStateCache", fake_redis: "FakeRedis"
    ) -> "None":
        stream = cache.subscribe("api_events")
        first = asyncio.ensure_future(stream.__anext__())
        await _until(lambda: len(fake_redis.subscribers["api_events"]) == 1)

        fake_redis.break_subscriptions("api_events")

        with pytest.raises(CacheError):
            await first
        assert fake_redis.pubsubs[0].closed is True

    @pytest.mark.asyncio
    async def test_subscribe_failure_raises(
        self, cache: "DerivedStateCache", fake_redis: "FakeRedis"
    ) -> "None":
        fake_redis.fail = True
        with pytest.raises(CacheError):
            await cache.subscribe("api_events").__anext__()
