import asyncio
from datetime import timedelta
from typing import Any, AsyncIterator

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from observatory import artifacts
from observatory.artifacts import ArtifactSpec

logger = structlog.get_logger()


class CacheError(Exception):
    """
    raised when the cache cannot be reached or an operation
    exceeds its deadline.
    """


class DerivedStateCache:
    """
    DerivedStateCache wraps a redis client with the handful of
    operations the engine and the gateway need: keyed values with
    expiry, publish, and subscribe. Every request/response command
    is bounded by the configured timeout; subscriptions are
    long-lived streams and are not.
    """

    def __init__(self, client: "aioredis.Redis", timeout: "float" = 5.0) -> "None":
        self._client = client
        self._timeout = timeout

    @classmethod
    def from_url(cls, url: "str", timeout: "float" = 5.0) -> "DerivedStateCache":
        # no socket_timeout here: it would also apply to idle
        # subscriptions and make them fail between messages
        client = aioredis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=timeout,
        )
        return cls(client, timeout)

    async def close(self) -> "None":
        await self._client.aclose()

    async def _call(self, op: "str", awaitable: "Any") -> "Any":
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except TimeoutError as exc:
            raise CacheError(f"{op}: timed out after {self._timeout}s") from exc
        except (RedisError, OSError) as exc:
            raise CacheError(f"{op}: {exc}") from exc

    async def set(self, key: "str", value: "str", ttl: "timedelta") -> "None":
        await self._call("set", self._client.set(key, value, ex=ttl))

    async def get(self, key: "str") -> "str | None":
        return await self._call("get", self._client.get(key))

    async def publish(self, channel: "str", message: "str") -> "int":
        """
        publishes a message and returns the number of subscribers
        that received it.
        """
        return await self._call("publish", self._client.publish(channel, message))

    async def ping(self) -> "None":
        await self._call("ping", self._client.ping())

    async def subscribe(self, channel: "str") -> "AsyncIterator[str]":
        """
        yields message payloads published on channel until the caller
        stops iterating. The subscription is released when the
        generator is closed, whichever way that happens.
        """
        pubsub = self._client.pubsub(ignore_subscribe_messages=True)
        try:
            await self._call("subscribe", pubsub.subscribe(channel))
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                yield message["data"]
        except (RedisError, OSError) as exc:
            raise CacheError(f"subscribe: {exc}") from exc
        finally:
            await pubsub.aclose()

    async def write_artifact(self, spec: "ArtifactSpec", payload: "dict[str, Any]") -> "str":
        """
        serializes and stores an artifact under its key with its ttl.
        Returns the serialized value.
        """
        value = artifacts.dumps(payload)
        await self.set(spec.key, value, spec.ttl)
        return value

    async def read_artifact(self, spec: "ArtifactSpec") -> "dict[str, Any]":
        """
        returns the latest artifact, or its empty default when it has
        expired, was never written, or the cache is unavailable.
        """
        try:
            raw = await self.get(spec.key)
        except CacheError as exc:
            logger.warning("artifact_read_failed", artifact=spec.name, error=str(exc))
            return spec.empty()
        return artifacts.decode(raw, spec)
