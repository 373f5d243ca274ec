import asyncio
from datetime import timedelta
from typing import Any, Callable, Iterable, TypeVar

import asyncpg
import structlog

from observatory.models import CostBreakdown, DuplicateGroup, EndpointStats, HourlyCost
from observatory.store.base import StoreError

logger = structlog.get_logger()

T = TypeVar("T")

# "same logical request": endpoint, method and the serialized metadata.
# Shared by duplicate and cache analysis.
FINGERPRINT_SQL = "MD5(endpoint || method || COALESCE(metadata::text, ''))"

DUPLICATE_GROUPS_QUERY = f"""
    SELECT
        organization_id,
        {FINGERPRINT_SQL} AS fingerprint,
        endpoint,
        COUNT(*) AS duplicate_count,
        COALESCE(SUM(cost), 0) AS total_cost,
        MIN(time) AS first_seen,
        MAX(time) AS last_seen
    FROM api_requests
    WHERE time > NOW() - $1::interval
    GROUP BY organization_id, fingerprint, endpoint
    HAVING COUNT(*) > 1
    ORDER BY total_cost DESC, endpoint, fingerprint, organization_id
    LIMIT $2
"""

ENDPOINT_STATS_QUERY = f"""
    SELECT
        endpoint,
        COUNT(*) AS total_requests,
        COUNT(DISTINCT {FINGERPRINT_SQL}) AS unique_requests,
        COALESCE(SUM(cost), 0) AS total_cost,
        COALESCE(AVG(latency_ms), 0) AS avg_latency
    FROM api_requests
    WHERE
        method = 'GET'
        AND status_code < 400
        AND time > NOW() - $1::interval
    GROUP BY endpoint
    HAVING COUNT(*) > $2
"""

HOURLY_COSTS_QUERY = """
    SELECT
        date_trunc('hour', time) AS hour,
        organization_id,
        COALESCE(SUM(cost), 0) AS hourly_cost,
        COUNT(*) AS request_count
    FROM api_requests
    WHERE time > NOW() - $1::interval
    GROUP BY hour, organization_id
    ORDER BY organization_id, hour
"""

PROVIDER_COSTS_QUERY = """
    SELECT
        provider,
        COUNT(*) AS request_count,
        COALESCE(SUM(cost), 0) AS total_cost,
        COALESCE(AVG(latency_ms), 0) AS avg_latency,
        COUNT(CASE WHEN status_code >= 400 THEN 1 END) AS error_count
    FROM api_requests
    WHERE time > NOW() - $1::interval
    GROUP BY provider
    ORDER BY total_cost DESC, provider
"""


def _parse_duplicate_group(row: "Any") -> "DuplicateGroup":
    return DuplicateGroup(
        organization_id=str(row["organization_id"]),
        fingerprint=str(row["fingerprint"]),
        endpoint=str(row["endpoint"]),
        count=int(row["duplicate_count"]),
        cost=float(row["total_cost"]),
        first_seen=row["first_seen"],
        last_seen=row["last_seen"],
    )


def _parse_endpoint_stats(row: "Any") -> "EndpointStats":
    return EndpointStats(
        endpoint=str(row["endpoint"]),
        total_requests=int(row["total_requests"]),
        unique_requests=int(row["unique_requests"]),
        total_cost=float(row["total_cost"]),
        avg_latency_ms=float(row["avg_latency"]),
    )


def _parse_hourly_cost(row: "Any") -> "HourlyCost":
    return HourlyCost(
        organization_id=str(row["organization_id"]),
        hour=row["hour"],
        cost=float(row["hourly_cost"]),
        request_count=int(row["request_count"]),
    )


def _parse_provider_cost(row: "Any") -> "CostBreakdown":
    return CostBreakdown(
        label=str(row["provider"]),
        request_count=int(row["request_count"]),
        cost=float(row["total_cost"]),
        avg_latency=float(row["avg_latency"]),
        error_count=int(row["error_count"]),
    )


def parse_rows(
    rows: "Iterable[Any]",
    parser: "Callable[[Any], T]",
    query_name: "str",
) -> "list[T]":
    """
    converts raw rows with the given parser. A row that fails
    to convert is logged and skipped, the rest of the batch is kept.
    """
    parsed: "list[T]" = []
    for row in rows:
        try:
            parsed.append(parser(row))
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("store_row_malformed", query=query_name, error=str(exc))
    return parsed


class PostgresRecordStore:
    """
    PostgresRecordStore implements the RecordStore protocol on top of
    the api_requests table through an asyncpg connection pool.

    api_requests columns read here: time, organization_id, provider,
    endpoint, method, status_code, latency_ms, cost, metadata (JSONB).
    All queries are read-only and every call is bounded by the
    configured timeout.
    """

    def __init__(self, pool: "asyncpg.Pool", timeout: "float" = 5.0) -> "None":
        self._pool = pool
        self._timeout = timeout

    @classmethod
    async def connect(cls, dsn: "str", timeout: "float" = 5.0) -> "PostgresRecordStore":
        """
        creates the pool without opening any connection up front
        (min_size=0); an unreachable database surfaces as StoreError
        on the first query instead of failing startup.
        """
        pool = await asyncpg.create_pool(
            dsn,
            min_size=0,
            max_size=10,
            command_timeout=timeout,
        )
        return cls(pool, timeout)

    async def close(self) -> "None":
        await self._pool.close()

    async def _fetch(self, query_name: "str", query: "str", *args: "Any") -> "list[Any]":
        logger.debug("store_query", query=query_name)
        try:
            return await asyncio.wait_for(
                self._pool.fetch(query, *args),
                timeout=self._timeout,
            )
        except TimeoutError as exc:
            raise StoreError(f"{query_name}: timed out after {self._timeout}s") from exc
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            raise StoreError(f"{query_name}: {exc}") from exc

    async def duplicate_groups(
        self,
        window: "timedelta",
        limit: "int",
    ) -> "list[DuplicateGroup]":
        rows = await self._fetch("duplicate_groups", DUPLICATE_GROUPS_QUERY, window, limit)
        return parse_rows(rows, _parse_duplicate_group, "duplicate_groups")

    async def endpoint_stats(
        self,
        window: "timedelta",
        min_requests: "int",
    ) -> "list[EndpointStats]":
        rows = await self._fetch(
            "endpoint_stats", ENDPOINT_STATS_QUERY, window, min_requests
        )
        return parse_rows(rows, _parse_endpoint_stats, "endpoint_stats")

    async def hourly_costs(self, window: "timedelta") -> "list[HourlyCost]":
        rows = await self._fetch("hourly_costs", HOURLY_COSTS_QUERY, window)
        return parse_rows(rows, _parse_hourly_cost, "hourly_costs")

    async def provider_costs(self, window: "timedelta") -> "list[CostBreakdown]":
        rows = await self._fetch("provider_costs", PROVIDER_COSTS_QUERY, window)
        return parse_rows(rows, _parse_provider_cost, "provider_costs")

    async def ping(self) -> "None":
        try:
            await asyncio.wait_for(self._pool.fetchval("SELECT 1"), timeout=self._timeout)
        except TimeoutError as exc:
            raise StoreError("ping: timed out") from exc
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            raise StoreError(f"ping: {exc}") from exc
