from datetime import timedelta
from typing import Iterable

from observatory.analysis.base import AnalysisJob
from observatory.artifacts import CACHE_RECOMMENDATIONS
from observatory.models import CacheRecommendation, EndpointStats

CACHE_WINDOW = timedelta(hours=24)
# endpoints need strictly more calls than this to be considered
MIN_REQUESTS = 10
MAX_RECOMMENDATIONS = 50
# share of the repeat cost a cache is assumed to actually recover
REALIZABLE_SAVINGS = 0.8
MIN_SUGGESTED_TTL_SECONDS = 60


def hit_ratio(total_requests: "int", unique_requests: "int") -> "float":
    """
    percentage of calls that repeated an earlier identical call.
    """
    return round(100.0 * (total_requests - unique_requests) / total_requests, 2)


def suggested_ttl(avg_latency_ms: "float") -> "int":
    # ten seconds of ttl per second of mean latency
    return max(MIN_SUGGESTED_TTL_SECONDS, int(avg_latency_ms / 1000) * 10)


def recommend(stats: "EndpointStats") -> "CacheRecommendation | None":
    if stats.total_requests <= MIN_REQUESTS:
        return None
    if not 0 < stats.unique_requests < stats.total_requests:
        return None

    ratio = hit_ratio(stats.total_requests, stats.unique_requests)
    if ratio <= 0:
        return None

    ttl = suggested_ttl(stats.avg_latency_ms)
    return CacheRecommendation(
        endpoint=stats.endpoint,
        total_requests=stats.total_requests,
        unique_requests=stats.unique_requests,
        cache_hit_ratio=ratio,
        potential_savings=stats.total_cost * (ratio / 100.0) * REALIZABLE_SAVINGS,
        suggested_ttl_seconds=ttl,
        recommendation=(
            f"Cache this endpoint with TTL of {ttl} seconds. "
            f"Could save {ratio:.2f}% of requests."
        ),
    )


def rank_recommendations(
    rows: "Iterable[EndpointStats]",
    limit: "int" = MAX_RECOMMENDATIONS,
) -> "list[CacheRecommendation]":
    recommendations = [r for r in (recommend(stats) for stats in rows) if r is not None]
    recommendations.sort(key=lambda r: (-r.cache_hit_ratio, r.endpoint))
    return recommendations[:limit]


class CacheOpportunityJob(AnalysisJob):
    """
    scores read-only endpoints by how often the same request is
    repeated over the last 24 hours.
    """

    name = "cache_recommendations"
    artifact = CACHE_RECOMMENDATIONS

    async def compute(self) -> "list[CacheRecommendation]":
        rows = await self._store.endpoint_stats(CACHE_WINDOW, MIN_REQUESTS)
        return rank_recommendations(rows)
