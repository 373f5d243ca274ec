from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True, slots=True)
class DuplicateGroup:
    """
    DuplicateGroup is a cluster of requests sharing organization,
    endpoint and fingerprint that was seen more than once inside
    the look-back window.
    """

    organization_id: "str"
    fingerprint: "str"
    endpoint: "str"
    count: "int"
    cost: "float"
    first_seen: "datetime"
    last_seen: "datetime"


@dataclass(frozen=True, slots=True)
class EndpointStats:
    """
    per-endpoint counters for cacheable (GET, non-error) traffic.
    """

    endpoint: "str"
    total_requests: "int"
    unique_requests: "int"
    total_cost: "float"
    avg_latency_ms: "float"


@dataclass(frozen=True, slots=True)
class CacheRecommendation:
    endpoint: "str"
    total_requests: "int"
    unique_requests: "int"
    # percentage in [0, 100], rounded to 2 decimals
    cache_hit_ratio: "float"
    potential_savings: "float"
    suggested_ttl_seconds: "int"
    recommendation: "str"


@dataclass(frozen=True, slots=True)
class HourlyCost:
    """
    HourlyCost is the summed cost of one organization
    for a single one-hour bucket.
    """

    organization_id: "str"
    hour: "datetime"
    cost: "float"
    request_count: "int"


@dataclass(frozen=True, slots=True)
class Anomaly:
    organization_id: "str"
    type: "str"
    severity: "str"
    description: "str"
    # start of the flagged hourly bucket
    detected_at: "datetime"
    hourly_cost: "float"
    average_cost: "float"
    threshold: "float"
    request_count: "int"


@dataclass(frozen=True, slots=True)
class CostBreakdown:
    """
    CostBreakdown is the per-provider rollup shown on the dashboard.
    """

    # provider name
    label: "str"
    request_count: "int"
    cost: "float"
    avg_latency: "float"
    error_count: "int"
