import math
import statistics
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Callable, Iterable

from observatory.analysis.base import AnalysisJob, utc_now
from observatory.artifacts import ANOMALIES
from observatory.cache import DerivedStateCache
from observatory.metrics import ObservatoryMetrics
from observatory.models import Anomaly, HourlyCost
from observatory.store.base import RecordStore

ANOMALY_WINDOW = timedelta(hours=24)
SIGMA_THRESHOLD = 3.0
# fewer buckets than this give no meaningful distribution
DEFAULT_MIN_BUCKETS = 2


def _describe(bucket: "HourlyCost", mean: "float", threshold: "float") -> "Anomaly":
    spike = (bucket.cost - mean) / mean * 100 if mean > 0 else 0.0
    return Anomaly(
        organization_id=bucket.organization_id,
        type="cost_spike",
        severity="high",
        description=(
            f"Cost spike: ${bucket.cost:.2f} ({spike:.0f}% above average). "
            f"{bucket.request_count} requests/hour."
        ),
        detected_at=bucket.hour,
        hourly_cost=bucket.cost,
        average_cost=mean,
        threshold=threshold,
        request_count=bucket.request_count,
    )


def detect_anomalies(
    buckets: "Iterable[HourlyCost]",
    min_buckets: "int" = DEFAULT_MIN_BUCKETS,
) -> "list[Anomaly]":
    """
    flags hourly buckets whose cost exceeds mean + 3 standard
    deviations of the same organization's hourly costs.

    The standard deviation is the population one over the buckets
    present in the window. Organizations with too few buckets or a
    flat distribution (sigma == 0) produce nothing.
    Results are ordered newest bucket first.
    """
    by_org: "dict[str, list[HourlyCost]]" = defaultdict(list)
    for bucket in buckets:
        by_org[bucket.organization_id].append(bucket)

    anomalies: "list[Anomaly]" = []
    for org_buckets in by_org.values():
        if len(org_buckets) < max(min_buckets, 1):
            continue

        costs = [b.cost for b in org_buckets]
        mean = statistics.fmean(costs)
        sigma = statistics.pstdev(costs, mu=mean)
        if not math.isfinite(sigma) or sigma == 0:
            continue

        threshold = mean + SIGMA_THRESHOLD * sigma
        anomalies.extend(
            _describe(b, mean, threshold) for b in org_buckets if b.cost > threshold
        )

    anomalies.sort(key=lambda a: a.organization_id)
    anomalies.sort(key=lambda a: a.detected_at, reverse=True)
    return anomalies


class AnomalyDetectionJob(AnalysisJob):
    """
    detects per-organization hourly cost spikes over the last 24 hours.
    """

    name = "anomalies"
    artifact = ANOMALIES

    def __init__(
        self,
        store: "RecordStore",
        cache: "DerivedStateCache",
        metrics: "ObservatoryMetrics",
        clear_after_empty: "int" = 0,
        min_buckets: "int" = DEFAULT_MIN_BUCKETS,
        clock: "Callable[[], datetime]" = utc_now,
    ) -> "None":
        super().__init__(store, cache, metrics, clear_after_empty, clock)
        self._min_buckets = min_buckets

    async def compute(self) -> "list[Anomaly]":
        buckets = await self._store.hourly_costs(ANOMALY_WINDOW)
        return detect_anomalies(buckets, self._min_buckets)
