from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram


class ObservatoryMetrics:
    """
    holds the engine's own Prometheus instruments: per-job run
    duration, errors and freshness, plus gateway connection and
    delivery counters.
    """

    def __init__(self, registry: "CollectorRegistry" = REGISTRY) -> "None":
        self._job_duration: "Histogram" = Histogram(
            "observatory_job_duration_seconds",
            "Duration of analysis job runs",
            ["job"],
            registry=registry,
        )
        self._job_errors: "Counter" = Counter(
            "observatory_job_errors_total",
            "Total number of analysis job errors by job and stage",
            ["job", "stage"],
            registry=registry,
        )
        self._last_success: "Gauge" = Gauge(
            "observatory_job_last_success_timestamp_seconds",
            "Unix timestamp of the last successful run per job",
            ["job"],
            registry=registry,
        )
        self._artifact_items: "Gauge" = Gauge(
            "observatory_artifact_items",
            "Number of items computed by the last successful run per job",
            ["job"],
            registry=registry,
        )
        self._connections: "Gauge" = Gauge(
            "observatory_gateway_connections",
            "Currently streaming realtime client connections",
            registry=registry,
        )
        self._dropped: "Counter" = Counter(
            "observatory_gateway_messages_dropped_total",
            "Notifications dropped because a client queue was full",
            registry=registry,
        )
        self._evictions: "Counter" = Counter(
            "observatory_gateway_evictions_total",
            "Connections closed to make room for new ones",
            registry=registry,
        )

    def observe_job_duration(self, job: "str", duration_seconds: "float") -> "None":
        self._job_duration.labels(job=job).observe(duration_seconds)

    def inc_job_error(self, job: "str", stage: "str") -> "None":
        self._job_errors.labels(job=job, stage=stage).inc()

    def set_last_success(self, job: "str", timestamp: "float") -> "None":
        self._last_success.labels(job=job).set(timestamp)

    def set_artifact_items(self, job: "str", count: "int") -> "None":
        self._artifact_items.labels(job=job).set(count)

    def set_connections(self, count: "int") -> "None":
        self._connections.set(count)

    def inc_dropped(self) -> "None":
        self._dropped.inc()

    def inc_evictions(self) -> "None":
        self._evictions.inc()
