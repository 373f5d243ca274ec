import os
from dataclasses import dataclass

MODES = ("all", "analysis", "gateway")


def normalize_redis_url(url: "str") -> "str":
    """
    accepts either a full redis:// URL or a bare "host:port".
    """
    if "://" in url:
        return url
    return f"redis://{url}"


@dataclass
class Config:
    # listen_address: format ":8080" or
    # "0.0.0.0:8080"
    listen_address: "str" = ":8080"
    metrics_address: "str" = ":9186"
    # which parts of the engine this process runs
    mode: "str" = "all"
    # analysis cadence in seconds
    analysis_interval: "float" = 60
    # 0 keeps the last non-empty analysis artifact until it expires
    clear_after_empty: "int" = 0
    anomaly_min_buckets: "int" = 2
    store_timeout: "float" = 5.0
    cache_timeout: "float" = 5.0
    ping_interval: "float" = 30.0
    max_connections: "int" = 1000
    queue_size: "int" = 100
    log_level: "str" = "info"
    log_format: "str" = "console"

    database_url: "str" = ""
    redis_url: "str" = "redis://localhost:6379/0"

    @classmethod
    def from_env(cls) -> "Config":
        return cls(
            database_url=os.environ.get("DATABASE_URL", ""),
            redis_url=normalize_redis_url(
                os.environ.get("REDIS_URL", "") or "redis://localhost:6379/0"
            ),
            clear_after_empty=int(os.environ.get("OBSERVATORY_CLEAR_AFTER_EMPTY", "0")),
        )

    @property
    def runs_analysis(self) -> "bool":
        return self.mode in ("all", "analysis")

    @property
    def runs_gateway(self) -> "bool":
        return self.mode in ("all", "gateway")
