import argparse

from observatory.config import MODES, Config


def parse_args(argv: "list[str] | None" = None) -> "Config":
    parser = argparse.ArgumentParser(
        prog="observatory",
        description="API usage analysis engine and realtime dashboard gateway",
    )
    parser.add_argument(
        "--mode",
        dest="mode",
        default="all",
        choices=MODES,
        help="Run the analysis jobs, the gateway, or both (default: all)",
    )
    parser.add_argument(
        "--web.listen-address",
        dest="listen_address",
        default=":8080",
        help="Address the gateway listens on (default: :8080)",
    )
    parser.add_argument(
        "--web.metrics-address",
        dest="metrics_address",
        default=":9186",
        help="Address to expose Prometheus metrics on (default: :9186)",
    )
    parser.add_argument(
        "--analysis.interval",
        dest="analysis_interval",
        type=float,
        default=60,
        help="Analysis interval in seconds (default: 60)",
    )
    parser.add_argument(
        "--analysis.clear-after-empty",
        dest="clear_after_empty",
        type=int,
        default=None,
        help=(
            "Overwrite an analysis artifact with an empty one after this many "
            "consecutive empty runs; 0 keeps the last result until it expires "
            "(default: $OBSERVATORY_CLEAR_AFTER_EMPTY or 0)"
        ),
    )
    parser.add_argument(
        "--analysis.anomaly-min-buckets",
        dest="anomaly_min_buckets",
        type=int,
        default=2,
        help="Hourly buckets an organization needs before anomaly detection (default: 2)",
    )
    parser.add_argument(
        "--store.timeout",
        dest="store_timeout",
        type=float,
        default=5.0,
        help="Deadline for each store query in seconds (default: 5)",
    )
    parser.add_argument(
        "--cache.timeout",
        dest="cache_timeout",
        type=float,
        default=5.0,
        help="Deadline for each cache command in seconds (default: 5)",
    )
    parser.add_argument(
        "--gateway.ping-interval",
        dest="ping_interval",
        type=float,
        default=30.0,
        help="Seconds between keepalive pings to realtime clients (default: 30)",
    )
    parser.add_argument(
        "--gateway.max-connections",
        dest="max_connections",
        type=int,
        default=1000,
        help="Maximum concurrent realtime clients (default: 1000)",
    )
    parser.add_argument(
        "--gateway.queue-size",
        dest="queue_size",
        type=int,
        default=100,
        help="Pending notifications kept per client before dropping (default: 100)",
    )
    parser.add_argument(
        "--log.level",
        dest="log_level",
        default="info",
        choices=["debug", "info", "warning", "error"],
        help="Log level (default: info)",
    )
    parser.add_argument(
        "--log.format",
        dest="log_format",
        default="console",
        choices=["console", "json"],
        help="Log output format (default: console)",
    )

    args = parser.parse_args(argv)
    config = Config.from_env()
    config.mode = args.mode
    config.listen_address = args.listen_address
    config.metrics_address = args.metrics_address
    config.analysis_interval = args.analysis_interval
    if args.clear_after_empty is not None:
        config.clear_after_empty = args.clear_after_empty
    config.anomaly_min_buckets = args.anomaly_min_buckets
    config.store_timeout = args.store_timeout
    config.cache_timeout = args.cache_timeout
    config.ping_interval = args.ping_interval
    config.max_connections = args.max_connections
    config.queue_size = args.queue_size
    config.log_level = args.log_level
    config.log_format = args.log_format
    return config
