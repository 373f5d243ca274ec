import asyncio
import signal

import structlog
import uvicorn
from prometheus_client import start_http_server

from observatory.analysis.anomalies import AnomalyDetectionJob
from observatory.analysis.base import AnalysisJob
from observatory.analysis.cache_opportunities import CacheOpportunityJob
from observatory.analysis.costs import CostRollupJob
from observatory.analysis.duplicates import DuplicateDetectionJob
from observatory.cache import DerivedStateCache
from observatory.cli import parse_args
from observatory.config import Config
from observatory.gateway.app import Gateway, create_app
from observatory.health import HealthChecker
from observatory.logging import setup_logging
from observatory.metrics import ObservatoryMetrics
from observatory.scheduler import Scheduler
from observatory.store.base import RecordStore
from observatory.store.postgres import PostgresRecordStore

logger = structlog.get_logger()


def _parse_listen_address(addr: "str") -> "tuple[str, int]":
    """
    parses listen address in format ':8080' or '0.0.0.0:8080'.
    """
    if addr.startswith(":"):
        return ("0.0.0.0", int(addr[1:]))

    host, port = addr.rsplit(":", 1)
    return (host, int(port))


def build_jobs(
    store: "RecordStore",
    cache: "DerivedStateCache",
    metrics: "ObservatoryMetrics",
    config: "Config",
) -> "list[AnalysisJob]":
    return [
        CostRollupJob(store, cache, metrics),
        DuplicateDetectionJob(store, cache, metrics, config.clear_after_empty),
        CacheOpportunityJob(store, cache, metrics, config.clear_after_empty),
        AnomalyDetectionJob(
            store,
            cache,
            metrics,
            config.clear_after_empty,
            min_buckets=config.anomaly_min_buckets,
        ),
    ]


async def _run(config: "Config", metrics: "ObservatoryMetrics") -> "None":
    store = await PostgresRecordStore.connect(config.database_url, config.store_timeout)
    cache = DerivedStateCache.from_url(config.redis_url, config.cache_timeout)

    scheduler: "Scheduler | None" = None
    server: "uvicorn.Server | None" = None
    runners = []

    if config.runs_analysis:
        scheduler = Scheduler(
            build_jobs(store, cache, metrics, config), config.analysis_interval
        )
        runners.append(scheduler.run())

    if config.runs_gateway:
        gateway = Gateway(
            cache,
            metrics,
            ping_interval=config.ping_interval,
            max_connections=config.max_connections,
            queue_size=config.queue_size,
        )
        app = create_app(gateway, HealthChecker(store, cache))
        host, port = _parse_listen_address(config.listen_address)
        # log_config=None leaves logging to setup_logging
        server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_config=None))
        runners.append(server.serve())
        logger.info("gateway_listening", host=host, port=port)

    def _stop() -> "None":
        if scheduler is not None:
            scheduler.stop()
        if server is not None:
            server.should_exit = True

    loop = asyncio.get_running_loop()
    # for SIGINT and SIGTERM, signal the scheduler
    # and the gateway to stop gracefully
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _stop)

    try:
        await asyncio.gather(*runners)
    finally:
        logger.info("shutting_down")
        await cache.close()
        await store.close()
        logger.info("shutdown_complete")


def main() -> "None":
    config = parse_args()
    setup_logging(config.log_level, config.log_format)

    if not config.database_url:
        raise SystemExit("No record store configured. Set DATABASE_URL environment variable.")

    metrics = ObservatoryMetrics()
    host, port = _parse_listen_address(config.metrics_address)
    start_http_server(port, addr=host)
    logger.info("metrics_server_started", host=host, port=port)

    asyncio.run(_run(config, metrics))


if __name__ == "__main__":
    main()
