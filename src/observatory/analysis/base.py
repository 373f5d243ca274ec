import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Callable, Sequence

import structlog

from observatory import artifacts
from observatory.artifacts import ArtifactSpec
from observatory.cache import CacheError, DerivedStateCache
from observatory.metrics import ObservatoryMetrics
from observatory.store.base import RecordStore, StoreError

logger = structlog.get_logger()


def utc_now() -> "datetime":
    return datetime.now(timezone.utc)


class AnalysisJob:
    """
    AnalysisJob is the shared run cycle of every scheduled analysis:
    query the record store, compute a derived artifact, write it to
    the cache under the job's own key and optionally announce it on
    the events channel.

    A failing store query skips the cycle and leaves the previous
    artifact in place until it expires; a failing cache write drops
    this cycle's result. Neither is retried before the next run.

    Subclasses set name and artifact and implement compute().
    """

    name: "str" = ""
    artifact: "ArtifactSpec"
    # when True, an empty result leaves the previous artifact untouched
    # (see clear_after_empty)
    retain_on_empty: "bool" = True

    def __init__(
        self,
        store: "RecordStore",
        cache: "DerivedStateCache",
        metrics: "ObservatoryMetrics",
        clear_after_empty: "int" = 0,
        clock: "Callable[[], datetime]" = utc_now,
    ) -> "None":
        self._store = store
        self._cache = cache
        self._metrics = metrics
        # 0 keeps the last non-empty artifact until its ttl runs out,
        # N > 0 overwrites it with an empty one after N empty cycles
        self._clear_after_empty = clear_after_empty
        self._clock = clock
        self._empty_cycles = 0
        self._lock: "asyncio.Lock" = asyncio.Lock()

    async def compute(self) -> "Sequence[Any]":
        raise NotImplementedError

    def envelope(self, items: "Sequence[Any]", now: "datetime") -> "dict[str, Any]":
        return artifacts.items_envelope(items, now)

    def notification(
        self, items: "Sequence[Any]", now: "datetime"
    ) -> "dict[str, Any] | None":
        """
        returns the event announced after a successful write,
        or None for jobs that stay silent.
        """
        return None

    def _should_write(self, items: "Sequence[Any]") -> "bool":
        if items or not self.retain_on_empty:
            self._empty_cycles = 0
            return True

        self._empty_cycles += 1
        if self._clear_after_empty <= 0:
            return False
        return self._empty_cycles >= self._clear_after_empty

    async def run_once(self) -> "bool":
        """
        runs a single cycle. Returns True when the cycle finished without
        error, whether or not it wrote anything. A call made while the
        previous run is still in progress is refused.
        """
        if self._lock.locked():
            logger.warning("job_run_overlap_skipped", job=self.name)
            return False

        async with self._lock:
            cycle_start = time.monotonic()
            try:
                return await self._run()
            finally:
                self._metrics.observe_job_duration(
                    self.name, time.monotonic() - cycle_start
                )

    async def _run(self) -> "bool":
        try:
            items = await self.compute()
        except StoreError as exc:
            logger.warning("job_store_error", job=self.name, error=str(exc))
            self._metrics.inc_job_error(self.name, "store")
            return False
        except Exception:
            logger.exception("job_compute_error", job=self.name)
            self._metrics.inc_job_error(self.name, "compute")
            return False

        if not self._should_write(items):
            logger.info(
                "job_result_empty",
                job=self.name,
                empty_cycles=self._empty_cycles,
            )
            self._metrics.set_last_success(self.name, time.time())
            return True

        now = self._clock()
        # the artifact is written before the event announcing it
        try:
            await self._cache.write_artifact(self.artifact, self.envelope(items, now))
            event = self.notification(items, now)
            if event is not None:
                await self._cache.publish(artifacts.EVENTS_CHANNEL, artifacts.dumps(event))
        except CacheError as exc:
            logger.warning("job_cache_error", job=self.name, error=str(exc))
            self._metrics.inc_job_error(self.name, "cache")
            return False

        self._metrics.set_artifact_items(self.name, len(items))
        self._metrics.set_last_success(self.name, time.time())
        logger.info("job_run_complete", job=self.name, items=len(items))
        return True
