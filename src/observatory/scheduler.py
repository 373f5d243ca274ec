import asyncio
import time
from typing import Sequence

import structlog

from observatory.analysis.base import AnalysisJob

logger = structlog.get_logger()


class Scheduler:
    """
    Scheduler runs every analysis job on the same fixed cadence, each
    in its own task so a slow job never delays the others.

    A job's next run starts one interval after the previous run
    started, or immediately after it finished if the run took longer
    than the interval. Missed ticks are not replayed and a job never
    overlaps itself.
    """

    def __init__(
        self,
        jobs: "Sequence[AnalysisJob]",
        interval_seconds: "float" = 60,
    ) -> "None":
        self._jobs = jobs
        self._interval = interval_seconds
        self._stop_event: "asyncio.Event" = asyncio.Event()

    def stop(self) -> "None":
        """
        signals every job loop to stop after its current run.
        """
        self._stop_event.set()

    async def run(self) -> "None":
        """
        runs all job loops until stop() is called.
        """
        logger.info(
            "scheduler_started",
            jobs=[job.name for job in self._jobs],
            interval=self._interval,
        )
        tasks = [
            asyncio.create_task(self._run_job(job), name=f"job:{job.name}")
            for job in self._jobs
        ]
        await asyncio.gather(*tasks)
        logger.info("scheduler_stopped")

    async def _run_job(self, job: "AnalysisJob") -> "None":
        while not self._stop_event.is_set():
            started = time.monotonic()
            logger.debug("job_cycle_start", job=job.name)

            try:
                await job.run_once()
            except Exception:
                # a failing run must never end the job's loop
                logger.exception("job_cycle_error", job=job.name)

            delay = max(0.0, self._interval - (time.monotonic() - started))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            except TimeoutError:
                pass
