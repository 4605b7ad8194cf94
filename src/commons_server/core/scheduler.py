"""
Periodic background jobs.

Each job is a plain or async callable run on a fixed interval in its own
asyncio task. A job that raises is logged and retried on the next tick; it
never takes the loop down.

Jobs registered by :func:`default_jobs`:

- ``snapshot-flush``: write snapshots that have been quiet for the debounce
  period (every ``persistence.flush_interval_ms``)
- ``trade-reaper``: fail stale trades (at startup, then every
  ``trade.reaper_interval_seconds``)
- ``mail-reaper``: drop expired mail (every ``mail.reap_interval_seconds``)
- ``monitor-sample``: record a process sample (every
  ``monitor.sample_interval_seconds``)
- ``housekeeping``: prune idle rate-limit windows and forum view records
  (every minute)
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass

from commons_server.core.container import Services

logger = logging.getLogger(__name__)

HOUSEKEEPING_INTERVAL_SECONDS = 60.0


@dataclass
class Job:
    name: str
    interval_seconds: float
    func: Callable[[], object]
    run_at_start: bool = False


async def run_job_once(job: Job) -> None:
    """Run ``job`` once, logging instead of raising on failure."""
    try:
        result = job.func()
        if inspect.isawaitable(result):
            await result
    except Exception:  # noqa: BLE001
        logger.exception("Background job %s failed", job.name)


async def _job_loop(job: Job) -> None:
    if job.run_at_start:
        await run_job_once(job)
    while True:
        await asyncio.sleep(job.interval_seconds)
        await run_job_once(job)


def default_jobs(services: Services) -> list[Job]:
    cfg = services.config

    def housekeeping() -> None:
        now = services.clock.now_ms()
        limiter_keys = services.rate_limiter.cleanup(now)
        view_records = services.forum.prune_view_records(now)
        send_records = services.moderation.prune_send_records(now)
        if limiter_keys or view_records or send_records:
            logger.debug(
                "Housekeeping pruned %d rate-limit keys, %d view records, %d send records",
                limiter_keys,
                view_records,
                send_records,
            )

    return [
        Job("snapshot-flush", cfg.persistence.flush_interval_ms / 1000, services.writer.flush_due),
        Job(
            "trade-reaper",
            cfg.trade.reaper_interval_seconds,
            services.trades.reap_stale,
            run_at_start=True,
        ),
        Job("mail-reaper", cfg.mail.reap_interval_seconds, services.mail.reap),
        Job("monitor-sample", cfg.monitor.sample_interval_seconds, services.monitor.sample),
        Job("housekeeping", HOUSEKEEPING_INTERVAL_SECONDS, housekeeping),
    ]


class BackgroundJobs:
    """
    Owns the asyncio tasks for periodic jobs.

    Usage:
        jobs = BackgroundJobs(services)
        await jobs.start()
        ...
        await jobs.stop()  # cancels tasks and flushes every dirty snapshot
    """

    def __init__(self, services: Services, jobs: list[Job] | None = None) -> None:
        self.services = services
        self.jobs = jobs if jobs is not None else default_jobs(services)
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        if self._tasks:
            return
        for job in self.jobs:
            self._tasks[job.name] = asyncio.create_task(_job_loop(job), name=f"commons/{job.name}")
        logger.info("Started %d background jobs", len(self._tasks))

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        written = self.services.writer.flush_all()
        logger.info("Background jobs stopped; flushed %d snapshots", len(written))
