"""Startup and periodic maintenance routines for the crawl queue."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

import structlog

from crawlqueue.orchestrator.queue import JobQueue
from crawlqueue.settings import CrawlerSettings

LOGGER = structlog.get_logger(__name__)


@dataclass
class MaintenanceReport:
    requeued_stale: int = 0
    aged: int = 0


async def reset_incomplete_jobs(queue: JobQueue, settings: CrawlerSettings) -> int:
    """Put jobs orphaned by a dead worker back in the queue.

    A crashed worker leaves its job in ``crawling`` with no heartbeat, so an
    old ``last_attempt`` is the only signal available.
    """
    count = await queue.reset_incomplete(settings.reset_incomplete_after)
    if count:
        LOGGER.warning(
            "incomplete_jobs_reset",
            count=count,
            older_than_minutes=settings.reset_incomplete_after_minutes,
        )
    return count


async def run_maintenance(queue: JobQueue, settings: CrawlerSettings) -> MaintenanceReport:
    """Refresh stale entities and age queued jobs that have waited too long."""
    report = MaintenanceReport()
    report.requeued_stale = await queue.requeue_stale(settings.stale_after)
    report.aged = await queue.age_starved(settings.starvation_after, settings.starvation_boost)
    LOGGER.info(
        "maintenance_complete",
        requeued_stale=report.requeued_stale,
        aged=report.aged,
        stale_days=settings.stale_days,
    )
    return report


async def run_maintenance_loop(
    queue: JobQueue,
    settings: CrawlerSettings,
    *,
    interval_seconds: Optional[float] = None,
    ticks: Optional[int] = None,
    stop: Optional[asyncio.Event] = None,
) -> None:
    interval = settings.maintenance_interval_seconds if interval_seconds is None else interval_seconds
    stop = stop or asyncio.Event()
    tick = 0
    while not stop.is_set() and (ticks is None or tick < ticks):
        await reset_incomplete_jobs(queue, settings)
        await run_maintenance(queue, settings)
        tick += 1
        if ticks is not None and tick >= ticks:
            break
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval)
        except asyncio.TimeoutError:
            continue
