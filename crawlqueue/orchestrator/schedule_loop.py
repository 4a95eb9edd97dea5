"""Clock-driven loop that expands due scheduled jobs into crawl jobs."""
from __future__ import annotations

import asyncio
import enum
from datetime import datetime
from typing import Callable, Optional

import structlog

from crawlqueue.observability.metrics import MetricsRegistry
from crawlqueue.orchestrator.cron import CronError, parse_cron
from crawlqueue.orchestrator.jobs import ConflictError, ScheduledJob, utcnow
from crawlqueue.orchestrator.queue import JobQueue
from crawlqueue.orchestrator.schedules import ScheduleStore

LOGGER = structlog.get_logger(__name__)


class SchedulerState(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    PROCESSING = "processing"
    STOPPED = "stopped"


class Scheduler:
    """Runs one pass immediately and then one pass per tick until stopped."""

    def __init__(
        self,
        schedules: ScheduleStore,
        queue: JobQueue,
        *,
        interval_seconds: float = 60.0,
        clock: Callable[[], datetime] = utcnow,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self._schedules = schedules
        self._queue = queue
        self._interval = interval_seconds
        self._clock = clock
        self._metrics = metrics or MetricsRegistry()
        self._stop = asyncio.Event()
        self.state = SchedulerState.IDLE

    def stop(self) -> None:
        """Ask the loop to exit after the current pass; safe to call repeatedly."""
        self._stop.set()

    async def run(self, *, ticks: Optional[int] = None) -> None:
        """Run until ``stop()``, cancellation, or ``ticks`` passes have completed."""
        if self._stop.is_set():
            self.state = SchedulerState.STOPPED
            return
        LOGGER.info("scheduler_started", interval_seconds=self._interval)
        self.state = SchedulerState.RUNNING
        completed = 0
        try:
            while not self._stop.is_set():
                await self.process_due()
                completed += 1
                if ticks is not None and completed >= ticks:
                    break
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=self._interval)
                except asyncio.TimeoutError:
                    continue
        finally:
            self.state = SchedulerState.STOPPED
            LOGGER.info("scheduler_stopped", passes=completed)

    async def process_due(self) -> int:
        """Fire every due definition once; returns how many advanced their clock."""
        now = self._clock()
        try:
            due = await self._schedules.list_due(now)
        except Exception:
            self._metrics.incr("scheduler_errors")
            LOGGER.exception("scheduler_list_due_failed")
            return 0
        if not due:
            return 0

        self.state = SchedulerState.PROCESSING
        LOGGER.info("scheduler_processing", count=len(due))
        advanced = 0
        try:
            for job in due:
                try:
                    if await self.execute(job, now):
                        advanced += 1
                except Exception:
                    self._metrics.incr("scheduler_errors")
                    LOGGER.exception("scheduled_job_failed", job_id=job.id, name=job.name)
        finally:
            if self.state is SchedulerState.PROCESSING:
                self.state = SchedulerState.RUNNING
        return advanced

    async def execute(self, job: ScheduledJob, now: datetime) -> bool:
        """Enqueue the job's target and move its schedule forward.

        Returns False when the cron expression cannot be evaluated; the
        definition then stays due and is retried on the next tick.
        """
        LOGGER.info("scheduled_job_executing", job_id=job.id, name=job.name, entity_id=job.entity_id)
        if job.entity_id:
            try:
                await self._queue.enqueue(
                    job.entity_id,
                    priority=max(job.priority, 0),
                    enqueued_by=f"scheduler:{job.name}",
                )
            except ConflictError:
                LOGGER.info("scheduled_job_enqueue_raced", job_id=job.id, entity_id=job.entity_id)

        try:
            next_run = parse_cron(job.cron_expression, now)
        except CronError as exc:
            self._metrics.incr("scheduler_errors")
            LOGGER.error(
                "scheduled_job_bad_cron",
                job_id=job.id,
                name=job.name,
                cron=job.cron_expression,
                error=str(exc),
            )
            return False

        await self._schedules.record_run(job.id, last_run_at=now, next_run_at=next_run)
        self._metrics.incr("scheduler_runs")
        LOGGER.info("scheduled_job_executed", job_id=job.id, name=job.name, next_run=next_run.isoformat())
        return True
