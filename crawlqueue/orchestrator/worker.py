"""Worker loop: claim jobs, run the crawl handler, record the outcome."""
from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, List, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError

from crawlqueue.fetch.errors import APIError
from crawlqueue.observability.metrics import MetricsRegistry, record_duration
from crawlqueue.observability.tracing import clear_context, set_context
from crawlqueue.orchestrator.jobs import CrawlJob, JobStatus, exponential_backoff
from crawlqueue.orchestrator.queue import Backoff, JobQueue

LOGGER = structlog.get_logger(__name__)

Handler = Callable[[CrawlJob], Awaitable[None]]


class CrawlWorker:
    """Translates handler outcomes into queue transitions.

    A returning handler completes the job. A permanent ``APIError`` fails it
    without spending retry budget; any other exception consumes one retry.
    Cancellation leaves the job ``crawling`` for ``reset_incomplete``.
    """

    def __init__(
        self,
        queue: JobQueue,
        handler: Handler,
        *,
        max_retries: int,
        batch_size: int = 1,
        poll_interval: float = 1.0,
        backoff: Backoff = exponential_backoff,
        metrics: Optional[MetricsRegistry] = None,
        name: str = "worker",
    ) -> None:
        self._queue = queue
        self._handler = handler
        self._max_retries = max_retries
        self._batch_size = batch_size
        self._poll_interval = poll_interval
        self._backoff = backoff
        self._metrics = metrics or MetricsRegistry()
        self.name = name

    async def process(self, job: CrawlJob) -> Optional[JobStatus]:
        set_context(job_id=job.id, entity_id=job.entity_id, worker=self.name)
        start = time.perf_counter()
        try:
            with record_duration(self._metrics, "job_duration_ms"):
                await self._handler(job)
        except APIError as exc:
            LOGGER.warning(
                "job_api_error",
                type=exc.type.value,
                status=exc.status_code,
                retryable=exc.retryable,
                error=exc.message,
            )
            return await self._queue.fail(
                job.id,
                self._max_retries,
                backoff=self._backoff,
                permanent=exc.permanent,
            )
        except Exception:
            LOGGER.exception("job_handler_failed")
            return await self._queue.fail(job.id, self._max_retries, backoff=self._backoff)
        else:
            duration_ms = int((time.perf_counter() - start) * 1000)
            completed = await self._queue.complete(job.id, duration_ms)
            LOGGER.info("job_completed", duration_ms=duration_ms)
            return JobStatus.SUCCESS if completed else None
        finally:
            clear_context()

    async def _process_batch(self, jobs: List[CrawlJob]) -> None:
        for job in jobs:
            try:
                await self.process(job)
            except SQLAlchemyError:
                # the job stays crawling until reset_incomplete requeues it
                LOGGER.exception("job_outcome_not_recorded", worker=self.name, job_id=job.id)
                self._metrics.incr("worker_store_errors")

    async def run_once(self) -> int:
        """Claim and process one batch without waiting; returns the batch size."""
        jobs = await self._queue.dequeue(self._batch_size)
        await self._process_batch(jobs)
        return len(jobs)

    async def run(self, *, stop: Optional[asyncio.Event] = None, max_jobs: Optional[int] = None) -> int:
        """Process jobs until ``stop`` is set or ``max_jobs`` have been handled."""
        stop = stop or asyncio.Event()
        handled = 0
        LOGGER.info("worker_started", worker=self.name)
        while not stop.is_set() and (max_jobs is None or handled < max_jobs):
            try:
                jobs = await self._queue.wait_for_jobs(
                    self._batch_size, poll_interval=self._poll_interval, stop=stop
                )
            except SQLAlchemyError:
                LOGGER.exception("job_claim_failed", worker=self.name)
                self._metrics.incr("worker_store_errors")
                try:
                    await asyncio.wait_for(stop.wait(), timeout=self._poll_interval)
                except asyncio.TimeoutError:
                    pass
                continue
            await self._process_batch(jobs)
            handled += len(jobs)
        LOGGER.info("worker_stopped", worker=self.name, handled=handled)
        return handled
