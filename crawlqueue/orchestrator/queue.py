"""Durable crawl job queue backed by the ``crawl_jobs`` table."""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

import structlog
from sqlalchemy import case, func, insert, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from crawlqueue.observability.metrics import MetricsRegistry
from crawlqueue.orchestrator.jobs import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    ConflictError,
    CrawlJob,
    JobStatus,
    exponential_backoff,
    utcnow,
)
from crawlqueue.storage.database import crawl_jobs

LOGGER = structlog.get_logger(__name__)

Backoff = Callable[[int], timedelta]

STALE_REQUEUE_SOURCE = "system-stale"


class JobQueue:
    """Priority queue of crawl jobs with time-gated visibility.

    Every status transition is a conditional update keyed on the prior
    status, so concurrent claimers and recovery sweeps cannot overwrite each
    other's work.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        *,
        clock: Callable[[], datetime] = utcnow,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self._engine = engine
        self._clock = clock
        self._metrics = metrics or MetricsRegistry()

    async def _fetch(self, conn: AsyncConnection, job_id: int) -> Optional[CrawlJob]:
        row = (
            await conn.execute(select(crawl_jobs).where(crawl_jobs.c.id == job_id))
        ).mappings().first()
        return CrawlJob.from_row(row) if row is not None else None

    async def enqueue(
        self,
        entity_id: str,
        *,
        priority: int = 0,
        enqueued_by: Optional[str] = None,
    ) -> CrawlJob:
        """Ensure a queued job exists for the entity.

        An active job keeps its state and only ever gains priority; a
        terminal job is revived in place.
        """
        now = self._clock()
        async with self._engine.begin() as conn:
            row = (
                await conn.execute(select(crawl_jobs).where(crawl_jobs.c.entity_id == entity_id))
            ).mappings().first()
            if row is None:
                try:
                    result = await conn.execute(
                        insert(crawl_jobs).values(
                            entity_id=entity_id,
                            status=JobStatus.QUEUED.value,
                            priority=priority,
                            retries=0,
                            enqueued_by=enqueued_by,
                            visible_at=now,
                            created_at=now,
                            updated_at=now,
                        )
                    )
                except IntegrityError as exc:
                    raise ConflictError(f"crawl job for {entity_id!r} already exists") from exc
                job_id = result.inserted_primary_key[0]
                self._metrics.incr("jobs_enqueued")
                LOGGER.info("job_enqueued", entity_id=entity_id, priority=priority, enqueued_by=enqueued_by)
            elif not JobStatus(row["status"]).terminal:
                job_id = row["id"]
                if priority > row["priority"]:
                    await conn.execute(
                        update(crawl_jobs)
                        .where(
                            crawl_jobs.c.id == job_id,
                            crawl_jobs.c.status.in_(ACTIVE_STATUSES),
                            crawl_jobs.c.priority < priority,
                        )
                        .values(priority=priority, updated_at=now)
                    )
                    LOGGER.info("job_priority_raised", entity_id=entity_id, priority=priority)
            else:
                job_id = row["id"]
                await conn.execute(
                    update(crawl_jobs)
                    .where(crawl_jobs.c.id == job_id, crawl_jobs.c.status.in_(TERMINAL_STATUSES))
                    .values(
                        status=JobStatus.QUEUED.value,
                        priority=priority,
                        retries=0,
                        enqueued_by=enqueued_by,
                        visible_at=now,
                        next_retry_at=None,
                        updated_at=now,
                    )
                )
                self._metrics.incr("jobs_enqueued")
                LOGGER.info(
                    "job_requeued",
                    entity_id=entity_id,
                    previous_status=row["status"],
                    enqueued_by=enqueued_by,
                )
            row = (
                await conn.execute(select(crawl_jobs).where(crawl_jobs.c.id == job_id))
            ).mappings().one()
        return CrawlJob.from_row(row)

    async def dequeue(self, limit: int = 1) -> List[CrawlJob]:
        """Claim up to ``limit`` visible queued jobs, highest priority first."""
        if limit < 1:
            return []
        now = self._clock()
        async with self._engine.begin() as conn:
            candidates = (
                await conn.execute(
                    select(crawl_jobs.c.id)
                    .where(
                        crawl_jobs.c.status == JobStatus.QUEUED.value,
                        crawl_jobs.c.visible_at <= now,
                    )
                    .order_by(
                        crawl_jobs.c.priority.desc(),
                        crawl_jobs.c.visible_at.asc(),
                        crawl_jobs.c.id.asc(),
                    )
                    .limit(limit)
                )
            ).scalars().all()
            claimed: List[CrawlJob] = []
            for job_id in candidates:
                result = await conn.execute(
                    update(crawl_jobs)
                    .where(crawl_jobs.c.id == job_id, crawl_jobs.c.status == JobStatus.QUEUED.value)
                    .values(status=JobStatus.CRAWLING.value, last_attempt=now, updated_at=now)
                )
                if result.rowcount != 1:
                    continue
                job = await self._fetch(conn, job_id)
                if job is not None:
                    claimed.append(job)
        if claimed:
            self._metrics.incr("jobs_claimed", len(claimed))
            LOGGER.debug("jobs_claimed", count=len(claimed), ids=[job.id for job in claimed])
        return claimed

    async def wait_for_jobs(
        self,
        limit: int = 1,
        *,
        poll_interval: float = 1.0,
        stop: Optional[asyncio.Event] = None,
    ) -> List[CrawlJob]:
        """Block until at least one job can be claimed.

        Returns an empty list once ``stop`` is set. No transaction is held
        while sleeping between polls.
        """
        while stop is None or not stop.is_set():
            jobs = await self.dequeue(limit)
            if jobs:
                return jobs
            if stop is None:
                await asyncio.sleep(poll_interval)
                continue
            try:
                await asyncio.wait_for(stop.wait(), timeout=poll_interval)
            except asyncio.TimeoutError:
                continue
        return []

    async def complete(self, job_id: int, duration_ms: int) -> bool:
        """Mark a crawling job as successfully finished."""
        now = self._clock()
        async with self._engine.begin() as conn:
            result = await conn.execute(
                update(crawl_jobs)
                .where(crawl_jobs.c.id == job_id, crawl_jobs.c.status == JobStatus.CRAWLING.value)
                .values(
                    status=JobStatus.SUCCESS.value,
                    duration_ms=duration_ms,
                    next_retry_at=None,
                    updated_at=now,
                )
            )
        if result.rowcount != 1:
            LOGGER.warning("job_complete_skipped", job_id=job_id, reason="not crawling")
            return False
        self._metrics.incr("jobs_succeeded")
        return True

    async def fail(
        self,
        job_id: int,
        max_retries: int,
        *,
        backoff: Backoff = exponential_backoff,
        permanent: bool = False,
    ) -> Optional[JobStatus]:
        """Record a failed attempt.

        The job goes back to ``queued`` behind a backoff window while retry
        budget remains, otherwise (or when ``permanent``) it becomes
        ``failed``. Returns the new status, or None when the job was not
        crawling.
        """
        now = self._clock()
        async with self._engine.begin() as conn:
            job = await self._fetch(conn, job_id)
            if job is None or job.status is not JobStatus.CRAWLING:
                LOGGER.warning("job_fail_skipped", job_id=job_id, reason="not crawling")
                return None
            retries = job.retries + 1
            if not permanent and retries < max_retries:
                next_retry_at = now + backoff(retries)
                status = JobStatus.QUEUED
                values = dict(
                    status=status.value,
                    retries=retries,
                    next_retry_at=next_retry_at,
                    visible_at=next_retry_at,
                    updated_at=now,
                )
            else:
                status = JobStatus.FAILED
                values = dict(status=status.value, retries=retries, next_retry_at=None, updated_at=now)
            result = await conn.execute(
                update(crawl_jobs)
                .where(crawl_jobs.c.id == job_id, crawl_jobs.c.status == JobStatus.CRAWLING.value)
                .values(**values)
            )
            if result.rowcount != 1:
                return None
        if status is JobStatus.FAILED:
            self._metrics.incr("jobs_failed")
            LOGGER.warning(
                "job_failed",
                job_id=job_id,
                entity_id=job.entity_id,
                retries=retries,
                permanent=permanent,
            )
        else:
            self._metrics.incr("jobs_retried")
            LOGGER.info(
                "job_retry_scheduled",
                job_id=job_id,
                entity_id=job.entity_id,
                retries=retries,
                next_retry_at=values["next_retry_at"].isoformat(),
            )
        return status

    async def reset_incomplete(self, older_than: timedelta) -> int:
        """Return jobs stuck in ``crawling`` since before the threshold to the queue."""
        now = self._clock()
        cutoff = now - older_than
        async with self._engine.begin() as conn:
            result = await conn.execute(
                update(crawl_jobs)
                .where(
                    crawl_jobs.c.status == JobStatus.CRAWLING.value,
                    or_(crawl_jobs.c.last_attempt.is_(None), crawl_jobs.c.last_attempt < cutoff),
                )
                .values(status=JobStatus.QUEUED.value, visible_at=now, updated_at=now)
            )
        count = result.rowcount or 0
        self._metrics.incr("jobs_reset", count)
        return count

    async def requeue_stale(self, older_than: timedelta) -> int:
        """Queue a fresh crawl for entities whose last success is older than the threshold."""
        now = self._clock()
        cutoff = now - older_than
        async with self._engine.begin() as conn:
            result = await conn.execute(
                update(crawl_jobs)
                .where(
                    crawl_jobs.c.status == JobStatus.SUCCESS.value,
                    crawl_jobs.c.updated_at < cutoff,
                )
                .values(
                    status=JobStatus.QUEUED.value,
                    retries=0,
                    next_retry_at=None,
                    visible_at=now,
                    enqueued_by=STALE_REQUEUE_SOURCE,
                    updated_at=now,
                )
            )
        count = result.rowcount or 0
        self._metrics.incr("jobs_requeued_stale", count)
        return count

    async def age_starved(self, min_age: timedelta, boost: int, *, ceiling: int = 100) -> int:
        """Raise the priority of queued jobs that have been visible for longer than ``min_age``."""
        if boost <= 0:
            return 0
        now = self._clock()
        boosted = crawl_jobs.c.priority + boost
        async with self._engine.begin() as conn:
            result = await conn.execute(
                update(crawl_jobs)
                .where(
                    crawl_jobs.c.status == JobStatus.QUEUED.value,
                    crawl_jobs.c.visible_at < now - min_age,
                    crawl_jobs.c.priority < ceiling,
                )
                .values(
                    priority=case((boosted > ceiling, ceiling), else_=boosted),
                    updated_at=now,
                )
            )
        return result.rowcount or 0

    async def bump_priority(self, entity_id: str, delta: int) -> bool:
        """Shift an active job's priority by ``delta``."""
        now = self._clock()
        async with self._engine.begin() as conn:
            result = await conn.execute(
                update(crawl_jobs)
                .where(crawl_jobs.c.entity_id == entity_id, crawl_jobs.c.status.in_(ACTIVE_STATUSES))
                .values(priority=crawl_jobs.c.priority + delta, updated_at=now)
            )
        return result.rowcount == 1

    async def get(self, job_id: int) -> Optional[CrawlJob]:
        async with self._engine.connect() as conn:
            return await self._fetch(conn, job_id)

    async def get_by_entity(self, entity_id: str) -> Optional[CrawlJob]:
        async with self._engine.connect() as conn:
            row = (
                await conn.execute(select(crawl_jobs).where(crawl_jobs.c.entity_id == entity_id))
            ).mappings().first()
        return CrawlJob.from_row(row) if row is not None else None

    async def list_jobs(
        self,
        *,
        status: Optional[JobStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[CrawlJob]:
        """Most recently created jobs first."""
        query = select(crawl_jobs).order_by(crawl_jobs.c.created_at.desc(), crawl_jobs.c.id.desc())
        if status is not None:
            query = query.where(crawl_jobs.c.status == status.value)
        async with self._engine.connect() as conn:
            rows = (await conn.execute(query.limit(limit).offset(offset))).mappings().all()
        return [CrawlJob.from_row(row) for row in rows]

    async def active_jobs(self) -> List[CrawlJob]:
        """Queued and crawling jobs in the order workers would see them."""
        query = (
            select(crawl_jobs)
            .where(crawl_jobs.c.status.in_(ACTIVE_STATUSES))
            .order_by(crawl_jobs.c.priority.desc(), crawl_jobs.c.visible_at.asc(), crawl_jobs.c.id.asc())
        )
        async with self._engine.connect() as conn:
            rows = (await conn.execute(query)).mappings().all()
        return [CrawlJob.from_row(row) for row in rows]

    async def counts(self) -> Dict[str, int]:
        """Number of jobs per status, including zero counts."""
        totals = {status.value: 0 for status in JobStatus}
        async with self._engine.connect() as conn:
            rows = (
                await conn.execute(
                    select(crawl_jobs.c.status, func.count()).group_by(crawl_jobs.c.status)
                )
            ).all()
        for status, count in rows:
            totals[status] = count
        return totals
