import asyncio
import random
from datetime import datetime, timedelta

import pytest

from crawlqueue.observability.metrics import MetricsRegistry
from crawlqueue.orchestrator.jobs import JobStatus
from crawlqueue.orchestrator.queue import STALE_REQUEUE_SOURCE, JobQueue
from crawlqueue.storage.database import open_database

NO_DELAY = lambda retries: timedelta(0)  # noqa: E731


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture()
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'crawl.db'}"


@pytest.fixture()
def clock():
    return FakeClock(datetime(2024, 1, 15, 10, 0))


def test_enqueue_is_idempotent(db_url, clock):
    async def _run():
        async with open_database(db_url) as engine:
            queue = JobQueue(engine, clock=clock)
            first = await queue.enqueue("python", enqueued_by="test")
            second = await queue.enqueue("python", enqueued_by="test")
            assert first.id == second.id
            assert first.status is JobStatus.QUEUED
            assert first.visible_at == clock.now
            assert first.retries == 0
            assert len(await queue.list_jobs()) == 1

    asyncio.run(_run())


def test_enqueue_only_raises_priority(db_url, clock):
    async def _run():
        async with open_database(db_url) as engine:
            queue = JobQueue(engine, clock=clock)
            await queue.enqueue("python", priority=1)
            assert (await queue.enqueue("python", priority=5)).priority == 5
            assert (await queue.enqueue("python", priority=2)).priority == 5

    asyncio.run(_run())


def test_enqueue_leaves_crawling_job_alone(db_url, clock):
    async def _run():
        async with open_database(db_url) as engine:
            queue = JobQueue(engine, clock=clock)
            await queue.enqueue("python")
            [claimed] = await queue.dequeue()
            again = await queue.enqueue("python", priority=3)
            assert again.id == claimed.id
            assert again.status is JobStatus.CRAWLING
            assert again.priority == 3

    asyncio.run(_run())


def test_enqueue_revives_terminal_job(db_url, clock):
    async def _run():
        async with open_database(db_url) as engine:
            queue = JobQueue(engine, clock=clock)
            job = await queue.enqueue("python")
            await queue.dequeue()
            await queue.fail(job.id, 1)
            assert (await queue.get(job.id)).status is JobStatus.FAILED

            clock.advance(minutes=5)
            revived = await queue.enqueue("python", priority=2, enqueued_by="manual")
            assert revived.id == job.id
            assert revived.status is JobStatus.QUEUED
            assert revived.retries == 0
            assert revived.priority == 2
            assert revived.visible_at == clock.now
            assert revived.enqueued_by == "manual"

    asyncio.run(_run())


def test_enqueue_revives_successful_job(db_url, clock):
    async def _run():
        async with open_database(db_url) as engine:
            queue = JobQueue(engine, clock=clock)
            job = await queue.enqueue("python", priority=4)
            await queue.dequeue()
            await queue.complete(job.id, 120)
            done = await queue.get(job.id)
            assert done.status.terminal

            clock.advance(days=1)
            revived = await queue.enqueue("python")
            assert revived.id == job.id
            assert revived.status is JobStatus.QUEUED
            assert not revived.status.terminal
            assert revived.priority == 0
            assert revived.visible_at == clock.now

    asyncio.run(_run())


def test_dequeue_orders_by_priority_then_age(db_url, clock):
    async def _run():
        async with open_database(db_url) as engine:
            queue = JobQueue(engine, clock=clock)
            await queue.enqueue("low", priority=0)
            clock.advance(seconds=1)
            await queue.enqueue("high-old", priority=5)
            clock.advance(seconds=1)
            await queue.enqueue("high-new", priority=5)
            claimed = await queue.dequeue(limit=3)
            assert [job.entity_id for job in claimed] == ["high-old", "high-new", "low"]
            assert all(job.status is JobStatus.CRAWLING for job in claimed)
            assert all(job.last_attempt == clock.now for job in claimed)
            assert await queue.dequeue(limit=3) == []

    asyncio.run(_run())


def test_dequeue_respects_limit(db_url, clock):
    async def _run():
        async with open_database(db_url) as engine:
            queue = JobQueue(engine, clock=clock)
            for index in range(5):
                await queue.enqueue(f"entity-{index}")
            assert await queue.dequeue(limit=0) == []
            assert len(await queue.dequeue(limit=2)) == 2
            assert len(await queue.dequeue(limit=10)) == 3

    asyncio.run(_run())


def test_wait_for_jobs_blocks_until_a_job_is_visible(db_url, clock):
    async def _run():
        async with open_database(db_url) as engine:
            queue = JobQueue(engine, clock=clock)
            job = await queue.enqueue("python")
            await queue.dequeue()
            await queue.fail(job.id, 5, backoff=lambda retries: timedelta(minutes=1))

            task = asyncio.create_task(queue.wait_for_jobs(poll_interval=0.01))
            await asyncio.sleep(0.1)
            assert not task.done()
            clock.advance(minutes=1)
            [claimed] = await asyncio.wait_for(task, timeout=5)
            assert claimed.id == job.id
            assert claimed.status is JobStatus.CRAWLING

    asyncio.run(_run())


def test_cancelled_wait_for_jobs_claims_nothing(db_url, clock):
    async def _run():
        async with open_database(db_url) as engine:
            queue = JobQueue(engine, clock=clock)
            job = await queue.enqueue("python")
            await queue.dequeue()
            await queue.fail(job.id, 5, backoff=lambda retries: timedelta(minutes=1))

            task = asyncio.create_task(queue.wait_for_jobs(poll_interval=60))
            await asyncio.sleep(0.1)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            clock.advance(minutes=1)
            waiting = await queue.get(job.id)
            assert waiting.status is JobStatus.QUEUED
            assert waiting.last_attempt < clock.now - timedelta(seconds=30)

    asyncio.run(_run())


def test_wait_for_jobs_returns_empty_when_stopped(db_url, clock):
    async def _run():
        async with open_database(db_url) as engine:
            queue = JobQueue(engine, clock=clock)
            stop = asyncio.Event()
            task = asyncio.create_task(queue.wait_for_jobs(poll_interval=60, stop=stop))
            await asyncio.sleep(0.05)
            stop.set()
            assert await asyncio.wait_for(task, timeout=5) == []
            await queue.enqueue("python")
            assert await queue.wait_for_jobs(stop=stop) == []
            assert (await queue.get_by_entity("python")).status is JobStatus.QUEUED

    asyncio.run(_run())


def test_concurrent_claimers_never_share_a_job(db_url):
    async def _run():
        async with open_database(db_url) as engine:
            queue = JobQueue(engine)
            for index in range(30):
                await queue.enqueue(f"entity-{index}")

            async def claimer():
                seen = []
                while True:
                    jobs = await queue.dequeue(limit=2)
                    if not jobs:
                        return seen
                    seen.extend(job.id for job in jobs)

            results = await asyncio.gather(*(claimer() for _ in range(6)))
            claimed = [job_id for batch in results for job_id in batch]
            assert len(claimed) == 30
            assert len(set(claimed)) == 30

    asyncio.run(_run())


def test_concurrent_enqueue_keeps_one_row_per_entity(db_url):
    async def _run():
        async with open_database(db_url) as engine:
            queue = JobQueue(engine)
            entities = [f"entity-{index % 4}" for index in range(20)]
            jobs = await asyncio.gather(*(queue.enqueue(entity, priority=index) for index, entity in enumerate(entities)))
            assert len({job.id for job in jobs}) == 4
            rows = await queue.list_jobs(limit=100)
            assert sorted(job.entity_id for job in rows) == [f"entity-{index}" for index in range(4)]
            priorities = {job.entity_id: job.priority for job in rows}
            assert priorities == {"entity-0": 16, "entity-1": 17, "entity-2": 18, "entity-3": 19}

    asyncio.run(_run())


def test_complete_requires_crawling(db_url, clock):
    async def _run():
        async with open_database(db_url) as engine:
            metrics = MetricsRegistry()
            queue = JobQueue(engine, clock=clock, metrics=metrics)
            job = await queue.enqueue("python")
            assert not await queue.complete(job.id, 10)
            await queue.dequeue()
            assert await queue.complete(job.id, 125)
            done = await queue.get(job.id)
            assert done.status is JobStatus.SUCCESS
            assert done.duration_ms == 125
            assert not await queue.complete(job.id, 10)
            assert metrics.get("jobs_succeeded") == 1

    asyncio.run(_run())


def test_fail_spends_retry_budget(db_url, clock):
    async def _run():
        async with open_database(db_url) as engine:
            queue = JobQueue(engine, clock=clock)
            job = await queue.enqueue("python")
            statuses = []
            for _ in range(3):
                [claimed] = await queue.dequeue()
                statuses.append(await queue.fail(claimed.id, 3, backoff=NO_DELAY))
            assert statuses == [JobStatus.QUEUED, JobStatus.QUEUED, JobStatus.FAILED]
            failed = await queue.get(job.id)
            assert failed.retries == 3
            assert failed.next_retry_at is None
            assert await queue.dequeue() == []

    asyncio.run(_run())


def test_fail_hides_job_until_backoff_elapses(db_url, clock):
    async def _run():
        async with open_database(db_url) as engine:
            queue = JobQueue(engine, clock=clock)
            job = await queue.enqueue("python")
            await queue.dequeue()
            status = await queue.fail(job.id, 5, backoff=lambda retries: timedelta(minutes=10 * retries))
            assert status is JobStatus.QUEUED
            retried = await queue.get(job.id)
            assert retried.retries == 1
            assert retried.next_retry_at == clock.now + timedelta(minutes=10)
            assert retried.visible_at == retried.next_retry_at

            clock.advance(minutes=9)
            assert await queue.dequeue() == []
            clock.advance(minutes=1)
            [claimed] = await queue.dequeue()
            assert claimed.id == job.id

    asyncio.run(_run())


def test_permanent_failure_skips_budget(db_url, clock):
    async def _run():
        async with open_database(db_url) as engine:
            queue = JobQueue(engine, clock=clock)
            job = await queue.enqueue("python")
            await queue.dequeue()
            assert await queue.fail(job.id, 5, permanent=True) is JobStatus.FAILED
            assert (await queue.get(job.id)).retries == 1

    asyncio.run(_run())


def test_fail_ignores_jobs_not_crawling(db_url, clock):
    async def _run():
        async with open_database(db_url) as engine:
            queue = JobQueue(engine, clock=clock)
            job = await queue.enqueue("python")
            assert await queue.fail(job.id, 3) is None
            assert await queue.fail(9999, 3) is None
            assert (await queue.get(job.id)).retries == 0

    asyncio.run(_run())


def test_reset_incomplete_requeues_orphans(db_url, clock):
    async def _run():
        async with open_database(db_url) as engine:
            queue = JobQueue(engine, clock=clock)
            job = await queue.enqueue("python")
            await queue.dequeue()

            clock.advance(minutes=5)
            assert await queue.reset_incomplete(timedelta(minutes=15)) == 0

            clock.advance(minutes=15)
            assert await queue.reset_incomplete(timedelta(minutes=15)) == 1
            reset = await queue.get(job.id)
            assert reset.status is JobStatus.QUEUED
            assert reset.visible_at == clock.now
            assert await queue.reset_incomplete(timedelta(minutes=15)) == 0

            # a worker finishing after the reset cannot complete the job
            assert not await queue.complete(job.id, 10)

    asyncio.run(_run())


def test_requeue_stale_refreshes_old_successes(db_url, clock):
    async def _run():
        async with open_database(db_url) as engine:
            queue = JobQueue(engine, clock=clock)
            old = await queue.enqueue("old")
            await queue.dequeue()
            await queue.complete(old.id, 10)

            clock.advance(days=29)
            fresh = await queue.enqueue("fresh")
            await queue.dequeue()
            await queue.complete(fresh.id, 10)

            clock.advance(days=2)
            assert await queue.requeue_stale(timedelta(days=30)) == 1
            requeued = await queue.get(old.id)
            assert requeued.status is JobStatus.QUEUED
            assert requeued.enqueued_by == STALE_REQUEUE_SOURCE
            assert requeued.retries == 0
            assert (await queue.get(fresh.id)).status is JobStatus.SUCCESS
            assert await queue.requeue_stale(timedelta(days=30)) == 0

    asyncio.run(_run())


def test_age_starved_boosts_waiting_jobs(db_url, clock):
    async def _run():
        async with open_database(db_url) as engine:
            queue = JobQueue(engine, clock=clock)
            await queue.enqueue("waiting", priority=0)
            await queue.enqueue("nearly-max", priority=98)
            clock.advance(minutes=90)
            await queue.enqueue("new", priority=0)

            assert await queue.age_starved(timedelta(hours=1), 5) == 2
            assert (await queue.get_by_entity("waiting")).priority == 5
            assert (await queue.get_by_entity("nearly-max")).priority == 100
            assert (await queue.get_by_entity("new")).priority == 0
            assert await queue.age_starved(timedelta(hours=1), 0) == 0

    asyncio.run(_run())


def test_bump_priority_and_counts(db_url, clock):
    async def _run():
        async with open_database(db_url) as engine:
            queue = JobQueue(engine, clock=clock)
            await queue.enqueue("a")
            await queue.enqueue("b")
            done = await queue.enqueue("c", priority=9)
            assert await queue.bump_priority("b", 4)
            assert not await queue.bump_priority("missing", 4)

            [claimed] = await queue.dequeue()
            assert claimed.id == done.id
            await queue.complete(claimed.id, 1)
            assert not await queue.bump_priority("c", 1)

            assert [job.entity_id for job in await queue.active_jobs()] == ["b", "a"]
            assert await queue.counts() == {"queued": 2, "crawling": 0, "success": 1, "failed": 0}
            assert [job.entity_id for job in await queue.list_jobs(status=JobStatus.SUCCESS)] == ["c"]

    asyncio.run(_run())


def test_mixed_concurrent_traffic_keeps_one_row_per_entity(db_url):
    async def _run():
        async with open_database(db_url) as engine:
            queue = JobQueue(engine)
            rng = random.Random(7)
            entities = [f"entity-{index}" for index in range(5)]

            async def producer(seed):
                local = random.Random(seed)
                for _ in range(15):
                    await queue.enqueue(local.choice(entities), priority=local.randint(0, 9))

            async def consumer():
                for _ in range(15):
                    for job in await queue.dequeue(limit=2):
                        if rng.random() < 0.5:
                            await queue.complete(job.id, 1)
                        else:
                            await queue.fail(job.id, 2, backoff=NO_DELAY)

            await asyncio.gather(*(producer(seed) for seed in range(3)), *(consumer() for _ in range(3)))
            rows = await queue.list_jobs(limit=100)
            assert len(rows) == len({job.entity_id for job in rows})
            assert set(job.entity_id for job in rows) <= set(entities)
            active = [job for job in rows if job.status.value in ("queued", "crawling")]
            assert len(active) == len({job.entity_id for job in active})

    asyncio.run(_run())
