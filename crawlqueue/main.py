"""Command-line entrypoints for the crawl queue service."""
from __future__ import annotations

import argparse
import asyncio
from pathlib import Path
from typing import Any, Coroutine, List, Optional, TypeVar

import orjson
from dotenv import find_dotenv, load_dotenv

try:
    import uvloop
except ImportError:  # pragma: no cover - uvloop optional on some platforms
    uvloop = None

from crawlqueue.fetch.fetcher import make_entity_handler
from crawlqueue.fetch.ratelimit import CrawlRateLimiter
from crawlqueue.fetch.retry import RetryPolicy
from crawlqueue.fetch.session import create_crawl_session
from crawlqueue.observability.log import configure_logging
from crawlqueue.observability.metrics import MetricsRegistry, record_duration
from crawlqueue.orchestrator.jobs import utcnow
from crawlqueue.orchestrator.queue import JobQueue
from crawlqueue.orchestrator.recovery import reset_incomplete_jobs, run_maintenance, run_maintenance_loop
from crawlqueue.orchestrator.schedule_loop import Scheduler
from crawlqueue.orchestrator.schedules import ScheduleStore
from crawlqueue.orchestrator.worker import CrawlWorker
from crawlqueue.settings import DEFAULT_SETTINGS_PATH, CrawlerSettings, load_settings
from crawlqueue.storage.database import open_database


T = TypeVar("T")


def _print_json(payload: Any) -> None:
    print(orjson.dumps(payload, option=orjson.OPT_INDENT_2).decode())


def _run(coro: Coroutine[Any, Any, T]) -> T:
    if uvloop is not None:
        return uvloop.run(coro)
    return asyncio.run(coro)


def build_arg_parser() -> argparse.ArgumentParser:
    """Create the CLI argument parser."""
    parser = argparse.ArgumentParser(prog="crawlqueue", description="Durable crawl queue and scheduler")
    parser.add_argument("--settings", type=Path, default=DEFAULT_SETTINGS_PATH, help="Path to settings TOML")
    sub = parser.add_subparsers(dest="command", required=True)

    crawl = sub.add_parser("crawl", help="Run crawl workers against the queue")
    crawl.add_argument("--concurrency", type=int, help="Number of concurrent workers")
    crawl.add_argument("--max-jobs", type=int, help="Stop each worker after this many jobs")
    crawl.add_argument("--drain", action="store_true", help="Exit once no job is claimable")
    crawl.add_argument("--metrics-out", type=Path, help="Write counters to this JSON file on exit")

    schedule = sub.add_parser("schedule", help="Run the scheduler loop")
    schedule.add_argument("--ticks", type=int, help="Number of passes to execute")
    schedule.add_argument("--interval", type=float, help="Seconds between passes")

    sub.add_parser("recover", help="Requeue jobs left crawling by a dead worker")

    maintain = sub.add_parser("maintain", help="Requeue stale entities and age starved jobs")
    maintain.add_argument("--loop", action="store_true", help="Keep running at the maintenance interval")
    maintain.add_argument("--ticks", type=int, help="Number of iterations when looping")

    enqueue = sub.add_parser("enqueue", help="Queue crawl jobs for entities")
    enqueue.add_argument("entities", nargs="+", help="Entity identifiers")
    enqueue.add_argument("--priority", type=int, default=0)
    enqueue.add_argument("--enqueued-by", default="cli")

    return parser


async def _drain(worker: CrawlWorker) -> int:
    handled = 0
    while True:
        processed = await worker.run_once()
        if not processed:
            return handled
        handled += processed


async def run_crawl(args: argparse.Namespace, settings: CrawlerSettings) -> dict:
    """Start workers after the startup recovery sweep and run until told to stop."""
    metrics = MetricsRegistry()
    concurrency = args.concurrency or settings.worker_concurrency
    async with open_database(settings.database_url) as engine:
        queue = JobQueue(engine, metrics=metrics)
        await reset_incomplete_jobs(queue, settings)
        limiter = CrawlRateLimiter(settings.crawler_rps, settings.crawler_burst_size, metrics=metrics)
        policy = RetryPolicy.from_settings(settings)
        with record_duration(metrics, "run_duration_ms"):
            async with create_crawl_session(
                user_agent=settings.user_agent,
                timeout=settings.http_timeout_seconds,
                max_connections=concurrency,
            ) as session:
                handler = make_entity_handler(
                    session=session,
                    base_url=settings.api_base_url,
                    policy=policy,
                    pre_attempt=limiter,
                    metrics=metrics,
                )
                workers = [
                    CrawlWorker(
                        queue,
                        handler,
                        max_retries=settings.job_max_retries,
                        batch_size=settings.worker_batch_size,
                        poll_interval=settings.worker_poll_interval_seconds,
                        metrics=metrics,
                        name=f"worker-{index}",
                    )
                    for index in range(concurrency)
                ]
                if args.drain:
                    results = await asyncio.gather(*(_drain(worker) for worker in workers))
                else:
                    results = await asyncio.gather(*(worker.run(max_jobs=args.max_jobs) for worker in workers))
        counts = await queue.counts()
    summary = {"handled": sum(results), "jobs": counts, "metrics": metrics.snapshot()}
    if args.metrics_out:
        metrics.export(path=args.metrics_out, run_id=utcnow().strftime("%Y%m%dT%H%M%S"))
    return summary


async def run_schedule(args: argparse.Namespace, settings: CrawlerSettings) -> None:
    async with open_database(settings.database_url) as engine:
        metrics = MetricsRegistry()
        scheduler = Scheduler(
            ScheduleStore(engine),
            JobQueue(engine, metrics=metrics),
            interval_seconds=args.interval or settings.scheduler_interval_seconds,
            metrics=metrics,
        )
        await scheduler.run(ticks=args.ticks)


async def run_recover(settings: CrawlerSettings) -> dict:
    async with open_database(settings.database_url) as engine:
        count = await reset_incomplete_jobs(JobQueue(engine), settings)
    return {"reset": count}


async def run_maintain(args: argparse.Namespace, settings: CrawlerSettings) -> Optional[dict]:
    async with open_database(settings.database_url) as engine:
        queue = JobQueue(engine)
        if args.loop:
            await run_maintenance_loop(queue, settings, ticks=args.ticks)
            return None
        report = await run_maintenance(queue, settings)
    return {"requeued_stale": report.requeued_stale, "aged": report.aged}


async def run_enqueue(args: argparse.Namespace, settings: CrawlerSettings) -> List[dict]:
    async with open_database(settings.database_url) as engine:
        queue = JobQueue(engine)
        jobs = [
            await queue.enqueue(entity, priority=args.priority, enqueued_by=args.enqueued_by)
            for entity in args.entities
        ]
    return [job.to_dict() for job in jobs]


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for the CLI."""
    load_dotenv(find_dotenv(usecwd=True))
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    configure_logging(Path("config/logging.yaml"))
    try:
        settings = load_settings(args.settings)
    except ValueError as exc:
        raise SystemExit(str(exc))

    if args.command == "crawl":
        _print_json(_run(run_crawl(args, settings)))
        return

    if args.command == "schedule":
        _run(run_schedule(args, settings))
        return

    if args.command == "recover":
        _print_json(_run(run_recover(settings)))
        return

    if args.command == "maintain":
        report = _run(run_maintain(args, settings))
        if report is not None:
            _print_json(report)
        return

    if args.command == "enqueue":
        _print_json(_run(run_enqueue(args, settings)))


if __name__ == "__main__":
    main()
