"""Administrative CLI utilities."""
from __future__ import annotations

import argparse
import asyncio
from pathlib import Path
from typing import Any, List, Optional

import orjson
from dotenv import find_dotenv, load_dotenv

from crawlqueue.observability.log import configure_logging
from crawlqueue.orchestrator.cron import CronError, validate_cron
from crawlqueue.orchestrator.jobs import ConflictError, JobStatus
from crawlqueue.orchestrator.queue import JobQueue
from crawlqueue.orchestrator.schedules import ScheduleStore
from crawlqueue.settings import DEFAULT_SETTINGS_PATH, load_settings
from crawlqueue.storage.database import open_database


def _emit(payload: Any) -> None:
    print(orjson.dumps(payload, option=orjson.OPT_INDENT_2).decode())


def _database_url(args: argparse.Namespace) -> str:
    if args.database_url:
        return args.database_url
    return load_settings(Path(args.settings)).database_url


async def _status(database_url: str) -> dict:
    async with open_database(database_url) as engine:
        counts = await JobQueue(engine).counts()
        schedules = await ScheduleStore(engine).list(limit=1000)
    return {
        "jobs": counts,
        "schedules": {
            "total": len(schedules),
            "enabled": sum(1 for item in schedules if item.enabled),
        },
    }


def cmd_status(args: argparse.Namespace) -> None:
    _emit(asyncio.run(_status(_database_url(args))))


async def _queue(database_url: str) -> List[dict]:
    async with open_database(database_url) as engine:
        jobs = await JobQueue(engine).active_jobs()
    return [job.to_dict() for job in jobs]


def cmd_queue(args: argparse.Namespace) -> None:
    _emit(asyncio.run(_queue(_database_url(args))))


async def _jobs(database_url: str, status: Optional[str], limit: int, offset: int) -> List[dict]:
    async with open_database(database_url) as engine:
        jobs = await JobQueue(engine).list_jobs(
            status=JobStatus(status) if status else None,
            limit=limit,
            offset=offset,
        )
    return [job.to_dict() for job in jobs]


def cmd_jobs(args: argparse.Namespace) -> None:
    _emit(asyncio.run(_jobs(_database_url(args), args.status, args.limit, args.offset)))


async def _schedules(args: argparse.Namespace) -> Any:
    async with open_database(_database_url(args)) as engine:
        store = ScheduleStore(engine)
        if args.action == "list":
            return [item.to_dict() for item in await store.list(limit=args.limit)]
        if args.action == "add":
            created = await store.create(
                args.name,
                args.cron,
                entity_id=args.entity_id,
                priority=args.priority,
                enabled=not args.disabled,
                description=args.description,
                created_by=args.created_by,
            )
            return created.to_dict()
        if args.action in ("enable", "disable"):
            changed = await store.set_enabled(args.id, args.action == "enable")
            return {"id": args.id, "updated": changed}
        if args.action == "delete":
            return {"id": args.id, "deleted": await store.delete(args.id)}
    raise ValueError(f"unknown schedules action: {args.action}")


def cmd_schedules(args: argparse.Namespace) -> None:
    try:
        _emit(asyncio.run(_schedules(args)))
    except (CronError, ConflictError) as exc:
        _emit({"error": str(exc)})
        raise SystemExit(1)


def cmd_validate_cron(args: argparse.Namespace) -> None:
    try:
        validate_cron(args.expression)
    except CronError as exc:
        _emit({"expression": args.expression, "valid": False, "error": str(exc)})
        raise SystemExit(1)
    _emit({"expression": args.expression, "valid": True})


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="crawlqueue-admin", description="Administration commands")
    parser.add_argument("--settings", default=str(DEFAULT_SETTINGS_PATH))
    parser.add_argument("--database-url", help="Override the configured database URL")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="Show job counts per status")
    sub.add_parser("queue", help="List queued and crawling jobs in dequeue order")

    jobs = sub.add_parser("jobs", help="List crawl jobs")
    jobs.add_argument("--status", choices=[status.value for status in JobStatus])
    jobs.add_argument("--limit", type=int, default=50)
    jobs.add_argument("--offset", type=int, default=0)

    schedules = sub.add_parser("schedules", help="Manage scheduled jobs")
    actions = schedules.add_subparsers(dest="action", required=True)
    listing = actions.add_parser("list")
    listing.add_argument("--limit", type=int, default=100)
    add = actions.add_parser("add")
    add.add_argument("--name", required=True)
    add.add_argument("--cron", required=True, help="@hourly, @daily, @every 6h, ...")
    add.add_argument("--entity-id")
    add.add_argument("--priority", type=int, default=0)
    add.add_argument("--description")
    add.add_argument("--created-by", default="admin-cli")
    add.add_argument("--disabled", action="store_true")
    for action in ("enable", "disable", "delete"):
        actions.add_parser(action).add_argument("id", type=int)

    validate = sub.add_parser("validate-cron", help="Check a cron expression")
    validate.add_argument("expression")

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    load_dotenv(find_dotenv(usecwd=True))
    configure_logging(Path("config/logging.yaml"))
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "status":
        cmd_status(args)
        return
    if args.command == "queue":
        cmd_queue(args)
        return
    if args.command == "jobs":
        cmd_jobs(args)
        return
    if args.command == "schedules":
        cmd_schedules(args)
        return
    if args.command == "validate-cron":
        cmd_validate_cron(args)
        return


if __name__ == "__main__":
    main()
