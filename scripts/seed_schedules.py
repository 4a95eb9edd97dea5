#!/usr/bin/env python
"""Populate the schedule table with built-in demo definitions."""
from __future__ import annotations

import argparse
import asyncio
from pathlib import Path
from typing import List

from dotenv import load_dotenv

from crawlqueue.orchestrator.jobs import ConflictError, ScheduledJob
from crawlqueue.orchestrator.schedules import ScheduleStore
from crawlqueue.settings import DEFAULT_SETTINGS_PATH, load_settings
from crawlqueue.storage.database import open_database

DEMO_SCHEDULES = [
    {
        "name": "refresh-askreddit",
        "entity_id": "AskReddit",
        "cron_expression": "@daily",
        "priority": 10,
        "description": "Daily refresh of a high-traffic community",
    },
    {
        "name": "refresh-python",
        "entity_id": "Python",
        "cron_expression": "@every 12h",
        "priority": 5,
        "description": "Twice-daily refresh",
    },
    {
        "name": "weekly-sweep",
        "entity_id": "datascience",
        "cron_expression": "@weekly",
        "priority": 0,
        "description": "Low priority weekly crawl",
    },
]


async def seed_schedules(store: ScheduleStore) -> List[ScheduledJob]:
    """Create the demo definitions that do not exist yet."""
    created: List[ScheduledJob] = []
    for row in DEMO_SCHEDULES:
        try:
            created.append(
                await store.create(
                    row["name"],
                    row["cron_expression"],
                    entity_id=row["entity_id"],
                    priority=row["priority"],
                    description=row["description"],
                    created_by="seed",
                )
            )
        except ConflictError:
            continue
    return created


async def _seed(database_url: str) -> int:
    async with open_database(database_url) as engine:
        created = await seed_schedules(ScheduleStore(engine))
    return len(created)


def main() -> None:
    load_dotenv()
    parser = argparse.ArgumentParser(description="Seed the schedule table with demo definitions")
    parser.add_argument("--settings", type=Path, default=DEFAULT_SETTINGS_PATH)
    args = parser.parse_args()
    settings = load_settings(args.settings)
    count = asyncio.run(_seed(settings.database_url))
    print(f"created {count} scheduled jobs")


if __name__ == "__main__":
    main()
