"""Persistence for recurring crawl definitions (``scheduled_jobs``)."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import structlog
from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine

from crawlqueue.orchestrator.cron import parse_cron, validate_cron
from crawlqueue.orchestrator.jobs import ConflictError, ScheduledJob, utcnow
from crawlqueue.storage.database import scheduled_jobs

LOGGER = structlog.get_logger(__name__)

_UNSET: Any = object()


class ScheduleStore:
    """CRUD access to scheduled jobs plus the bookkeeping the scheduler needs."""

    def __init__(self, engine: AsyncEngine, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._engine = engine
        self._clock = clock

    async def create(
        self,
        name: str,
        cron_expression: str,
        *,
        entity_id: Optional[str] = None,
        priority: int = 0,
        enabled: bool = True,
        description: Optional[str] = None,
        created_by: Optional[str] = None,
        next_run_at: Optional[datetime] = None,
    ) -> ScheduledJob:
        """Create a definition; the first run defaults to the next cron occurrence."""
        validate_cron(cron_expression)
        now = self._clock()
        first_run = next_run_at or parse_cron(cron_expression, now)
        async with self._engine.begin() as conn:
            try:
                result = await conn.execute(
                    insert(scheduled_jobs).values(
                        name=name,
                        description=description,
                        entity_id=entity_id,
                        cron_expression=cron_expression.strip(),
                        enabled=enabled,
                        next_run_at=first_run,
                        priority=priority,
                        created_at=now,
                        updated_at=now,
                        created_by=created_by,
                    )
                )
            except IntegrityError as exc:
                raise ConflictError(f"scheduled job {name!r} already exists") from exc
            row = (
                await conn.execute(
                    select(scheduled_jobs).where(scheduled_jobs.c.id == result.inserted_primary_key[0])
                )
            ).mappings().one()
        LOGGER.info("schedule_created", name=name, cron=cron_expression, next_run_at=first_run.isoformat())
        return ScheduledJob.from_row(row)

    async def get(self, job_id: int) -> Optional[ScheduledJob]:
        async with self._engine.connect() as conn:
            row = (
                await conn.execute(select(scheduled_jobs).where(scheduled_jobs.c.id == job_id))
            ).mappings().first()
        return ScheduledJob.from_row(row) if row is not None else None

    async def get_by_name(self, name: str) -> Optional[ScheduledJob]:
        async with self._engine.connect() as conn:
            row = (
                await conn.execute(select(scheduled_jobs).where(scheduled_jobs.c.name == name))
            ).mappings().first()
        return ScheduledJob.from_row(row) if row is not None else None

    async def list(self, *, limit: int = 100, offset: int = 0) -> List[ScheduledJob]:
        query = (
            select(scheduled_jobs)
            .order_by(scheduled_jobs.c.next_run_at.asc(), scheduled_jobs.c.id.asc())
            .limit(limit)
            .offset(offset)
        )
        async with self._engine.connect() as conn:
            rows = (await conn.execute(query)).mappings().all()
        return [ScheduledJob.from_row(row) for row in rows]

    async def list_due(self, now: datetime) -> List[ScheduledJob]:
        """Enabled definitions whose next run is not in the future."""
        query = (
            select(scheduled_jobs)
            .where(scheduled_jobs.c.enabled.is_(True), scheduled_jobs.c.next_run_at <= now)
            .order_by(scheduled_jobs.c.priority.desc(), scheduled_jobs.c.next_run_at.asc())
        )
        async with self._engine.connect() as conn:
            rows = (await conn.execute(query)).mappings().all()
        return [ScheduledJob.from_row(row) for row in rows]

    async def update(
        self,
        job_id: int,
        *,
        name: Optional[str] = None,
        description: Any = _UNSET,
        entity_id: Any = _UNSET,
        cron_expression: Optional[str] = None,
        enabled: Optional[bool] = None,
        priority: Optional[int] = None,
        next_run_at: Optional[datetime] = None,
    ) -> Optional[ScheduledJob]:
        """Apply the supplied changes; a new expression reschedules the next run."""
        now = self._clock()
        values: Dict[str, Any] = {"updated_at": now}
        if name is not None:
            values["name"] = name
        if description is not _UNSET:
            values["description"] = description
        if entity_id is not _UNSET:
            values["entity_id"] = entity_id
        if enabled is not None:
            values["enabled"] = enabled
        if priority is not None:
            values["priority"] = priority
        if cron_expression is not None:
            validate_cron(cron_expression)
            values["cron_expression"] = cron_expression.strip()
            values["next_run_at"] = parse_cron(cron_expression, now)
        if next_run_at is not None:
            values["next_run_at"] = next_run_at
        async with self._engine.begin() as conn:
            try:
                result = await conn.execute(
                    update(scheduled_jobs).where(scheduled_jobs.c.id == job_id).values(**values)
                )
            except IntegrityError as exc:
                raise ConflictError(f"scheduled job {name!r} already exists") from exc
            if result.rowcount != 1:
                return None
            row = (
                await conn.execute(select(scheduled_jobs).where(scheduled_jobs.c.id == job_id))
            ).mappings().one()
        return ScheduledJob.from_row(row)

    async def set_enabled(self, job_id: int, enabled: bool) -> bool:
        async with self._engine.begin() as conn:
            result = await conn.execute(
                update(scheduled_jobs)
                .where(scheduled_jobs.c.id == job_id)
                .values(enabled=enabled, updated_at=self._clock())
            )
        return result.rowcount == 1

    async def delete(self, job_id: int) -> bool:
        async with self._engine.begin() as conn:
            result = await conn.execute(delete(scheduled_jobs).where(scheduled_jobs.c.id == job_id))
        return result.rowcount == 1

    async def record_run(self, job_id: int, *, last_run_at: datetime, next_run_at: datetime) -> bool:
        """Advance the clock of a definition after it fired."""
        async with self._engine.begin() as conn:
            result = await conn.execute(
                update(scheduled_jobs)
                .where(scheduled_jobs.c.id == job_id)
                .values(last_run_at=last_run_at, next_run_at=next_run_at, updated_at=self._clock())
            )
        return result.rowcount == 1
