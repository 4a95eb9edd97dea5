"""Definitions for crawl jobs, scheduled jobs and their lifecycle."""
from __future__ import annotations

import enum
import random
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional


def utcnow() -> datetime:
    """Return the current UTC time as a naive datetime, the form the store keeps."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class JobStatus(str, enum.Enum):
    """Lifecycle states of a crawl job."""

    QUEUED = "queued"
    CRAWLING = "crawling"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.SUCCESS, JobStatus.FAILED)


ACTIVE_STATUSES = (JobStatus.QUEUED.value, JobStatus.CRAWLING.value)
TERMINAL_STATUSES = (JobStatus.SUCCESS.value, JobStatus.FAILED.value)


class ConflictError(Exception):
    """A uniqueness constraint rejected the write because another writer got there first."""


@dataclass(frozen=True)
class CrawlJob:
    """Snapshot of a ``crawl_jobs`` row."""

    id: int
    entity_id: str
    status: JobStatus
    priority: int
    retries: int
    visible_at: datetime
    created_at: datetime
    updated_at: datetime
    last_attempt: Optional[datetime] = None
    duration_ms: Optional[int] = None
    enqueued_by: Optional[str] = None
    next_retry_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "CrawlJob":
        return cls(
            id=row["id"],
            entity_id=row["entity_id"],
            status=JobStatus(row["status"]),
            priority=row["priority"],
            retries=row["retries"],
            visible_at=row["visible_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_attempt=row["last_attempt"],
            duration_ms=row["duration_ms"],
            enqueued_by=row["enqueued_by"],
            next_retry_at=row["next_retry_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        for key, value in self.__dict__.items():
            if isinstance(value, datetime):
                value = value.isoformat()
            elif isinstance(value, JobStatus):
                value = value.value
            payload[key] = value
        return payload


@dataclass(frozen=True)
class ScheduledJob:
    """Snapshot of a ``scheduled_jobs`` row: a recurring crawl definition."""

    id: int
    name: str
    cron_expression: str
    enabled: bool
    next_run_at: datetime
    priority: int
    created_at: datetime
    updated_at: datetime
    entity_id: Optional[str] = None
    description: Optional[str] = None
    last_run_at: Optional[datetime] = None
    created_by: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "ScheduledJob":
        return cls(
            id=row["id"],
            name=row["name"],
            cron_expression=row["cron_expression"],
            enabled=bool(row["enabled"]),
            next_run_at=row["next_run_at"],
            priority=row["priority"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            entity_id=row["entity_id"],
            description=row["description"],
            last_run_at=row["last_run_at"],
            created_by=row["created_by"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            key: value.isoformat() if isinstance(value, datetime) else value
            for key, value in self.__dict__.items()
        }


def exponential_backoff(
    retries: int,
    *,
    base: timedelta = timedelta(minutes=1),
    cap: timedelta = timedelta(hours=24),
    jitter: float = 0.2,
) -> timedelta:
    """Delay before a failed job becomes visible again.

    ``base * 2**retries`` capped at ``cap``, plus up to ``jitter`` of the delay.
    """
    exponent = min(max(retries, 0), 32)
    delay = min(base * (2**exponent), cap)
    return delay + delay * (jitter * random.random())
