"""SQLAlchemy schema and async engine factory for the crawl store."""
from __future__ import annotations

import contextlib
from pathlib import Path
from typing import AsyncIterator

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    event,
)
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

metadata = MetaData()

crawl_jobs = Table(
    "crawl_jobs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("entity_id", String(255), nullable=False, unique=True),
    Column("status", String(16), nullable=False, default="queued"),
    Column("priority", Integer, nullable=False, default=0),
    Column("retries", Integer, nullable=False, default=0),
    Column("last_attempt", DateTime, nullable=True),
    Column("duration_ms", Integer, nullable=True),
    Column("enqueued_by", String(255), nullable=True),
    Column("visible_at", DateTime, nullable=False),
    Column("next_retry_at", DateTime, nullable=True),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
    CheckConstraint(
        "status IN ('queued', 'crawling', 'success', 'failed')",
        name="ck_crawl_jobs_status",
    ),
    Index("ix_crawl_jobs_claim", "status", "priority", "visible_at"),
)

scheduled_jobs = Table(
    "scheduled_jobs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(200), nullable=False, unique=True),
    Column("description", Text, nullable=True),
    Column("entity_id", String(255), nullable=True),
    Column("cron_expression", String(100), nullable=False),
    Column("enabled", Boolean, nullable=False, default=True),
    Column("last_run_at", DateTime, nullable=True),
    Column("next_run_at", DateTime, nullable=False),
    Column("priority", Integer, nullable=False, default=0),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
    Column("created_by", String(255), nullable=True),
    Index("ix_scheduled_jobs_due", "enabled", "next_run_at"),
)


def _install_sqlite_locking(engine: AsyncEngine) -> None:
    # pysqlite defers BEGIN until the first write; take the write lock up
    # front so claim transactions serialise instead of failing to upgrade.
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):  # type: ignore[no-untyped-def]
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):  # type: ignore[no-untyped-def]
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_engine(database_url: str, *, busy_timeout: float = 30.0) -> AsyncEngine:
    """Build an async engine; SQLite files get their parent directory created."""
    url = make_url(database_url)
    is_sqlite = url.get_backend_name() == "sqlite"
    connect_args = {}
    if is_sqlite:
        connect_args["timeout"] = busy_timeout
        if url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
    engine = create_async_engine(url, connect_args=connect_args)
    if is_sqlite:
        _install_sqlite_locking(engine)
    return engine


async def init_db(engine: AsyncEngine) -> None:
    """Create tables that do not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


@contextlib.asynccontextmanager
async def open_database(database_url: str) -> AsyncIterator[AsyncEngine]:
    """Yield an initialised engine for the duration of the context."""
    engine = create_engine(database_url)
    try:
        await init_db(engine)
        yield engine
    finally:
        await engine.dispose()
