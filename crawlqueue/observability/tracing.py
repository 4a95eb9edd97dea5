"""Tracing helpers for fetch attempts and job processing."""
from __future__ import annotations

import contextlib
import time
from typing import Iterator, Optional

import structlog
from structlog.contextvars import bind_contextvars, clear_contextvars


def _logger() -> structlog.stdlib.BoundLogger:
    return structlog.get_logger("crawlqueue.trace")


def set_context(*, job_id: int, entity_id: str, worker: Optional[str] = None) -> None:
    bind_contextvars(job_id=job_id, entity_id=entity_id, worker=worker)
    _logger().debug("trace_context", job_id=job_id, entity_id=entity_id)


def clear_context() -> None:
    clear_contextvars()


@contextlib.contextmanager
def span(*, name: str, url: Optional[str] = None) -> Iterator[None]:
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        _logger().info("trace_span", span=name, url=url, elapsed_ms=elapsed_ms)


def log_retry(attempt: int, *, method: str, url: str, reason: str, wait_ms: int) -> None:
    _logger().warning(
        "fetch_retry",
        attempt=attempt,
        method=method,
        url=url,
        reason=reason,
        wait_ms=wait_ms,
    )


def log_fetch_result(*, attempt: int, method: str, url: str, status: int, outcome: str) -> None:
    _logger().info(
        "fetch_result",
        attempt=attempt,
        method=method,
        url=url,
        status=status,
        outcome=outcome,
    )
