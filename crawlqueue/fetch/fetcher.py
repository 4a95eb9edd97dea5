"""Per-entity fetch built on the retrying transport."""
from __future__ import annotations

from typing import Awaitable, Callable, Optional

import httpx
import structlog

from crawlqueue.fetch.errors import classify_error
from crawlqueue.fetch.retry import Observer, PreAttempt, RetryPolicy, send_with_retry
from crawlqueue.fetch.session import CrawlSession
from crawlqueue.observability.metrics import MetricsRegistry
from crawlqueue.observability.tracing import span
from crawlqueue.orchestrator.jobs import CrawlJob

LOGGER = structlog.get_logger(__name__)


def entity_url(base_url: str, entity_id: str) -> str:
    return f"{base_url.rstrip('/')}/{entity_id}"


async def fetch_entity(
    *,
    session: CrawlSession,
    url: str,
    policy: RetryPolicy,
    pre_attempt: Optional[PreAttempt] = None,
    observer: Optional[Observer] = None,
    metrics: Optional[MetricsRegistry] = None,
) -> httpx.Response:
    """GET ``url`` with retries; a non-success final response raises ``APIError``."""
    with span(name="fetch_entity", url=url):
        response = await send_with_retry(
            session,
            lambda: session.build_request("GET", url),
            policy=policy,
            pre_attempt=pre_attempt,
            observer=observer,
            metrics=metrics,
        )
    if response.is_success:
        return response
    error = classify_error(response)
    LOGGER.info("fetch_classified", url=url, status=error.status_code, type=error.type.value)
    raise error


def make_entity_handler(
    *,
    session: CrawlSession,
    base_url: str,
    policy: RetryPolicy,
    pre_attempt: Optional[PreAttempt] = None,
    metrics: Optional[MetricsRegistry] = None,
) -> Callable[[CrawlJob], Awaitable[None]]:
    """Worker handler that fetches ``<base_url>/<entity_id>`` for each job."""

    async def handler(job: CrawlJob) -> None:
        await fetch_entity(
            session=session,
            url=entity_url(base_url, job.entity_id),
            policy=policy,
            pre_attempt=pre_attempt,
            metrics=metrics,
        )

    return handler
