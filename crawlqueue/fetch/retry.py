"""Bounded retries around a single logical HTTP call.

The engine retries transport failures, ``429`` and ``5xx`` responses. A
``Retry-After`` header replaces the local backoff; otherwise the wait grows
linearly with the attempt number plus a small random jitter, which keeps the
worst case bounded by ``max_attempts``.

Cancellation of the calling task, or an enclosing ``asyncio.timeout``,
interrupts the call at any await point including the backoff sleep.
"""
from __future__ import annotations

import asyncio
import email.utils
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

import httpx

from crawlqueue.fetch.session import CrawlSession
from crawlqueue.observability.metrics import MetricsRegistry
from crawlqueue.observability.tracing import log_fetch_result, log_retry
from crawlqueue.settings import CrawlerSettings

RequestFactory = Callable[[], httpx.Request]
PreAttempt = Callable[[int], Awaitable[None]]
Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.3
    max_jitter: float = 0.2
    log_retries: bool = False

    @classmethod
    def from_settings(cls, settings: CrawlerSettings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.http_max_retries,
            base_delay=settings.http_retry_base.total_seconds(),
            max_jitter=settings.http_retry_jitter_ms / 1000,
            log_retries=settings.log_http_retries,
        )

    def backoff(self, attempt: int) -> float:
        return self.base_delay * attempt + random.uniform(0, self.max_jitter)


@dataclass(frozen=True)
class AttemptOutcome:
    """What happened on one attempt and how long the engine waits before the next."""

    attempt: int
    method: str
    url: str
    status: Optional[int] = None
    error: Optional[BaseException] = None
    wait: float = 0.0


Observer = Callable[[AttemptOutcome], None]


def parse_retry_after(value: Optional[str], *, now: Optional[datetime] = None) -> Optional[float]:
    """Seconds to wait for a ``Retry-After`` value (delta-seconds or HTTP date)."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(int(value)))
    except ValueError:
        pass
    try:
        when = email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    current = now or datetime.now(timezone.utc)
    return max(0.0, (when - current).total_seconds())


def _should_retry_status(status: int) -> bool:
    return status == httpx.codes.TOO_MANY_REQUESTS or status >= 500


async def send_with_retry(
    session: CrawlSession,
    build_request: RequestFactory,
    *,
    policy: RetryPolicy = RetryPolicy(),
    pre_attempt: Optional[PreAttempt] = None,
    observer: Optional[Observer] = None,
    metrics: Optional[MetricsRegistry] = None,
    sleep: Sleep = asyncio.sleep,
) -> httpx.Response:
    """Send the request built by ``build_request`` with bounded retries.

    A response is always returned once one is received, even a final ``429``
    or ``5xx``; only transport failures on the last attempt raise.
    """
    metrics = metrics or MetricsRegistry()
    max_attempts = max(1, policy.max_attempts)

    for attempt in range(1, max_attempts + 1):
        if pre_attempt is not None:
            await pre_attempt(attempt)
        request = build_request()
        method, url = request.method, str(request.url)
        last_attempt = attempt == max_attempts

        try:
            response = await session.send(request)
        except httpx.TransportError as exc:
            metrics.incr("http_requests_error")
            if last_attempt:
                if observer is not None:
                    observer(AttemptOutcome(attempt, method, url, error=exc))
                if policy.log_retries:
                    log_retry(attempt, method=method, url=url, reason=f"{exc!r} (no more retries)", wait_ms=0)
                raise
            metrics.incr("http_retries")
            wait = policy.backoff(attempt)
            if observer is not None:
                observer(AttemptOutcome(attempt, method, url, error=exc, wait=wait))
            if policy.log_retries:
                log_retry(attempt, method=method, url=url, reason=repr(exc), wait_ms=int(wait * 1000))
            await sleep(wait)
            continue

        status = response.status_code
        if not _should_retry_status(status):
            metrics.incr("http_requests_success")
            if observer is not None:
                observer(AttemptOutcome(attempt, method, url, status=status))
            if policy.log_retries and attempt > 1:
                log_fetch_result(attempt=attempt, method=method, url=url, status=status, outcome="success")
            return response

        metrics.incr("http_requests_retry")
        if last_attempt:
            if observer is not None:
                observer(AttemptOutcome(attempt, method, url, status=status))
            if policy.log_retries:
                log_fetch_result(attempt=attempt, method=method, url=url, status=status, outcome="giving_up")
            return response

        retry_after = parse_retry_after(response.headers.get("Retry-After"))
        await response.aclose()
        if retry_after is not None:
            wait = retry_after
            metrics.incr("retry_after_waits")
            metrics.incr("retry_after_wait_ms", int(wait * 1000))
            reason = f"status={status} retry_after={response.headers.get('Retry-After')}"
        else:
            wait = policy.backoff(attempt)
            metrics.incr("http_retries")
            reason = f"status={status}"
        if observer is not None:
            observer(AttemptOutcome(attempt, method, url, status=status, wait=wait))
        if policy.log_retries:
            log_retry(attempt, method=method, url=url, reason=reason, wait_ms=int(wait * 1000))
        await sleep(wait)

    raise RuntimeError("exhausted retries")  # pragma: no cover - the loop always returns or raises
