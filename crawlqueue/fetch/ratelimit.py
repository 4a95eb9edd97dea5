"""Request pacing shared by every outbound request of a process."""
from __future__ import annotations

import asyncio
from typing import Optional

from pyrate_limiter import Duration, Limiter, Rate
from pyrate_limiter.buckets import InMemoryBucket

from crawlqueue.observability.metrics import MetricsRegistry

_MAX_POLL_SECONDS = 0.05


def _rate(rate: float, burst: int) -> Rate:
    # ``burst`` permits per ``burst / rate`` seconds keeps the sustained rate at ``rate``.
    interval_ms = max(1, round(int(Duration.SECOND) * burst / rate))
    return Rate(burst, interval_ms)


class CrawlRateLimiter:
    """Allows ``rate`` requests per second with bursts of up to ``burst``.

    Permits are accounted by a pyrate-limiter in-memory bucket in fail-fast
    mode; waiting happens on the event loop so the caller stays cancellable.
    Instances are pre-attempt hooks: ``await limiter(attempt)`` blocks until a
    permit is available.
    """

    def __init__(
        self,
        rate: float,
        burst: int = 1,
        *,
        name: str = "crawler",
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        if rate <= 0:
            raise ValueError("rate must be positive")
        self._name = name
        self._bucket = InMemoryBucket([_rate(rate, max(1, burst))])
        self._limiter = Limiter(self._bucket, raise_when_fail=False, buffer_ms=0)
        self._poll = min(1.0 / rate, _MAX_POLL_SECONDS)
        self._metrics = metrics or MetricsRegistry()

    async def wait(self) -> None:
        """Take one permit, sleeping until it becomes available."""
        waited = False
        while not self._limiter.try_acquire(self._name):
            if not waited:
                self._metrics.incr("rate_limit_waits")
                waited = True
            await asyncio.sleep(self._poll)

    async def __call__(self, attempt: int) -> None:
        await self.wait()
