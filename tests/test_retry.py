import asyncio
import time
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime

import httpx
import pytest

from crawlqueue.fetch.retry import AttemptOutcome, RetryPolicy, parse_retry_after, send_with_retry
from crawlqueue.fetch.session import CrawlSession
from crawlqueue.observability.metrics import MetricsRegistry

URL = "https://api.example.com/r/python"

FAST = RetryPolicy(max_attempts=3, base_delay=0.01, max_jitter=0.0)


class ScriptedSession(CrawlSession):
    """Replays a fixed list of responses or transport errors, one per send."""

    def __init__(self, script):
        super().__init__(client=None)
        self.script = list(script)
        self.requests = []

    def build_request(self, method, url, **kwargs):
        return httpx.Request(method, url, **kwargs)

    async def send(self, request):  # type: ignore[override]
        self.requests.append(request)
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _factory(session):
    return lambda: session.build_request("GET", URL)


def test_retry_after_is_honoured():
    async def _run():
        session = ScriptedSession([httpx.Response(429, headers={"Retry-After": "1"}), httpx.Response(200)])
        outcomes = []
        start = time.monotonic()
        response = await send_with_retry(session, _factory(session), policy=FAST, observer=outcomes.append)
        elapsed = time.monotonic() - start
        assert response.status_code == 200
        assert elapsed >= 0.9
        assert [outcome.status for outcome in outcomes] == [429, 200]
        assert outcomes[0].wait == 1.0

    asyncio.run(_run())


def test_server_errors_retried_until_success():
    async def _run():
        session = ScriptedSession([httpx.Response(500), httpx.Response(500), httpx.Response(200)])
        metrics = MetricsRegistry()
        outcomes = []
        response = await send_with_retry(
            session,
            _factory(session),
            policy=FAST,
            observer=outcomes.append,
            metrics=metrics,
        )
        assert response.status_code == 200
        assert len(session.requests) == 3
        assert [outcome.attempt for outcome in outcomes] == [1, 2, 3]
        assert metrics.get("http_requests_retry") == 2
        assert metrics.get("http_requests_success") == 1

    asyncio.run(_run())


def test_final_retryable_response_is_returned():
    async def _run():
        session = ScriptedSession([httpx.Response(503)] * 3)
        response = await send_with_retry(session, _factory(session), policy=FAST)
        assert response.status_code == 503
        assert len(session.requests) == 3

    asyncio.run(_run())


def test_client_errors_are_not_retried():
    async def _run():
        session = ScriptedSession([httpx.Response(404), httpx.Response(200)])
        response = await send_with_retry(session, _factory(session), policy=FAST)
        assert response.status_code == 404
        assert len(session.requests) == 1

    asyncio.run(_run())


def test_transport_error_then_success():
    async def _run():
        session = ScriptedSession([httpx.ConnectError("refused"), httpx.Response(200)])
        outcomes = []
        response = await send_with_retry(session, _factory(session), policy=FAST, observer=outcomes.append)
        assert response.status_code == 200
        assert isinstance(outcomes[0].error, httpx.ConnectError)
        assert outcomes[0].status is None
        assert outcomes[1].status == 200

    asyncio.run(_run())


def test_transport_error_exhaustion_raises():
    async def _run():
        session = ScriptedSession([httpx.ReadTimeout("slow")] * 3)
        outcomes = []
        with pytest.raises(httpx.ReadTimeout):
            await send_with_retry(session, _factory(session), policy=FAST, observer=outcomes.append)
        assert len(outcomes) == 3
        assert outcomes[-1].wait == 0.0

    asyncio.run(_run())


def test_zero_attempts_clamped_to_one():
    async def _run():
        session = ScriptedSession([httpx.Response(500), httpx.Response(200)])
        policy = RetryPolicy(max_attempts=0, base_delay=0.0, max_jitter=0.0)
        response = await send_with_retry(session, _factory(session), policy=policy)
        assert response.status_code == 500
        assert len(session.requests) == 1

    asyncio.run(_run())


def test_request_rebuilt_for_every_attempt():
    async def _run():
        session = ScriptedSession([httpx.Response(401), httpx.Response(500), httpx.Response(200)])
        tokens = iter(["t1", "t2", "t3"])

        def build():
            return session.build_request("GET", URL, headers={"Authorization": f"Bearer {next(tokens)}"})

        await send_with_retry(session, build, policy=FAST)
        # 401 is not a retry status for the transport layer
        assert [request.headers["Authorization"] for request in session.requests] == ["Bearer t1"]

        session = ScriptedSession([httpx.Response(500), httpx.Response(502), httpx.Response(200)])
        tokens = iter(["t1", "t2", "t3"])
        await send_with_retry(session, build, policy=FAST)
        assert [request.headers["Authorization"] for request in session.requests] == [
            "Bearer t1",
            "Bearer t2",
            "Bearer t3",
        ]

    asyncio.run(_run())


def test_pre_attempt_runs_before_each_send():
    async def _run():
        session = ScriptedSession([httpx.Response(500), httpx.Response(200)])
        calls = []

        async def limiter(attempt):
            calls.append((attempt, len(session.requests)))

        await send_with_retry(session, _factory(session), policy=FAST, pre_attempt=limiter)
        assert calls == [(1, 0), (2, 1)]

    asyncio.run(_run())


def test_pre_attempt_error_aborts_without_sending():
    async def _run():
        session = ScriptedSession([httpx.Response(200)])

        async def limiter(attempt):
            raise RuntimeError("limiter closed")

        with pytest.raises(RuntimeError, match="limiter closed"):
            await send_with_retry(session, _factory(session), policy=FAST, pre_attempt=limiter)
        assert session.requests == []

    asyncio.run(_run())


def test_cancelled_before_start_makes_no_attempt():
    async def _run():
        session = ScriptedSession([httpx.Response(200)])
        task = asyncio.create_task(send_with_retry(session, _factory(session), policy=FAST))
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert session.requests == []

    asyncio.run(_run())


def test_timeout_interrupts_backoff_sleep():
    async def _run():
        session = ScriptedSession([httpx.Response(503, headers={"Retry-After": "30"}), httpx.Response(200)])
        start = time.monotonic()
        with pytest.raises(TimeoutError):
            async with asyncio.timeout(0.2):
                await send_with_retry(session, _factory(session), policy=FAST)
        assert time.monotonic() - start < 5
        assert len(session.requests) == 1

    asyncio.run(_run())


def test_backoff_grows_linearly_without_retry_after():
    async def _run():
        session = ScriptedSession([httpx.Response(500), httpx.Response(500), httpx.Response(200)])
        waits = []

        async def fake_sleep(seconds):
            waits.append(seconds)

        policy = RetryPolicy(max_attempts=3, base_delay=0.5, max_jitter=0.0)
        await send_with_retry(session, _factory(session), policy=policy, sleep=fake_sleep)
        assert waits == [0.5, 1.0]

    asyncio.run(_run())


def test_each_attempt_reports_one_outcome():
    async def _run():
        session = ScriptedSession(
            [httpx.ConnectError("refused"), httpx.Response(429, headers={"Retry-After": "0"}), httpx.Response(204)]
        )
        outcomes = []

        async def fake_sleep(seconds):
            return None

        await send_with_retry(session, _factory(session), policy=FAST, observer=outcomes.append, sleep=fake_sleep)
        assert all(isinstance(outcome, AttemptOutcome) for outcome in outcomes)
        assert [outcome.attempt for outcome in outcomes] == [1, 2, 3]
        assert outcomes[1].wait == 0.0
        assert outcomes[2].method == "GET"
        assert outcomes[2].url == URL

    asyncio.run(_run())


def test_parse_retry_after_values():
    now = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)
    assert parse_retry_after("5", now=now) == 5.0
    assert parse_retry_after("-3", now=now) == 0.0
    assert parse_retry_after(None, now=now) is None
    assert parse_retry_after("soon", now=now) is None
    future = format_datetime(now + timedelta(seconds=90), usegmt=True)
    assert parse_retry_after(future, now=now) == 90.0
    past = format_datetime(now - timedelta(minutes=5), usegmt=True)
    assert parse_retry_after(past, now=now) == 0.0
