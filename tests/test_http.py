"""RateLimiter pacing and event-loop handling, plus retry classification."""

import asyncio
import time

import httpx
import pytest

from openalex_graph_pipeline.utils.http import (
    RateLimiter,
    get_client,
    get_with_retry,
    retry_after_seconds,
    should_retry_on_status,
)


async def test_rate_limiter_spaces_calls() -> None:
    limiter = RateLimiter(calls_per_second=5.0)  # 0.2s between calls

    start = time.monotonic()
    for _ in range(3):
        await limiter.acquire()
    elapsed = time.monotonic() - start

    assert elapsed >= 0.39, f"Rate limiting too fast: {elapsed}s"
    assert elapsed < 0.8, f"Rate limiting too slow: {elapsed}s"


async def test_rate_limiter_serializes_concurrent_tasks() -> None:
    limiter = RateLimiter(calls_per_second=10.0)
    stamps: list[float] = []

    async def call() -> None:
        await limiter.acquire()
        stamps.append(time.monotonic())

    start = time.monotonic()
    await asyncio.gather(*(call() for _ in range(4)))

    assert len(stamps) == 4
    assert time.monotonic() - start >= 0.29


def test_rate_limiter_survives_separate_asyncio_run_calls() -> None:
    """A module-level limiter is shared by CLI commands that each call asyncio.run()."""
    limiter = RateLimiter(calls_per_second=50.0)
    loops = []

    async def one_call() -> None:
        await limiter.acquire()
        loops.append(limiter._loop)

    asyncio.run(one_call())
    asyncio.run(one_call())

    assert len(loops) == 2
    assert loops[0] is not loops[1]
    assert limiter._lock is not None


async def test_rate_limiter_lock_is_created_lazily() -> None:
    limiter = RateLimiter(calls_per_second=100.0)
    assert limiter._lock is None

    await limiter.acquire()
    lock = limiter._lock
    assert isinstance(lock, asyncio.Lock)

    await limiter.acquire()
    assert limiter._lock is lock


@pytest.mark.parametrize("rate", [0, -1.0])
def test_rate_limiter_rejects_non_positive_rate(rate: float) -> None:
    with pytest.raises(ValueError):
        RateLimiter(calls_per_second=rate)


def _status_error(code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://api.test/works")
    return httpx.HTTPStatusError("boom", request=request, response=httpx.Response(code, request=request))


@pytest.mark.parametrize("code,expected", [(429, True), (503, True), (408, True), (400, False), (404, False)])
def test_should_retry_on_status(code: int, expected: bool) -> None:
    assert should_retry_on_status(_status_error(code)) is expected


def test_network_errors_are_retried() -> None:
    assert should_retry_on_status(httpx.ConnectError("refused"))
    assert not should_retry_on_status(ValueError("nope"))


async def test_client_error_is_returned_without_retry() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(404, json={"error": "not found"})

    async with get_client(email="dev@example.org", transport=httpx.MockTransport(handler)) as client:
        resp = await get_with_retry("https://api.test/works/W1", client=client)

    assert resp.status_code == 404
    assert calls == 1


async def test_client_sends_polite_user_agent() -> None:
    agents: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        agents.append(request.headers["User-Agent"])
        return httpx.Response(200, json={})

    async with get_client(email="dev@example.org", transport=httpx.MockTransport(handler)) as client:
        await get_with_retry("https://api.test/works", client=client)

    assert agents == ["openalex_graph_pipeline/1.0 (mailto:dev@example.org)"]


async def test_throttled_request_honours_retry_after() -> None:
    statuses = iter([429, 200])

    def handler(request: httpx.Request) -> httpx.Response:
        status = next(statuses)
        headers = {"Retry-After": "0"} if status == 429 else {}
        return httpx.Response(status, headers=headers, json={"results": []})

    async with get_client(transport=httpx.MockTransport(handler)) as client:
        resp = await get_with_retry("https://api.test/works", client=client)

    assert resp.status_code == 200


@pytest.mark.parametrize("value,expected", [("3", 3.0), ("-2", 0.0), ("Wed, 21 Oct 2015 07:28:00 GMT", None)])
def test_retry_after_seconds(value: str, expected: float | None) -> None:
    assert retry_after_seconds(httpx.Response(429, headers={"Retry-After": value})) == expected
    assert retry_after_seconds(httpx.Response(429)) is None
