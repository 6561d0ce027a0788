import asyncio
import logging
from typing import Any

import httpx
import structlog
from tenacity import (
    RetryCallState,
    after_log,
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

log = structlog.get_logger()
# tenacity callbacks expect a stdlib logger
std_log = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = (408, 429, 500, 502, 503, 504)
MAX_RETRY_WAIT = 60.0

_backoff = wait_exponential(multiplier=1, min=2, max=MAX_RETRY_WAIT)


def should_retry_on_status(exception: BaseException) -> bool:
    """Throttling, server errors and network failures are transient; other errors are not."""
    if isinstance(exception, httpx.HTTPStatusError):
        return exception.response.status_code in RETRYABLE_STATUS_CODES
    return isinstance(exception, (httpx.TimeoutException, httpx.ConnectError))


def retry_after_seconds(response: httpx.Response) -> float | None:
    """Delay requested by a ``Retry-After`` header, if it holds a number of seconds."""
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        # HTTP-date form; fall back to exponential backoff
        return None


def wait_for_upstream(retry_state: RetryCallState) -> float:
    """Honour the server's ``Retry-After`` on 429/503, otherwise back off exponentially."""
    outcome = retry_state.outcome
    error = outcome.exception() if outcome is not None else None
    if isinstance(error, httpx.HTTPStatusError):
        delay = retry_after_seconds(error.response)
        if delay is not None:
            return min(delay, MAX_RETRY_WAIT)
    return _backoff(retry_state)


@retry(
    stop=stop_after_attempt(5),
    wait=wait_for_upstream,
    retry=retry_if_exception(should_retry_on_status),
    before_sleep=before_sleep_log(std_log, logging.WARNING),
    after=after_log(std_log, logging.INFO),
    reraise=True,
)
async def get_with_retry(
    url: str,
    params: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
    timeout: float = 30.0,
    client: httpx.AsyncClient | None = None,
) -> httpx.Response:
    """
    GET ``url``, retrying transient failures.

    Args:
        url: Endpoint to request
        params: Query parameters
        headers: Extra request headers
        timeout: Timeout in seconds for a client created here
        client: Shared client; a temporary one is opened when omitted

    Returns:
        The response. A non-retryable 4xx comes back as-is for the caller to judge.

    Raises:
        httpx.HTTPStatusError: Retryable status still failing after the last attempt
        httpx.TimeoutException: Timeouts on every attempt
    """
    own_client = client is None
    http = client or httpx.AsyncClient(http2=True, timeout=timeout)

    try:
        resp = await http.get(url, params=params, headers=headers)
        log.debug(
            "http_request_success",
            url=str(resp.request.url),
            status=resp.status_code,
            content_length=len(resp.content) if resp.content else 0,
        )
        resp.raise_for_status()
        return resp
    except httpx.HTTPStatusError as e:
        retryable = should_retry_on_status(e)
        log.error(
            "http_status_error",
            url=url,
            status=e.response.status_code,
            retryable=retryable,
            retry_after=e.response.headers.get("Retry-After"),
            response_text=e.response.text[:500] if e.response.text else None,
        )
        if retryable:
            raise
        return e.response
    except (httpx.TimeoutException, httpx.ConnectError) as e:
        log.error("http_network_error", url=url, error=str(e), error_type=type(e).__name__)
        raise
    finally:
        if own_client:
            await http.aclose()


def get_client(
    email: str | None = None,
    timeout: float = 30.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """
    Build the shared AsyncClient for upstream calls.

    Args:
        email: Contact address advertised in the User-Agent (polite pool)
        timeout: Request timeout in seconds
        transport: Transport override; tests pass an ``httpx.MockTransport``

    Returns:
        Configured httpx.AsyncClient, HTTP/2 unless a transport is injected
    """
    agent = "openalex_graph_pipeline/1.0"
    if email:
        agent += f" (mailto:{email})"

    # requests are sequential, a small pool is plenty
    limits = httpx.Limits(max_keepalive_connections=5, max_connections=10, keepalive_expiry=30.0)

    return httpx.AsyncClient(
        http2=transport is None,
        headers={"User-Agent": agent},
        timeout=timeout,
        limits=limits,
        follow_redirects=True,
        transport=transport,
    )


class RateLimiter:
    """Fixed-interval gate: at most ``calls_per_second`` acquisitions per second."""

    def __init__(self, calls_per_second: float = 10.0) -> None:
        if calls_per_second <= 0:
            raise ValueError("calls_per_second must be positive")
        self.min_interval = 1.0 / calls_per_second
        self.last_call = 0.0
        self._lock: asyncio.Lock | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    def _ensure_lock(self) -> asyncio.Lock:
        """
        Lazily create lock in the current event loop.

        Each CLI command runs its own asyncio.run(), so a limiter shared across
        commands must not keep a lock bound to a closed loop.
        """
        try:
            current_loop = asyncio.get_running_loop()
        except RuntimeError:
            current_loop = None

        if self._lock is None or self._loop is not current_loop:
            self._lock = asyncio.Lock()
            self._loop = current_loop
            log.debug("rate_limiter_lock_created", loop_id=id(current_loop))

        return self._lock

    async def acquire(self) -> None:
        """Wait until the next call slot opens."""
        async with self._ensure_lock():
            loop = asyncio.get_running_loop()
            wait_time = self.min_interval - (loop.time() - self.last_call)
            if wait_time > 0:
                log.debug("rate_limit_wait", wait_time=wait_time)
                await asyncio.sleep(wait_time)
            self.last_call = loop.time()
