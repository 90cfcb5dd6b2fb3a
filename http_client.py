#!/usr/bin/env python3
"""
HTTP fetching with status-aware retries.

fetch_with_retry() wraps a single aiohttp GET in exponential backoff with
jitter. Responses are fully read inside the request context and handed back as
a FetchResult so callers never hold an open connection.
"""

from asyncio import TimeoutError, sleep
from dataclasses import dataclass, field
from random import choice
from time import monotonic
from typing import Awaitable, Callable, Dict, Optional

from aiohttp import ClientError, ClientSession, ClientTimeout

from config import config, get_logger
from telemetry import trace_span
from utils import RetryHelper

logger = get_logger("http")

NON_RETRYABLE_STATUSES = frozenset({400, 401, 403, 404, 405, 410, 422})
RETRYABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})
HTTP_NOT_MODIFIED = 304

BROWSER_USER_AGENTS = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/121.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_3) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.3 Safari/605.1.15",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:123.0) Gecko/20100101 Firefox/123.0",
)

FEED_ACCEPT = "application/rss+xml, application/xml;q=0.9, text/xml;q=0.8, */*;q=0.5"


def pick_user_agent() -> str:
    """Configured USER_AGENT, or a random modern browser string."""
    return config.USER_AGENT or choice(BROWSER_USER_AGENTS)


@dataclass
class FetchResult:
    """Outcome of fetch_with_retry.

    ``error`` is set whenever the caller should treat the fetch as failed; a
    304 is reported with ``error=None`` so the protocol cache can see it.
    """
    url: str
    status: Optional[int] = None
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    error: Optional[str] = None
    attempts: int = 0
    elapsed_ms: int = 0
    encoding: str = "utf-8"

    @property
    def ok(self) -> bool:
        return self.error is None and self.status is not None and 200 <= self.status < 300

    @property
    def not_modified(self) -> bool:
        return self.status == HTTP_NOT_MODIFIED

    def header(self, name: str) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None

    def text(self, encoding: Optional[str] = None) -> str:
        """Body decoded with the response charset unless one is given."""
        return self.body.decode(encoding or self.encoding, errors="replace")


@trace_span(
    "fetch_with_retry",
    tracer_name="http",
    attr_from_args=lambda session, url, *args, **kwargs: {"http.url": url},
)
async def fetch_with_retry(
    session: ClientSession,
    url: str,
    headers: Optional[Dict[str, str]] = None,
    timeout: Optional[float] = None,
    max_retries: Optional[int] = None,
    base_delay: Optional[float] = None,
    max_delay: Optional[float] = None,
    sleeper: Callable[[float], Awaitable[None]] = sleep,
) -> FetchResult:
    """GET a URL with retries.

    Args:
        session: shared aiohttp session
        url: target URL
        headers: request headers (a User-Agent is added if missing)
        timeout: per-attempt timeout in seconds (default HTTP_TIMEOUT)
        max_retries: retries after the first attempt (default MAX_RETRIES)
        base_delay / max_delay: backoff parameters in seconds
        sleeper: awaitable used for backoff waits, injectable for tests

    Non-retryable statuses return after one attempt. Retryable statuses and
    network errors back off exponentially, honouring Retry-After when the
    server sends one. Any other non-2xx status is returned as an error
    without retrying.
    """
    retry_helper = RetryHelper(
        max_retries=config.MAX_RETRIES if max_retries is None else max_retries,
        base_delay=config.RETRY_DELAY_BASE if base_delay is None else base_delay,
        max_delay=config.RETRY_MAX_DELAY if max_delay is None else max_delay,
    )
    request_headers = dict(headers or {})
    if not any(k.lower() == "user-agent" for k in request_headers):
        request_headers["User-Agent"] = pick_user_agent()
    client_timeout = ClientTimeout(total=timeout or config.HTTP_TIMEOUT)

    result = FetchResult(url=url)
    started = monotonic()

    for attempt in range(retry_helper.max_retries + 1):
        result.attempts = attempt + 1
        retry_after = None
        try:
            async with session.get(url, headers=request_headers, timeout=client_timeout) as response:
                result.status = response.status
                result.headers = {k: v for k, v in response.headers.items()}
                status = response.status

                if 200 <= status < 300:
                    result.body = await response.read()
                    result.encoding = response.get_encoding()
                    result.error = None
                    break
                if status == HTTP_NOT_MODIFIED:
                    result.error = None
                    break
                result.error = f"HTTP {status}"
                if status in NON_RETRYABLE_STATUSES:
                    logger.info(f"Non-retryable HTTP {status} for {url}")
                    break
                if status not in RETRYABLE_STATUSES:
                    logger.warning(f"Unexpected HTTP {status} for {url}; not retrying")
                    break
                retry_after = retry_helper.parse_retry_after(response.headers.get("Retry-After"))
        except TimeoutError:
            result.status = None
            result.error = f"Timed out after {client_timeout.total}s"
        except ClientError as e:
            result.status = None
            result.error = f"Network error: {e.__class__.__name__}: {e}"

        if attempt >= retry_helper.max_retries:
            logger.warning(f"Giving up on {url} after {result.attempts} attempts: {result.error}")
            break
        logger.warning(
            "Retry %d/%d for %s due to: %s",
            attempt + 1,
            retry_helper.max_retries,
            url,
            result.error,
        )
        await retry_helper.sleep_for_attempt(attempt, override=retry_after, sleeper=sleeper)

    result.elapsed_ms = int((monotonic() - started) * 1000)
    return result
