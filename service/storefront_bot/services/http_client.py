"""
Outbound HTTP helpers.

Every outbound call goes through fetch_with_retry: explicit timeout,
bounded attempts, exponential backoff on transient failures only.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from storefront_bot.config import get_settings
from storefront_bot.errors import UrlFetchError

logger = logging.getLogger(__name__)

BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "es-ES,es;q=0.9,fr;q=0.8,en;q=0.7",
}

# Tests swap this for tenacity.wait_none()
DEFAULT_WAIT = wait_exponential(multiplier=1, min=1, max=8)


def is_transient_http_error(exc: BaseException) -> bool:
    """Timeouts, connection errors and 5xx are worth another attempt."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return isinstance(exc, (httpx.TimeoutException, httpx.TransportError))


@asynccontextmanager
async def http_session(client: Optional[httpx.AsyncClient] = None) -> AsyncIterator[httpx.AsyncClient]:
    """Reuse the given client or open a short-lived one with browser headers."""
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(headers=BROWSER_HEADERS) as session:
        yield session


async def fetch_with_retry(
    client: httpx.AsyncClient,
    url: str,
    *,
    method: str = "GET",
    attempts: Optional[int] = None,
    timeout: Optional[float] = None,
    escalate_timeout: bool = False,
    follow_redirects: bool = True,
    wait=None,
) -> httpx.Response:
    """
    Fetch a URL, retrying transient failures.

    Args:
        client: httpx client to use
        url: Absolute URL
        attempts: Max attempts (defaults to settings.http_max_attempts)
        timeout: Seconds per attempt (defaults to settings.http_timeout_seconds)
        escalate_timeout: Multiply the timeout by the attempt number
        follow_redirects: Follow HTTP redirects

    Returns:
        The last response (4xx responses are returned, not raised)

    Raises:
        UrlFetchError: when every attempt failed
    """
    settings = get_settings()
    attempts = attempts or settings.http_max_attempts
    timeout = timeout or settings.http_timeout_seconds

    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait or DEFAULT_WAIT,
            retry=retry_if_exception(is_transient_http_error),
            reraise=True,
        ):
            with attempt:
                number = attempt.retry_state.attempt_number
                attempt_timeout = timeout * number if escalate_timeout else timeout
                if number > 1:
                    logger.info(f"Retrying {method} {url} (attempt {number}/{attempts}, timeout {attempt_timeout}s)")
                response = await client.request(
                    method,
                    url,
                    timeout=attempt_timeout,
                    follow_redirects=follow_redirects,
                )
                if response.status_code >= 500:
                    response.raise_for_status()
                return response
    except httpx.HTTPError as e:
        raise UrlFetchError(f"{method} {url} failed after {attempts} attempts: {e}") from e
