from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt

from finsync.core.config import Settings, get_settings


class RateLimitedException(Exception):
    def __init__(self, response: httpx.Response, retry_after: Optional[float] = None):
        self.response = response
        self.retry_after = retry_after
        super().__init__(f"Rate limited: {response.status_code}")


def _parse_retry_after(response: httpx.Response) -> Optional[float]:
    header = response.headers.get("Retry-After")
    if not header:
        return None
    try:
        value = float(header)
        return max(value, 0.0)
    except ValueError:
        try:
            retry_time = datetime.strptime(header, "%a, %d %b %Y %H:%M:%S %Z").replace(
                tzinfo=timezone.utc
            )
            delta = (retry_time - datetime.now(timezone.utc)).total_seconds()
            return max(delta, 0.0)
        except ValueError:
            return None


def _calculate_wait(settings: Settings, retry_state: RetryCallState) -> float:
    if retry_state.outcome is not None and retry_state.outcome.failed:
        exc = retry_state.outcome.exception()
        if isinstance(exc, RateLimitedException) and exc.retry_after is not None:
            return min(exc.retry_after, settings.retry_max_wait_seconds)
    attempt = retry_state.attempt_number
    return min(settings.retry_max_wait_seconds, 2 ** (attempt - 1))


def get_async_client(
    settings: Settings | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    settings = settings or get_settings()
    timeout = httpx.Timeout(settings.http_timeout_seconds)
    return httpx.AsyncClient(timeout=timeout, transport=transport)


async def request_with_rate_limit_backoff(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    settings: Settings | None = None,
    **kwargs: Any,
) -> httpx.Response:
    """Send a request, retrying only while the provider answers 429.

    A 429 means the provider refused the call before processing it, so a
    retry cannot create a duplicate. 5xx responses are returned to the caller
    untouched. Once attempts run out the last 429 response is returned.
    """
    settings = settings or get_settings()

    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(settings.retry_max_attempts),
            retry=retry_if_exception_type(RateLimitedException),
            wait=lambda retry_state: _calculate_wait(settings, retry_state),
            reraise=True,
        ):
            with attempt:
                response = await client.request(method, url, **kwargs)
                if response.status_code == 429:
                    raise RateLimitedException(response, _parse_retry_after(response))
                return response
    except RateLimitedException as exc:
        return exc.response
