"""Authenticated HTTP transport with retry, backoff and rate limiting.

Every request issued by the core goes through Transport.send():

1. Wait for a rate-limiter token (when a rate limit is configured)
2. Issue the request with bearer auth, user agent and JSON content type
3. Retry network errors, 5xx (except 501) and 429 with exponential backoff
4. Return the final response; only a network failure on the last attempt
   raises (TransportError)

Non-retryable non-2xx responses come back as ordinary responses so the
caller decides what they mean (404 on read is "gone", not an error).

CANCELLATION: the HTTP round trip, the backoff sleep and the limiter wait
are all plain awaits, so cancelling the calling task (or wrapping the call
in asyncio.timeout) aborts whichever is in progress and the CancelledError
propagates untouched.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import httpx

from .config import BaseKey, ClientConfig
from .errors import APIError, NotFoundError, TransportError
from .ratelimit import TokenBucket

logger = logging.getLogger(__name__)

# Statuses that carry a Retry-After worth honoring
RETRY_AFTER_STATUSES = frozenset({429, 503})

JSON_CONTENT_TYPE = "application/json"


def should_retry(status_code: int) -> bool:
    """Check whether a response status is transient.

    429 is retried even though it is a client error; 501 (Not Implemented)
    is permanent and is never retried.
    """
    if status_code == 429:
        return True
    return status_code >= 500 and status_code != 501


def parse_retry_after(value: str | None) -> float | None:
    """Parse a Retry-After header given in seconds. HTTP-date values are ignored."""
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def raise_for_status(response: httpx.Response) -> None:
    """Raise APIError (NotFoundError for 404) for a non-2xx response."""
    if response.is_success:
        return
    request = response.request
    error_cls = NotFoundError if response.status_code == 404 else APIError
    raise error_cls(request.method, str(request.url), response.status_code, response.text)


class Transport:
    """Async HTTP client shared by every reconciliation of one provider instance.

    Args:
        config: Validated client configuration.
        client: Optional pre-built httpx.AsyncClient (tests inject one backed by
            httpx.MockTransport). A client passed in is not closed by aclose().
    """

    def __init__(self, config: ClientConfig, client: httpx.AsyncClient | None = None) -> None:
        self._config = config
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(config.request_timeout),
        )
        self._limiter: TokenBucket | None = None
        if config.rate_limit > 0:
            self._limiter = TokenBucket(config.rate_limit, config.effective_burst)

    @property
    def config(self) -> ClientConfig:
        return self._config

    @property
    def limiter(self) -> TokenBucket | None:
        return self._limiter

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> Transport:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def url(self, base_key: BaseKey, path: str) -> str:
        """Resolve a path against the base URL of a logical endpoint.

        Absolute URLs (e.g. pagination ``next`` links) pass through unchanged.
        """
        if path.startswith(("http://", "https://")):
            return path
        return self._config.url_for(base_key) + "/" + path.lstrip("/")

    def _headers(self, method: str) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self._config.token}",
            "Accept": JSON_CONTENT_TYPE,
        }
        if self._config.user_agent:
            headers["User-Agent"] = self._config.user_agent
        if method in ("POST", "PATCH"):
            headers["Content-Type"] = JSON_CONTENT_TYPE
        return headers

    def backoff(self, attempt: int, response: httpx.Response | None = None) -> float:
        """Compute the wait before retry number ``attempt + 1``.

        Exponential ``min * 2**attempt`` capped at the configured maximum. A
        Retry-After header on 429/503 replaces the computed value (still capped).
        """
        wait_max = self._config.retry_wait_max
        if response is not None and response.status_code in RETRY_AFTER_STATUSES:
            retry_after = parse_retry_after(response.headers.get("Retry-After"))
            if retry_after is not None:
                return min(retry_after, wait_max)
        return min(self._config.retry_wait_min * (2**attempt), wait_max)

    async def send(
        self,
        method: str,
        base_key: BaseKey,
        path: str,
        body: Any = None,
    ) -> httpx.Response:
        """Send a request, retrying transient failures.

        Args:
            method: HTTP method.
            base_key: Logical endpoint the path is relative to.
            path: Path (or absolute URL) of the request.
            body: JSON-serializable payload, already encoded bytes, or None.

        Returns:
            The first non-retryable response, or the last response once
            retries are exhausted. The body has been read in full.

        Raises:
            TransportError: If the final attempt failed at the network level.
        """
        method = method.upper()
        url = self.url(base_key, path)
        headers = self._headers(method)
        content: bytes | None = None
        if body is not None:
            content = body if isinstance(body, bytes) else json.dumps(body).encode()

        retry_max = self._config.retry_max
        response: httpx.Response | None = None
        last_exc: httpx.TransportError | None = None

        for attempt in range(retry_max + 1):
            if self._limiter is not None:
                await self._limiter.acquire()

            try:
                response = await self._client.request(
                    method, url, headers=headers, content=content
                )
            except httpx.TransportError as e:
                response = None
                last_exc = e
            else:
                last_exc = None
                if not should_retry(response.status_code):
                    return response

            if attempt == retry_max:
                break

            wait = self.backoff(attempt, response)
            logger.warning(
                "Request failed, retrying",
                extra={
                    "method": method,
                    "url": url,
                    "attempt": attempt + 1,
                    "max_attempts": retry_max + 1,
                    "wait_seconds": wait,
                    "status_code": response.status_code if response is not None else None,
                    "error": str(last_exc) if last_exc is not None else None,
                },
            )
            await asyncio.sleep(wait)

        if response is not None:
            logger.warning(
                "Retries exhausted, returning last response",
                extra={
                    "method": method,
                    "url": url,
                    "attempts": retry_max + 1,
                    "status_code": response.status_code,
                },
            )
            return response

        raise TransportError(
            method, url, str(last_exc) or type(last_exc).__name__, attempts=retry_max + 1
        ) from last_exc

    async def get(self, path: str) -> httpx.Response:
        return await self.send("GET", BaseKey.TELEMETRY, path)

    async def post(self, path: str, body: Any = None) -> httpx.Response:
        return await self.send("POST", BaseKey.TELEMETRY, path, body)

    async def patch(self, path: str, body: Any = None) -> httpx.Response:
        return await self.send("PATCH", BaseKey.TELEMETRY, path, body)

    async def delete(self, path: str) -> httpx.Response:
        return await self.send("DELETE", BaseKey.TELEMETRY, path)
