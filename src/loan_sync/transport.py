"""
Resilient HTTP transport for loan-sync.

Retries are delegated to httpx-retries: transport failures and 5xx responses
are retried with exponential backoff, 4xx responses go straight back to the
caller for classification. Each attempt also runs under an asyncio deadline
so a stalled handler is cancelled, not just a stalled socket read.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import httpx
from httpx_retries import Retry, RetryTransport

from .errors import ExternalTimeoutError, UpstreamUnavailableError

logger = logging.getLogger(__name__)

RETRY_METHODS = ("DELETE", "GET", "HEAD", "OPTIONS", "PATCH", "POST", "PUT")
RETRY_STATUSES = tuple(range(500, 600))


@dataclass(frozen=True)
class RetryPolicy:
    """Timeout and retry budget for one logical call."""

    timeout_seconds: float = 5.0
    max_retries: int = 2
    backoff_base_seconds: float = 0.2

    def build(self) -> Retry:
        # httpx-retries sleeps factor * 2**n with n starting at 1, so the
        # first retry waits backoff_base_seconds.
        return Retry(
            total=self.max_retries,
            backoff_factor=self.backoff_base_seconds / 2,
            backoff_jitter=0,
            allowed_methods=RETRY_METHODS,
            status_forcelist=RETRY_STATUSES,
            retry_on_exceptions=(httpx.TransportError,),
        )


DEFAULT_POLICY = RetryPolicy()


class DeadlineTransport(httpx.AsyncBaseTransport):
    """Bound every attempt with asyncio.timeout, surfacing expiry as an httpx timeout."""

    def __init__(self, transport: httpx.AsyncBaseTransport, timeout_seconds: float):
        self._transport = transport
        self.timeout_seconds = timeout_seconds

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        try:
            async with asyncio.timeout(self.timeout_seconds):
                return await self._transport.handle_async_request(request)
        except TimeoutError as e:
            raise httpx.TimeoutException(
                f"No response within {self.timeout_seconds}s", request=request
            ) from e

    async def aclose(self) -> None:
        await self._transport.aclose()


class ResilientTransport:
    """
    HTTP call wrapper with timeout and bounded retry.

    One httpx.AsyncClient is built per RetryPolicy, all sharing the same
    underlying transport and its connection pool.
    """

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        """
        Initialize the transport.

        Args:
            transport: Optional inner httpx transport (e.g. httpx.MockTransport
                in tests). Defaults to a pooled httpx.AsyncHTTPTransport.
        """
        self._transport = transport or httpx.AsyncHTTPTransport()
        self._clients: dict[RetryPolicy, httpx.AsyncClient] = {}

    async def __aenter__(self) -> "ResilientTransport":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        clients, self._clients = self._clients, {}
        for client in clients.values():
            await client.aclose()

    def client_for(self, policy: RetryPolicy) -> httpx.AsyncClient:
        client = self._clients.get(policy)
        if client is None:
            client = httpx.AsyncClient(
                timeout=policy.timeout_seconds,
                transport=RetryTransport(
                    transport=DeadlineTransport(self._transport, policy.timeout_seconds),
                    retry=policy.build(),
                ),
            )
            self._clients[policy] = client
        return client

    async def request(
        self,
        method: str,
        url: str,
        *,
        policy: RetryPolicy = DEFAULT_POLICY,
        **kwargs: Any,
    ) -> httpx.Response:
        """
        Issue a request, retrying transient failures.

        Returns the first non-5xx response, or the last 5xx response once the
        retry budget is spent. Raises ExternalTimeoutError when the final
        attempt timed out and UpstreamUnavailableError for other transport
        failures.
        """
        attempts = policy.max_retries + 1
        try:
            response = await self.client_for(policy).request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise ExternalTimeoutError(
                f"{method} {url} timed out after {attempts} attempt(s)"
            ) from e
        except httpx.TransportError as e:
            raise UpstreamUnavailableError(
                f"{method} {url} failed after {attempts} attempt(s): {e}"
            ) from e

        if response.status_code >= 500:
            logger.warning(f"{method} {url} returned {response.status_code} after retries")
        return response
