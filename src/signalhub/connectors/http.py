"""Shared async HTTP client for provider APIs.

Wraps httpx.AsyncClient with the connector error taxonomy:
- 401/403 -> AuthError
- 429 -> RateLimitError (Retry-After header, default 60s)
- 404 -> None when the caller allows it, SyncError otherwise
- other >= 400 -> SyncError tagged with entity type/id
- transport failures and non-JSON bodies -> SyncError

Transient transport failures (connect errors, timeouts) are retried with
tenacity: 3 attempts, exponential backoff 1-10s.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.signalhub.connectors.errors import AuthError, RateLimitError, SyncError

logger = structlog.get_logger(__name__)

TRANSIENT_ERRORS = (httpx.ConnectError, httpx.TimeoutException)


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class ProviderHTTPClient:
    """Async JSON client for one provider.

    Args:
        provider: Provider key used in errors and logs.
        base_url: Base URL relative paths are resolved against.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (tests pass httpx.MockTransport).
        retry_backoff: Multiplier for the exponential wait between transport
            retries; 0 retries immediately.
    """

    def __init__(
        self,
        provider: str,
        base_url: str = "",
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
        retry_backoff: float = 1.0,
    ) -> None:
        self._provider = provider
        self._base_url = base_url
        self._timeout = timeout
        self._transport = transport
        self._retry_backoff = retry_backoff

    @property
    def provider(self) -> str:
        return self._provider

    def _client(self) -> httpx.AsyncClient:
        """Create a new httpx client for one request."""
        return httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=self._transport,
        )

    async def _send_once(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        async with self._client() as client:
            return await client.request(method, url, **kwargs)

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(3),
            wait=wait_exponential(multiplier=self._retry_backoff, min=self._retry_backoff, max=10),
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            reraise=True,
        )
        return await retrying(self._send_once, method, url, **kwargs)

    async def request(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        params: dict[str, Any] | None = None,
        json: Any = None,
        data: dict[str, Any] | None = None,
        entity_type: str | None = None,
        entity_id: str | None = None,
        allow_not_found: bool = False,
    ) -> Any:
        """Send one request and return the decoded JSON body (or None).

        Raises:
            AuthError, RateLimitError, SyncError: mapped from the status code.
            SyncError: also for transport failures once retries are spent and
                for bodies that are not JSON.
        """
        try:
            response = await self._send(
                method,
                url,
                headers=headers,
                params=params,
                json=json,
                data=data,
            )
        except httpx.HTTPError as exc:
            logger.warning(
                "provider.transport_failed",
                provider=self._provider,
                method=method,
                url=url,
                error=type(exc).__name__,
            )
            raise SyncError(
                f"{self._provider} request failed: {exc}",
                entity_type=entity_type,
                entity_id=entity_id,
                details={"method": method, "url": url, "error": type(exc).__name__},
            ) from exc

        status = response.status_code
        if status in (401, 403):
            logger.warning("provider.auth_rejected", provider=self._provider, status=status)
            raise AuthError(self._provider, f"HTTP {status}")
        if status == 429:
            retry_after = _parse_retry_after(response.headers.get("Retry-After"))
            logger.warning("provider.rate_limited", provider=self._provider, retry_after=retry_after)
            raise RateLimitError(self._provider, retry_after)
        if status == 404 and allow_not_found:
            return None
        if status >= 400:
            raise SyncError(
                f"{self._provider} API error: {status}",
                entity_type=entity_type,
                entity_id=entity_id,
                details={"status": status, "body": response.text[:500]},
            )
        if status == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise SyncError(
                f"{self._provider} returned a non-JSON body",
                entity_type=entity_type,
                entity_id=entity_id,
                details={"status": status, "body": response.text[:500]},
            ) from exc
