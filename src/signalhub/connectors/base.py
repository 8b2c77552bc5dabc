"""Connector abstract base classes -- the contract every provider implements.

Connector covers all sources (people/company data, profile, news, tech
fingerprinting, CRM) through ``enrich(target) -> RawFields``. CRMConnector
adds the entity CRUD, incremental-read and activity-logging operations the
sync engine needs.

Failure semantics shared by all connectors:
- AuthError triggers exactly one token refresh + retry, then surfaces.
  OAuth tokens are also refreshed proactively 5 minutes before expiry.
  Refreshed tokens are handed to ConnectionHooks before the next call.
- RateLimitError carries retry_after; callers back off once through
  call_with_rate_limit_backoff().
- Everything else is a SyncError tagged with entity type and id.
"""

from __future__ import annotations

import asyncio
import functools
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, TypeVar

import structlog

from src.signalhub.connectors.errors import AuthError, ConnectorError, RateLimitError, SyncError
from src.signalhub.connectors.http import ProviderHTTPClient
from src.signalhub.connectors.schemas import (
    BulkItemResult,
    BulkResult,
    Connection,
    CRMEntity,
    EnrichmentTarget,
    EntityType,
    ProviderKey,
    RawFields,
    TokenGrant,
)
from src.signalhub.core.clock import Clock, utc_now

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class ConnectionHooks:
    """Callbacks through which connectors report credential state changes.

    The default implementation keeps everything in memory. The registry
    supplies a repository-backed subclass so refreshed tokens and auth
    failure counts reach the stored Connection.
    """

    async def token_refreshed(self, connection: Connection) -> Connection:
        return connection

    async def auth_failed(self, connection: Connection) -> Connection:
        return connection.model_copy(update={"auth_failures": connection.auth_failures + 1})

    async def auth_succeeded(self, connection: Connection) -> Connection:
        return connection.model_copy(update={"auth_failures": 0})


def authenticated(method: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
    """Run a connector method with proactive refresh and one reactive retry."""

    @functools.wraps(method)
    async def wrapper(self: Connector, *args: Any, **kwargs: Any) -> T:
        return await self._with_auth(method, self, *args, **kwargs)

    return wrapper


async def call_with_rate_limit_backoff(
    call: Callable[[], Awaitable[T]],
    max_wait: float,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Invoke ``call``; on RateLimitError wait retry_after once and retry once.

    If the provider asks for longer than ``max_wait`` the error is re-raised
    immediately. A second RateLimitError always propagates.
    """
    try:
        return await call()
    except RateLimitError as exc:
        if exc.retry_after > max_wait:
            logger.warning(
                "connector.rate_limit_exceeds_budget",
                provider=exc.provider,
                retry_after=exc.retry_after,
                max_wait=max_wait,
            )
            raise
        logger.info("connector.rate_limit_backoff", provider=exc.provider, retry_after=exc.retry_after)
        await sleep(exc.retry_after)
        return await call()


class Connector(ABC):
    """Abstract interface for one external data source.

    Subclasses set the class attributes and implement ``enrich`` and
    ``_ping``. OAuth providers also set ``supports_refresh`` and implement
    ``_request_token_refresh``.

    Args:
        connection: Stored credentials/config for this provider instance.
        hooks: Persistence callbacks for token refresh and auth failures.
        clock: UTC clock (injected in tests).
        timeout: Per-request HTTP timeout in seconds.
        transport: Optional httpx transport forwarded to ProviderHTTPClient.
    """

    provider: ProviderKey
    base_url: str = ""
    paid: bool = False
    company_level: bool = False
    supports_refresh: bool = False

    def __init__(
        self,
        connection: Connection,
        *,
        hooks: ConnectionHooks | None = None,
        clock: Clock = utc_now,
        timeout: float = 15.0,
        transport: Any = None,
    ) -> None:
        self.connection = connection
        self.source_name = connection.source_name or self.provider.value
        self._hooks = hooks or ConnectionHooks()
        self._clock = clock
        self._http = ProviderHTTPClient(
            self.provider.value,
            base_url=self._resolve_base_url(),
            timeout=timeout,
            transport=transport,
        )

    def _resolve_base_url(self) -> str:
        return self.base_url

    # ── Contract ────────────────────────────────────────────────────────────

    @abstractmethod
    async def enrich(self, target: EnrichmentTarget) -> RawFields:
        """Look up the target and return normalized fields (empty if unknown)."""
        ...

    @abstractmethod
    async def _ping(self) -> None:
        """Cheapest read-only call that proves the credentials work.

        Implementations go through ``@authenticated`` methods so failures
        are counted against the connection.
        """
        ...

    async def test_connection(self) -> tuple[bool, str | None]:
        """Validate current credentials. Returns (ok, error message)."""
        try:
            await self._ping()
        except ConnectorError as exc:
            logger.warning("connector.test_failed", source=self.source_name, error=str(exc))
            return False, str(exc)
        return True, None

    # ── Auth lifecycle ──────────────────────────────────────────────────────

    def _auth_headers(self) -> dict[str, str]:
        token = self.connection.access_token or self.connection.api_key
        if not token:
            return {}
        return {"Authorization": f"Bearer {token}"}

    async def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        """Issue a provider request with the current auth headers."""
        headers = {**self._auth_headers(), **kwargs.pop("headers", {})}
        return await self._http.request(method, url, headers=headers, **kwargs)

    async def _request_token_refresh(self) -> TokenGrant:
        raise AuthError(self.provider.value, "token refresh not supported")

    async def refresh_token(self) -> None:
        """Exchange the refresh token and persist the new credentials."""
        if not self.supports_refresh or not self.connection.refresh_token:
            raise AuthError(self.provider.value, "no refresh token available")

        grant = await self._request_token_refresh()
        update: dict[str, Any] = {
            "access_token": grant.access_token,
            "token_expires_at": grant.expires_at,
        }
        if grant.refresh_token:
            update["refresh_token"] = grant.refresh_token
        if grant.instance_url:
            update["instance_url"] = grant.instance_url
        self.connection = self.connection.model_copy(update=update)
        self.connection = await self._hooks.token_refreshed(self.connection)
        logger.info(
            "connector.token_refreshed",
            source=self.source_name,
            connection_id=self.connection.id,
            expires_at=grant.expires_at.isoformat() if grant.expires_at else None,
        )

    def _can_refresh(self) -> bool:
        return self.supports_refresh and bool(self.connection.refresh_token)

    async def _with_auth(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        try:
            if self._can_refresh() and self.connection.token_expired(self._clock()):
                await self.refresh_token()
            try:
                result = await fn(*args, **kwargs)
            except AuthError:
                if not self._can_refresh():
                    raise
                logger.info("connector.auth_retry", source=self.source_name)
                await self.refresh_token()
                result = await fn(*args, **kwargs)
        except AuthError:
            self.connection = await self._hooks.auth_failed(self.connection)
            raise

        if self.connection.auth_failures:
            self.connection = await self._hooks.auth_succeeded(self.connection)
        return result


class CRMConnector(Connector):
    """Connector for CRM systems: entity CRUD, incremental reads, activities.

    ``enrich`` looks the prospect up by email and maps the matching contact
    through ``_contact_to_raw_fields``.
    """

    supports_refresh = True
    email_field: str = "email"
    id_field: str = "id"
    page_limit: int = 100

    @abstractmethod
    async def get_entity(self, entity_type: EntityType, external_id: str) -> CRMEntity | None:
        """Fetch one entity by its CRM id, or None if it does not exist."""
        ...

    @abstractmethod
    async def query_entities(
        self,
        entity_type: EntityType,
        filter: dict[str, Any] | None = None,
        limit: int = 100,
        offset: int = 0,
        order_by: str | None = None,
    ) -> list[CRMEntity]:
        """Query entities with equality filters. ``order_by`` may end in " DESC"."""
        ...

    async def query_page(
        self, entity_type: EntityType, limit: int, cursor: str | None = None
    ) -> tuple[list[CRMEntity], str | None]:
        """One page of a full listing, in stable ``id_field`` order.

        Pass None for the first page and the returned cursor for the next
        one; a None cursor means the listing is exhausted. ``limit`` caps the
        whole listing, so a page never holds more than that. The default pages
        by offset; providers with server-side cursors override this.
        """
        offset = int(cursor or 0)
        size = min(limit, self.page_limit)
        page = await self.query_entities(entity_type, limit=size, offset=offset, order_by=self.id_field)
        next_cursor = str(offset + len(page)) if page and len(page) == size else None
        return page, next_cursor

    @abstractmethod
    async def create_entity(self, entity_type: EntityType, fields: dict[str, Any]) -> CRMEntity:
        ...

    @abstractmethod
    async def update_entity(
        self, entity_type: EntityType, external_id: str, fields: dict[str, Any]
    ) -> CRMEntity:
        ...

    @abstractmethod
    async def delete_entity(self, entity_type: EntityType, external_id: str) -> None:
        ...

    @abstractmethod
    async def get_recently_modified(
        self, entity_type: EntityType, since: datetime, limit: int = 100
    ) -> list[CRMEntity]:
        """Entities modified strictly after ``since``, ascending by modification time."""
        ...

    @abstractmethod
    async def log_activity(
        self,
        activity_type: str,
        related_type: EntityType,
        related_external_id: str,
        fields: dict[str, Any],
    ) -> CRMEntity:
        """Record an activity (call, email, meeting, note) against a CRM record."""
        ...

    @abstractmethod
    async def _contact_to_raw_fields(self, contact: CRMEntity) -> RawFields:
        ...

    async def bulk_create(self, entity_type: EntityType, records: list[dict[str, Any]]) -> BulkResult:
        """Create records one by one. Providers with batch endpoints override this."""
        items: list[BulkItemResult] = []
        for index, fields in enumerate(records):
            try:
                entity = await self.create_entity(entity_type, fields)
                items.append(BulkItemResult(index=index, success=True, entity=entity))
            except (SyncError, RateLimitError) as exc:
                items.append(BulkItemResult(index=index, success=False, error=str(exc)))
        return BulkResult(items=items)

    async def bulk_update(
        self, entity_type: EntityType, updates: list[tuple[str, dict[str, Any]]]
    ) -> BulkResult:
        """Update (external_id, fields) pairs one by one."""
        items: list[BulkItemResult] = []
        for index, (external_id, fields) in enumerate(updates):
            try:
                entity = await self.update_entity(entity_type, external_id, fields)
                items.append(BulkItemResult(index=index, success=True, entity=entity))
            except (SyncError, RateLimitError) as exc:
                items.append(BulkItemResult(index=index, success=False, error=str(exc)))
        return BulkResult(items=items)

    async def _ping(self) -> None:
        await self.query_entities(EntityType.CONTACT, limit=1)

    async def enrich(self, target: EnrichmentTarget) -> RawFields:
        if not target.email:
            return {}
        contacts = await self.query_entities(
            EntityType.CONTACT, {self.email_field: target.email}, limit=1
        )
        if not contacts:
            return {}
        return await self._contact_to_raw_fields(contacts[0])
