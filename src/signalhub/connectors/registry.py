"""Connector registry -- builds a tenant's active connectors from stored connections.

Provides:
- build_active_connectors(tenant_id): enabled connectors ordered by priority
- build_crm_connector(connection_id): one CRM connector for the sync engine
- RepositoryConnectionHooks: persists refreshed tokens and auth-failure counts,
  deactivating a connection after MAX_AUTH_FAILURES consecutive failures

Connections with missing or invalid credentials are skipped with a warning;
zero active connectors is a valid result. API-key providers fall back to
environment keys when the tenant has no stored connection for them.
"""

from __future__ import annotations

from typing import Any, NamedTuple, cast

import structlog
from pydantic import ValidationError

from src.signalhub.config import Settings, get_settings
from src.signalhub.connectors.apollo import ApolloConnector
from src.signalhub.connectors.base import ConnectionHooks, Connector, CRMConnector
from src.signalhub.connectors.builtwith import BuiltWithConnector
from src.signalhub.connectors.clearbit import ClearbitConnector
from src.signalhub.connectors.errors import ConnectorError
from src.signalhub.connectors.hubspot import HubSpotConnector
from src.signalhub.connectors.newsapi import NewsAPIConnector
from src.signalhub.connectors.proxycurl import ProxycurlConnector
from src.signalhub.connectors.salesforce import SalesforceConnector
from src.signalhub.connectors.schemas import CRM_PROVIDERS, Connection, ProviderKey
from src.signalhub.connectors.zoominfo import ZoomInfoConnector
from src.signalhub.core.clock import Clock, utc_now
from src.signalhub.storage.repository import CONNECTIONS, Repository

logger = structlog.get_logger(__name__)

CONNECTOR_TYPES: dict[ProviderKey, type[Connector]] = {
    ProviderKey.SALESFORCE: SalesforceConnector,
    ProviderKey.ZOOMINFO: ZoomInfoConnector,
    ProviderKey.HUBSPOT: HubSpotConnector,
    ProviderKey.PROXYCURL: ProxycurlConnector,
    ProviderKey.CLEARBIT: ClearbitConnector,
    ProviderKey.APOLLO: ApolloConnector,
    ProviderKey.NEWSAPI: NewsAPIConnector,
    ProviderKey.BUILTWITH: BuiltWithConnector,
}

ENV_KEY_SETTINGS: dict[ProviderKey, str] = {
    ProviderKey.ZOOMINFO: "ZOOMINFO_API_KEY",
    ProviderKey.CLEARBIT: "CLEARBIT_API_KEY",
    ProviderKey.APOLLO: "APOLLO_API_KEY",
    ProviderKey.PROXYCURL: "PROXYCURL_API_KEY",
    ProviderKey.NEWSAPI: "NEWS_API_KEY",
    ProviderKey.BUILTWITH: "BUILTWITH_API_KEY",
}

ENVIRONMENT_SOURCE = "environment"


class ActiveConnector(NamedTuple):
    source_name: str
    connector: Connector
    priority: int


class ConnectionNotFoundError(ConnectorError):
    """No usable connection with the requested id."""


def credential_problem(connection: Connection) -> str | None:
    """Return why a connection cannot be used, or None if it looks usable."""
    if connection.provider in CRM_PROVIDERS:
        if not (connection.access_token or connection.refresh_token):
            return "missing OAuth token"
        if connection.provider == ProviderKey.SALESFORCE and not connection.instance_url:
            return "missing instance URL"
        return None
    if not connection.api_key:
        return "missing API key"
    return None


class RepositoryConnectionHooks(ConnectionHooks):
    """Writes credential state changes back to the connections table."""

    def __init__(self, repository: Repository, max_auth_failures: int) -> None:
        self._repository = repository
        self._max_auth_failures = max_auth_failures

    @staticmethod
    def _persistent(connection: Connection) -> bool:
        return connection.settings.get("source") != ENVIRONMENT_SOURCE

    async def _save(self, connection: Connection, fields: dict[str, Any]) -> Connection:
        updated = connection.model_copy(update=fields)
        if self._persistent(connection):
            await self._repository.upsert(CONNECTIONS, connection.id, fields)
        return updated

    async def token_refreshed(self, connection: Connection) -> Connection:
        return await self._save(connection, {
            "access_token": connection.access_token,
            "refresh_token": connection.refresh_token,
            "token_expires_at": connection.token_expires_at,
            "instance_url": connection.instance_url,
        })

    async def auth_failed(self, connection: Connection) -> Connection:
        failures = connection.auth_failures + 1
        fields: dict[str, Any] = {"auth_failures": failures}
        if failures >= self._max_auth_failures:
            fields["is_active"] = False
            logger.warning(
                "connection.deactivated",
                connection_id=connection.id,
                provider=connection.provider.value,
                auth_failures=failures,
            )
        return await self._save(connection, fields)

    async def auth_succeeded(self, connection: Connection) -> Connection:
        return await self._save(connection, {"auth_failures": 0})


class ConnectorRegistry:
    """Instantiates connectors for stored connections.

    Args:
        repository: Storage for connections.
        settings: Application settings (timeouts, OAuth apps, fallback keys).
        clock: UTC clock handed to every connector.
        transport: Optional httpx transport handed to every connector.
    """

    def __init__(
        self,
        repository: Repository,
        settings: Settings | None = None,
        clock: Clock = utc_now,
        transport: Any = None,
    ) -> None:
        self._repository = repository
        self._settings = settings or get_settings()
        self._clock = clock
        self._transport = transport
        self._hooks = RepositoryConnectionHooks(repository, self._settings.MAX_AUTH_FAILURES)

    def instantiate(self, connection: Connection) -> Connector:
        """Create the connector matching ``connection.provider``."""
        connector_type = CONNECTOR_TYPES[connection.provider]
        kwargs: dict[str, Any] = {
            "hooks": self._hooks,
            "clock": self._clock,
            "timeout": self._settings.CONNECTOR_TIMEOUT_SECONDS,
            "transport": self._transport,
        }
        if connection.provider == ProviderKey.HUBSPOT:
            kwargs["client_id"] = self._settings.HUBSPOT_CLIENT_ID
            kwargs["client_secret"] = self._settings.HUBSPOT_CLIENT_SECRET
        elif connection.provider == ProviderKey.SALESFORCE:
            kwargs["client_id"] = self._settings.SALESFORCE_CLIENT_ID
            kwargs["client_secret"] = self._settings.SALESFORCE_CLIENT_SECRET
        elif connection.provider == ProviderKey.NEWSAPI:
            kwargs["lookback_days"] = self._settings.NEWS_LOOKBACK_DAYS
        return connector_type(connection, **kwargs)

    async def _load_connections(self, tenant_id: str) -> list[Connection]:
        rows = await self._repository.query(
            CONNECTIONS, {"tenant_id": tenant_id}, order_by="created_at"
        )
        connections: list[Connection] = []
        for row in rows:
            try:
                connection = Connection.model_validate(row)
            except ValidationError as exc:
                logger.warning(
                    "registry.connection_invalid",
                    tenant_id=tenant_id,
                    connection_id=row.get("id"),
                    error=str(exc),
                )
                continue
            connections.append(connection)
        return connections

    def _environment_connections(self, tenant_id: str, stored: list[Connection]) -> list[Connection]:
        configured = {c.provider for c in stored}
        fallbacks: list[Connection] = []
        for provider, setting in ENV_KEY_SETTINGS.items():
            api_key = getattr(self._settings, setting, "")
            if provider in configured or not api_key:
                continue
            fallbacks.append(Connection(
                id=f"env:{tenant_id}:{provider.value}",
                tenant_id=tenant_id,
                provider=provider,
                api_key=api_key,
                settings={"source": ENVIRONMENT_SOURCE},
            ))
        return fallbacks

    async def build_active_connectors(self, tenant_id: str) -> list[ActiveConnector]:
        """Build enabled connectors for a tenant, sorted by priority.

        Connections without an explicit priority take their declaration
        position (1-based); ties keep declaration order.
        """
        stored = await self._load_connections(tenant_id)
        active_stored = [c for c in stored if c.is_active]
        candidates = active_stored + self._environment_connections(tenant_id, stored)

        ranked: list[tuple[int, int, Connection]] = []
        for position, connection in enumerate(candidates):
            problem = credential_problem(connection)
            if problem:
                logger.warning(
                    "registry.connection_skipped",
                    tenant_id=tenant_id,
                    connection_id=connection.id,
                    provider=connection.provider.value,
                    reason=problem,
                )
                continue
            priority = connection.priority if connection.priority is not None else position + 1
            ranked.append((priority, position, connection))

        ranked.sort(key=lambda item: (item[0], item[1]))
        active = []
        for priority, _, connection in ranked:
            connector = self.instantiate(connection)
            active.append(ActiveConnector(connector.source_name, connector, priority))

        logger.info(
            "registry.connectors_built",
            tenant_id=tenant_id,
            sources=[a.source_name for a in active],
        )
        return active

    async def load_connection(self, connection_id: str) -> Connection:
        row = await self._repository.get(CONNECTIONS, connection_id)
        if row is None:
            raise ConnectionNotFoundError(f"connection {connection_id} not found")
        return Connection.model_validate(row)

    async def build_crm_connector(self, connection_id: str) -> CRMConnector:
        """Build the CRM connector for a stored, active CRM connection."""
        connection = await self.load_connection(connection_id)
        if connection.provider not in CRM_PROVIDERS:
            raise ConnectionNotFoundError(f"connection {connection_id} is not a CRM connection")
        if not connection.is_active:
            raise ConnectionNotFoundError(f"connection {connection_id} is inactive")
        problem = credential_problem(connection)
        if problem:
            raise ConnectionNotFoundError(f"connection {connection_id}: {problem}")
        return cast(CRMConnector, self.instantiate(connection))
