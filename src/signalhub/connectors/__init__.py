"""Connector layer -- one adapter per external provider behind a shared contract.

Provides:
- Connector / CRMConnector: abstract contracts (enrich, CRUD, incremental reads)
- HubSpotConnector, SalesforceConnector: CRM sources (OAuth)
- ZoomInfoConnector, ApolloConnector, ClearbitConnector, ProxycurlConnector,
  NewsAPIConnector, BuiltWithConnector: data-provider sources (API key)
- ConnectorRegistry: builds a tenant's active connectors ordered by priority
- AuthError / RateLimitError / SyncError: failure taxonomy
"""

from src.signalhub.connectors.apollo import ApolloConnector
from src.signalhub.connectors.base import (
    ConnectionHooks,
    Connector,
    CRMConnector,
    call_with_rate_limit_backoff,
)
from src.signalhub.connectors.builtwith import BuiltWithConnector
from src.signalhub.connectors.clearbit import ClearbitConnector
from src.signalhub.connectors.errors import AuthError, ConnectorError, RateLimitError, SyncError
from src.signalhub.connectors.hubspot import HubSpotConnector
from src.signalhub.connectors.newsapi import NewsAPIConnector
from src.signalhub.connectors.proxycurl import ProxycurlConnector
from src.signalhub.connectors.registry import ActiveConnector, ConnectorRegistry
from src.signalhub.connectors.salesforce import SalesforceConnector
from src.signalhub.connectors.zoominfo import ZoomInfoConnector

__all__ = [
    "Connector",
    "CRMConnector",
    "ConnectionHooks",
    "call_with_rate_limit_backoff",
    "ConnectorRegistry",
    "ActiveConnector",
    "HubSpotConnector",
    "SalesforceConnector",
    "ZoomInfoConnector",
    "ApolloConnector",
    "ClearbitConnector",
    "ProxycurlConnector",
    "NewsAPIConnector",
    "BuiltWithConnector",
    "ConnectorError",
    "AuthError",
    "RateLimitError",
    "SyncError",
]
