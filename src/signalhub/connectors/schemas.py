"""Pydantic schemas for the connector layer.

Defines the normalized shapes every provider maps into:
- Enums: ProviderKey, EntityType, SyncDirection, ConflictPolicy
- Connection: tenant-scoped credentials/config for one provider instance
- CRMEntity: provider-neutral CRM record
- EnrichmentTarget: best available lookup input for one prospect/account
- RawFields: canonical dotted field path -> value
- BulkResult / BulkItemResult: per-item outcome of batch writes
- TokenGrant: result of an OAuth refresh
"""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

# Canonical dotted paths ("professional.title") to values. Append-only paths
# ("intent.signals", "company.technologies", "research.news") carry lists.
RawFields = dict[str, Any]

# OAuth tokens are refreshed this long before they actually expire.
TOKEN_REFRESH_MARGIN = timedelta(minutes=5)


# ── Enums ───────────────────────────────────────────────────────────────────


class ProviderKey(str, Enum):
    """Supported external providers."""

    HUBSPOT = "hubspot"
    SALESFORCE = "salesforce"
    ZOOMINFO = "zoominfo"
    APOLLO = "apollo"
    CLEARBIT = "clearbit"
    PROXYCURL = "proxycurl"
    NEWSAPI = "newsapi"
    BUILTWITH = "builtwith"


CRM_PROVIDERS = frozenset({ProviderKey.HUBSPOT, ProviderKey.SALESFORCE})


class EntityType(str, Enum):
    """CRM entity types understood by the sync engine."""

    CONTACT = "contact"
    LEAD = "lead"
    ACCOUNT = "account"
    OPPORTUNITY = "opportunity"
    TASK = "task"
    EVENT = "event"
    NOTE = "note"


class SyncDirection(str, Enum):
    PULL = "pull"
    PUSH = "push"
    BIDIRECTIONAL = "bidirectional"

    @property
    def pulls(self) -> bool:
        return self in (SyncDirection.PULL, SyncDirection.BIDIRECTIONAL)

    @property
    def pushes(self) -> bool:
        return self in (SyncDirection.PUSH, SyncDirection.BIDIRECTIONAL)


class ConflictPolicy(str, Enum):
    """Per-connection resolution policy for update conflicts."""

    USE_INTERNAL = "use_internal"
    USE_CRM = "use_crm"
    MANUAL = "manual"


# ── Connection ──────────────────────────────────────────────────────────────


class Connection(BaseModel):
    """Credentials and configuration for one provider instance of a tenant.

    Connectors hold a transient reference to a Connection and never persist
    it themselves; refreshed tokens are handed back through ConnectionHooks.
    """

    id: str
    tenant_id: str
    provider: ProviderKey
    source_name: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    api_key: str | None = None
    token_expires_at: datetime | None = None
    instance_url: str | None = None
    is_active: bool = True
    priority: int | None = None
    conflict_policy: ConflictPolicy = ConflictPolicy.MANUAL
    auth_failures: int = 0
    last_sync_at: datetime | None = None
    settings: dict[str, Any] = Field(default_factory=dict)

    @field_validator("settings", mode="before")
    @classmethod
    def _settings_default(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("auth_failures", mode="before")
    @classmethod
    def _failures_default(cls, value: Any) -> Any:
        return 0 if value is None else value

    def token_expired(self, now: datetime) -> bool:
        """True when the OAuth token expires within the refresh margin."""
        if self.token_expires_at is None:
            return False
        return self.token_expires_at - TOKEN_REFRESH_MARGIN <= now


class TokenGrant(BaseModel):
    """Fresh OAuth credentials returned by a provider's token endpoint."""

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    instance_url: str | None = None


# ── Entities & Targets ──────────────────────────────────────────────────────


class CRMEntity(BaseModel):
    """A provider-neutral CRM record."""

    id: str
    entity_type: EntityType
    fields: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None


class EnrichmentTarget(BaseModel):
    """Lookup input handed to Connector.enrich().

    ``domain`` is already resolved by the pipeline: it is None when the email
    belongs to a public mailbox provider and no company domain is stored.
    """

    entity_id: str
    entity_type: str = "prospect"
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    company_name: str | None = None
    domain: str | None = None
    linkedin_url: str | None = None

    @property
    def full_name(self) -> str | None:
        parts = [p for p in (self.first_name, self.last_name) if p]
        return " ".join(parts) or None


# ── Bulk Results ────────────────────────────────────────────────────────────


class BulkItemResult(BaseModel):
    """Outcome for one item of a bulk write, in input order."""

    index: int
    success: bool
    entity: CRMEntity | None = None
    error: str | None = None


class BulkResult(BaseModel):
    """Per-item outcomes of bulk_create / bulk_update. Never all-or-nothing."""

    items: list[BulkItemResult] = Field(default_factory=list)

    @property
    def succeeded(self) -> list[BulkItemResult]:
        return [item for item in self.items if item.success]

    @property
    def failed(self) -> list[BulkItemResult]:
        return [item for item in self.items if not item.success]
