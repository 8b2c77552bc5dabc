"""Connector error taxonomy.

Every provider failure surfaces as one of these:
- AuthError: credentials invalid or expired (one refresh retry, then surfaced)
- RateLimitError: provider asked us to back off, carries retry_after seconds
- SyncError: any other provider/application failure, tagged with entity type/id

Update conflicts are recorded rows, not exceptions.
"""

from __future__ import annotations


class ConnectorError(Exception):
    """Base class for all connector failures."""


class AuthError(ConnectorError):
    """Provider rejected the current credentials."""

    def __init__(self, provider: str, message: str = "authentication failed") -> None:
        self.provider = provider
        super().__init__(f"{provider}: {message}")


class RateLimitError(ConnectorError):
    """Provider rate limit hit. ``retry_after`` is in seconds."""

    DEFAULT_RETRY_AFTER = 60.0

    def __init__(self, provider: str, retry_after: float | None = None) -> None:
        self.provider = provider
        self.retry_after = float(retry_after) if retry_after is not None else self.DEFAULT_RETRY_AFTER
        super().__init__(f"{provider}: rate limited, retry after {self.retry_after:g}s")


class SyncError(ConnectorError):
    """Generic provider error tagged with the entity it concerns."""

    def __init__(
        self,
        message: str,
        entity_type: str | None = None,
        entity_id: str | None = None,
        details: dict | None = None,
    ) -> None:
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.details = details or {}
        super().__init__(message)
