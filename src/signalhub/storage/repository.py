"""Repository interface -- the only path through which the core touches storage.

Records are plain dicts keyed by table name and id. ``insert`` is create-only
and raises DuplicateRecordError on any unique-constraint violation, which is
how the identity-mapping bijection is enforced by storage rather than by
in-process locks.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

# ── Table names ─────────────────────────────────────────────────────────────

PROSPECTS = "prospects"
ACCOUNTS = "accounts"
OPPORTUNITIES = "opportunities"
TASKS = "bdr_tasks"
ACTIVITIES = "bdr_activities"
NOTES = "notes"
CONNECTIONS = "connections"
FIELD_MAPPINGS = "field_mappings"
ENTITY_MAPPINGS = "entity_mappings"
SYNC_JOBS = "sync_jobs"
SYNC_CONFLICTS = "sync_conflicts"
SYNC_LOG = "sync_log"
SIGNAL_RECORDS = "signal_records"
INTENT_SIGNALS = "intent_signals"
ENRICHMENT_REQUESTS = "enrichment_requests"


class RepositoryError(Exception):
    """Storage-layer failure."""


class DuplicateRecordError(RepositoryError):
    """A write violated a primary-key or unique constraint."""

    def __init__(self, table: str, message: str = "") -> None:
        self.table = table
        super().__init__(f"duplicate record in {table}" + (f": {message}" if message else ""))


class Repository(ABC):
    """Transactional key/record store."""

    @abstractmethod
    async def get(self, table: str, record_id: str) -> dict[str, Any] | None:
        """Fetch one record by id."""
        ...

    @abstractmethod
    async def upsert(self, table: str, record_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        """Insert or merge ``fields`` into the record; returns the stored record."""
        ...

    @abstractmethod
    async def query(
        self,
        table: str,
        filter: dict[str, Any] | None = None,
        *,
        order_by: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Equality-filtered scan. ``order_by`` prefixed with "-" sorts descending."""
        ...

    @abstractmethod
    async def insert(self, table: str, fields: dict[str, Any]) -> dict[str, Any]:
        """Create a record (``fields["id"]`` required).

        Raises:
            DuplicateRecordError: id or a unique key already exists.
        """
        ...

    @abstractmethod
    async def insert_audit_row(self, table: str, fields: dict[str, Any]) -> None:
        """Append an audit row; assigns an id when missing."""
        ...
