"""Shared fixtures for signalhub tests.

Provides:
- A fixed UTC clock so pipeline and sync runs are repeatable
- InMemoryRepository-backed storage
- FakeConnector: scripted enrichment source (delays, errors, raw fields)
- FakeCRM: in-memory CRM implementing the CRMConnector surface the sync engine uses
- FakeRegistry: hands out the fakes in place of ConnectorRegistry
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from src.signalhub.config import Settings
from src.signalhub.connectors.registry import ActiveConnector, ConnectionNotFoundError
from src.signalhub.connectors.schemas import (
    BulkItemResult,
    BulkResult,
    Connection,
    CRMEntity,
    EntityType,
)
from src.signalhub.storage.memory import InMemoryRepository
from src.signalhub.storage.repository import CONNECTIONS

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
TENANT = "tenant-1"


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


# ── Enrichment fakes ─────────────────────────────────────────────────────────


class FakeConnector:
    """Scripted enrichment source.

    ``errors`` are raised in order, one per call, before ``raw`` is returned.
    """

    def __init__(
        self,
        name: str,
        raw: dict[str, Any] | None = None,
        *,
        paid: bool = False,
        company_level: bool = False,
        errors: list[Exception] | None = None,
        delay: float = 0.0,
    ) -> None:
        self.source_name = name
        self.raw = raw or {}
        self.paid = paid
        self.company_level = company_level
        self.errors = list(errors or [])
        self.delay = delay
        self.calls = 0
        self.targets: list[Any] = []

    async def enrich(self, target: Any) -> dict[str, Any]:
        self.calls += 1
        self.targets.append(target)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.errors:
            raise self.errors.pop(0)
        return dict(self.raw)


# ── CRM fake ─────────────────────────────────────────────────────────────────


class FakeCRM:
    """In-memory CRM. Records every write for assertions."""

    def __init__(self, clock: FixedClock) -> None:
        self._clock = clock
        self.entities: dict[EntityType, dict[str, CRMEntity]] = {}
        self.updates: list[tuple[EntityType, str, dict[str, Any]]] = []
        self.activities: list[dict[str, Any]] = []
        self.reject_create: set[int] = set()
        self.fail_bulk: Exception | None = None
        self.fail_activity: Exception | None = None
        self._next_id = 0
        self.page_limit = 3
        self.page_requests: list[tuple[int, str | None]] = []

    def add(
        self,
        entity_type: EntityType,
        external_id: str,
        fields: dict[str, Any],
        updated_at: datetime | None = None,
    ) -> CRMEntity:
        entity = CRMEntity(
            id=external_id,
            entity_type=entity_type,
            fields=fields,
            updated_at=updated_at or self._clock(),
        )
        self.entities.setdefault(entity_type, {})[external_id] = entity
        return entity

    def _table(self, entity_type: EntityType) -> dict[str, CRMEntity]:
        return self.entities.setdefault(entity_type, {})

    async def get_entity(self, entity_type: EntityType, external_id: str) -> CRMEntity | None:
        return self._table(entity_type).get(external_id)

    async def query_entities(
        self,
        entity_type: EntityType,
        filter: dict[str, Any] | None = None,
        limit: int = 100,
        offset: int = 0,
        order_by: str | None = None,
    ) -> list[CRMEntity]:
        rows = sorted(self._table(entity_type).values(), key=lambda e: e.id)
        if filter:
            rows = [e for e in rows if all(e.fields.get(k) == v for k, v in filter.items())]
        return rows[offset:offset + limit]

    async def query_page(
        self, entity_type: EntityType, limit: int, cursor: str | None = None
    ) -> tuple[list[CRMEntity], str | None]:
        self.page_requests.append((limit, cursor))
        offset = int(cursor or 0)
        page = await self.query_entities(entity_type, limit=min(limit, self.page_limit), offset=offset)
        more = offset + len(page) < len(self._table(entity_type))
        return page, str(offset + len(page)) if more else None

    async def get_recently_modified(
        self, entity_type: EntityType, since: datetime, limit: int = 100
    ) -> list[CRMEntity]:
        rows = [e for e in self._table(entity_type).values() if e.updated_at and e.updated_at > since]
        rows.sort(key=lambda e: e.updated_at)
        return rows[:limit]

    async def create_entity(self, entity_type: EntityType, fields: dict[str, Any]) -> CRMEntity:
        self._next_id += 1
        return self.add(entity_type, f"crm-{self._next_id}", dict(fields))

    async def update_entity(
        self, entity_type: EntityType, external_id: str, fields: dict[str, Any]
    ) -> CRMEntity:
        self.updates.append((entity_type, external_id, dict(fields)))
        current = self._table(entity_type)[external_id]
        return self.add(entity_type, external_id, {**current.fields, **fields})

    async def bulk_create(self, entity_type: EntityType, records: list[dict[str, Any]]) -> BulkResult:
        if self.fail_bulk is not None:
            raise self.fail_bulk
        items = []
        for index, fields in enumerate(records):
            if index in self.reject_create:
                items.append(BulkItemResult(index=index, success=False, error="rejected"))
                continue
            entity = await self.create_entity(entity_type, fields)
            items.append(BulkItemResult(index=index, success=True, entity=entity))
        return BulkResult(items=items)

    async def log_activity(
        self,
        activity_type: str,
        related_type: EntityType,
        related_external_id: str,
        fields: dict[str, Any],
    ) -> CRMEntity:
        if self.fail_activity is not None:
            raise self.fail_activity
        self.activities.append({
            "activity_type": activity_type,
            "related_type": related_type,
            "related_external_id": related_external_id,
            "fields": fields,
        })
        return CRMEntity(id=f"act-{len(self.activities)}", entity_type=EntityType.NOTE, fields=fields)


# ── Registry fake ────────────────────────────────────────────────────────────


class FakeRegistry:
    """Stands in for ConnectorRegistry: enrichment fakes plus one CRM."""

    def __init__(
        self,
        repository: InMemoryRepository,
        connectors: list[FakeConnector] | None = None,
        crm: FakeCRM | None = None,
    ) -> None:
        self._repository = repository
        self.connectors = list(connectors or [])
        self.crm = crm

    async def build_active_connectors(self, tenant_id: str) -> list[ActiveConnector]:
        return [
            ActiveConnector(c.source_name, c, position + 1)  # type: ignore[arg-type]
            for position, c in enumerate(self.connectors)
        ]

    async def load_connection(self, connection_id: str) -> Connection:
        row = await self._repository.get(CONNECTIONS, connection_id)
        if row is None:
            raise ConnectionNotFoundError(f"connection {connection_id} not found")
        return Connection.model_validate(row)

    async def build_crm_connector(self, connection_id: str) -> FakeCRM:
        await self.load_connection(connection_id)
        assert self.crm is not None
        return self.crm


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def settings() -> Settings:
    """Settings with short timeouts and no fallback provider keys."""
    return Settings(
        _env_file=None,
        DATABASE_URL="sqlite+aiosqlite:///:memory:",
        ZOOMINFO_API_KEY="",
        APOLLO_API_KEY="",
        CLEARBIT_API_KEY="",
        PROXYCURL_API_KEY="",
        NEWS_API_KEY="",
        BUILTWITH_API_KEY="",
        CONNECTOR_TIMEOUT_SECONDS=0.2,
        PIPELINE_DEADLINE_SECONDS=1.0,
        RATE_LIMIT_MAX_WAIT_SECONDS=30.0,
        SYNC_PAGE_SIZE=2,
        SYNC_MAX_RECORDS=50,
        SYNC_WORKER_POOL_SIZE=2,
    )


@pytest.fixture
def crm(clock) -> FakeCRM:
    return FakeCRM(clock)
