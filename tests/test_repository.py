"""Tests for SQLAlchemyRepository on an aiosqlite database.

Covers custom-field folding, timezone round trips, ordering/limits, and the
unique constraints that back the identity-mapping bijection.
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import NullPool

from src.signalhub.core.database import Base
from src.signalhub.storage import models  # noqa: F401 -- register tables
from src.signalhub.storage.repository import (
    ENTITY_MAPPINGS,
    PROSPECTS,
    SYNC_LOG,
    DuplicateRecordError,
    RepositoryError,
)
from src.signalhub.storage.sql import SQLAlchemyRepository

NOW = datetime(2026, 3, 1, 12, tzinfo=timezone.utc)


@pytest.fixture
async def sql_repository(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'signalhub.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async def session_factory():
        async with AsyncSession(engine, expire_on_commit=False) as session:
            yield session

    yield SQLAlchemyRepository(session_factory)
    await engine.dispose()


def _mapping(mapping_id: str, internal_id: str, external_id: str, connection_id: str = "conn-1") -> dict:
    return {
        "id": mapping_id,
        "connection_id": connection_id,
        "entity_type": "contact",
        "internal_id": internal_id,
        "external_id": external_id,
    }


# ── Records ─────────────────────────────────────────────────────────────────


class TestUpsert:
    async def test_creates_then_merges(self, sql_repository):
        await sql_repository.upsert(PROSPECTS, "p-1", {"tenant_id": "t", "email": "jane@acmeco.com"})
        stored = await sql_repository.upsert(PROSPECTS, "p-1", {"title": "CTO"})

        assert stored["email"] == "jane@acmeco.com"
        assert stored["title"] == "CTO"

    async def test_unknown_keys_fold_into_custom_fields(self, sql_repository):
        await sql_repository.upsert(PROSPECTS, "p-1", {"tenant_id": "t", "lead_source": "webinar"})
        await sql_repository.upsert(PROSPECTS, "p-1", {"region": "EMEA"})

        stored = await sql_repository.get(PROSPECTS, "p-1")
        assert stored["lead_source"] == "webinar"
        assert stored["region"] == "EMEA"
        assert "custom_fields" not in stored

    async def test_json_columns_accept_datetimes(self, sql_repository):
        await sql_repository.upsert(
            PROSPECTS, "p-1", {"tenant_id": "t", "enrichment_data": {"enriched_at": NOW}}
        )
        stored = await sql_repository.get(PROSPECTS, "p-1")
        assert stored["enrichment_data"] == {"enriched_at": NOW.isoformat()}

    async def test_timestamps_come_back_utc(self, sql_repository):
        await sql_repository.upsert(PROSPECTS, "p-1", {"tenant_id": "t", "updated_at": NOW.isoformat()})
        stored = await sql_repository.get(PROSPECTS, "p-1")
        assert stored["updated_at"] == NOW
        assert stored["updated_at"].tzinfo is not None

    async def test_unknown_table(self, sql_repository):
        with pytest.raises(RepositoryError):
            await sql_repository.upsert("nope", "x", {})

    async def test_missing_record(self, sql_repository):
        assert await sql_repository.get(PROSPECTS, "ghost") is None


# ── Queries ─────────────────────────────────────────────────────────────────


class TestQuery:
    async def test_filter_order_and_limit(self, sql_repository):
        for index, tenant in enumerate(["a", "b", "a", "a"]):
            await sql_repository.upsert(PROSPECTS, f"p-{index}", {"tenant_id": tenant, "title": f"T{index}"})

        rows = await sql_repository.query(PROSPECTS, {"tenant_id": "a"}, order_by="-title", limit=2)

        assert [row["id"] for row in rows] == ["p-3", "p-2"]

    async def test_none_filter_matches_null(self, sql_repository):
        await sql_repository.upsert(PROSPECTS, "p-1", {"tenant_id": "t"})
        await sql_repository.upsert(PROSPECTS, "p-2", {"tenant_id": "t", "email": "x@acmeco.com"})

        rows = await sql_repository.query(PROSPECTS, {"email": None})

        assert [row["id"] for row in rows] == ["p-1"]

    async def test_filter_on_unknown_column_rejected(self, sql_repository):
        with pytest.raises(RepositoryError):
            await sql_repository.query(PROSPECTS, {"lead_source": "webinar"})


# ── Unique constraints ──────────────────────────────────────────────────────


class TestInsertConstraints:
    """Each internal id and each external id maps at most once per connection."""

    async def test_duplicate_primary_key(self, sql_repository):
        await sql_repository.insert(ENTITY_MAPPINGS, _mapping("m-1", "p-1", "c-1"))
        with pytest.raises(DuplicateRecordError):
            await sql_repository.insert(ENTITY_MAPPINGS, _mapping("m-1", "p-2", "c-2"))

    async def test_duplicate_internal_id(self, sql_repository):
        await sql_repository.insert(ENTITY_MAPPINGS, _mapping("m-1", "p-1", "c-1"))
        with pytest.raises(DuplicateRecordError):
            await sql_repository.insert(ENTITY_MAPPINGS, _mapping("m-2", "p-1", "c-2"))

    async def test_duplicate_external_id(self, sql_repository):
        await sql_repository.insert(ENTITY_MAPPINGS, _mapping("m-1", "p-1", "c-1"))
        with pytest.raises(DuplicateRecordError):
            await sql_repository.insert(ENTITY_MAPPINGS, _mapping("m-2", "p-2", "c-1"))

    async def test_same_pair_on_other_connection(self, sql_repository):
        await sql_repository.insert(ENTITY_MAPPINGS, _mapping("m-1", "p-1", "c-1"))
        await sql_repository.insert(ENTITY_MAPPINGS, _mapping("m-2", "p-1", "c-1", connection_id="conn-2"))

        rows = await sql_repository.query(ENTITY_MAPPINGS, {"internal_id": "p-1"})
        assert len(rows) == 2

    async def test_failed_insert_leaves_store_usable(self, sql_repository):
        await sql_repository.insert(ENTITY_MAPPINGS, _mapping("m-1", "p-1", "c-1"))
        with pytest.raises(DuplicateRecordError):
            await sql_repository.insert(ENTITY_MAPPINGS, _mapping("m-2", "p-1", "c-9"))
        await sql_repository.insert(ENTITY_MAPPINGS, _mapping("m-3", "p-3", "c-3"))

        assert await sql_repository.get(ENTITY_MAPPINGS, "m-3") is not None


class TestAuditRows:
    async def test_audit_rows_get_fresh_ids(self, sql_repository):
        row = {"connection_id": "conn-1", "entity_type": "contact", "action": "pull", "outcome": "success"}
        await sql_repository.insert_audit_row(SYNC_LOG, row)
        await sql_repository.insert_audit_row(SYNC_LOG, row)

        assert len(await sql_repository.query(SYNC_LOG, {"connection_id": "conn-1"})) == 2
