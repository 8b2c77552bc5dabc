"""Integration tests for the trigger API.

Runs the FastAPI app in-process through httpx ASGITransport with a
SignalHubService over InMemoryRepository. The pipeline and sync engine are
rebuilt on FakeRegistry so no provider is contacted.
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from src.signalhub.connectors.schemas import EntityType
from src.signalhub.enrichment.pipeline import EnrichmentPipeline
from src.signalhub.main import create_app
from src.signalhub.service import SignalHubService
from src.signalhub.storage.repository import CONNECTIONS, PROSPECTS, SYNC_CONFLICTS
from src.signalhub.sync.engine import SyncEngine
from tests.conftest import NOW, TENANT, FakeConnector, FakeRegistry


@pytest.fixture
def service(repository, settings, clock, crm) -> SignalHubService:
    # Connection tests go through the real registry; answer every provider call with 200
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={}))
    service = SignalHubService(repository, settings, clock, transport=transport)
    people = FakeConnector("people", {"professional.title": "CTO", "contact.email_verified": True}, paid=True)
    registry = FakeRegistry(repository, [people], crm=crm)
    service.pipeline = EnrichmentPipeline(repository, registry, settings, clock=clock)
    service.sync_engine = SyncEngine(repository, registry, settings, clock=clock)
    return service


@pytest_asyncio.fixture
async def client(service, repository):
    await repository.upsert(PROSPECTS, "p1", {
        "tenant_id": TENANT,
        "email": "jane@acmeco.com",
        "first_name": "Jane",
        "last_name": "Doe",
        "company_name": "AcmeCo",
    })
    await repository.upsert(CONNECTIONS, "conn-1", {
        "tenant_id": TENANT,
        "provider": "hubspot",
        "access_token": "token",
        "conflict_policy": "manual",
        "is_active": True,
    })
    app = create_app(service)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


# ── Infrastructure ───────────────────────────────────────────────────────────


class TestInfrastructure:
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    async def test_metrics(self, client):
        response = await client.get("/metrics")
        assert response.status_code == 200

    async def test_service_not_initialized(self):
        app = create_app()
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            response = await ac.post("/api/v1/enrichment/prospect/p1")
        assert response.status_code == 503


# ── Enrichment ───────────────────────────────────────────────────────────────


class TestEnrichmentEndpoints:
    async def test_enrich_prospect(self, client):
        response = await client.post("/api/v1/enrichment/prospect/p1")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "completed"
        assert body["signals"]["professional"]["title"] == "CTO"
        assert body["source_results"][0]["source"] == "people"
        assert body["credits_used"] == 1

    async def test_enrich_unknown_entity(self, client):
        response = await client.post("/api/v1/enrichment/prospect/ghost")
        assert response.status_code == 404

    async def test_enrich_invalid_entity_type(self, client):
        response = await client.post("/api/v1/enrichment/planet/p1")
        assert response.status_code == 422

    async def test_signals_after_enrichment(self, client):
        assert (await client.get("/api/v1/enrichment/p1/signals")).status_code == 404

        await client.post("/api/v1/enrichment/prospect/p1")
        response = await client.get("/api/v1/enrichment/p1/signals")

        assert response.status_code == 200
        assert response.json()["contact"]["email_verified"] is True

    async def test_batch_keeps_input_order(self, client):
        response = await client.post("/api/v1/enrichment/batch", json={
            "entities": [{"entity_id": "ghost"}, {"entity_id": "p1"}],
        })

        assert response.status_code == 200
        body = response.json()
        assert [r["entity"]["entity_id"] for r in body] == ["ghost", "p1"]
        assert [r["status"] for r in body] == ["failed", "completed"]

    async def test_empty_batch_rejected(self, client):
        response = await client.post("/api/v1/enrichment/batch", json={"entities": []})
        assert response.status_code == 422


# ── Sync ─────────────────────────────────────────────────────────────────────


class TestSyncEndpoints:
    async def test_pull_then_fetch_job(self, client, crm):
        crm.add(EntityType.CONTACT, "c123", {"email": "JANE@ACMECO.COM", "firstname": "Jane"})

        response = await client.post("/api/v1/sync/connections/conn-1/entities/contact")

        assert response.status_code == 200
        job = response.json()
        assert job["status"] == "completed"
        assert job["result"]["created"] == 1

        stored = await client.get(f"/api/v1/sync/jobs/{job['id']}")
        assert stored.status_code == 200
        assert stored.json()["status"] == "completed"

    async def test_unknown_connection_fails_job(self, client):
        response = await client.post("/api/v1/sync/connections/ghost/entities/contact")

        assert response.status_code == 200
        assert response.json()["status"] == "failed"

    async def test_incremental_with_since(self, client, crm):
        crm.add(EntityType.CONTACT, "c123", {"email": "jane@acmeco.com"})

        response = await client.post(
            "/api/v1/sync/connections/conn-1/entities/contact/incremental",
            json={"since": NOW.isoformat()},
        )

        assert response.status_code == 200
        assert response.json()["mode"] == "incremental"
        assert response.json()["result"]["pulled"] == 0

    async def test_unknown_job(self, client):
        assert (await client.get("/api/v1/sync/jobs/ghost")).status_code == 404

    async def test_activity_for_unmapped_record_is_skipped(self, client):
        response = await client.post("/api/v1/sync/connections/conn-1/activities", json={
            "activity_type": "call",
            "related_internal_id": "p1",
            "fields": {"subject": "Intro call"},
        })

        assert response.status_code == 200
        assert response.json()["logged"] is False


class TestConflictEndpoints:
    async def test_resolve_unknown_conflict(self, client):
        response = await client.post(
            "/api/v1/sync/conflicts/ghost/resolve", json={"resolution": "use_crm"}
        )
        assert response.status_code == 404

    async def test_resolve_already_resolved_conflict(self, client, repository):
        await repository.upsert(SYNC_CONFLICTS, "cf-1", {
            "connection_id": "conn-1",
            "entity_type": "contact",
            "internal_id": "p1",
            "external_id": "c123",
            "status": "resolved",
            "resolution": "use_crm",
        })

        response = await client.post(
            "/api/v1/sync/conflicts/cf-1/resolve", json={"resolution": "use_internal"}
        )

        assert response.status_code == 409

    async def test_list_open_conflicts(self, client, repository):
        await repository.upsert(SYNC_CONFLICTS, "cf-1", {
            "connection_id": "conn-1",
            "entity_type": "contact",
            "internal_id": "p1",
            "external_id": "c123",
            "status": "open",
            "detected_at": NOW,
        })

        response = await client.get("/api/v1/sync/connections/conn-1/conflicts")

        assert response.status_code == 200
        assert [c["id"] for c in response.json()] == ["cf-1"]


class TestConnectionEndpoints:
    async def test_connection_ok(self, client):
        response = await client.post("/api/v1/sync/connections/conn-1/test")
        assert response.status_code == 200
        assert response.json() == {"ok": True, "error": None}

    async def test_unknown_connection(self, client):
        response = await client.post("/api/v1/sync/connections/ghost/test")
        assert response.status_code == 404

    async def test_failed_check_reports_error(self, client, service):
        service.test_connection = AsyncMock(return_value=(False, "hubspot: HTTP 401"))

        response = await client.post("/api/v1/sync/connections/conn-1/test")

        assert response.json() == {"ok": False, "error": "hubspot: HTTP 401"}
        service.test_connection.assert_awaited_once_with("conn-1")
