"""Tests for the CRM sync engine.

Uses InMemoryRepository (which enforces the identity-mapping unique
constraints) and FakeCRM in place of a provider connector.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from src.signalhub.connectors.errors import SyncError
from src.signalhub.connectors.schemas import EntityType, SyncDirection
from src.signalhub.enrichment.pipeline import EnrichmentPipeline
from src.signalhub.enrichment.schemas import EntityRef
from src.signalhub.storage.repository import (
    CONNECTIONS,
    ENTITY_MAPPINGS,
    FIELD_MAPPINGS,
    PROSPECTS,
    SYNC_CONFLICTS,
    SYNC_JOBS,
    SYNC_LOG,
    DuplicateRecordError,
)
from src.signalhub.sync.engine import SyncEngine, conflict_id
from src.signalhub.sync.schemas import (
    ConflictAlreadyResolvedError,
    ConflictNotFoundError,
    ConflictResolution,
    EntityIdentityMapping,
    InvalidTransitionError,
    SyncJob,
    SyncJobStatus,
    SyncResult,
)
from tests.conftest import NOW, TENANT, FakeConnector, FakeRegistry

CONTACT = EntityType.CONTACT


# ── Helpers ────────────────────────────────────────────────────────────────


async def _add_connection(repository, connection_id="conn-1", **fields):
    await repository.upsert(CONNECTIONS, connection_id, {
        "tenant_id": TENANT,
        "provider": "hubspot",
        "access_token": "token",
        "conflict_policy": "manual",
        **fields,
    })


@pytest.fixture
async def engine(repository, settings, clock, crm):
    await _add_connection(repository)
    registry = FakeRegistry(repository, crm=crm)
    return SyncEngine(repository, registry, settings, clock=clock)


def _hubspot_contact(email="jane@acmeco.com", first="Jane"):
    return {"email": email.upper(), "firstname": first, "lastname": "Doe", "jobtitle": "VP Sales"}


async def _mappings(repository):
    return await repository.query(ENTITY_MAPPINGS, {"connection_id": "conn-1"})


# ── Pull ───────────────────────────────────────────────────────────────────


class TestPull:
    """Full pulls create mapped prospects and update them on re-run."""

    async def test_new_contact_creates_prospect_and_mapping(self, engine, repository, crm):
        crm.add(CONTACT, "c123", _hubspot_contact())

        job = await engine.sync_entity_type("conn-1", CONTACT)

        assert job.status == SyncJobStatus.COMPLETED
        assert job.result.created == 1
        mappings = await _mappings(repository)
        assert len(mappings) == 1
        assert mappings[0]["external_id"] == "c123"
        prospect = await repository.get(PROSPECTS, mappings[0]["internal_id"])
        assert prospect["email"] == "jane@acmeco.com"
        assert prospect["title"] == "VP Sales"
        assert prospect["tenant_id"] == TENANT

    async def test_second_pull_updates_instead_of_duplicating(self, engine, repository, crm, clock):
        crm.add(CONTACT, "c123", _hubspot_contact())
        await engine.sync_entity_type("conn-1", CONTACT)

        clock.advance(hours=1)
        crm.add(CONTACT, "c123", _hubspot_contact(first="Janet"))
        job = await engine.sync_entity_type("conn-1", CONTACT)

        assert job.result.created == 0
        assert job.result.updated == 1
        mappings = await _mappings(repository)
        assert len(mappings) == 1
        prospects = await repository.query(PROSPECTS)
        assert len(prospects) == 1
        assert prospects[0]["first_name"] == "Janet"

    async def test_pages_through_all_records(self, engine, repository, crm):
        for n in range(5):
            crm.add(CONTACT, f"c{n}", _hubspot_contact(email=f"p{n}@acmeco.com"))
        job = await engine.sync_entity_type("conn-1", CONTACT)
        assert job.result.pulled == 5
        assert job.result.created == 5
        assert len(await _mappings(repository)) == 5
        assert crm.page_requests == [(50, None), (47, "3")]

    async def test_max_records_caps_pull(self, engine, repository, crm, settings):
        settings.SYNC_MAX_RECORDS = 3
        for n in range(5):
            crm.add(CONTACT, f"c{n}", _hubspot_contact(email=f"p{n}@acmeco.com"))
        job = await engine.sync_entity_type("conn-1", CONTACT)
        assert job.result.pulled == 3

    async def test_stored_field_mapping_overrides_default(self, engine, repository, crm):
        await repository.upsert(FIELD_MAPPINGS, "fm-1", {
            "connection_id": "conn-1",
            "entity_type": "contact",
            "pairs": [{"internal": "title", "external": "custom_title", "transform": "uppercase"}],
        })
        crm.add(CONTACT, "c1", {"custom_title": "vp sales", "email": "x@y.com"})
        await engine.sync_entity_type("conn-1", CONTACT)

        prospect = (await repository.query(PROSPECTS))[0]
        assert prospect["title"] == "VP SALES"
        assert "email" not in prospect

    async def test_last_sync_at_recorded(self, engine, repository, crm):
        crm.add(CONTACT, "c1", _hubspot_contact())
        await engine.sync_entity_type("conn-1", CONTACT)
        connection = await repository.get(CONNECTIONS, "conn-1")
        assert connection["last_sync_at"] == NOW

    async def test_every_attempt_is_audited(self, engine, repository, crm):
        crm.add(CONTACT, "c1", _hubspot_contact())
        job = await engine.sync_entity_type("conn-1", CONTACT)
        rows = await repository.query(SYNC_LOG, {"job_id": job.id})
        assert [(r["action"], r["outcome"]) for r in rows] == [("create", "success")]


class TestIdentityMapping:
    """The (connection, type, internal) and (connection, type, external) keys are unique."""

    async def test_second_mapping_for_internal_id_rejected(self, repository):
        base = {"connection_id": "conn-1", "entity_type": "contact", "last_synced_at": NOW}
        await repository.insert(ENTITY_MAPPINGS, {**base, "id": "m1", "internal_id": "p1", "external_id": "c1"})
        with pytest.raises(DuplicateRecordError):
            await repository.insert(ENTITY_MAPPINGS, {**base, "id": "m2", "internal_id": "p1", "external_id": "c2"})

    async def test_second_mapping_for_external_id_rejected(self, repository):
        base = {"connection_id": "conn-1", "entity_type": "contact", "last_synced_at": NOW}
        await repository.insert(ENTITY_MAPPINGS, {**base, "id": "m1", "internal_id": "p1", "external_id": "c1"})
        with pytest.raises(DuplicateRecordError):
            await repository.insert(ENTITY_MAPPINGS, {**base, "id": "m2", "internal_id": "p2", "external_id": "c1"})

    async def test_same_ids_on_other_connection_allowed(self, repository):
        base = {"entity_type": "contact", "internal_id": "p1", "external_id": "c1"}
        await repository.insert(ENTITY_MAPPINGS, {**base, "id": "m1", "connection_id": "conn-1"})
        await repository.insert(ENTITY_MAPPINGS, {**base, "id": "m2", "connection_id": "conn-2"})

    async def test_pull_writes_identity_mapping_row(self, engine, repository, crm):
        crm.add(CONTACT, "c123", _hubspot_contact())
        await engine.sync_entity_type("conn-1", CONTACT)

        [row] = await _mappings(repository)
        identity = EntityIdentityMapping.model_validate(row)

        assert identity.entity_type == CONTACT
        assert identity.external_id == "c123"
        assert identity.last_synced_at == NOW

    def test_naive_sync_time_read_as_utc(self):
        identity = EntityIdentityMapping(
            id="m1", connection_id="conn-1", entity_type=CONTACT,
            internal_id="p1", external_id="c1", last_synced_at=NOW.replace(tzinfo=None),
        )
        assert identity.last_synced_at == NOW
        assert identity.to_row()["entity_type"] == "contact"

    async def test_concurrent_pulls_do_not_duplicate(self, engine, repository, crm):
        crm.add(CONTACT, "c123", _hubspot_contact())
        await asyncio.gather(
            engine.sync_entity_type("conn-1", CONTACT),
            engine.sync_entity_type("conn-1", CONTACT),
        )
        assert len(await _mappings(repository)) == 1


# ── Incremental ────────────────────────────────────────────────────────────


class TestIncrementalSync:
    async def test_since_now_upserts_nothing(self, engine, repository, crm):
        crm.add(CONTACT, "c1", _hubspot_contact())
        job = await engine.incremental_sync("conn-1", CONTACT, since=NOW)

        assert job.status == SyncJobStatus.COMPLETED
        assert job.result.pulled == 0
        assert await repository.query(PROSPECTS) == []

    async def test_only_modified_records_pulled(self, engine, repository, crm):
        crm.add(CONTACT, "old", _hubspot_contact(email="old@acmeco.com"), updated_at=NOW - timedelta(days=2))
        crm.add(CONTACT, "new", _hubspot_contact(email="new@acmeco.com"), updated_at=NOW - timedelta(hours=1))
        job = await engine.incremental_sync("conn-1", CONTACT, since=NOW - timedelta(days=1))

        assert job.result.pulled == 1
        assert [m["external_id"] for m in await _mappings(repository)] == ["new"]

    async def test_defaults_to_last_sync(self, engine, repository, crm):
        await _add_connection(repository, last_sync_at=NOW - timedelta(hours=2))
        crm.add(CONTACT, "stale", _hubspot_contact(), updated_at=NOW - timedelta(days=1))
        job = await engine.incremental_sync("conn-1", CONTACT)
        assert job.result.pulled == 0

    async def test_never_synced_falls_back_to_full_pull(self, engine, crm):
        crm.add(CONTACT, "c1", _hubspot_contact(), updated_at=NOW - timedelta(days=400))
        job = await engine.incremental_sync("conn-1", CONTACT)
        assert job.result.pulled == 1


# ── Push ───────────────────────────────────────────────────────────────────


class TestPush:
    async def test_unmapped_records_are_created_and_mapped(self, engine, repository, crm):
        await repository.upsert(PROSPECTS, "p1", {"tenant_id": TENANT, "email": "a@acmeco.com", "first_name": "A"})
        await repository.upsert(PROSPECTS, "p2", {"tenant_id": TENANT, "email": "b@acmeco.com"})
        await repository.upsert(PROSPECTS, "other", {"tenant_id": "tenant-2", "email": "c@acmeco.com"})

        job = await engine.sync_entity_type("conn-1", CONTACT, SyncDirection.PUSH)

        assert job.status == SyncJobStatus.COMPLETED
        assert job.result.pushed == 2
        mapped = {m["internal_id"] for m in await _mappings(repository)}
        assert mapped == {"p1", "p2"}
        created = {e.fields.get("email") for e in crm.entities[CONTACT].values()}
        assert created == {"a@acmeco.com", "b@acmeco.com"}

    async def test_mapped_records_are_not_pushed_again(self, engine, repository, crm):
        await repository.upsert(PROSPECTS, "p1", {"tenant_id": TENANT, "email": "a@acmeco.com"})
        await engine.sync_entity_type("conn-1", CONTACT, SyncDirection.PUSH)
        job = await engine.sync_entity_type("conn-1", CONTACT, SyncDirection.PUSH)
        assert job.result.pushed == 0
        assert len(crm.entities[CONTACT]) == 1

    async def test_rejected_item_is_reported_not_fatal(self, engine, repository, crm):
        await repository.upsert(PROSPECTS, "p1", {"tenant_id": TENANT, "email": "a@acmeco.com", "created_at": NOW})
        await repository.upsert(PROSPECTS, "p2", {
            "tenant_id": TENANT, "email": "b@acmeco.com", "created_at": NOW + timedelta(seconds=1),
        })
        crm.reject_create = {1}

        job = await engine.sync_entity_type("conn-1", CONTACT, SyncDirection.PUSH)

        assert job.status == SyncJobStatus.COMPLETED
        assert job.result.pushed == 1
        assert job.result.failed == 1
        assert job.result.errors[0].internal_id == "p2"

    async def test_record_without_mapped_fields_is_skipped(self, engine, repository):
        await repository.upsert(PROSPECTS, "p1", {"tenant_id": TENANT})
        job = await engine.sync_entity_type("conn-1", CONTACT, SyncDirection.PUSH)
        assert job.result.skipped == 1
        assert job.status == SyncJobStatus.COMPLETED

    async def test_all_failed_marks_job_failed(self, engine, repository, crm):
        await repository.upsert(PROSPECTS, "p1", {"tenant_id": TENANT, "email": "a@acmeco.com"})
        crm.fail_bulk = SyncError("hubspot API error: 500")

        job = await engine.sync_entity_type("conn-1", CONTACT, SyncDirection.PUSH)

        assert job.status == SyncJobStatus.FAILED
        assert job.error == "all entities failed"
        assert job.result.failed == 1

    async def test_bidirectional_pulls_then_pushes(self, engine, repository, crm):
        crm.add(CONTACT, "c1", _hubspot_contact())
        await repository.upsert(PROSPECTS, "local", {"tenant_id": TENANT, "email": "local@acmeco.com"})

        job = await engine.sync_entity_type("conn-1", CONTACT, SyncDirection.BIDIRECTIONAL)

        assert job.result.created == 1
        assert job.result.pushed == 1
        assert len(await _mappings(repository)) == 2
        assert len(crm.entities[CONTACT]) == 2


# ── Conflicts ──────────────────────────────────────────────────────────────


async def _conflicting_contact(engine, repository, crm, clock):
    """Pull c1, then change it on both sides after the sync."""
    crm.add(CONTACT, "c1", _hubspot_contact())
    await engine.sync_entity_type("conn-1", CONTACT)
    internal_id = (await _mappings(repository))[0]["internal_id"]

    clock.advance(hours=1)
    await repository.upsert(PROSPECTS, internal_id, {"title": "Chief Revenue Officer", "updated_at": clock()})
    crm.add(CONTACT, "c1", {**_hubspot_contact(), "jobtitle": "SVP Sales"}, updated_at=clock())
    clock.advance(hours=1)
    return internal_id


class TestConflicts:
    async def test_enrichment_write_counts_as_internal_change(self, engine, repository, crm, clock, settings):
        crm.add(CONTACT, "c1", _hubspot_contact())
        await engine.sync_entity_type("conn-1", CONTACT)
        internal_id = (await _mappings(repository))[0]["internal_id"]

        clock.advance(hours=1)
        people = FakeConnector("people", {"professional.title": "CTO"})
        pipeline = EnrichmentPipeline(repository, FakeRegistry(repository, [people]), settings, clock=clock)
        await pipeline.enrich_entity(EntityRef(entity_id=internal_id))
        crm.add(CONTACT, "c1", {**_hubspot_contact(), "jobtitle": "SVP Sales"}, updated_at=clock())
        clock.advance(hours=1)

        job = await engine.sync_entity_type("conn-1", CONTACT)

        assert job.result.conflicts == 1
        assert (await repository.get(PROSPECTS, internal_id))["title"] == "CTO"

    async def test_manual_policy_records_open_conflict(self, engine, repository, crm, clock):
        internal_id = await _conflicting_contact(engine, repository, crm, clock)

        job = await engine.sync_entity_type("conn-1", CONTACT)

        assert job.result.conflicts == 1
        conflicts = await repository.query(SYNC_CONFLICTS)
        assert len(conflicts) == 1
        assert conflicts[0]["status"] == "open"
        assert conflicts[0]["crm_data"]["jobtitle"] == "SVP Sales"
        prospect = await repository.get(PROSPECTS, internal_id)
        assert prospect["title"] == "Chief Revenue Officer"

    async def test_manual_conflict_recorded_once(self, engine, repository, crm, clock):
        await _conflicting_contact(engine, repository, crm, clock)
        await engine.sync_entity_type("conn-1", CONTACT)
        await engine.sync_entity_type("conn-1", CONTACT)
        assert len(await repository.query(SYNC_CONFLICTS)) == 1

    async def test_use_crm_policy_overwrites_internal(self, engine, repository, crm, clock):
        await _add_connection(repository, conflict_policy="use_crm")
        internal_id = await _conflicting_contact(engine, repository, crm, clock)

        await engine.sync_entity_type("conn-1", CONTACT)

        prospect = await repository.get(PROSPECTS, internal_id)
        assert prospect["title"] == "SVP Sales"
        assert await repository.query(SYNC_CONFLICTS) == []

    async def test_use_internal_policy_updates_crm(self, engine, repository, crm, clock):
        await _add_connection(repository, conflict_policy="use_internal")
        internal_id = await _conflicting_contact(engine, repository, crm, clock)

        await engine.sync_entity_type("conn-1", CONTACT)

        assert crm.updates[-1][1] == "c1"
        assert crm.updates[-1][2]["jobtitle"] == "Chief Revenue Officer"
        prospect = await repository.get(PROSPECTS, internal_id)
        assert prospect["title"] == "Chief Revenue Officer"

    async def test_crm_only_change_is_not_a_conflict(self, engine, repository, crm, clock):
        crm.add(CONTACT, "c1", _hubspot_contact())
        await engine.sync_entity_type("conn-1", CONTACT)
        clock.advance(hours=1)
        crm.add(CONTACT, "c1", {**_hubspot_contact(), "jobtitle": "SVP Sales"})
        clock.advance(hours=1)

        job = await engine.sync_entity_type("conn-1", CONTACT)

        assert job.result.conflicts == 0
        assert job.result.updated == 1

    async def test_resolve_use_crm(self, engine, repository, crm, clock):
        internal_id = await _conflicting_contact(engine, repository, crm, clock)
        await engine.sync_entity_type("conn-1", CONTACT)
        conflict = (await repository.query(SYNC_CONFLICTS))[0]

        resolved = await engine.resolve_conflict(conflict["id"], ConflictResolution.USE_CRM)

        assert resolved.status.value == "resolved"
        assert resolved.resolution == ConflictResolution.USE_CRM
        assert (await repository.get(PROSPECTS, internal_id))["title"] == "SVP Sales"
        assert (await repository.get(SYNC_CONFLICTS, conflict["id"]))["status"] == "resolved"

    async def test_resolve_use_internal(self, engine, repository, crm, clock):
        await _conflicting_contact(engine, repository, crm, clock)
        await engine.sync_entity_type("conn-1", CONTACT)
        conflict = (await repository.query(SYNC_CONFLICTS))[0]

        await engine.resolve_conflict(conflict["id"], ConflictResolution.USE_INTERNAL)

        assert crm.entities[CONTACT]["c1"].fields["jobtitle"] == "Chief Revenue Officer"

    async def test_resolve_twice_rejected(self, engine, repository, crm, clock):
        await _conflicting_contact(engine, repository, crm, clock)
        await engine.sync_entity_type("conn-1", CONTACT)
        conflict = (await repository.query(SYNC_CONFLICTS))[0]
        await engine.resolve_conflict(conflict["id"], ConflictResolution.USE_CRM)

        with pytest.raises(ConflictAlreadyResolvedError):
            await engine.resolve_conflict(conflict["id"], ConflictResolution.USE_CRM)

    async def test_resolve_unknown_conflict(self, engine):
        with pytest.raises(ConflictNotFoundError):
            await engine.resolve_conflict("missing", ConflictResolution.USE_CRM)

    def test_conflict_id_is_deterministic(self):
        a = conflict_id("conn-1", CONTACT, "p1", NOW)
        assert a == conflict_id("conn-1", CONTACT, "p1", NOW)
        assert a != conflict_id("conn-1", CONTACT, "p1", NOW + timedelta(seconds=1))


# ── Activities ─────────────────────────────────────────────────────────────


class TestLogActivity:
    async def test_unmapped_record_is_skipped(self, engine, crm):
        result = await engine.log_activity_to_crm("conn-1", "call", CONTACT, "p-unknown", {"hs_call_body": "hi"})
        assert not result.logged
        assert result.skipped_reason
        assert crm.activities == []

    async def test_logs_against_mapped_record(self, engine, repository, crm):
        crm.add(CONTACT, "c1", _hubspot_contact())
        await engine.sync_entity_type("conn-1", CONTACT)
        internal_id = (await _mappings(repository))[0]["internal_id"]

        result = await engine.log_activity_to_crm("conn-1", "call", CONTACT, internal_id, {"hs_call_body": "hi"})

        assert result.logged
        assert result.external_id == "act-1"
        assert crm.activities[0]["related_external_id"] == "c1"

    async def test_connector_failure_is_reported_not_raised(self, engine, repository, crm):
        crm.add(CONTACT, "c1", _hubspot_contact())
        await engine.sync_entity_type("conn-1", CONTACT)
        internal_id = (await _mappings(repository))[0]["internal_id"]
        crm.fail_activity = SyncError("hubspot API error: 400")

        result = await engine.log_activity_to_crm("conn-1", "call", CONTACT, internal_id, {})

        assert not result.logged
        assert "400" in result.error


# ── Job state machine ──────────────────────────────────────────────────────


class TestSyncJobStateMachine:
    def _job(self) -> SyncJob:
        return SyncJob(id="j1", connection_id="conn-1", entity_type=CONTACT, direction=SyncDirection.PULL)

    def test_happy_path(self):
        job = self._job()
        job.start(NOW)
        job.complete(SyncResult(), NOW)
        assert job.status == SyncJobStatus.COMPLETED
        assert job.is_terminal

    def test_pending_can_fail(self):
        job = self._job()
        job.fail("setup", NOW)
        assert job.status == SyncJobStatus.FAILED

    def test_cannot_complete_without_starting(self):
        with pytest.raises(InvalidTransitionError):
            self._job().complete(SyncResult(), NOW)

    def test_terminal_state_is_final(self):
        job = self._job()
        job.start(NOW)
        job.fail("boom", NOW)
        with pytest.raises(InvalidTransitionError):
            job.complete(SyncResult(), NOW)

    async def test_unknown_connection_fails_job(self, engine, repository):
        job = await engine.sync_entity_type("missing", CONTACT)
        assert job.status == SyncJobStatus.FAILED
        stored = await repository.get(SYNC_JOBS, job.id)
        assert stored["status"] == "failed"

    async def test_corrupt_connection_row_fails_job(self, engine, repository):
        await _add_connection(repository, "conn-bad", provider="myspace")

        job = await engine.sync_entity_type("conn-bad", CONTACT)

        assert job.status == SyncJobStatus.FAILED
        assert job.error.startswith("setup failed")
        stored = await repository.get(SYNC_JOBS, job.id)
        assert stored["status"] == "failed"
        assert stored["completed_at"] is not None

    async def test_cancel_event_fails_job(self, engine, crm):
        crm.add(CONTACT, "c1", _hubspot_contact())
        cancel = asyncio.Event()
        cancel.set()
        job = await engine.sync_entity_type("conn-1", CONTACT, cancel_event=cancel)
        assert job.status == SyncJobStatus.FAILED
        assert "cancelled" in job.error
