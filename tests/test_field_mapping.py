"""Tests for field mappings: transforms, validation, both directions, and the store."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from src.signalhub.connectors.schemas import Connection, CRMEntity, EntityType, ProviderKey
from src.signalhub.storage.memory import InMemoryRepository
from src.signalhub.storage.repository import FIELD_MAPPINGS
from src.signalhub.sync.field_mapping import (
    TRANSFORMS,
    FieldMapping,
    FieldMappingStore,
    FieldPair,
    default_mapping,
    map_crm_to_internal,
    map_internal_to_crm,
)


def _hubspot(connection_id: str = "conn-1") -> Connection:
    return Connection(id=connection_id, tenant_id="t", provider=ProviderKey.HUBSPOT, access_token="tok")


# ── Transforms ──────────────────────────────────────────────────────────────


class TestTransforms:
    @pytest.mark.parametrize(
        ("name", "value", "expected"),
        [
            ("lowercase", "Jane@AcmeCo.com", "jane@acmeco.com"),
            ("uppercase", "emea", "EMEA"),
            ("strip", "  555-1000 ", "555-1000"),
            ("to_int", "1,200", 1200),
            ("to_int", 42.9, 42),
            ("to_float", "1,250.50", 1250.5),
            ("to_iso_date", "2026-03-01T12:00:00Z", "2026-03-01"),
            ("to_iso_date", datetime(2026, 3, 1, 23, tzinfo=timezone.utc), "2026-03-01"),
            ("to_bool", "Yes", True),
            ("to_bool", "off", False),
            ("to_bool", 0, False),
        ],
    )
    def test_transform_values(self, name, value, expected):
        assert TRANSFORMS[name](value) == expected

    def test_unparseable_date_raises(self):
        with pytest.raises(ValueError):
            TRANSFORMS["to_iso_date"]("next tuesday")


# ── Validation ──────────────────────────────────────────────────────────────


class TestFieldMappingValidation:
    def test_unknown_transform_rejected(self):
        with pytest.raises(ValidationError):
            FieldPair(internal="email", external="email", transform="rot13")

    def test_internal_field_mapped_twice_rejected(self):
        with pytest.raises(ValidationError):
            FieldMapping(
                entity_type=EntityType.CONTACT,
                pairs=[
                    FieldPair(internal="email", external="email"),
                    FieldPair(internal="email", external="work_email"),
                ],
            )

    def test_external_field_may_repeat(self):
        mapping = FieldMapping(
            entity_type=EntityType.CONTACT,
            pairs=[
                FieldPair(internal="email", external="email"),
                FieldPair(internal="login", external="email"),
            ],
        )
        assert len(mapping.pairs) == 2


# ── Mapping ─────────────────────────────────────────────────────────────────


class TestForwardMapping:
    """CRM -> internal."""

    def test_default_contact_mapping(self):
        entity = CRMEntity(
            id="c123",
            entity_type=EntityType.CONTACT,
            fields={"email": "Jane@AcmeCo.com", "firstname": "Jane", "hs_lead_status": "NEW"},
        )
        mapped = map_crm_to_internal(entity, default_mapping(_hubspot(), EntityType.CONTACT))

        assert mapped == {"email": "jane@acmeco.com", "first_name": "Jane"}

    def test_failed_transform_drops_only_that_field(self):
        mapping = default_mapping(_hubspot(), EntityType.ACCOUNT)
        mapped = map_crm_to_internal({"name": "AcmeCo", "numberofemployees": "many"}, mapping)

        assert mapped == {"name": "AcmeCo"}

    def test_null_values_pass_through(self):
        mapping = default_mapping(_hubspot(), EntityType.CONTACT)
        assert map_crm_to_internal({"phone": None}, mapping) == {"phone": None}


class TestReverseMapping:
    """internal -> CRM."""

    def test_skips_missing_and_none_values(self):
        mapping = default_mapping(_hubspot(), EntityType.CONTACT)
        mapped = map_internal_to_crm({"email": "a@acmeco.com", "title": None, "tenant_id": "t"}, mapping)

        assert mapped == {"email": "a@acmeco.com"}

    def test_reverse_transform_applied(self):
        mapping = FieldMapping(
            entity_type=EntityType.ACCOUNT,
            pairs=[FieldPair(internal="employee_count", external="size", reverse_transform="to_int")],
        )
        assert map_internal_to_crm({"employee_count": "220"}, mapping) == {"size": 220}


class TestDefaults:
    def test_salesforce_lead_adds_company(self):
        connection = Connection(id="sf", tenant_id="t", provider=ProviderKey.SALESFORCE)
        mapping = default_mapping(connection, EntityType.LEAD)

        assert ("company_name", "Company") in [(p.internal, p.external) for p in mapping.pairs]
        assert mapping.connection_id == "sf"

    def test_enrichment_provider_has_no_mapping(self):
        connection = Connection(id="zi", tenant_id="t", provider=ProviderKey.ZOOMINFO)
        assert default_mapping(connection, EntityType.CONTACT).pairs == []


# ── Store ───────────────────────────────────────────────────────────────────


class TestFieldMappingStore:
    async def test_falls_back_to_defaults(self):
        store = FieldMappingStore(InMemoryRepository())
        mapping = await store.get(_hubspot(), EntityType.CONTACT)

        assert mapping.pairs == default_mapping(_hubspot(), EntityType.CONTACT).pairs

    async def test_stored_mapping_wins(self):
        repository = InMemoryRepository()
        await repository.insert(FIELD_MAPPINGS, {
            "id": "fm-1",
            "connection_id": "conn-1",
            "entity_type": "contact",
            "pairs": [{"internal": "email", "external": "work_email", "transform": "lowercase"}],
        })
        mapping = await FieldMappingStore(repository).get(_hubspot(), EntityType.CONTACT)

        assert [(p.internal, p.external) for p in mapping.pairs] == [("email", "work_email")]

    async def test_invalid_stored_mapping_falls_back(self):
        repository = InMemoryRepository()
        await repository.insert(FIELD_MAPPINGS, {
            "id": "fm-1",
            "connection_id": "conn-1",
            "entity_type": "contact",
            "pairs": [{"internal": "email", "external": "email", "transform": "rot13"}],
        })
        mapping = await FieldMappingStore(repository).get(_hubspot(), EntityType.CONTACT)

        assert mapping.pairs == default_mapping(_hubspot(), EntityType.CONTACT).pairs
