"""Field mappings between internal records and CRM entities.

Defines:
- TRANSFORMS: named value transforms usable in a mapping pair
- FieldPair / FieldMapping: per (connection, entity type) mapping; internal
  field names are unique within one mapping
- map_crm_to_internal() / map_internal_to_crm(): forward and reverse mapping.
  External fields without a pair are ignored.
- DEFAULT_FIELD_MAPPINGS: provider defaults used when a connection has none
- FieldMappingStore: read-only lookup of a connection's mapping
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import date, datetime
from typing import Any

import structlog
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from src.signalhub.connectors.schemas import Connection, CRMEntity, EntityType, ProviderKey
from src.signalhub.core.clock import parse_datetime
from src.signalhub.storage.repository import FIELD_MAPPINGS, Repository

logger = structlog.get_logger(__name__)


# ── Transforms ──────────────────────────────────────────────────────────────


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes", "y", "on"}
    return bool(value)


def _to_iso_date(value: Any) -> str:
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    parsed = parse_datetime(value)
    if parsed is None:
        raise ValueError(f"not a date: {value!r}")
    return parsed.date().isoformat()


def _to_int(value: Any) -> int:
    if isinstance(value, str):
        value = value.strip().replace(",", "")
    return int(float(value))


TRANSFORMS: dict[str, Callable[[Any], Any]] = {
    "lowercase": lambda v: str(v).lower(),
    "uppercase": lambda v: str(v).upper(),
    "strip": lambda v: str(v).strip(),
    "to_int": _to_int,
    "to_float": lambda v: float(str(v).replace(",", "")) if isinstance(v, str) else float(v),
    "to_iso_date": _to_iso_date,
    "to_bool": _to_bool,
}


# ── Mapping Models ──────────────────────────────────────────────────────────


class FieldPair(BaseModel):
    """internal <-> external field, with optional transforms per direction."""

    internal: str
    external: str
    transform: str | None = None
    reverse_transform: str | None = None

    @field_validator("transform", "reverse_transform")
    @classmethod
    def _known_transform(cls, value: str | None) -> str | None:
        if value is not None and value not in TRANSFORMS:
            raise ValueError(f"unknown transform {value!r}")
        return value


class FieldMapping(BaseModel):
    """Ordered field pairs for one connection and entity type."""

    connection_id: str | None = None
    entity_type: EntityType
    pairs: list[FieldPair] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_internal_fields(self) -> FieldMapping:
        seen: set[str] = set()
        for pair in self.pairs:
            if pair.internal in seen:
                raise ValueError(f"internal field {pair.internal!r} mapped twice")
            seen.add(pair.internal)
        return self


def _apply(transform: str | None, value: Any, field_name: str) -> tuple[bool, Any]:
    if transform is None or value is None:
        return True, value
    try:
        return True, TRANSFORMS[transform](value)
    except (TypeError, ValueError) as exc:
        logger.warning(
            "field_mapping.transform_failed",
            field=field_name,
            transform=transform,
            error=str(exc),
        )
        return False, None


def map_crm_to_internal(entity: CRMEntity | dict[str, Any], mapping: FieldMapping) -> dict[str, Any]:
    """Forward-map CRM fields to internal fields.

    Missing external fields are left out; values that fail their transform
    are dropped with a warning.
    """
    fields = entity.fields if isinstance(entity, CRMEntity) else entity
    result: dict[str, Any] = {}
    for pair in mapping.pairs:
        if pair.external not in fields:
            continue
        ok, value = _apply(pair.transform, fields[pair.external], pair.external)
        if ok:
            result[pair.internal] = value
    return result


def map_internal_to_crm(record: dict[str, Any], mapping: FieldMapping) -> dict[str, Any]:
    """Reverse-map internal fields to CRM fields, skipping empty values."""
    result: dict[str, Any] = {}
    for pair in mapping.pairs:
        value = record.get(pair.internal)
        if value is None:
            continue
        ok, value = _apply(pair.reverse_transform, value, pair.internal)
        if ok and value is not None:
            result[pair.external] = value
    return result


# ── Provider Defaults ───────────────────────────────────────────────────────


def _pairs(*items: tuple[str, ...]) -> list[FieldPair]:
    out = []
    for item in items:
        internal, external, *rest = item
        transform = rest[0] if rest else None
        reverse = rest[1] if len(rest) > 1 else None
        out.append(FieldPair(
            internal=internal, external=external, transform=transform, reverse_transform=reverse
        ))
    return out


_HUBSPOT_CONTACT = _pairs(
    ("email", "email", "lowercase"),
    ("first_name", "firstname"),
    ("last_name", "lastname"),
    ("title", "jobtitle"),
    ("phone", "phone", "strip"),
    ("company_name", "company"),
)

_SALESFORCE_CONTACT = _pairs(
    ("email", "Email", "lowercase"),
    ("first_name", "FirstName"),
    ("last_name", "LastName"),
    ("title", "Title"),
    ("phone", "Phone", "strip"),
)

DEFAULT_FIELD_MAPPINGS: dict[ProviderKey, dict[EntityType, list[FieldPair]]] = {
    ProviderKey.HUBSPOT: {
        EntityType.CONTACT: _HUBSPOT_CONTACT,
        EntityType.LEAD: _HUBSPOT_CONTACT,
        EntityType.ACCOUNT: _pairs(
            ("name", "name"),
            ("domain", "domain", "lowercase"),
            ("industry", "industry"),
            ("employee_count", "numberofemployees", "to_int"),
        ),
        EntityType.OPPORTUNITY: _pairs(
            ("name", "dealname"),
            ("stage", "dealstage"),
            ("amount", "amount", "to_float"),
            ("close_date", "closedate", "to_iso_date"),
        ),
        EntityType.TASK: _pairs(
            ("subject", "hs_task_subject"),
            ("status", "hs_task_status"),
            ("due_date", "hs_timestamp", "to_iso_date"),
        ),
        EntityType.EVENT: _pairs(
            ("subject", "hs_meeting_title"),
            ("occurred_at", "hs_meeting_start_time"),
        ),
        EntityType.NOTE: _pairs(("body", "hs_note_body")),
    },
    ProviderKey.SALESFORCE: {
        EntityType.CONTACT: _SALESFORCE_CONTACT,
        EntityType.LEAD: [*_SALESFORCE_CONTACT, FieldPair(internal="company_name", external="Company")],
        EntityType.ACCOUNT: _pairs(
            ("name", "Name"),
            ("domain", "Website", "lowercase"),
            ("industry", "Industry"),
            ("employee_count", "NumberOfEmployees", "to_int"),
        ),
        EntityType.OPPORTUNITY: _pairs(
            ("name", "Name"),
            ("stage", "StageName"),
            ("amount", "Amount", "to_float"),
            ("close_date", "CloseDate", "to_iso_date"),
        ),
        EntityType.TASK: _pairs(
            ("subject", "Subject"),
            ("status", "Status"),
            ("due_date", "ActivityDate", "to_iso_date"),
        ),
        EntityType.EVENT: _pairs(
            ("subject", "Subject"),
            ("occurred_at", "StartDateTime"),
        ),
        EntityType.NOTE: _pairs(("title", "Title"), ("body", "Body")),
    },
}


def default_mapping(connection: Connection, entity_type: EntityType) -> FieldMapping:
    pairs = DEFAULT_FIELD_MAPPINGS.get(connection.provider, {}).get(entity_type, [])
    return FieldMapping(connection_id=connection.id, entity_type=entity_type, pairs=list(pairs))


class FieldMappingStore:
    """Reads a connection's stored mapping, falling back to provider defaults."""

    def __init__(self, repository: Repository) -> None:
        self._repository = repository

    async def get(self, connection: Connection, entity_type: EntityType) -> FieldMapping:
        rows = await self._repository.query(
            FIELD_MAPPINGS,
            {"connection_id": connection.id, "entity_type": entity_type.value},
            limit=1,
        )
        if rows:
            try:
                return FieldMapping.model_validate(rows[0])
            except ValidationError as exc:
                logger.warning(
                    "field_mapping.invalid_stored_mapping",
                    connection_id=connection.id,
                    entity_type=entity_type.value,
                    error=str(exc),
                )
        return default_mapping(connection, entity_type)
