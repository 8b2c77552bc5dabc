"""HubSpot CRM connector (CRM v3 objects API + OAuth v1 token endpoint).

Maps HubSpot objects onto the shared entity types, uses the search API for
filtered and incremental reads, the batch endpoints for bulk writes and
engagement objects with associations for activity logging.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

import structlog

from src.signalhub.connectors.base import CRMConnector, authenticated
from src.signalhub.connectors.errors import AuthError, SyncError
from src.signalhub.connectors.schemas import (
    BulkItemResult,
    BulkResult,
    CRMEntity,
    EntityType,
    ProviderKey,
    RawFields,
    TokenGrant,
)
from src.signalhub.core.clock import parse_datetime
from src.signalhub.schemas.signals import BuyingStage

logger = structlog.get_logger(__name__)

TOKEN_URL = "https://api.hubapi.com/oauth/v1/token"
BATCH_LIMIT = 100
SEARCH_PAGE_LIMIT = 100

OBJECT_TYPES: dict[EntityType, str] = {
    EntityType.CONTACT: "contacts",
    EntityType.LEAD: "contacts",
    EntityType.ACCOUNT: "companies",
    EntityType.OPPORTUNITY: "deals",
    EntityType.TASK: "tasks",
    EntityType.EVENT: "meetings",
    EntityType.NOTE: "notes",
}

DEFAULT_PROPERTIES: dict[str, list[str]] = {
    "contacts": [
        "email", "firstname", "lastname", "phone", "mobilephone", "jobtitle",
        "company", "lifecyclestage", "hs_lead_status", "notes_last_contacted",
        "num_contacted_notes", "associatedcompanyid", "lastmodifieddate",
    ],
    "companies": [
        "name", "domain", "industry", "numberofemployees", "annualrevenue",
        "city", "country", "hs_lastmodifieddate",
    ],
    "deals": ["dealname", "amount", "dealstage", "closedate", "pipeline", "hs_lastmodifieddate"],
}

ACTIVITY_OBJECTS = {
    "call": "calls",
    "email": "emails",
    "meeting": "meetings",
    "note": "notes",
    "task": "tasks",
}

# HUBSPOT_DEFINED association type ids, keyed by (activity object, target object)
ASSOCIATION_TYPE_IDS: dict[tuple[str, str], int] = {
    ("notes", "contacts"): 202,
    ("calls", "contacts"): 194,
    ("meetings", "contacts"): 200,
    ("emails", "contacts"): 198,
    ("tasks", "contacts"): 204,
    ("notes", "companies"): 190,
    ("calls", "companies"): 182,
    ("meetings", "companies"): 188,
    ("emails", "companies"): 186,
    ("tasks", "companies"): 192,
    ("notes", "deals"): 214,
    ("calls", "deals"): 206,
    ("meetings", "deals"): 212,
    ("emails", "deals"): 210,
    ("tasks", "deals"): 216,
}

LIFECYCLE_TO_BUYING_STAGE: dict[str, BuyingStage] = {
    "subscriber": BuyingStage.AWARENESS,
    "lead": BuyingStage.AWARENESS,
    "marketingqualifiedlead": BuyingStage.CONSIDERATION,
    "salesqualifiedlead": BuyingStage.CONSIDERATION,
    "opportunity": BuyingStage.DECISION,
    "customer": BuyingStage.PURCHASE,
}


def map_lifecycle_stage(stage: str) -> BuyingStage:
    """Map a HubSpot lifecycle stage onto a buying stage (unknown -> awareness)."""
    return LIFECYCLE_TO_BUYING_STAGE.get(stage.lower(), BuyingStage.AWARENESS)


def _modified_property(object_type: str) -> str:
    return "lastmodifieddate" if object_type == "contacts" else "hs_lastmodifieddate"


def _to_int(value: Any) -> int | None:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _error_context(error: dict[str, Any], key: str) -> list[str]:
    """Values of ``key`` a batch error refers to, from its context or top level."""
    value = (error.get("context") or {}).get(key, error.get(key))
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    return [str(value)]


def _error_trace_ids(error: dict[str, Any]) -> list[str]:
    return _error_context(error, "objectWriteTraceId")


class HubSpotConnector(CRMConnector):
    """HubSpot CRM via OAuth access token."""

    provider = ProviderKey.HUBSPOT
    base_url = "https://api.hubapi.com"
    id_field = "hs_object_id"

    def __init__(self, connection, *, client_id: str = "", client_secret: str = "", **kwargs: Any) -> None:
        super().__init__(connection, **kwargs)
        self._client_id = client_id
        self._client_secret = client_secret

    # ── Parsing ─────────────────────────────────────────────────────────────

    def _object_type(self, entity_type: EntityType) -> str:
        return OBJECT_TYPES[entity_type]

    def _to_entity(self, entity_type: EntityType, data: dict[str, Any]) -> CRMEntity:
        return CRMEntity(
            id=str(data["id"]),
            entity_type=entity_type,
            fields=dict(data.get("properties") or {}),
            created_at=parse_datetime(data.get("createdAt")),
            updated_at=parse_datetime(data.get("updatedAt")),
        )

    # ── OAuth ───────────────────────────────────────────────────────────────

    async def _request_token_refresh(self) -> TokenGrant:
        data = await self._http.request(
            "POST",
            TOKEN_URL,
            data={
                "grant_type": "refresh_token",
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "refresh_token": self.connection.refresh_token,
            },
        )
        if not data or "access_token" not in data:
            raise AuthError(self.provider.value, "token refresh returned no access token")
        expires_in = int(data.get("expires_in", 1800))
        return TokenGrant(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=self._clock() + timedelta(seconds=expires_in),
        )

    # ── CRUD ────────────────────────────────────────────────────────────────

    @authenticated
    async def get_entity(self, entity_type: EntityType, external_id: str) -> CRMEntity | None:
        object_type = self._object_type(entity_type)
        data = await self._request(
            "GET",
            f"/crm/v3/objects/{object_type}/{external_id}",
            params={"properties": ",".join(DEFAULT_PROPERTIES.get(object_type, []))},
            entity_type=entity_type.value,
            entity_id=external_id,
            allow_not_found=True,
        )
        return self._to_entity(entity_type, data) if data else None

    async def _search(self, object_type: str, body: dict[str, Any], entity_type: EntityType) -> dict[str, Any]:
        body.setdefault("properties", DEFAULT_PROPERTIES.get(object_type, []))
        return await self._request(
            "POST",
            f"/crm/v3/objects/{object_type}/search",
            json=body,
            entity_type=entity_type.value,
        ) or {}

    @authenticated
    async def query_entities(
        self,
        entity_type: EntityType,
        filter: dict[str, Any] | None = None,
        limit: int = 100,
        offset: int = 0,
        order_by: str | None = None,
    ) -> list[CRMEntity]:
        object_type = self._object_type(entity_type)
        body: dict[str, Any] = {"limit": min(limit, SEARCH_PAGE_LIMIT)}
        if filter:
            body["filterGroups"] = [{
                "filters": [
                    {"propertyName": key, "operator": "EQ", "value": str(value)}
                    for key, value in filter.items()
                ]
            }]
        if order_by:
            name, _, direction = order_by.partition(" ")
            body["sorts"] = [{
                "propertyName": name,
                "direction": "DESCENDING" if direction.upper() == "DESC" else "ASCENDING",
            }]
        if offset:
            body["after"] = str(offset)
        data = await self._search(object_type, body, entity_type)
        return [self._to_entity(entity_type, item) for item in data.get("results", [])]

    @authenticated
    async def query_page(
        self, entity_type: EntityType, limit: int, cursor: str | None = None
    ) -> tuple[list[CRMEntity], str | None]:
        object_type = self._object_type(entity_type)
        body: dict[str, Any] = {
            "sorts": [{"propertyName": self.id_field, "direction": "ASCENDING"}],
            "limit": min(limit, SEARCH_PAGE_LIMIT),
        }
        if cursor:
            body["after"] = cursor
        data = await self._search(object_type, body, entity_type)
        page = [self._to_entity(entity_type, item) for item in data.get("results", [])]
        after = ((data.get("paging") or {}).get("next") or {}).get("after")
        return page, str(after) if after else None

    @authenticated
    async def create_entity(self, entity_type: EntityType, fields: dict[str, Any]) -> CRMEntity:
        object_type = self._object_type(entity_type)
        data = await self._request(
            "POST",
            f"/crm/v3/objects/{object_type}",
            json={"properties": fields},
            entity_type=entity_type.value,
        )
        return self._to_entity(entity_type, data)

    @authenticated
    async def update_entity(
        self, entity_type: EntityType, external_id: str, fields: dict[str, Any]
    ) -> CRMEntity:
        object_type = self._object_type(entity_type)
        data = await self._request(
            "PATCH",
            f"/crm/v3/objects/{object_type}/{external_id}",
            json={"properties": fields},
            entity_type=entity_type.value,
            entity_id=external_id,
        )
        return self._to_entity(entity_type, data)

    @authenticated
    async def delete_entity(self, entity_type: EntityType, external_id: str) -> None:
        object_type = self._object_type(entity_type)
        await self._request(
            "DELETE",
            f"/crm/v3/objects/{object_type}/{external_id}",
            entity_type=entity_type.value,
            entity_id=external_id,
        )

    @authenticated
    async def get_recently_modified(
        self, entity_type: EntityType, since: datetime, limit: int = 100
    ) -> list[CRMEntity]:
        object_type = self._object_type(entity_type)
        modified = _modified_property(object_type)
        since_ms = str(int(since.timestamp() * 1000))
        entities: list[CRMEntity] = []
        after: str | None = None

        while len(entities) < limit:
            body: dict[str, Any] = {
                "filterGroups": [{
                    "filters": [{"propertyName": modified, "operator": "GT", "value": since_ms}]
                }],
                "sorts": [{"propertyName": modified, "direction": "ASCENDING"}],
                "limit": min(limit - len(entities), SEARCH_PAGE_LIMIT),
            }
            if after:
                body["after"] = after
            data = await self._search(object_type, body, entity_type)
            entities.extend(self._to_entity(entity_type, item) for item in data.get("results", []))
            after = ((data.get("paging") or {}).get("next") or {}).get("after")
            if not after:
                break

        return entities[:limit]

    @authenticated
    async def log_activity(
        self,
        activity_type: str,
        related_type: EntityType,
        related_external_id: str,
        fields: dict[str, Any],
    ) -> CRMEntity:
        activity_object = ACTIVITY_OBJECTS.get(activity_type, "notes")
        target_object = self._object_type(related_type)
        properties = {"hs_timestamp": self._clock().isoformat(), **fields}
        body: dict[str, Any] = {"properties": properties}
        association_type_id = ASSOCIATION_TYPE_IDS.get((activity_object, target_object))
        if association_type_id is not None:
            body["associations"] = [{
                "to": {"id": related_external_id},
                "types": [{
                    "associationCategory": "HUBSPOT_DEFINED",
                    "associationTypeId": association_type_id,
                }],
            }]
        data = await self._request(
            "POST",
            f"/crm/v3/objects/{activity_object}",
            json=body,
            entity_type=activity_type,
        )
        logger.info(
            "hubspot.activity_logged",
            activity_type=activity_type,
            related_type=related_type.value,
            related_id=related_external_id,
        )
        return self._to_entity(EntityType.NOTE if activity_object == "notes" else EntityType.TASK, data)

    # ── Bulk ────────────────────────────────────────────────────────────────

    @authenticated
    async def _batch(self, object_type: str, action: str, inputs: list[dict[str, Any]]) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"/crm/v3/objects/{object_type}/batch/{action}",
            json={"inputs": inputs},
        ) or {}

    async def bulk_create(self, entity_type: EntityType, records: list[dict[str, Any]]) -> BulkResult:
        object_type = self._object_type(entity_type)
        items: list[BulkItemResult] = []
        for start in range(0, len(records), BATCH_LIMIT):
            chunk = records[start:start + BATCH_LIMIT]
            inputs = [
                {"properties": fields, "objectWriteTraceId": str(start + offset)}
                for offset, fields in enumerate(chunk)
            ]
            try:
                data = await self._batch(object_type, "create", inputs)
            except SyncError as exc:
                # HubSpot rejects the whole batch on one invalid input; retry per item
                logger.warning("hubspot.batch_create_rejected", entity_type=entity_type.value, error=str(exc))
                items.extend(await self._create_each(entity_type, start, list(range(len(chunk))), chunk))
                continue
            items.extend(await self._match_created(entity_type, start, chunk, data))
        items.sort(key=lambda item: item.index)
        return BulkResult(items=items)

    async def _create_each(
        self,
        entity_type: EntityType,
        start: int,
        offsets: list[int],
        chunk: list[dict[str, Any]],
    ) -> list[BulkItemResult]:
        fallback = await super().bulk_create(entity_type, [chunk[offset] for offset in offsets])
        return [
            item.model_copy(update={"index": start + offsets[item.index]}) for item in fallback.items
        ]

    async def _match_created(
        self,
        entity_type: EntityType,
        start: int,
        chunk: list[dict[str, Any]],
        data: dict[str, Any],
    ) -> list[BulkItemResult]:
        """Pair batch results and errors with inputs through their objectWriteTraceId.

        A 207 response lists successes and failures separately and in no
        particular order. Results that carry no trace id cannot be paired;
        the inputs left without an outcome are then created one by one.
        """
        created: dict[str, dict[str, Any]] = {}
        untraced = 0
        for result in data.get("results", []):
            trace_id = result.get("objectWriteTraceId")
            if trace_id is None:
                untraced += 1
            else:
                created[str(trace_id)] = result
        failed: dict[str, str] = {}
        for error in data.get("errors", []):
            for trace_id in _error_trace_ids(error):
                failed[trace_id] = error.get("message") or "batch create failed"

        items: list[BulkItemResult] = []
        unresolved: list[int] = []
        for offset in range(len(chunk)):
            trace_id = str(start + offset)
            if trace_id in created:
                items.append(BulkItemResult(
                    index=start + offset,
                    success=True,
                    entity=self._to_entity(entity_type, created[trace_id]),
                ))
            elif trace_id in failed:
                items.append(BulkItemResult(index=start + offset, success=False, error=failed[trace_id]))
            elif untraced:
                unresolved.append(offset)
            else:
                items.append(BulkItemResult(
                    index=start + offset, success=False, error="missing from batch response"
                ))

        if unresolved:
            logger.warning(
                "hubspot.batch_create_unmatched",
                entity_type=entity_type.value,
                unmatched_results=untraced,
                inputs=len(unresolved),
            )
            items.extend(await self._create_each(entity_type, start, unresolved, chunk))
        return items

    async def bulk_update(
        self, entity_type: EntityType, updates: list[tuple[str, dict[str, Any]]]
    ) -> BulkResult:
        object_type = self._object_type(entity_type)
        items: list[BulkItemResult] = []
        for start in range(0, len(updates), BATCH_LIMIT):
            chunk = updates[start:start + BATCH_LIMIT]
            try:
                data = await self._batch(
                    object_type, "update", [{"id": eid, "properties": f} for eid, f in chunk]
                )
            except SyncError as exc:
                logger.warning("hubspot.batch_update_rejected", entity_type=entity_type.value, error=str(exc))
                fallback = await super().bulk_update(entity_type, chunk)
                items.extend(
                    item.model_copy(update={"index": item.index + start}) for item in fallback.items
                )
                continue

            by_id = {str(r["id"]): r for r in data.get("results", [])}
            failed = {
                external_id: error.get("message") or "batch update failed"
                for error in data.get("errors", [])
                for external_id in _error_context(error, "ids")
            }
            for offset, (external_id, _) in enumerate(chunk):
                result = by_id.get(str(external_id))
                if result is not None:
                    items.append(BulkItemResult(
                        index=start + offset, success=True, entity=self._to_entity(entity_type, result)
                    ))
                else:
                    items.append(BulkItemResult(
                        index=start + offset,
                        success=False,
                        error=failed.get(str(external_id), f"{external_id} not updated"),
                    ))
        return BulkResult(items=items)

    # ── Enrichment ──────────────────────────────────────────────────────────

    async def _contact_to_raw_fields(self, contact: CRMEntity) -> RawFields:
        props = contact.fields
        raw: RawFields = {
            "contact.email": props.get("email"),
            "contact.phone": props.get("phone"),
            "contact.mobile_phone": props.get("mobilephone"),
            "professional.title": props.get("jobtitle"),
            "company.name": props.get("company"),
            "relationship.last_contact_at": parse_datetime(props.get("notes_last_contacted")),
            "relationship.interaction_count": _to_int(props.get("num_contacted_notes")),
        }
        if props.get("lifecyclestage"):
            raw["intent.buying_stage"] = map_lifecycle_stage(props["lifecyclestage"])

        company_id = props.get("associatedcompanyid")
        if company_id:
            company = await self.get_entity(EntityType.ACCOUNT, str(company_id))
            if company:
                raw["company.name"] = raw["company.name"] or company.fields.get("name")
                raw["company.domain"] = company.fields.get("domain")
                raw["company.industry"] = company.fields.get("industry")
                raw["company.employee_count"] = _to_int(company.fields.get("numberofemployees"))
        return raw
