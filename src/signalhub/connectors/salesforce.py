"""Salesforce CRM connector (REST API + SOQL, composite sObject collections).

The instance URL comes from the stored Connection and may change on token
refresh, so request URLs are built per call rather than fixed on the client.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
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

logger = structlog.get_logger(__name__)

API_VERSION = "v59.0"
DEFAULT_LOGIN_URL = "https://login.salesforce.com"
COMPOSITE_LIMIT = 200
# Salesforce does not return expires_in; sessions default to two hours
SESSION_LIFETIME = timedelta(hours=2)

SOBJECTS: dict[EntityType, str] = {
    EntityType.CONTACT: "Contact",
    EntityType.LEAD: "Lead",
    EntityType.ACCOUNT: "Account",
    EntityType.OPPORTUNITY: "Opportunity",
    EntityType.TASK: "Task",
    EntityType.EVENT: "Event",
    EntityType.NOTE: "Note",
}

SOQL_FIELDS: dict[str, list[str]] = {
    "Contact": [
        "Id", "FirstName", "LastName", "Email", "Phone", "MobilePhone", "Title",
        "Department", "AccountId", "LeadSource", "CreatedDate", "LastModifiedDate",
    ],
    "Lead": [
        "Id", "FirstName", "LastName", "Email", "Phone", "MobilePhone", "Title",
        "Company", "Industry", "NumberOfEmployees", "Status", "CreatedDate", "LastModifiedDate",
    ],
    "Account": [
        "Id", "Name", "Website", "Industry", "NumberOfEmployees", "AnnualRevenue",
        "BillingCity", "BillingCountry", "CreatedDate", "LastModifiedDate",
    ],
    "Opportunity": [
        "Id", "Name", "StageName", "Amount", "CloseDate", "AccountId", "CreatedDate", "LastModifiedDate",
    ],
    "Task": [
        "Id", "Subject", "Status", "WhoId", "WhatId", "ActivityDate", "Description",
        "CreatedDate", "LastModifiedDate",
    ],
    "Event": [
        "Id", "Subject", "WhoId", "WhatId", "StartDateTime", "EndDateTime", "CreatedDate", "LastModifiedDate",
    ],
    "Note": ["Id", "Title", "Body", "ParentId", "CreatedDate", "LastModifiedDate"],
}

TASK_SUBTYPES = {"call": "Call", "email": "Email"}


def soql_literal(value: Any) -> str:
    """Render a Python value as a SOQL literal."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    escaped = str(value).replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


class SalesforceConnector(CRMConnector):
    """Salesforce CRM via OAuth access token and instance URL."""

    provider = ProviderKey.SALESFORCE
    email_field = "Email"
    id_field = "Id"

    def __init__(self, connection, *, client_id: str = "", client_secret: str = "", **kwargs: Any) -> None:
        super().__init__(connection, **kwargs)
        self._client_id = client_id
        self._client_secret = client_secret

    def _api(self, path: str) -> str:
        instance_url = (self.connection.instance_url or "").rstrip("/")
        if not instance_url:
            raise SyncError("salesforce connection has no instance URL")
        return f"{instance_url}/services/data/{API_VERSION}{path}"

    def _sobject(self, entity_type: EntityType) -> str:
        return SOBJECTS[entity_type]

    def _to_entity(self, entity_type: EntityType, record: dict[str, Any]) -> CRMEntity:
        fields = {k: v for k, v in record.items() if k != "attributes"}
        return CRMEntity(
            id=str(fields.get("Id") or fields.get("id")),
            entity_type=entity_type,
            fields=fields,
            created_at=parse_datetime(fields.get("CreatedDate")),
            updated_at=parse_datetime(fields.get("LastModifiedDate")),
        )

    def _build_soql(
        self,
        sobject: str,
        where: list[str],
        order_by: str | None,
        limit: int,
        offset: int = 0,
    ) -> str:
        soql = f"SELECT {', '.join(SOQL_FIELDS[sobject])} FROM {sobject}"
        if where:
            soql += " WHERE " + " AND ".join(where)
        if order_by:
            soql += f" ORDER BY {order_by}"
        soql += f" LIMIT {int(limit)}"
        if offset:
            soql += f" OFFSET {int(offset)}"
        return soql

    # ── OAuth ───────────────────────────────────────────────────────────────

    async def _request_token_refresh(self) -> TokenGrant:
        login_url = self.connection.settings.get("login_url", DEFAULT_LOGIN_URL)
        data = await self._http.request(
            "POST",
            f"{login_url}/services/oauth2/token",
            data={
                "grant_type": "refresh_token",
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "refresh_token": self.connection.refresh_token,
            },
        )
        if not data or "access_token" not in data:
            raise AuthError(self.provider.value, "token refresh returned no access token")
        return TokenGrant(
            access_token=data["access_token"],
            instance_url=data.get("instance_url"),
            expires_at=self._clock() + SESSION_LIFETIME,
        )

    # ── CRUD ────────────────────────────────────────────────────────────────

    @authenticated
    async def get_entity(self, entity_type: EntityType, external_id: str) -> CRMEntity | None:
        sobject = self._sobject(entity_type)
        data = await self._request(
            "GET",
            self._api(f"/sobjects/{sobject}/{external_id}"),
            entity_type=entity_type.value,
            entity_id=external_id,
            allow_not_found=True,
        )
        return self._to_entity(entity_type, data) if data else None

    async def _run_query(self, soql: str, entity_type: EntityType) -> dict[str, Any]:
        return await self._request(
            "GET", self._api("/query"), params={"q": soql}, entity_type=entity_type.value
        ) or {}

    async def _next_records(self, next_url: str, entity_type: EntityType) -> dict[str, Any]:
        instance_url = (self.connection.instance_url or "").rstrip("/")
        return await self._request(
            "GET", f"{instance_url}{next_url}", entity_type=entity_type.value
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
        sobject = self._sobject(entity_type)
        where = [f"{key} = {soql_literal(value)}" for key, value in (filter or {}).items()]
        soql = self._build_soql(sobject, where, order_by, limit, offset)
        data = await self._run_query(soql, entity_type)
        return [self._to_entity(entity_type, r) for r in data.get("records", [])]

    @authenticated
    async def query_page(
        self, entity_type: EntityType, limit: int, cursor: str | None = None
    ) -> tuple[list[CRMEntity], str | None]:
        # OFFSET stops at 2000 rows; follow the query cursor instead
        if cursor:
            data = await self._next_records(cursor, entity_type)
        else:
            soql = self._build_soql(self._sobject(entity_type), [], self.id_field, limit)
            data = await self._run_query(soql, entity_type)
        records = data.get("records", [])[:limit]
        return [self._to_entity(entity_type, r) for r in records], data.get("nextRecordsUrl")

    @authenticated
    async def create_entity(self, entity_type: EntityType, fields: dict[str, Any]) -> CRMEntity:
        sobject = self._sobject(entity_type)
        data = await self._request(
            "POST",
            self._api(f"/sobjects/{sobject}/"),
            json=fields,
            entity_type=entity_type.value,
        ) or {}
        if not data.get("success", False):
            raise SyncError(
                f"salesforce create failed: {data.get('errors')}",
                entity_type=entity_type.value,
            )
        return self._to_entity(entity_type, {**fields, "Id": data["id"]})

    @authenticated
    async def update_entity(
        self, entity_type: EntityType, external_id: str, fields: dict[str, Any]
    ) -> CRMEntity:
        sobject = self._sobject(entity_type)
        await self._request(
            "PATCH",
            self._api(f"/sobjects/{sobject}/{external_id}"),
            json=fields,
            entity_type=entity_type.value,
            entity_id=external_id,
        )
        return self._to_entity(entity_type, {**fields, "Id": external_id})

    @authenticated
    async def delete_entity(self, entity_type: EntityType, external_id: str) -> None:
        sobject = self._sobject(entity_type)
        await self._request(
            "DELETE",
            self._api(f"/sobjects/{sobject}/{external_id}"),
            entity_type=entity_type.value,
            entity_id=external_id,
        )

    @authenticated
    async def get_recently_modified(
        self, entity_type: EntityType, since: datetime, limit: int = 100
    ) -> list[CRMEntity]:
        sobject = self._sobject(entity_type)
        soql = self._build_soql(
            sobject,
            [f"LastModifiedDate > {soql_literal(since)}"],
            "LastModifiedDate ASC",
            limit,
        )
        data = await self._run_query(soql, entity_type)
        records = list(data.get("records", []))
        next_url = data.get("nextRecordsUrl")
        while next_url and len(records) < limit:
            data = await self._next_records(next_url, entity_type)
            records.extend(data.get("records", []))
            next_url = data.get("nextRecordsUrl")
        return [self._to_entity(entity_type, r) for r in records[:limit]]

    @authenticated
    async def log_activity(
        self,
        activity_type: str,
        related_type: EntityType,
        related_external_id: str,
        fields: dict[str, Any],
    ) -> CRMEntity:
        task: dict[str, Any] = {
            "Subject": activity_type.replace("_", " ").title(),
            "Status": "Completed",
            "ActivityDate": self._clock().date().isoformat(),
            "TaskSubtype": TASK_SUBTYPES.get(activity_type, "Task"),
        }
        if related_type in (EntityType.CONTACT, EntityType.LEAD):
            task["WhoId"] = related_external_id
        else:
            task["WhatId"] = related_external_id
        task.update(fields)
        entity = await self.create_entity(EntityType.TASK, task)
        logger.info(
            "salesforce.activity_logged",
            activity_type=activity_type,
            related_type=related_type.value,
            related_id=related_external_id,
        )
        return entity

    # ── Bulk ────────────────────────────────────────────────────────────────

    @authenticated
    async def _composite(self, method: str, records: list[dict[str, Any]]) -> list[dict[str, Any]]:
        data = await self._request(
            method,
            self._api("/composite/sobjects"),
            json={"allOrNone": False, "records": records},
        )
        return data or []

    def _collect(
        self,
        entity_type: EntityType,
        start: int,
        sent: list[dict[str, Any]],
        results: list[dict[str, Any]],
    ) -> list[BulkItemResult]:
        # sObject collection results are returned in request order
        items: list[BulkItemResult] = []
        for offset, record in enumerate(sent):
            result = results[offset] if offset < len(results) else {}
            if result.get("success"):
                fields = {k: v for k, v in record.items() if k != "attributes"}
                fields["Id"] = result["id"]
                items.append(BulkItemResult(
                    index=start + offset, success=True, entity=self._to_entity(entity_type, fields)
                ))
            else:
                errors = result.get("errors") or [{"message": "missing from composite response"}]
                items.append(BulkItemResult(
                    index=start + offset, success=False, error=errors[0].get("message")
                ))
        return items

    async def bulk_create(self, entity_type: EntityType, records: list[dict[str, Any]]) -> BulkResult:
        sobject = self._sobject(entity_type)
        items: list[BulkItemResult] = []
        for start in range(0, len(records), COMPOSITE_LIMIT):
            chunk = [{"attributes": {"type": sobject}, **r} for r in records[start:start + COMPOSITE_LIMIT]]
            results = await self._composite("POST", chunk)
            items.extend(self._collect(entity_type, start, chunk, results))
        return BulkResult(items=items)

    async def bulk_update(
        self, entity_type: EntityType, updates: list[tuple[str, dict[str, Any]]]
    ) -> BulkResult:
        sobject = self._sobject(entity_type)
        items: list[BulkItemResult] = []
        for start in range(0, len(updates), COMPOSITE_LIMIT):
            chunk = [
                {"attributes": {"type": sobject}, "id": eid, **fields}
                for eid, fields in updates[start:start + COMPOSITE_LIMIT]
            ]
            results = await self._composite("PATCH", chunk)
            items.extend(self._collect(entity_type, start, chunk, results))
        return BulkResult(items=items)

    # ── Enrichment ──────────────────────────────────────────────────────────

    async def _contact_to_raw_fields(self, contact: CRMEntity) -> RawFields:
        data = contact.fields
        raw: RawFields = {
            "contact.email": data.get("Email"),
            "contact.phone": data.get("Phone"),
            "contact.mobile_phone": data.get("MobilePhone"),
            "professional.title": data.get("Title"),
            "professional.department": data.get("Department"),
        }

        account_id = data.get("AccountId")
        if account_id:
            account = await self.get_entity(EntityType.ACCOUNT, account_id)
            if account:
                revenue = account.fields.get("AnnualRevenue")
                raw["company.name"] = account.fields.get("Name")
                raw["company.industry"] = account.fields.get("Industry")
                raw["company.employee_count"] = account.fields.get("NumberOfEmployees")
                raw["company.revenue"] = str(revenue) if revenue is not None else None

        activities = await self.query_entities(
            EntityType.TASK, {"WhoId": contact.id}, limit=5, order_by="CreatedDate DESC"
        )
        if activities:
            raw["relationship.interaction_count"] = len(activities)
            raw["relationship.last_contact_at"] = activities[0].created_at
        return raw
