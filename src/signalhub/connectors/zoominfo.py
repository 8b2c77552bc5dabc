"""ZoomInfo people-data connector (lookup API, bearer API key)."""

from __future__ import annotations

from typing import Any

from src.signalhub.connectors.base import Connector, authenticated
from src.signalhub.connectors.schemas import EnrichmentTarget, ProviderKey, RawFields


class ZoomInfoConnector(Connector):
    """Person lookup by email / name + company. A match implies a verified email."""

    provider = ProviderKey.ZOOMINFO
    base_url = "https://api.zoominfo.com/lookup"
    paid = True

    @authenticated
    async def _ping(self) -> None:
        await self._request("GET", "/usage")

    @authenticated
    async def enrich(self, target: EnrichmentTarget) -> RawFields:
        body: dict[str, Any] = {}
        if target.email:
            body["email"] = target.email
        if target.first_name:
            body["firstName"] = target.first_name
        if target.last_name:
            body["lastName"] = target.last_name
        if target.company_name:
            body["companyName"] = target.company_name
        if "email" not in body and not ("lastName" in body and "companyName" in body):
            return {}

        data = await self._request(
            "POST", "/person", json=body, entity_type=target.entity_type, entity_id=target.entity_id
        )
        if not data or not data.get("success"):
            return {}

        return {
            "contact.email_verified": True,
            "contact.direct_dial": data.get("directPhoneNumber"),
            "contact.mobile_phone": data.get("mobilePhoneNumber"),
            "contact.linkedin_url": data.get("linkedInUrl"),
            "professional.title": data.get("jobTitle"),
            "professional.department": data.get("jobFunction"),
            "professional.seniority": data.get("managementLevel"),
            "company.name": data.get("companyName"),
            "company.employee_count": data.get("companyEmployeeCount"),
            "company.revenue": data.get("companyRevenue"),
        }
