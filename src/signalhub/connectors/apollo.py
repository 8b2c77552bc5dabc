"""Apollo.io people-data connector (people/match API, X-Api-Key header)."""

from __future__ import annotations

from typing import Any

from src.signalhub.connectors.base import Connector, authenticated
from src.signalhub.connectors.schemas import EnrichmentTarget, ProviderKey, RawFields

# Apollo email_status values that mean the address was checked and accepted
VERIFIED_EMAIL_STATUSES = frozenset({"verified", "valid"})


def _first_phone(phone_numbers: list[dict[str, Any]] | None, *kinds: str) -> str | None:
    for phone in phone_numbers or []:
        if not kinds or phone.get("type") in kinds:
            number = phone.get("sanitized_number") or phone.get("raw_number")
            if number:
                return number
    return None


class ApolloConnector(Connector):
    """Person match by email, or by name plus company domain."""

    provider = ProviderKey.APOLLO
    base_url = "https://api.apollo.io/v1"
    paid = True

    def _auth_headers(self) -> dict[str, str]:
        return {"X-Api-Key": self.connection.api_key or "", "Cache-Control": "no-cache"}

    @authenticated
    async def _ping(self) -> None:
        await self._request("GET", "/auth/health")

    @authenticated
    async def enrich(self, target: EnrichmentTarget) -> RawFields:
        body: dict[str, Any] = {}
        if target.email:
            body["email"] = target.email
        if target.first_name:
            body["first_name"] = target.first_name
        if target.last_name:
            body["last_name"] = target.last_name
        if target.domain:
            body["domain"] = target.domain
        elif target.company_name:
            body["organization_name"] = target.company_name
        has_company = "domain" in body or "organization_name" in body
        if "email" not in body and not ("last_name" in body and has_company):
            return {}

        data = await self._request(
            "POST", "/people/match", json=body, entity_type=target.entity_type, entity_id=target.entity_id
        )
        person = (data or {}).get("person")
        if not person:
            return {}

        organization = person.get("organization") or {}
        departments = person.get("departments") or []
        phones = person.get("phone_numbers")
        return {
            "contact.email_verified": person.get("email_status") in VERIFIED_EMAIL_STATUSES,
            "contact.direct_dial": _first_phone(phones, "work_direct", "work_hq"),
            "contact.mobile_phone": _first_phone(phones, "mobile"),
            "contact.linkedin_url": person.get("linkedin_url"),
            "contact.twitter_url": person.get("twitter_url"),
            "professional.title": person.get("title"),
            "professional.seniority": person.get("seniority"),
            "professional.department": departments[0] if departments else None,
            "company.name": organization.get("name"),
            "company.domain": organization.get("primary_domain"),
            "company.industry": organization.get("industry"),
            "company.employee_count": organization.get("estimated_num_employees"),
        }
