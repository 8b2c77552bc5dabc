"""Clearbit company-data connector.

Uses the combined person+company endpoint when an email is available and the
company endpoint by domain otherwise. Company-level: skipped when the domain
cannot be resolved.
"""

from __future__ import annotations

from typing import Any

from src.signalhub.connectors.base import Connector, authenticated
from src.signalhub.connectors.schemas import EnrichmentTarget, ProviderKey, RawFields

PERSON_URL = "https://person.clearbit.com/v2"
COMPANY_URL = "https://company.clearbit.com/v2"


def _company_fields(company: dict[str, Any]) -> RawFields:
    metrics = company.get("metrics") or {}
    category = company.get("category") or {}
    geo = company.get("geo") or {}
    headquarters = ", ".join(p for p in (geo.get("city"), geo.get("country")) if p) or None
    return {
        "company.name": company.get("name"),
        "company.domain": company.get("domain"),
        "company.industry": category.get("industry"),
        "company.employee_count": metrics.get("employees"),
        "company.revenue": metrics.get("estimatedAnnualRevenue"),
        "company.total_funding": metrics.get("raised"),
        "company.founded_year": company.get("foundedYear"),
        "company.headquarters": headquarters,
        "company.technologies": list(company.get("tech") or []),
    }


class ClearbitConnector(Connector):
    provider = ProviderKey.CLEARBIT
    paid = True
    company_level = True

    @authenticated
    async def _ping(self) -> None:
        await self._request(
            "GET", f"{COMPANY_URL}/companies/find", params={"domain": "clearbit.com"}, allow_not_found=True
        )

    @authenticated
    async def enrich(self, target: EnrichmentTarget) -> RawFields:
        if not target.domain:
            return {}

        if target.email:
            data = await self._request(
                "GET",
                f"{PERSON_URL}/combined/find",
                params={"email": target.email},
                entity_type=target.entity_type,
                entity_id=target.entity_id,
                allow_not_found=True,
            )
            if not data:
                return {}
            raw = _company_fields(data.get("company") or {})
            twitter = ((data.get("person") or {}).get("twitter") or {}).get("handle")
            if twitter:
                raw["contact.twitter_url"] = f"https://twitter.com/{twitter}"
            return raw

        data = await self._request(
            "GET",
            f"{COMPANY_URL}/companies/find",
            params={"domain": target.domain},
            entity_type=target.entity_type,
            entity_id=target.entity_id,
            allow_not_found=True,
        )
        return _company_fields(data) if data else {}
