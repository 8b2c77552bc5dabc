"""Proxycurl professional-profile connector.

Resolves a LinkedIn profile URL from the work email when none is known, then
pulls the profile: headline, current role, skills, certifications, tenure,
previous employers and connection count.
"""

from __future__ import annotations

from typing import Any

from src.signalhub.connectors.base import Connector, authenticated
from src.signalhub.connectors.schemas import EnrichmentTarget, ProviderKey, RawFields

# Share of a profile's connections assumed to be mutual with the sender
MUTUAL_CONNECTION_RATIO = 0.01


def _current_experience(experiences: list[dict[str, Any]]) -> dict[str, Any]:
    for experience in experiences:
        if not experience.get("ends_at"):
            return experience
    return experiences[0] if experiences else {}


class ProxycurlConnector(Connector):
    provider = ProviderKey.PROXYCURL
    base_url = "https://nubela.co/proxycurl/api"
    paid = True

    @authenticated
    async def _ping(self) -> None:
        await self._request("GET", "/credit-balance")

    async def _resolve_profile_url(self, target: EnrichmentTarget) -> str | None:
        if target.linkedin_url:
            return target.linkedin_url
        if not target.email:
            return None
        data = await self._request(
            "GET",
            "/linkedin/profile/resolve/email",
            params={"work_email": target.email},
            entity_type=target.entity_type,
            entity_id=target.entity_id,
            allow_not_found=True,
        )
        return (data or {}).get("url")

    @authenticated
    async def enrich(self, target: EnrichmentTarget) -> RawFields:
        profile_url = await self._resolve_profile_url(target)
        if not profile_url:
            return {}

        profile = await self._request(
            "GET",
            "/v2/linkedin",
            params={"linkedin_profile_url": profile_url, "skills": "include"},
            entity_type=target.entity_type,
            entity_id=target.entity_id,
            allow_not_found=True,
        )
        if not profile:
            return {}

        experiences = list(profile.get("experiences") or [])
        current = _current_experience(experiences)
        raw: RawFields = {
            "contact.linkedin_url": profile_url,
            "professional.headline": profile.get("headline"),
            "professional.title": current.get("title"),
            "professional.skills": list(profile.get("skills") or []),
            "professional.certifications": [
                c["name"] for c in profile.get("certifications") or [] if c.get("name")
            ],
            "company.name": current.get("company"),
        }

        start_year = (current.get("starts_at") or {}).get("year")
        if start_year:
            raw["professional.years_in_role"] = max(0, self._clock().year - int(start_year))

        previous = [e.get("company") for e in experiences if e is not current and e.get("company")]
        if previous:
            raw["professional.previous_companies"] = previous

        connections = profile.get("connections")
        if connections:
            raw["relationship.mutual_connections"] = int(connections * MUTUAL_CONNECTION_RATIO)
        return raw
