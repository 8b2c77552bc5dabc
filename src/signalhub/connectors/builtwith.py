"""BuiltWith technology-fingerprint connector.

Returns the technology names detected on the company domain and one
tech_stack intent signal (confidence 90). The signal is timestamped with the
most recent detection date so repeated lookups dedupe; without detection
dates it falls back to UTC midnight of the current day.
"""

from __future__ import annotations

from datetime import datetime, time, timezone

from src.signalhub.connectors.base import Connector, authenticated
from src.signalhub.connectors.schemas import EnrichmentTarget, ProviderKey, RawFields
from src.signalhub.core.clock import parse_datetime
from src.signalhub.schemas.signals import IntentSignal, IntentSignalType

TECH_STACK_CONFIDENCE = 90


class BuiltWithConnector(Connector):
    provider = ProviderKey.BUILTWITH
    base_url = "https://api.builtwith.com"
    paid = True
    company_level = True

    def _auth_headers(self) -> dict[str, str]:
        # BuiltWith authenticates with the KEY query parameter
        return {}

    @authenticated
    async def _ping(self) -> None:
        await self._request("GET", "/usagev2/api.json", params={"KEY": self.connection.api_key})

    @authenticated
    async def enrich(self, target: EnrichmentTarget) -> RawFields:
        if not target.domain:
            return {}

        data = await self._request(
            "GET",
            "/v21/api.json",
            params={
                "KEY": self.connection.api_key,
                "LOOKUP": target.domain,
                "NOMETA": "yes",
                "NOATTR": "yes",
                "HIDETEXT": "yes",
                "HIDEDL": "yes",
            },
            entity_type=target.entity_type,
            entity_id=target.entity_id,
        ) or {}

        results = data.get("Results") or []
        if not results:
            return {}
        result = results[0].get("Result", results[0])

        names: list[str] = []
        categories: list[str] = []
        last_detected: list[datetime] = []
        for path in result.get("Paths") or []:
            for tech in path.get("Technologies") or []:
                name = tech.get("Name")
                if name and name not in names:
                    names.append(name)
                tag = tech.get("Tag")
                if tag and tag not in categories:
                    categories.append(tag)
                detected = parse_datetime(tech.get("LastDetected"))
                if detected:
                    last_detected.append(detected)

        if not names:
            return {}

        if last_detected:
            timestamp = max(last_detected)
        else:
            timestamp = datetime.combine(self._clock().date(), time.min, tzinfo=timezone.utc)

        signal = IntentSignal(
            type=IntentSignalType.TECH_STACK,
            source=self.source_name,
            confidence=TECH_STACK_CONFIDENCE,
            timestamp=timestamp,
            description=f"Uses {len(names)} technologies including {', '.join(names[:3])}",
            metadata={"technology_count": len(names), "categories": categories},
        )
        return {
            "company.technologies": names,
            "intent.signals": [signal],
        }
