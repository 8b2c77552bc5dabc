"""Pure scoring functions over a merged SignalRecord.

Every score is recomputed from the record on each run and saturates in
[0, 100] regardless of how many signals the record carries.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta

from src.signalhub.core.clock import ensure_utc
from src.signalhub.enrichment.schemas import SignalRecord
from src.signalhub.schemas.signals import BuyingStage, IntentSignal, IntentSignalType

INTENT_WEIGHTS: dict[IntentSignalType, int] = {
    IntentSignalType.FUNDING: 25,
    IntentSignalType.JOB_POSTING: 20,
    IntentSignalType.CONTENT_DOWNLOAD: 20,
    IntentSignalType.PAGE_VISIT: 15,
    IntentSignalType.TECH_STACK: 10,
    IntentSignalType.NEWS_MENTION: 5,
}
DEFAULT_INTENT_WEIGHT = 5

STAGE_BOOST: dict[BuyingStage, int] = {
    BuyingStage.AWARENESS: 0,
    BuyingStage.CONSIDERATION: 15,
    BuyingStage.DECISION: 30,
    BuyingStage.PURCHASE: 40,
}

ENGAGEMENT_SIGNALS = frozenset({
    IntentSignalType.PAGE_VISIT,
    IntentSignalType.CONTENT_DOWNLOAD,
    IntentSignalType.SEARCH_QUERY,
})

# (max age, score), checked in order
FRESHNESS_BANDS: tuple[tuple[timedelta, int], ...] = (
    (timedelta(days=7), 100),
    (timedelta(days=30), 75),
    (timedelta(days=90), 50),
    (timedelta(days=180), 25),
)
STALE_FRESHNESS = 10

COMPLETENESS_FIELD_COUNT = 10


def _clamp(value: float) -> int:
    return max(0, min(100, int(value)))


def quality_score(record: SignalRecord) -> int:
    """Weighted presence test over a fixed checklist, capped at 100."""
    contact, professional, company = record.contact, record.professional, record.company
    score = 0
    if contact.email and contact.email_verified:
        score += 15
    if contact.phone or contact.direct_dial or contact.mobile_phone:
        score += 10
    if contact.linkedin_url:
        score += 10
    if professional.title:
        score += 10
    if professional.department:
        score += 5
    if professional.seniority:
        score += 5
    if company.industry and company.employee_count is not None:
        score += 15
    if record.intent.signals:
        score += 15
    if record.research.news:
        score += 15
    return _clamp(score)


def completeness_score(record: SignalRecord) -> int:
    """Share of the ten tracked fields that are filled, as 0-100."""
    contact, professional, company = record.contact, record.professional, record.company
    checklist = (
        contact.email,
        contact.phone or contact.direct_dial,
        contact.linkedin_url,
        professional.title,
        professional.department,
        professional.seniority,
        company.name,
        company.industry,
        company.employee_count is not None,
        bool(company.technologies),
    )
    filled = sum(1 for item in checklist if item)
    return _clamp(round(100 * filled / COMPLETENESS_FIELD_COUNT))


def infer_buying_stage(signals: list[IntentSignal]) -> BuyingStage | None:
    """Engagement signals imply consideration; any other signal awareness."""
    if not signals:
        return None
    if any(s.type in ENGAGEMENT_SIGNALS for s in signals):
        return BuyingStage.CONSIDERATION
    return BuyingStage.AWARENESS


def intent_score(signals: list[IntentSignal], stage: BuyingStage | None) -> int:
    """Confidence-scaled type weights plus a buying-stage boost, capped at 100."""
    total = 0.0
    for signal in signals:
        weight = INTENT_WEIGHTS.get(signal.type, DEFAULT_INTENT_WEIGHT)
        total += weight * signal.confidence / 100
    if stage is not None:
        total += STAGE_BOOST[stage]
    return _clamp(math.floor(total + 0.5))


def _newest_evidence(record: SignalRecord) -> datetime | None:
    stamps = [s.timestamp for s in record.intent.signals]
    stamps.extend(n.published_at for n in record.research.news if n.published_at)
    if record.relationship.last_contact_at:
        stamps.append(record.relationship.last_contact_at)
    if not stamps:
        return None
    return max(ensure_utc(s) for s in stamps)


def freshness_score(record: SignalRecord) -> int:
    """Age of the newest dated evidence relative to ``metadata.enriched_at``.

    A record without dated evidence is as fresh as its enrichment.
    """
    enriched_at = ensure_utc(record.metadata.enriched_at)
    newest = _newest_evidence(record)
    if enriched_at is None or newest is None:
        return 100
    age = max(enriched_at - newest, timedelta(0))
    for limit, score in FRESHNESS_BANDS:
        if age <= limit:
            return score
    return STALE_FRESHNESS


def apply_scores(record: SignalRecord) -> SignalRecord:
    """Fill the derived intent/metadata fields in place and return the record."""
    if record.intent.buying_stage is None:
        record.intent.buying_stage = infer_buying_stage(record.intent.signals)
    record.intent.score = intent_score(record.intent.signals, record.intent.buying_stage)
    record.metadata.quality_score = quality_score(record)
    record.metadata.completeness_score = completeness_score(record)
    record.metadata.freshness_score = freshness_score(record)
    return record
