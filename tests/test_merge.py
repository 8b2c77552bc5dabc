"""Unit tests for the waterfall merge policy and company-domain resolution."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from src.signalhub.enrichment.merge import (
    MergeState,
    apply_seed,
    is_empty,
    is_public_email_domain,
    merge_source,
    merge_sources,
    resolve_company_domain,
)
from src.signalhub.schemas.signals import IntentSignal, IntentSignalType, NewsItem

NOW = datetime(2026, 3, 1, tzinfo=timezone.utc)


def _signal(kind=IntentSignalType.FUNDING, source="news", days_ago=1, confidence=80) -> IntentSignal:
    return IntentSignal(
        type=kind,
        source=source,
        confidence=confidence,
        timestamp=NOW - timedelta(days=days_ago),
    )


# ── Domain resolution ───────────────────────────────────────────────────────


class TestResolveCompanyDomain:
    """Public mailbox providers never yield a company domain."""

    @pytest.mark.parametrize("domain", ["gmail.com", "yahoo.co.uk", "outlook.com", "hotmail.fr", "icloud.com"])
    def test_public_providers(self, domain):
        assert is_public_email_domain(domain)

    def test_corporate_domain_is_not_public(self):
        assert not is_public_email_domain("acmeco.com")

    def test_corporate_email_domain_used(self):
        assert resolve_company_domain("jane@AcmeCo.com", None) == "acmeco.com"

    def test_public_email_ignores_stored_domain(self):
        assert resolve_company_domain("jane@gmail.com", "acmeco.com") is None

    def test_missing_email_falls_back_to_stored_domain(self):
        assert resolve_company_domain(None, " AcmeCo.com ") == "acmeco.com"

    def test_nothing_known(self):
        assert resolve_company_domain(None, None) is None


# ── Merge policy ────────────────────────────────────────────────────────────


class TestMergeSources:
    """First writer wins for scalars; append-only fields union."""

    def test_higher_priority_value_wins(self):
        record, points = merge_sources([
            ("A", {"professional.title": "CTO"}),
            ("B", {"professional.title": "VP Eng", "professional.seniority": "VP"}),
        ])
        assert record.professional.title == "CTO"
        assert record.professional.seniority == "VP"
        assert points == {"A": 1, "B": 1}

    def test_empty_values_do_not_claim_fields(self):
        record, points = merge_sources([
            ("A", {"professional.title": "", "contact.phone": None, "contact.email_verified": False}),
            ("B", {"professional.title": "CTO"}),
        ])
        assert record.professional.title == "CTO"
        assert points == {"A": 0, "B": 1}

    def test_unknown_paths_are_ignored(self):
        record, points = merge_sources([("A", {"bogus.field": 1, "contact": "x"})])
        assert points == {"A": 0}

    def test_invalid_values_are_rejected(self):
        record, points = merge_sources([
            ("A", {"company.employee_count": "lots"}),
            ("B", {"company.employee_count": 220}),
        ])
        assert record.company.employee_count == 220
        assert points == {"A": 0, "B": 1}

    def test_numeric_revenue_is_kept_as_text(self):
        record, _ = merge_sources([("A", {"company.revenue": 5000000})])
        assert record.company.revenue == "5000000"

    def test_intent_signals_are_unioned_and_deduplicated(self):
        shared = _signal()
        record, points = merge_sources([
            ("A", {"intent.signals": [shared]}),
            ("B", {"intent.signals": [shared, _signal(IntentSignalType.JOB_POSTING, days_ago=2)]}),
        ])
        assert len(record.intent.signals) == 2
        assert points == {"A": 1, "B": 1}

    def test_same_instant_in_another_offset_is_a_duplicate(self):
        utc = _signal()
        shifted = utc.model_copy(update={"timestamp": utc.timestamp.astimezone(timezone(timedelta(hours=2)))})

        record, points = merge_sources([
            ("A", {"intent.signals": [utc]}),
            ("B", {"intent.signals": [shifted]}),
        ])

        assert shifted.dedupe_key == utc.dedupe_key
        assert len(record.intent.signals) == 1
        assert points == {"A": 1, "B": 0}

    def test_signals_are_sorted_newest_first(self):
        old, new = _signal(days_ago=10), _signal(IntentSignalType.JOB_POSTING, days_ago=1)
        record, _ = merge_sources([("A", {"intent.signals": [old, new]})])
        assert record.intent.signals == [new, old]

    def test_signals_outside_window_are_dropped(self):
        record, points = merge_sources(
            [("A", {"intent.signals": [_signal(days_ago=100), _signal(days_ago=5)]})],
            signal_cutoff=NOW - timedelta(days=90),
        )
        assert len(record.intent.signals) == 1
        assert points == {"A": 1}

    def test_technologies_dedupe_case_insensitively(self):
        record, points = merge_sources([
            ("A", {"company.technologies": ["React", "Stripe"]}),
            ("B", {"company.technologies": ["react", "Segment"]}),
        ])
        assert record.company.technologies == ["React", "Stripe", "Segment"]
        assert points == {"A": 2, "B": 1}

    def test_news_dedupes_by_url(self):
        item = NewsItem(url="https://x.test/a", title="A", published_at=NOW)
        record, _ = merge_sources([
            ("A", {"research.news": [item]}),
            ("B", {"research.news": [{"url": "https://x.test/a", "title": "Other"}]}),
        ])
        assert [n.title for n in record.research.news] == ["A"]

    def test_signals_accept_dicts(self):
        record, _ = merge_sources([("A", {"intent.signals": [{
            "type": "page_visit", "source": "web", "confidence": 40, "timestamp": NOW.isoformat(),
        }]})])
        assert record.intent.signals[0].type == IntentSignalType.PAGE_VISIT


# ── Seeds ───────────────────────────────────────────────────────────────────


class TestApplySeed:
    """Seeds fill gaps only and never count as data points."""

    def test_seed_fills_missing_fields(self):
        state = MergeState()
        merge_source(state, {"professional.title": "CTO"})
        apply_seed(state, {"professional.title": "Engineer", "contact.email": "jane@acmeco.com"})
        assert state.record.professional.title == "CTO"
        assert state.record.contact.email == "jane@acmeco.com"

    def test_source_still_counts_after_seed_value(self):
        record, points = merge_sources(
            [("A", {"contact.email": "jane@acmeco.com"})],
            seed={"contact.email": "jane@acmeco.com"},
        )
        assert points == {"A": 1}

    def test_stored_phone_skipped_when_direct_dial_supplied(self):
        state = MergeState()
        merge_source(state, {"contact.direct_dial": "555-2000"})
        apply_seed(state, {"contact.phone": "555-2000"})
        assert state.record.contact.phone is None
        assert state.record.contact.direct_dial == "555-2000"


class TestIsEmpty:
    @pytest.mark.parametrize("value", [None, False, "", "   ", [], {}, ()])
    def test_empty(self, value):
        assert is_empty(value)

    @pytest.mark.parametrize("value", [0, True, "x", [1], 0.0])
    def test_not_empty(self, value):
        assert not is_empty(value)
