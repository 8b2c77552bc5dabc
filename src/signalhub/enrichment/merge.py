"""Field-merge policy for the enrichment waterfall.

Sources are merged in priority order into an empty SignalRecord:
- Scalar fields: first writer wins. A later source's value for a field an
  earlier source already set is discarded.
- Append-only fields (intent signals, technologies, news) are unioned and
  deduplicated by a field-specific key.
- Seed values from the stored entity fill only the gaps no source covered,
  so they never hide a source's contribution from ``data_points``.

Also resolves the company domain used by company-level connectors.
"""

from __future__ import annotations

from collections.abc import Callable, Hashable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog
from pydantic import BaseModel, ValidationError

from src.signalhub.connectors.schemas import RawFields
from src.signalhub.core.clock import ensure_utc
from src.signalhub.enrichment.schemas import SignalRecord
from src.signalhub.schemas.signals import IntentSignal, NewsItem

logger = structlog.get_logger(__name__)

PUBLIC_EMAIL_PROVIDERS = frozenset({"gmail", "yahoo", "outlook", "hotmail", "icloud"})

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _technology_key(name: str) -> str:
    return name.strip().casefold()


# path -> (item type or None for plain strings, dedupe key)
APPEND_ONLY_FIELDS: dict[str, tuple[type[BaseModel] | None, Callable[[Any], Hashable]]] = {
    "intent.signals": (IntentSignal, lambda s: s.dedupe_key),
    "company.technologies": (None, _technology_key),
    "research.news": (NewsItem, lambda n: n.url),
}


# A seed is dropped when a source already supplied one of its alternates, so a
# stored phone written back from a direct dial does not reappear as "phone".
SEED_ALTERNATES: dict[str, tuple[str, ...]] = {
    "contact.phone": ("contact.direct_dial", "contact.mobile_phone"),
}


def is_empty(value: Any) -> bool:
    """None, empty string/collection and False carry no information."""
    if value is None or value is False:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return False


# ── Domain resolution ───────────────────────────────────────────────────────


def email_domain(email: str | None) -> str | None:
    if not email or "@" not in email:
        return None
    domain = email.rsplit("@", 1)[1].strip().lower()
    return domain or None


def is_public_email_domain(domain: str) -> bool:
    """True for consumer mailbox providers (gmail.com, yahoo.co.uk, hotmail.fr...)."""
    return domain.split(".", 1)[0] in PUBLIC_EMAIL_PROVIDERS


def resolve_company_domain(email: str | None, stored_domain: str | None) -> str | None:
    """Domain for company-level lookups, or None to skip them.

    A public-provider email never falls back to the stored domain: the
    mailbox says nothing about the employer.
    """
    domain = email_domain(email)
    if domain is None:
        return (stored_domain or "").strip().lower() or None
    if is_public_email_domain(domain):
        return None
    return domain


# ── Merge ───────────────────────────────────────────────────────────────────


@dataclass
class MergeState:
    """Accumulator for one pipeline run."""

    record: SignalRecord = field(default_factory=SignalRecord)
    claimed: set[str] = field(default_factory=set)
    seen: dict[str, set[Hashable]] = field(default_factory=dict)
    signal_cutoff: datetime | None = None


def _split_path(record: SignalRecord, path: str) -> tuple[BaseModel, str] | None:
    section_name, _, attr = path.partition(".")
    if not attr or section_name not in SignalRecord.model_fields:
        return None
    section = getattr(record, section_name)
    if attr not in type(section).model_fields:
        return None
    return section, attr


def _coerce_items(path: str, values: Any) -> list[Any]:
    item_type, _ = APPEND_ONLY_FIELDS[path]
    if not isinstance(values, (list, tuple)):
        values = [values]
    items: list[Any] = []
    for value in values:
        if is_empty(value):
            continue
        if item_type is None:
            items.append(str(value).strip())
            continue
        try:
            items.append(value if isinstance(value, item_type) else item_type.model_validate(value))
        except ValidationError as exc:
            logger.debug("merge.item_rejected", path=path, error=str(exc))
    return items


def _outside_window(state: MergeState, item: Any) -> bool:
    if state.signal_cutoff is None or not isinstance(item, IntentSignal):
        return False
    return ensure_utc(item.timestamp) < state.signal_cutoff


def _append(state: MergeState, path: str, values: Any) -> int:
    """Union items into an append-only field; returns how many were new."""
    target = _split_path(state.record, path)
    if target is None:
        return 0
    section, attr = target
    _, key_fn = APPEND_ONLY_FIELDS[path]
    seen = state.seen.setdefault(path, set())
    current = list(getattr(section, attr))
    added = 0
    for item in _coerce_items(path, values):
        if _outside_window(state, item):
            continue
        key = key_fn(item)
        if key in seen:
            continue
        seen.add(key)
        current.append(item)
        added += 1
    if added:
        setattr(section, attr, current)
    return added


def _assign(state: MergeState, path: str, value: Any) -> bool:
    target = _split_path(state.record, path)
    if target is None:
        logger.debug("merge.unknown_field", path=path)
        return False
    section, attr = target
    try:
        setattr(section, attr, value)
    except ValidationError as exc:
        logger.debug("merge.value_rejected", path=path, error=str(exc))
        return False
    return True


def merge_source(state: MergeState, raw: RawFields) -> int:
    """Merge one source's fields; returns its data-point count."""
    data_points = 0
    for path, value in raw.items():
        if path in APPEND_ONLY_FIELDS:
            data_points += _append(state, path, value)
            continue
        if is_empty(value) or path in state.claimed:
            continue
        if _assign(state, path, value):
            state.claimed.add(path)
            data_points += 1
    return data_points


def apply_seed(state: MergeState, seed: RawFields) -> None:
    """Fill fields no source supplied from the entity's stored values."""
    for path, value in seed.items():
        if state.claimed.intersection(SEED_ALTERNATES.get(path, ())):
            continue
        if path in APPEND_ONLY_FIELDS:
            _append(state, path, value)
        elif not is_empty(value) and path not in state.claimed:
            if _assign(state, path, value):
                state.claimed.add(path)


def finalize(state: MergeState) -> SignalRecord:
    """Order append-only lists deterministically and return the record."""
    record = state.record
    record.intent.signals = sorted(
        record.intent.signals,
        key=lambda s: (-ensure_utc(s.timestamp).timestamp(), s.type.value, s.source),
    )
    record.research.news = sorted(
        record.research.news,
        key=lambda n: (-(n.published_at or _EPOCH).timestamp(), n.url),
    )
    return record


def merge_sources(
    results: Iterable[tuple[str, RawFields]],
    seed: RawFields | None = None,
    signal_cutoff: datetime | None = None,
) -> tuple[SignalRecord, dict[str, int]]:
    """Merge ``(source_name, raw_fields)`` pairs given in priority order.

    Returns the merged record and the data-point count per source.
    """
    state = MergeState(signal_cutoff=signal_cutoff)
    data_points: dict[str, int] = {}
    for source, raw in results:
        data_points[source] = data_points.get(source, 0) + merge_source(state, raw)
    if seed:
        apply_seed(state, seed)
    return finalize(state), data_points
