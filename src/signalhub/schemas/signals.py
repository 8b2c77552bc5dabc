"""Shared signal value types produced by connectors and consumed by the pipeline.

Defines:
- IntentSignalType / BuyingStage enums
- IntentSignal: immutable, timestamped, confidence-scored buying observation
- NewsItem: one article attached to a company's research sub-record
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from src.signalhub.core.clock import ensure_utc


class IntentSignalType(str, Enum):
    """Kinds of intent observations a connector can emit."""

    PAGE_VISIT = "page_visit"
    CONTENT_DOWNLOAD = "content_download"
    SEARCH_QUERY = "search_query"
    TECH_STACK = "tech_stack"
    JOB_POSTING = "job_posting"
    FUNDING = "funding"
    NEWS_MENTION = "news_mention"


class BuyingStage(str, Enum):
    """Inferred position of a prospect in the buying cycle."""

    AWARENESS = "awareness"
    CONSIDERATION = "consideration"
    DECISION = "decision"
    PURCHASE = "purchase"


class IntentSignal(BaseModel):
    """A single intent observation. Immutable once recorded."""

    model_config = ConfigDict(frozen=True)

    type: IntentSignalType
    source: str
    confidence: int = Field(ge=0, le=100)
    timestamp: datetime
    description: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def dedupe_key(self) -> tuple[str, str, str]:
        """(type, timestamp, source) identity used for append-only unions."""
        return (self.type.value, ensure_utc(self.timestamp).isoformat(), self.source)


class NewsItem(BaseModel):
    """News article attached to the research sub-record, keyed by URL."""

    model_config = ConfigDict(frozen=True)

    url: str
    title: str
    summary: str = ""
    published_at: datetime | None = None
    source_name: str = ""
    sentiment: str = "neutral"
    relevance: int = Field(default=0, ge=0, le=100)
