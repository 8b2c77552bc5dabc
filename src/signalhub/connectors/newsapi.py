"""NewsAPI news/intent connector.

Searches recent articles about the company and classifies each one as a
funding, job-posting or plain news-mention intent signal. Confidence starts
at 50, gains a recency bonus and a reputable-outlet bonus, capped at 100.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any

from src.signalhub.connectors.base import Connector, authenticated
from src.signalhub.connectors.schemas import EnrichmentTarget, ProviderKey, RawFields
from src.signalhub.core.clock import parse_datetime
from src.signalhub.schemas.signals import IntentSignal, IntentSignalType, NewsItem

FUNDING_KEYWORDS = ("funding", "raised", "investment")
HIRING_KEYWORDS = ("hiring", "job", "career")
REPUTABLE_SOURCES = ("techcrunch", "forbes", "bloomberg", "reuters", "wsj")
MAX_NEWS_ITEMS = 5
PAGE_SIZE = 20


def classify_news(text: str) -> IntentSignalType:
    """Keyword classification of an article headline + description."""
    lowered = text.lower()
    if any(word in lowered for word in FUNDING_KEYWORDS):
        return IntentSignalType.FUNDING
    if any(word in lowered for word in HIRING_KEYWORDS):
        return IntentSignalType.JOB_POSTING
    return IntentSignalType.NEWS_MENTION


def news_confidence(days_old: float, source_name: str) -> int:
    confidence = 50
    if days_old < 7:
        confidence += 20
    elif days_old < 30:
        confidence += 10
    if any(s in source_name.lower() for s in REPUTABLE_SOURCES):
        confidence += 15
    return min(100, confidence)


class NewsAPIConnector(Connector):
    provider = ProviderKey.NEWSAPI
    base_url = "https://newsapi.org/v2"
    company_level = True

    def __init__(self, connection, *, lookback_days: int = 30, **kwargs: Any) -> None:
        super().__init__(connection, **kwargs)
        self._lookback_days = lookback_days

    def _auth_headers(self) -> dict[str, str]:
        return {"X-Api-Key": self.connection.api_key or ""}

    @authenticated
    async def _ping(self) -> None:
        await self._request("GET", "/top-headlines/sources")

    @authenticated
    async def enrich(self, target: EnrichmentTarget) -> RawFields:
        if not target.company_name:
            return {}

        now = self._clock()
        since = (now - timedelta(days=self._lookback_days)).date().isoformat()
        data = await self._request(
            "GET",
            "/everything",
            params={
                "q": f'"{target.company_name}"',
                "from": since,
                "sortBy": "relevancy",
                "language": "en",
                "pageSize": PAGE_SIZE,
            },
            entity_type=target.entity_type,
            entity_id=target.entity_id,
        ) or {}

        signals: list[IntentSignal] = []
        news: list[NewsItem] = []
        changes: list[dict[str, str]] = []

        for article in data.get("articles") or []:
            published_at = parse_datetime(article.get("publishedAt"))
            url = article.get("url")
            if published_at is None or not url:
                continue
            title = article.get("title") or ""
            description = article.get("description") or ""
            outlet = (article.get("source") or {}).get("name") or ""
            days_old = (now - published_at).total_seconds() / 86400
            signal_type = classify_news(f"{title} {description}")
            confidence = news_confidence(days_old, outlet)

            signals.append(IntentSignal(
                type=signal_type,
                source=self.source_name,
                confidence=confidence,
                timestamp=published_at,
                description=title,
                metadata={"url": url, "outlet": outlet, "author": article.get("author")},
            ))
            if signal_type == IntentSignalType.NEWS_MENTION and len(news) < MAX_NEWS_ITEMS:
                news.append(NewsItem(
                    url=url,
                    title=title,
                    summary=description,
                    published_at=published_at,
                    source_name=outlet,
                    relevance=confidence,
                ))
            elif signal_type != IntentSignalType.NEWS_MENTION:
                changes.append({
                    "type": signal_type.value,
                    "description": title,
                    "date": published_at.isoformat(),
                })

        return {
            "intent.signals": signals,
            "research.news": news,
            "research.recent_changes": changes,
        }
