from __future__ import annotations

from typing import Any

import httpx

from regsync.sources.base import AlertCandidate, clean_text
from regsync.sources.rss import RSSFeedAdapter, entry_date

_OUTBREAK_WORDS = ("outbreak", "illness", "deaths", "hospitalized")


class CDCAdapter(RSSFeedAdapter):
    """CDC food-safety notices feed."""

    name = "CDC"
    freshness_threshold_hours = 72
    probe_url = "https://tools.cdc.gov/api/v2/resources/media?max=1"

    def __init__(self, client: httpx.AsyncClient, feed_url: str):
        super().__init__(client, {"food_safety": feed_url})

    def _normalize(self, entry: Any, category: str) -> AlertCandidate:
        title = clean_text(entry.get("title"))
        summary = clean_text(entry.get("summary") or entry.get("description"))
        lowered = f"{title or ''} {summary or ''}".lower()
        outbreak = any(w in lowered for w in _OUTBREAK_WORDS)

        return self.candidate(
            external_id=entry.get("id") or entry.get("link"),
            title=title,
            summary=summary,
            published_date=entry_date(entry, "published", "updated"),
            source_url=entry.get("link"),
            urgency="High" if outbreak else "Medium",
            severity=70 if outbreak else 40,
            category="outbreak" if outbreak else category,
            raw_payload={k: entry.get(k) for k in ("id", "title", "link", "summary", "published")},
        )
