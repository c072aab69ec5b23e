from __future__ import annotations

import abc
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import feedparser
import httpx
import structlog

from regsync.exceptions import EmptyResultError, MalformedResponseError
from regsync.sources.base import AlertCandidate, SourceAdapter, parse_date

log = structlog.get_logger(__name__)


def entry_date(entry: Any, *keys: str) -> Optional[datetime]:
    for key in keys:
        parsed = entry.get(f"{key}_parsed")
        if parsed:
            return datetime(*parsed[:6], tzinfo=timezone.utc)
        value = parse_date(entry.get(key))
        if value:
            return value
    return None


class RSSFeedAdapter(SourceAdapter):
    """Base for agencies that publish alerts as RSS feeds.

    ``feeds`` maps a category label to a feed URL. Entries older than the
    requested window are dropped; an agency whose every feed is empty raises
    ``EmptyResultError``.
    """

    accept = "application/rss+xml, application/xml, text/xml, */*"

    def __init__(self, client: httpx.AsyncClient, feeds: Dict[str, str]):
        super().__init__(client)
        self.feeds = dict(feeds)

    async def fetch(self, since: datetime) -> List[AlertCandidate]:
        out: List[AlertCandidate] = []
        empty_feeds = 0
        for category, url in self.feeds.items():
            resp = await self._get(url)
            if not resp.text.strip():
                empty_feeds += 1
                continue

            parsed = feedparser.parse(resp.text)
            if parsed.bozo and not parsed.entries:
                raise MalformedResponseError(
                    self.name, f"{category} feed is not valid RSS: {parsed.get('bozo_exception')!r}",
                )
            if not parsed.entries:
                empty_feeds += 1
                continue

            kept = 0
            for entry in parsed.entries:
                candidate = self._normalize(entry, category)
                if candidate.published_date and candidate.published_date < since:
                    continue
                out.append(candidate)
                kept += 1
            log.info("rss.feed.parsed", source=self.name, category=category,
                     entries=len(parsed.entries), kept=kept)

        if self.feeds and empty_feeds == len(self.feeds):
            raise EmptyResultError(self.name, "every feed returned an empty document")
        return out

    @abc.abstractmethod
    def _normalize(self, entry: Any, category: str) -> AlertCandidate:
        """Map one feedparser entry onto an AlertCandidate."""
