from __future__ import annotations

import re
from typing import Any

from regsync.sources.base import AlertCandidate, clean_text
from regsync.sources.rss import RSSFeedAdapter, entry_date

# FSIS recall titles carry the recall class, e.g. "... (Class I)"
_CLASS_RE = re.compile(r"\bclass\s+(iii|ii|i)\b", re.IGNORECASE)
_RECALL_NO_RE = re.compile(r"\b(\d{3}-\d{4})\b")

_URGENCY = {
    "I": ("Critical", 90),
    "II": ("High", 60),
    "III": ("Medium", 30),
}
_CATEGORY_DEFAULT = {
    "recalls": ("High", 75),
    "notices": ("Medium", 50),
}


class FSISAdapter(RSSFeedAdapter):
    """USDA Food Safety and Inspection Service recall and notice feeds."""

    name = "FSIS"
    freshness_threshold_hours = 12
    probe_url = "https://www.fsis.usda.gov/fsis-content/rss/recalls.xml"

    def _normalize(self, entry: Any, category: str) -> AlertCandidate:
        title = clean_text(entry.get("title"))
        summary = clean_text(entry.get("summary") or entry.get("description"))

        text = f"{title or ''} {summary or ''}"
        m = _CLASS_RE.search(text)
        recall_class = m.group(1).upper() if m else None
        if recall_class:
            urgency, severity = _URGENCY[recall_class]
        else:
            urgency, severity = _CATEGORY_DEFAULT.get(category, ("Medium", 50))

        recall_no = _RECALL_NO_RE.search(text)
        external_id = (
            (recall_no.group(1) if recall_no else None)
            or entry.get("id")
            or entry.get("link")
        )

        return self.candidate(
            external_id=external_id,
            title=title,
            summary=summary,
            published_date=entry_date(entry, "published", "updated"),
            updated_date=entry_date(entry, "updated") if entry.get("published") else None,
            source_url=entry.get("link"),
            classification=f"Class {recall_class}" if recall_class else None,
            urgency=urgency,
            severity=severity,
            category=category.rstrip("s"),
            raw_payload={k: entry.get(k) for k in ("id", "title", "link", "summary", "published", "updated")},
        )
