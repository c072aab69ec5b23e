"""Content fingerprinting for alert candidates.

The hash covers only the fields that define an alert's semantic identity:
source, external_id, title, summary and published_date. Values are
normalized before hashing (whitespace collapsed, source codes upper-cased,
dates rendered as UTC ISO-8601 to the second) and serialized with sorted
keys, so field order and cosmetic whitespace never change the result.
"""

from __future__ import annotations

import hashlib
import json
import re
from datetime import datetime
from typing import Any, Optional

from regsync.timeutil import as_utc

_WS_RE = re.compile(r"\s+")

HASHED_FIELDS = ("source", "external_id", "title", "summary", "published_date")


def normalize_text(value: Optional[str]) -> str:
    if value is None:
        return ""
    return _WS_RE.sub(" ", str(value)).strip()


def normalize_external_id(value: Any) -> str:
    return normalize_text(value)


def normalize_source(value: Any) -> str:
    return normalize_text(value).upper()


def normalize_date(value: Optional[datetime]) -> str:
    if value is None:
        return ""
    return as_utc(value).replace(microsecond=0).isoformat()


def content_hash(
    *,
    source: str,
    external_id: str,
    title: Optional[str],
    summary: Optional[str],
    published_date: Optional[datetime],
) -> str:
    doc = {
        "source": normalize_source(source),
        "external_id": normalize_external_id(external_id),
        "title": normalize_text(title),
        "summary": normalize_text(summary),
        "published_date": normalize_date(published_date),
    }
    raw = json.dumps(doc, sort_keys=True, ensure_ascii=False, separators=(",", ":"))
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def candidate_hash(candidate: Any) -> str:
    return content_hash(**{f: getattr(candidate, f) for f in HASHED_FIELDS})
