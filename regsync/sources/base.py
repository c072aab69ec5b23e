"""Source adapter contract and the HTTP plumbing shared by every agency.

Adapters are pure transformations of remote data into ``AlertCandidate``s.
They receive a shared ``httpx.AsyncClient`` at construction and surface
failures as typed ``SourceError`` subclasses. Retry/backoff policy belongs to
the orchestrator; the only retry allowed here is one immediate repeat of a
request that failed at the connection level.
"""

from __future__ import annotations

import abc
import html
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, ClassVar, Dict, List, Optional

import httpx
import structlog
from tenacity import (
    retry, stop_after_attempt, retry_if_exception_type,
)

from regsync.exceptions import (
    MalformedResponseError,
    SourceAuthError,
    SourceError,
    SourceNetworkError,
    SourceTimeoutError,
    SourceUpstreamError,
)

log = structlog.get_logger(__name__)

_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")

_DATE_FORMATS = (
    "%Y%m%d",
    "%Y-%m-%d",
    "%m/%d/%Y",
    "%Y-%m-%dT%H:%M:%S",
    "%a, %d %b %Y %H:%M:%S %z",
    "%a, %d %b %Y %H:%M:%S %Z",
)


@dataclass(frozen=True)
class AlertCandidate:
    """Normalized record returned by an adapter, before deduplication."""

    source: str
    external_id: Optional[str]
    title: Optional[str]
    published_date: Optional[datetime]
    summary: Optional[str] = None
    updated_date: Optional[datetime] = None
    source_url: Optional[str] = None
    classification: Optional[str] = None
    urgency: Optional[str] = None
    severity: Optional[int] = None
    category: Optional[str] = None
    raw_payload: Dict[str, Any] = field(default_factory=dict)


def clean_text(value: Any) -> Optional[str]:
    """Strip markup and collapse whitespace; empty strings become None."""
    if value is None:
        return None
    text = html.unescape(_TAG_RE.sub(" ", str(value)))
    text = _WS_RE.sub(" ", text).strip()
    return text or None


def parse_date(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        s = str(value).strip()
        parsed = None
        try:
            parsed = datetime.fromisoformat(s.replace("Z", "+00:00"))
        except ValueError:
            for fmt in _DATE_FORMATS:
                try:
                    parsed = datetime.strptime(s, fmt)
                    break
                except ValueError:
                    continue
        if parsed is None:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ── HTTP ──────────────────────────────────────────────────────────────────────

@retry(
    retry=retry_if_exception_type((httpx.ConnectError, httpx.ReadError, httpx.RemoteProtocolError)),
    stop=stop_after_attempt(2),
    reraise=True,
)
async def _send(client: httpx.AsyncClient, url: str, params: Optional[dict], headers: dict) -> httpx.Response:
    return await client.get(url, params=params, headers=headers)


class SourceAdapter(abc.ABC):
    """One concrete subclass per agency; the orchestrator sees only this type."""

    name: ClassVar[str]
    freshness_threshold_hours: ClassVar[int] = 24
    probe_url: ClassVar[Optional[str]] = None
    accept: ClassVar[str] = "application/json"

    def __init__(self, client: httpx.AsyncClient):
        self.client = client

    @abc.abstractmethod
    async def fetch(self, since: datetime) -> List[AlertCandidate]:
        """Return every candidate published at or after ``since``."""

    async def _get(self, url: str, params: Optional[dict] = None, *, allow_404: bool = False) -> httpx.Response:
        try:
            resp = await _send(self.client, url, params, {"Accept": self.accept})
        except httpx.TimeoutException as exc:
            raise SourceTimeoutError(self.name, f"timeout contacting {url}") from exc
        except httpx.TransportError as exc:
            raise SourceNetworkError(self.name, f"network error: {exc!r}") from exc

        status = resp.status_code
        log.debug("source.http.response", source=self.name, url=url, status=status)
        if status in (401, 403):
            raise SourceAuthError(self.name, f"HTTP {status}: authentication rejected", {"url": url})
        if status == 429 or status >= 500:
            raise SourceUpstreamError(self.name, f"HTTP {status} from {url}", {"status": status})
        if status == 404 and allow_404:
            return resp
        if status >= 400:
            raise SourceError(self.name, f"HTTP {status} from {url}", {"status": status})
        return resp

    def _json(self, resp: httpx.Response) -> Any:
        try:
            return resp.json()
        except ValueError as exc:
            raise MalformedResponseError(self.name, "response body is not valid JSON") from exc

    def candidate(self, **fields: Any) -> AlertCandidate:
        return AlertCandidate(source=self.name, **fields)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"
