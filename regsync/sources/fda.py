from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional, Sequence

import httpx
import structlog

from regsync.exceptions import EmptyResultError, MalformedResponseError
from regsync.sources.base import AlertCandidate, SourceAdapter, clean_text, parse_date

log = structlog.get_logger(__name__)

_CLASS_RANK = {
    "class i": ("Critical", 90),
    "class ii": ("High", 60),
    "class iii": ("Medium", 30),
}


class FDAAdapter(SourceAdapter):
    """openFDA enforcement reports (food, drug and device recalls)."""

    name = "FDA"
    freshness_threshold_hours = 24
    probe_url = "https://api.fda.gov/food/enforcement.json?limit=1"
    base_url = "https://api.fda.gov"

    def __init__(
        self,
        client: httpx.AsyncClient,
        endpoints: Sequence[str] = ("/food/enforcement.json",),
        *,
        api_key: Optional[str] = None,
        page_size: int = 100,
        max_pages: int = 5,
    ):
        super().__init__(client)
        self.endpoints = list(endpoints)
        self.api_key = api_key
        self.page_size = page_size
        self.max_pages = max_pages

    async def fetch(self, since: datetime) -> List[AlertCandidate]:
        until = datetime.now(timezone.utc)
        window = f"report_date:[{since:%Y%m%d} TO {until:%Y%m%d}]"

        out: List[AlertCandidate] = []
        empty_endpoints = 0
        for endpoint in self.endpoints:
            records = await self._fetch_endpoint(endpoint, window)
            if records is None:
                empty_endpoints += 1
                continue
            out.extend(self._normalize(r, endpoint) for r in records)

        if empty_endpoints == len(self.endpoints):
            raise EmptyResultError(self.name, "openFDA reported no matches for the window", {"search": window})
        log.info("fda.fetch.done", endpoints=len(self.endpoints), records=len(out))
        return out

    async def _fetch_endpoint(self, endpoint: str, window: str) -> Optional[list]:
        """All pages for one endpoint; None when openFDA answers NOT_FOUND."""
        results: list = []
        for page in range(self.max_pages):
            params = {
                "search": window,
                "limit": self.page_size,
                "skip": page * self.page_size,
                "sort": "report_date:desc",
            }
            if self.api_key:
                params["api_key"] = self.api_key

            resp = await self._get(f"{self.base_url}{endpoint}", params, allow_404=True)
            body = self._json(resp)
            if resp.status_code == 404:
                if page > 0:
                    break
                if _is_not_found(body):
                    return None
                raise MalformedResponseError(self.name, f"{endpoint}: unexpected 404 body")

            batch = body.get("results") if isinstance(body, dict) else None
            if not isinstance(batch, list):
                raise MalformedResponseError(self.name, f"{endpoint}: response missing results array")
            results.extend(batch)

            total = ((body.get("meta") or {}).get("results") or {}).get("total")
            if len(batch) < self.page_size or (total is not None and len(results) >= total):
                break
        return results

    def _normalize(self, item: dict, endpoint: str) -> AlertCandidate:
        classification = item.get("classification")
        urgency, severity = _CLASS_RANK.get((classification or "").strip().lower(), ("Medium", 50))
        product_type = item.get("product_type") or endpoint.strip("/").split("/")[0].title()

        return self.candidate(
            external_id=item.get("recall_number") or item.get("event_id"),
            title=clean_text(item.get("product_description") or item.get("reason_for_recall")),
            summary=clean_text(item.get("reason_for_recall")),
            published_date=parse_date(item.get("report_date") or item.get("recall_initiation_date")),
            updated_date=parse_date(item.get("termination_date")),
            source_url=None,
            classification=classification,
            urgency=urgency,
            severity=severity,
            category=f"{product_type.lower()}_recall",
            raw_payload=item,
        )


def _is_not_found(body) -> bool:
    err = body.get("error") if isinstance(body, dict) else None
    return isinstance(err, dict) and err.get("code") == "NOT_FOUND"
