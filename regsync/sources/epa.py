from __future__ import annotations

from datetime import datetime
from typing import List, Tuple

import httpx

from regsync.exceptions import MalformedResponseError
from regsync.sources.base import AlertCandidate, SourceAdapter, clean_text, parse_date


def _penalty(item: dict) -> float:
    raw = item.get("PenaltyAmount") or item.get("FederalPenalty") or 0
    try:
        return float(str(raw).replace("$", "").replace(",", ""))
    except ValueError:
        return 0.0


def _urgency(item: dict) -> Tuple[str, int]:
    penalty = _penalty(item)
    kind = str(item.get("ActionType") or item.get("EnforcementType") or "").lower()
    if penalty > 1_000_000 or "criminal" in kind:
        return "Critical", 90
    if penalty > 100_000 or "consent decree" in kind:
        return "High", 70
    if penalty > 10_000 or "administrative" in kind:
        return "Medium", 50
    return "Low", 25


class EPAAdapter(SourceAdapter):
    """EPA ECHO enforcement case results."""

    name = "EPA"
    freshness_threshold_hours = 48
    probe_url = "https://echo.epa.gov/tools/web-services/get_enforcement_summary.json?output=JSON&p_rows=1"
    endpoint = "https://echo.epa.gov/tools/web-services/get_enforcement_summary.json"

    def __init__(self, client: httpx.AsyncClient, *, page_size: int = 100, max_pages: int = 3):
        super().__init__(client)
        self.page_size = page_size
        self.max_pages = max_pages

    async def fetch(self, since: datetime) -> List[AlertCandidate]:
        out: List[AlertCandidate] = []
        for page in range(1, self.max_pages + 1):
            params = {
                "output": "JSON",
                "responseset": page,
                "p_rows": self.page_size,
                "p_date_from": f"{since:%m/%d/%Y}",
            }
            body = self._json(await self._get(self.endpoint, params))
            try:
                rows = body["Results"]["Results"]
            except (KeyError, TypeError):
                raise MalformedResponseError(self.name, "response missing Results.Results")
            if not isinstance(rows, list):
                raise MalformedResponseError(self.name, "Results.Results is not a list")

            for item in rows:
                candidate = self._normalize(item)
                if candidate.published_date and candidate.published_date < since:
                    continue
                out.append(candidate)
            if len(rows) < self.page_size:
                break
        return out

    def _normalize(self, item: dict) -> AlertCandidate:
        urgency, severity = _urgency(item)
        facility = clean_text(item.get("FacilityName"))
        action = clean_text(item.get("EnforcementActionName") or item.get("CaseName"))
        penalty = _penalty(item)

        summary = f"{item.get('ActionType') or 'Enforcement action'} - {facility or 'Unknown facility'}"
        if penalty:
            summary += f" - Penalty: ${penalty:,.0f}"

        return self.candidate(
            external_id=item.get("CaseNumber") or item.get("EnforcementID") or item.get("ActivityID"),
            title=f"EPA Enforcement: {action or facility or 'Enforcement Case'}",
            summary=summary,
            published_date=parse_date(item.get("EnforcementDate") or item.get("SettlementDate")),
            updated_date=parse_date(item.get("SettlementDate")) if item.get("EnforcementDate") else None,
            source_url=item.get("EnforcementURL") or item.get("CaseURL"),
            classification=item.get("ActionType"),
            urgency=urgency,
            severity=severity,
            category="enforcement",
            raw_payload=item,
        )
