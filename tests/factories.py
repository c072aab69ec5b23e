import asyncio
from datetime import datetime, timezone

from regsync.sources.base import AlertCandidate, SourceAdapter

PUBLISHED = datetime(2026, 9, 30, 12, 0, tzinfo=timezone.utc)


def make_candidate(source="AGENCY_A", external_id="A-1", title="Recall notice",
                   published=None, summary="Product recalled", **extra) -> AlertCandidate:
    return AlertCandidate(
        source=source,
        external_id=external_id,
        title=title,
        published_date=published or PUBLISHED,
        summary=summary,
        **extra,
    )


class FakeAdapter(SourceAdapter):
    """Scripted adapter: each fetch pops the next outcome (list of candidates or exception)."""

    def __init__(self, name, *outcomes, delay: float = 0.0):
        super().__init__(client=None)
        self.name = name
        self.outcomes = list(outcomes) or [[]]
        self.delay = delay
        self.calls = 0

    async def fetch(self, since):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.outcomes[0] if len(self.outcomes) == 1 else self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return list(outcome)
