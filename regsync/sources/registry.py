from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Type

import httpx

from regsync.config import Settings
from regsync.sources.base import SourceAdapter
from regsync.sources.cdc import CDCAdapter
from regsync.sources.epa import EPAAdapter
from regsync.sources.fda import FDAAdapter
from regsync.sources.fsis import FSISAdapter

ADAPTER_TYPES: Dict[str, Type[SourceAdapter]] = {
    cls.name: cls for cls in (FDAAdapter, FSISAdapter, EPAAdapter, CDCAdapter)
}


@dataclass(frozen=True)
class SourceProfile:
    """What the health evaluator needs to know about a source, without the adapter."""
    name: str
    freshness_threshold_hours: int
    probe_url: Optional[str] = None


def build_adapters(client: httpx.AsyncClient, settings: Settings) -> Dict[str, SourceAdapter]:
    factories = {
        "FDA": lambda: FDAAdapter(
            client,
            settings.FDA_ENDPOINTS,
            api_key=settings.FDA_API_KEY,
            page_size=settings.FDA_PAGE_SIZE,
            max_pages=settings.FDA_MAX_PAGES,
        ),
        "FSIS": lambda: FSISAdapter(client, settings.FSIS_FEEDS),
        "EPA": lambda: EPAAdapter(
            client, page_size=settings.EPA_PAGE_SIZE, max_pages=settings.EPA_MAX_PAGES,
        ),
        "CDC": lambda: CDCAdapter(client, settings.CDC_FEED_URL),
    }
    unknown = set(settings.ENABLED_SOURCES) - set(factories)
    if unknown:
        raise ValueError(f"ENABLED_SOURCES contains unknown sources: {sorted(unknown)}")
    return {name: factories[name]() for name in settings.ENABLED_SOURCES}


def source_profiles(settings: Settings) -> List[SourceProfile]:
    overrides = {k.upper(): v for k, v in settings.FRESHNESS_THRESHOLD_HOURS.items()}
    return [
        SourceProfile(
            name=name,
            freshness_threshold_hours=overrides.get(name, ADAPTER_TYPES[name].freshness_threshold_hours),
            probe_url=ADAPTER_TYPES[name].probe_url,
        )
        for name in settings.ENABLED_SOURCES
        if name in ADAPTER_TYPES
    ]
