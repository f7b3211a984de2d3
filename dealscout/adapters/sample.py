from __future__ import annotations

import json
import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, AsyncIterator

from dealscout.adapters.base import SourceAdapter
from dealscout.dedup import REMOTE_MARKERS
from dealscout.errors import AdapterFetchError
from dealscout.profiles import SourceProfile
from dealscout.schemas import RawRecord

log = logging.getLogger(__name__)

SAMPLE_FILE = Path(__file__).resolve().parent.parent / "data" / "sample_listings.json"


@lru_cache(maxsize=4)
def load_catalogue(path: Path = SAMPLE_FILE) -> dict[str, list[dict[str, Any]]]:
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def sample_sources(path: Path = SAMPLE_FILE) -> list[str]:
    return sorted(load_catalogue(path))


def matches_filters(item: dict[str, Any], filters: dict[str, Any]) -> bool:
    price = (item.get("financial_data") or {}).get("asking_price")
    if filters.get("min_price") is not None and (price is None or price < filters["min_price"]):
        return False
    if filters.get("max_price") is not None and (price is None or price > filters["max_price"]):
        return False
    industries = [i.casefold() for i in filters.get("industries") or []]
    if industries and (item.get("industry") or "").casefold() not in industries:
        return False
    city = ((item.get("location") or {}).get("city") or "").casefold()
    if filters.get("include_remote") is False and city in REMOTE_MARKERS:
        return False
    return True


class SampleAdapter(SourceAdapter):
    """Serves one source's entries from the bundled sample catalogue."""

    def __init__(self, profile: SourceProfile, path: Path = SAMPLE_FILE):
        super().__init__(profile)
        self.path = path

    async def fetch(self, filters: dict[str, Any] | None = None) -> AsyncIterator[RawRecord]:
        filters = filters or {}
        try:
            items = load_catalogue(self.path).get(self.source, [])
        except (OSError, json.JSONDecodeError) as exc:
            raise AdapterFetchError(self.source, f"cannot read sample catalogue {self.path}: {exc}") from exc
        log.info("Sample catalogue has %d %s listings", len(items), self.profile.label)
        for item in items:
            if not matches_filters(item, filters):
                continue
            yield RawRecord(source=self.source, external_id=item.get("external_id"), data=item)
