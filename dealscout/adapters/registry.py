"""Resolve a source name plus options to a configured adapter."""
from __future__ import annotations

from pathlib import Path

import httpx

from dealscout.adapters.base import SourceAdapter
from dealscout.adapters.craigslist import CraigslistAdapter
from dealscout.adapters.feeds import JsonFeedAdapter
from dealscout.adapters.sample import SAMPLE_FILE, SampleAdapter, sample_sources
from dealscout.adapters.spreadsheet import SpreadsheetAdapter
from dealscout.config import Settings
from dealscout.errors import UnknownSourceError
from dealscout.profiles import SourceProfile, get_profile, source_key


def available_sources(profiles: dict[str, SourceProfile]) -> list[dict[str, object]]:
    sampled = set(sample_sources())
    return [
        {
            "key": p.key,
            "label": p.label,
            "quality_adjustment": p.quality_adjustment,
            "risk_adjustment": p.risk_adjustment,
            "sample_data": p.key in sampled,
            "live": p.key == "craigslist",
        }
        for p in sorted(profiles.values(), key=lambda p: p.key)
    ]


def build_adapter(
    source: str,
    settings: Settings,
    profiles: dict[str, SourceProfile],
    *,
    feed_url: str | None = None,
    xlsx_path: Path | None = None,
    region: str | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> SourceAdapter:
    """Pick the adapter for *source*.

    An explicit feed URL or spreadsheet wins for any source name; Craigslist
    with a region goes live; otherwise the sample catalogue is used when it
    carries entries for the source.
    """
    key = source_key(source)
    if not key:
        raise UnknownSourceError(source)
    profile = get_profile(key, profiles)
    if xlsx_path is not None:
        return SpreadsheetAdapter(profile, xlsx_path)
    if feed_url:
        return JsonFeedAdapter(profile, feed_url, settings, transport=transport)
    if key == "craigslist" and region:
        return CraigslistAdapter(profile, settings, region=region, transport=transport)
    if key in sample_sources(SAMPLE_FILE):
        return SampleAdapter(profile)
    raise UnknownSourceError(source)
