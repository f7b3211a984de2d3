"""Exact-match duplicate detection for normalized listings.

No fuzzy matching: every rule compares casefolded, whitespace-collapsed keys
for equality.
"""
from __future__ import annotations

from typing import Protocol

from dealscout.schemas import Listing, Location
from dealscout.utils import match_key

REMOTE_MARKERS = frozenset({"remote", "online"})


class DuplicateLookup(Protocol):
    def has_provenance(self, tag: str) -> bool: ...
    def has_listing_url(self, url: str) -> bool: ...
    def has_name(self, name_key: str) -> bool: ...
    def has_name_at(self, name_key: str, city_key: str, state: str) -> bool: ...


def provenance_tag(source: str, external_id: str) -> str:
    return f"{source}:{external_id}"


def is_remote_location(location: Location) -> bool:
    return match_key(location.city) in REMOTE_MARKERS


def duplicate_reason(candidate: Listing, lookup: DuplicateLookup) -> str | None:
    """Name of the first rule that matches *candidate*, or ``None``."""
    if lookup.has_provenance(candidate.provenance_tag):
        return "provenance"
    name_key = match_key(candidate.name)
    if is_remote_location(candidate.location):
        url = candidate.contact_info.listing_url
        if url:
            return "listing_url" if lookup.has_listing_url(url) else None
        return "name" if lookup.has_name(name_key) else None
    city_key = match_key(candidate.location.city)
    state = candidate.location.state.upper()
    if lookup.has_name_at(name_key, city_key, state):
        return "name_location"
    return None


def is_duplicate(candidate: Listing, lookup: DuplicateLookup) -> bool:
    return duplicate_reason(candidate, lookup) is not None
