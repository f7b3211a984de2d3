"""Error taxonomy for ingestion, storage and due-diligence operations."""
from __future__ import annotations

from typing import Any


class DealScoutError(Exception):
    """Base class for every error raised by dealscout."""


class AdapterFetchError(DealScoutError):
    """A source adapter could not produce its records."""
    def __init__(self, source: str, message: str):
        super().__init__(f"{source}: {message}")
        self.source = source


class PersistenceError(DealScoutError):
    """A storage write failed; the current transactional unit was rolled back."""


class DuplicateProvenance(DealScoutError):
    """Another writer stored the same provenance tag first."""
    def __init__(self, tag: str):
        super().__init__(f"Provenance tag already stored: {tag}")
        self.tag = tag


class ValidationError(DealScoutError):
    """A raw field could not be interpreted."""
    def __init__(self, field: str, value: Any, reason: str = "unparseable value"):
        super().__init__(f"{field}: {reason} ({value!r})")
        self.field = field
        self.value = value
        self.reason = reason


class NotFound(DealScoutError):
    pass


class ListingNotFound(NotFound):
    def __init__(self, listing_id: str):
        super().__init__(f"Listing not found: {listing_id}")
        self.listing_id = listing_id


class UnknownSourceError(DealScoutError):
    def __init__(self, source: str):
        super().__init__(f"Unknown data source: {source}")
        self.source = source
