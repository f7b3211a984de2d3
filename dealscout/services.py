"""Shared business operations behind the HTTP API and the CLI."""
from __future__ import annotations

import csv
import io
import json
import logging
from pathlib import Path
from typing import Any

from dealscout.adapters.registry import available_sources, build_adapter
from dealscout.config import Settings
from dealscout.diligence import generate_due_diligence_report as _generate_report
from dealscout.errors import ListingNotFound
from dealscout.ingest import IngestionCoordinator
from dealscout.profiles import SourceProfile
from dealscout.schemas import (
    DueDiligenceReport,
    ImportSummary,
    Listing,
    SearchQuery,
    SearchResults,
    SourceImportResult,
    StatsOut,
)
from dealscout.store import SqlListingStore

log = logging.getLogger(__name__)

CSV_COLUMNS = (
    ("Name", lambda l: l.name),
    ("Industry", lambda l: l.industry),
    ("City", lambda l: l.location.city),
    ("State", lambda l: l.location.state),
    ("Asking Price", lambda l: l.financial_data.asking_price),
    ("Annual Revenue", lambda l: l.financial_data.annual_revenue),
    ("Cash Flow", lambda l: l.financial_data.cash_flow),
    ("Quality Score", lambda l: l.quality_score),
    ("Risk Score", lambda l: l.risk_score),
)

# ---------------------------------------------------------------------------
# Read side
# ---------------------------------------------------------------------------


def search(store: SqlListingStore, query: SearchQuery) -> SearchResults:
    listings, total = store.search(query)
    return SearchResults(
        listings=listings,
        total_count=total,
        has_more=query.offset + query.limit < total,
    )


def get_by_id(store: SqlListingStore, listing_id: str) -> Listing:
    listing = store.get_listing(listing_id)
    if listing is None:
        raise ListingNotFound(listing_id)
    return listing


def compute_stats(store: SqlListingStore) -> StatsOut:
    return StatsOut(**store.stats())


def facets(store: SqlListingStore) -> dict[str, dict[str, int]]:
    return {"industries": store.facet_counts("industry"), "states": store.facet_counts("state")}


def list_sources(profiles: dict[str, SourceProfile]) -> list[dict[str, object]]:
    return available_sources(profiles)


# ---------------------------------------------------------------------------
# Due diligence
# ---------------------------------------------------------------------------


def generate_due_diligence_report(
    store: SqlListingStore,
    settings: Settings,
    listing_id: str,
    organization_id: str,
    *,
    investment: float | None = None,
    current_year: int | None = None,
) -> DueDiligenceReport:
    return _generate_report(
        store,
        listing_id,
        organization_id,
        investment=investment if investment is not None else settings.default_investment,
        current_year=current_year,
    )


# ---------------------------------------------------------------------------
# Import
# ---------------------------------------------------------------------------


async def bulk_import_many(
    store: SqlListingStore,
    settings: Settings,
    profiles: dict[str, SourceProfile],
    sources: list[str],
    filters: dict[str, Any] | None = None,
    *,
    current_year: int | None = None,
    **adapter_options: Any,
) -> ImportSummary:
    """Import several sources concurrently. Unknown source names raise before anything is fetched."""
    adapters = [build_adapter(s, settings, profiles, **adapter_options) for s in sources]
    coordinator = IngestionCoordinator(store, settings, current_year=current_year)
    return await coordinator.run(adapters, filters)


async def bulk_import(
    store: SqlListingStore,
    settings: Settings,
    profiles: dict[str, SourceProfile],
    source_name: str,
    filters: dict[str, Any] | None = None,
    *,
    current_year: int | None = None,
    **adapter_options: Any,
) -> SourceImportResult:
    summary = await bulk_import_many(
        store, settings, profiles, [source_name], filters, current_year=current_year, **adapter_options,
    )
    return summary.sources[0]


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------


def _cell(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def export_listings(listings: list[Listing], fmt: str = "csv") -> str:
    if fmt == "json":
        return json.dumps([l.model_dump(mode="json") for l in listings], indent=2, ensure_ascii=False)
    if fmt != "csv":
        raise ValueError(f"Unsupported export format: {fmt}")
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow([header for header, _ in CSV_COLUMNS])
    for listing in listings:
        writer.writerow([_cell(get(listing)) for _, get in CSV_COLUMNS])
    return buf.getvalue()


def write_export(listings: list[Listing], path: Path, fmt: str = "csv") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(export_listings(listings, fmt), encoding="utf-8")
    log.info("Exported %d listings to %s", len(listings), path)
    return path
