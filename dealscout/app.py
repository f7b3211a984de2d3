from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from dealscout import services
from dealscout.config import Settings, get_settings
from dealscout.db import create_db_engine, create_session_factory, init_db
from dealscout.errors import ListingNotFound, UnknownSourceError
from dealscout.profiles import SourceProfile, load_profiles
from dealscout.schemas import (
    DueDiligenceReport,
    Listing,
    SearchQuery,
    SearchResults,
    SourceImportResult,
    StatsOut,
)
from dealscout.store import SqlListingStore

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def get_app_settings() -> Settings:
    return get_settings()


def get_store(request: Request) -> SqlListingStore:
    return request.app.state.store


def get_profiles(settings: Settings = Depends(get_app_settings)) -> dict[str, SourceProfile]:
    return load_profiles(settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    engine = None
    if get_store not in app.dependency_overrides:
        settings = get_settings()
        engine = create_db_engine(settings.database_url)
        init_db(engine)
        app.state.store = SqlListingStore(create_session_factory(engine))
    yield
    if engine is not None:
        engine.dispose()


app = FastAPI(
    title="DealScout",
    version="0.1.0",
    description=(
        "Business-for-sale listing search, multi-source import and due-diligence analysis. "
        "All endpoints return JSON unless noted."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Listings", "description": "Search and inspect canonical business listings."},
        {"name": "Due Diligence", "description": "Risk, ROI and SBA analysis for a listing."},
        {"name": "Import", "description": "Pull listings from configured sources."},
        {"name": "Stats", "description": "Aggregate statistics, facets and export."},
    ],
)


def _listing_or_404(store: SqlListingStore, listing_id: str) -> Listing:
    try:
        return services.get_by_id(store, listing_id)
    except ListingNotFound:
        raise HTTPException(404, "Listing not found")


# ---------------------------------------------------------------------------
# Routes: Listings
# ---------------------------------------------------------------------------


@app.get("/api/listings", response_model=SearchResults,
         tags=["Listings"], summary="Search listings with filters, sorting and pagination")
async def search_listings(
    keywords: str | None = Query(None, description="Substring match on name or industry"),
    industry: list[str] = Query([], description="Exact industry; repeat for several"),
    city: str | None = None,
    state: str | None = None,
    min_price: float | None = None,
    max_price: float | None = None,
    min_revenue: float | None = None,
    max_revenue: float | None = None,
    min_cash_flow: float | None = None,
    max_cash_flow: float | None = None,
    sort_by: str = Query("quality_score", description="price, revenue, cash_flow, quality_score, created_at"),
    sort_order: str = Query("desc", description="asc or desc"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    store: SqlListingStore = Depends(get_store),
):
    try:
        query = SearchQuery(
            keywords=keywords, industries=industry, city=city, state=state,
            min_price=min_price, max_price=max_price,
            min_revenue=min_revenue, max_revenue=max_revenue,
            min_cash_flow=min_cash_flow, max_cash_flow=max_cash_flow,
            sort_by=sort_by, sort_order=sort_order, limit=limit, offset=offset,
        )
    except ValueError as exc:
        raise HTTPException(422, str(exc))
    return services.search(store, query)


@app.get("/api/listings/{listing_id}", response_model=Listing,
         tags=["Listings"], summary="Get one listing by id")
async def get_listing(listing_id: str, store: SqlListingStore = Depends(get_store)):
    return _listing_or_404(store, listing_id)


# ---------------------------------------------------------------------------
# Routes: Due diligence
# ---------------------------------------------------------------------------


class DueDiligenceRequest(BaseModel):
    organization_id: str
    investment: float | None = None


@app.post("/api/listings/{listing_id}/due-diligence", response_model=DueDiligenceReport,
          tags=["Due Diligence"], summary="Generate and store a due-diligence report")
async def create_report(
    listing_id: str,
    body: DueDiligenceRequest,
    store: SqlListingStore = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
):
    try:
        return services.generate_due_diligence_report(
            store, settings, listing_id, body.organization_id, investment=body.investment,
        )
    except ListingNotFound:
        raise HTTPException(404, "Listing not found")


@app.get("/api/listings/{listing_id}/reports", response_model=list[DueDiligenceReport],
         tags=["Due Diligence"], summary="All reports generated for a listing, oldest first")
async def list_reports(listing_id: str, store: SqlListingStore = Depends(get_store)):
    _listing_or_404(store, listing_id)
    return store.reports_for(listing_id)


# ---------------------------------------------------------------------------
# Routes: Import
# ---------------------------------------------------------------------------


class ImportRequest(BaseModel):
    filters: dict[str, Any] = {}
    feed_url: str | None = None
    region: str | None = None


@app.post("/api/import/{source}", response_model=SourceImportResult,
          tags=["Import"], summary="Import listings from one source")
async def import_source(
    source: str,
    body: ImportRequest | None = None,
    store: SqlListingStore = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
    profiles: dict[str, SourceProfile] = Depends(get_profiles),
):
    body = body or ImportRequest()
    try:
        return await services.bulk_import(
            store, settings, profiles, source, body.filters,
            feed_url=body.feed_url, region=body.region,
        )
    except UnknownSourceError as exc:
        raise HTTPException(400, str(exc))


@app.get("/api/import-runs", tags=["Import"], summary="Most recent import runs")
async def import_runs(limit: int = Query(20, ge=1, le=200), store: SqlListingStore = Depends(get_store)):
    return store.import_runs(limit)


@app.get("/api/sources", tags=["Import"], summary="Known sources and their scoring profiles")
async def sources(profiles: dict[str, SourceProfile] = Depends(get_profiles)):
    return services.list_sources(profiles)


# ---------------------------------------------------------------------------
# Routes: Stats
# ---------------------------------------------------------------------------


@app.get("/api/stats", response_model=StatsOut, tags=["Stats"], summary="Aggregate listing statistics")
async def stats(store: SqlListingStore = Depends(get_store)):
    return services.compute_stats(store)


@app.get("/api/industries", tags=["Stats"], summary="Industries with listing counts")
async def industries(store: SqlListingStore = Depends(get_store)):
    return services.facets(store)["industries"]


@app.get("/api/states", tags=["Stats"], summary="States with listing counts")
async def states(store: SqlListingStore = Depends(get_store)):
    return services.facets(store)["states"]


@app.get("/api/export", tags=["Stats"], summary="Export all listings as CSV or JSON")
async def export(fmt: str = Query("csv", alias="format"), store: SqlListingStore = Depends(get_store)):
    if fmt not in ("csv", "json"):
        raise HTTPException(400, "format must be csv or json")
    body = services.export_listings(store.all_listings(), fmt)
    media_type = "text/csv" if fmt == "csv" else "application/json"
    return PlainTextResponse(
        body, media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="listings.{fmt}"'},
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("dealscout.app:app", host="127.0.0.1", port=8001, reload=True)
