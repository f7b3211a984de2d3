"""SQLAlchemy-backed persistence gateway for listings, reports and import runs."""
from __future__ import annotations

import logging
from collections import Counter
from contextlib import contextmanager
from typing import Any, Iterator

from sqlalchemy import asc, desc, func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from dealscout.db import session_scope
from dealscout.errors import DuplicateProvenance, PersistenceError
from dealscout.models import BusinessListing, DueDiligenceReportRecord, ImportRun, ListingSource
from dealscout.schemas import DueDiligenceReport, Listing, SearchQuery, SourceImportResult
from dealscout.utils import json_parse, match_key, to_json, utc_now

log = logging.getLogger(__name__)

SORT_COLUMNS = {
    "price": BusinessListing.asking_price,
    "revenue": BusinessListing.annual_revenue,
    "cash_flow": BusinessListing.cash_flow,
    "quality_score": BusinessListing.quality_score,
    "created_at": BusinessListing.created_at,
}

# ---------------------------------------------------------------------------
# Row <-> schema conversion
# ---------------------------------------------------------------------------


def listing_from_row(row: BusinessListing) -> Listing:
    return Listing.model_validate({
        "id": row.id,
        "source": row.source,
        "external_id": row.external_id,
        "name": row.name,
        "industry": row.industry,
        "location": row.location or {},
        "financial_data": row.financial_data or {},
        "contact_info": row.contact_info or {},
        "details": row.source_details,
        "price_range": row.price_range,
        "provenance": list(row.data_sources or []),
        "quality_score": row.quality_score,
        "risk_score": row.risk_score,
        "created_at": row.created_at,
        "last_updated": row.last_updated,
    })


def row_from_listing(listing: Listing) -> BusinessListing:
    fin = listing.financial_data
    now = utc_now()
    tags = sorted(set(listing.provenance) | {listing.provenance_tag})
    row = BusinessListing(
        source=listing.source,
        external_id=listing.external_id,
        name=listing.name,
        industry=listing.industry,
        location=listing.location.model_dump(exclude_none=True),
        financial_data=fin.model_dump(exclude_none=True),
        contact_info=listing.contact_info.model_dump(exclude_none=True),
        source_details=listing.details.model_dump() if listing.details else None,
        price_range=listing.price_range,
        quality_score=listing.quality_score,
        risk_score=listing.risk_score,
        data_sources=tags,
        name_key=match_key(listing.name),
        city_key=match_key(listing.location.city),
        state=listing.location.state.upper(),
        listing_url=listing.contact_info.listing_url,
        asking_price=fin.asking_price,
        annual_revenue=fin.annual_revenue,
        cash_flow=fin.cash_flow,
        created_at=now,
        last_updated=now,
    )
    row.sources = [ListingSource(tag=tag, source=tag.split(":", 1)[0]) for tag in tags]
    return row


def report_from_row(row: DueDiligenceReportRecord) -> DueDiligenceReport:
    return DueDiligenceReport.model_validate({
        "id": row.id,
        "listing_id": row.business_listing_id,
        "organization_id": row.organization_id,
        "investment_amount": row.investment_amount,
        "risk_assessment": row.risk_assessment,
        "roi_projection": row.roi_projection,
        "sba_assessment": row.sba_assessment,
        "created_at": row.created_at,
    })


# ---------------------------------------------------------------------------
# Item transaction
# ---------------------------------------------------------------------------


class ListingTransaction:
    """Duplicate lookups and one insert, all inside a single session transaction."""

    def __init__(self, session: Session):
        self.session = session
        self.pending_tags: list[str] = []

    def _exists(self, *criteria) -> bool:
        stmt = select(BusinessListing.id).where(*criteria).limit(1)
        return self.session.execute(stmt).first() is not None

    def has_provenance(self, tag: str) -> bool:
        stmt = select(ListingSource.id).where(ListingSource.tag == tag).limit(1)
        return self.session.execute(stmt).first() is not None

    def has_listing_url(self, url: str) -> bool:
        return self._exists(BusinessListing.listing_url == url)

    def has_name(self, name_key: str) -> bool:
        return self._exists(BusinessListing.name_key == name_key)

    def has_name_at(self, name_key: str, city_key: str, state: str) -> bool:
        return self._exists(
            BusinessListing.name_key == name_key,
            BusinessListing.city_key == city_key,
            BusinessListing.state == state,
        )

    def insert(self, listing: Listing) -> Listing:
        """Insert a listing; flushes so provenance conflicts surface here.

        A constraint violation is a duplicate only when the tag is found
        stored once the failed flush is rolled back.
        """
        row = row_from_listing(listing)
        self.pending_tags = [source.tag for source in row.sources]
        self.session.add(row)
        try:
            self.session.flush()
        except IntegrityError as exc:
            self.session.rollback()
            if any(self.has_provenance(tag) for tag in self.pending_tags):
                raise DuplicateProvenance(listing.provenance_tag) from exc
            raise PersistenceError(f"insert failed for {listing.provenance_tag}: {exc.orig}") from exc
        except SQLAlchemyError as exc:
            raise PersistenceError(f"insert failed for {listing.provenance_tag}: {exc}") from exc
        return listing_from_row(row)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class SqlListingStore:
    """Persistence gateway. Each public call runs in its own transaction."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self.session_factory = session_factory

    @contextmanager
    def transaction(self) -> Iterator[ListingTransaction]:
        """One item's unit of work: commits on exit, rolls back on error.

        Commit-time failures are translated like flush-time ones.
        """
        tx: ListingTransaction | None = None
        try:
            with session_scope(self.session_factory) as session:
                tx = ListingTransaction(session)
                yield tx
        except IntegrityError as exc:
            tags = tx.pending_tags if tx else []
            stored = [tag for tag in tags if self.has_provenance(tag)]
            if stored:
                raise DuplicateProvenance(stored[0]) from exc
            raise PersistenceError(f"constraint violation: {exc.orig}") from exc
        except SQLAlchemyError as exc:
            raise PersistenceError(str(exc)) from exc

    def has_provenance(self, tag: str) -> bool:
        with session_scope(self.session_factory) as session:
            return ListingTransaction(session).has_provenance(tag)

    # -- listings -----------------------------------------------------------

    def get_listing(self, listing_id: str) -> Listing | None:
        with session_scope(self.session_factory) as session:
            row = session.get(BusinessListing, listing_id)
            return listing_from_row(row) if row else None

    def search(self, query: SearchQuery) -> tuple[list[Listing], int]:
        """Return one page of matches plus the total under the same filters."""
        criteria = _search_criteria(query)
        order_col = SORT_COLUMNS[query.sort_by]
        direction = asc if query.sort_order == "asc" else desc
        with session_scope(self.session_factory) as session:
            total = session.execute(
                select(func.count(BusinessListing.id)).where(*criteria)
            ).scalar_one()
            rows = session.execute(
                select(BusinessListing)
                .where(*criteria)
                .order_by(direction(order_col).nulls_last(), BusinessListing.id)
                .limit(query.limit)
                .offset(query.offset)
            ).scalars().all()
            return [listing_from_row(r) for r in rows], total

    def all_listings(self, query: SearchQuery | None = None) -> list[Listing]:
        criteria = _search_criteria(query) if query else []
        with session_scope(self.session_factory) as session:
            rows = session.execute(
                select(BusinessListing).where(*criteria).order_by(BusinessListing.created_at, BusinessListing.id)
            ).scalars().all()
            return [listing_from_row(r) for r in rows]

    def facet_counts(self, field: str) -> dict[str, int]:
        column = {"industry": BusinessListing.industry, "state": BusinessListing.state}[field]
        with session_scope(self.session_factory) as session:
            rows = session.execute(
                select(column, func.count(BusinessListing.id))
                .where(column != "")
                .group_by(column)
                .order_by(func.count(BusinessListing.id).desc(), column)
            ).all()
            return {value: count for value, count in rows}

    def stats(self) -> dict[str, Any]:
        with session_scope(self.session_factory) as session:
            total, avg_quality, avg_risk = session.execute(
                select(
                    func.count(BusinessListing.id),
                    func.avg(BusinessListing.quality_score),
                    func.avg(BusinessListing.risk_score),
                )
            ).one()
            by_source = Counter(dict(session.execute(
                select(ListingSource.source, func.count(ListingSource.id)).group_by(ListingSource.source)
            ).all()))
            reports = session.execute(select(func.count(DueDiligenceReportRecord.id))).scalar_one()
        return {
            "total": total,
            "avg_quality_score": round(avg_quality, 1) if avg_quality is not None else None,
            "avg_risk_score": round(avg_risk, 1) if avg_risk is not None else None,
            "by_industry": self.facet_counts("industry"),
            "by_state": self.facet_counts("state"),
            "by_source": dict(by_source.most_common()),
            "reports": reports,
        }

    # -- reports ------------------------------------------------------------

    def add_report(self, report: DueDiligenceReport) -> DueDiligenceReport:
        row = DueDiligenceReportRecord(
            business_listing_id=report.listing_id,
            organization_id=report.organization_id,
            investment_amount=report.investment_amount,
            risk_assessment=report.risk_assessment.model_dump(),
            roi_projection=report.roi_projection.model_dump(),
            sba_assessment=report.sba_assessment.model_dump(),
            created_at=utc_now(),
        )
        try:
            with session_scope(self.session_factory) as session:
                session.add(row)
                session.flush()
                return report_from_row(row)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"report insert failed for listing {report.listing_id}: {exc}") from exc

    def reports_for(self, listing_id: str) -> list[DueDiligenceReport]:
        with session_scope(self.session_factory) as session:
            rows = session.execute(
                select(DueDiligenceReportRecord)
                .where(DueDiligenceReportRecord.business_listing_id == listing_id)
                .order_by(DueDiligenceReportRecord.created_at)
            ).scalars().all()
            return [report_from_row(r) for r in rows]

    # -- import runs --------------------------------------------------------

    def start_import_run(self, source: str, filters: dict[str, Any] | None = None) -> int:
        try:
            with session_scope(self.session_factory) as session:
                run = ImportRun(source=source, status="running", filters_json=to_json(filters or {}), started_at=utc_now())
                session.add(run)
                session.flush()
                return run.id
        except SQLAlchemyError as exc:
            raise PersistenceError(f"cannot start import run for {source}: {exc}") from exc

    def finish_import_run(self, run_id: int, result: SourceImportResult) -> None:
        try:
            with session_scope(self.session_factory) as session:
                run = session.get(ImportRun, run_id)
                if run is None:
                    log.warning("Import run %s vanished before it could be finished", run_id)
                    return
                run.status = "failed" if result.error_message else "success"
                run.imported = result.imported
                run.skipped = result.skipped
                run.errors = result.errors
                run.error_message = result.error_message or ""
                run.finished_at = utc_now()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"cannot finish import run {run_id}: {exc}") from exc

    def import_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        with session_scope(self.session_factory) as session:
            rows = session.execute(select(ImportRun).order_by(ImportRun.id.desc()).limit(limit)).scalars().all()
            return [
                {
                    "id": r.id, "source": r.source, "status": r.status, "filters": json_parse(r.filters_json),
                    "imported": r.imported, "skipped": r.skipped, "errors": r.errors,
                    "error_message": r.error_message,
                    "started_at": r.started_at.isoformat() if r.started_at else None,
                    "finished_at": r.finished_at.isoformat() if r.finished_at else None,
                }
                for r in rows
            ]


def _contains(value: str) -> str:
    """LIKE pattern matching *value* literally anywhere, using backslash as the escape character."""
    escaped = value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _search_criteria(query: SearchQuery) -> list:
    criteria: list = []
    if query.keywords:
        pattern = _contains(query.keywords.strip())
        criteria.append(or_(
            BusinessListing.name.ilike(pattern, escape="\\"),
            BusinessListing.industry.ilike(pattern, escape="\\"),
        ))
    if query.industries:
        criteria.append(BusinessListing.industry.in_(query.industries))
    if query.city:
        criteria.append(BusinessListing.city_key.like(_contains(match_key(query.city)), escape="\\"))
    if query.state:
        criteria.append(BusinessListing.state == query.state)
    for value, column, op in (
        (query.min_price, BusinessListing.asking_price, "ge"),
        (query.max_price, BusinessListing.asking_price, "le"),
        (query.min_revenue, BusinessListing.annual_revenue, "ge"),
        (query.max_revenue, BusinessListing.annual_revenue, "le"),
        (query.min_cash_flow, BusinessListing.cash_flow, "ge"),
        (query.max_cash_flow, BusinessListing.cash_flow, "le"),
    ):
        if value is not None:
            criteria.append(column >= value if op == "ge" else column <= value)
    return criteria
