from __future__ import annotations

from unittest.mock import patch

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dealscout.db import create_db_engine, create_session_factory, init_db
from dealscout.errors import DuplicateProvenance, PersistenceError
from dealscout.schemas import (
    ConfidenceInterval,
    ContactInfo,
    DigitalAssetDetails,
    DueDiligenceReport,
    FinancialData,
    Listing,
    Location,
    RiskAssessment,
    RiskComponents,
    ROIProjection,
    SBAAssessment,
    SBAChecks,
    SearchQuery,
    SourceImportResult,
)
from dealscout.store import SqlListingStore


@pytest.fixture()
def store():
    engine = create_db_engine("sqlite://")
    init_db(engine)
    return SqlListingStore(create_session_factory(engine))


def _listing(external_id: str, name: str, **kw) -> Listing:
    return Listing(
        source=kw.pop("source", "bizbuysell"),
        external_id=external_id,
        name=name,
        industry=kw.pop("industry", "Services"),
        location=Location(city=kw.pop("city", "Austin"), state=kw.pop("state", "TX")),
        financial_data=FinancialData(
            asking_price=kw.pop("price", None),
            annual_revenue=kw.pop("revenue", None),
            cash_flow=kw.pop("cash_flow", None),
        ),
        contact_info=ContactInfo(listing_url=kw.pop("url", None)),
        quality_score=kw.pop("quality", 50),
        risk_score=kw.pop("risk", 20),
        **kw,
    )


def _insert(store: SqlListingStore, listing: Listing) -> Listing:
    with store.transaction() as tx:
        return tx.insert(listing)


def _report(listing_id: str) -> DueDiligenceReport:
    return DueDiligenceReport(
        listing_id=listing_id,
        organization_id="org-1",
        investment_amount=500_000,
        risk_assessment=RiskAssessment(
            composite_score=33, grade="B",
            components=RiskComponents(financial_health=25, legal_risk=30, operational_risk=20, market_risk=65),
        ),
        roi_projection=ROIProjection(projected_roi=24.0, break_even_months=50, risk_adjusted_return=16.08,
                                     confidence_interval=ConfidenceInterval(low=16.8, high=31.2)),
        sba_assessment=SBAAssessment(
            qualified=True, qualification_score=1.0,
            checks=SBAChecks(size_standard=True, industry_eligibility=True, financial_health=True),
            max_loan_amount=270_000,
        ),
    )


class TestInsertAndGet:
    def test_round_trip(self, store):
        listing = _listing("1", "Cafe", price=120_000, details=DigitalAssetDetails(tech_stack=["POS"]))
        stored = _insert(store, listing)
        assert stored.id
        assert stored.provenance == ["bizbuysell:1"]
        fetched = store.get_listing(stored.id)
        assert fetched.name == "Cafe"
        assert fetched.financial_data.asking_price == 120_000
        assert fetched.financial_data.annual_revenue is None
        assert isinstance(fetched.details, DigitalAssetDetails)
        assert fetched.created_at is not None

    def test_unknown_id(self, store):
        assert store.get_listing("nope") is None

    def test_provenance_tag_is_unique(self, store):
        _insert(store, _listing("1", "Cafe"))
        with pytest.raises(DuplicateProvenance):
            _insert(store, _listing("1", "Totally Different", city="Dallas"))
        assert store.stats()["total"] == 1

    def test_lookups(self, store):
        _insert(store, _listing("1", "Pet Store", city="Remote", url="https://a.example/1"))
        with store.transaction() as tx:
            assert tx.has_provenance("bizbuysell:1")
            assert not tx.has_provenance("bizbuysell:2")
            assert tx.has_listing_url("https://a.example/1")
            assert tx.has_name("pet store")
            assert tx.has_name_at("pet store", "remote", "TX")
            assert not tx.has_name_at("pet store", "remote", "CA")

    def test_failed_unit_rolls_back(self, store):
        with pytest.raises(RuntimeError):
            with store.transaction() as tx:
                tx.insert(_listing("1", "Cafe"))
                raise RuntimeError("boom")
        assert store.get_listing("1") is None
        assert store.stats()["total"] == 0

    def test_unrelated_constraint_failure_is_not_a_duplicate(self, store):
        failure = IntegrityError("INSERT", {}, Exception("NOT NULL constraint failed: business_listings.name_key"))
        with patch.object(Session, "flush", side_effect=failure):
            with pytest.raises(PersistenceError):
                _insert(store, _listing("1", "Cafe"))
        assert store.stats()["total"] == 0

    def test_commit_time_conflict_on_stored_tag_is_duplicate(self, store):
        _insert(store, _listing("1", "Cafe"))
        conflict = IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed: listing_sources.tag"))
        with pytest.raises(DuplicateProvenance):
            with store.transaction() as tx:
                tx.pending_tags = ["bizbuysell:1"]
                raise conflict

    def test_commit_time_conflict_without_stored_tag_is_persistence_error(self, store):
        conflict = IntegrityError("INSERT", {}, Exception("FOREIGN KEY constraint failed"))
        with pytest.raises(PersistenceError):
            with store.transaction() as tx:
                tx.pending_tags = ["bizbuysell:9"]
                raise conflict


class TestSearch:
    @pytest.fixture()
    def seeded(self, store):
        _insert(store, _listing("1", "Austin Coffee Roasters", industry="Food & Beverage", price=300_000,
                                revenue=600_000, cash_flow=120_000, quality=70))
        _insert(store, _listing("2", "SaaS Dashboard", industry="Technology", city="Remote", state="CA",
                                price=900_000, revenue=400_000, quality=90))
        _insert(store, _listing("3", "Dallas Dry Cleaner", industry="Services", city="Dallas",
                                price=150_000, quality=40))
        _insert(store, _listing("4", "Mystery Listing", industry="Services", quality=10))
        return store

    def test_default_sort_is_quality_desc(self, seeded):
        listings, total = seeded.search(SearchQuery())
        assert total == 4
        assert [l.external_id for l in listings] == ["2", "1", "3", "4"]

    def test_keywords_match_name_or_industry(self, seeded):
        names = {l.name for l in seeded.search(SearchQuery(keywords="tech"))[0]}
        assert names == {"SaaS Dashboard"}
        names = {l.name for l in seeded.search(SearchQuery(keywords="COFFEE"))[0]}
        assert names == {"Austin Coffee Roasters"}

    def test_keyword_wildcards_are_literal(self, store):
        _insert(store, _listing("1", "100% Organic Juice Bar"))
        _insert(store, _listing("2", "1000 Widgets Co"))
        _insert(store, _listing("3", "Snake_Case Consulting", city="El_Paso"))
        _insert(store, _listing("4", "Snakes Case Studio", city="El Paso"))
        assert [l.external_id for l in store.search(SearchQuery(keywords="100%"))[0]] == ["1"]
        assert [l.external_id for l in store.search(SearchQuery(keywords="snake_"))[0]] == ["3"]
        assert [l.external_id for l in store.search(SearchQuery(city="l_p"))[0]] == ["3"]
        assert store.search(SearchQuery(keywords="%"))[1] == 1

    def test_location_filters(self, seeded):
        assert seeded.search(SearchQuery(city="dall"))[1] == 1
        assert seeded.search(SearchQuery(state="ca"))[1] == 1

    def test_financial_ranges_exclude_unknown(self, seeded):
        listings, total = seeded.search(SearchQuery(min_price=200_000, max_price=500_000))
        assert [l.external_id for l in listings] == ["1"]
        assert seeded.search(SearchQuery(min_cash_flow=1))[1] == 1
        assert seeded.search(SearchQuery(max_revenue=500_000))[1] == 1

    def test_industry_list(self, seeded):
        assert seeded.search(SearchQuery(industries=["Services", "Technology"]))[1] == 3

    def test_price_sort_puts_unknown_last(self, seeded):
        listings, _ = seeded.search(SearchQuery(sort_by="price", sort_order="asc"))
        assert [l.external_id for l in listings] == ["3", "1", "2", "4"]

    def test_pagination_total_is_unpaged(self, seeded):
        listings, total = seeded.search(SearchQuery(limit=2, offset=2))
        assert total == 4
        assert [l.external_id for l in listings] == ["3", "4"]

    def test_invalid_sort_rejected(self):
        with pytest.raises(ValueError):
            SearchQuery(sort_by="name")

    def test_stats(self, seeded):
        stats = seeded.stats()
        assert stats["total"] == 4
        assert stats["avg_quality_score"] == 52.5
        assert stats["by_industry"] == {"Services": 2, "Food & Beverage": 1, "Technology": 1}
        assert stats["by_source"] == {"bizbuysell": 4}
        assert stats["reports"] == 0


class TestReportsAndRuns:
    def test_reports_append(self, store):
        stored = _insert(store, _listing("1", "Cafe"))
        first = store.add_report(_report(stored.id))
        second = store.add_report(_report(stored.id))
        assert first.id != second.id
        reports = store.reports_for(stored.id)
        assert len(reports) == 2
        assert reports[0].risk_assessment.grade == "B"
        assert reports[0].roi_projection.confidence_interval.high == 31.2

    def test_import_run_lifecycle(self, store):
        run_id = store.start_import_run("flippa", {"min_price": 1})
        assert store.import_runs()[0]["status"] == "running"
        store.finish_import_run(run_id, SourceImportResult(source="flippa", imported=2, skipped=1))
        run = store.import_runs()[0]
        assert (run["status"], run["imported"], run["skipped"]) == ("success", 2, 1)
        assert run["finished_at"] is not None

    def test_failed_import_run(self, store):
        run_id = store.start_import_run("crexi")
        store.finish_import_run(run_id, SourceImportResult(source="crexi", errors=1, error_message="timeout"))
        assert store.import_runs()[0]["status"] == "failed"
