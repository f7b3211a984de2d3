from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, AsyncIterator
from unittest.mock import patch

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dealscout.adapters.base import SourceAdapter
from dealscout.adapters.sample import SampleAdapter
from dealscout.config import Settings
from dealscout.db import create_db_engine, create_session_factory, init_db
from dealscout.errors import AdapterFetchError, PersistenceError
from dealscout.ingest import IngestionCoordinator
from dealscout.profiles import DEFAULT_PROFILES, get_profile
from dealscout.schemas import ItemOutcome, RawRecord, SearchQuery
from dealscout.store import ListingTransaction, SqlListingStore

YEAR = 2025


class ListAdapter(SourceAdapter):
    def __init__(self, source: str, items: list[dict[str, Any]], fail_after: int | None = None):
        super().__init__(get_profile(source))
        self.items = items
        self.fail_after = fail_after

    async def fetch(self, filters: dict[str, Any] | None = None) -> AsyncIterator[RawRecord]:
        for n, item in enumerate(self.items):
            if self.fail_after is not None and n == self.fail_after:
                raise AdapterFetchError(self.source, "connection reset")
            await asyncio.sleep(0)
            yield RawRecord(source=self.source, external_id=item.get("external_id"), data=item)


class ExplodingAdapter(SourceAdapter):
    async def fetch(self, filters: dict[str, Any] | None = None) -> AsyncIterator[RawRecord]:
        raise ConnectionError("dns failure")
        yield  # pragma: no cover


def _item(external_id: str, name: str, **kw) -> dict[str, Any]:
    return {
        "external_id": external_id,
        "name": name,
        "industry": kw.get("industry", "Services"),
        "location": {"city": kw.get("city", "Austin"), "state": kw.get("state", "TX")},
        "financial_data": kw.get("financial_data", {"asking_price": 100_000, "annual_revenue": 250_000}),
        "contact_info": {"listing_url": kw.get("url")},
    }


@pytest.fixture()
def store():
    engine = create_db_engine("sqlite://")
    init_db(engine)
    return SqlListingStore(create_session_factory(engine))


@pytest.fixture()
def settings(tmp_path: Path):
    return Settings(database_url="sqlite://", exports_dir=tmp_path, source_profiles_file=None, strict_financials=False)


@pytest.fixture()
def coordinator(store, settings):
    return IngestionCoordinator(store, settings, current_year=YEAR)


class TestIngestRecord:
    def test_imports_then_skips_same_provenance(self, coordinator, store):
        record = RawRecord(source="flippa", external_id="f1", data=_item("f1", "Shop"))
        profile = DEFAULT_PROFILES["flippa"]
        assert coordinator.ingest_record(record, profile) == (ItemOutcome.IMPORTED, 0)
        assert coordinator.ingest_record(record, profile) == (ItemOutcome.SKIPPED, 0)
        assert store.search(SearchQuery())[1] == 1

    def test_scores_are_persisted(self, coordinator, store):
        record = RawRecord(source="twitter", external_id="t1", data=_item("t1", "Newsletter", city="Remote"))
        coordinator.ingest_record(record, DEFAULT_PROFILES["twitter"])
        listing = store.search(SearchQuery())[0][0]
        # price 10, revenue 10, city+state 10, twitter -10
        assert listing.quality_score == 20
        # age unknown 30, twitter 15, remote 5
        assert listing.risk_score == 50
        assert listing.price_range == "$100K–$250K"

    def test_invalid_record_is_an_error(self, coordinator):
        record = RawRecord(source="flippa", external_id="f1", data={"name": ""})
        assert coordinator.ingest_record(record, DEFAULT_PROFILES["flippa"])[0] is ItemOutcome.ERROR

    def test_rejected_fields_are_counted(self, coordinator, store):
        data = _item("f1", "Shop", financial_data={"asking_price": "ask", "annual_revenue": "lots"})
        outcome, rejected = coordinator.ingest_record(
            RawRecord(source="flippa", external_id="f1", data=data), DEFAULT_PROFILES["flippa"],
        )
        assert outcome is ItemOutcome.IMPORTED
        assert rejected == 2
        assert store.search(SearchQuery())[0][0].financial_data.asking_price is None

    def test_strict_mode_turns_rejection_into_error(self, store, settings):
        strict = IngestionCoordinator(store, settings.model_copy(update={"strict_financials": True}), current_year=YEAR)
        data = _item("f1", "Shop", financial_data={"asking_price": "ask"})
        outcome, _ = strict.ingest_record(RawRecord(source="flippa", external_id="f1", data=data), DEFAULT_PROFILES["flippa"])
        assert outcome is ItemOutcome.ERROR
        assert store.search(SearchQuery())[1] == 0

    def test_concurrent_writer_race_counts_as_skip(self, coordinator, store, monkeypatch):
        monkeypatch.setattr("dealscout.ingest.duplicate_reason", lambda *_: None)
        record = RawRecord(source="flippa", external_id="f1", data=_item("f1", "Shop"))
        profile = DEFAULT_PROFILES["flippa"]
        assert coordinator.ingest_record(record, profile)[0] is ItemOutcome.IMPORTED
        assert coordinator.ingest_record(record, profile)[0] is ItemOutcome.SKIPPED
        assert store.search(SearchQuery())[1] == 1

    def test_persistence_failure_is_an_error(self, coordinator, store, monkeypatch):
        def broken_insert(self, listing):
            raise PersistenceError("disk full")

        monkeypatch.setattr(ListingTransaction, "insert", broken_insert)
        record = RawRecord(source="flippa", external_id="f1", data=_item("f1", "Shop"))
        assert coordinator.ingest_record(record, DEFAULT_PROFILES["flippa"])[0] is ItemOutcome.ERROR
        assert store.search(SearchQuery())[1] == 0


class TestImportSource:
    def test_counts(self, coordinator):
        adapter = ListAdapter("crexi", [
            _item("c1", "Bakery"),
            _item("c2", "bakery", city="austin", state="tx"),
            _item("c3", ""),
            _item("c4", "Bakery", city="Dallas"),
        ])
        result = asyncio.run(coordinator.import_source(adapter))
        assert (result.imported, result.skipped, result.errors) == (2, 1, 1)
        assert result.error_message is None

    def test_fetch_failure_keeps_earlier_items(self, coordinator, store):
        adapter = ListAdapter("flippa", [_item("f1", "A"), _item("f2", "B"), _item("f3", "C")], fail_after=2)
        result = asyncio.run(coordinator.import_source(adapter))
        assert result.imported == 2
        assert result.errors == 1
        assert "connection reset" in result.error_message
        assert store.search(SearchQuery())[1] == 2
        run = store.import_runs()[0]
        assert (run["source"], run["status"], run["imported"]) == ("flippa", "failed", 2)

    def test_unexpected_adapter_exception_is_wrapped(self, coordinator):
        result = asyncio.run(coordinator.import_source(ExplodingAdapter(get_profile("acquire"))))
        assert result.errors == 1
        assert result.error_message.startswith("acquire:")

    def test_item_failure_does_not_abort_siblings(self, coordinator, store, monkeypatch):
        original = ListingTransaction.insert

        def flaky_insert(self, listing):
            if listing.name == "B":
                raise PersistenceError("constraint")
            return original(self, listing)

        monkeypatch.setattr(ListingTransaction, "insert", flaky_insert)
        adapter = ListAdapter("flippa", [_item("f1", "A"), _item("f2", "B"), _item("f3", "C")])
        result = asyncio.run(coordinator.import_source(adapter))
        assert (result.imported, result.errors) == (2, 1)
        assert {l.name for l in store.search(SearchQuery())[0]} == {"A", "C"}

    def test_malformed_item_does_not_abort_later_items(self, coordinator, store):
        malformed = {**_item("f2", "Beta"), "location": "Austin, TX"}
        adapter = ListAdapter("flippa", [_item("f1", "Alpha"), malformed, _item("f3", "Gamma")])
        result = asyncio.run(coordinator.import_source(adapter))
        assert (result.imported, result.skipped, result.errors) == (2, 0, 1)
        assert result.error_message is None
        assert {l.name for l in store.search(SearchQuery())[0]} == {"Alpha", "Gamma"}

    def test_unexpected_normalizer_failure_is_an_item_error(self, coordinator, monkeypatch):
        def broken(*args, **kwargs):
            raise TypeError("unhashable type: 'list'")

        monkeypatch.setattr("dealscout.ingest.normalize_record", broken)
        record = RawRecord(source="flippa", external_id="f1", data=_item("f1", "Shop"))
        assert coordinator.ingest_record(record, DEFAULT_PROFILES["flippa"]) == (ItemOutcome.ERROR, 0)

    def test_unrelated_constraint_failure_is_an_error(self, coordinator, store):
        failure = IntegrityError("INSERT", {}, Exception("NOT NULL constraint failed: business_listings.name_key"))
        record = RawRecord(source="flippa", external_id="f1", data=_item("f1", "Shop"))
        with patch.object(Session, "flush", side_effect=failure):
            outcome, _ = coordinator.ingest_record(record, DEFAULT_PROFILES["flippa"])
        assert outcome is ItemOutcome.ERROR
        assert store.search(SearchQuery())[1] == 0

    def test_run_bookkeeping_failure_does_not_block_import(self, coordinator, store):
        adapter = ListAdapter("flippa", [_item("f1", "A")])
        with patch.object(store, "start_import_run", side_effect=PersistenceError("database is locked")), \
                patch.object(store, "finish_import_run") as finish:
            result = asyncio.run(coordinator.import_source(adapter))
        assert result.imported == 1
        finish.assert_not_called()
        assert store.import_runs() == []


class TestRun:
    def test_one_failing_source_does_not_stop_others(self, coordinator, store):
        adapters = [
            ListAdapter("flippa", [_item("f1", "A", city="Remote", url="https://f/1")]),
            ExplodingAdapter(get_profile("crexi")),
            ListAdapter("acquire", [_item("a1", "B")]),
        ]
        summary = asyncio.run(coordinator.run(adapters))
        by_source = {r.source: r for r in summary.sources}
        assert by_source["flippa"].imported == 1
        assert by_source["crexi"].errors == 1
        assert by_source["acquire"].imported == 1
        assert summary.totals() == {"imported": 2, "skipped": 0, "errors": 1}

    def test_concurrent_sources_same_tag_yield_one_listing(self, coordinator, store):
        items = [_item(f"f{n}", f"Shop {n}") for n in range(5)]
        summary = asyncio.run(coordinator.run([ListAdapter("flippa", items), ListAdapter("flippa", items)]))
        assert summary.imported == 5
        assert summary.skipped == 5
        assert store.search(SearchQuery(limit=100))[1] == 5

    def test_cross_source_remote_duplicate_by_url(self, coordinator, store):
        summary = asyncio.run(coordinator.run([
            ListAdapter("flippa", [_item("f1", "Pet Store", city="Remote", url="https://x/1")]),
        ]))
        assert summary.imported == 1
        again = asyncio.run(coordinator.run([
            ListAdapter("acquire", [_item("a9", "Pet Store Inc", city="Remote", url="https://x/1")]),
        ]))
        assert again.skipped == 1

    def test_sample_catalogue_imports_everything_once(self, coordinator, store):
        adapters = [SampleAdapter(p) for p in DEFAULT_PROFILES.values()]
        first = coordinator.run_sync(adapters)
        second = coordinator.run_sync(adapters)
        assert first.errors == 0
        assert first.imported == 24
        assert second.imported == 0
        assert second.skipped == 24
        for listing in store.all_listings():
            assert 0 <= listing.quality_score <= 100
            assert 0 <= listing.risk_score <= 100
