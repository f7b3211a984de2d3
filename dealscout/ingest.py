"""Import runs: fetch -> normalize -> dedup -> score -> persist, one item at a time."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Sequence

from dealscout.adapters.base import SourceAdapter
from dealscout.config import Settings
from dealscout.dedup import duplicate_reason
from dealscout.errors import AdapterFetchError, DuplicateProvenance, PersistenceError, ValidationError
from dealscout.normalizer import normalize_record
from dealscout.profiles import SourceProfile
from dealscout.schemas import ImportSummary, ItemOutcome, RawRecord, SourceImportResult
from dealscout.scoring import score_listing
from dealscout.store import SqlListingStore
from dealscout.utils import utc_now

log = logging.getLogger(__name__)


class IngestionCoordinator:
    """Runs one import over any number of adapters.

    Sources run concurrently; records within a source are handled in order,
    each in its own storage transaction so earlier items stay durable when a
    later one fails.
    """

    def __init__(self, store: SqlListingStore, settings: Settings, *, current_year: int | None = None):
        self.store = store
        self.settings = settings
        self.current_year = current_year or utc_now().year

    # -- one record ---------------------------------------------------------

    def ingest_record(
        self,
        record: RawRecord,
        profile: SourceProfile,
        field_map: dict[str, str] | None = None,
    ) -> tuple[ItemOutcome, int]:
        """Process one raw record; returns the outcome and the number of rejected fields."""
        try:
            normalized = normalize_record(record, field_map=field_map, strict=self.settings.strict_financials)
        except ValidationError as exc:
            log.warning("Invalid record %s:%s: %s", record.source, record.external_id, exc)
            return ItemOutcome.ERROR, 0
        except Exception as exc:  # noqa: BLE001
            log.exception("Unexpected error normalizing %s:%s: %s", record.source, record.external_id, exc)
            return ItemOutcome.ERROR, 0

        listing = normalized.listing
        rejected = len(normalized.rejected_fields)
        tag = listing.provenance_tag
        try:
            with self.store.transaction() as tx:
                reason = duplicate_reason(listing, tx)
                if reason:
                    log.info("Skipped %s: duplicate by %s", tag, reason)
                    return ItemOutcome.SKIPPED, rejected
                stored = tx.insert(score_listing(listing, profile, self.current_year))
        except DuplicateProvenance:
            log.info("Skipped %s: stored concurrently by another writer", tag)
            return ItemOutcome.SKIPPED, rejected
        except PersistenceError as exc:
            log.error("Failed to store %s: %s", tag, exc)
            return ItemOutcome.ERROR, rejected
        except Exception as exc:  # noqa: BLE001
            log.exception("Unexpected error ingesting %s: %s", tag, exc)
            return ItemOutcome.ERROR, rejected

        log.info("Imported %s as %s (quality=%d risk=%d)", tag, stored.id, stored.quality_score, stored.risk_score)
        return ItemOutcome.IMPORTED, rejected

    # -- one source ---------------------------------------------------------

    def _start_run(self, source: str, filters: dict[str, Any]) -> int | None:
        try:
            return self.store.start_import_run(source, filters)
        except PersistenceError as exc:
            log.error("Could not record import run for %s: %s", source, exc)
            return None

    def _finish_run(self, run_id: int | None, result: SourceImportResult) -> None:
        if run_id is None:
            return
        try:
            self.store.finish_import_run(run_id, result)
        except PersistenceError as exc:
            log.error("Could not finish import run %s: %s", run_id, exc)

    async def import_source(self, adapter: SourceAdapter, filters: dict[str, Any] | None = None) -> SourceImportResult:
        filters = filters or {}
        result = SourceImportResult(source=adapter.source)
        run_id = self._start_run(adapter.source, filters)
        try:
            async for record in adapter.fetch(filters):
                outcome, rejected = self.ingest_record(record, adapter.profile, adapter.field_map)
                result.rejected_fields += rejected
                if outcome is ItemOutcome.IMPORTED:
                    result.imported += 1
                elif outcome is ItemOutcome.SKIPPED:
                    result.skipped += 1
                else:
                    result.errors += 1
        except AdapterFetchError as exc:
            log.error("Source %s failed: %s", adapter.source, exc)
            result.errors += 1
            result.error_message = str(exc)
        except Exception as exc:  # noqa: BLE001
            err = AdapterFetchError(adapter.source, str(exc) or type(exc).__name__)
            log.error("Source %s failed: %s", adapter.source, err)
            result.errors += 1
            result.error_message = str(err)
        self._finish_run(run_id, result)
        log.info(
            "Source %s done: %d imported, %d skipped, %d errors",
            adapter.source, result.imported, result.skipped, result.errors,
        )
        return result

    # -- whole run ----------------------------------------------------------

    async def run(self, adapters: Sequence[SourceAdapter], filters: dict[str, Any] | None = None) -> ImportSummary:
        results = await asyncio.gather(*(self.import_source(a, filters) for a in adapters))
        return ImportSummary(sources=list(results))

    def run_sync(self, adapters: Sequence[SourceAdapter], filters: dict[str, Any] | None = None) -> ImportSummary:
        return asyncio.run(self.run(adapters, filters))
