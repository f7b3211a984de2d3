from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, AsyncIterator

import openpyxl

from dealscout.adapters.base import SourceAdapter
from dealscout.errors import AdapterFetchError
from dealscout.profiles import SourceProfile
from dealscout.schemas import RawRecord

log = logging.getLogger(__name__)

# Canonical path -> spreadsheet header (matched case-insensitively)
DEFAULT_COLUMNS: dict[str, str] = {
    "external_id": "ID",
    "name": "Name",
    "industry": "Industry",
    "location.address": "Address",
    "location.city": "City",
    "location.state": "State",
    "location.zip": "Zip",
    "financial_data.asking_price": "Asking Price",
    "financial_data.annual_revenue": "Annual Revenue",
    "financial_data.cash_flow": "Cash Flow",
    "financial_data.established_year": "Established",
    "financial_data.employees": "Employees",
    "contact_info.broker_name": "Broker",
    "contact_info.broker_email": "Broker Email",
    "contact_info.broker_phone": "Broker Phone",
    "contact_info.listing_url": "URL",
    "contact_info.description": "Description",
}


def _s(value: object) -> str:
    """Safely coerce cell value to stripped string."""
    if value is None:
        return ""
    return str(value).strip()


class SpreadsheetAdapter(SourceAdapter):
    """Reads listings from the first sheet of an ``.xlsx`` export (header row first)."""

    def __init__(self, profile: SourceProfile, path: Path, *, columns: dict[str, str] | None = None):
        super().__init__(profile)
        self.path = Path(path)
        self.field_map = columns or DEFAULT_COLUMNS

    def _read_rows(self) -> list[tuple[int, dict[str, Any]]]:
        """Non-blank data rows with their 1-based sheet row numbers."""
        wb = openpyxl.load_workbook(self.path, read_only=True, data_only=True)
        try:
            ws = wb.worksheets[0]
            rows = ws.iter_rows(values_only=True)
            header = next(rows, None)
            if not header:
                return []
            wanted = {h.casefold(): h for h in self.field_map.values()}
            index = {wanted[_s(cell).casefold()]: i for i, cell in enumerate(header) if _s(cell).casefold() in wanted}
            out: list[tuple[int, dict[str, Any]]] = []
            for row_number, row in enumerate(rows, start=2):
                if not row or all(cell is None for cell in row):
                    continue
                out.append((row_number, {h: row[i] if i < len(row) else None for h, i in index.items()}))
            return out
        finally:
            wb.close()

    async def fetch(self, filters: dict[str, Any] | None = None) -> AsyncIterator[RawRecord]:
        try:
            rows = await asyncio.to_thread(self._read_rows)
        except Exception as exc:  # noqa: BLE001
            raise AdapterFetchError(self.source, f"cannot read {self.path}: {exc}") from exc
        log.info("Read %d rows from %s", len(rows), self.path.name)
        id_header = self.field_map.get("external_id", "ID")
        for row_number, row in rows:
            external_id = _s(row.get(id_header)) or f"{self.path.stem}-row{row_number}"
            yield RawRecord(source=self.source, external_id=external_id, data=row)
