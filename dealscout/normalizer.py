"""Map source-native raw records onto the canonical :class:`Listing` shape."""
from __future__ import annotations

import logging
import math
import re
from typing import Any

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from dealscout.errors import ValidationError
from dealscout.profiles import source_key
from dealscout.schemas import (
    ContactInfo,
    FinancialData,
    Listing,
    Location,
    NormalizedRecord,
    RawRecord,
    SourceDetails,
)
from dealscout.utils import collapse_whitespace

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Price buckets
# ---------------------------------------------------------------------------

PRICE_RANGES: tuple[tuple[float, str], ...] = (
    (50_000, "Under $50K"),
    (100_000, "$50K–$100K"),
    (250_000, "$100K–$250K"),
    (500_000, "$250K–$500K"),
    (1_000_000, "$500K–$1M"),
)
TOP_PRICE_RANGE = "Over $1M"


def price_range(asking_price: float | None) -> str | None:
    """Bucket label for an asking price; lower bounds are inclusive."""
    if asking_price is None:
        return None
    for upper, label in PRICE_RANGES:
        if asking_price < upper:
            return label
    return TOP_PRICE_RANGE


# ---------------------------------------------------------------------------
# Field parsers
# ---------------------------------------------------------------------------

_ABSENT = {"", "-", "n/a", "na", "none", "null", "undisclosed", "not disclosed", "tbd", "call"}
_AMOUNT_RE = re.compile(r"^(-)?\$?(-)?(\d+(?:\.\d+)?)\s*([kmb])?(?:\s*usd)?$", re.IGNORECASE)
_MULTIPLIERS = {"k": 1_000, "m": 1_000_000, "b": 1_000_000_000}


def _is_absent(value: Any) -> bool:
    return value is None or (isinstance(value, str) and collapse_whitespace(value).casefold() in _ABSENT)


def parse_amount(value: Any, field: str = "amount") -> float | None:
    """Parse a money figure: ``1250000``, ``"$1,250,000"``, ``"85K"``, ``"1.2M"``.

    Returns ``None`` for blank or placeholder values. Raises
    :class:`ValidationError` for anything else that is not a number.
    """
    if _is_absent(value):
        return None
    if isinstance(value, bool):
        raise ValidationError(field, value, "boolean is not an amount")
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            raise ValidationError(field, value, "not a finite number")
        return float(value)
    text = collapse_whitespace(str(value)).replace(",", "").replace(" ", "")
    match = _AMOUNT_RE.match(text)
    if not match:
        raise ValidationError(field, value)
    sign = -1 if (match.group(1) or match.group(2)) else 1
    amount = float(match.group(3)) * _MULTIPLIERS.get((match.group(4) or "").lower(), 1)
    return sign * amount


def parse_int(value: Any, field: str) -> int | None:
    amount = parse_amount(value, field)
    if amount is None:
        return None
    if amount != int(amount):
        raise ValidationError(field, value, "expected a whole number")
    return int(amount)


def parse_ratio(value: Any, field: str) -> float | None:
    """Parse a ratio; ``"35%"`` and ``35`` both become ``0.35``, ``0.35`` is kept."""
    if _is_absent(value):
        return None
    text = str(value).strip()
    if text.endswith("%"):
        amount = parse_amount(text[:-1], field)
        return None if amount is None else amount / 100
    amount = parse_amount(value, field)
    if amount is None:
        return None
    return amount / 100 if abs(amount) > 1 else amount


def parse_bool(value: Any) -> bool | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("true", "1", "yes", "y"):
        return True
    if text in ("false", "0", "no", "n"):
        return False
    return None


def _text(value: Any) -> str | None:
    if value is None:
        return None
    cleaned = collapse_whitespace(str(value))
    return cleaned or None


US_STATES = {
    "alabama": "AL", "alaska": "AK", "arizona": "AZ", "arkansas": "AR", "california": "CA",
    "colorado": "CO", "connecticut": "CT", "delaware": "DE", "district of columbia": "DC",
    "florida": "FL", "georgia": "GA", "hawaii": "HI", "idaho": "ID", "illinois": "IL",
    "indiana": "IN", "iowa": "IA", "kansas": "KS", "kentucky": "KY", "louisiana": "LA",
    "maine": "ME", "maryland": "MD", "massachusetts": "MA", "michigan": "MI", "minnesota": "MN",
    "mississippi": "MS", "missouri": "MO", "montana": "MT", "nebraska": "NE", "nevada": "NV",
    "new hampshire": "NH", "new jersey": "NJ", "new mexico": "NM", "new york": "NY",
    "north carolina": "NC", "north dakota": "ND", "ohio": "OH", "oklahoma": "OK", "oregon": "OR",
    "pennsylvania": "PA", "rhode island": "RI", "south carolina": "SC", "south dakota": "SD",
    "tennessee": "TN", "texas": "TX", "utah": "UT", "vermont": "VT", "virginia": "VA",
    "washington": "WA", "west virginia": "WV", "wisconsin": "WI", "wyoming": "WY",
}


def normalize_state(value: Any) -> str:
    text = collapse_whitespace(str(value)) if value is not None else ""
    if not text:
        return ""
    if len(text) == 2:
        return text.upper()
    return US_STATES.get(text.casefold(), text)


# ---------------------------------------------------------------------------
# Record normalization
# ---------------------------------------------------------------------------

_MONEY_FIELDS = ("asking_price", "annual_revenue", "cash_flow", "monthly_revenue", "monthly_profit")
# Profit and cash flow may legitimately be negative.
_NON_NEGATIVE = ("asking_price", "annual_revenue", "monthly_revenue")
_MIN_YEAR, _MAX_YEAR = 1800, 2100

_details_adapter: TypeAdapter = TypeAdapter(SourceDetails)


def apply_field_map(data: dict[str, Any], field_map: dict[str, str]) -> dict[str, Any]:
    """Rebuild a nested canonical record from a flat native one.

    *field_map* maps dotted canonical paths (``"financial_data.asking_price"``)
    to native keys (``"Price"``). A mapped native value replaces a canonical
    value already present at the same path.
    """
    out: dict[str, Any] = {k: (dict(v) if isinstance(v, dict) else v) for k, v in data.items()}
    for path, native_key in field_map.items():
        if native_key not in data:
            continue
        target = out
        *parents, leaf = path.split(".")
        for depth, part in enumerate(parents, start=1):
            target = target.setdefault(part, {})
            if not isinstance(target, dict):
                raise ValidationError(".".join(parents[:depth]), target, "expected an object")
        target[leaf] = data[native_key]
    return out


class _Collector:
    """Collects rejected fields; raises immediately in strict mode."""
    def __init__(self, record: RawRecord, strict: bool):
        self.record = record
        self.strict = strict
        self.rejected: list[str] = []

    def run(self, field: str, parse, *args):
        try:
            return parse(*args)
        except ValidationError as exc:
            if self.strict:
                raise
            log.warning("Rejected field %s on %s:%s: %s", field, self.record.source, self.record.external_id, exc)
            self.rejected.append(field)
            return None


def _financials(raw: dict[str, Any], c: _Collector) -> FinancialData:
    values: dict[str, Any] = {}
    for field in _MONEY_FIELDS:
        amount = c.run(field, parse_amount, raw.get(field), field)
        if amount is not None and amount < 0 and field in _NON_NEGATIVE:
            amount = c.run(field, _reject, field, raw.get(field), "must not be negative")
        values[field] = amount
    year = c.run("established_year", parse_int, raw.get("established_year"), "established_year")
    if year is not None and not (_MIN_YEAR <= year <= _MAX_YEAR):
        year = c.run("established_year", _reject, "established_year", year, "implausible year")
    values["established_year"] = year
    employees = c.run("employees", parse_int, raw.get("employees"), "employees")
    if employees is not None and employees < 0:
        employees = c.run("employees", _reject, "employees", employees, "must not be negative")
    values["employees"] = employees
    values["gross_profit_margin"] = c.run("gross_profit_margin", parse_ratio, raw.get("gross_profit_margin"), "gross_profit_margin")
    values["asking_multiple"] = c.run("asking_multiple", parse_amount, raw.get("asking_multiple"), "asking_multiple")
    return FinancialData(**values)


def _reject(field: str, value: Any, reason: str) -> None:
    raise ValidationError(field, value, reason)


def _details(raw: Any, c: _Collector):
    if not isinstance(raw, dict) or not raw.get("kind"):
        return None
    try:
        return _details_adapter.validate_python(raw)
    except PydanticValidationError as exc:
        return c.run("details", _reject, "details", raw.get("kind"), str(exc.errors()[0]["msg"]))


def _section(data: dict[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key)
    if value is None or value == "":
        return {}
    if not isinstance(value, dict):
        raise ValidationError(key, value, "expected an object")
    return value


def normalize_record(
    record: RawRecord,
    *,
    field_map: dict[str, str] | None = None,
    strict: bool = False,
) -> NormalizedRecord:
    """Normalize one raw record.

    Malformed financial figures are dropped from the listing and named in
    ``rejected_fields``; with ``strict=True`` the first one raises instead.
    A record without a name or an external id, or whose location,
    financial_data or contact_info is not an object, always raises.
    """
    data = apply_field_map(record.data, field_map) if field_map else record.data
    external_id = _text(record.external_id) or _text(data.get("external_id"))
    if not external_id:
        raise ValidationError("external_id", record.external_id, "missing")
    name = _text(data.get("name"))
    if not name:
        raise ValidationError("name", data.get("name"), "missing")

    c = _Collector(record, strict)
    loc = _section(data, "location")
    location = Location(
        address=_text(loc.get("address")),
        city=_text(loc.get("city")) or "",
        state=normalize_state(loc.get("state")),
        zip=_text(loc.get("zip")),
        country=_text(loc.get("country")),
    )
    financial_data = _financials(_section(data, "financial_data"), c)
    contact = _section(data, "contact_info")
    contact_info = ContactInfo(
        broker_name=_text(contact.get("broker_name")),
        broker_email=_text(contact.get("broker_email")),
        broker_phone=_text(contact.get("broker_phone")),
        listing_url=_text(contact.get("listing_url")),
        description=_text(contact.get("description")),
        seller_financing=parse_bool(contact.get("seller_financing")),
    )
    listing = Listing(
        source=source_key(record.source),
        external_id=external_id,
        name=name,
        industry=_text(data.get("industry")) or "",
        location=location,
        financial_data=financial_data,
        contact_info=contact_info,
        details=_details(data.get("details"), c),
        price_range=price_range(financial_data.asking_price),
    )
    listing.provenance = [listing.provenance_tag]
    return NormalizedRecord(listing=listing, rejected_fields=c.rejected)
