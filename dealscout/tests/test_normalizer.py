from __future__ import annotations

import pytest

from dealscout.errors import ValidationError
from dealscout.normalizer import (
    apply_field_map,
    normalize_record,
    normalize_state,
    parse_amount,
    parse_ratio,
    price_range,
)
from dealscout.schemas import DigitalAssetDetails, FranchiseDetails, RawRecord


def _record(**data) -> RawRecord:
    data.setdefault("name", "Corner Bakery")
    return RawRecord(source="bizbuysell", external_id=data.pop("external_id", "bbs_1"), data=data)


class TestPriceRange:
    @pytest.mark.parametrize("price, label", [
        (0, "Under $50K"),
        (49_999, "Under $50K"),
        (50_000, "$50K–$100K"),
        (99_999.99, "$50K–$100K"),
        (100_000, "$100K–$250K"),
        (250_000, "$250K–$500K"),
        (500_000, "$500K–$1M"),
        (999_999, "$500K–$1M"),
        (1_000_000, "Over $1M"),
        (25_000_000, "Over $1M"),
    ])
    def test_buckets(self, price, label):
        assert price_range(price) == label

    def test_unknown_price_has_no_bucket(self):
        assert price_range(None) is None


class TestParseAmount:
    @pytest.mark.parametrize("raw, expected", [
        (1250000, 1_250_000),
        (99.5, 99.5),
        ("$1,250,000", 1_250_000),
        ("85K", 85_000),
        ("$450k", 450_000),
        ("1.2M", 1_200_000),
        ("  $ 300,000 ", 300_000),
        ("-$5,000", -5_000),
    ])
    def test_parses(self, raw, expected):
        assert parse_amount(raw) == pytest.approx(expected)

    @pytest.mark.parametrize("raw", [None, "", "  ", "N/A", "undisclosed", "Not Disclosed", "-"])
    def test_placeholders_are_absent(self, raw):
        assert parse_amount(raw) is None

    @pytest.mark.parametrize("raw", ["call for price", "1.2.3", "about 5k", True, float("nan")])
    def test_garbage_raises(self, raw):
        with pytest.raises(ValidationError):
            parse_amount(raw, "asking_price")

    def test_ratio_forms(self):
        assert parse_ratio("35%", "m") == pytest.approx(0.35)
        assert parse_ratio(35, "m") == pytest.approx(0.35)
        assert parse_ratio(0.35, "m") == pytest.approx(0.35)
        assert parse_ratio(None, "m") is None


class TestNormalizeRecord:
    def test_canonical_record(self):
        result = normalize_record(_record(
            industry=" Food  & Beverage ",
            location={"city": "Austin", "state": "texas", "zip": "78701"},
            financial_data={"asking_price": "$250,000", "annual_revenue": "600K", "established_year": "2012"},
            contact_info={"listing_url": "https://example.com/1", "seller_financing": "yes"},
        ))
        listing = result.listing
        assert result.rejected_fields == []
        assert listing.source == "bizbuysell"
        assert listing.industry == "Food & Beverage"
        assert listing.location.state == "TX"
        assert listing.financial_data.asking_price == 250_000
        assert listing.financial_data.annual_revenue == 600_000
        assert listing.financial_data.established_year == 2012
        assert listing.contact_info.seller_financing is True
        assert listing.price_range == "$250K–$500K"
        assert listing.provenance == ["bizbuysell:bbs_1"]

    def test_missing_numbers_stay_absent(self):
        listing = normalize_record(_record(financial_data={"asking_price": 90_000})).listing
        fin = listing.financial_data
        assert fin.annual_revenue is None
        assert fin.cash_flow is None
        assert fin.established_year is None

    def test_malformed_field_is_rejected_not_zeroed(self):
        result = normalize_record(_record(financial_data={"asking_price": "call me", "cash_flow": 40_000}))
        assert result.rejected_fields == ["asking_price"]
        assert result.listing.financial_data.asking_price is None
        assert result.listing.financial_data.cash_flow == 40_000
        assert result.listing.price_range is None

    def test_negative_price_rejected_but_negative_cash_flow_kept(self):
        result = normalize_record(_record(financial_data={"asking_price": -10, "cash_flow": -2_000}))
        assert "asking_price" in result.rejected_fields
        assert result.listing.financial_data.cash_flow == -2_000

    def test_implausible_year_rejected(self):
        result = normalize_record(_record(financial_data={"established_year": 20})).listing
        assert result.financial_data.established_year is None

    def test_strict_mode_raises(self):
        with pytest.raises(ValidationError) as exc_info:
            normalize_record(_record(financial_data={"annual_revenue": "lots"}), strict=True)
        assert exc_info.value.field == "annual_revenue"

    def test_missing_name_raises(self):
        with pytest.raises(ValidationError):
            normalize_record(RawRecord(source="flippa", external_id="x", data={"name": "  "}))

    def test_missing_external_id_raises(self):
        with pytest.raises(ValidationError):
            normalize_record(RawRecord(source="flippa", data={"name": "Shop"}))

    def test_external_id_from_payload(self):
        listing = normalize_record(RawRecord(source="Empire Flippers", data={"name": "Blog", "external_id": 77})).listing
        assert listing.source == "empire_flippers"
        assert listing.provenance_tag == "empire_flippers:77"

    def test_details_variants(self):
        digital = normalize_record(_record(details={"kind": "digital_asset", "tech_stack": ["Shopify"]})).listing
        franchise = normalize_record(_record(details={"kind": "franchise", "franchise_name": "Subway"})).listing
        assert isinstance(digital.details, DigitalAssetDetails)
        assert digital.details.tech_stack == ["Shopify"]
        assert isinstance(franchise.details, FranchiseDetails)

    def test_unknown_details_kind_rejected(self):
        result = normalize_record(_record(details={"kind": "spaceship"}))
        assert result.listing.details is None
        assert result.rejected_fields == ["details"]

    def test_field_map(self):
        raw = RawRecord(source="bizquest", external_id="r1", data={
            "Business": "Dry Cleaner", "Price": "$120,000", "Town": "Tulsa", "St": "OK",
        })
        mapping = {
            "name": "Business",
            "financial_data.asking_price": "Price",
            "location.city": "Town",
            "location.state": "St",
        }
        listing = normalize_record(raw, field_map=mapping).listing
        assert listing.name == "Dry Cleaner"
        assert listing.financial_data.asking_price == 120_000
        assert (listing.location.city, listing.location.state) == ("Tulsa", "OK")


def test_apply_field_map_keeps_unmapped_keys():
    out = apply_field_map({"Name": "A", "extra": 1}, {"name": "Name", "location.city": "Missing"})
    assert out == {"Name": "A", "extra": 1, "name": "A"}


def test_apply_field_map_native_value_replaces_canonical():
    out = apply_field_map({"name": "Old", "Business": "New"}, {"name": "Business"})
    assert out["name"] == "New"


def test_apply_field_map_rejects_scalar_parent():
    with pytest.raises(ValidationError) as exc_info:
        apply_field_map({"location": "Austin, TX", "Town": "Austin"}, {"location.city": "Town"})
    assert exc_info.value.field == "location"


@pytest.mark.parametrize("key, value", [
    ("location", "Austin, TX"),
    ("financial_data", [100_000]),
    ("contact_info", "call 555-0100"),
])
def test_non_object_sections_reject_record(key, value):
    with pytest.raises(ValidationError) as exc_info:
        normalize_record(_record(**{key: value}))
    assert exc_info.value.field == key
    assert exc_info.value.reason == "expected an object"


def test_normalize_state():
    assert normalize_state("new york") == "NY"
    assert normalize_state("ca") == "CA"
    assert normalize_state(None) == ""
    assert normalize_state("Ontario") == "Ontario"
