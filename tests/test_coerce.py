# tests/test_coerce.py
from datetime import date
from decimal import Decimal

import pytest

from lotledger import coerce
from lotledger import columns as c

from factories import lot_row, utc


def test_empty_strings_become_null():
    warnings = []
    assert coerce.text("  ") is None
    assert coerce.decimal("", "x", warnings) is None
    assert coerce.boolean("", "x", warnings) is None
    assert coerce.year("", warnings) is None
    assert warnings == []


@pytest.mark.parametrize("raw, expected", [
    ("$1,234.50", Decimal("1234.50")),
    (" 700 ", Decimal("700")),
    ("-5", Decimal("-5")),
    ("0", Decimal("0")),
])
def test_decimal_accepts_money_formatting(raw, expected):
    assert coerce.decimal(raw, "bid", []) == expected


def test_bad_number_is_dropped_with_warning():
    warnings = []
    assert coerce.decimal("twelve", "bid", warnings) is None
    assert len(warnings) == 1 and warnings[0].startswith("bid")


def test_year_domain_is_per_field():
    warnings = []
    today = date(2025, 6, 1)
    assert coerce.year("2027", warnings, today=today) == 2027
    assert coerce.year("2028", warnings, today=today) is None
    assert coerce.year("1899", warnings, today=today) is None
    assert coerce.year("1900", warnings, today=today) == 1900
    assert len(warnings) == 2


@pytest.mark.parametrize("raw, expected", [("YES", True), ("y", True), ("No", False), ("N", False)])
def test_boolean(raw, expected):
    assert coerce.boolean(raw, c.HAS_KEYS, []) is expected


@pytest.mark.parametrize("raw, expected", [
    ("Pure Sale", "active"),
    ("ON MINIMUM BID", "active"),
    ("Sold", "sold"),
    ("Future Sale", "upcoming"),
    ("Cancelled", "cancelled"),
    ("something new", "active"),
    ("", None),
])
def test_status(raw, expected):
    assert coerce.status(raw) == expected


@pytest.mark.parametrize("sale_date, sale_time, tz, expected", [
    ("20250112", "1000", "UTC", utc(2025, 1, 12, 10, 0)),
    ("011225", "1000", "UTC", utc(2025, 1, 12, 10, 0)),
    ("11225", "1000", "UTC", utc(2025, 1, 12, 10, 0)),
    ("2025-01-12", "930", "UTC", utc(2025, 1, 12, 9, 30)),
    ("20250112", "", "", utc(2025, 1, 12, 9, 0)),
    ("20250112", "1000", "PST", utc(2025, 1, 12, 18, 0)),
    ("20250112", "1000", "edt", utc(2025, 1, 12, 14, 0)),
])
def test_sale_datetime(sale_date, sale_time, tz, expected):
    assert coerce.sale_datetime(sale_date, sale_time, tz, []) == expected


def test_sale_datetime_bad_inputs():
    warnings = []
    assert coerce.sale_datetime("0", "1000", "UTC", warnings) is None
    assert coerce.sale_datetime("20251340", "1000", "UTC", warnings) is None
    assert coerce.sale_datetime("20250112", "2575", "XYZ", warnings) == utc(2025, 1, 12, 9, 0)
    assert len(warnings) == 3


def test_revision_parses_iso_8601():
    warnings = []
    assert coerce.revision("2025-01-09T12:00:00Z", warnings) == utc(2025, 1, 9, 12)
    assert coerce.revision("2025-01-09 12:00:00", warnings) == utc(2025, 1, 9, 12)
    assert coerce.revision("yesterday", warnings) is None
    assert len(warnings) == 1


def test_lot_values_from_payload():
    warnings = []
    values = coerce.lot_values(lot_row("L1", bid="$2,000", buy_now="", status="Sold"), warnings)
    assert values["current_bid"] == Decimal("2000")
    assert values["buy_it_now_price"] is None
    assert values["status"] == "sold"
    assert values["sale_status_raw"] == "Sold"
    assert values["has_keys"] is True
    assert values["auction_datetime"] == utc(2025, 1, 12, 10, 0)
    assert values["yard_name"] == "CA - SUN VALLEY"
    assert warnings == []


def test_vehicle_values_from_payload():
    warnings = []
    values = coerce.vehicle_values(lot_row("L1", year="1850"), warnings)
    assert values["year"] is None
    assert values["make"] == "HONDA"
    assert values["model"] == "ACCORD"
    assert len(warnings) == 1
