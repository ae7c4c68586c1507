# tests/test_vin.py
import pytest

from lotledger import vin

from factories import VIN_A, VIN_B


@pytest.mark.parametrize("raw, value, scheme", [
    (VIN_A, VIN_A, vin.VIN17),
    ("  1hgcm82633a004352 ", VIN_A, vin.VIN17),
    ("1HGCM 8263 3A004352", VIN_A, vin.VIN17),
    ("1HGCM-82633-A004352", VIN_A, vin.VIN17),
    ("FR-ABC12345D404", "FR-ABC12345D404", vin.EU_CIN),
    ("ABC12345D404", "ABC12345D404", vin.US_HIN),
    ("abc-12345-d404", "ABC12345D404", vin.US_HIN),
    ("HI1234567", "HI1234567", vin.LEGACY),
    ("OQ1", "OQ1", vin.LEGACY),
])
def test_accepted_schemes(raw, value, scheme):
    result = vin.normalize(raw)
    assert isinstance(result, vin.NormalizedVin)
    assert result.value == value
    assert result.scheme == scheme


@pytest.mark.parametrize("raw, reason", [
    (None, vin.EMPTY),
    ("", vin.EMPTY),
    ("   ", vin.EMPTY),
    ("N/A", vin.PLACEHOLDER),
    ("unknown", vin.PLACEHOLDER),
    ("00000000000000000", vin.PLACEHOLDER),
    ("1HGCM82633A00435*", vin.INVALID_CHARACTERS),
    ("1HGCM82633A00435Ä", vin.INVALID_CHARACTERS),
    ("1HGCM82633A0O4352", vin.AMBIGUOUS_CHARACTERS),
    ("IHGCM82633A004352", vin.AMBIGUOUS_CHARACTERS),
    ("AB", vin.INVALID_LENGTH),
    ("1HGCM82633A0043521", vin.INVALID_LENGTH),
])
def test_rejections(raw, reason):
    result = vin.normalize(raw)
    assert isinstance(result, vin.InvalidVin)
    assert result.reason == reason
    assert result.raw == raw


def test_check_digit():
    assert vin.check_digit(VIN_A) == "3"
    assert vin.check_digit(VIN_B) == "X"
    assert vin.normalize(VIN_B).check_digit_ok is True


def test_check_digit_mismatch_reported_unless_strict():
    bad = "1HGCM82643A004352"
    lenient = vin.normalize(bad)
    assert isinstance(lenient, vin.NormalizedVin)
    assert lenient.check_digit_ok is False

    strict = vin.normalize(bad, strict_check_digit=True)
    assert isinstance(strict, vin.InvalidVin)
    assert strict.reason == vin.CHECK_DIGIT_MISMATCH


def test_normalize_is_deterministic():
    assert vin.normalize(" 1hgcm82633a004352") == vin.normalize("1HGCM82633A004352 ")
