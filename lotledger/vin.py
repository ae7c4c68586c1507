# lotledger/vin.py
"""Vehicle identifier normalization.

``normalize`` is pure and total: every input maps to either a
``NormalizedVin`` or an ``InvalidVin`` carrying a rejection reason.
"""
import re
from dataclasses import dataclass
from typing import Optional, Union

VIN17 = "vin17"
EU_CIN = "eu_cin"
US_HIN = "us_hin"
LEGACY = "legacy"

EMPTY = "empty"
PLACEHOLDER = "placeholder"
INVALID_CHARACTERS = "invalid_characters"
AMBIGUOUS_CHARACTERS = "ambiguous_characters"
INVALID_LENGTH = "invalid_length"
CHECK_DIGIT_MISMATCH = "check_digit_mismatch"

PLACEHOLDERS = frozenset({"N/A", "NA", "NONE", "NULL", "UNKNOWN", "UNK", "-", "--"})

_VIN17_RE = re.compile(r"^[A-HJ-NPR-Z0-9]{17}$")
_EU_CIN_RE = re.compile(r"^[A-Z]{2}-[A-HJ-NPR-Z2-9]{3}[A-HJ-NPR-Z0-9]{5}[A-L][0-9]{3}$")
_US_HIN_RE = re.compile(r"^[A-Z]{3}[A-HJ-NPR-Z0-9]{5}[A-L][0-9]{3}$")
_ALNUM_RE = re.compile(r"^[A-Z0-9]+$")
_WHITESPACE_RE = re.compile(r"\s+")

# ISO 3779 transliteration and position weights
_TRANSLITERATION = {
    **{str(d): d for d in range(10)},
    "A": 1, "B": 2, "C": 3, "D": 4, "E": 5, "F": 6, "G": 7, "H": 8,
    "J": 1, "K": 2, "L": 3, "M": 4, "N": 5, "P": 7, "R": 9,
    "S": 2, "T": 3, "U": 4, "V": 5, "W": 6, "X": 7, "Y": 8, "Z": 9,
}
_WEIGHTS = (8, 7, 6, 5, 4, 3, 2, 10, 0, 9, 8, 7, 6, 5, 4, 3, 2)


@dataclass(frozen=True)
class NormalizedVin:
    value: str
    scheme: str
    check_digit_ok: Optional[bool] = None


@dataclass(frozen=True)
class InvalidVin:
    reason: str
    raw: Optional[str]


NormalizeResult = Union[NormalizedVin, InvalidVin]


def canonical(raw) -> str:
    """Trim, upper-case and drop internal whitespace."""
    if raw is None:
        return ""
    return _WHITESPACE_RE.sub("", str(raw)).upper()


def check_digit(vin: str) -> str:
    total = sum(_TRANSLITERATION[ch] * w for ch, w in zip(vin, _WEIGHTS))
    remainder = total % 11
    return "X" if remainder == 10 else str(remainder)


def normalize(raw, strict_check_digit: bool = False) -> NormalizeResult:
    value = canonical(raw)
    if not value:
        return InvalidVin(EMPTY, raw)
    if value in PLACEHOLDERS or set(value) <= {"0", "-"}:
        return InvalidVin(PLACEHOLDER, raw)
    if _EU_CIN_RE.match(value):
        return NormalizedVin(value, EU_CIN)

    value = value.replace("-", "")
    if not _ALNUM_RE.match(value):
        return InvalidVin(INVALID_CHARACTERS, raw)

    if len(value) == 17:
        if not _VIN17_RE.match(value):
            return InvalidVin(AMBIGUOUS_CHARACTERS, raw)
        ok = check_digit(value) == value[8]
        if not ok and strict_check_digit:
            return InvalidVin(CHECK_DIGIT_MISMATCH, raw)
        return NormalizedVin(value, VIN17, ok)
    if _US_HIN_RE.match(value):
        return NormalizedVin(value, US_HIN)
    if 3 <= len(value) <= 16:
        return NormalizedVin(value, LEGACY)
    return InvalidVin(INVALID_LENGTH, raw)
