# lotledger/coerce.py
"""Field coercion from raw snapshot strings to column values.

Every coercer is lenient: a value that cannot be coerced becomes ``None`` and
a warning is appended to the caller's ``warnings`` list, so one bad field never
costs the whole row. Negative amounts are passed through untouched; the
storage layer's check constraints decide whether they are acceptable.
"""
import re
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from . import columns as c
from .utils import as_utc

# abbreviations observed in the Time Zone column, as UTC offsets in hours
TZ_OFFSETS = {
    "UTC": 0, "GMT": 0, "Z": 0,
    "EST": -5, "EDT": -4, "ET": -5,
    "CST": -6, "CDT": -5, "CT": -6,
    "MST": -7, "MDT": -6, "MT": -7,
    "PST": -8, "PDT": -7, "PT": -8,
    "AKST": -9, "AKDT": -8,
    "HST": -10,
    "AST": -4, "ADT": -3,
    "NST": -3.5, "NDT": -2.5,
}

SALE_STATUS_MAP = {
    "PURE SALE": "active",
    "ON MINIMUM BID": "active",
    "ON HOLD": "active",
    "SOLD": "sold",
    "FUTURE SALE": "upcoming",
    "PENDING SALE": "upcoming",
    "CANCELLED": "cancelled",
}

DEFAULT_SALE_TIME = "0900"
MIN_YEAR = 1900

_NUMERIC_NOISE = re.compile(r"[$,\s]")


def text(value) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def decimal(value, field: str, warnings: List[str]) -> Optional[Decimal]:
    raw = text(value)
    if raw is None:
        return None
    cleaned = _NUMERIC_NOISE.sub("", raw)
    try:
        number = Decimal(cleaned)
    except InvalidOperation:
        warnings.append(f"{field}: not a number ({raw!r})")
        return None
    if not number.is_finite():
        warnings.append(f"{field}: not a finite number ({raw!r})")
        return None
    return number


def year(value, warnings: List[str], today: Optional[date] = None) -> Optional[int]:
    number = decimal(value, c.YEAR, warnings)
    if number is None:
        return None
    if number != number.to_integral_value():
        warnings.append(f"{c.YEAR}: not a whole year ({value!r})")
        return None
    latest = (today or date.today()).year + 2
    result = int(number)
    if not MIN_YEAR <= result <= latest:
        warnings.append(f"{c.YEAR}: {result} outside {MIN_YEAR}..{latest}")
        return None
    return result


def boolean(value, field: str, warnings: List[str]) -> Optional[bool]:
    raw = text(value)
    if raw is None:
        return None
    flag = raw.upper()
    if flag in ("YES", "Y", "TRUE", "1"):
        return True
    if flag in ("NO", "N", "FALSE", "0"):
        return False
    warnings.append(f"{field}: not a yes/no value ({raw!r})")
    return None


def status(value) -> Optional[str]:
    raw = text(value)
    if raw is None:
        return None
    return SALE_STATUS_MAP.get(raw.upper(), "active")


def revision(value, warnings: List[str]) -> Optional[datetime]:
    """Parse the source revision stamp (ISO 8601, naive means UTC)."""
    raw = text(value)
    if raw is None:
        return None
    candidate = raw[:-1] + "+00:00" if raw.endswith("Z") else raw
    try:
        return as_utc(datetime.fromisoformat(candidate))
    except ValueError:
        warnings.append(f"{c.LAST_UPDATED}: unparseable timestamp ({raw!r})")
        return None


def _sale_date(raw: str) -> Optional[date]:
    if "-" in raw:
        return datetime.fromisoformat(raw[:10]).date()
    if raw.endswith(".0"):
        raw = raw[:-2]
    if not raw.isdigit():
        raise ValueError(raw)
    if len(raw) == 8:
        return date(int(raw[:4]), int(raw[4:6]), int(raw[6:]))
    if len(raw) == 6:
        return date(2000 + int(raw[4:]), int(raw[:2]), int(raw[2:4]))
    if len(raw) == 5:
        return date(2000 + int(raw[3:]), int(raw[:1]), int(raw[1:3]))
    raise ValueError(raw)


def sale_datetime(date_value, time_value, tz_value, warnings: List[str]) -> Optional[datetime]:
    """Combine sale date, HHMM time and zone abbreviation into a UTC instant."""
    raw_date = text(date_value)
    if raw_date is None or raw_date == "0":
        return None
    try:
        day = _sale_date(raw_date)
    except ValueError:
        warnings.append(f"{c.SALE_DATE}: unparseable date ({raw_date!r})")
        return None

    raw_time = text(time_value) or DEFAULT_SALE_TIME
    if raw_time.endswith(".0"):
        raw_time = raw_time[:-2]
    raw_time = raw_time.zfill(4)
    hour, minute = raw_time[:2], raw_time[2:4]
    if not (raw_time.isdigit() and len(raw_time) == 4 and int(hour) < 24 and int(minute) < 60):
        warnings.append(f"{c.SALE_TIME}: invalid HHMM ({time_value!r}), using {DEFAULT_SALE_TIME}")
        hour, minute = DEFAULT_SALE_TIME[:2], DEFAULT_SALE_TIME[2:]

    zone = text(tz_value)
    offset = TZ_OFFSETS.get(zone.upper()) if zone else 0
    if offset is None:
        warnings.append(f"{c.TIME_ZONE}: unknown zone {zone!r}, assuming UTC")
        offset = 0
    local = datetime(day.year, day.month, day.day, int(hour), int(minute),
                     tzinfo=timezone(timedelta(hours=offset)))
    return as_utc(local)


def vehicle_values(payload: Dict[str, Any], warnings: List[str]) -> Dict[str, Any]:
    """Vehicle attribute columns from a staging payload."""
    return {
        "year": year(payload.get(c.YEAR), warnings),
        "make": text(payload.get(c.MAKE)),
        "model": text(payload.get(c.MODEL_GROUP)) or text(payload.get(c.MODEL_DETAIL)),
        "trim": text(payload.get(c.TRIM)),
        "body_style": text(payload.get(c.BODY_STYLE)),
        "color": text(payload.get(c.COLOR)),
        "engine": text(payload.get(c.ENGINE)),
        "drive": text(payload.get(c.DRIVE)),
        "transmission": text(payload.get(c.TRANSMISSION)),
        "fuel_type": text(payload.get(c.FUEL_TYPE)),
    }


def lot_values(payload: Dict[str, Any], warnings: List[str]) -> Dict[str, Any]:
    """Lot columns from a staging payload (identity and linkage excluded)."""
    currency = text(payload.get(c.CURRENCY))
    return {
        "site_code": text(payload.get(c.YARD_NUMBER)),
        "yard_name": text(payload.get(c.YARD_NAME)),
        "city": text(payload.get(c.CITY)),
        "region": text(payload.get(c.STATE)),
        "country": text(payload.get(c.COUNTRY)),
        "postal_code": text(payload.get(c.ZIP)),
        "time_zone": text(payload.get(c.TIME_ZONE)),
        "auction_datetime": sale_datetime(
            payload.get(c.SALE_DATE), payload.get(c.SALE_TIME), payload.get(c.TIME_ZONE), warnings
        ),
        "current_bid": decimal(payload.get(c.CURRENT_BID), c.CURRENT_BID, warnings),
        "buy_it_now_price": decimal(payload.get(c.BUY_IT_NOW), c.BUY_IT_NOW, warnings),
        "retail_value": decimal(payload.get(c.RETAIL_VALUE), c.RETAIL_VALUE, warnings),
        "repair_cost": decimal(payload.get(c.REPAIR_COST), c.REPAIR_COST, warnings),
        "odometer": decimal(payload.get(c.ODOMETER), c.ODOMETER, warnings),
        "currency_code": currency.upper()[:3] if currency else None,
        "has_keys": boolean(payload.get(c.HAS_KEYS), c.HAS_KEYS, warnings),
        "status": status(payload.get(c.SALE_STATUS)),
        "sale_status_raw": text(payload.get(c.SALE_STATUS)),
        "damage_description": text(payload.get(c.DAMAGE)),
        "secondary_damage": text(payload.get(c.SECONDARY_DAMAGE)),
        "title_type": text(payload.get(c.TITLE_TYPE)),
        "runs_drives": text(payload.get(c.RUNS_DRIVES)),
    }
