"""
Value coercion for legacy export rows.

The flat export tables hold whatever the Tally exporter wrote: sometimes typed
columns, often text. These helpers normalize:
- Numbers with comma separators, currency symbols, parentheses and Dr/Cr suffixes
- Yes/No style booleans
- Tally date formats (YYYYMMDD, DD-MMM-YYYY, ...)
- Timestamps, always returned timezone-aware (UTC when naive)
"""
from __future__ import annotations
import re
from datetime import datetime, date, timezone
from decimal import Decimal
from typing import Any, Optional
from loguru import logger

_EMPTY = ("", "null", "none")

DATE_FORMATS = (
    "%Y%m%d",      # 20240401
    "%Y-%m-%d",    # 2024-04-01
    "%d-%b-%Y",    # 01-Apr-2024
    "%d/%m/%Y",    # 01/04/2024
    "%d-%m-%Y",    # 01-04-2024
)


def is_blank(value: Any) -> bool:
    """True for None and for strings that are empty or spell null/none."""
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip().lower() in _EMPTY
    return False


def parse_text(value: Any) -> Optional[str]:
    if is_blank(value):
        return None
    return str(value).strip()


def parse_float(value: Any, default: Optional[float] = 0.0) -> Optional[float]:
    """
    Parse a legacy numeric value to float.

    Handles:
    - Comma separators (1,234.56)
    - Parentheses for negatives ((1234.56))
    - Currency symbols
    - Dr/Cr suffixes (Cr flips the sign)
    """
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float, Decimal)):
        return float(value)
    if is_blank(value):
        return default

    s = str(value).strip()
    is_negative = s.startswith("(") and s.endswith(")")
    if is_negative:
        s = s[1:-1]

    s = re.sub(r"[,₹$€£¥\s]", "", s)

    if s.endswith("Dr"):
        s = s[:-2]
    elif s.endswith("Cr"):
        s = s[:-2]
        is_negative = not is_negative

    try:
        val = float(s)
        return -val if is_negative else val
    except ValueError:
        logger.warning(f"Could not parse float: {value!r}")
        return default


def parse_int(value: Any, default: Optional[int] = 0) -> Optional[int]:
    """Parse a legacy integer, tolerating "1 234" and "123.0" spellings."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, (float, Decimal)):
        return int(value)
    if is_blank(value):
        return default

    s = str(value).strip().replace(",", "").replace(" ", "")
    try:
        return int(float(s))
    except ValueError:
        logger.warning(f"Could not parse int: {value!r}")
        return default


def parse_bool(value: Any, default: Optional[bool] = False) -> Optional[bool]:
    """
    Parse a legacy boolean.

    Tally uses various representations:
    - Yes/No
    - True/False
    - 1/0
    """
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float, Decimal)):
        return value != 0
    if value is None:
        return default

    s = str(value).strip().lower()
    if s in ("yes", "true", "1", "y"):
        return True
    elif s in ("no", "false", "0", "n", ""):
        return False

    return default


def parse_tally_date(value: Any) -> Optional[date]:
    """Parse a Tally date value. Returns None for empty or unparseable input."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if is_blank(value):
        return None

    s = str(value).strip()
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(s, fmt).date()
        except ValueError:
            continue

    logger.warning(f"Could not parse date: {s}")
    return None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a modification timestamp to an aware datetime.

    Accepts datetime, date (midnight UTC), ISO 8601 strings (a trailing "Z"
    is understood) and the plain Tally date formats.
    """
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if is_blank(value):
        return None

    s = str(value).strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(s)
    except ValueError:
        day = parse_tally_date(s)
        if day is None:
            return None
        return datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


COERCERS = {
    "text": parse_text,
    "float": lambda v: parse_float(v, default=None),
    "int": lambda v: parse_int(v, default=None),
    "bool": lambda v: parse_bool(v, default=None),
    "date": parse_tally_date,
    "timestamp": parse_timestamp,
}


def coerce(value: Any, kind: str) -> Any:
    """Coerce value to one of the catalog column kinds."""
    try:
        fn = COERCERS[kind]
    except KeyError:
        raise ValueError(f"Unknown column kind: {kind}") from None
    return fn(value)
