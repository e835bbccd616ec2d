import math
import re
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

DEXCOM_QUERY_FORMAT = "%Y-%m-%dT%H:%M:%S"

# Trailing "Z" or a +HH:MM / -HHMM style offset
_OFFSET_RE = re.compile(r"(Z|[+-]\d{2}:?\d{2})$", re.IGNORECASE)


def normalize_string(value: Any, lowercase: bool = True, strip: bool = True) -> Optional[str]:
    """Normalize a string: trim, lowercase, remove extra spaces."""
    if value is None:
        return None
    s = str(value)
    if strip:
        s = s.strip()
    if lowercase:
        s = s.lower()
    s = re.sub(r"\s+", " ", s)
    return s


def normalize_dexcom_time(value: Any) -> Optional[str]:
    """
    Normalize a Dexcom systemTime string.

    Dexcom omits the UTC offset on systemTime; such values are taken as UTC
    and suffixed with "Z". Values that already carry "Z" or an offset are
    returned unchanged. Empty values give None.
    """
    if value is None:
        return None
    s = str(value).strip()
    if not s:
        return None
    if _OFFSET_RE.search(s):
        return s
    return s + "Z"


def parse_dexcom_time(value: Any) -> Optional[datetime]:
    """Parse a Dexcom timestamp into an aware UTC datetime, or None."""
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
    normalized = normalize_dexcom_time(value)
    if normalized is None:
        return None
    try:
        dt = datetime.fromisoformat(re.sub(r"Z$", "+00:00", normalized, flags=re.IGNORECASE))
    except ValueError:
        return None
    return dt.astimezone(timezone.utc)


def format_dexcom_time(value: datetime) -> str:
    """Format a datetime the way Dexcom expects startDate/endDate: UTC, no offset, no fraction."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime(DEXCOM_QUERY_FORMAT)


def parse_finite_number(value: Any) -> Optional[float]:
    """Convert to float if the value is a finite number, else None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


def first_finite_number(record: dict, fields: Iterable[str]) -> Optional[float]:
    """Return the first of *fields* in *record* that parses as a finite number."""
    for field in fields:
        number = parse_finite_number(record.get(field))
        if number is not None:
            return number
    return None
