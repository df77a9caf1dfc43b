from datetime import datetime, timedelta, timezone
from typing import Any, Optional
import time

import dateparser

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Absolute dates only; "tomorrow" or "in 2 hours" is not a visit timestamp
_DATEPARSER_SETTINGS = {
    "TIMEZONE": "UTC",
    "TO_TIMEZONE": "UTC",
    "RETURN_AS_TIMEZONE_AWARE": True,
    "PARSERS": ["custom-formats", "absolute-time"],
}


def now_ms() -> int:
    return int(time.time() * 1000)


def to_iso(ms: Optional[int]) -> Optional[str]:
    """Epoch milliseconds -> ISO-8601 UTC string ('...Z'), None passes through."""
    if ms is None:
        return None
    dt = EPOCH + timedelta(milliseconds=ms)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _to_ms(dt: datetime) -> int:
    # integer arithmetic, float timestamps lose the last millisecond
    delta = dt - EPOCH
    return (delta.days * 86400 + delta.seconds) * 1000 + delta.microseconds // 1000


# Session expiry and retention are derived from the timestamp; keep a day of room
# below datetime.max so every derived time still renders
MAX_TIMESTAMP_MS = _to_ms(datetime.max.replace(tzinfo=timezone.utc)) - 86_400_000


def _in_range(ms: int, raw: Any) -> int:
    if ms < 0 or ms > MAX_TIMESTAMP_MS:
        raise ValueError(f"Timestamp out of range: {raw!r}")
    return ms


def _parse_text(text: str) -> datetime:
    try:
        dt = datetime.fromisoformat(text[:-1] + "+00:00" if text[-1:] in ("Z", "z") else text)
    except ValueError:
        # Fall back to dateparser for other formats
        dt = dateparser.parse(text, settings=_DATEPARSER_SETTINGS)
        if dt is None:
            raise ValueError(f"Invalid timestamp: {text!r}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def parse_timestamp(value: Any) -> Optional[int]:
    """Parse a client timestamp into epoch milliseconds.

    Accepts ISO-8601 strings (a trailing 'Z' is allowed, naive values are read
    as UTC), other absolute date strings such as "Oct 19, 2026 4:13 PM", and
    numeric epoch milliseconds. Returns None for empty input and raises
    ValueError for anything else, including times before 1970 or too far in
    the future to render.
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError(f"Invalid timestamp: {value!r}")
    if isinstance(value, (int, float)):
        return _in_range(int(value), value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            raise ValueError(f"Invalid timestamp: {value!r}")
        if text.isdigit():
            return _in_range(int(text), value)
        return _in_range(_to_ms(_parse_text(text)), value)
    raise ValueError(f"Invalid timestamp: {value!r}")
