"""
Timestamp helpers.

Rules:
- Internally all datetimes are tz-aware UTC.
- Naive `datetime` (no tzinfo) is assumed to be **UTC**.
- Numeric epoch: values >= 1e12 are treated as milliseconds, otherwise seconds
  (Polymarket activity records carry epoch seconds; the store writes milliseconds).
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

UTC = timezone.utc


def utc_now() -> datetime:
    """Return tz-aware current time in UTC."""

    return datetime.now(tz=UTC)


def ensure_aware_utc(value: datetime) -> datetime:
    """
    Ensure a datetime is tz-aware and normalized to UTC.
    Naive datetimes are assumed to be UTC.
    """

    if not isinstance(value, datetime):
        raise TypeError("ensure_aware_utc expects a datetime")
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def parse_timestamp(value: Any) -> datetime:
    """
    Parse common timestamp shapes into a tz-aware UTC datetime.

    Supported input shapes:
    - ISO8601 strings (e.g. '2025-01-02T14:30:00Z', '...+00:00')
    - `datetime` (naive or tz-aware)
    - epoch seconds or milliseconds (int/float)
    """

    if value is None:
        raise TypeError("timestamp value is None")

    if isinstance(value, datetime):
        return ensure_aware_utc(value)

    if isinstance(value, bool):
        raise TypeError("unsupported timestamp type: bool")

    if isinstance(value, (int, float)):
        v = float(value)
        seconds = (v / 1000.0) if abs(v) >= 1e12 else v
        return datetime.fromtimestamp(seconds, tz=UTC)

    if isinstance(value, str):
        s = value.strip()
        if not s:
            raise ValueError("timestamp string is empty")
        if s.endswith("Z") or s.endswith("z"):
            s = s[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(s)
        except ValueError as e:
            raise ValueError(f"unparseable timestamp string: {value!r}") from e
        return ensure_aware_utc(dt)

    raise TypeError(f"unsupported timestamp type: {type(value).__name__}")


def to_epoch_ms(value: datetime) -> int:
    return int(ensure_aware_utc(value).timestamp() * 1000)
