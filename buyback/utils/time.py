# buyback/utils/time.py
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional

UTC = timezone.utc

DAY = timedelta(days=1)
HOUR = timedelta(hours=1)


def utcnow() -> datetime:
    return datetime.now(UTC)


def to_datetime(value: Any) -> Optional[datetime]:
    """
    Coerce a stored timestamp into an aware UTC datetime.

    Accepted shapes:
      - datetime (naive values are assumed UTC)
      - ISO-8601 string (trailing "Z" allowed)
      - epoch milliseconds (int / float)
      - {"seconds": .., "nanoseconds": ..} / {"_seconds": .., "_nanoseconds": ..}
    Anything else returns None.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000.0, tz=UTC)
    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(raw)
        except ValueError:
            return None
        return dt if dt.tzinfo else dt.replace(tzinfo=UTC)
    if isinstance(value, Mapping):
        seconds = value.get("seconds", value.get("_seconds"))
        if seconds is None:
            return None
        nanos = value.get("nanoseconds", value.get("_nanoseconds")) or 0
        return datetime.fromtimestamp(float(seconds) + float(nanos) / 1e9, tz=UTC)
    return None


def iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat()


def age_of(value: Any, now: datetime) -> Optional[timedelta]:
    """Elapsed time since a stored timestamp (None when unparseable)."""
    dt = to_datetime(value)
    if dt is None:
        return None
    return now - dt


def age_in_days(value: Any, now: datetime) -> Optional[int]:
    elapsed = age_of(value, now)
    if elapsed is None:
        return None
    return int(elapsed.total_seconds() // DAY.total_seconds())
