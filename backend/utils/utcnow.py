"""Naive-UTC time helpers.

Everything stored in the database and compared in the pipeline is a
**naive** UTC datetime.  Broker payloads arrive as ISO strings with
``Z``/offsets or epoch milliseconds; ``to_utc_naive`` folds them all into
the same representation.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional


def utcnow() -> datetime:
    """Return the current UTC time as a naive (tzinfo=None) datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utcfromtimestamp(ts: float) -> datetime:
    """Convert a POSIX timestamp to a naive UTC datetime."""
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


def to_utc_naive(value: Any) -> Optional[datetime]:
    """Best-effort conversion of broker timestamps to naive UTC."""
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    if isinstance(value, (int, float)):
        # Bybit and friends report epoch milliseconds
        seconds = float(value) / 1000.0 if value > 10_000_000_000 else float(value)
        return utcfromtimestamp(seconds)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.isdigit():
            return to_utc_naive(int(text))
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            return parsed
        return parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return None


def to_iso_z(dt: Optional[datetime]) -> Optional[str]:
    """Render a naive-UTC datetime as ISO-8601 with a trailing ``Z``."""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.isoformat() + "Z"


def floor_to_window(dt: datetime, window_seconds: int) -> datetime:
    """Floor ``dt`` to the start of its ``window_seconds`` bucket."""
    window = max(1, int(window_seconds))
    epoch = datetime(1970, 1, 1)
    offset = int((dt - epoch).total_seconds()) // window * window
    return epoch + timedelta(seconds=offset)
