"""Timestamp helpers shared by the decoder, interpolator and board builder."""

import math
from datetime import datetime, timezone
from typing import Optional, Union
from zoneinfo import ZoneInfo

TimeLike = Union[datetime, str, int, float]


def format_timestamp(ts: Optional[int]) -> Optional[str]:
    """Convert a Unix timestamp (seconds) to an ISO-8601 UTC string; 0/None -> None."""
    if not ts:
        return None
    try:
        return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()
    except (OverflowError, OSError, ValueError):
        return None


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 string into an aware datetime (naive values are UTC)."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def to_datetime(value: TimeLike) -> datetime:
    """Coerce a datetime, ISO string or Unix timestamp into an aware datetime."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str):
        parsed = parse_iso(value)
        if parsed is None:
            raise ValueError(f"Invalid timestamp: {value!r}")
        return parsed
    return datetime.fromtimestamp(value, tz=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def round_half_up(value: float) -> int:
    """Round to the nearest integer with halves going up: 1.5 -> 2, -1.5 -> -1."""
    return math.floor(value + 0.5)


def format_local_time(iso: Optional[str], tz: str = "America/New_York") -> Optional[str]:
    """Format an ISO timestamp as a 12-hour local clock time, e.g. "3:45 PM"."""
    moment = parse_iso(iso)
    if moment is None:
        return None
    local = moment.astimezone(ZoneInfo(tz))
    hour = local.hour % 12 or 12
    return f"{hour}:{local.minute:02d} {'AM' if local.hour < 12 else 'PM'}"


def humanize_eta(iso: Optional[str], now: Optional[datetime] = None) -> str:
    """
    Relative time phrase for an ISO timestamp.

    Within 30 seconds either side of now returns "now"; later times return
    "in N min" and earlier ones "N min ago".
    """
    moment = parse_iso(iso)
    if moment is None:
        return "—"
    now = now or utcnow()
    seconds = round_half_up((moment - now).total_seconds())
    if seconds < -30:
        return f"{abs(round_half_up(seconds / 60))} min ago"
    if seconds <= 30:
        return "now"
    minutes = max(1, math.floor(seconds / 60))
    return f"in {minutes} min"
