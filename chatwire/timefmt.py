"""Time labels for prompt lines."""

from datetime import datetime, tzinfo
from typing import Optional
from zoneinfo import ZoneInfo


def resolve_tz(name: Optional[str]) -> Optional[tzinfo]:
    """IANA name to tzinfo; None means the machine's local time."""
    return ZoneInfo(name) if name else None


def _dt(timestamp: int, tz: Optional[tzinfo]) -> datetime:
    return datetime.fromtimestamp(timestamp, tz)


def format_date(timestamp: int, tz: Optional[tzinfo] = None) -> str:
    return _dt(timestamp, tz).strftime("%Y-%m-%d")


def format_clock(timestamp: int, tz: Optional[tzinfo] = None) -> str:
    return _dt(timestamp, tz).strftime("%H:%M")


def format_timestamp(timestamp: int, tz: Optional[tzinfo] = None) -> str:
    return _dt(timestamp, tz).strftime("%Y-%m-%d %H:%M")


def date_header(timestamp: int, prev_timestamp: Optional[int], tz: Optional[tzinfo] = None) -> Optional[str]:
    """'[YYYY-MM-DD]' when the date differs from the previous line's, else None.

    The first line of a run (prev_timestamp None) always gets a header.
    """
    date = format_date(timestamp, tz)
    if prev_timestamp is not None and format_date(prev_timestamp, tz) == date:
        return None
    return f"[{date}]"


def time_label(timestamp: int, prev_timestamp: Optional[int], tz: Optional[tzinfo] = None) -> tuple[Optional[str], str]:
    """Label for one line: (optional date header line, inline '[HH:MM] ' prefix)."""
    return date_header(timestamp, prev_timestamp, tz), f"[{format_clock(timestamp, tz)}] "
