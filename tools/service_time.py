# tools/service_time.py
"""
Service-day clock helpers.

Transit feeds express times on a service-day clock that keeps counting past
midnight ("25:10:00" is 01:10 the next calendar day). These helpers turn such
strings into absolute instants relative to a reference date.
"""
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Optional
from zoneinfo import ZoneInfo


def parse_service_time(reference_date: date, time_str: str, tz: Optional[tzinfo] = None) -> datetime:
    """
    Convert "HH:MM[:SS]" on the reference service date into a datetime.

    Hours >= 24 roll over onto the following calendar day. The result carries
    `tz` if given (naive otherwise); no other conversion happens.

    Raises ValueError on malformed input.
    """
    parts = time_str.strip().split(":")
    if len(parts) not in (2, 3):
        raise ValueError(f"invalid service time: {time_str!r}")
    try:
        hours, minutes = int(parts[0]), int(parts[1])
        seconds = int(parts[2]) if len(parts) == 3 and parts[2] else 0
    except ValueError:
        raise ValueError(f"invalid service time: {time_str!r}") from None

    if hours < 0 or not 0 <= minutes < 60 or not 0 <= seconds < 60:
        raise ValueError(f"invalid service time: {time_str!r}")

    day = reference_date
    if hours >= 24:
        extra_days, hours = divmod(hours, 24)
        day = reference_date + timedelta(days=extra_days)

    return datetime.combine(day, time(hours, minutes, seconds), tzinfo=tz)


def format_service_date(d: date) -> str:
    """YYYYMMDD, the date format the MTD API and arrival keys use."""
    return d.strftime("%Y%m%d")


def resolve_timezone(name: str | None) -> Optional[tzinfo]:
    """ZoneInfo for a configured name; None (host local, naive) when empty."""
    if not name:
        return None
    return ZoneInfo(name)


def local_now(tz: Optional[tzinfo] = None) -> datetime:
    return datetime.now(tz) if tz else datetime.now()
