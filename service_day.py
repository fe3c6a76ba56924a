"""
Service day helpers.

Journeys, stop completions and progress high-water marks all belong to one
service day: the local calendar date in ``SERVICE_TZ``. An optional cutoff
(``SERVICE_DAY_CUTOFF``, "HH:MM") lets late-night activity count toward the
previous day; it defaults to midnight.
"""

from __future__ import annotations

import os
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

SERVICE_TZ = ZoneInfo(os.getenv("SERVICE_TZ", "America/New_York"))


def parse_cutoff(value: str) -> time:
    """Parse an "HH:MM" cutoff string."""
    try:
        hour_text, minute_text = value.strip().split(":", 1)
        return time(int(hour_text), int(minute_text))
    except ValueError:
        raise ValueError(f"invalid service day cutoff: {value!r}")


SERVICE_DAY_CUTOFF = parse_cutoff(os.getenv("SERVICE_DAY_CUTOFF", "00:00"))


def get_service_date(
    now: Optional[datetime] = None,
    *,
    tz: ZoneInfo = SERVICE_TZ,
    cutoff: time = SERVICE_DAY_CUTOFF,
) -> date:
    """
    Determine the service date for a moment in time.

    Args:
        now: Any aware datetime (naive values are taken as UTC); defaults to now
        tz: Local timezone of the operator
        cutoff: Local time at which a new service day starts

    Returns:
        The local calendar date, shifted back one day before the cutoff
    """
    if now is None:
        now = datetime.now(tz)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc).astimezone(tz)
    else:
        now = now.astimezone(tz)

    if now.time() < cutoff:
        return now.date() - timedelta(days=1)
    return now.date()


__all__ = [
    "SERVICE_TZ",
    "SERVICE_DAY_CUTOFF",
    "parse_cutoff",
    "get_service_date",
]
