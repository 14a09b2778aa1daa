from __future__ import annotations

from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from delivery_batching.core.clock import ensure_utc


def scheduled_delivery_date(assigned_at: datetime, cutoff: time, tz: ZoneInfo) -> date:
    """Next calendar day if assigned before the cutoff, the day after otherwise.

    The cutoff is compared against local wall-clock time in ``tz``; an
    assignment exactly at the cutoff counts as after it.
    """
    local = ensure_utc(assigned_at).astimezone(tz)
    days_ahead = 1 if local.time() < cutoff else 2
    return local.date() + timedelta(days=days_ahead)
