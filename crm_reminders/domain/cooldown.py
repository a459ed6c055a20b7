"""Cooldown windows for the notification ledger (calendar days in the reminder timezone)."""
from datetime import datetime, time, timedelta, timezone, tzinfo

from crm_reminders.domain.triggers import local_date

DEFAULT_COOLDOWN_DAYS = 1


def cooldown_window_start(rule, now: datetime, tz: tzinfo, cooldown_days: int = DEFAULT_COOLDOWN_DAYS) -> datetime | None:
    """
    Start of the window in which a previous `sent` row suppresses a new one.

    cooldown_days=1 means "already notified today": the window starts at local
    midnight. Rules flagged fire_once have no lower bound (returns None).
    The result is in UTC, matching how ledger timestamps are stored.
    """
    if getattr(rule, "fire_once", False):
        return None
    if cooldown_days < 1:
        raise ValueError("cooldown_days must be >= 1")
    first_day = local_date(now, tz) - timedelta(days=cooldown_days - 1)
    return datetime.combine(first_day, time.min, tzinfo=tz).astimezone(timezone.utc)
