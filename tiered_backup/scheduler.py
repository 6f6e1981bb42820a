"""
Tier scheduling: which snapshot tiers are due at a given wall-clock time.

The decision is a pure function of the timestamp and the configuration:

- Backups run inside the operational window, hours [window_start_hour, 24)
  plus hour 0. Outside it nothing is due.
- Inside the window Son (hourly) is always due.
- At the window-start hour Father (daily) is due, or Grandfather (weekly)
  when the day is the weekly marker day.
- Cascade: Grandfather implies Father and Son, Father implies Son.
"""

from datetime import datetime
from typing import List
from zoneinfo import ZoneInfo

from .tiers import CASCADE_ORDER, Tier


def to_local(now: datetime, tz: ZoneInfo) -> datetime:
    """Express ``now`` in ``tz``. Naive datetimes are taken as wall-clock time in ``tz``."""
    if now.tzinfo is None:
        return now.replace(tzinfo=tz)
    return now.astimezone(tz)


def in_window(hour: int, window_start_hour: int) -> bool:
    return hour >= window_start_hour or hour == 0


def top_tier(local_now: datetime, window_start_hour: int, weekly_marker_day: int):
    """Return the highest tier due at ``local_now``, or None outside the window."""
    hour = local_now.hour
    if not in_window(hour, window_start_hour):
        return None
    if hour == window_start_hour and local_now.weekday() == weekly_marker_day:
        return Tier.GRANDFATHER
    if hour == window_start_hour:
        return Tier.FATHER
    return Tier.SON


def due_tiers(now: datetime, config) -> List[Tier]:
    """
    Tiers due at ``now``, highest first.

    Args:
        now: Current time (aware, or naive local wall-clock time)
        config: BackupConfig supplying timezone, window start and marker day

    Returns:
        [Grandfather, Father, Son], [Father, Son], [Son] or []
    """
    local_now = to_local(now, config.tz)
    top = top_tier(local_now, config.window_start_hour, config.weekly_marker_day)
    if top is None:
        return []
    return list(CASCADE_ORDER[CASCADE_ORDER.index(top):])
