"""Cache freshness rules.

The upstream site publishes new radar observations roughly every 15 minutes
(at :00, :15, :30, :45). A snapshot stays valid for a configured expiration
window measured from its observation time. The window carries a small buffer
on top of the real cadence to absorb jitter in when new observations appear.

Next-update estimates are advisory only. Nothing in the cache layer depends on
them being accurate.
"""

from datetime import datetime, timedelta
from typing import Optional

from bomradar.cache.models import CacheStatus

# BOM observations every 15 minutes, plus a 30 second buffer
DEFAULT_EXPIRATION_WINDOW = timedelta(minutes=15.5)
DEFAULT_CHECK_INTERVAL = timedelta(minutes=5)
DEFAULT_UPDATE_ETA = timedelta(minutes=2)

_HOUR = timedelta(hours=1)


def is_valid(observation_time: datetime, expiration_window: timedelta, now: datetime) -> bool:
    """Whether a snapshot observed at observation_time is still fresh at now."""
    return now < observation_time + expiration_window


def expires_at(observation_time: datetime, expiration_window: timedelta) -> datetime:
    """When a snapshot observed at observation_time stops being fresh."""
    return observation_time + expiration_window


def next_scheduled_check(now: datetime, check_interval: timedelta) -> datetime:
    """Next tick of a background loop that wakes on check_interval boundaries.

    Ticks are aligned to the top of the hour. A time exactly on a boundary
    rounds to the following one. Rounding past the end of the hour rolls over
    to the next hour's zero-minute mark.

    Example:
        >>> next_scheduled_check(datetime(2025, 1, 1, 0, 7), timedelta(minutes=5))
        datetime.datetime(2025, 1, 1, 0, 10)
        >>> next_scheduled_check(datetime(2025, 1, 1, 0, 57), timedelta(minutes=7))
        datetime.datetime(2025, 1, 1, 1, 0)
    """
    if check_interval <= timedelta(0):
        raise ValueError("check_interval must be positive")

    hour_start = now.replace(minute=0, second=0, microsecond=0)
    elapsed = now - hour_start
    ticks = elapsed // check_interval + 1
    candidate = hour_start + check_interval * ticks
    if candidate > hour_start + _HOUR:
        return hour_start + _HOUR
    return candidate


def estimate_next_update(
    status: CacheStatus,
    check_interval: timedelta,
    in_progress_eta: timedelta,
    now: datetime,
) -> Optional[datetime]:
    """Estimate when a client should expect newer data.

    - Update in progress: ``now + in_progress_eta``
    - Cache valid: the later of expiry and the next background tick
    - Otherwise: the next background tick
    """
    if status.update_in_progress:
        return now + in_progress_eta

    next_check = next_scheduled_check(now, check_interval)
    if status.is_valid and status.expires_at is not None:
        return max(status.expires_at, next_check)
    return next_check
