"""Tests for cache freshness rules."""

from datetime import datetime, timedelta, timezone

import pytest

from bomradar.cache.freshness import (
    DEFAULT_EXPIRATION_WINDOW,
    estimate_next_update,
    expires_at,
    is_valid,
    next_scheduled_check,
)
from bomradar.cache.models import CacheStatus, LocationKey

OBSERVED = datetime(2025, 1, 1, 0, 5, tzinfo=timezone.utc)
WINDOW = timedelta(minutes=15)


class TestIsValid:
    """Tests for the expiration boundary."""

    def test_just_before_expiry(self):
        """Valid one second before obs + window."""
        assert is_valid(OBSERVED, WINDOW, OBSERVED + WINDOW - timedelta(seconds=1))

    def test_exactly_at_expiry(self):
        """Invalid exactly at obs + window."""
        assert not is_valid(OBSERVED, WINDOW, OBSERVED + WINDOW)

    def test_just_after_expiry(self):
        """Invalid one second after obs + window."""
        assert not is_valid(OBSERVED, WINDOW, OBSERVED + WINDOW + timedelta(seconds=1))

    def test_default_window(self):
        """Default window is 15.5 minutes."""
        assert DEFAULT_EXPIRATION_WINDOW == timedelta(minutes=15, seconds=30)

    def test_expires_at(self):
        """expires_at is observation plus window."""
        assert expires_at(OBSERVED, WINDOW) == datetime(2025, 1, 1, 0, 20, tzinfo=timezone.utc)


class TestNextScheduledCheck:
    """Tests for hour-aligned background ticks."""

    @pytest.mark.parametrize(
        "now,interval,expected",
        [
            ((0, 7, 0), 5, (0, 10)),
            ((0, 10, 0), 5, (0, 15)),
            ((0, 10, 1), 5, (0, 15)),
            ((0, 0, 0), 5, (0, 5)),
            ((0, 57, 0), 5, (1, 0)),
            ((0, 57, 0), 7, (1, 0)),
            ((0, 29, 59), 30, (0, 30)),
        ],
    )
    def test_aligned(self, now, interval, expected):
        """Ticks land on interval boundaries after the hour."""
        hour, minute, second = now
        result = next_scheduled_check(
            datetime(2025, 1, 1, hour, minute, second, tzinfo=timezone.utc),
            timedelta(minutes=interval),
        )
        assert (result.hour, result.minute, result.second) == (*expected, 0)

    def test_rolls_into_next_day(self):
        """A tick past 23:55 rolls over to midnight."""
        result = next_scheduled_check(
            datetime(2025, 1, 1, 23, 58, tzinfo=timezone.utc),
            timedelta(minutes=5),
        )
        assert result == datetime(2025, 1, 2, 0, 0, tzinfo=timezone.utc)

    def test_always_after_now(self):
        """The next tick is strictly in the future."""
        now = datetime(2025, 1, 1, 3, 15, tzinfo=timezone.utc)
        assert next_scheduled_check(now, timedelta(minutes=15)) > now

    def test_rejects_non_positive_interval(self):
        """Zero interval is invalid."""
        with pytest.raises(ValueError):
            next_scheduled_check(OBSERVED, timedelta(0))


class TestEstimateNextUpdate:
    """Tests for advisory next-update estimates."""

    def _status(self, **kwargs) -> CacheStatus:
        return CacheStatus(location=LocationKey("Pomona", "QLD"), **kwargs)

    def test_in_progress(self):
        """In progress: now plus the ETA."""
        now = datetime(2025, 1, 1, 0, 7, tzinfo=timezone.utc)
        status = self._status(update_in_progress=True)
        result = estimate_next_update(status, timedelta(minutes=5), timedelta(minutes=2), now)
        assert result == now + timedelta(minutes=2)

    def test_valid_uses_expiry(self):
        """Valid cache: no earlier than expiry."""
        now = datetime(2025, 1, 1, 0, 7, tzinfo=timezone.utc)
        status = self._status(is_valid=True, expires_at=datetime(2025, 1, 1, 0, 20, tzinfo=timezone.utc))
        result = estimate_next_update(status, timedelta(minutes=5), timedelta(minutes=2), now)
        assert result == datetime(2025, 1, 1, 0, 20, tzinfo=timezone.utc)

    def test_stale_uses_next_tick(self):
        """Stale cache: the next background tick."""
        now = datetime(2025, 1, 1, 0, 7, tzinfo=timezone.utc)
        status = self._status(exists=True)
        result = estimate_next_update(status, timedelta(minutes=5), timedelta(minutes=2), now)
        assert result == datetime(2025, 1, 1, 0, 10, tzinfo=timezone.utc)
