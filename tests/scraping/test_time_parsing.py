"""Tests for parsing the radar page's last-updated section."""

from datetime import datetime, time, timezone
from zoneinfo import ZoneInfo

import pytest

from bomradar.scraping.time_parsing import (
    ParseError,
    anchor_time,
    nearest_time,
    parse_clock_time,
    parse_last_updated,
    resolve_timezone,
)

# 2025-01-01 11:00 UTC is 21:00 in Brisbane
NOW = datetime(2025, 1, 1, 11, 0, tzinfo=timezone.utc)

SAMPLE = (
    "Observations: 11 minutes ago, 8:20 pm AEST at Gympie weather station, "
    "30 km from Pomona, QLD. Forecast: 41 minutes ago, 7:50 pm AEST"
)


class TestParseClockTime:
    """Tests for parse_clock_time."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("8:20 pm", time(20, 20)),
            ("8:20pm", time(20, 20)),
            ("8:20 PM", time(20, 20)),
            ("12:05 am", time(0, 5)),
            ("20:20", time(20, 20)),
        ],
    )
    def test_formats(self, value, expected):
        """12 and 24 hour formats are accepted."""
        assert parse_clock_time(value) == expected

    def test_invalid(self):
        """Garbage raises ParseError."""
        with pytest.raises(ParseError):
            parse_clock_time("soon")


class TestResolveTimezone:
    """Tests for timezone abbreviation mapping."""

    def test_aest(self):
        assert resolve_timezone("AEST", "UTC") == ZoneInfo("Australia/Brisbane")

    def test_aedt(self):
        assert resolve_timezone("AEDT", "UTC") == ZoneInfo("Australia/Sydney")

    def test_trailing_at(self):
        """Text run together with "at" still resolves."""
        assert resolve_timezone("AESTAT", "UTC") == ZoneInfo("Australia/Brisbane")

    def test_unknown_falls_back(self):
        """Unknown abbreviations use the default zone."""
        assert resolve_timezone("XYZ", "Australia/Perth") == ZoneInfo("Australia/Perth")


class TestAnchorTime:
    """Tests for attaching a date to a wall-clock time."""

    def test_today(self):
        """Earlier today stays on today's date."""
        result = anchor_time(time(20, 20), ZoneInfo("Australia/Brisbane"), NOW)
        assert result == datetime(2025, 1, 1, 10, 20, tzinfo=timezone.utc)

    def test_future_rolls_back_a_day(self):
        """A time later than now is taken to be yesterday."""
        result = anchor_time(time(23, 50), ZoneInfo("Australia/Brisbane"), NOW)
        assert result == datetime(2024, 12, 31, 13, 50, tzinfo=timezone.utc)


class TestNearestTime:
    """Tests for placing a wall-clock time on the nearest date."""

    def test_later_same_day(self):
        """A time shortly after the reference stays on the same date."""
        result = nearest_time(time(21, 5), ZoneInfo("Australia/Brisbane"), NOW)
        assert result == datetime(2025, 1, 1, 11, 5, tzinfo=timezone.utc)

    def test_across_midnight(self):
        """Just after midnight, a late-evening time is from the previous day."""
        reference = datetime(2025, 1, 1, 14, 10, tzinfo=timezone.utc)  # 00:10 Brisbane
        result = nearest_time(time(23, 50), ZoneInfo("Australia/Brisbane"), reference)
        assert result == datetime(2025, 1, 1, 13, 50, tzinfo=timezone.utc)

    def test_next_day(self):
        """Just before midnight, an early-morning time is from the next day."""
        reference = datetime(2025, 1, 1, 13, 55, tzinfo=timezone.utc)  # 23:55 Brisbane
        result = nearest_time(time(0, 5), ZoneInfo("Australia/Brisbane"), reference)
        assert result == datetime(2025, 1, 1, 14, 5, tzinfo=timezone.utc)


class TestParseLastUpdated:
    """Tests for parse_last_updated."""

    def test_sample(self):
        """Parses times, station and distance."""
        metadata = parse_last_updated(SAMPLE, now=NOW)
        assert metadata.observation_time == datetime(2025, 1, 1, 10, 20, tzinfo=timezone.utc)
        assert metadata.forecast_time == datetime(2025, 1, 1, 9, 50, tzinfo=timezone.utc)
        assert metadata.station_name == "Gympie"
        assert metadata.station_distance == "30 km"

    def test_aedt_uses_sydney(self):
        """AEDT times are interpreted in Sydney time (UTC+11 in January)."""
        text = "Observations: 8:20 pm AEDT at Sydney weather station. Forecast: 7:50 pm AEDT"
        metadata = parse_last_updated(text, now=NOW)
        assert metadata.observation_time == datetime(2025, 1, 1, 9, 20, tzinfo=timezone.utc)

    def test_without_station(self):
        """Station and distance are optional."""
        text = "Observations: 8:20 pm AEST. Forecast: 7:50 pm AEST"
        metadata = parse_last_updated(text, now=NOW)
        assert metadata.station_name is None
        assert metadata.station_distance is None

    def test_missing_observation(self):
        """Missing observation time raises ParseError."""
        with pytest.raises(ParseError, match="observation"):
            parse_last_updated("Forecast: 7:50 pm AEST", now=NOW)

    def test_missing_forecast(self):
        """Missing forecast time raises ParseError."""
        with pytest.raises(ParseError, match="forecast"):
            parse_last_updated("Observations: 8:20 pm AEST", now=NOW)

    def test_parse_error_is_value_error(self):
        """ParseError can be caught as ValueError."""
        with pytest.raises(ValueError):
            parse_last_updated("", now=NOW)
