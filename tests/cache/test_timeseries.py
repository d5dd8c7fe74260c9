"""Tests for time series assembly."""

import logging
from datetime import timedelta

from bomradar.cache.models import LocationKey
from bomradar.cache.timeseries import TimeSeriesAssembler
from conftest import BASE_TIME, POMONA, make_snapshot


def _three_snapshots(store):
    """Snapshots 10 minutes apart, each observed 5 minutes after capture."""
    for minutes in (0, 10, 20):
        captured = BASE_TIME + timedelta(minutes=minutes)
        make_snapshot(
            store,
            POMONA,
            captured,
            observation_time=captured + timedelta(minutes=5),
            offsets=(8, 4, 0),
        )


class TestAssemble:
    """Tests for TimeSeriesAssembler.assemble."""

    def test_merge_order(self, store):
        """Frames are ascending by absolute observation time."""
        _three_snapshots(store)
        series = TimeSeriesAssembler(store).assemble(POMONA)

        times = [f.absolute_observation_time for f in series.frames]
        assert len(times) == 9
        assert times == sorted(times)
        assert len(set(times)) == 9
        assert series.is_monotonic

    def test_dense_sequential_index(self, store):
        """Sequential indices run 0..n-1 across snapshots."""
        _three_snapshots(store)
        series = TimeSeriesAssembler(store).assemble(POMONA)

        assert [f.sequential_index for f in series.frames] == list(range(9))
        assert [f.frame_index for f in series.frames] == [0, 1, 2] * 3

    def test_absolute_time(self, store):
        """Absolute time is observation minus offset."""
        make_snapshot(
            store,
            POMONA,
            BASE_TIME,
            observation_time=BASE_TIME + timedelta(minutes=5),
            offsets=(30, 0),
        )
        series = TimeSeriesAssembler(store).assemble(POMONA)
        assert series.frames[0].absolute_observation_time == BASE_TIME - timedelta(minutes=25)
        assert series.frames[1].absolute_observation_time == BASE_TIME + timedelta(minutes=5)

    def test_window_limits_snapshots(self, store):
        """Only snapshots captured in [start, end) contribute."""
        _three_snapshots(store)
        series = TimeSeriesAssembler(store).assemble(
            POMONA,
            BASE_TIME + timedelta(minutes=10),
            BASE_TIME + timedelta(minutes=20),
        )
        assert len(series.snapshots) == 1
        assert len(series.frames) == 3
        assert series.available_range is None

    def test_out_of_order_flagged_not_dropped(self, store, caplog):
        """A snapshot with an earlier observation is flagged but returned."""
        make_snapshot(store, POMONA, BASE_TIME, observation_time=BASE_TIME + timedelta(minutes=30), offsets=(0,))
        make_snapshot(
            store,
            POMONA,
            BASE_TIME + timedelta(minutes=10),
            observation_time=BASE_TIME + timedelta(minutes=5),
            offsets=(0,),
        )

        with caplog.at_level(logging.WARNING, logger="bomradar.cache.timeseries"):
            series = TimeSeriesAssembler(store).assemble(POMONA)

        assert len(series.frames) == 2
        assert series.out_of_order == 1
        assert not series.is_monotonic
        assert "Out-of-order" in caplog.text

    def test_empty_store(self, store):
        """No snapshots: empty result, no range."""
        series = TimeSeriesAssembler(store).assemble(POMONA)
        assert series.is_empty
        assert series.available_range is None


class TestRangeMiss:
    """Windows outside the cached span."""

    def test_window_before_oldest(self, store):
        """Empty frames plus the true available range."""
        _three_snapshots(store)
        series = TimeSeriesAssembler(store).assemble(
            POMONA,
            BASE_TIME - timedelta(hours=2),
            BASE_TIME - timedelta(hours=1),
        )
        assert series.frames == []
        assert series.available_range.oldest == BASE_TIME
        assert series.available_range.newest == BASE_TIME + timedelta(minutes=20)
        assert series.available_range.count == 3

    def test_window_after_newest(self, store):
        """A window after the newest snapshot also reports the range."""
        _three_snapshots(store)
        series = TimeSeriesAssembler(store).assemble(POMONA, BASE_TIME + timedelta(hours=1))
        assert series.is_empty
        assert series.available_range.newest == BASE_TIME + timedelta(minutes=20)

    def test_available_range_other_location(self, store):
        """Another location's snapshots don't count."""
        _three_snapshots(store)
        assembler = TimeSeriesAssembler(store)
        assert assembler.available_range(LocationKey("Brisbane", "QLD")) is None
