"""Historical radar time series assembled from cached snapshots.

Each snapshot covers roughly the 40 minutes before its observation time.
Consecutive snapshots are stitched into one chronological frame sequence,
ordered by capture timestamp then frame index, and re-indexed densely for
display. Out-of-order observation times are logged, never corrected.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from bomradar.cache.models import AvailableRange, LocationKey, Snapshot
from bomradar.cache.store import CacheStore

logger = logging.getLogger(__name__)


@dataclass
class SeriesFrame:
    """One frame in a merged time series.

    Attributes:
        sequential_index: Dense 0-based position across the whole series
        snapshot_token: Token of the snapshot that owns the frame
        frame_index: Index within the owning snapshot
        capture_timestamp: Owning snapshot's capture time
        observation_time: Owning snapshot's observation time
        minutes_before_observation: Frame offset within its snapshot
        absolute_observation_time: Time the frame depicts
        image_path: Path to the image on disk
    """

    sequential_index: int
    snapshot_token: str
    frame_index: int
    capture_timestamp: datetime
    observation_time: datetime
    minutes_before_observation: float
    absolute_observation_time: datetime
    image_path: Path


@dataclass
class TimeSeries:
    """Assembled time series for a location and window."""

    location: LocationKey
    start: Optional[datetime]
    end: Optional[datetime]
    snapshots: list[Snapshot] = field(default_factory=list)
    frames: list[SeriesFrame] = field(default_factory=list)
    out_of_order: int = 0
    available_range: Optional[AvailableRange] = None

    @property
    def is_monotonic(self) -> bool:
        return self.out_of_order == 0

    @property
    def is_empty(self) -> bool:
        return not self.frames


class TimeSeriesAssembler:
    """Read-only view over the store that merges snapshots into a series.

    Never triggers fetches.
    """

    def __init__(self, store: CacheStore):
        self.store = store

    def assemble(
        self,
        location: LocationKey,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> TimeSeries:
        """Merge frames of all snapshots captured in [start, end).

        An empty result is not an error. When no frames are found the result
        carries the location's available range (None if nothing is cached).
        """
        snapshots = self.store.find_in_range(location, start, end)
        series = TimeSeries(location=location, start=start, end=end, snapshots=snapshots)

        previous: Optional[SeriesFrame] = None
        for snapshot in snapshots:
            for frame in sorted(snapshot.frames, key=lambda f: f.index):
                item = SeriesFrame(
                    sequential_index=len(series.frames),
                    snapshot_token=snapshot.token,
                    frame_index=frame.index,
                    capture_timestamp=snapshot.capture_timestamp,
                    observation_time=snapshot.observation_time,
                    minutes_before_observation=frame.minutes_before_observation,
                    absolute_observation_time=frame.absolute_observation_time,
                    image_path=frame.image_path,
                )
                if (
                    previous is not None
                    and item.absolute_observation_time < previous.absolute_observation_time
                ):
                    series.out_of_order += 1
                    logger.warning(
                        f"Out-of-order radar frame for {location}: "
                        f"{item.snapshot_token}#{item.frame_index} at "
                        f"{item.absolute_observation_time.isoformat()} precedes "
                        f"{previous.snapshot_token}#{previous.frame_index} at "
                        f"{previous.absolute_observation_time.isoformat()}"
                    )
                series.frames.append(item)
                previous = item

        if not series.frames:
            series.available_range = self.available_range(location)

        logger.debug(
            f"Assembled {len(series.frames)} frames from {len(snapshots)} snapshots "
            f"for {location}"
        )
        return series

    def available_range(self, location: LocationKey) -> Optional[AvailableRange]:
        """Full span of complete snapshots for a location, or None."""
        return self.store.available_range(location)
