"""Scraper contract used by the update coordinator."""

from abc import ABC, abstractmethod
from typing import Callable

from bomradar.cache.models import LocationKey, SnapshotMetadata

# (index, image_bytes, minutes_before_observation)
FrameCallback = Callable[[int, bytes, float], None]
# (phase, done, total)
ProgressCallback = Callable[[str, int, int], None]


class BaseScraper(ABC):
    """Abstract base class for radar scrapers.

    A scraper captures one batch of radar frames for a location. It must call
    ``on_frame`` once per frame in index order, oldest first, before returning,
    and must raise (never return partial success) on any failure.
    """

    @abstractmethod
    async def fetch(
        self,
        location: LocationKey,
        on_frame: FrameCallback,
        on_progress: ProgressCallback,
    ) -> SnapshotMetadata:
        """Capture radar frames for a location.

        Args:
            location: Location to capture
            on_frame: Called with each captured frame
            on_progress: Called as the capture moves through its phases

        Returns:
            Observation metadata reported by the site

        Raises:
            Exception: Any failure, including timeouts and parse errors
        """
        pass

    async def close(self) -> None:
        """Release browser resources. No-op by default."""
        return None
