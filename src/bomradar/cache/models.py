"""Data models for the radar cache layer."""

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9]+")


class CacheError(Exception):
    """Base class for radar cache errors."""


class MalformedToken(CacheError, ValueError):
    """A snapshot token could not be decoded."""


class SnapshotExistsError(CacheError):
    """A snapshot directory already exists for the requested token."""


class StoreWriteError(CacheError):
    """Writing snapshot content to disk failed."""


class FetchError(CacheError):
    """The scraper failed to produce a snapshot."""


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def canonicalize(text: str) -> str:
    """Reduce text to a lowercase, filesystem-safe token fragment.

    Runs of non-alphanumeric characters collapse to a single underscore.

    Example:
        >>> canonicalize("St. Kilda West")
        'st_kilda_west'
    """
    return _UNSAFE_CHARS.sub("_", text.strip()).strip("_").lower()


@dataclass(frozen=True, eq=False)
class LocationKey:
    """A named location (suburb + state) that owns one cache partition.

    Equality and hashing use the canonical token, so ``("Pomona", "QLD")``
    and ``("pomona", "qld")`` are the same partition.
    """

    name: str
    region: str

    @classmethod
    def parse(cls, name: str, region: str) -> "LocationKey":
        """Build a validated LocationKey from user input.

        Raises:
            ValueError: If the name or region is blank.
        """
        if not name or not canonicalize(name):
            raise ValueError("Suburb is required")
        if not region or not canonicalize(region):
            raise ValueError("State is required")
        return cls(name=name.strip(), region=region.strip())

    @classmethod
    def from_token(cls, token: str) -> "LocationKey":
        """Rebuild a LocationKey from its canonical token.

        The region is the last underscore-separated part; everything before it
        is the name, with underscores read back as spaces.

        Raises:
            MalformedToken: If either part is empty.
        """
        name, sep, region = token.rpartition("_")
        if not sep or not name or not region:
            raise MalformedToken(f"Invalid location token: {token!r}")
        return cls(name=name.replace("_", " "), region=region)

    @property
    def token(self) -> str:
        """Canonical storage token, e.g. ``gold_coast_qld``."""
        return f"{canonicalize(self.name)}_{canonicalize(self.region)}"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, LocationKey):
            return NotImplemented
        return self.token == other.token

    def __hash__(self) -> int:
        return hash(self.token)

    def __str__(self) -> str:
        return f"{self.name}, {self.region}"


@dataclass
class SnapshotMetadata:
    """Observation metadata reported by the upstream site for one fetch.

    Attributes:
        observation_time: When the radar observations were taken (UTC)
        forecast_time: When the forecast was issued (UTC)
        station_name: Weather station providing the observations
        station_distance: Distance to the station, e.g. "30 km"
    """

    observation_time: datetime
    forecast_time: datetime
    station_name: Optional[str] = None
    station_distance: Optional[str] = None

    def __post_init__(self) -> None:
        self.observation_time = as_utc(self.observation_time)
        self.forecast_time = as_utc(self.forecast_time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "observation_time": self.observation_time.isoformat(),
            "forecast_time": self.forecast_time.isoformat(),
            "station_name": self.station_name,
            "station_distance": self.station_distance,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "SnapshotMetadata":
        return cls(
            observation_time=datetime.fromisoformat(d["observation_time"]),
            forecast_time=datetime.fromisoformat(d["forecast_time"]),
            station_name=d.get("station_name"),
            station_distance=d.get("station_distance"),
        )


@dataclass
class Frame:
    """One radar image within a snapshot.

    Attributes:
        index: 0-based position within the snapshot, oldest first
        minutes_before_observation: Offset of this frame before the
            snapshot's observation time (frame 0 has the largest value)
        image_path: Path to the PNG on disk
        observation_time: The owning snapshot's observation time
    """

    index: int
    minutes_before_observation: float
    image_path: Path
    observation_time: datetime

    @property
    def absolute_observation_time(self) -> datetime:
        """Wall-clock time the frame depicts."""
        return self.observation_time - timedelta(minutes=self.minutes_before_observation)


@dataclass
class Snapshot:
    """One completed fetch for a location."""

    location: LocationKey
    capture_timestamp: datetime
    path: Path
    metadata: SnapshotMetadata
    frames: list[Frame] = field(default_factory=list)
    complete: bool = True

    @property
    def token(self) -> str:
        return self.path.name

    @property
    def observation_time(self) -> datetime:
        return self.metadata.observation_time


@dataclass
class SnapshotHandle:
    """Write handle for a snapshot that has been created but not finalized."""

    location: LocationKey
    capture_timestamp: datetime
    path: Path
    frames: list[tuple[int, float, str]] = field(default_factory=list)

    @property
    def token(self) -> str:
        return self.path.name


class UpdateState(str, Enum):
    """Per-location update state machine."""

    IDLE = "idle"
    FETCHING = "fetching"
    FINALIZING = "finalizing"


class TriggerResult(str, Enum):
    """Outcome of asking the coordinator to refresh a location."""

    STARTED = "started"
    ALREADY_IN_FLIGHT = "already_in_flight"
    BACKING_OFF = "backing_off"


@dataclass
class InFlightRecord:
    """Process-local progress of one fetch attempt."""

    location: LocationKey
    started_at: datetime
    state: UpdateState = UpdateState.FETCHING
    phase: str = "starting"
    frames_done: int = 0
    frames_total: int = 0
    snapshot_token: Optional[str] = None


@dataclass
class FailureRecord:
    """Most recent failed fetch for a location."""

    error: str
    error_type: str
    occurred_at: datetime
    consecutive: int = 1
    store_failure: bool = False
    reported: bool = False


@dataclass
class CacheStatus:
    """Computed cache status for a location. Never persisted."""

    location: LocationKey
    exists: bool = False
    is_valid: bool = False
    observation_time: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    update_in_progress: bool = False
    update_failed: bool = False
    last_error: Optional[str] = None
    next_update_time: Optional[datetime] = None
    progress: Optional[InFlightRecord] = None


@dataclass
class AvailableRange:
    """Span of complete snapshots on disk for a location."""

    oldest: datetime
    newest: datetime
    count: int
