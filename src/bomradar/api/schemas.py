"""Pydantic schemas for API responses.

All models serialize with camelCase keys (``cacheIsValid``, ``nextUpdateTime``)
and accept either camelCase or snake_case on input.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from bomradar.cache.models import utcnow


class ApiModel(BaseModel):
    """Base model with camelCase aliases."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LocationInfo(ApiModel):
    """Location in a response.

    Attributes:
        name: Suburb name as requested
        region: State abbreviation as requested
        token: Canonical storage token
    """

    name: str
    region: str
    token: str


class FrameResponse(ApiModel):
    """One frame of the latest snapshot."""

    frame_index: int = Field(..., description="0-based index within the snapshot, oldest first")
    minutes_before_observation: float = Field(
        ...,
        description="Offset before the snapshot's observation time",
    )
    absolute_observation_time: datetime = Field(..., description="Time the frame depicts")
    image_url: str = Field(..., description="URL of the frame image")


class UpdateProgress(ApiModel):
    """Progress of an in-flight fetch."""

    state: str
    phase: str
    frames_done: int
    frames_total: int
    started_at: datetime


class CacheStatusResponse(ApiModel):
    """Computed cache status for a location.

    Attributes:
        cache_exists: A complete snapshot exists
        cache_is_valid: The latest snapshot is within the expiration window
        observation_time: Observation time of the latest snapshot
        cache_expires_at: When the latest snapshot stops being valid
        is_updating: A fetch is in flight
        update_failed: The last fetch failed (reported once)
        last_error: Error of the last failed fetch
        next_update_time: Advisory estimate of when newer data arrives
        progress: In-flight fetch progress
    """

    location: LocationInfo
    cache_exists: bool = False
    cache_is_valid: bool = False
    observation_time: Optional[datetime] = None
    cache_expires_at: Optional[datetime] = None
    is_updating: bool = False
    update_failed: bool = False
    last_error: Optional[str] = None
    next_update_time: Optional[datetime] = Field(
        default=None,
        description="Advisory estimate, not a guarantee",
    )
    progress: Optional[UpdateProgress] = None


class RadarResponse(ApiModel):
    """Latest snapshot for a location plus its cache status."""

    location: LocationInfo
    cache_folder_name: str
    capture_timestamp: datetime
    observation_time: datetime
    forecast_time: datetime
    weather_station: Optional[str] = None
    distance: Optional[str] = None
    frames: list[FrameResponse]
    cache_is_valid: bool
    cache_expires_at: datetime
    is_updating: bool
    next_update_time: Optional[datetime] = None


class MetadataResponse(ApiModel):
    """Observation metadata of the latest snapshot."""

    location: LocationInfo
    cache_folder_name: str
    capture_timestamp: datetime
    observation_time: datetime
    forecast_time: datetime
    weather_station: Optional[str] = None
    distance: Optional[str] = None
    frame_count: int


class TriggerResponse(ApiModel):
    """Result of a refresh request."""

    location: LocationInfo
    result: str = Field(..., description="started, already_in_flight or backing_off")
    message: str
    status: CacheStatusResponse


class SeriesFrameResponse(ApiModel):
    """One frame in a merged time series."""

    sequential_index: int = Field(..., description="Dense index across the whole series")
    cache_folder_name: str
    frame_index: int
    minutes_before_observation: float
    absolute_observation_time: datetime
    image_url: str


class CacheFolderResponse(ApiModel):
    """One snapshot contributing to a time series."""

    cache_folder_name: str
    cache_timestamp: datetime
    observation_time: datetime
    frames: list[FrameResponse]


class TimeSeriesResponse(ApiModel):
    """Historical radar frames for a time window."""

    location: LocationInfo
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    total_frames: int
    cache_folders: list[CacheFolderResponse]
    frames: list[SeriesFrameResponse]
    out_of_order_frames: int = Field(
        default=0,
        description="Frames whose observation time precedes the previous frame",
    )


class AvailableRangeResponse(ApiModel):
    """Span of complete snapshots for a location."""

    location: LocationInfo
    oldest_cache: Optional[datetime] = None
    newest_cache: Optional[datetime] = None
    total_cache_folders: int = 0


class DeleteResponse(ApiModel):
    """Result of deleting a location's cache."""

    location: LocationInfo
    deleted: int
    message: str


class HealthResponse(ApiModel):
    """Health check response.

    Attributes:
        status: Service status
        version: API version
        tracked_locations: Number of locations refreshed in the background
        in_flight: Number of fetches currently running
    """

    status: str = Field(
        default="healthy",
        description="Service status",
    )
    version: str = Field(
        default="1.0.0",
        description="API version",
    )
    tracked_locations: int = 0
    in_flight: int = 0


class ErrorResponse(ApiModel):
    """Error response schema.

    Attributes:
        error_code: Stable machine-readable code, e.g. CACHE_NOT_FOUND
        error_type: Category of the error
        message: Human-readable error message
        details: Structured context (status, available range)
        suggestions: What the caller can do next (retryAfter, suggestedRange)
        timestamp: When the error was produced
    """

    error_code: str = Field(
        ...,
        description="Error code",
    )
    error_type: str = Field(
        default="Error",
        description="Error category",
    )
    message: str = Field(
        ...,
        description="Error message",
    )
    details: Optional[dict[str, Any]] = Field(
        default=None,
        description="Additional details",
    )
    suggestions: Optional[dict[str, Any]] = Field(
        default=None,
        description="Suggested next steps",
    )
    timestamp: datetime = Field(default_factory=utcnow)
