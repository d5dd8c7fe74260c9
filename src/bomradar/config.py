"""Runtime configuration for bomradar.

All values can be overridden via environment variables:

    BOMRADAR_CACHE_DIR              Snapshot directory
    CACHE_EXPIRATION_MINUTES        Validity window after observation (15.5)
    CACHE_CHECK_INTERVAL_MINUTES    Background refresh tick (5)
    CACHE_CLEANUP_INTERVAL_MINUTES  Retention sweep tick (60)
    CACHE_RETENTION_HOURS           How long snapshots are kept (24)
    CACHE_UPDATE_ETA_SECONDS        Estimated fetch duration (120)
    CACHE_FAILURE_BACKOFF_SECONDS   Hold-off after repeated store failures (60)
    TIMESERIES_MAX_HOURS            Longest time series window (24)
    TRACKED_LOCATIONS               "Pomona,QLD;Brisbane,QLD"
    TIMEZONE                        Fallback zone for site times (Australia/Brisbane)
    BROWSER_HEADLESS                "1"/"0" (1)
    RADAR_FRAME_COUNT               Frames per snapshot (7)
"""

import os
from datetime import timedelta
from pathlib import Path
from typing import Mapping, Optional

from pydantic import BaseModel, Field, TypeAdapter, field_validator

from bomradar.cache.models import LocationKey
from bomradar.utils.io import get_project_root


_NUMBER = TypeAdapter(float)


def _duration(raw: str, unit: str) -> timedelta:
    """Read a numeric environment value as a duration in unit.

    Raises:
        ValidationError: If the value is not a number
    """
    return timedelta(**{unit: _NUMBER.validate_python(raw)})


def parse_locations(raw: str) -> list[LocationKey]:
    """Parse ``"Pomona,QLD;Gold Coast,QLD"`` into location keys.

    Raises:
        ValueError: If an entry lacks a name or region
    """
    locations = []
    for entry in raw.split(";"):
        entry = entry.strip()
        if not entry:
            continue
        name, sep, region = entry.rpartition(",")
        if not sep:
            raise ValueError(f"Location must be 'name,region': {entry!r}")
        locations.append(LocationKey.parse(name, region))
    return locations


class Settings(BaseModel):
    """Service settings.

    Attributes:
        cache_dir: Root directory for snapshots
        expiration_window: How long a snapshot is valid after observation
        check_interval: Background refresh loop tick
        cleanup_interval: Retention sweeper tick
        retention_horizon: Snapshots older than this are deleted
        update_eta: Estimated duration of one fetch
        failure_backoff: Hold-off after repeated store write failures
        max_timeseries_span: Longest window accepted by the time series API
        tracked_locations: Locations refreshed in the background from startup
        timezone: IANA zone used when the site shows an unknown abbreviation
        headless: Run the browser headless
        frame_count: Frames captured per snapshot
    """

    cache_dir: Path = Field(
        default_factory=lambda: get_project_root() / "data" / "cache" / "radar"
    )
    expiration_window: timedelta = timedelta(minutes=15.5)
    check_interval: timedelta = timedelta(minutes=5)
    cleanup_interval: timedelta = timedelta(minutes=60)
    retention_horizon: timedelta = timedelta(hours=24)
    update_eta: timedelta = timedelta(seconds=120)
    failure_backoff: timedelta = timedelta(seconds=60)
    max_timeseries_span: timedelta = timedelta(hours=24)
    tracked_locations: list[LocationKey] = Field(default_factory=list)
    timezone: str = "Australia/Brisbane"
    headless: bool = True
    frame_count: int = Field(default=7, ge=1, le=20)

    model_config = {"arbitrary_types_allowed": True}

    @field_validator(
        "expiration_window",
        "check_interval",
        "cleanup_interval",
        "retention_horizon",
        "update_eta",
        "max_timeseries_span",
    )
    @classmethod
    def _positive(cls, value: timedelta) -> timedelta:
        if value <= timedelta(0):
            raise ValueError("duration must be positive")
        return value

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from environment variables, falling back to defaults."""
        env = os.environ if environ is None else environ
        values: dict = {}

        if env.get("BOMRADAR_CACHE_DIR"):
            values["cache_dir"] = Path(env["BOMRADAR_CACHE_DIR"])

        durations = {
            "expiration_window": ("CACHE_EXPIRATION_MINUTES", "minutes"),
            "check_interval": ("CACHE_CHECK_INTERVAL_MINUTES", "minutes"),
            "cleanup_interval": ("CACHE_CLEANUP_INTERVAL_MINUTES", "minutes"),
            "retention_horizon": ("CACHE_RETENTION_HOURS", "hours"),
            "update_eta": ("CACHE_UPDATE_ETA_SECONDS", "seconds"),
            "failure_backoff": ("CACHE_FAILURE_BACKOFF_SECONDS", "seconds"),
            "max_timeseries_span": ("TIMESERIES_MAX_HOURS", "hours"),
        }
        for field_name, (var, unit) in durations.items():
            raw = env.get(var, "").strip()
            if raw:
                values[field_name] = _duration(raw, unit)

        if env.get("TRACKED_LOCATIONS", "").strip():
            values["tracked_locations"] = parse_locations(env["TRACKED_LOCATIONS"])
        if env.get("TIMEZONE", "").strip():
            values["timezone"] = env["TIMEZONE"].strip()
        if env.get("BROWSER_HEADLESS", "").strip():
            values["headless"] = env["BROWSER_HEADLESS"].strip() == "1"
        if env.get("RADAR_FRAME_COUNT", "").strip():
            values["frame_count"] = env["RADAR_FRAME_COUNT"].strip()

        return cls(**values)
