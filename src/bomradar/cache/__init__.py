"""Radar snapshot cache for bomradar.

Provides crash-safe on-disk storage of radar snapshots, freshness rules,
update coordination and time series assembly.

Background refresh can be run once via:
    python -m bomradar.cache.refresh

Note: the coordinator and refresh drivers depend on the scraper contract and
are lazy-loaded so that bomradar.scraping can import the cache models.
"""

from bomradar.cache.codec import decode_timestamp, decode_token, encode_token
from bomradar.cache.models import (
    AvailableRange,
    CacheError,
    CacheStatus,
    FetchError,
    Frame,
    InFlightRecord,
    LocationKey,
    MalformedToken,
    Snapshot,
    SnapshotExistsError,
    SnapshotHandle,
    SnapshotMetadata,
    StoreWriteError,
    TriggerResult,
    UpdateState,
)
from bomradar.cache.store import CacheStore
from bomradar.cache.timeseries import SeriesFrame, TimeSeries, TimeSeriesAssembler

_LAZY = {
    "UpdateCoordinator": "bomradar.cache.coordinator",
    "BackgroundRefreshLoop": "bomradar.cache.refresh",
    "CacheCleanupSweeper": "bomradar.cache.refresh",
    "RefreshResult": "bomradar.cache.refresh",
    "get_cache_status": "bomradar.cache.refresh",
}


def __getattr__(name):
    """Lazy load components that depend on the scraper contract."""
    if name in _LAZY:
        import importlib

        return getattr(importlib.import_module(_LAZY[name]), name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "AvailableRange",
    "BackgroundRefreshLoop",
    "CacheCleanupSweeper",
    "CacheError",
    "CacheStatus",
    "CacheStore",
    "FetchError",
    "Frame",
    "InFlightRecord",
    "LocationKey",
    "MalformedToken",
    "RefreshResult",
    "SeriesFrame",
    "Snapshot",
    "SnapshotExistsError",
    "SnapshotHandle",
    "SnapshotMetadata",
    "StoreWriteError",
    "TimeSeries",
    "TimeSeriesAssembler",
    "TriggerResult",
    "UpdateCoordinator",
    "UpdateState",
    "decode_timestamp",
    "decode_token",
    "encode_token",
    "get_cache_status",
]
