"""Radar cache API for bomradar.

This module provides:

- create_app: Factory function to create FastAPI application
- RadarService: Cache components owned by one application
- Response schemas

Note: FastAPI-dependent exports (create_app, RadarService) are lazy-loaded
to allow importing schemas without FastAPI installed.
"""

# Schemas can be imported directly (only depend on pydantic)
from bomradar.api.schemas import (
    AvailableRangeResponse,
    CacheStatusResponse,
    ErrorResponse,
    HealthResponse,
    RadarResponse,
    TimeSeriesResponse,
    TriggerResponse,
)


# Lazy imports for FastAPI-dependent components
def __getattr__(name):
    """Lazy load FastAPI-dependent components."""
    if name in ("create_app", "RadarService", "retry_after_seconds"):
        from bomradar.api import app as app_module
        return getattr(app_module, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "create_app",
    "RadarService",
    "retry_after_seconds",
    "AvailableRangeResponse",
    "CacheStatusResponse",
    "ErrorResponse",
    "HealthResponse",
    "RadarResponse",
    "TimeSeriesResponse",
    "TriggerResponse",
]
