"""FastAPI application serving cached BOM radar frames.

Provides REST API endpoints for:
- Latest radar frames per location, refreshed in the background
- Historical time series stitched from cached snapshots
- Cache status, manual refresh and deletion
- Health checks

Example:
    >>> from bomradar.api import create_app
    >>> app = create_app()
    >>> # Run with: uvicorn bomradar.api.app:create_app --factory
"""

import asyncio
import logging
import os
from datetime import datetime, timedelta
from typing import Callable, Optional
from urllib.parse import quote

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse

from bomradar.api.schemas import (
    AvailableRangeResponse,
    CacheFolderResponse,
    CacheStatusResponse,
    DeleteResponse,
    ErrorResponse,
    FrameResponse,
    HealthResponse,
    LocationInfo,
    MetadataResponse,
    RadarResponse,
    SeriesFrameResponse,
    TimeSeriesResponse,
    TriggerResponse,
    UpdateProgress,
)
from bomradar.cache.coordinator import UpdateCoordinator
from bomradar.cache.models import (
    CacheStatus,
    LocationKey,
    Snapshot,
    TriggerResult,
    as_utc,
    utcnow,
)
from bomradar.cache.refresh import BackgroundRefreshLoop, CacheCleanupSweeper
from bomradar.cache.store import CacheStore
from bomradar.cache.timeseries import TimeSeriesAssembler
from bomradar.config import Settings
from bomradar.scraping.base import BaseScraper

logger = logging.getLogger(__name__)

# API version
API_VERSION = "1.0.0"

# Bounds on suggested retry delays (seconds)
MIN_RETRY_AFTER = 30
MAX_RETRY_AFTER = 300


class RadarService:
    """Owns the cache components for one application instance.

    Attributes:
        settings: Service settings
        store: Snapshot store
        scraper: Scraper used for fetches
        coordinator: Update coordinator
        assembler: Time series assembler
        refresh_loop: Background refresh driver
        sweeper: Retention driver
    """

    def __init__(
        self,
        settings: Settings,
        scraper: Optional[BaseScraper] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        if scraper is None:
            from bomradar.scraping.bom import BomScraper

            scraper = BomScraper(
                frame_count=settings.frame_count,
                headless=settings.headless,
                timezone=settings.timezone,
            )

        self.settings = settings
        self.clock = clock
        self.scraper = scraper
        self.store = CacheStore(settings.cache_dir, clock=clock)
        self.coordinator = UpdateCoordinator(
            self.store,
            scraper,
            expiration_window=settings.expiration_window,
            check_interval=settings.check_interval,
            update_eta=settings.update_eta,
            failure_backoff=settings.failure_backoff,
            clock=clock,
        )
        self.assembler = TimeSeriesAssembler(self.store)
        self.refresh_loop = BackgroundRefreshLoop(
            self.coordinator,
            self.store,
            check_interval=settings.check_interval,
            locations=settings.tracked_locations,
            clock=clock,
        )
        self.sweeper = CacheCleanupSweeper(
            self.store,
            retention_horizon=settings.retention_horizon,
            interval=settings.cleanup_interval,
        )
        self._tasks: list[asyncio.Task] = []

    async def start(self, background: bool = True) -> None:
        """Recover the store and start the periodic drivers."""
        self.refresh_loop.recover()
        if background:
            self._tasks = [
                asyncio.create_task(self.refresh_loop.run(), name="radar-refresh"),
                asyncio.create_task(self.sweeper.run(), name="radar-cleanup"),
            ]
            logger.info("Background refresh and cleanup started")

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        await self.coordinator.shutdown()
        await self.scraper.close()


def api_error(
    status_code: int,
    error_code: str,
    error_type: str,
    message: str,
    details: Optional[dict] = None,
    suggestions: Optional[dict] = None,
) -> HTTPException:
    """HTTPException carrying a structured ErrorResponse body."""
    body = ErrorResponse(
        error_code=error_code,
        error_type=error_type,
        message=message,
        details=details,
        suggestions=suggestions,
    )
    return HTTPException(
        status_code=status_code,
        detail=body.model_dump(mode="json", by_alias=True),
    )


def retry_after_seconds(
    status: Optional[CacheStatus],
    now: datetime,
    update_triggered: bool = False,
) -> int:
    """Suggest how long a client should wait before asking again.

    Uses the time until ``next_update_time`` when it is plausible for the
    situation, otherwise a fixed default:

    - Update in progress: up to 180s, else 120
    - Update just triggered: up to 120s, else 90
    - Otherwise: up to 300s, else 60
    - No status: 90

    The result is clamped to [30, 300].
    """
    if status is None:
        retry_after = 90
    else:
        remaining = None
        if status.next_update_time is not None:
            remaining = int((status.next_update_time - now).total_seconds())

        if status.update_in_progress:
            limit, default = 180, 120
        elif update_triggered:
            limit, default = 120, 90
        else:
            limit, default = 300, 60

        if remaining is not None and 0 < remaining <= limit:
            retry_after = remaining
        else:
            retry_after = default

    return max(MIN_RETRY_AFTER, min(retry_after, MAX_RETRY_AFTER))


def _parse_location(name: str, region: str) -> LocationKey:
    try:
        return LocationKey.parse(name, region)
    except ValueError as e:
        field = "suburb" if "Suburb" in str(e) else "state"
        raise api_error(400, "VALIDATION_ERROR", "ValidationError", str(e), details={"field": field})


def _location_info(location: LocationKey) -> LocationInfo:
    return LocationInfo(name=location.name, region=location.region, token=location.token)


def _base_path(location: LocationKey) -> str:
    return f"/locations/{quote(location.name, safe='')}/{quote(location.region, safe='')}"


def _frame_url(location: LocationKey, snapshot: Snapshot, index: int) -> str:
    return f"{_base_path(location)}/frame/{index}?snapshot={snapshot.token}"


def _frames(location: LocationKey, snapshot: Snapshot) -> list[FrameResponse]:
    return [
        FrameResponse(
            frame_index=frame.index,
            minutes_before_observation=frame.minutes_before_observation,
            absolute_observation_time=frame.absolute_observation_time,
            image_url=_frame_url(location, snapshot, frame.index),
        )
        for frame in snapshot.frames
    ]


def _status_response(status: CacheStatus) -> CacheStatusResponse:
    progress = None
    if status.progress is not None:
        progress = UpdateProgress(
            state=status.progress.state.value,
            phase=status.progress.phase,
            frames_done=status.progress.frames_done,
            frames_total=status.progress.frames_total,
            started_at=status.progress.started_at,
        )
    return CacheStatusResponse(
        location=_location_info(status.location),
        cache_exists=status.exists,
        cache_is_valid=status.is_valid,
        observation_time=status.observation_time,
        cache_expires_at=status.expires_at,
        is_updating=status.update_in_progress,
        update_failed=status.update_failed,
        last_error=status.last_error,
        next_update_time=status.next_update_time,
        progress=progress,
    )


def _cache_not_found(
    location: LocationKey,
    status: CacheStatus,
    now: datetime,
    update_triggered: bool,
) -> HTTPException:
    details = {
        "location": {"suburb": location.name, "state": location.region},
        "cacheExists": status.exists,
        "cacheIsValid": status.is_valid,
        "updateInProgress": status.update_in_progress,
        "updateTriggered": update_triggered,
    }
    if status.next_update_time is not None:
        details["nextUpdateTime"] = status.next_update_time.isoformat()
    suggestions = {
        "action": "retry_after_seconds",
        "retryAfter": retry_after_seconds(status, now, update_triggered),
        "refreshEndpoint": f"{_base_path(location)}/refresh",
        "statusEndpoint": f"{_base_path(location)}/status",
    }
    if status.update_failed:
        details["previousUpdateFailed"] = True
        details["previousError"] = status.last_error
        suggestions["action"] = "manual_refresh_recommended"

    message = "No cached data found for this location."
    if update_triggered or status.update_in_progress:
        message += " Cache update is in progress in the background."
    return api_error(404, "CACHE_NOT_FOUND", "NotFoundError", message, details, suggestions)


def _not_found(resource_type: str, identifier: str, suggestion: Optional[str] = None) -> HTTPException:
    return api_error(
        404,
        "NOT_FOUND",
        "NotFoundError",
        f"{resource_type} not found: {identifier}",
        details={"resourceType": resource_type, "identifier": identifier},
        suggestions={"suggestion": suggestion} if suggestion else None,
    )


def _time_range_error(
    status_code: int,
    message: str,
    details: Optional[dict] = None,
    suggested: Optional[tuple[datetime, datetime]] = None,
) -> HTTPException:
    suggestions = {"action": "adjust_time_range"}
    if suggested is not None:
        start, end = suggested
        suggestions["suggestedRange"] = {"start": start.isoformat(), "end": end.isoformat()}
        suggestions["suggestion"] = (
            f"Try querying data between {start.isoformat()} and {end.isoformat()}"
        )
    return api_error(status_code, "TIME_RANGE_ERROR", "ValidationError", message, details or {}, suggestions)


def create_app(
    settings: Optional[Settings] = None,
    scraper: Optional[BaseScraper] = None,
    start_background: bool = True,
    clock: Callable[[], datetime] = utcnow,
) -> FastAPI:
    """Create FastAPI application.

    Args:
        settings: Service settings. Read from the environment if not given.
        scraper: Scraper for fetches. Defaults to the Playwright BomScraper.
        start_background: Whether to start the refresh and cleanup loops
        clock: Source of "now" (injectable for tests)

    Returns:
        Configured FastAPI application
    """
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    settings = settings or Settings.from_env()
    service = RadarService(settings, scraper=scraper, clock=clock)

    app = FastAPI(
        title="BOM Radar Cache API",
        description="Cached Bureau of Meteorology rain radar frames per location",
        version=API_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.service = service

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def startup_event():
        """Clear interrupted snapshots and start background loops."""
        await service.start(background=start_background)
        logger.info(f"Serving radar cache from {service.store.cache_dir}")

    @app.on_event("shutdown")
    async def shutdown_event():
        await service.stop()

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Handle HTTP exceptions with custom response."""
        if isinstance(exc.detail, dict):
            content = exc.detail
        else:
            content = ErrorResponse(
                error_code=f"HTTP_{exc.status_code}",
                message=str(exc.detail),
            ).model_dump(mode="json", by_alias=True)
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.url.path}: {exc}")
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error_code="INTERNAL_ERROR",
                error_type="ServiceError",
                message="An unexpected error occurred",
                details={"exceptionType": type(exc).__name__, "exceptionMessage": str(exc)},
            ).model_dump(mode="json", by_alias=True),
        )

    @app.get("/", tags=["info"])
    async def root():
        """Root endpoint with API info."""
        return {
            "name": "BOM Radar Cache API",
            "version": API_VERSION,
            "docs": "/docs",
        }

    @app.get("/health", response_model=HealthResponse, tags=["info"])
    async def health_check():
        """Health check endpoint."""
        return HealthResponse(
            status="healthy",
            version=API_VERSION,
            tracked_locations=len(service.refresh_loop.tracked),
            in_flight=len(service.coordinator.in_flight()),
        )

    @app.get(
        "/locations/{name}/{region}",
        response_model=RadarResponse,
        responses={
            400: {"model": ErrorResponse, "description": "Invalid location"},
            404: {"model": ErrorResponse, "description": "Nothing cached yet"},
        },
        tags=["radar"],
    )
    async def get_radar(name: str, region: str):
        """Latest radar frames for a location.

        Serves the latest snapshot even when stale, refreshing it in the
        background. Returns 404 with a retry hint when nothing is cached yet.
        """
        location = _parse_location(name, region)
        service.refresh_loop.track(location)

        snapshot, outcome = await service.coordinator.refresh_if_stale(location)
        status = service.coordinator.get_status(location)
        if snapshot is None:
            raise _cache_not_found(
                location,
                status,
                service.clock(),
                update_triggered=outcome == TriggerResult.STARTED,
            )

        metadata = snapshot.metadata
        return RadarResponse(
            location=_location_info(location),
            cache_folder_name=snapshot.token,
            capture_timestamp=snapshot.capture_timestamp,
            observation_time=metadata.observation_time,
            forecast_time=metadata.forecast_time,
            weather_station=metadata.station_name,
            distance=metadata.station_distance,
            frames=_frames(location, snapshot),
            cache_is_valid=status.is_valid,
            cache_expires_at=status.expires_at,
            is_updating=status.update_in_progress,
            next_update_time=status.next_update_time,
        )

    @app.get(
        "/locations/{name}/{region}/frame/{index}",
        response_class=FileResponse,
        responses={404: {"model": ErrorResponse, "description": "Frame not found"}},
        tags=["radar"],
    )
    async def get_frame(name: str, region: str, index: int, snapshot: Optional[str] = None):
        """One frame image, from the named snapshot or the latest one."""
        location = _parse_location(name, region)
        if snapshot:
            found = service.store.get_snapshot(location, snapshot)
        else:
            found = service.store.find_latest(location)
        if found is None:
            raise _not_found("Snapshot", snapshot or str(location))

        frame = next((f for f in found.frames if f.index == index), None)
        if frame is None or not frame.image_path.is_file():
            raise _not_found(
                "Frame",
                f"{found.token}#{index}",
                suggestion=f"Valid frame indices are 0-{len(found.frames) - 1}",
            )
        return FileResponse(frame.image_path, media_type="image/png")

    @app.get(
        "/locations/{name}/{region}/timeseries",
        response_model=TimeSeriesResponse,
        responses={
            400: {"model": ErrorResponse, "description": "Invalid time window"},
            404: {"model": ErrorResponse, "description": "No snapshots in window"},
        },
        tags=["radar"],
    )
    async def get_timeseries(
        name: str,
        region: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ):
        """Historical radar frames for a time window.

        ``end`` is exclusive. Without ``start`` the window begins one maximum
        span before ``end`` (or now).
        """
        location = _parse_location(name, region)
        max_span = settings.max_timeseries_span
        max_hours = max_span.total_seconds() / 3600

        end = as_utc(end) if end is not None else None
        start = as_utc(start) if start is not None else (end or service.clock()) - max_span

        if end is not None and end <= start:
            raise _time_range_error(
                400,
                "End time must be after start time",
                details={"start": start.isoformat(), "end": end.isoformat()},
            )

        span = (end or service.clock()) - start
        if span > max_span:
            raise _time_range_error(
                400,
                f"Time range cannot exceed {max_hours:g} hours",
                details={
                    "requestedHours": round(span.total_seconds() / 3600, 2),
                    "maxHours": max_hours,
                },
            )

        series = service.assembler.assemble(location, start, end)
        if series.is_empty:
            available = series.available_range
            if available is None:
                raise _not_found("Cache", str(location), suggestion="Request the location to start caching it")
            suggested_span = min(span, max_span)
            suggested_end = available.newest + timedelta(seconds=1)
            suggested_start = max(available.oldest, suggested_end - suggested_span)
            raise _time_range_error(
                404,
                "No radar data in the requested time range",
                details={
                    "availableRange": {
                        "oldest": available.oldest.isoformat(),
                        "newest": available.newest.isoformat(),
                        "totalCacheFolders": available.count,
                    },
                    "requestedRange": {
                        "start": start.isoformat(),
                        "end": end.isoformat() if end else None,
                    },
                },
                suggested=(suggested_start, suggested_end),
            )

        return TimeSeriesResponse(
            location=_location_info(location),
            start_time=start,
            end_time=end,
            total_frames=len(series.frames),
            cache_folders=[
                CacheFolderResponse(
                    cache_folder_name=s.token,
                    cache_timestamp=s.capture_timestamp,
                    observation_time=s.observation_time,
                    frames=_frames(location, s),
                )
                for s in series.snapshots
            ],
            frames=[
                SeriesFrameResponse(
                    sequential_index=f.sequential_index,
                    cache_folder_name=f.snapshot_token,
                    frame_index=f.frame_index,
                    minutes_before_observation=f.minutes_before_observation,
                    absolute_observation_time=f.absolute_observation_time,
                    image_url=f"{_base_path(location)}/frame/{f.frame_index}?snapshot={f.snapshot_token}",
                )
                for f in series.frames
            ],
            out_of_order_frames=series.out_of_order,
        )

    @app.post(
        "/locations/{name}/{region}/refresh",
        response_model=TriggerResponse,
        status_code=202,
        responses={503: {"model": ErrorResponse, "description": "Holding off after failures"}},
        tags=["cache"],
    )
    async def refresh(name: str, region: str, force: bool = False):
        """Start a background refresh unless one is already running."""
        location = _parse_location(name, region)
        service.refresh_loop.track(location)

        outcome = await service.coordinator.trigger_update(location, force=force)
        status = service.coordinator.get_status(location)

        if outcome == TriggerResult.BACKING_OFF:
            failure = service.coordinator.last_failure(location)
            reason = failure.error if failure else "repeated store failures"
            raise api_error(
                503,
                "CACHE_UPDATE_FAILED",
                "ServiceError",
                f"Failed to update cache for {location}: {reason}",
                details={
                    "location": {"suburb": location.name, "state": location.region},
                    "reason": reason,
                },
                suggestions={
                    "action": "retry_after_seconds",
                    "retryAfter": int(settings.failure_backoff.total_seconds()),
                },
            )

        messages = {
            TriggerResult.STARTED: "Cache update started",
            TriggerResult.ALREADY_IN_FLIGHT: "Cache update already in progress",
        }
        return TriggerResponse(
            location=_location_info(location),
            result=outcome.value,
            message=messages[outcome],
            status=_status_response(status),
        )

    @app.delete("/locations/{name}/{region}", response_model=DeleteResponse, tags=["cache"])
    async def delete_cache(name: str, region: str):
        """Delete every cached snapshot for a location.

        A snapshot still being written by a running fetch is kept.
        """
        location = _parse_location(name, region)
        deleted = service.store.delete(location, keep=service.coordinator.writing_tokens())
        service.refresh_loop.untrack(location)
        service.coordinator.forget(location)
        return DeleteResponse(
            location=_location_info(location),
            deleted=deleted,
            message=f"Deleted {deleted} cached snapshots for {location}",
        )

    @app.get("/locations/{name}/{region}/range", response_model=AvailableRangeResponse, tags=["cache"])
    async def get_range(name: str, region: str):
        """Span of cached snapshots for a location."""
        location = _parse_location(name, region)
        available = service.assembler.available_range(location)
        if available is None:
            return AvailableRangeResponse(location=_location_info(location))
        return AvailableRangeResponse(
            location=_location_info(location),
            oldest_cache=available.oldest,
            newest_cache=available.newest,
            total_cache_folders=available.count,
        )

    @app.get("/locations/{name}/{region}/status", response_model=CacheStatusResponse, tags=["cache"])
    async def get_status(name: str, region: str):
        """Cache status for a location. Never triggers a fetch."""
        location = _parse_location(name, region)
        return _status_response(service.coordinator.get_status(location))

    @app.get(
        "/locations/{name}/{region}/metadata",
        response_model=MetadataResponse,
        responses={404: {"model": ErrorResponse, "description": "Nothing cached"}},
        tags=["radar"],
    )
    async def get_metadata(name: str, region: str):
        """Observation metadata of the latest snapshot."""
        location = _parse_location(name, region)
        snapshot = service.store.find_latest(location)
        if snapshot is None:
            raise _not_found("Cache", str(location))
        metadata = snapshot.metadata
        return MetadataResponse(
            location=_location_info(location),
            cache_folder_name=snapshot.token,
            capture_timestamp=snapshot.capture_timestamp,
            observation_time=metadata.observation_time,
            forecast_time=metadata.forecast_time,
            weather_station=metadata.station_name,
            distance=metadata.station_distance,
            frame_count=len(snapshot.frames),
        )

    return app


def serve(host: str = "0.0.0.0", port: int = 8000) -> None:
    """Run the API with uvicorn."""
    import uvicorn

    uvicorn.run(
        "bomradar.api.app:create_app",
        factory=True,
        host=os.environ.get("HOST", host),
        port=int(os.environ.get("PORT", port)),
    )
