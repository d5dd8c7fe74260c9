"""Update coordination for the radar cache.

Guarantees at most one fetch in flight per location. Admission is an atomic
check-and-insert into the in-flight table under a per-location lock. The lock
is held only for admission, never across the fetch itself, so unrelated
locations proceed concurrently.

Per-location state machine::

    IDLE --trigger_update--> FETCHING --frames done--> FINALIZING --> IDLE
      ^                         |                          |
      +------- failure ---------+--------------------------+

Fetches run as background asyncio tasks. Once admitted they run to completion
or failure regardless of the request that triggered them.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Optional

from bomradar.cache import freshness
from bomradar.cache.models import (
    CacheError,
    CacheStatus,
    FailureRecord,
    FetchError,
    InFlightRecord,
    LocationKey,
    Snapshot,
    SnapshotHandle,
    StoreWriteError,
    TriggerResult,
    UpdateState,
    utcnow,
)
from bomradar.cache.store import CacheStore
from bomradar.scraping.base import BaseScraper

logger = logging.getLogger(__name__)

# Consecutive store write failures before new fetches are held off
STORE_FAILURE_THRESHOLD = 2
# Number of recent fetch durations used to estimate time to completion
DURATION_SAMPLES = 5
MIN_ETA = timedelta(seconds=10)


class UpdateCoordinator:
    """Coordinates cache refreshes for all locations.

    Attributes:
        store: Snapshot store
        scraper: Scraper used to capture new snapshots
        expiration_window: How long a snapshot stays valid after observation
        check_interval: Background refresh loop tick
        update_eta: Default estimate of one fetch's duration
        failure_backoff: How long to hold off after repeated store failures
    """

    def __init__(
        self,
        store: CacheStore,
        scraper: BaseScraper,
        expiration_window: timedelta = freshness.DEFAULT_EXPIRATION_WINDOW,
        check_interval: timedelta = freshness.DEFAULT_CHECK_INTERVAL,
        update_eta: timedelta = freshness.DEFAULT_UPDATE_ETA,
        failure_backoff: timedelta = timedelta(seconds=60),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.scraper = scraper
        self.expiration_window = expiration_window
        self.check_interval = check_interval
        self.update_eta = update_eta
        self.failure_backoff = failure_backoff
        self._clock = clock

        self._locks: dict[str, asyncio.Lock] = {}
        self._in_flight: dict[str, InFlightRecord] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._failures: dict[str, FailureRecord] = {}
        self._durations: deque[float] = deque(maxlen=DURATION_SAMPLES)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def is_fresh(self, snapshot: Snapshot, now: Optional[datetime] = None) -> bool:
        """Whether a snapshot is within the expiration window."""
        return freshness.is_valid(
            snapshot.observation_time,
            self.expiration_window,
            now or self._clock(),
        )

    def is_updating(self, location: LocationKey) -> bool:
        return location.token in self._in_flight

    def in_flight(self) -> list[InFlightRecord]:
        """Copies of all in-flight records."""
        return [replace(record) for record in self._in_flight.values()]

    def writing_tokens(self) -> set[str]:
        """Tokens of snapshot directories currently being written."""
        return {r.snapshot_token for r in self._in_flight.values() if r.snapshot_token}

    def forget(self, location: LocationKey) -> None:
        """Drop the failure history and idle lock kept for a location."""
        token = location.token
        self._failures.pop(token, None)
        lock = self._locks.get(token)
        if lock is not None and not lock.locked() and token not in self._in_flight:
            del self._locks[token]

    def last_failure(self, location: LocationKey) -> Optional[FailureRecord]:
        """Most recent failure for a location, without marking it reported."""
        failure = self._failures.get(location.token)
        return replace(failure) if failure is not None else None

    def get_status(self, location: LocationKey) -> CacheStatus:
        """Compute the cache status for a location.

        Never blocks and never triggers a fetch. A recorded failure is
        reported by the first status query after it happens.
        """
        now = self._clock()
        status = CacheStatus(location=location)

        latest = self.store.find_latest(location)
        if latest is not None:
            status.exists = True
            status.observation_time = latest.observation_time
            status.is_valid = self.is_fresh(latest, now)
            status.expires_at = freshness.expires_at(
                latest.observation_time, self.expiration_window
            )

        record = self._in_flight.get(location.token)
        if record is not None:
            status.update_in_progress = True
            status.progress = replace(record)

        failure = self._failures.get(location.token)
        if failure is not None and not failure.reported:
            status.update_failed = True
            status.last_error = failure.error
            failure.reported = True

        status.next_update_time = freshness.estimate_next_update(
            status,
            self.check_interval,
            self._estimate_eta(record, now),
            now,
        )
        return status

    def _estimate_eta(self, record: Optional[InFlightRecord], now: datetime) -> timedelta:
        """Remaining time for an in-flight fetch, from recent durations."""
        if record is None:
            return self.update_eta
        if self._durations:
            expected = timedelta(seconds=sum(self._durations) / len(self._durations))
        else:
            expected = self.update_eta
        remaining = record.started_at + expected - now
        return max(remaining, MIN_ETA)

    # -------------------------------------------------------------------------
    # Triggers
    # -------------------------------------------------------------------------

    def _lock_for(self, location: LocationKey) -> asyncio.Lock:
        return self._locks.setdefault(location.token, asyncio.Lock())

    def _backing_off(self, location: LocationKey, now: datetime) -> bool:
        failure = self._failures.get(location.token)
        return (
            failure is not None
            and failure.store_failure
            and failure.consecutive >= STORE_FAILURE_THRESHOLD
            and now - failure.occurred_at < self.failure_backoff
        )

    async def trigger_update(self, location: LocationKey, force: bool = False) -> TriggerResult:
        """Start a background fetch for a location unless one is in flight.

        Returns immediately; the fetch runs as a background task.

        Args:
            location: Location to refresh
            force: Fetch even if the cache became valid before the fetch began

        Returns:
            STARTED if this call admitted a new fetch, ALREADY_IN_FLIGHT if one
            was running, BACKING_OFF after repeated store write failures
        """
        async with self._lock_for(location):
            now = self._clock()
            if location.token in self._in_flight:
                logger.debug(f"Update already in flight for {location}")
                return TriggerResult.ALREADY_IN_FLIGHT

            if self._backing_off(location, now):
                logger.warning(
                    f"Holding off update for {location} after repeated store failures"
                )
                return TriggerResult.BACKING_OFF

            record = InFlightRecord(location=location, started_at=now)
            self._in_flight[location.token] = record
            self._tasks[location.token] = asyncio.create_task(
                self._run_fetch(location, record, force),
                name=f"fetch-{location.token}",
            )

        logger.info(f"Update started for {location}")
        return TriggerResult.STARTED

    async def refresh_if_stale(
        self, location: LocationKey, force: bool = False
    ) -> tuple[Optional[Snapshot], Optional[TriggerResult]]:
        """Trigger a fetch if the latest snapshot is missing or stale.

        Returns:
            (latest snapshot or None, trigger result or None if still fresh)
        """
        latest = self.store.find_latest(location)
        if latest is not None and not force and self.is_fresh(latest):
            return latest, None
        return latest, await self.trigger_update(location, force=force)

    async def ensure_fresh(self, location: LocationKey) -> Optional[Snapshot]:
        """Return the best snapshot available now, refreshing in the background.

        A stale snapshot is returned as-is while a refresh runs; None means
        there is nothing to serve yet.
        """
        snapshot, _ = await self.refresh_if_stale(location)
        return snapshot

    def report_progress(self, location: LocationKey, phase: str, done: int, total: int) -> None:
        """Update the in-flight record for a location."""
        record = self._in_flight.get(location.token)
        if record is None:
            return
        record.phase = phase
        record.frames_done = done
        record.frames_total = total

    async def wait_for(self, location: LocationKey) -> None:
        """Wait until the in-flight fetch for a location (if any) finishes."""
        task = self._tasks.get(location.token)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def drain(self) -> None:
        """Wait for every in-flight fetch to finish."""
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel in-flight fetches at process shutdown."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # -------------------------------------------------------------------------
    # Fetch routine
    # -------------------------------------------------------------------------

    async def _run_fetch(self, location: LocationKey, record: InFlightRecord, force: bool) -> None:
        token = location.token
        handle: Optional[SnapshotHandle] = None
        started = time.monotonic()
        try:
            if not force:
                latest = self.store.find_latest(location)
                if latest is not None and self.is_fresh(latest):
                    logger.info(f"Cache for {location} became valid before fetch, skipping")
                    self._failures.pop(token, None)
                    return

            handle = self.store.create(location, self._clock())
            record.snapshot_token = handle.token
            metadata = await self._fetch(location, record, handle)

            record.state = UpdateState.FINALIZING
            record.phase = "finalizing"
            self.store.finalize(handle, metadata)

            duration = time.monotonic() - started
            self._durations.append(duration)
            self._failures.pop(token, None)
            logger.info(
                f"Update complete for {location} "
                f"({len(handle.frames)} frames, {duration:.1f}s)"
            )

        except asyncio.CancelledError:
            logger.warning(f"Update cancelled for {location}")
            if handle is not None:
                self.store.discard(handle)
            raise

        except Exception as e:
            logger.error(f"Update failed for {location}: {e}")
            self._record_failure(location, e)
            if handle is not None:
                self.store.discard(handle)

        finally:
            self._in_flight.pop(token, None)
            self._tasks.pop(token, None)

    async def _fetch(self, location: LocationKey, record: InFlightRecord, handle: SnapshotHandle):
        last_offset: list[float] = []

        def on_frame(index: int, image_bytes: bytes, minutes_before_observation: float) -> None:
            if last_offset:
                previous = last_offset[-1]
                if minutes_before_observation == previous:
                    logger.warning(
                        f"Frame {index} for {location} repeats offset {previous} min"
                    )
                elif minutes_before_observation > previous:
                    logger.warning(
                        f"Frame {index} for {location} moves backwards in time "
                        f"({previous} -> {minutes_before_observation} min)"
                    )
            last_offset.append(minutes_before_observation)
            self.store.write_frame(handle, index, image_bytes, minutes_before_observation)
            record.frames_done = len(handle.frames)

        def on_progress(phase: str, done: int, total: int) -> None:
            self.report_progress(location, phase, done, total)

        try:
            metadata = await self.scraper.fetch(location, on_frame, on_progress)
        except CacheError:
            raise
        except Exception as e:
            raise FetchError(f"{type(e).__name__}: {e}") from e

        if not handle.frames:
            raise FetchError(f"Scraper returned no frames for {location}")
        return metadata

    def _record_failure(self, location: LocationKey, error: Exception) -> None:
        previous = self._failures.get(location.token)
        store_failure = isinstance(error, StoreWriteError)
        consecutive = 1
        if previous is not None and previous.store_failure == store_failure:
            consecutive = previous.consecutive + 1
        self._failures[location.token] = FailureRecord(
            error=str(error),
            error_type=type(error).__name__,
            occurred_at=self._clock(),
            consecutive=consecutive,
            store_failure=store_failure,
        )
