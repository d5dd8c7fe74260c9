"""Background refresh for the radar cache.

Two periodic drivers run inside the API process:

- BackgroundRefreshLoop: every check interval (aligned to the hour), makes
  sure every tracked location has a fresh snapshot. Clears incomplete
  snapshots once before its first tick.
- CacheCleanupSweeper: every cleanup interval, deletes snapshots older than
  the retention horizon.

The same refresh pass can be run once from the command line:

    python -m bomradar.cache.refresh                        # Refresh tracked locations
    python -m bomradar.cache.refresh --location Pomona,QLD  # Refresh one location
    python -m bomradar.cache.refresh --status               # Show cache status
    python -m bomradar.cache.refresh --cleanup              # Apply retention

The command line refresh never purges incomplete snapshots on its own, so it
can run from cron next to a live API server.
"""

import argparse
import asyncio
import logging
import sys
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from bomradar.cache import freshness
from bomradar.cache.coordinator import UpdateCoordinator
from bomradar.cache.models import LocationKey, TriggerResult, utcnow
from bomradar.cache.store import CacheStore

logger = logging.getLogger(__name__)

# Incomplete snapshots modified more recently than this may still be written
INCOMPLETE_GRACE = timedelta(minutes=10)


@dataclass
class RefreshResult:
    """Result of a refresh pass."""

    total: int
    success: int
    failed: int
    skipped: int
    duration_ms: int

    @property
    def success_rate(self) -> float:
        """Percentage of successful refreshes."""
        if self.total == 0:
            return 0.0
        return (self.success / self.total) * 100

    def __str__(self) -> str:
        return (
            f"Refresh complete: {self.success}/{self.total} successful, "
            f"{self.failed} failed, {self.skipped} skipped "
            f"({self.duration_ms}ms)"
        )


class BackgroundRefreshLoop:
    """Keeps tracked locations fresh on a fixed tick.

    Attributes:
        coordinator: Coordinator that admits fetches
        store: Snapshot store (for startup recovery and discovery)
        check_interval: Tick length; ticks are aligned to the hour
    """

    def __init__(
        self,
        coordinator: UpdateCoordinator,
        store: CacheStore,
        check_interval: timedelta = freshness.DEFAULT_CHECK_INTERVAL,
        locations: Optional[Iterable[LocationKey]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.coordinator = coordinator
        self.store = store
        self.check_interval = check_interval
        self._clock = clock
        self._tracked: dict[str, LocationKey] = {}
        self._recovered = False
        for location in locations or []:
            self.track(location)

    def track(self, location: LocationKey) -> None:
        """Add a location to the refresh set (no-op if already tracked)."""
        if location.token not in self._tracked:
            self._tracked[location.token] = location
            logger.info(f"Tracking {location} for background refresh")

    def untrack(self, location: LocationKey) -> None:
        if self._tracked.pop(location.token, None) is not None:
            logger.info(f"Stopped tracking {location}")

    @property
    def tracked(self) -> list[LocationKey]:
        return list(self._tracked.values())

    def recover(self) -> int:
        """Purge incomplete snapshots and discover cached locations.

        Runs once; later calls return 0 without touching the store.
        """
        if self._recovered:
            return 0
        self._recovered = True
        purged = self.store.purge_incomplete()
        self.discover()
        return purged

    def discover(self) -> None:
        """Track every location with a complete snapshot on disk.

        Leaves incomplete snapshots alone, so it is safe while another
        process is writing to the same cache directory.
        """
        for location in self.store.list_locations():
            self.track(location)

    async def refresh_once(self, force: bool = False, wait: bool = False) -> RefreshResult:
        """Run one refresh pass over all tracked locations.

        A failure for one location never affects the others.

        Args:
            force: Fetch even when the latest snapshot is fresh
            wait: Wait for started fetches and count their outcome. When
                False a started fetch counts as a success.

        Returns:
            RefreshResult with counts for this pass
        """
        locations = self.tracked
        start_time = time.time()

        total = len(locations)
        success = 0
        failed = 0
        skipped = 0

        logger.info(f"Starting radar refresh for {total} locations...")

        for i, location in enumerate(locations, 1):
            try:
                before = self.coordinator.last_failure(location)
                latest, outcome = await self.coordinator.refresh_if_stale(location, force=force)

                if outcome is None:
                    logger.debug(
                        f"[{i}/{total}] {location}: cache fresh "
                        f"(observation_time={latest.observation_time})"
                    )
                    skipped += 1
                    continue

                if outcome == TriggerResult.ALREADY_IN_FLIGHT:
                    logger.debug(f"[{i}/{total}] {location}: update already in flight")
                    skipped += 1
                    continue

                if outcome == TriggerResult.BACKING_OFF:
                    logger.warning(f"[{i}/{total}] {location}: holding off after store failures")
                    failed += 1
                    continue

                if not wait:
                    logger.info(f"[{i}/{total}] {location}: update started")
                    success += 1
                    continue

                await self.coordinator.wait_for(location)
                after = self.coordinator.last_failure(location)
                if after is not None and (
                    before is None
                    or (after.occurred_at, after.consecutive)
                    != (before.occurred_at, before.consecutive)
                ):
                    logger.warning(f"[{i}/{total}] {location}: update failed - {after.error}")
                    failed += 1
                else:
                    logger.info(f"[{i}/{total}] {location}: updated")
                    success += 1

            except Exception as e:
                logger.error(f"[{i}/{total}] {location}: failed - {e}")
                failed += 1

        duration_ms = int((time.time() - start_time) * 1000)

        result = RefreshResult(
            total=total,
            success=success,
            failed=failed,
            skipped=skipped,
            duration_ms=duration_ms,
        )

        logger.info(str(result))
        return result

    async def run(self) -> None:
        """Recover, then refresh on every aligned tick until cancelled."""
        self.recover()
        await self.refresh_once()
        while True:
            now = self._clock()
            next_check = freshness.next_scheduled_check(now, self.check_interval)
            delay = (next_check - now).total_seconds()
            logger.debug(f"Next background refresh at {next_check.isoformat()}")
            await asyncio.sleep(max(delay, 0))
            await self.refresh_once()


class CacheCleanupSweeper:
    """Deletes snapshots older than the retention horizon on a coarse tick."""

    def __init__(
        self,
        store: CacheStore,
        retention_horizon: timedelta = timedelta(hours=24),
        interval: timedelta = timedelta(minutes=60),
    ):
        self.store = store
        self.retention_horizon = retention_horizon
        self.interval = interval

    def sweep_once(self) -> int:
        """Apply retention to every location. Returns snapshots deleted."""
        try:
            return self.store.purge_older_than(self.retention_horizon)
        except Exception as e:
            logger.error(f"Cache cleanup failed: {e}")
            return 0

    async def run(self) -> None:
        while True:
            await asyncio.sleep(self.interval.total_seconds())
            self.sweep_once()


def get_cache_status(
    store: CacheStore,
    locations: Optional[Iterable[LocationKey]] = None,
    expiration_window: timedelta = freshness.DEFAULT_EXPIRATION_WINDOW,
    now: Optional[datetime] = None,
) -> dict:
    """Get current cache status.

    Args:
        store: Snapshot store
        locations: Locations to report. Defaults to every cached location.
        expiration_window: Validity window after observation
        now: Reference time (defaults to current UTC)

    Returns:
        Dict with cache directory and per-location status
    """
    now = now or utcnow()
    if locations is None:
        locations = store.list_locations()

    location_status = []
    for location in locations:
        latest = store.find_latest(location)
        available = store.available_range(location)
        location_status.append({
            "name": location.name,
            "region": location.region,
            "cached": latest is not None,
            "valid": latest is not None
            and freshness.is_valid(latest.observation_time, expiration_window, now),
            "observation_time": latest.observation_time if latest else None,
            "snapshots": available.count if available else 0,
            "oldest": available.oldest if available else None,
        })

    return {
        "cache_dir": str(store.cache_dir),
        "total_locations": len(location_status),
        "valid": sum(1 for s in location_status if s["valid"]),
        "locations": location_status,
    }


def print_status(status: dict) -> None:
    """Print cache status in human-readable format."""
    print()
    print("=" * 60)
    print("BOM Radar Cache Status")
    print("=" * 60)
    print(f"Cache directory: {status['cache_dir']}")
    print(f"Locations: {status['total_locations']}")
    print(f"Valid: {status['valid']}/{status['total_locations']}")

    print()
    print("Location Status:")
    print("-" * 60)

    for loc in status["locations"]:
        label = f"{loc['name']}, {loc['region']}"
        state = "OK" if loc["valid"] else ("STALE" if loc["cached"] else "MISSING")
        observed = loc["observation_time"].isoformat() if loc["observation_time"] else "N/A"
        print(f"  {label:<25} {state:<8} snapshots:{loc['snapshots']:<4} observed:{observed}")

    print("=" * 60)


def _parse_location_arg(value: str) -> LocationKey:
    name, sep, region = value.rpartition(",")
    if not sep:
        raise argparse.ArgumentTypeError(f"Location must be NAME,REGION: {value!r}")
    try:
        return LocationKey.parse(name, region)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))


async def _refresh(args, settings) -> int:
    from bomradar.scraping.bom import BomScraper

    store = CacheStore(settings.cache_dir)
    scraper = BomScraper(
        frame_count=settings.frame_count,
        headless=settings.headless,
        timezone=settings.timezone,
    )
    coordinator = UpdateCoordinator(
        store,
        scraper,
        expiration_window=settings.expiration_window,
        check_interval=settings.check_interval,
        update_eta=settings.update_eta,
        failure_backoff=settings.failure_backoff,
    )
    loop = BackgroundRefreshLoop(
        coordinator,
        store,
        check_interval=settings.check_interval,
        locations=args.location or settings.tracked_locations,
    )
    try:
        if not args.location:
            loop.discover()
        result = await loop.refresh_once(force=args.force, wait=True)
        return 1 if result.failed > 0 else 0
    finally:
        await coordinator.shutdown()
        await scraper.close()


def main():
    """CLI entry point for radar cache refresh."""
    from bomradar.config import Settings

    parser = argparse.ArgumentParser(
        description="Refresh the BOM radar cache",
        epilog="""
Examples:
  python -m bomradar.cache.refresh                        # Refresh tracked locations
  python -m bomradar.cache.refresh --location Pomona,QLD  # One location
  python -m bomradar.cache.refresh --status               # Show status

Locations default to TRACKED_LOCATIONS plus every location already cached.
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--location",
        type=_parse_location_arg,
        action="append",
        help="Location to refresh as NAME,REGION (repeatable)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Force refresh even if cache is fresh",
    )
    parser.add_argument(
        "--status",
        action="store_true",
        help="Show current cache status",
    )
    parser.add_argument(
        "--purge-incomplete",
        action="store_true",
        help=(
            "Delete snapshots left incomplete by an interrupted fetch and untouched "
            "for 10 minutes. Only safe while the API server is stopped"
        ),
    )
    parser.add_argument(
        "--cleanup",
        action="store_true",
        help="Delete snapshots older than the retention horizon",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Suppress output except errors",
    )

    args = parser.parse_args()

    if args.quiet:
        level = logging.ERROR
    elif args.verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        settings = Settings.from_env()
        store = CacheStore(settings.cache_dir)

        if args.status:
            status = get_cache_status(
                store,
                locations=args.location,
                expiration_window=settings.expiration_window,
            )
            print_status(status)
            return 0

        if args.purge_incomplete or args.cleanup:
            if args.purge_incomplete:
                store.purge_incomplete(older_than=INCOMPLETE_GRACE)
            if args.cleanup:
                store.purge_older_than(settings.retention_horizon)
            return 0

        return asyncio.run(_refresh(args, settings))

    except Exception as e:
        logger.error(f"Refresh failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
