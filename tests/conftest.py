"""Shared pytest fixtures for bomradar tests.

Test Tiers:
- unit: Fast tests with fixtures, no network (default)
- integration: Tests against a real on-disk store or the HTTP stack
- live: Real browser tests against the BOM website, slow, requires network

Run live tests with: pytest -m live --run-live
"""

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional, Sequence, Union

import pytest

from bomradar.cache.models import LocationKey, Snapshot, SnapshotMetadata
from bomradar.cache.store import CacheStore
from bomradar.scraping.base import BaseScraper

# Smallest valid PNG (1x1 transparent pixel)
PNG_BYTES = bytes.fromhex(
    "89504e470d0a1a0a0000000d4948445200000001000000010806000000"
    "1f15c4890000000d49444154789c6360000002000154a24f5d0000000049454e44ae426082"
)

POMONA = LocationKey("Pomona", "QLD")
BASE_TIME = datetime(2025, 1, 1, tzinfo=timezone.utc)


def pytest_addoption(parser):
    """Add command line options for test configuration."""
    parser.addoption(
        "--run-live",
        action="store_true",
        default=False,
        help="Run live browser tests (slow, requires network)",
    )


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: fast unit tests using fixtures")
    config.addinivalue_line("markers", "integration: tests against a real store or HTTP stack")
    config.addinivalue_line("markers", "live: real browser tests (slow, requires network)")


def pytest_collection_modifyitems(config, items):
    """Skip live tests unless --run-live is specified."""
    if config.getoption("--run-live"):
        return

    skip_live = pytest.mark.skip(reason="need --run-live option to run")
    for item in items:
        if "live" in item.keywords:
            item.add_marker(skip_live)


class FakeClock:
    """Settable clock returning aware UTC datetimes."""

    def __init__(self, now: datetime = BASE_TIME):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeScraper(BaseScraper):
    """In-memory scraper following the scraper contract.

    Attributes:
        calls: Locations passed to fetch, in call order
        offsets: minutes_before_observation for each frame, oldest first
        observation_time: Fixed observation time, or a callable returning one
        error: Raised instead of returning frames, if set
        fail_after: Raise after emitting this many frames
        gate: Event the fetch waits on before capturing
    """

    def __init__(
        self,
        offsets: Sequence[float] = (30, 20, 10, 0),
        observation_time: Union[datetime, Callable[[], datetime], None] = None,
        error: Optional[Exception] = None,
        fail_after: Optional[int] = None,
    ):
        self.offsets = list(offsets)
        self.observation_time = observation_time
        self.error = error
        self.fail_after = fail_after
        self.gate: Optional[asyncio.Event] = None
        self.calls: list[LocationKey] = []
        self.closed = False

    def _observation_time(self) -> datetime:
        if callable(self.observation_time):
            return self.observation_time()
        return self.observation_time or datetime.now(timezone.utc)

    async def fetch(self, location, on_frame, on_progress) -> SnapshotMetadata:
        self.calls.append(location)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None and self.fail_after is None:
            raise self.error

        total = len(self.offsets)
        for index, minutes in enumerate(self.offsets):
            if self.fail_after is not None and index == self.fail_after:
                raise self.error or RuntimeError("capture interrupted")
            on_progress("capturing", index, total)
            on_frame(index, PNG_BYTES, minutes)
            await asyncio.sleep(0)

        observed = self._observation_time()
        return SnapshotMetadata(
            observation_time=observed,
            forecast_time=observed - timedelta(minutes=30),
            station_name="Gympie",
            station_distance="30 km",
        )

    async def close(self) -> None:
        self.closed = True


def make_snapshot(
    store: CacheStore,
    location: LocationKey,
    captured: datetime,
    observation_time: Optional[datetime] = None,
    offsets: Sequence[float] = (30, 20, 10, 0),
) -> Snapshot:
    """Write and finalize a snapshot directly through the store."""
    observed = observation_time or captured
    handle = store.create(location, captured)
    for index, minutes in enumerate(offsets):
        store.write_frame(handle, index, PNG_BYTES, minutes)
    return store.finalize(
        handle,
        SnapshotMetadata(
            observation_time=observed,
            forecast_time=observed - timedelta(minutes=30),
            station_name="Gympie",
            station_distance="30 km",
        ),
    )


@pytest.fixture
def cache_dir(tmp_path) -> Path:
    """Temporary snapshot directory."""
    path = tmp_path / "radar"
    path.mkdir()
    return path


@pytest.fixture
def clock() -> FakeClock:
    """Clock fixed at 2025-01-01T00:00:00Z."""
    return FakeClock()


@pytest.fixture
def store(cache_dir, clock) -> CacheStore:
    """CacheStore over a temporary directory."""
    return CacheStore(cache_dir, clock=clock)


@pytest.fixture
def location() -> LocationKey:
    return POMONA
