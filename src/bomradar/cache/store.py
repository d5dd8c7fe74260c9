"""Filesystem snapshot store for radar frames.

Layout, one directory per snapshot::

    <cache_dir>/
        pomona_qld_20250101_000000/
            frame_00.png
            ...
            frame_06.png
            metadata.json
            .complete

A snapshot is visible to readers only once its ``.complete`` marker exists.
``finalize`` writes metadata.json first and the marker second, each through an
fsync + atomic rename. A crash at any point leaves a directory without the
marker, which ``purge_incomplete`` removes on the next startup.
"""

import json
import logging
import shutil
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterator, Optional

from bomradar.cache.codec import decode_token, encode_token, token_prefix
from bomradar.cache.models import (
    AvailableRange,
    Frame,
    LocationKey,
    MalformedToken,
    Snapshot,
    SnapshotExistsError,
    SnapshotHandle,
    SnapshotMetadata,
    StoreWriteError,
    as_utc,
    utcnow,
)
from bomradar.utils.io import atomic_write_bytes, get_cache_dir

logger = logging.getLogger(__name__)

METADATA_FILENAME = "metadata.json"
COMPLETE_MARKER = ".complete"
FRAME_FILENAME = "frame_{index:02d}.png"
METADATA_VERSION = 1


class CacheStore:
    """On-disk snapshot store.

    The store owns snapshot lifecycle: create, write frames, finalize, delete.
    Read errors are treated as "not found"; write errors raise StoreWriteError.

    Example:
        >>> store = CacheStore(Path("/tmp/radar"))
        >>> handle = store.create(LocationKey("Pomona", "QLD"), utcnow())
        >>> store.write_frame(handle, 0, png_bytes, minutes_before_observation=30)
        >>> snapshot = store.finalize(handle, metadata)
        >>> store.find_latest(LocationKey("Pomona", "QLD")) == snapshot
    """

    def __init__(
        self,
        cache_dir: Optional[Path] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize store.

        Args:
            cache_dir: Root directory for snapshots. Creates if doesn't exist.
            clock: Source of "now" for retention purges
        """
        self.cache_dir = Path(cache_dir) if cache_dir else get_cache_dir("radar")
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self._clock = clock

    # -------------------------------------------------------------------------
    # Directory scanning
    # -------------------------------------------------------------------------

    def _iter_dirs(self, location: Optional[LocationKey] = None) -> Iterator[Path]:
        """Snapshot directories, optionally limited to one location's prefix."""
        prefix = token_prefix(location) if location else ""
        try:
            entries = sorted(self.cache_dir.iterdir())
        except OSError as e:
            logger.warning(f"Could not list cache directory {self.cache_dir}: {e}")
            return
        for path in entries:
            if path.is_dir() and path.name.startswith(prefix):
                yield path

    @staticmethod
    def is_complete(path: Path) -> bool:
        """Whether a snapshot directory carries the completion marker."""
        return (path / COMPLETE_MARKER).is_file()

    def _complete_snapshots(
        self, location: LocationKey
    ) -> list[tuple[datetime, Path]]:
        """Decoded (capture timestamp, path) pairs of complete snapshots.

        Directories whose token doesn't decode are skipped with a warning.
        Directories that share the prefix but belong to a different location
        (e.g. ``pomona_qld_x``) are skipped silently.
        """
        found = []
        for path in self._iter_dirs(location):
            if not self.is_complete(path):
                continue
            try:
                decoded_location, captured = decode_token(path.name)
            except MalformedToken as e:
                logger.warning(f"Skipping snapshot with malformed token: {e}")
                continue
            if decoded_location != location:
                continue
            found.append((captured, path))
        found.sort(key=lambda item: item[0])
        return found

    def _load(
        self, path: Path, location: LocationKey, captured: datetime
    ) -> Optional[Snapshot]:
        """Load a complete snapshot's metadata record, or None if unreadable."""
        try:
            payload = json.loads((path / METADATA_FILENAME).read_text())
            metadata = SnapshotMetadata.from_dict(payload["metadata"])
            frames = [
                Frame(
                    index=f["index"],
                    minutes_before_observation=f["minutes_before_observation"],
                    image_path=path / f["filename"],
                    observation_time=metadata.observation_time,
                )
                for f in payload["frames"]
            ]
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Failed to load snapshot metadata from {path}: {e}")
            return None

        frames.sort(key=lambda f: f.index)
        return Snapshot(
            location=location,
            capture_timestamp=captured,
            path=path,
            metadata=metadata,
            frames=frames,
            complete=True,
        )

    # -------------------------------------------------------------------------
    # Read operations
    # -------------------------------------------------------------------------

    def find_latest(self, location: LocationKey) -> Optional[Snapshot]:
        """Get the complete snapshot with the greatest capture timestamp.

        Falls back to directory modification time for snapshots whose token
        doesn't decode.

        Returns:
            Snapshot if one exists, None otherwise
        """
        candidates: list[tuple[datetime, Path]] = []
        for path in self._iter_dirs(location):
            if not self.is_complete(path):
                continue
            try:
                decoded_location, captured = decode_token(path.name)
            except MalformedToken as e:
                try:
                    mtime = path.stat().st_mtime
                except OSError:
                    continue
                captured = datetime.fromtimestamp(mtime, tz=timezone.utc)
                logger.warning(
                    f"Using modification time for {path.name} ({e}); "
                    f"snapshot ordering is degraded"
                )
            else:
                if decoded_location != location:
                    continue
            candidates.append((captured, path))

        for captured, path in sorted(candidates, key=lambda item: item[0], reverse=True):
            snapshot = self._load(path, location, captured)
            if snapshot is not None:
                logger.debug(f"Cache HIT for {location}: {path.name}")
                return snapshot

        logger.debug(f"Cache MISS for {location}")
        return None

    def find_in_range(
        self,
        location: LocationKey,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[Snapshot]:
        """Get complete snapshots captured within [start, end).

        Args:
            location: Location to search
            start: Inclusive lower bound, or None for unbounded
            end: Exclusive upper bound, or None for unbounded

        Returns:
            Snapshots in ascending capture order
        """
        start = as_utc(start) if start is not None else None
        end = as_utc(end) if end is not None else None

        snapshots = []
        for captured, path in self._complete_snapshots(location):
            if start is not None and captured < start:
                continue
            if end is not None and captured >= end:
                continue
            snapshot = self._load(path, location, captured)
            if snapshot is not None:
                snapshots.append(snapshot)
        return snapshots

    def get_snapshot(self, location: LocationKey, token: str) -> Optional[Snapshot]:
        """Get one complete snapshot of a location by its token."""
        for captured, path in self._complete_snapshots(location):
            if path.name == token:
                return self._load(path, location, captured)
        return None

    def available_range(self, location: LocationKey) -> Optional[AvailableRange]:
        """Oldest/newest capture timestamps of complete snapshots, or None."""
        snapshots = self._complete_snapshots(location)
        if not snapshots:
            return None
        return AvailableRange(
            oldest=snapshots[0][0],
            newest=snapshots[-1][0],
            count=len(snapshots),
        )

    def list_locations(self) -> list[LocationKey]:
        """Distinct locations that have at least one complete snapshot."""
        locations: dict[str, LocationKey] = {}
        for path in self._iter_dirs():
            if not self.is_complete(path):
                continue
            try:
                location, _ = decode_token(path.name)
            except MalformedToken:
                continue
            locations.setdefault(location.token, location)
        return list(locations.values())

    # -------------------------------------------------------------------------
    # Write operations
    # -------------------------------------------------------------------------

    def create(self, location: LocationKey, capture_timestamp: datetime) -> SnapshotHandle:
        """Allocate a fresh, incomplete snapshot directory.

        Raises:
            SnapshotExistsError: If a directory with the same token exists
            StoreWriteError: If the directory can't be created
        """
        capture_timestamp = as_utc(capture_timestamp).replace(microsecond=0)
        path = self.cache_dir / encode_token(location, capture_timestamp)
        try:
            path.mkdir(exist_ok=False)
        except FileExistsError as e:
            raise SnapshotExistsError(f"Snapshot already exists: {path.name}") from e
        except OSError as e:
            raise StoreWriteError(f"Failed to create snapshot {path.name}: {e}") from e

        logger.debug(f"Created snapshot directory {path.name}")
        return SnapshotHandle(location=location, capture_timestamp=capture_timestamp, path=path)

    def write_frame(
        self,
        handle: SnapshotHandle,
        index: int,
        image_bytes: bytes,
        minutes_before_observation: float = 0.0,
    ) -> Path:
        """Persist one frame image. Does not affect completeness.

        Raises:
            StoreWriteError: If the image can't be written
        """
        filename = FRAME_FILENAME.format(index=index)
        frame_path = handle.path / filename
        try:
            atomic_write_bytes(frame_path, image_bytes)
        except OSError as e:
            raise StoreWriteError(f"Failed to write frame {index} of {handle.token}: {e}") from e

        handle.frames.append((index, float(minutes_before_observation), filename))
        return frame_path

    def finalize(self, handle: SnapshotHandle, metadata: SnapshotMetadata) -> Snapshot:
        """Write the metadata record, then the completion marker.

        Raises:
            StoreWriteError: If either write fails. The marker is never
                written unless metadata.json is durably in place.
        """
        frames = sorted(handle.frames)
        payload = {
            "version": METADATA_VERSION,
            "location": {"name": handle.location.name, "region": handle.location.region},
            "capture_timestamp": handle.capture_timestamp.isoformat(),
            "metadata": metadata.to_dict(),
            "frames": [
                {"index": index, "minutes_before_observation": minutes, "filename": filename}
                for index, minutes, filename in frames
            ],
        }
        try:
            atomic_write_bytes(
                handle.path / METADATA_FILENAME,
                json.dumps(payload, indent=2).encode("utf-8"),
            )
            atomic_write_bytes(
                handle.path / COMPLETE_MARKER,
                utcnow().isoformat().encode("utf-8"),
            )
        except OSError as e:
            raise StoreWriteError(f"Failed to finalize snapshot {handle.token}: {e}") from e

        logger.info(
            f"Finalized snapshot {handle.token} "
            f"({len(frames)} frames, observation_time={metadata.observation_time})"
        )
        return Snapshot(
            location=handle.location,
            capture_timestamp=handle.capture_timestamp,
            path=handle.path,
            metadata=metadata,
            frames=[
                Frame(
                    index=index,
                    minutes_before_observation=minutes,
                    image_path=handle.path / filename,
                    observation_time=metadata.observation_time,
                )
                for index, minutes, filename in frames
            ],
            complete=True,
        )

    def discard(self, handle: SnapshotHandle) -> bool:
        """Remove an incomplete snapshot after a failed fetch.

        Best effort: anything left behind is removed by purge_incomplete.
        """
        if self.is_complete(handle.path):
            return False
        return self._remove(handle.path)

    @staticmethod
    def _last_modified(path: Path) -> Optional[datetime]:
        """Latest modification time of a directory and its files."""
        try:
            stamps = [path.stat().st_mtime]
            stamps.extend(child.stat().st_mtime for child in path.iterdir())
        except OSError:
            return None
        return datetime.fromtimestamp(max(stamps), tz=timezone.utc)

    def _remove(self, path: Path) -> bool:
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning(f"Failed to delete snapshot {path.name}: {e}")
            return False
        return True

    def delete(
        self,
        location: LocationKey,
        capture_timestamp: Optional[datetime] = None,
        keep: Optional[set[str]] = None,
    ) -> int:
        """Delete snapshots for a location.

        Args:
            location: Location whose snapshots to delete
            capture_timestamp: Delete only this snapshot. All if None.
            keep: Tokens to leave alone (snapshots currently being written)

        Returns:
            Number of snapshot directories deleted
        """
        target = encode_token(location, capture_timestamp) if capture_timestamp else None
        keep = keep or set()
        deleted = 0
        for path in list(self._iter_dirs(location)):
            if target is not None and path.name != target:
                continue
            if path.name in keep:
                logger.debug(f"Keeping snapshot being written: {path.name}")
                continue
            try:
                decoded_location, _ = decode_token(path.name)
            except MalformedToken:
                continue
            if decoded_location != location:
                continue
            if self._remove(path):
                logger.info(f"Deleted cached snapshot: {path.name}")
                deleted += 1

        if deleted:
            logger.info(f"Deleted {deleted} cached snapshots for {location}")
        else:
            logger.debug(f"No cached snapshots found to delete for {location}")
        return deleted

    def purge_incomplete(
        self,
        keep: Optional[set[str]] = None,
        older_than: Optional[timedelta] = None,
    ) -> int:
        """Delete snapshot directories lacking the completion marker.

        Run once at startup, before serving requests, to clear wreckage left
        by fetches interrupted by a crash. Outside startup, pass older_than so
        directories another process is still writing are left alone.

        Args:
            keep: Tokens to leave alone (snapshots currently being written)
            older_than: Only delete directories not modified within this period

        Returns:
            Number of directories deleted
        """
        keep = keep or set()
        cutoff = self._clock() - older_than if older_than is not None else None
        purged = 0
        for path in list(self._iter_dirs()):
            if path.name in keep or self.is_complete(path):
                continue
            if cutoff is not None:
                modified = self._last_modified(path)
                if modified is None or modified > cutoff:
                    logger.debug(f"Keeping recently written snapshot: {path.name}")
                    continue
            if self._remove(path):
                logger.info(f"Purged incomplete snapshot: {path.name}")
                purged += 1

        logger.info(f"Purged {purged} incomplete snapshots")
        return purged

    def purge_older_than(
        self,
        horizon: timedelta,
        location: Optional[LocationKey] = None,
    ) -> int:
        """Delete complete snapshots captured before ``now - horizon``.

        Args:
            horizon: Retention period
            location: Limit to one location. All locations if None.

        Returns:
            Number of snapshots deleted
        """
        cutoff = self._clock() - horizon
        purged = 0
        for path in list(self._iter_dirs(location)):
            if not self.is_complete(path):
                continue
            try:
                decoded_location, captured = decode_token(path.name)
            except MalformedToken:
                continue
            if location is not None and decoded_location != location:
                continue
            if captured < cutoff and self._remove(path):
                purged += 1

        logger.info(f"Cleaned up {purged} snapshots older than {cutoff.isoformat()}")
        return purged
