"""I/O utilities for cache paths and file operations."""

import os
from pathlib import Path

# Project root is 4 levels up from this file
_PROJECT_ROOT = Path(__file__).parent.parent.parent.parent


def get_cache_dir(name: str = "radar") -> Path:
    """Get standardized cache directory.

    Args:
        name: Cache sub-directory (only 'radar')

    Returns:
        Path to the cache directory (creates if doesn't exist)

    Example:
        >>> path = get_cache_dir("radar")
        >>> path
        PosixPath('.../bomradar/data/cache/radar')
    """
    valid_names = {"radar"}

    if name not in valid_names:
        raise ValueError(f"Invalid cache name: {name}. Must be one of {valid_names}")

    path = _PROJECT_ROOT / "data" / "cache" / name
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_project_root() -> Path:
    """Get the project root directory."""
    return _PROJECT_ROOT


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Write bytes to path via a temporary sibling and an atomic rename.

    The data is flushed and fsynced before the rename, so readers see either
    the previous file (or no file) or the complete new content.

    Raises:
        OSError: If any filesystem step fails. The temporary file is removed.
    """
    tmp_path = path.with_name(f"{path.name}.tmp")
    try:
        with open(tmp_path, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except OSError:
        tmp_path.unlink(missing_ok=True)
        raise
