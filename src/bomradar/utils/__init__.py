"""Shared utilities for bomradar."""

from .io import atomic_write_bytes, get_cache_dir, get_project_root

__all__ = [
    "atomic_write_bytes",
    "get_cache_dir",
    "get_project_root",
]
