"""Shared utility functions."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

ILLEGAL_FILENAME_CHARS = '<>:"/\\|?*'


def format_size(size_bytes: int) -> str:
    """Format byte count to human-readable string."""
    if size_bytes < 1024:
        return f"{size_bytes} B"
    elif size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    elif size_bytes < 1024 * 1024 * 1024:
        return f"{size_bytes / (1024 * 1024):.1f} MB"
    else:
        return f"{size_bytes / (1024 * 1024 * 1024):.2f} GB"


def sanitize_filename(name: str) -> str:
    """Remove or replace illegal filename characters."""
    for ch in ILLEGAL_FILENAME_CHARS:
        name = name.replace(ch, "_")
    name = name.replace("\n", " ").replace("\r", "").strip()
    # Collapse multiple underscores / spaces
    while "  " in name:
        name = name.replace("  ", " ")
    while "__" in name:
        name = name.replace("__", "_")
    return name.strip(". ")


def format_time(value: datetime | None) -> str:
    """Local-time label for CLI output."""
    if value is None:
        return "-"
    return value.astimezone().strftime("%Y-%m-%d %H:%M:%S")


def unique_path(path: Path) -> Path:
    """Return ``path`` or ``<stem>_<n><suffix>`` if it already exists."""
    if not path.exists():
        return path
    n = 1
    while True:
        candidate = path.with_name(f"{path.stem}_{n}{path.suffix}")
        if not candidate.exists():
            return candidate
        n += 1
