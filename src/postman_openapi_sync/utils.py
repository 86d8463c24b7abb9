"""
Utility functions for file system operations and snapshot naming.

This module provides helper functions for:
- Ensuring directory creation with proper error handling
- Writing files atomically so readers never observe partial content
- Formatting and parsing the timestamps embedded in snapshot filenames
- Validating and parsing file extensions
"""

from __future__ import annotations

import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional
from uuid import uuid4

# ISO-8601 with colons and periods replaced by hyphens, e.g. 2024-05-01T10-20-30-123456Z
TIMESTAMP_FORMAT = "%Y-%m-%dT%H-%M-%S-%fZ"
TIMESTAMP_PATTERN = re.compile(r"(\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2}-\d{1,6}Z)")


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    This is a safe idempotent operation that won't fail if the directory
    already exists.

    Args:
        path: The directory path to create

    Returns:
        The same path object for chaining

    Raises:
        OSError: If directory creation fails due to permissions or other I/O errors
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def scratch_path_for(path: Path, tag: str = "tmp") -> Path:
    """Return a unique sibling path used for staging writes to ``path``."""
    return path.with_name(f".{path.name}.{tag}.{uuid4().hex}")


def atomic_write_bytes(path: Path, content: bytes) -> Path:
    """
    Write ``content`` to ``path`` through a temporary sibling and rename it into place.

    The rename is atomic on POSIX filesystems, so a concurrent reader sees
    either the previous file or the complete new one.

    Args:
        path: Destination file
        content: Bytes to persist

    Returns:
        The destination path

    Raises:
        OSError: If the temporary file cannot be written or renamed
    """
    ensure_directory(path.parent)
    tmp = scratch_path_for(path)
    try:
        with tmp.open("wb") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        tmp.replace(path)
    except Exception:
        tmp.unlink(missing_ok=True)
        raise
    return path


def format_timestamp(moment: datetime) -> str:
    """
    Format a datetime for use inside a snapshot filename.

    Example:
        >>> format_timestamp(datetime(2024, 5, 1, 10, 20, 30, 123456, tzinfo=timezone.utc))
        "2024-05-01T10-20-30-123456Z"
    """
    return moment.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(filename: str) -> Optional[datetime]:
    """
    Extract the creation time embedded in a snapshot filename.

    Accepts millisecond precision as well as microsecond precision.

    Returns:
        A timezone-aware UTC datetime, or None when the name carries no timestamp
    """
    match = TIMESTAMP_PATTERN.search(filename)
    if not match:
        return None
    try:
        parsed = datetime.strptime(match.group(1), TIMESTAMP_FORMAT)
    except ValueError:
        return None
    return parsed.replace(tzinfo=timezone.utc)


def split_extension(filename: str) -> tuple[str, str]:
    """
    Split a filename into stem and extension components.

    Example:
        >>> split_extension("collection.json")
        ("collection", ".json")
    """
    path = Path(filename)
    return path.stem, path.suffix


def has_allowed_extension(filename: str, allowed: Iterable[str]) -> bool:
    """Return True when ``filename`` ends with one of the ``allowed`` extensions."""
    _, suffix = split_extension(filename)
    return suffix.lower() in {ext.lower() for ext in allowed}
