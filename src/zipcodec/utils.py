"""Utility functions for zipcodec."""

from __future__ import annotations

import re
import time
from datetime import datetime

from .exceptions import UnsafePathError

_DRIVE_LETTER = re.compile(r"^[a-zA-Z]:")


def format_size(size: int, binary: bool = False) -> str:
    """
    Format a size in bytes to a human-readable string.

    Args:
        size: Size in bytes.
        binary: If True, use binary units (KiB, MiB). If False, use decimal (KB, MB).

    Returns:
        Human-readable size string.

    Examples:
        >>> format_size(1500000)
        '1.50 MB'
        >>> format_size(1572864, binary=True)
        '1.50 MiB'
    """
    if binary:
        units = ["B", "KiB", "MiB", "GiB", "TiB"]
        divisor = 1024.0
    else:
        units = ["B", "KB", "MB", "GB", "TB"]
        divisor = 1000.0

    value = float(size)
    for unit in units[:-1]:
        if abs(value) < divisor:
            return f"{value:.2f} {unit}" if value != int(value) else f"{int(value)} {unit}"
        value /= divisor

    return f"{value:.2f} {units[-1]}"


def dos_datetime(timestamp: float | datetime | None = None) -> tuple[int, int]:
    """
    Convert a Unix timestamp or datetime to DOS date and time format.

    Args:
        timestamp: Unix timestamp or local datetime. If None, uses current time.

    Returns:
        Tuple of (dos_time, dos_date) as 16-bit integers.
    """
    if timestamp is None:
        timestamp = time.time()
    if isinstance(timestamp, datetime):
        timestamp = timestamp.timestamp()

    t = time.localtime(timestamp)

    # DOS time: bits 0-4 = seconds/2, bits 5-10 = minute, bits 11-15 = hour
    dos_time = (t.tm_sec // 2) | ((t.tm_min & 0x3F) << 5) | ((t.tm_hour & 0x1F) << 11)

    # DOS date: bits 0-4 = day, bits 5-8 = month, bits 9-15 = year - 1980
    dos_date = (t.tm_mday & 0x1F) | ((t.tm_mon & 0xF) << 5) | (((t.tm_year - 1980) & 0x7F) << 9)

    return dos_time, dos_date


def dos_datetime_to_datetime(dos_date: int, dos_time: int) -> datetime:
    """Convert DOS date and time fields to a naive local datetime."""
    day = dos_date & 0x1F
    month = (dos_date >> 5) & 0xF
    year = ((dos_date >> 9) & 0x7F) + 1980

    second = (dos_time & 0x1F) * 2
    minute = (dos_time >> 5) & 0x3F
    hour = (dos_time >> 11) & 0x1F

    # Zeroed fields are common in the wild; clamp them into range.
    return datetime(
        year,
        min(max(month, 1), 12),
        max(day, 1),
        min(hour, 23),
        min(minute, 59),
        min(second, 59),
    )


def validate_metadata_path(path: str, is_directory: bool) -> str:
    """
    Validate an archive member name supplied by a caller.

    Unsafe names are rejected, never rewritten into something else.

    - Empty names, backslashes, absolute paths (leading slash or drive
      letter) and ``..`` segments are rejected
    - Directory names get a trailing slash
    - File names must not end with a slash

    Args:
        path: Archive name.
        is_directory: Whether the entry is a directory.

    Returns:
        The validated archive name.

    Raises:
        UnsafePathError: If the name is not acceptable.
    """
    if path == "":
        raise UnsafePathError(path, "empty metadata path")
    if "\x00" in path:
        raise UnsafePathError(path, "null byte in path")
    if "\\" in path:
        raise UnsafePathError(path, "backslash in path")
    if _DRIVE_LETTER.match(path) or path.startswith("/"):
        raise UnsafePathError(path, "absolute path")
    if ".." in path.split("/"):
        raise UnsafePathError(path, "invalid relative path")

    looks_like_directory = path.endswith("/")
    if is_directory:
        if not looks_like_directory:
            path += "/"
    elif looks_like_directory:
        raise UnsafePathError(path, "file path cannot end with '/'")

    # Validate archive name length (ZIP format limit)
    if len(path.encode("utf-8")) > 0xFFFF:
        raise ValueError(
            f"Archive name too long ({len(path.encode('utf-8'))} bytes, max 65535)"
        )

    return path


def validate_file_name(name: str) -> str | None:
    """Return why a decoded entry name is unsafe, or None if it is fine."""
    if "\\" in name:
        return f"invalid characters in fileName: {name}"
    if _DRIVE_LETTER.match(name) or name.startswith("/"):
        return f"absolute path: {name}"
    if ".." in name.split("/"):
        return f"invalid relative path: {name}"
    return None
