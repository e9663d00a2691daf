"""
Utility functions for file system operations and upload naming.

This module provides helper functions for:
- Deriving a blueprint's display name from the uploaded filename
- Building object-store keys under a blueprint's key prefix
- Ensuring directory creation for local storage and the database
- Guessing the declared MIME type of an upload
"""

from __future__ import annotations

import mimetypes
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

GENERIC_MIME_TYPES = {"", "application/octet-stream"}


def display_name_from_filename(filename: Optional[str], fallback: str = "blueprint") -> str:
    """
    Derive a blueprint's display name from an uploaded filename.

    Args:
        filename: The client-provided filename (may include a path)
        fallback: Name used when the filename has no usable stem

    Returns:
        The filename stem with surrounding whitespace removed

    Example:
        >>> display_name_from_filename("chicken.pdf")
        "chicken"
        >>> display_name_from_filename("plans/1-1-0 maison.PDF")
        "1-1-0 maison"
    """
    if not filename:
        return fallback
    stem, _ = split_extension(filename.replace("\\", "/"))
    return stem.strip() or fallback


def split_extension(filename: str) -> tuple[str, str]:
    """
    Split a filename into stem and extension components.

    Args:
        filename: The filename to split (can include path)

    Returns:
        A tuple of (stem, extension) where extension includes the dot

    Example:
        >>> split_extension("document.pdf")
        ("document", ".pdf")
        >>> split_extension("/path/to/file.tar.gz")
        ("file.tar", ".gz")
    """
    path = Path(filename)
    return path.stem, path.suffix


def declared_mime_type(content_type: Optional[str], filename: Optional[str]) -> str:
    """
    Resolve the MIME type an upload claims to be.

    The client's content type wins unless it is missing or generic, in which
    case the type is guessed from the filename extension.
    """
    declared = (content_type or "").split(";")[0].strip().lower()
    if declared not in GENERIC_MIME_TYPES:
        return declared
    guessed, _ = mimetypes.guess_type(filename or "")
    return guessed or declared


def object_key(key_prefix: str, name: str | int) -> str:
    """Join a key prefix and an object name with a single slash."""
    return f"{key_prefix.rstrip('/')}/{name}"


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    Args:
        path: The directory path to create

    Returns:
        The same path object for chaining
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
