"""
Utility functions for file system operations and string handling.

This module provides helper functions for:
- Sanitizing user-provided strings for safe filesystem and archive names
- Ensuring directory creation with proper error handling
- Mapping file names to MIME types
- Timestamps and identifiers shared by the store and the job manager
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Optional
from uuid import uuid4

# Pattern to match characters that are not safe for filesystem paths
# Allows: alphanumeric characters, dots, underscores, spaces and hyphens
SANITIZE_PATTERN = re.compile(r"[^a-zA-Z0-9._ -]+")

CONTENT_TYPES = {
    ".otf": "font/otf",
    ".ttf": "font/ttf",
    ".pdf": "application/pdf",
    ".tex": "application/x-tex",
    ".zip": "application/zip",
    ".json": "application/json",
}


def sanitize_label(label: str, fallback: str) -> str:
    """
    Generate a filesystem-safe label from user input.

    Args:
        label: The original label string to sanitize
        fallback: Default value to return if sanitization results in an empty string

    Returns:
        A filesystem-safe label or the fallback value

    Example:
        >>> sanitize_label("Offer Letter!", "template")
        "Offer Letter"
        >>> sanitize_label("@#$", "template")
        "template"
    """
    cleaned = SANITIZE_PATTERN.sub("", label.strip())
    cleaned = cleaned.strip("-_. ")
    return cleaned or fallback


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    Args:
        path: The directory path to create

    Returns:
        The same path object for chaining

    Raises:
        OSError: If directory creation fails due to permissions or other I/O errors
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def basename(name: str) -> str:
    """Last component of an archive path (archive paths always use ``/``)."""
    return PurePosixPath(name).name


def rootname(name: str) -> str:
    """
    Strip directories and the final extension from a path.

    Example:
        >>> rootname("theme/Roboto-Regular.ttf")
        "Roboto-Regular"
    """
    return PurePosixPath(name).stem


def content_type_for(filename: str) -> str:
    return CONTENT_TYPES.get(PurePosixPath(filename).suffix.lower(), "application/octet-stream")


def new_id() -> str:
    return str(uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def deserialize_datetime(s: Optional[str]) -> Optional[datetime]:
    if not s:
        return None
    return datetime.fromisoformat(s)
