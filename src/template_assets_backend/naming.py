"""
Name-collision resolution for imported entities.

Importing the same archive twice must not fail on the unique name indexes,
so a taken name is bumped to the next free one: ``"Offer"`` becomes
``"Offer 2"``, ``"Offer 2"`` becomes ``"Offer 3"``.
"""

from __future__ import annotations

import logging
import re
import sqlite3

from .entities import CurrentUser, name_exists
from .errors import NameConflictError

logger = logging.getLogger(__name__)

TRAILING_NUMBER = re.compile(r"^(.*?)(\d+)$")

DEFAULT_MAX_ATTEMPTS = 1000


def increment_name(name: str) -> str:
    """
    Next candidate for a taken name.

    Example:
        >>> increment_name("Foo")
        "Foo 2"
        >>> increment_name("Foo 3")
        "Foo 4"
        >>> increment_name("Foo3")
        "Foo 4"
    """
    match = TRAILING_NUMBER.match(name)
    if match:
        base, number = match.groups()
        return f"{base.strip()} {int(number) + 1}"
    return f"{name} 2"


def unique_name(
    conn: sqlite3.Connection,
    kind: str,
    name: str,
    user: CurrentUser,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> str:
    """
    First free name for an entity of ``kind``, starting from ``name``.

    Args:
        conn: Connection of the running import transaction
        kind: Entity kind, a key of ``entities.UNIQUENESS_SCOPES``
        name: The proposed name
        user: Creator; scopes the lookup to their organisation (or to them
            for data templates)
        max_attempts: Number of candidates checked before giving up

    Raises:
        NameConflictError: If every candidate within ``max_attempts`` is taken
    """
    candidate = name
    for _ in range(max_attempts):
        if not name_exists(conn, kind, candidate, user):
            if candidate != name:
                logger.info(f"Renamed {kind} '{name}' to '{candidate}' to avoid a name conflict")
            return candidate
        candidate = increment_name(candidate)
    raise NameConflictError(kind, name, max_attempts)
