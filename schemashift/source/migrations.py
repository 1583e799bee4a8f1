"""In-memory index of migration files and the file name parser."""

from __future__ import annotations

import bisect
import re
from dataclasses import dataclass
from enum import Enum

__all__ = [
    "Direction",
    "Migration",
    "Migrations",
    "ParseError",
    "DuplicateMigrationError",
    "REGEX",
    "parse",
]

_MAX_VERSION = 2**64 - 1


class Direction(str, Enum):
    """Direction a migration file applies in."""

    DOWN = "down"
    UP = "up"


# Matches names like ``123_name.up.ext`` and ``123_name.down.ext``.
REGEX = re.compile(
    r"([0-9]+)_(.*)\.(" + Direction.DOWN.value + "|" + Direction.UP.value + r")\.(.*)"
)


class ParseError(ValueError):
    """Raised when a file name is not a migration file name."""

    def __init__(self, message: str = "no match") -> None:
        super().__init__(message)


@dataclass(frozen=True)
class Migration:
    """One migration file as seen by a source driver."""

    version: int
    direction: Direction
    identifier: str = ""
    raw: str = ""


class DuplicateMigrationError(Exception):
    """Raised when two files claim the same version and direction."""

    def __init__(self, migration: Migration, name: str) -> None:
        super().__init__(f"duplicate migration file: {name}")
        self.migration = migration
        self.name = name


class Migrations:
    """Migrations keyed by version and direction, with versions kept in order."""

    def __init__(self) -> None:
        self._index: list[int] = []
        self._migrations: dict[int, dict[Direction, Migration]] = {}

    def append(self, m: Migration | None) -> bool:
        """Add a migration; return False if it is None or a duplicate."""
        if m is None:
            return False
        by_direction = self._migrations.setdefault(m.version, {})
        if m.direction in by_direction:
            return False
        by_direction[m.direction] = m
        position = bisect.bisect_left(self._index, m.version)
        if position == len(self._index) or self._index[position] != m.version:
            self._index.insert(position, m.version)
        return True

    def first(self) -> int | None:
        """Return the lowest version, or None if there are none."""
        return self._index[0] if self._index else None

    def prev(self, version: int) -> int | None:
        """Return the version before ``version``, or None."""
        pos = self._find_pos(version)
        if pos >= 1:
            return self._index[pos - 1]
        return None

    def next(self, version: int) -> int | None:
        """Return the version after ``version``, or None."""
        pos = self._find_pos(version)
        if pos >= 0 and pos + 1 < len(self._index):
            return self._index[pos + 1]
        return None

    def up(self, version: int) -> Migration | None:
        """Return the up migration for ``version``, or None."""
        return self._migrations.get(version, {}).get(Direction.UP)

    def down(self, version: int) -> Migration | None:
        """Return the down migration for ``version``, or None."""
        return self._migrations.get(version, {}).get(Direction.DOWN)

    def _find_pos(self, version: int) -> int:
        pos = bisect.bisect_left(self._index, version)
        if pos < len(self._index) and self._index[pos] == version:
            return pos
        return -1


def parse(raw: str) -> Migration:
    """Parse a migration file name into a Migration."""
    match = REGEX.fullmatch(raw)
    if match is None:
        raise ParseError()
    version = int(match[1])
    if version > _MAX_VERSION:
        raise ParseError(f"version {match[1]} out of range")
    return Migration(
        version=version,
        identifier=match[2],
        direction=Direction(match[3]),
        raw=raw,
    )