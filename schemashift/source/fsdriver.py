"""Source drivers that read migration files from a directory tree.

The tree is any object with the ``importlib.resources`` Traversable
interface, such as ``pathlib.Path`` or ``zipfile.Path``. A driver built
with :func:`new` cannot be opened from a URL.
"""

from __future__ import annotations

import errno
import posixpath
from typing import Any, BinaryIO

from schemashift.source.driver import Driver
from schemashift.source.migrations import (
    DuplicateMigrationError,
    Migrations,
    ParseError,
    parse,
)

__all__ = ["PartialDriver", "FsDriver", "new"]


def _resolve(fsys: Any, path: str) -> Any:
    node = fsys
    for part in path.split("/"):
        if part and part != ".":
            node = node.joinpath(part)
    return node


def _not_found(op: str, path: str) -> FileNotFoundError:
    return FileNotFoundError(errno.ENOENT, op, path)


class PartialDriver(Driver):
    """Everything a directory-tree source needs except ``open``."""

    def __init__(self) -> None:
        self._migrations = Migrations()
        self._fsys: Any = None
        self._path = ""

    def init(self, fsys: Any, path: str) -> None:
        """Index the migration files found in ``path`` within ``fsys``."""
        root = _resolve(fsys, path)
        shown = path or "."
        if not root.is_dir():
            if root.is_file():
                raise NotADirectoryError(errno.ENOTDIR, "not a directory", shown)
            raise FileNotFoundError(errno.ENOENT, "no such directory", shown)

        migrations = Migrations()
        for entry in sorted(root.iterdir(), key=lambda e: e.name):
            if entry.is_dir():
                continue
            try:
                m = parse(entry.name)
            except ParseError:
                continue
            if not migrations.append(m):
                raise DuplicateMigrationError(m, entry.name)

        self._fsys = fsys
        self._path = path
        self._migrations = migrations

    def close(self) -> None:
        closer = getattr(self._fsys, "close", None)
        if callable(closer):
            closer()

    def first(self) -> int:
        version = self._migrations.first()
        if version is None:
            raise _not_found("first", self._path)
        return version

    def prev(self, version: int) -> int:
        found = self._migrations.prev(version)
        if found is None:
            raise _not_found(f"prev for version {version}", self._path)
        return found

    def next(self, version: int) -> int:
        found = self._migrations.next(version)
        if found is None:
            raise _not_found(f"next for version {version}", self._path)
        return found

    def read_up(self, version: int) -> tuple[BinaryIO, str]:
        m = self._migrations.up(version)
        if m is None:
            raise _not_found(f"read up for version {version}", self._path)
        return self._open(posixpath.join(self._path, m.raw)), m.identifier

    def read_down(self, version: int) -> tuple[BinaryIO, str]:
        m = self._migrations.down(version)
        if m is None:
            raise _not_found(f"read down for version {version}", self._path)
        return self._open(posixpath.join(self._path, m.raw)), m.identifier

    def _open(self, path: str) -> BinaryIO:
        try:
            return _resolve(self._fsys, path).open("rb")
        except KeyError as exc:
            raise _not_found("open", path) from exc
        except OSError as exc:
            if exc.filename is None:
                exc.filename = path
            raise


class FsDriver(PartialDriver):
    """A directory-tree source created in code rather than from a URL."""

    def open(self, url: str) -> Driver:
        raise ValueError("open() cannot be called on the fs passthrough driver")


def new(fsys: Any, path: str) -> FsDriver:
    """Return a driver reading migrations from ``path`` within ``fsys``."""
    driver = FsDriver()
    driver.init(fsys, path)
    return driver