"""An in-memory source driver whose migrations are set directly."""

from __future__ import annotations

import errno
import io
from dataclasses import dataclass
from typing import Any, BinaryIO

from schemashift.source.driver import Driver, list_drivers, register
from schemashift.source.migrations import Migrations

__all__ = ["Config", "StubSource", "with_instance"]


@dataclass
class Config:
    """Configuration for the stub source; it has no options."""


def _not_found(op: str, path: str) -> FileNotFoundError:
    return FileNotFoundError(errno.ENOENT, op, path)


class StubSource(Driver):
    """Source whose bodies are the identifiers of its migrations."""

    def __init__(
        self,
        url: str = "",
        instance: Any = None,
        migrations: Migrations | None = None,
        config: Config | None = None,
    ) -> None:
        self.url = url
        self.instance = instance
        self.migrations = migrations if migrations is not None else Migrations()
        self.config = config

    def open(self, url: str) -> StubSource:
        return StubSource(url=url, migrations=Migrations(), config=Config())

    def close(self) -> None:
        return None

    def first(self) -> int:
        version = self.migrations.first()
        if version is None:
            raise _not_found("first", self.url)
        return version

    def prev(self, version: int) -> int:
        found = self.migrations.prev(version)
        if found is None:
            raise _not_found(f"prev for version {version}", self.url)
        return found

    def next(self, version: int) -> int:
        found = self.migrations.next(version)
        if found is None:
            raise _not_found(f"next for version {version}", self.url)
        return found

    def read_up(self, version: int) -> tuple[BinaryIO, str]:
        m = self.migrations.up(version)
        if m is None:
            raise _not_found(f"read up version {version}", self.url)
        return io.BytesIO(m.identifier.encode()), f"{version}.up.stub"

    def read_down(self, version: int) -> tuple[BinaryIO, str]:
        m = self.migrations.down(version)
        if m is None:
            raise _not_found(f"read down version {version}", self.url)
        return io.BytesIO(m.identifier.encode()), f"{version}.down.stub"


def with_instance(instance: Any, config: Config | None) -> StubSource:
    """Return a stub source that wraps ``instance``."""
    return StubSource(instance=instance, migrations=Migrations(), config=config)


if "stub" not in list_drivers():
    register("stub", StubSource())