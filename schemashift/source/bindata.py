"""Source driver reading migrations from named in-memory assets."""

from __future__ import annotations

import errno
import io
from dataclasses import dataclass, field
from typing import BinaryIO, Callable

from schemashift.source.driver import Driver, list_drivers, register
from schemashift.source.migrations import Migrations, ParseError, parse

__all__ = ["AssetSource", "Bindata", "resource", "with_instance"]

AssetFunc = Callable[[str], bytes]


@dataclass
class AssetSource:
    """Asset names together with the function that loads an asset."""

    names: list[str]
    asset_func: AssetFunc


def resource(names: list[str], asset_func: AssetFunc) -> AssetSource:
    """Wrap asset names and their loader into an AssetSource."""
    return AssetSource(names=list(names), asset_func=asset_func)


def _not_found(op: str, path: str) -> FileNotFoundError:
    return FileNotFoundError(errno.ENOENT, op, path)


@dataclass
class Bindata(Driver):
    """Source over an AssetSource; create it with :func:`with_instance`."""

    path: str = ""
    asset_source: AssetSource | None = None
    migrations: Migrations = field(default_factory=Migrations)

    def open(self, url: str) -> Driver:
        raise ValueError(
            "bindata source cannot be opened from a URL; use with_instance"
        )

    def close(self) -> None:
        return None

    def first(self) -> int:
        version = self.migrations.first()
        if version is None:
            raise _not_found("first", self.path)
        return version

    def prev(self, version: int) -> int:
        found = self.migrations.prev(version)
        if found is None:
            raise _not_found(f"prev for version {version}", self.path)
        return found

    def next(self, version: int) -> int:
        found = self.migrations.next(version)
        if found is None:
            raise _not_found(f"next for version {version}", self.path)
        return found

    def read_up(self, version: int) -> tuple[BinaryIO, str]:
        m = self.migrations.up(version)
        if m is None or self.asset_source is None:
            raise _not_found(f"read version {version}", self.path)
        return io.BytesIO(self.asset_source.asset_func(m.raw)), m.identifier

    def read_down(self, version: int) -> tuple[BinaryIO, str]:
        m = self.migrations.down(version)
        if m is None or self.asset_source is None:
            raise _not_found(f"read version {version}", self.path)
        return io.BytesIO(self.asset_source.asset_func(m.raw)), m.identifier


def with_instance(instance: object) -> Bindata:
    """Return a driver over ``instance``, which must be an AssetSource."""
    if not isinstance(instance, AssetSource):
        raise TypeError("expects AssetSource")
    driver = Bindata(path="<bindata>", asset_source=instance)
    for name in instance.names:
        try:
            m = parse(name)
        except ParseError:
            continue
        if not driver.migrations.append(m):
            raise ValueError(f"unable to parse file {name}")
    return driver


if "bindata" not in list_drivers():
    register("bindata", Bindata())