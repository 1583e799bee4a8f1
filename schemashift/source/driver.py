"""The source driver interface and the registry of source drivers."""

from __future__ import annotations

import abc
import threading
from typing import BinaryIO
from urllib.parse import urlsplit

__all__ = ["Driver", "open_source", "register", "list_drivers"]

_drivers: dict[str, Driver] = {}
_drivers_lock = threading.Lock()


class Driver(abc.ABC):
    """Interface every source of migrations implements.

    Lookups that find nothing raise FileNotFoundError. The read methods
    return an unread binary stream together with an identifier.
    """

    @abc.abstractmethod
    def open(self, url: str) -> Driver:
        """Return a new driver configured from ``url``."""

    @abc.abstractmethod
    def close(self) -> None:
        """Release whatever the driver holds."""

    @abc.abstractmethod
    def first(self) -> int:
        """Return the first available version."""

    @abc.abstractmethod
    def prev(self, version: int) -> int:
        """Return the version before ``version``."""

    @abc.abstractmethod
    def next(self, version: int) -> int:
        """Return the version after ``version``."""

    @abc.abstractmethod
    def read_up(self, version: int) -> tuple[BinaryIO, str]:
        """Return the up migration body and its identifier."""

    @abc.abstractmethod
    def read_down(self, version: int) -> tuple[BinaryIO, str]:
        """Return the down migration body and its identifier."""

    def __enter__(self) -> Driver:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def open_source(url: str) -> Driver:
    """Open the registered driver named by the scheme of ``url``."""
    scheme = urlsplit(url).scheme
    if not scheme:
        raise ValueError("source driver: invalid URL scheme")
    with _drivers_lock:
        driver = _drivers.get(scheme)
    if driver is None:
        raise ValueError(
            f"source driver: unknown driver '{scheme}' (forgotten import?)"
        )
    return driver.open(url)


def register(name: str, driver: Driver) -> None:
    """Register ``driver`` under ``name``; each name may be used once."""
    if driver is None:
        raise ValueError("register driver is None")
    with _drivers_lock:
        if name in _drivers:
            raise ValueError(f"register called twice for driver {name}")
        _drivers[name] = driver


def list_drivers() -> list[str]:
    """Return the names of the registered drivers."""
    with _drivers_lock:
        return list(_drivers)