"""A single migration as it is scheduled, buffered and run."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import BinaryIO

__all__ = ["DEFAULT_BUFFER_SIZE", "Migration", "new_migration"]

# In-memory buffer size in bytes for every pre-read migration.
DEFAULT_BUFFER_SIZE = 100000


class _BodyPipe:
    """Blocking in-memory pipe between the buffering thread and the reader."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._data = bytearray()
        self._closed = False
        self._error: BaseException | None = None

    def write(self, data: bytes) -> int:
        with self._cond:
            if self._closed:
                raise ValueError("write to closed pipe")
            self._data += data
            self._cond.notify_all()
        return len(data)

    def finish(self, error: BaseException | None = None) -> None:
        """Mark the end of the data, optionally with the error that ended it."""
        with self._cond:
            self._closed = True
            self._error = error
            self._cond.notify_all()

    def readable(self) -> bool:
        return True

    def read(self, size: int = -1) -> bytes:
        """Read up to ``size`` bytes, or everything when ``size`` is negative."""
        with self._cond:
            if size is None or size < 0:
                self._cond.wait_for(lambda: self._closed)
                self._raise_if_failed()
                data = bytes(self._data)
                self._data.clear()
                return data
            if size == 0:
                return b""
            self._cond.wait_for(lambda: bool(self._data) or self._closed)
            if not self._data:
                self._raise_if_failed()
                return b""
            data = bytes(self._data[:size])
            del self._data[:size]
            return data

    def _raise_if_failed(self) -> None:
        if self._error is not None:
            raise OSError(f"migration body could not be read: {self._error}") from self._error

    def close(self) -> None:
        with self._cond:
            self._data.clear()


@dataclass(eq=False)
class Migration:
    """A migration read from a source, to be run against a database.

    ``target_version`` is the version after the migration ran; -1 means
    no version. A migration without a body only sets the version.
    """

    identifier: str = ""
    version: int = 0
    target_version: int = 0
    body: BinaryIO | None = None
    buffered_body: _BodyPipe | None = None
    buffer_size: int = 0
    scheduled: datetime | None = None
    started_buffering: datetime | None = None
    finished_buffering: datetime | None = None
    finished_reading: datetime | None = None
    bytes_read: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def __str__(self) -> str:
        return f"{self.identifier} [{self.version}=>{self.target_version}]"

    def log_string(self) -> str:
        """Describe the migration for people reading logs."""
        direction = "d" if self.target_version < self.version else "u"
        return f"{self.version}/{direction} {self.identifier}"

    def buffer(self) -> None:
        """Read the body into the buffered body; blocks until done."""
        if self.body is None or self.buffered_body is None:
            return
        pipe = self.buffered_body
        try:
            self.started_buffering = datetime.now()
            chunk_size = max(self.buffer_size, 1)
            first = self.body.read(chunk_size) or b""
            self.finished_buffering = datetime.now()

            total = pipe.write(first) if first else 0
            while first:
                chunk = self.body.read(chunk_size)
                if not chunk:
                    break
                total += pipe.write(chunk)

            self.finished_reading = datetime.now()
            self.bytes_read = total
        except Exception as exc:
            pipe.finish(exc)
            raise
        pipe.finish()
        self.body.close()


def new_migration(
    body: BinaryIO | None, identifier: str, version: int, target_version: int
) -> Migration:
    """Create a migration; without a body it becomes an empty migration."""
    now = datetime.now()
    migration = Migration(
        identifier=identifier,
        version=version,
        target_version=target_version,
        scheduled=now,
    )
    if body is None:
        if not identifier:
            migration.identifier = "<empty>"
        migration.started_buffering = now
        migration.finished_buffering = now
        migration.finished_reading = now
        return migration

    migration.body = body
    migration.buffer_size = DEFAULT_BUFFER_SIZE
    migration.buffered_body = _BodyPipe()
    return migration