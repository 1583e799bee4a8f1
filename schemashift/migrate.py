"""Run migrations from a source against a database."""

from __future__ import annotations

import abc
import contextlib
import errno
import queue
import threading
from datetime import datetime
from typing import Any, BinaryIO, Iterable, Iterator
from urllib.parse import urlsplit

from schemashift.migration import Migration, new_migration
from schemashift.source.driver import Driver, open_source
from schemashift.util import MultiError, suint

__all__ = [
    "DEFAULT_PREFETCH_MIGRATIONS",
    "DEFAULT_LOCK_TIMEOUT",
    "NIL_VERSION",
    "NoChangeError",
    "NilVersionError",
    "InvalidVersionError",
    "LockedError",
    "LockTimeoutError",
    "ShortLimitError",
    "DirtyError",
    "Logger",
    "DatabaseDriver",
    "Migrate",
    "new_with_instance",
    "new_with_database_instance",
]

# Number of migrations read ahead of the one being run. Each of them is
# buffered in memory, so this also bounds memory use.
DEFAULT_PREFETCH_MIGRATIONS = 10

# Seconds a database driver has to acquire its lock.
DEFAULT_LOCK_TIMEOUT = 15.0

# The version of a database no migration has been applied to.
NIL_VERSION = -1


class NoChangeError(Exception):
    """Nothing was there to migrate."""

    def __init__(self) -> None:
        super().__init__("no change")


class NilVersionError(Exception):
    """No migration has been applied to the database yet."""

    def __init__(self) -> None:
        super().__init__("no migration")


class InvalidVersionError(ValueError):
    """A version below -1 was given."""

    def __init__(self) -> None:
        super().__init__("version must be >= -1")


class LockedError(Exception):
    """The database is already locked."""

    def __init__(self) -> None:
        super().__init__("database locked")


class LockTimeoutError(TimeoutError):
    """The database lock could not be acquired in time."""

    def __init__(self) -> None:
        super().__init__("timeout: can't acquire database lock")


class ShortLimitError(Exception):
    """The source ran out of migrations before the requested count."""

    def __init__(self, short: int) -> None:
        super().__init__(f"limit {short} short")
        self.short = short


class DirtyError(Exception):
    """The database was left mid-migration at ``version``."""

    def __init__(self, version: int) -> None:
        super().__init__(f"Dirty database version {version}. Fix and force version.")
        self.version = version


class Logger(abc.ABC):
    """Receives progress messages; ``verbose`` asks for more of them."""

    verbose: bool = False

    @abc.abstractmethod
    def log(self, message: str) -> None:
        """Record one message."""


class DatabaseDriver(abc.ABC):
    """Interface of a database that migrations are run against."""

    @abc.abstractmethod
    def close(self) -> None:
        """Release the connection to the database."""

    @abc.abstractmethod
    def lock(self) -> None:
        """Take the migration lock, raising if it cannot be taken."""

    @abc.abstractmethod
    def unlock(self) -> None:
        """Release the migration lock."""

    @abc.abstractmethod
    def run(self, migration: Any) -> None:
        """Read the migration body from a readable stream and execute it."""

    @abc.abstractmethod
    def set_version(self, version: int, dirty: bool) -> None:
        """Store the current version and whether it is dirty."""

    @abc.abstractmethod
    def version(self) -> tuple[int, bool]:
        """Return the stored version (-1 if none) and its dirty flag."""

    @abc.abstractmethod
    def drop(self) -> None:
        """Delete everything in the database."""


def _scheme_from_url(url: str) -> str:
    if not url:
        raise ValueError("URL cannot be empty")
    scheme = urlsplit(url).scheme
    if not scheme:
        raise ValueError(f"no scheme in URL {url!r}")
    return scheme


class Migrate:
    """Moves a database between the versions a source provides.

    Set ``graceful_stop`` to stop at the next safe point between
    migrations.
    """

    def __init__(
        self,
        source_name: str,
        source_driver: Driver,
        database_name: str,
        database_driver: DatabaseDriver,
        *,
        log: Logger | None = None,
        prefetch_migrations: int | None = None,
        lock_timeout: float | None = None,
    ) -> None:
        self.source_name = source_name
        self.source_driver = source_driver
        self.database_name = database_name
        self.database_driver = database_driver
        self.log = log
        self.prefetch_migrations = (
            DEFAULT_PREFETCH_MIGRATIONS if prefetch_migrations is None else prefetch_migrations
        )
        self.lock_timeout = DEFAULT_LOCK_TIMEOUT if lock_timeout is None else lock_timeout
        self.graceful_stop = threading.Event()
        self._is_locked_mu = threading.Lock()
        self._is_locked = False

    def __enter__(self) -> Migrate:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        """Close the source and the database, reporting every failure."""
        self._log_verbose("Closing source and database")
        errors: list[BaseException] = []
        for closer in (self.source_driver.close, self.database_driver.close):
            try:
                closer()
            except Exception as exc:
                errors.append(exc)
        if errors:
            raise MultiError(*errors)

    def migrate(self, version: int) -> None:
        """Migrate up or down until ``version`` is reached."""
        target = suint(version)
        with self._locked():
            current = self._current_version()
            self._run_migrations(self.read(current, target))

    def steps(self, n: int) -> None:
        """Apply ``n`` up migrations, or ``-n`` down migrations if negative."""
        if n == 0:
            raise NoChangeError()
        with self._locked():
            current = self._current_version()
            if n > 0:
                self._run_migrations(self.read_up(current, n))
            else:
                self._run_migrations(self.read_down(current, -n))

    def up(self) -> None:
        """Apply every remaining up migration."""
        with self._locked():
            current = self._current_version()
            self._run_migrations(self.read_up(current, -1))

    def down(self) -> None:
        """Apply every down migration."""
        with self._locked():
            current = self._current_version()
            self._run_migrations(self.read_down(current, -1))

    def drop(self) -> None:
        """Delete everything in the database."""
        with self._locked():
            self.database_driver.drop()

    def run(self, *args: Migration) -> None:
        """Run the given migrations without consulting the source."""
        if not args:
            raise NoChangeError()
        with self._locked():
            self._current_version()

            def scheduled() -> Iterator[Migration]:
                for migr in args:
                    self._log_scheduling(migr)
                    yield self._start_buffering(migr)

            self._run_migrations(scheduled())

    def force(self, version: int) -> None:
        """Set the version and clear the dirty flag, without migrating."""
        if version < -1:
            raise InvalidVersionError()
        with self._locked():
            self.database_driver.set_version(version, False)

    def version(self) -> tuple[int, bool]:
        """Return the current version and dirty flag."""
        current, dirty = self.database_driver.version()
        if current == NIL_VERSION:
            raise NilVersionError()
        return suint(current), dirty

    def read(self, from_version: int, to_version: int) -> Iterator[Migration]:
        """Yield the migrations leading from one version to another."""
        if from_version >= 0:
            self._version_exists(suint(from_version))
        if to_version >= 0:
            self._version_exists(suint(to_version))
        if from_version == to_version:
            raise NoChangeError()

        source = self.source_driver
        if from_version < to_version:
            if from_version == -1:
                first = source.first()
                yield self._start_buffering(self._new_migration(first, first))
                from_version = first
            while from_version < to_version:
                if self._stop():
                    return
                nxt = source.next(suint(from_version))
                yield self._start_buffering(self._new_migration(nxt, nxt))
                from_version = nxt
            return

        while from_version > to_version and from_version >= 0:
            if self._stop():
                return
            try:
                prev = source.prev(suint(from_version))
            except FileNotFoundError:
                if to_version != -1:
                    raise
                yield self._start_buffering(self._new_migration(suint(from_version), -1))
                return
            yield self._start_buffering(self._new_migration(suint(from_version), prev))
            from_version = prev

    def read_up(self, from_version: int, limit: int) -> Iterator[Migration]:
        """Yield up to ``limit`` up migrations; -1 means no limit."""
        if from_version >= 0:
            self._version_exists(suint(from_version))
        if limit == 0:
            raise NoChangeError()

        source = self.source_driver
        count = 0
        while count < limit or limit == -1:
            if self._stop():
                return
            if from_version == -1:
                first = source.first()
                yield self._start_buffering(self._new_migration(first, first))
                from_version = first
                count += 1
                continue
            try:
                nxt = source.next(suint(from_version))
            except FileNotFoundError:
                if limit == -1 and count == 0:
                    raise NoChangeError() from None
                if limit == -1:
                    return
                if count == 0:
                    raise
                if count < limit:
                    raise ShortLimitError(suint(limit - count)) from None
                raise
            yield self._start_buffering(self._new_migration(nxt, nxt))
            from_version = nxt
            count += 1

    def read_down(self, from_version: int, limit: int) -> Iterator[Migration]:
        """Yield up to ``limit`` down migrations; -1 means no limit."""
        if from_version >= 0:
            self._version_exists(suint(from_version))
        if limit == 0:
            raise NoChangeError()
        if from_version == -1 and limit == -1:
            raise NoChangeError()
        if from_version == -1 and limit > 0:
            raise FileNotFoundError(errno.ENOENT, "no migration below nil version")

        source = self.source_driver
        count = 0
        while count < limit or limit == -1:
            if self._stop():
                return
            try:
                prev = source.prev(suint(from_version))
            except FileNotFoundError:
                if limit == -1 or limit - count > 0:
                    first = source.first()
                    yield self._start_buffering(self._new_migration(first, -1))
                    count += 1
                if count < limit:
                    raise ShortLimitError(suint(limit - count)) from None
                return
            yield self._start_buffering(self._new_migration(suint(from_version), prev))
            from_version = prev
            count += 1

    def lock(self) -> None:
        """Lock the database, waiting at most ``lock_timeout`` seconds."""
        with self._is_locked_mu:
            if self._is_locked:
                raise LockedError()

            done = threading.Event()
            failure: list[BaseException] = []

            def acquire() -> None:
                try:
                    self.database_driver.lock()
                except BaseException as exc:
                    failure.append(exc)
                finally:
                    done.set()

            threading.Thread(target=acquire, daemon=True).start()
            if not done.wait(self.lock_timeout):
                raise LockTimeoutError()
            if failure:
                raise failure[0]
            self._is_locked = True

    def unlock(self) -> None:
        """Unlock the database."""
        with self._is_locked_mu:
            self.database_driver.unlock()
            self._is_locked = False

    @contextlib.contextmanager
    def _locked(self) -> Iterator[None]:
        self.lock()
        try:
            yield
        except BaseException as exc:
            try:
                self.unlock()
            except Exception as unlock_exc:
                raise MultiError(exc, unlock_exc) from exc
            raise
        self.unlock()

    def _current_version(self) -> int:
        current, dirty = self.database_driver.version()
        if dirty:
            raise DirtyError(current)
        return current

    def _run_migrations(self, migrations: Iterable[Migration]) -> None:
        with contextlib.closing(self._prefetch(migrations)) as stream:
            for migr in stream:
                if self._stop():
                    return
                if not isinstance(migr, Migration):
                    raise TypeError(f"unknown type: {type(migr).__name__} with value: {migr!r}")

                self.database_driver.set_version(migr.target_version, True)
                if migr.body is not None:
                    self._log_verbose(f"Read and execute {migr.log_string()}")
                    self.database_driver.run(migr.buffered_body)
                self.database_driver.set_version(migr.target_version, False)

                end = datetime.now()
                finished = migr.finished_reading or end
                started = migr.started_buffering or finished
                read_time = finished - started
                run_time = end - finished
                if self.log is not None:
                    if self.log.verbose:
                        self._log(
                            f"Finished {migr.log_string()} (read {read_time}, ran {run_time})"
                        )
                    else:
                        self._log(f"{migr.log_string()} ({read_time + run_time})")

    def _prefetch(self, migrations: Iterable[Migration]) -> Iterator[Migration]:
        """Read migrations ahead in a background thread."""
        pending: queue.Queue = queue.Queue(maxsize=max(self.prefetch_migrations, 1))
        cancelled = threading.Event()

        def put(entry: tuple[str, Any]) -> bool:
            while not cancelled.is_set():
                try:
                    pending.put(entry, timeout=0.05)
                    return True
                except queue.Full:
                    continue
            return False

        def produce() -> None:
            iterator = iter(migrations)
            try:
                for migr in iterator:
                    if not put(("item", migr)):
                        return
            except Exception as exc:
                put(("error", exc))
                return
            finally:
                closer = getattr(iterator, "close", None)
                if callable(closer) and cancelled.is_set():
                    closer()
            put(("done", None))

        threading.Thread(target=produce, daemon=True).start()
        try:
            while True:
                kind, value = pending.get()
                if kind == "done":
                    return
                if kind == "error":
                    raise value
                yield value
        finally:
            cancelled.set()

    def _version_exists(self, version: int) -> None:
        """Raise FileNotFoundError unless the source has ``version`` in some direction."""
        for reader in (self.source_driver.read_up, self.source_driver.read_down):
            try:
                body, _ = reader(version)
            except FileExistsError:
                return
            except FileNotFoundError as exc:
                last = exc
                continue
            body.close()
            return
        error = FileNotFoundError(errno.ENOENT, f"no migration found for version {version}")
        error.__cause__ = last
        self._log_err(error)
        raise error

    def _new_migration(self, version: int, target_version: int) -> Migration:
        reader = (
            self.source_driver.read_up
            if target_version >= version
            else self.source_driver.read_down
        )
        body: BinaryIO | None
        try:
            body, identifier = reader(version)
        except FileNotFoundError:
            body, identifier = None, ""
        migr = new_migration(body, identifier, version, target_version)
        self._log_scheduling(migr)
        return migr

    def _log_scheduling(self, migr: Migration) -> None:
        if self.prefetch_migrations > 0 and migr.body is not None:
            self._log_verbose(f"Start buffering {migr.log_string()}")
        else:
            self._log_verbose(f"Scheduled {migr.log_string()}")

    def _start_buffering(self, migr: Migration) -> Migration:
        def work() -> None:
            try:
                migr.buffer()
            except Exception as exc:
                self._log_err(exc)

        threading.Thread(target=work, daemon=True).start()
        return migr

    def _stop(self) -> bool:
        return self.graceful_stop.is_set()

    def _log(self, message: str) -> None:
        if self.log is not None:
            self.log.log(message)

    def _log_verbose(self, message: str) -> None:
        if self.log is not None and self.log.verbose:
            self.log.log(message)

    def _log_err(self, error: BaseException) -> None:
        if self.log is not None:
            self.log.log(f"error: {error}")


def new_with_instance(
    source_name: str,
    source_instance: Driver,
    database_name: str,
    database_instance: DatabaseDriver,
) -> Migrate:
    """Create a runner over an existing source and database."""
    return Migrate(source_name, source_instance, database_name, database_instance)


def new_with_database_instance(
    source_url: str, database_name: str, database_instance: DatabaseDriver
) -> Migrate:
    """Create a runner that opens its source from ``source_url``."""
    source_name = _scheme_from_url(source_url)
    source_driver = open_source(source_url)
    return Migrate(source_name, source_driver, database_name, database_instance)