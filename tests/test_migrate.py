import threading

import pytest

from schemashift.migrate import (
    DatabaseDriver,
    DirtyError,
    InvalidVersionError,
    LockedError,
    LockTimeoutError,
    Logger,
    Migrate,
    NilVersionError,
    NoChangeError,
    ShortLimitError,
    new_with_database_instance,
    new_with_instance,
)
from schemashift.migration import new_migration
from schemashift.source.migrations import Direction, Migrations
from schemashift.source.migrations import Migration as SourceMigration
from schemashift.source.stub import StubSource
from schemashift.util import MultiError

F = FileNotFoundError
NC = NoChangeError
SL = ShortLimitError


class RecordingDatabase(DatabaseDriver):
    def __init__(self):
        self.current_version = -1
        self.is_dirty = False
        self.sequence = []
        self.locked = False
        self.closed = False

    def close(self):
        self.closed = True

    def lock(self):
        if self.locked:
            raise LockedError()
        self.locked = True

    def unlock(self):
        self.locked = False

    def run(self, migration):
        self.sequence.append(migration.read().decode())

    def set_version(self, version, dirty):
        self.current_version = version
        self.is_dirty = dirty

    def version(self):
        return self.current_version, self.is_dirty

    def drop(self):
        self.sequence.append("DROP")


class FailingUnlockDatabase(RecordingDatabase):
    def unlock(self):
        raise RuntimeError("unlock failed")


class BlockingDatabase(RecordingDatabase):
    def __init__(self):
        super().__init__()
        self.release = threading.Event()

    def lock(self):
        self.release.wait(5)


class ListLogger(Logger):
    def __init__(self, verbose=False):
        self.verbose = verbose
        self.messages = []

    def log(self, message):
        self.messages.append(message)


def stub_migrations():
    ms = Migrations()
    for version, direction, ident in [
        (1, Direction.UP, "CREATE 1"),
        (1, Direction.DOWN, "DROP 1"),
        (3, Direction.UP, "CREATE 3"),
        (4, Direction.UP, "CREATE 4"),
        (4, Direction.DOWN, "DROP 4"),
        (5, Direction.DOWN, "DROP 5"),
        (7, Direction.UP, "CREATE 7"),
        (7, Direction.DOWN, "DROP 7"),
    ]:
        ms.append(SourceMigration(version=version, direction=direction, identifier=ident))
    return ms


def make(db=None, migrations=True):
    src = StubSource(migrations=stub_migrations() if migrations else Migrations())
    db = db if db is not None else RecordingDatabase()
    return new_with_instance("stub", src, "stub", db), db


def collect(gen):
    got = []
    try:
        for m in gen:
            got.append((m.version, m.target_version))
    except Exception as exc:
        return got, exc
    return got, None


def up(*versions):
    return [(v, v) for v in versions]


def check(got, exc, err, expected):
    if err is None:
        assert exc is None
        assert got == expected
    else:
        assert isinstance(exc, err)
        if err is SL:
            assert exc.short == 1
        if expected:
            assert got == expected


def test_new_with_instance_names():
    m, db = make()
    assert m.source_name == "stub"
    assert m.database_name == "stub"
    assert m.database_driver is db


def test_new_with_database_instance():
    db = RecordingDatabase()
    m = new_with_database_instance("stub://", "stub", db)
    assert m.source_name == "stub"
    assert m.database_name == "stub"
    assert isinstance(m.source_driver, StubSource)


def test_new_with_database_instance_rejects_empty_url():
    with pytest.raises(ValueError):
        new_with_database_instance("", "stub", RecordingDatabase())


def test_close_closes_database():
    m, db = make()
    m.close()
    assert db.closed is True


def test_close_reports_failure():
    class BadClose(RecordingDatabase):
        def close(self):
            raise RuntimeError("close failed")

    m, _ = make(BadClose())
    with pytest.raises(MultiError) as info:
        m.close()
    assert str(info.value) == "close failed"


MIGRATE_STEPS = [
    (0, F, None, []),
    (1, None, 1, ["CREATE 1"]),
    (2, F, None, []),
    (3, None, 3, ["CREATE 3"]),
    (4, None, 4, ["CREATE 4"]),
    (5, None, 5, []),
    (6, F, None, []),
    (7, None, 7, ["CREATE 7"]),
    (8, F, None, []),
    (6, F, None, []),
    (5, None, 5, ["DROP 7"]),
    (4, None, 4, ["DROP 5"]),
    (3, None, 3, ["DROP 4"]),
    (2, F, None, []),
    (1, None, 1, []),
    (0, F, None, []),
    (7, None, 7, ["CREATE 3", "CREATE 4", "CREATE 7"]),
    (1, None, 1, ["DROP 7", "DROP 5", "DROP 4"]),
    (1, NC, None, []),
]


def test_migrate_sequence():
    m, db = make()
    expected = []
    for version, err, expect_version, added in MIGRATE_STEPS:
        if err is not None:
            with pytest.raises(err):
                m.migrate(version)
        else:
            m.migrate(version)
            assert m.version()[0] == expect_version
        expected.extend(added)
        assert db.sequence == expected
        assert db.locked is False


STEPS = [
    (0, NC, None, []),
    (-1, F, None, []),
    (1, None, 1, ["CREATE 1"]),
    (1, None, 3, ["CREATE 3"]),
    (1, None, 4, ["CREATE 4"]),
    (1, None, 5, []),
    (1, None, 7, ["CREATE 7"]),
    (1, F, None, []),
    (-1, None, 5, ["DROP 7"]),
    (-1, None, 4, ["DROP 5"]),
    (-1, None, 3, ["DROP 4"]),
    (-1, None, 1, []),
    (-1, None, -1, ["DROP 1"]),
    (4, None, 5, ["CREATE 1", "CREATE 3", "CREATE 4"]),
    (2, SL, 7, ["CREATE 7"]),
    (-4, None, 1, ["DROP 7", "DROP 5", "DROP 4"]),
    (-2, SL, -1, ["DROP 1"]),
]


def test_steps_sequence():
    m, db = make()
    expected = []
    for n, err, expect_version, added in STEPS:
        if err is not None:
            with pytest.raises(err) as info:
                m.steps(n)
            if err is SL:
                assert info.value.short == 1
        else:
            m.steps(n)
            if expect_version == -1:
                with pytest.raises(NilVersionError):
                    m.version()
            else:
                assert m.version()[0] == expect_version
        expected.extend(added)
        assert db.sequence == expected


@pytest.mark.parametrize(
    "action",
    [
        lambda m: m.migrate(1),
        lambda m: m.steps(1),
        lambda m: m.up(),
        lambda m: m.down(),
        lambda m: m.run(new_migration(None, "", 1, 2)),
    ],
)
def test_dirty_database_is_refused(action):
    m, db = make()
    db.set_version(0, True)
    with pytest.raises(DirtyError) as info:
        action(m)
    assert info.value.version == 0
    assert db.locked is False


def test_dirty_error_message():
    assert str(DirtyError(3)) == "Dirty database version 3. Fix and force version."


def test_up_and_down():
    m, db = make()
    m.up()
    expected = ["CREATE 1", "CREATE 3", "CREATE 4", "CREATE 7"]
    assert db.sequence == expected
    m.down()
    expected += ["DROP 7", "DROP 5", "DROP 4", "DROP 1"]
    assert db.sequence == expected
    m.steps(1)
    expected += ["CREATE 1"]
    assert db.sequence == expected
    m.up()
    expected += ["CREATE 3", "CREATE 4", "CREATE 7"]
    assert db.sequence == expected
    m.steps(-1)
    expected += ["DROP 7"]
    assert db.sequence == expected
    m.down()
    expected += ["DROP 5", "DROP 4", "DROP 1"]
    assert db.sequence == expected


def test_up_twice_is_no_change():
    m, db = make()
    m.up()
    with pytest.raises(NoChangeError):
        m.up()
    assert db.current_version == 7


def test_drop():
    m, db = make()
    m.drop()
    assert db.sequence[-1] == "DROP"


def test_version():
    m, db = make()
    with pytest.raises(NilVersionError):
        m.version()
    db.set_version(1, False)
    assert m.version() == (1, False)


def test_run():
    m, _ = make(migrations=False)
    m.run(new_migration(None, "", 1, 2))
    assert m.version() == (2, False)


def test_run_without_migrations():
    m, _ = make()
    with pytest.raises(NoChangeError):
        m.run()


def test_force():
    m, _ = make()
    m.force(7)
    assert m.version() == (7, False)


def test_force_dirty():
    m, db = make()
    db.set_version(0, True)
    m.force(1)
    assert m.version() == (1, False)


def test_force_invalid_version():
    m, _ = make()
    with pytest.raises(InvalidVersionError):
        m.force(-2)


def test_lock_twice():
    m, _ = make()
    m.lock()
    with pytest.raises(LockedError):
        m.lock()


def test_lock_timeout():
    db = BlockingDatabase()
    m, _ = make(db)
    m.lock_timeout = 0.05
    try:
        with pytest.raises(LockTimeoutError):
            m.up()
    finally:
        db.release.set()


def test_unlock_failure_is_combined():
    m, _ = make(FailingUnlockDatabase())
    m.database_driver.set_version(0, True)
    with pytest.raises(MultiError) as info:
        m.up()
    assert isinstance(info.value.errs[0], DirtyError)
    assert str(info.value.errs[1]) == "unlock failed"


def test_graceful_stop():
    m, db = make()
    m.graceful_stop.set()
    m.up()
    assert db.sequence == []
    assert db.locked is False
    with pytest.raises(NilVersionError):
        m.version()


def test_logging_normal():
    m, _ = make()
    logger = ListLogger()
    m.log = logger
    m.steps(1)
    assert len(logger.messages) == 1
    assert logger.messages[0].startswith("1/u 1.up.stub (")


def test_logging_verbose():
    m, _ = make()
    logger = ListLogger(verbose=True)
    m.log = logger
    m.steps(1)
    assert "Start buffering 1/u 1.up.stub" in logger.messages
    assert "Read and execute 1/u 1.up.stub" in logger.messages
    assert logger.messages[-1].startswith("Finished 1/u 1.up.stub (read ")


READ_CASES = (
    [
        (-1, -1, NC, []),
        (-1, 0, F, []),
        (-1, 1, None, up(1)),
        (-1, 2, F, []),
        (-1, 3, None, up(1, 3)),
        (-1, 4, None, up(1, 3, 4)),
        (-1, 5, None, up(1, 3, 4, 5)),
        (-1, 6, F, []),
        (-1, 7, None, up(1, 3, 4, 5, 7)),
        (-1, 8, F, []),
        (1, -1, None, [(1, -1)]),
        (1, 0, F, []),
        (1, 1, NC, []),
        (1, 2, F, []),
        (1, 3, None, up(3)),
        (1, 4, None, up(3, 4)),
        (1, 5, None, up(3, 4, 5)),
        (1, 6, F, []),
        (1, 7, None, up(3, 4, 5, 7)),
        (1, 8, F, []),
        (3, -1, None, [(3, 1), (1, -1)]),
        (3, 0, F, []),
        (3, 1, None, [(3, 1)]),
        (3, 2, F, []),
        (3, 3, NC, []),
        (3, 4, None, up(4)),
        (3, 5, None, up(4, 5)),
        (3, 6, F, []),
        (3, 7, None, up(4, 5, 7)),
        (3, 8, F, []),
        (4, -1, None, [(4, 3), (3, 1), (1, -1)]),
        (4, 0, F, []),
        (4, 1, None, [(4, 3), (3, 1)]),
        (4, 2, F, []),
        (4, 3, None, [(4, 3)]),
        (4, 4, NC, []),
        (4, 5, None, up(5)),
        (4, 6, F, []),
        (4, 7, None, up(5, 7)),
        (4, 8, F, []),
        (5, -1, None, [(5, 4), (4, 3), (3, 1), (1, -1)]),
        (5, 0, F, []),
        (5, 1, None, [(5, 4), (4, 3), (3, 1)]),
        (5, 2, F, []),
        (5, 3, None, [(5, 4), (4, 3)]),
        (5, 4, None, [(5, 4)]),
        (5, 5, NC, []),
        (5, 6, F, []),
        (5, 7, None, up(7)),
        (5, 8, F, []),
        (7, -1, None, [(7, 5), (5, 4), (4, 3), (3, 1), (1, -1)]),
        (7, 0, F, []),
        (7, 1, None, [(7, 5), (5, 4), (4, 3), (3, 1)]),
        (7, 2, F, []),
        (7, 3, None, [(7, 5), (5, 4), (4, 3)]),
        (7, 4, None, [(7, 5), (5, 4)]),
        (7, 5, None, [(7, 5)]),
        (7, 6, F, []),
        (7, 7, NC, []),
        (7, 8, F, []),
    ]
    + [(f, t, F, []) for f in (0, 2, 6, 8) for t in range(-1, 9)]
)


@pytest.mark.parametrize("from_version,to_version,err,expected", READ_CASES)
def test_read(from_version, to_version, err, expected):
    m, _ = make()
    got, exc = collect(m.read(from_version, to_version))
    check(got, exc, err, expected)


READ_UP_CASES = [
    (-1, -1, None, up(1, 3, 4, 5, 7)),
    (-1, 0, NC, []),
    (-1, 1, None, up(1)),
    (-1, 2, None, up(1, 3)),
    (1, -1, None, up(3, 4, 5, 7)),
    (1, 0, NC, []),
    (1, 1, None, up(3)),
    (1, 2, None, up(3, 4)),
    (3, -1, None, up(4, 5, 7)),
    (3, 0, NC, []),
    (3, 1, None, up(4)),
    (3, 2, None, up(4, 5)),
    (4, -1, None, up(5, 7)),
    (4, 0, NC, []),
    (4, 1, None, up(5)),
    (4, 2, None, up(5, 7)),
    (5, -1, None, up(7)),
    (5, 0, NC, []),
    (5, 1, None, up(7)),
    (5, 2, SL, up(7)),
    (7, -1, NC, []),
    (7, 0, NC, []),
    (7, 1, F, []),
    (7, 2, F, []),
] + [(f, n, F, []) for f in (0, 2, 6, 8) for n in (-1, 0, 1, 2)]


@pytest.mark.parametrize("from_version,limit,err,expected", READ_UP_CASES)
def test_read_up(from_version, limit, err, expected):
    m, _ = make()
    got, exc = collect(m.read_up(from_version, limit))
    check(got, exc, err, expected)


READ_DOWN_CASES = [
    (-1, -1, NC, []),
    (-1, 0, NC, []),
    (-1, 1, F, []),
    (-1, 2, F, []),
    (1, -1, None, [(1, -1)]),
    (1, 0, NC, []),
    (1, 1, None, [(1, -1)]),
    (1, 2, SL, [(1, -1)]),
    (3, -1, None, [(3, 1), (1, -1)]),
    (3, 0, NC, []),
    (3, 1, None, [(3, 1)]),
    (3, 2, None, [(3, 1), (1, -1)]),
    (4, -1, None, [(4, 3), (3, 1), (1, -1)]),
    (4, 0, NC, []),
    (4, 1, None, [(4, 3)]),
    (4, 2, None, [(4, 3), (3, 1)]),
    (5, -1, None, [(5, 4), (4, 3), (3, 1), (1, -1)]),
    (5, 0, NC, []),
    (5, 1, None, [(5, 4)]),
    (5, 2, None, [(5, 4), (4, 3)]),
    (7, -1, None, [(7, 5), (5, 4), (4, 3), (3, 1), (1, -1)]),
    (7, 0, NC, []),
    (7, 1, None, [(7, 5)]),
    (7, 2, None, [(7, 5), (5, 4)]),
] + [(f, n, F, []) for f in (0, 2, 6, 8) for n in (-1, 0, 1, 2)]


@pytest.mark.parametrize("from_version,limit,err,expected", READ_DOWN_CASES)
def test_read_down(from_version, limit, err, expected):
    m, _ = make()
    got, exc = collect(m.read_down(from_version, limit))
    check(got, exc, err, expected)


def test_short_limit_message():
    assert str(ShortLimitError(2)) == "limit 2 short"


def test_migrate_instance_defaults():
    m, _ = make()
    assert isinstance(m, Migrate)
    assert m.prefetch_migrations == 10
    assert m.lock_timeout == 15.0