# schemashift

schemashift reads migration files from a *source* and applies them to a
*database*. It can go up, go down, or move to a chosen version. It stores
the current version through the database driver and marks that version
*dirty* while a migration runs.

The package uses only the standard library.

## Migration files

A source serves files whose names follow this pattern:

```
<version>_<name>.up.<ext>
<version>_<name>.down.<ext>
```

Examples are `1_create_users.up.sql` and `1_create_users.down.sql`. Sources
ignore files that do not match the pattern. If two files have the same
version and direction, the source raises an error when it loads them.

`schemashift.source.migrations.parse(raw)` turns one such name into a
`Migration` with the fields `version`, `identifier`, `direction` and `raw`.
For a name that does not match, it raises `ParseError`.
`schemashift.source.migrations.Migrations` holds these entries, sorted by
version. It offers `first()`, `prev(v)`, `next(v)`, `up(v)` and `down(v)`,
each of which returns `None` when it finds nothing.

## Sources

Every source implements `schemashift.source.driver.Driver`. That interface
has `open(url)`, `close()`, `first()`, `prev(v)`, `next(v)`, `read_up(v)`
and `read_down(v)`. A lookup that finds nothing raises `FileNotFoundError`.
The two read methods return a binary stream together with an identifier.

The package includes these sources:

- `schemashift.source.file.FileSource` reads a directory on disk. Open it
  with a `file://` URL. A relative path is taken relative to the current
  working directory, and an empty path means the current directory.
  `parse_url(url)` performs this resolution by itself.
- `schemashift.source.fsdriver.new(fsys, path)` reads from a directory
  tree object such as `pathlib.Path` or `zipfile.Path`. It cannot be opened
  from a URL. `PartialDriver` gives you every method except `open` and is
  meant for building your own tree-based source.
- `schemashift.source.s3` reads objects under a bucket prefix.
  `with_instance(client, config)` accepts any client that has
  `list_objects` and `get_object`. `parse_uri("s3://bucket/prefix")`
  builds the `Config` for you. Opening an `s3://` URL uses
  `HttpS3Client.from_environment()`, a small HTTPS client that signs its
  requests when the standard AWS key variables are set.
- `schemashift.source.bindata.with_instance(resource(names, asset_func))`
  reads in-memory assets by name. It cannot be opened from a URL.
- `schemashift.source.stub.StubSource` is an in-memory source meant for
  tests. Its bodies are the identifiers of its migrations.

When imported, each of these modules registers a driver under its scheme:
`file`, `s3`, `bindata` or `stub`. After that,
`schemashift.source.driver.open_source(url)` opens the driver for the URL's
scheme, and `list_drivers()` returns the names that are registered.
`register(name, driver)` adds a driver of your own. Registering the same
name a second time is an error.

## Running migrations

```python
from schemashift.migrate import new_with_instance, NoChangeError
from schemashift.source.file import FileSource

src = FileSource().open("file://./migrations")
m = new_with_instance("file", src, "mydb", my_database_driver)

try:
    m.up()
except NoChangeError:
    pass

version, dirty = m.version()
```

`new_with_database_instance(source_url, database_name, driver)` opens the
source from a URL in place of an instance you pass in.

`my_database_driver` is your own object implementing
`schemashift.migrate.DatabaseDriver`. It needs `lock()`, `unlock()`,
`run(body)` (which reads a migration body from a readable stream),
`set_version(version, dirty)`, `version()`, `drop()` and `close()`. It
reports "no version" as `-1`.

`Migrate` provides the following:

| Call | Effect |
| --- | --- |
| `up()` | Apply every pending up migration. |
| `down()` | Apply every down migration, back to no version. |
| `steps(n)` | Move `n` migrations up, or down when `n` is negative. |
| `migrate(v)` | Move up or down until version `v` is reached. |
| `force(v)` | Set the version and clear the dirty flag without running anything. `v` must be `-1` or more. |
| `drop()` | Ask the database driver to delete everything. |
| `version()` | Return `(version, dirty)`. Raises `NilVersionError` if no migration has been applied. |
| `run(*migrations)` | Run the given `schemashift.migration.Migration` objects as they are. |
| `close()` | Close the source and the database. |

Each operation holds the database lock for the time it runs. If the lock
is already held, it raises `LockedError`. If the lock is not acquired
within `lock_timeout` seconds (15 by default), it raises
`LockTimeoutError`. Migrations are read ahead in the background, at most
`prefetch_migrations` of them (10 by default). Calling `m.graceful_stop.set()`
stops the run at the next point between two migrations.

These operations raise the following errors:

- `NoChangeError` when there is nothing to do.
- `DirtyError` when an earlier run left the database dirty. Fix the
  database by hand, then call `force()`.
- `ShortLimitError` when `steps(n)` runs out of migrations partway.
  Its `short` attribute tells how many steps are missing.
- `FileNotFoundError` when the version you asked for, or the current
  version, does not exist in the source.

If an operation fails and unlocking fails too, both errors are reported
together as `schemashift.util.MultiError`. `close()` uses the same
reporting.

To receive progress messages, give `Migrate` a `log=` object that
implements `schemashift.migrate.Logger`. Set its `verbose` attribute to get
more detail.

`schemashift.util.filter_custom_query(url)` removes from a URL every query
parameter whose name starts with `x-`.

## What it does not do

- It has no database drivers. You provide the `DatabaseDriver`.
- It has no command-line program. It is used from Python code only.
- It has no sources beyond the ones listed above. There is, for example,
  no source that reads from a code-hosting service.

## Tests

```
pip install -e .[test]
pytest
```