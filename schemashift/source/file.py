"""Source driver reading migration files from a local directory."""

from __future__ import annotations

import os
from pathlib import Path
from urllib.parse import unquote, urlsplit

from schemashift.source.driver import list_drivers, register
from schemashift.source.fsdriver import PartialDriver

__all__ = ["FileSource", "parse_url"]


class FileSource(PartialDriver):
    """Reads migrations from the directory named by a ``file://`` URL."""

    def __init__(self) -> None:
        super().__init__()
        self.url = ""
        self.path = ""

    def open(self, url: str) -> FileSource:
        directory = parse_url(url)
        driver = FileSource()
        driver.url = url
        driver.path = directory
        driver.init(Path(directory), ".")
        return driver


def parse_url(url: str) -> str:
    """Return the absolute directory named by a ``file://`` URL.

    An empty path means the current directory; relative paths are taken
    relative to it.
    """
    parts = urlsplit(url)
    host = parts.netloc.rpartition("@")[2]
    path = unquote(host + parts.path)
    if not path:
        return os.getcwd()
    if not os.path.isabs(path):
        return os.path.abspath(path)
    return path


if "file" not in list_drivers():
    register("file", FileSource())