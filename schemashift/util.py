"""Small helpers shared by the migration runner."""

from __future__ import annotations

from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

__all__ = ["MultiError", "suint", "filter_custom_query"]


class MultiError(Exception):
    """Several errors reported as one; ``None`` entries are dropped."""

    def __init__(self, *errs: BaseException | None) -> None:
        self.errs = [e for e in errs if e is not None]
        super().__init__(str(self))

    def __str__(self) -> str:
        return " and ".join(str(e) for e in self.errs if str(e))


def suint(n: int) -> int:
    """Return ``n`` unchanged, refusing negative values."""
    if n < 0:
        raise ValueError(f"suint({n}) expects input >= 0")
    return n


def filter_custom_query(url: str) -> str:
    """Return ``url`` without the query parameters whose names start with ``x-``."""
    parts = urlsplit(url)
    kept = [
        (key, value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
        if not key.startswith("x-")
    ]
    kept.sort(key=lambda item: item[0])
    return urlunsplit(parts._replace(query=urlencode(kept)))