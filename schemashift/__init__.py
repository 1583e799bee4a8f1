"""Read migrations from sources and apply them to a database driver."""

__version__ = "4.0.0"