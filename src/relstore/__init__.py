"""relstore - A relational data-access layer with change-tracked entities and a filter compiler."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("relstore")
except PackageNotFoundError:
    __version__ = "unknown"

__all__ = ["__version__"]
