"""Repository implementations."""

from pathlib import Path
from urllib.parse import urlparse

from uhpm.fetcher import Fetcher
from uhpm.repositories.directory import DirectoryRepository
from uhpm.repositories.index import INDEX_NAME, IndexRepository
from uhpm.repository import Repository

__all__ = ["DirectoryRepository", "IndexRepository", "open_repository"]


def open_repository(name: str, location: str, cache_root: Path | None = None, fetcher: Fetcher | None = None) -> Repository:
    """Pick the backend for a configured location.

    A local directory without an index is a DirectoryRepository; anything
    else is read through its index.
    """
    if urlparse(location).scheme not in ("http", "https", "file"):
        path = Path(location).expanduser()
        if path.is_dir() and not (path / INDEX_NAME).exists():
            return DirectoryRepository(name, path)
    cache_dir = cache_root / name if cache_root is not None else None
    return IndexRepository(name, location, cache_dir=cache_dir, fetcher=fetcher)
