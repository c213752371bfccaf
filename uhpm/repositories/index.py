"""Index repository: a YAML ``index.yaml`` served from a directory or an HTTP base URL."""

from pathlib import Path
from typing import Any
from urllib.parse import unquote, urljoin, urlparse

import structlog
import yaml

from uhpm.errors import MetadataError, TransportError
from uhpm.fetcher import Fetcher
from uhpm.metadata import parse_descriptor
from uhpm.models import Package, RepositoryReference, Source, SourceKind
from uhpm.repository import Repository
from uhpm.versions import parse_version

logger = structlog.get_logger()

INDEX_NAME = "index.yaml"


class IndexRepository(Repository):
    """Repository described by an index file listing every package version.

    The last index read successfully is cached and used when the base
    location cannot be reached.
    """

    def __init__(self, name: str, location: str, cache_dir: Path | None = None, fetcher: Fetcher | None = None) -> None:
        """Initialize an index repository.

        Args:
            name: Repository name from the configuration
            location: Base location (http(s) URL, file:// URL or directory path)
            cache_dir: Directory holding the cached index
            fetcher: Fetcher used to retrieve the index
        """
        super().__init__(name)
        self.location = location
        self.cache_dir = Path(cache_dir) if cache_dir is not None else None
        self.fetcher = fetcher or Fetcher()
        self._packages: dict[str, list[Package]] | None = None
        logger.debug("Initializing index repository", repository=name, location=location)

    @property
    def is_remote(self) -> bool:
        return urlparse(self.location).scheme in ("http", "https")

    def _url(self, relative: str) -> str:
        """Resolve a path from the index against the base location."""
        if urlparse(relative).scheme in ("http", "https", "file"):
            return relative
        if self.is_remote:
            return urljoin(self.location.rstrip("/") + "/", relative)
        base = self.location
        if urlparse(base).scheme == "file":
            base = unquote(urlparse(base).path)
        return str(Path(base).expanduser() / relative)

    @property
    def cache_file(self) -> Path | None:
        return self.cache_dir / INDEX_NAME if self.cache_dir is not None else None

    def _read_index(self) -> str:
        try:
            data = self.fetcher.fetch(self._url(INDEX_NAME), name=f"{self.name} index")
        except TransportError as e:
            cache = self.cache_file
            if cache is None or not cache.exists():
                logger.error("Repository index unavailable", repository=self.name, error=str(e))
                raise
            logger.warning("Repository unreachable, using cached index", repository=self.name, error=str(e))
            return self._decode(cache.read_bytes())

        text = self._decode(data)
        if self.cache_file is not None:
            self.cache_file.parent.mkdir(parents=True, exist_ok=True)
            self.cache_file.write_text(text, encoding="utf-8")
        return text

    def _decode(self, data: bytes) -> str:
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MetadataError(f"Index of repository {self.name} is not valid UTF-8: {e}") from e

    def _parse(self, text: str) -> dict[str, list[Package]]:
        origin = f"index of repository {self.name}"
        try:
            data: Any = yaml.safe_load(text) or {}
        except yaml.YAMLError as e:
            raise MetadataError(f"Invalid YAML in {origin}: {e}") from e
        entries = data.get("packages") if isinstance(data, dict) else None
        if not isinstance(entries, dict):
            raise MetadataError(f"Invalid {origin}: expected a 'packages' mapping")

        packages: dict[str, list[Package]] = {}
        for name, versions in entries.items():
            if not isinstance(versions, list):
                raise MetadataError(f"Invalid {origin}: versions of {name} must be a list")
            for entry in versions:
                if not isinstance(entry, dict) or "url" not in entry:
                    raise MetadataError(f"Invalid {origin}: entry of {name} needs a url")
                fields = {key: value for key, value in entry.items() if key not in ("url", "source")}
                package = parse_descriptor({"name": name, **fields}, origin)
                package.source = Source(
                    SourceKind.REPOSITORY,
                    self._url(str(entry["url"])),
                    RepositoryReference(self.name, package.name, package.version),
                )
                packages.setdefault(package.name, []).append(package)

        for versions in packages.values():
            versions.sort(key=lambda p: parse_version(p.version))
        logger.debug("Repository index loaded", repository=self.name, packages=len(packages))
        return packages

    def list_packages(self) -> dict[str, list[Package]]:
        if self._packages is None:
            self._packages = self._parse(self._read_index())
        return self._packages

    def refresh(self) -> None:
        """Forget the loaded index so the next lookup reads it again."""
        self._packages = None
