"""Directory repository: a plain directory of .uhp archives."""

from pathlib import Path

import structlog

from uhpm.errors import MetadataError, TransportError
from uhpm.fetcher import digest
from uhpm.metadata import read_descriptor
from uhpm.models import Package, RepositoryReference, Source, SourceKind
from uhpm.repository import Repository
from uhpm.versions import parse_version

logger = structlog.get_logger()

ARCHIVE_SUFFIX = ".uhp"


class DirectoryRepository(Repository):
    """Repository backed by a directory of archives.

    Descriptors are read from the archives themselves and checksums are
    computed from the archive bytes.
    """

    def __init__(self, name: str, path: Path | str) -> None:
        super().__init__(name)
        self.path = Path(path).expanduser()
        self._packages: dict[str, list[Package]] | None = None
        logger.debug("Initializing directory repository", repository=name, path=str(self.path))

    def list_packages(self) -> dict[str, list[Package]]:
        if self._packages is not None:
            return self._packages
        if not self.path.is_dir():
            raise TransportError(f"Repository directory {self.path} does not exist")

        packages: dict[str, list[Package]] = {}
        for archive in sorted(self.path.glob(f"*{ARCHIVE_SUFFIX}")):
            try:
                data = archive.read_bytes()
                package = read_descriptor(data)
            except (OSError, MetadataError) as e:
                logger.warning("Skipping unreadable archive", repository=self.name, archive=str(archive), error=str(e))
                continue
            package.checksum = digest(data)
            package.source = Source(
                SourceKind.REPOSITORY,
                str(archive),
                RepositoryReference(self.name, package.name, package.version),
            )
            packages.setdefault(package.name, []).append(package)

        for versions in packages.values():
            versions.sort(key=lambda p: parse_version(p.version))
        self._packages = packages
        logger.debug("Repository directory scanned", repository=self.name, packages=len(packages))
        return packages

    def refresh(self) -> None:
        self._packages = None
