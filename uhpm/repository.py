"""Repository interface for locating package descriptors."""

from abc import ABC, abstractmethod

import structlog

from uhpm.errors import NotFound, UhpmError
from uhpm.models import Package
from uhpm.versions import parse_version, satisfies

logger = structlog.get_logger()


class Repository(ABC):
    """Abstract base class for package repositories."""

    def __init__(self, name: str) -> None:
        self.name = name

    @abstractmethod
    def list_packages(self) -> dict[str, list[Package]]:
        """Return every available descriptor, grouped by package name."""
        pass

    def candidates(self, name: str) -> list[Package]:
        """Return the available versions of ``name``."""
        return list(self.list_packages().get(name, []))

    def resolve(self, name: str, version: str | None = None) -> Package:
        """Return the highest version of ``name`` matching ``version``.

        ``version`` may be an exact version or a constraint.

        Raises:
            NotFound: If no version matches
        """
        matching = [p for p in self.candidates(name) if satisfies(p.version, version)]
        if not matching:
            raise NotFound(name, version)
        return max(matching, key=lambda p: parse_version(p.version))

    def refresh(self) -> None:
        """Forget any cached listing."""
        pass

    def search(self, query: str) -> list[Package]:
        """Return the newest version of every package whose name contains ``query``."""
        query = query.lower()
        found = []
        for name, versions in sorted(self.list_packages().items()):
            if query in name.lower() and versions:
                found.append(max(versions, key=lambda p: parse_version(p.version)))
        return found


class RepositorySet:
    """Aggregates configured repositories; the first one listing a version wins."""

    def __init__(self, repositories: list[Repository] | None = None) -> None:
        self.repositories = list(repositories or [])

    def __iter__(self):
        return iter(self.repositories)

    def __len__(self) -> int:
        return len(self.repositories)

    def refresh(self) -> None:
        for repository in self.repositories:
            repository.refresh()

    def candidates(self, name: str) -> list[Package]:
        found: dict[str, Package] = {}
        for repository in self.repositories:
            try:
                packages = repository.candidates(name)
            except UhpmError as e:
                logger.warning("Repository unavailable", repository=repository.name, error=str(e))
                continue
            for package in packages:
                found.setdefault(package.version, package)
        return sorted(found.values(), key=lambda p: parse_version(p.version))

    def resolve(self, name: str, version: str | None = None) -> Package:
        matching = [p for p in self.candidates(name) if satisfies(p.version, version)]
        if not matching:
            raise NotFound(name, version)
        return matching[-1]

    def search(self, query: str) -> list[Package]:
        found: dict[str, Package] = {}
        for repository in self.repositories:
            try:
                results = repository.search(query)
            except UhpmError as e:
                logger.warning("Repository unavailable", repository=repository.name, error=str(e))
                continue
            for package in results:
                best = found.get(package.name)
                if best is None or parse_version(package.version) > parse_version(best.version):
                    found[package.name] = package
        return [found[name] for name in sorted(found)]
