"""Data models for uhpm."""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class SourceKind(str, Enum):
    """Where the bytes of a package come from."""

    REPOSITORY = "repository"
    URL = "url"
    LOCAL = "local"


class FileKind(str, Enum):
    """Kind of filesystem artifact owned by an installed package."""

    LINK = "link"
    FILE = "file"


@dataclass(frozen=True)
class RepositoryReference:
    """Locates a package inside a configured repository."""

    repository: str
    name: str
    version: str | None = None

    def __str__(self) -> str:
        suffix = f"@{self.version}" if self.version else ""
        return f"{self.repository}/{self.name}{suffix}"


@dataclass(frozen=True)
class Source:
    """Source descriptor of a package archive.

    ``location`` is always something the fetcher can open: an http(s) or
    file:// URL, or a filesystem path. Repository sources also keep the
    reference they were resolved from.
    """

    kind: SourceKind
    location: str
    reference: RepositoryReference | None = None

    def __str__(self) -> str:
        if self.reference is not None:
            return f"{self.reference} ({self.location})"
        return self.location


@dataclass(frozen=True)
class Dependency:
    """Declared dependency: a package name and a version constraint."""

    name: str
    constraint: str = ""


@dataclass
class Package:
    """Represents a package descriptor or an installed package row."""

    name: str
    version: str
    author: str = ""
    checksum: str = ""
    source: Source = field(default_factory=lambda: Source(SourceKind.LOCAL, ""))
    dependencies: list[Dependency] = field(default_factory=list)
    is_current: bool = False

    @property
    def key(self) -> tuple[str, str]:
        return (self.name, self.version)

    @property
    def label(self) -> str:
        return f"{self.name}@{self.version}"


@dataclass(frozen=True)
class InstalledFile:
    """A filesystem artifact owned by one installed (name, version).

    Attributes:
        source_path: Path inside the package payload ("." for the payload itself)
        target_path: Resolved absolute path on disk
        kind: LINK for symlist entries, FILE for the extracted payload directory
    """

    name: str
    version: str
    source_path: str
    target_path: Path
    kind: FileKind = FileKind.LINK


@dataclass(frozen=True)
class DependencyEdge:
    """Dependency edge recorded for an installed package version."""

    name: str
    version: str
    dependency: str
    constraint: str = ""


@dataclass(frozen=True)
class SymlistEntry:
    """Symlist entry: payload-relative source and a templated target path."""

    source: str
    target: str
