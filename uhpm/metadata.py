"""Parsing of package descriptors (uhp.yaml) and symlists (symlist.yaml)."""

import io
import tarfile
from pathlib import Path
from typing import Any

import structlog
import yaml

from uhpm.errors import MetadataError
from uhpm.models import Dependency, Package, RepositoryReference, Source, SourceKind, SymlistEntry
from uhpm.versions import is_valid_version, parse_constraint

logger = structlog.get_logger()

DESCRIPTOR_NAME = "uhp.yaml"
SYMLIST_NAME = "symlist.yaml"


def _load_yaml(text: str, origin: str) -> Any:
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise MetadataError(f"Invalid YAML in {origin}: {e}") from e


def parse_dependencies(raw: Any, origin: str = "descriptor") -> list[Dependency]:
    """Parse a dependency declaration.

    Accepts either a ``{name: constraint}`` mapping or a list of
    ``{name, version}`` mappings.
    """
    if raw is None:
        return []
    if isinstance(raw, dict):
        items = [(name, spec) for name, spec in raw.items()]
    elif isinstance(raw, list):
        items = []
        for item in raw:
            if not isinstance(item, dict) or "name" not in item:
                raise MetadataError(f"Invalid dependency entry in {origin}: {item!r}")
            items.append((item["name"], item.get("version", "")))
    else:
        raise MetadataError(f"Invalid dependencies in {origin}: expected a mapping or a list")

    dependencies = []
    for name, spec in items:
        spec = "" if spec is None else str(spec)
        try:
            parse_constraint(spec)
        except ValueError as e:
            raise MetadataError(f"Invalid constraint for {name} in {origin}: {e}") from e
        dependencies.append(Dependency(name=str(name), constraint=spec))
    return dependencies


def parse_source(raw: Any, name: str, version: str) -> Source:
    """Parse the ``source`` field of a descriptor."""
    if raw is None:
        return Source(SourceKind.LOCAL, "")
    if isinstance(raw, str):
        kind = SourceKind.URL if "://" in raw else SourceKind.LOCAL
        return Source(kind, raw)
    if not isinstance(raw, dict):
        raise MetadataError(f"Invalid source for {name}: {raw!r}")
    try:
        kind = SourceKind(str(raw.get("type", "local")).lower())
    except ValueError as e:
        raise MetadataError(f"Unknown source type for {name}: {raw.get('type')!r}") from e
    location = str(raw.get("value", ""))
    reference = None
    if kind is SourceKind.REPOSITORY:
        reference = RepositoryReference(str(raw.get("repository", "")), name, version)
    return Source(kind, location, reference)


def parse_descriptor(data: Any, origin: str = "descriptor") -> Package:
    """Build a Package from a parsed descriptor mapping.

    Args:
        data: Mapping loaded from uhp.yaml or from a repository index entry
        origin: Human readable origin used in error messages

    Returns:
        Package descriptor

    Raises:
        MetadataError: If a required field is missing or invalid
    """
    if not isinstance(data, dict):
        raise MetadataError(f"Invalid descriptor in {origin}: expected a mapping")
    try:
        name = str(data["name"]).strip()
        version = str(data["version"]).strip()
    except KeyError as e:
        raise MetadataError(f"Missing field {e} in {origin}") from e
    if not name or "/" in name or "@" in name:
        raise MetadataError(f"Invalid package name {name!r} in {origin}")
    if not is_valid_version(version):
        raise MetadataError(f"Invalid version {version!r} in {origin}")

    return Package(
        name=name,
        version=version,
        author=str(data.get("author", "")),
        checksum=str(data.get("checksum", "") or ""),
        source=parse_source(data.get("source"), name, version),
        dependencies=parse_dependencies(data.get("dependencies"), origin),
    )


def load_descriptor(path: Path) -> Package:
    """Load a package descriptor from a uhp.yaml file."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise MetadataError(f"Cannot read descriptor {path}: {e}") from e
    return parse_descriptor(_load_yaml(text, str(path)), str(path))


def dump_descriptor(package: Package) -> str:
    """Serialize a package descriptor to uhp.yaml text."""
    data: dict[str, Any] = {
        "name": package.name,
        "version": package.version,
        "author": package.author,
    }
    if package.checksum:
        data["checksum"] = package.checksum
    if package.source.location:
        data["source"] = {"type": package.source.kind.value, "value": package.source.location}
    if package.dependencies:
        data["dependencies"] = {dep.name: dep.constraint for dep in package.dependencies}
    return yaml.safe_dump(data, default_flow_style=False, sort_keys=False)


def parse_symlist(text: str, origin: str = SYMLIST_NAME) -> list[SymlistEntry]:
    """Parse symlist.yaml text into entries."""
    raw = _load_yaml(text, origin)
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise MetadataError(f"Invalid symlist in {origin}: expected a list")

    entries = []
    for item in raw:
        if not isinstance(item, dict) or "source" not in item or "target" not in item:
            raise MetadataError(f"Invalid symlist entry in {origin}: {item!r}")
        source = str(item["source"])
        if Path(source).is_absolute() or ".." in Path(source).parts:
            raise MetadataError(f"Symlist source escapes the package: {source!r}")
        entries.append(SymlistEntry(source=source, target=str(item["target"])))
    return entries


def load_symlist(payload_dir: Path) -> list[SymlistEntry]:
    """Load the symlist of an extracted payload; a missing symlist means no links."""
    path = Path(payload_dir) / SYMLIST_NAME
    if not path.exists():
        logger.debug("No symlist in payload", payload=str(payload_dir))
        return []
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise MetadataError(f"Cannot read symlist {path}: {e}") from e
    return parse_symlist(text, str(path))


def _member_bytes(archive: tarfile.TarFile, name: str) -> bytes | None:
    for member in archive.getmembers():
        if member.isfile() and member.name.removeprefix("./") == name:
            handle = archive.extractfile(member)
            if handle is not None:
                return handle.read()
    return None


def read_descriptor(archive: bytes | Path) -> Package:
    """Read the descriptor of a .uhp archive without extracting it.

    Args:
        archive: Archive bytes or a path to a .uhp file

    Raises:
        MetadataError: If the archive is unreadable or has no uhp.yaml
    """
    origin = str(archive) if isinstance(archive, Path) else "archive"
    try:
        if isinstance(archive, Path):
            handle = tarfile.open(archive, "r:*")
        else:
            handle = tarfile.open(fileobj=io.BytesIO(archive), mode="r:*")
        with handle as tar:
            data = _member_bytes(tar, DESCRIPTOR_NAME)
    except (OSError, tarfile.TarError) as e:
        raise MetadataError(f"Cannot read package archive {origin}: {e}") from e
    if data is None:
        raise MetadataError(f"No {DESCRIPTOR_NAME} in {origin}")
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise MetadataError(f"{DESCRIPTOR_NAME} in {origin} is not valid UTF-8: {e}") from e
    return parse_descriptor(_load_yaml(text, origin), origin)
