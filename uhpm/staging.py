"""Staging area: private extraction directories for package archives."""

import io
import os
import shutil
import tarfile
import tempfile
from pathlib import Path

import structlog

from uhpm.errors import MetadataError

logger = structlog.get_logger()


def _check_member(member: tarfile.TarInfo, base: Path) -> None:
    name = member.name
    if name.startswith("/") or ".." in Path(name).parts:
        raise MetadataError(f"Unsafe archive member: {name}")
    if not (base / name).resolve().is_relative_to(base):
        raise MetadataError(f"Unsafe archive member (path traversal): {name}")

    if member.issym() or member.islnk():
        link = member.linkname or ""
        if link.startswith("/") or ".." in Path(link).parts:
            raise MetadataError(f"Unsafe link in archive: {name} -> {link}")
        anchor = base if member.islnk() else (base / name).parent
        if not (anchor / link).resolve().is_relative_to(base):
            raise MetadataError(f"Unsafe link in archive: {name} -> {link}")
    elif not (member.isfile() or member.isdir()):
        raise MetadataError(f"Unsupported archive member type: {name}")


def extract_archive(archive: bytes | Path, destination: Path) -> Path:
    """Extract a .uhp archive into ``destination`` after validating every member.

    Raises:
        MetadataError: If the archive is unreadable or contains unsafe members
    """
    destination = Path(destination)
    destination.mkdir(parents=True, exist_ok=True)
    base = destination.resolve()
    try:
        if isinstance(archive, Path):
            handle = tarfile.open(archive, "r:*")
        else:
            handle = tarfile.open(fileobj=io.BytesIO(archive), mode="r:*")
        with handle as tar:
            members = tar.getmembers()
            for member in members:
                _check_member(member, base)
            tar.extractall(destination, members=members)
    except (OSError, tarfile.TarError) as e:
        raise MetadataError(f"Cannot extract archive into {destination}: {e}") from e
    logger.debug("Archive extracted", destination=str(destination), members=len(members))
    return destination


class StagingArea:
    """Owns the private temporary directories packages are extracted into."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def extract(self, label: str, archive: bytes | Path) -> Path:
        """Extract an archive into a fresh staging directory and return it."""
        self.root.mkdir(parents=True, exist_ok=True)
        staged = Path(tempfile.mkdtemp(prefix=f"{label}-", dir=self.root))
        try:
            extract_archive(archive, staged)
        except BaseException:
            self.discard(staged)
            raise
        logger.debug("Package staged", package=label, path=str(staged))
        return staged

    def promote(self, staged: Path, final: Path) -> None:
        """Move a staged payload to its final location.

        A directory already at ``final`` is a leftover with no store record
        and is replaced.
        """
        if final.exists():
            logger.warning("Removing stale payload directory", path=str(final))
            shutil.rmtree(final)
        final.parent.mkdir(parents=True, exist_ok=True)
        os.replace(staged, final)
        logger.debug("Payload promoted", path=str(final))

    def discard(self, staged: Path | None) -> None:
        if staged is None or not staged.exists():
            return
        try:
            shutil.rmtree(staged)
        except OSError as e:
            logger.warning("Failed to remove staging directory", path=str(staged), error=str(e))
