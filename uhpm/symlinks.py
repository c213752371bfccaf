"""Symlink manager: expands symlist targets and projects payload files into the home directory.

The manager owns no state. Every operation works from the link specs it is
given, so re-running an operation after an interruption is safe.
"""

import os
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import structlog

from uhpm.errors import LinkConflict, MetadataError, UnknownVariable, UnlinkError
from uhpm.models import SymlistEntry

logger = structlog.get_logger()

_TOKEN_RE = re.compile(r"\$(?:\{([A-Za-z_][A-Za-z0-9_]*)\}|([A-Za-z_][A-Za-z0-9_]*))")


class Variable(str, Enum):
    """Variable tokens recognized in symlist targets."""

    HOME = "HOME"
    XDG_DATA_HOME = "XDG_DATA_HOME"
    XDG_CONFIG_HOME = "XDG_CONFIG_HOME"
    XDG_BIN_HOME = "XDG_BIN_HOME"


_XDG_DEFAULTS = {
    Variable.XDG_DATA_HOME: ".local/share",
    Variable.XDG_CONFIG_HOME: ".config",
    Variable.XDG_BIN_HOME: ".local/bin",
}


@dataclass(frozen=True)
class VariableContext:
    """Resolved absolute path for every recognized variable."""

    values: Mapping[Variable, Path] = field(default_factory=dict)

    @classmethod
    def from_environment(cls, home: Path | None = None, environ: Mapping[str, str] | None = None) -> "VariableContext":
        """Build a context from HOME and the XDG_* environment variables.

        Args:
            home: Home directory override (defaults to $HOME)
            environ: Environment mapping (defaults to os.environ)
        """
        environ = os.environ if environ is None else environ
        if home is None:
            home = Path(environ["HOME"]) if environ.get("HOME") else Path.home()
        values = {Variable.HOME: Path(home)}
        for variable, default in _XDG_DEFAULTS.items():
            value = environ.get(variable.value)
            values[variable] = Path(value) if value else Path(home) / default
        return cls(values)

    def with_overrides(self, overrides: Mapping[Variable, Path]) -> "VariableContext":
        merged = dict(self.values)
        merged.update(overrides)
        return VariableContext(merged)

    def expand(self, template: str) -> Path:
        """Substitute every variable token of a target template.

        Raises:
            UnknownVariable: If the template uses a token outside Variable
            MetadataError: If the expanded path is not absolute
        """

        def replace(match: re.Match) -> str:
            token = match.group(1) or match.group(2)
            try:
                variable = Variable(token)
            except ValueError:
                raise UnknownVariable(token, template) from None
            if variable not in self.values:
                raise UnknownVariable(token, template)
            return str(self.values[variable])

        path = Path(_TOKEN_RE.sub(replace, template))
        if not path.is_absolute():
            raise MetadataError(f"Link target {template!r} does not expand to an absolute path")
        return path


@dataclass(frozen=True)
class LinkSpec:
    """A concrete link: ``target`` should be a symlink pointing at ``source``."""

    source: Path
    target: Path


@dataclass
class _Step:
    target: Path
    replaced: Path | None
    created: bool


class SymlinkManager:
    """Creates, swaps and removes the symlinks of one package at a time."""

    def __init__(self, context: VariableContext) -> None:
        self.context = context

    def resolve(self, entries: Iterable[SymlistEntry], payload_dir: Path) -> list[LinkSpec]:
        """Expand symlist entries against the variable context and a payload directory."""
        links = []
        for entry in entries:
            links.append(LinkSpec(source=Path(payload_dir) / entry.source, target=self.context.expand(entry.target)))
        return links

    @staticmethod
    def _points_to(target: Path) -> Path | None:
        if not target.is_symlink():
            return None
        return Path(os.readlink(target))

    def is_linked(self, link: LinkSpec) -> bool:
        return self._points_to(link.target) == link.source

    def missing(self, links: Iterable[LinkSpec]) -> list[LinkSpec]:
        """Return the links that do not currently resolve to their source."""
        return [link for link in links if not self.is_linked(link)]

    def link_all(self, links: Iterable[LinkSpec], previous: Iterable[LinkSpec] = ()) -> list[Path]:
        """Create every link, replacing links owned by the package's previous version.

        A target that already points at the right source is left untouched. A
        target pointing at a ``previous`` source is swapped; previous targets
        with no counterpart in ``links`` are removed. Any other occupant of a
        target is a conflict. On failure every step taken so far is undone, so
        the package points either entirely at ``previous`` or entirely at
        ``links``.

        Args:
            links: Links to establish
            previous: Links of the version being replaced

        Returns:
            Targets that were created or swapped

        Raises:
            LinkConflict: If a target is occupied by something not owned
        """
        links = list(links)
        previous = list(previous)
        owned = {link.target: link.source for link in previous}
        journal: list[_Step] = []
        created: list[Path] = []

        try:
            for link in links:
                current = self._points_to(link.target)
                if current == link.source:
                    logger.debug("Link already in place", target=str(link.target))
                    continue

                replaced = None
                if current is not None:
                    if owned.get(link.target) != current:
                        raise LinkConflict(link.target)
                    link.target.unlink()
                    replaced = current
                elif link.target.exists():
                    raise LinkConflict(link.target)

                step = _Step(link.target, replaced, created=False)
                journal.append(step)
                link.target.parent.mkdir(parents=True, exist_ok=True)
                os.symlink(link.source, link.target)
                step.created = True
                created.append(link.target)
                logger.debug("Symlink created", target=str(link.target), source=str(link.source))

            wanted = {link.target for link in links}
            for old in previous:
                if old.target in wanted or self._points_to(old.target) != old.source:
                    continue
                old.target.unlink()
                journal.append(_Step(old.target, old.source, created=False))
                logger.debug("Stale symlink removed", target=str(old.target))
        except Exception:
            self._revert(journal)
            raise

        return created

    def _revert(self, journal: list[_Step]) -> None:
        logger.warning("Reverting symlink changes", steps=len(journal))
        for step in reversed(journal):
            try:
                if step.created and step.target.is_symlink():
                    step.target.unlink()
                if step.replaced is not None and not step.target.is_symlink():
                    os.symlink(step.replaced, step.target)
            except OSError as e:
                logger.error("Failed to revert symlink", target=str(step.target), error=str(e))

    def unlink_all(self, paths: Iterable[Path], expected: Mapping[Path, Path] | None = None) -> list[Path]:
        """Remove links; removal is not reversible.

        Paths that are already gone, that are not symlinks, or that (per
        ``expected``) point somewhere else no longer belong to the package and
        count as removed without being touched.

        Returns:
            Paths confirmed no longer linked by the package

        Raises:
            UnlinkError: If a link could not be removed; carries the split
                between removed and remaining paths
        """
        paths = list(paths)
        expected = expected or {}
        removed: list[Path] = []
        for path in paths:
            try:
                current = self._points_to(path)
                if current is None:
                    if path.exists():
                        logger.warning("Not a symlink, leaving it in place", path=str(path))
                elif path in expected and current != expected[path]:
                    logger.warning("Symlink no longer points into the package", path=str(path), points_to=str(current))
                else:
                    path.unlink()
                    logger.debug("Symlink removed", path=str(path))
                removed.append(path)
            except OSError as e:
                remaining = [p for p in paths if p not in removed]
                raise UnlinkError(f"Failed to unlink {path}: {e}", removed, remaining) from e
        return removed
