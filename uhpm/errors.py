"""Exception hierarchy for uhpm."""

from pathlib import Path


class UhpmError(Exception):
    """Base exception for all uhpm errors."""


class MetadataError(UhpmError):
    """Raised when a descriptor, symlist, index or archive is malformed."""


class ConfigError(UhpmError):
    """Raised when the configuration file cannot be read or is invalid."""


# ---------------------------------------------------------------------------
# Caller-input errors
# ---------------------------------------------------------------------------


class NotFound(UhpmError):
    """Raised when a package or version does not exist."""

    def __init__(self, name: str, version: str | None = None) -> None:
        self.name = name
        self.version = version
        label = f"{name}@{version}" if version else name
        super().__init__(f"Package not found: {label}")


class AlreadyCurrent(UhpmError):
    """Raised when switching to the version that is already current."""

    def __init__(self, name: str, version: str) -> None:
        self.name = name
        self.version = version
        super().__init__(f"{name}@{version} is already the current version")


class Conflict(UhpmError):
    """Raised when a mutation would violate an invariant of the store."""


class StoreIO(UhpmError):
    """Raised when the package store is unavailable or a statement fails."""


# ---------------------------------------------------------------------------
# Resolution-time errors (the plan never executes)
# ---------------------------------------------------------------------------


class ResolutionError(UhpmError):
    """Base for errors raised while computing a plan."""


class CyclicDependency(ResolutionError):
    """Raised when the dependency graph contains a cycle."""

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        super().__init__("Cyclic dependency: " + " -> ".join(cycle + cycle[:1]))


class UnsatisfiableConstraint(ResolutionError):
    """Raised when no version of a package satisfies every requirer."""

    def __init__(self, name: str, requirers: list[tuple[str, str]]) -> None:
        self.name = name
        self.requirers = requirers
        detail = ", ".join(f"{who} requires {spec or '*'}" for who, spec in requirers)
        super().__init__(f"No version of {name} satisfies all constraints ({detail})")


class DependentsExist(Conflict, ResolutionError):
    """Raised when removing a package other installed packages depend on."""

    def __init__(self, blocked: dict[str, list[str]]) -> None:
        self.blocked = {name: sorted(blocked[name]) for name in sorted(blocked)}
        self.names = list(self.blocked)
        self.name = self.names[0]
        self.blockers = sorted({b for blockers in self.blocked.values() for b in blockers})
        details = "; ".join(f"{name} (required by {', '.join(b)})" for name, b in self.blocked.items())
        super().__init__(f"Cannot remove {details}")


# ---------------------------------------------------------------------------
# Execution-time errors
# ---------------------------------------------------------------------------


class TransportError(UhpmError):
    """Raised when package bytes cannot be retrieved."""

    def __init__(self, message: str, transient: bool = False) -> None:
        self.transient = transient
        super().__init__(message)


class IntegrityError(UhpmError):
    """Raised when fetched bytes do not match the declared checksum."""

    def __init__(self, name: str, expected: str, actual: str) -> None:
        self.name = name
        self.expected = expected
        self.actual = actual
        super().__init__(f"Checksum mismatch for {name}: expected {expected}, got {actual}")


class UnknownVariable(UhpmError):
    """Raised when a symlist target uses a variable token that is not recognized."""

    def __init__(self, token: str, template: str) -> None:
        self.token = token
        self.template = template
        super().__init__(f"Unknown variable ${token} in {template!r}")


class LinkConflict(UhpmError):
    """Raised when a link target is occupied by something the package does not own."""

    def __init__(self, path: Path) -> None:
        self.path = path
        super().__init__(f"Refusing to replace {path}: not owned by this package")


class UnlinkError(UhpmError):
    """Raised when unlinking stops partway.

    Attributes:
        removed: Targets that are confirmed gone.
        remaining: Targets that are still linked.
    """

    def __init__(self, message: str, removed: list[Path], remaining: list[Path]) -> None:
        self.removed = removed
        self.remaining = remaining
        super().__init__(message)


class InvalidTransition(UhpmError):
    """Raised when a package is moved to a lifecycle state it cannot reach."""
