"""Semantic version parsing and constraint matching.

Constraints use the comparison syntax found in package indexes:

    ""  or "*"           any version
    "1.2.0"              exactly 1.2.0 (same as "==1.2.0")
    ">=1.0.0,<2.0.0"     every comma separated clause must hold
    "!=1.3.0"            anything but 1.3.0
"""

import operator
import re

_VERSION_RE = re.compile(r"^v?(\d+)(?:\.(\d+))?(?:\.(\d+))?(?:-([0-9A-Za-z.-]+))?(?:\+[0-9A-Za-z.-]+)?$")
_CLAUSE_RE = re.compile(r"^(==|!=|>=|<=|>|<)?\s*(\S+)$")

_OPERATORS = {
    "==": operator.eq,
    "!=": operator.ne,
    ">=": operator.ge,
    "<=": operator.le,
    ">": operator.gt,
    "<": operator.lt,
}

VersionKey = tuple[int, int, int, int, str]


def parse_version(version: str) -> VersionKey:
    """Parse a version string into a sortable key.

    Missing minor/patch parts default to zero. A pre-release sorts before the
    release it precedes, so ``1.0.0-rc1 < 1.0.0``.

    Raises:
        ValueError: If the string is not a version.
    """
    if not isinstance(version, str) or not version.strip():
        raise ValueError(f"Invalid version: {version!r}")
    match = _VERSION_RE.match(version.strip())
    if not match:
        raise ValueError(f"Invalid version: {version!r}")
    major, minor, patch, pre = match.groups()
    return (int(major), int(minor or 0), int(patch or 0), 0 if pre else 1, pre or "")


def is_valid_version(version: str) -> bool:
    try:
        parse_version(version)
    except ValueError:
        return False
    return True


def parse_constraint(spec: str | None) -> list[tuple[str, VersionKey]]:
    """Split a constraint into ``(operator, version key)`` clauses.

    Raises:
        ValueError: If a clause is malformed.
    """
    if spec is None:
        return []
    spec = spec.strip()
    if spec in ("", "*"):
        return []
    clauses = []
    for part in spec.split(","):
        part = part.strip()
        if not part:
            continue
        match = _CLAUSE_RE.match(part)
        if not match:
            raise ValueError(f"Invalid version constraint: {spec!r}")
        op, version = match.groups()
        clauses.append((op or "==", parse_version(version)))
    return clauses


def satisfies(version: str, spec: str | None) -> bool:
    """Return True if ``version`` meets every clause of ``spec``."""
    key = parse_version(version)
    return all(_OPERATORS[op](key, bound) for op, bound in parse_constraint(spec))

