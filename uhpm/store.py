"""Package store: durable record of installed packages, their files and dependency edges.

Every multi-row mutation runs inside one SQLite transaction. Deleting a package
row cascades to its installed files and dependency edges through foreign keys,
and a partial unique index guarantees at most one current version per name.
"""

import sqlite3
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

import structlog

from uhpm.errors import AlreadyCurrent, Conflict, NotFound, StoreIO
from uhpm.models import (
    Dependency,
    DependencyEdge,
    FileKind,
    InstalledFile,
    Package,
    RepositoryReference,
    Source,
    SourceKind,
)
from uhpm.versions import parse_version

logger = structlog.get_logger()

SCHEMA = """
CREATE TABLE IF NOT EXISTS packages (
    name TEXT NOT NULL,
    version TEXT NOT NULL,
    author TEXT NOT NULL DEFAULT '',
    checksum TEXT NOT NULL DEFAULT '',
    source_kind TEXT NOT NULL,
    source TEXT NOT NULL DEFAULT '',
    repository TEXT,
    is_current INTEGER NOT NULL DEFAULT 0,
    installed_at TEXT NOT NULL,
    PRIMARY KEY (name, version)
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_packages_current ON packages(name) WHERE is_current = 1;

CREATE TABLE IF NOT EXISTS installed_files (
    name TEXT NOT NULL,
    version TEXT NOT NULL,
    source_path TEXT NOT NULL,
    target_path TEXT NOT NULL,
    kind TEXT NOT NULL CHECK (kind IN ('link', 'file')),
    PRIMARY KEY (name, version, target_path),
    FOREIGN KEY (name, version) REFERENCES packages(name, version) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS dependencies (
    name TEXT NOT NULL,
    version TEXT NOT NULL,
    dependency_name TEXT NOT NULL,
    constraint_spec TEXT NOT NULL DEFAULT '',
    PRIMARY KEY (name, version, dependency_name),
    FOREIGN KEY (name, version) REFERENCES packages(name, version) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_dependencies_target ON dependencies(dependency_name);
"""


@dataclass
class StoreTransaction:
    """An install transaction opened by PackageStore.begin_install."""

    package: Package
    files: list[InstalledFile] = field(default_factory=list)
    previous_current: str | None = None
    state: str = "open"


class PackageStore:
    """SQLite-backed store of installed packages.

    One connection is shared by all threads; a re-entrant lock gives the
    holder exclusive use of it for the duration of a transaction.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = path
        self._lock = threading.RLock()
        try:
            if path != ":memory:":
                Path(path).parent.mkdir(parents=True, exist_ok=True)
            self.conn = sqlite3.connect(str(path), isolation_level=None, check_same_thread=False)
            self.conn.row_factory = sqlite3.Row
            self.conn.execute("PRAGMA foreign_keys = ON")
            self.conn.executescript(SCHEMA)
        except (sqlite3.Error, OSError) as e:
            raise StoreIO(f"Cannot open package store at {path}: {e}") from e
        logger.debug("Package store opened", path=str(path))

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block inside BEGIN IMMEDIATE ... COMMIT, rolling back on any error."""
        with self._lock:
            try:
                self.conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise StoreIO(f"Cannot begin transaction: {e}") from e
            try:
                yield self.conn
            except BaseException:
                self._rollback_quietly()
                raise
            try:
                self.conn.execute("COMMIT")
            except sqlite3.Error as e:
                self._rollback_quietly()
                raise StoreIO(f"Commit failed: {e}") from e

    def _rollback_quietly(self) -> None:
        try:
            self.conn.execute("ROLLBACK")
        except sqlite3.Error as e:
            logger.error("Rollback failed", error=str(e))

    def begin_install(self, package: Package, files: Iterable[InstalledFile]) -> StoreTransaction:
        """Stage the rows of a new package version inside an open transaction.

        The store stays locked for the calling thread until ``commit`` or
        ``rollback`` is called with the returned transaction.

        Args:
            package: Descriptor of the version being installed
            files: Installed files of the version (payload + links)

        Raises:
            Conflict: If the version is already installed
            StoreIO: If the database fails
        """
        tx = StoreTransaction(package=package, files=list(files))
        self._lock.acquire()
        try:
            self.conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            self._lock.release()
            raise StoreIO(f"Cannot begin install transaction: {e}") from e

        try:
            self._insert_package(package, tx.files)
            tx.previous_current = self._current_version(package.name)
            self._set_current(package.name, package.version)
        except BaseException:
            self._rollback_quietly()
            tx.state = "rolled-back"
            self._lock.release()
            raise
        logger.debug("Install transaction opened", package=package.label, files=len(tx.files))
        return tx

    def commit(self, tx: StoreTransaction) -> None:
        """Commit an install transaction."""
        if tx.state != "open":
            raise Conflict(f"Transaction for {tx.package.label} is already {tx.state}")
        try:
            self.conn.execute("COMMIT")
            tx.state = "committed"
        except sqlite3.Error as e:
            self._rollback_quietly()
            tx.state = "rolled-back"
            raise StoreIO(f"Commit of {tx.package.label} failed: {e}") from e
        finally:
            self._lock.release()
        logger.info("Package committed", name=tx.package.name, version=tx.package.version)

    def rollback(self, tx: StoreTransaction) -> None:
        """Discard an open install transaction."""
        if tx.state != "open":
            return
        try:
            self._rollback_quietly()
            tx.state = "rolled-back"
        finally:
            self._lock.release()
        logger.info("Install transaction rolled back", name=tx.package.name, version=tx.package.version)

    def _insert_package(self, package: Package, files: list[InstalledFile]) -> None:
        source = package.source
        repository = source.reference.repository if source.reference else None
        try:
            self.conn.execute(
                "INSERT INTO packages (name, version, author, checksum, source_kind, source, repository,"
                " is_current, installed_at) VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?)",
                (
                    package.name,
                    package.version,
                    package.author,
                    package.checksum,
                    source.kind.value,
                    source.location,
                    repository,
                    datetime.now(timezone.utc).isoformat(),
                ),
            )
        except sqlite3.IntegrityError as e:
            raise Conflict(f"{package.label} is already installed") from e
        except sqlite3.Error as e:
            raise StoreIO(f"Cannot record {package.label}: {e}") from e

        try:
            self.conn.executemany(
                "INSERT INTO dependencies (name, version, dependency_name, constraint_spec) VALUES (?, ?, ?, ?)",
                [(package.name, package.version, dep.name, dep.constraint) for dep in package.dependencies],
            )
            self.conn.executemany(
                "INSERT OR REPLACE INTO installed_files (name, version, source_path, target_path, kind)"
                " VALUES (?, ?, ?, ?, ?)",
                [(f.name, f.version, f.source_path, str(f.target_path), f.kind.value) for f in files],
            )
        except sqlite3.Error as e:
            raise StoreIO(f"Cannot record files of {package.label}: {e}") from e

    # ------------------------------------------------------------------
    # Current version
    # ------------------------------------------------------------------

    def _current_version(self, name: str) -> str | None:
        row = self.conn.execute("SELECT version FROM packages WHERE name = ? AND is_current = 1", (name,)).fetchone()
        return row["version"] if row else None

    def _set_current(self, name: str, version: str) -> None:
        self.conn.execute("UPDATE packages SET is_current = 0 WHERE name = ? AND is_current = 1", (name,))
        self.conn.execute("UPDATE packages SET is_current = 1 WHERE name = ? AND version = ?", (name, version))

    def mark_current(self, name: str, version: str) -> str | None:
        """Make ``version`` the current version of ``name``.

        Unsetting the old current version and setting the new one happen in
        one transaction, so no reader sees zero or two current versions.

        Returns:
            The previously current version, if any

        Raises:
            NotFound: If the version is not installed
            AlreadyCurrent: If it already is the current version
        """
        try:
            with self.transaction() as conn:
                row = conn.execute(
                    "SELECT is_current FROM packages WHERE name = ? AND version = ?", (name, version)
                ).fetchone()
                if row is None:
                    raise NotFound(name, version)
                if row["is_current"]:
                    raise AlreadyCurrent(name, version)
                previous = self._current_version(name)
                self._set_current(name, version)
        except sqlite3.Error as e:
            raise StoreIO(f"Cannot switch {name} to {version}: {e}") from e
        logger.info("Current version changed", name=name, version=version, previous=previous)
        return previous

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self.conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise StoreIO(f"Query failed: {e}") from e

    def _to_packages(self, rows: list[sqlite3.Row]) -> list[Package]:
        edges: dict[tuple[str, str], list[Dependency]] = {}
        for edge in self.edges():
            edges.setdefault((edge.name, edge.version), []).append(Dependency(edge.dependency, edge.constraint))

        packages = []
        for row in rows:
            reference = None
            if row["repository"]:
                reference = RepositoryReference(row["repository"], row["name"], row["version"])
            packages.append(
                Package(
                    name=row["name"],
                    version=row["version"],
                    author=row["author"],
                    checksum=row["checksum"],
                    source=Source(SourceKind(row["source_kind"]), row["source"], reference),
                    dependencies=edges.get((row["name"], row["version"]), []),
                    is_current=bool(row["is_current"]),
                )
            )
        packages.sort(key=lambda p: (p.name, parse_version(p.version)))
        return packages

    def list_installed(self) -> list[Package]:
        """Return every installed package version, ordered by name then version."""
        return self._to_packages(self._query("SELECT * FROM packages"))

    def versions(self, name: str) -> list[Package]:
        """Return every installed version of ``name``, lowest first."""
        return self._to_packages(self._query("SELECT * FROM packages WHERE name = ?", (name,)))

    def find(self, name: str, version: str | None = None) -> Package | None:
        """Find an installed version; without ``version`` the current one."""
        if version is None:
            rows = self._query("SELECT * FROM packages WHERE name = ? AND is_current = 1", (name,))
        else:
            rows = self._query("SELECT * FROM packages WHERE name = ? AND version = ?", (name, version))
        packages = self._to_packages(rows)
        return packages[0] if packages else None

    def installed_files_of(self, name: str, version: str) -> list[InstalledFile]:
        rows = self._query(
            "SELECT * FROM installed_files WHERE name = ? AND version = ? ORDER BY kind, target_path",
            (name, version),
        )
        return [
            InstalledFile(
                name=row["name"],
                version=row["version"],
                source_path=row["source_path"],
                target_path=Path(row["target_path"]),
                kind=FileKind(row["kind"]),
            )
            for row in rows
        ]

    def edges(self) -> list[DependencyEdge]:
        """Return every dependency edge of every installed version."""
        rows = self._query("SELECT * FROM dependencies ORDER BY name, version, dependency_name")
        return [
            DependencyEdge(row["name"], row["version"], row["dependency_name"], row["constraint_spec"]) for row in rows
        ]

    def dependents_of(self, name: str) -> list[DependencyEdge]:
        """Return edges of other packages that point at ``name``."""
        rows = self._query(
            "SELECT * FROM dependencies WHERE dependency_name = ? AND name != ? ORDER BY name, version",
            (name, name),
        )
        return [
            DependencyEdge(row["name"], row["version"], row["dependency_name"], row["constraint_spec"]) for row in rows
        ]

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------

    def remove(self, name: str, version: str, promote: str | None = None) -> str | None:
        """Delete a package version with its files and dependency edges.

        If the removed version was current, another installed version becomes
        current in the same transaction: ``promote`` when given, otherwise the
        highest remaining version.

        Returns:
            The version promoted to current, if any

        Raises:
            NotFound: If the version is not installed
        """
        promoted = None
        try:
            with self.transaction() as conn:
                row = conn.execute(
                    "SELECT is_current FROM packages WHERE name = ? AND version = ?", (name, version)
                ).fetchone()
                if row is None:
                    raise NotFound(name, version)
                conn.execute("DELETE FROM packages WHERE name = ? AND version = ?", (name, version))
                if row["is_current"]:
                    remaining = [r["version"] for r in conn.execute("SELECT version FROM packages WHERE name = ?", (name,))]
                    if promote is not None and promote not in remaining:
                        raise NotFound(name, promote)
                    if remaining:
                        promoted = promote or max(remaining, key=parse_version)
                        self._set_current(name, promoted)
        except sqlite3.Error as e:
            raise StoreIO(f"Cannot remove {name}@{version}: {e}") from e
        logger.info("Package removed from store", name=name, version=version, promoted=promoted)
        return promoted

    def forget_files(self, name: str, version: str, targets: Iterable[Path]) -> None:
        """Drop installed-file rows whose targets are confirmed gone."""
        targets = [str(t) for t in targets]
        if not targets:
            return
        try:
            with self.transaction() as conn:
                conn.executemany(
                    "DELETE FROM installed_files WHERE name = ? AND version = ? AND target_path = ?",
                    [(name, version, t) for t in targets],
                )
        except sqlite3.Error as e:
            raise StoreIO(f"Cannot update files of {name}@{version}: {e}") from e
        logger.debug("Forgot installed files", name=name, version=version, count=len(targets))
