"""Installation engine: executes resolver plans package by package.

Fetch, verify and extract run on a bounded worker pool and touch only private
staging directories. Committing (store transaction plus symlink mutation) is
serialized by a single installation lock and follows the plan order; a
package whose predecessors did not commit is skipped.
"""

import fcntl
import shutil
import threading
from collections.abc import Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import structlog

from uhpm.config import Config, Layout
from uhpm.errors import IntegrityError, InvalidTransition, MetadataError, NotFound, UhpmError, UnlinkError
from uhpm.fetcher import Fetcher, ProgressCallback, digest, verify_checksum
from uhpm.metadata import load_symlist, read_descriptor
from uhpm.models import FileKind, InstalledFile, Package, Source, SourceKind
from uhpm.repositories import open_repository
from uhpm.repository import RepositorySet
from uhpm.resolver import ActionKind, Plan, PlanAction, Resolver, parse_request
from uhpm.staging import StagingArea, extract_archive
from uhpm.store import PackageStore
from uhpm.symlinks import LinkSpec, SymlinkManager
from uhpm.versions import parse_version

logger = structlog.get_logger()

SKIPPED_DEPENDENCY = "SkippedDueToDependencyFailure"
CANCELLED = "cancelled"


class PackageState(str, Enum):
    """Lifecycle state of one package within an operation."""

    REQUESTED = "requested"
    FETCHING = "fetching"
    VERIFYING = "verifying"
    EXTRACTING = "extracting"
    STAGED = "staged"
    COMMITTING = "committing"
    INSTALLED = "installed"
    REMOVING = "removing"
    GONE = "gone"
    FAILED = "failed"


TRANSITIONS: dict[PackageState, set[PackageState]] = {
    PackageState.REQUESTED: {PackageState.FETCHING, PackageState.STAGED, PackageState.REMOVING},
    PackageState.FETCHING: {PackageState.VERIFYING},
    PackageState.VERIFYING: {PackageState.EXTRACTING},
    PackageState.EXTRACTING: {PackageState.STAGED},
    PackageState.STAGED: {PackageState.COMMITTING},
    PackageState.COMMITTING: {PackageState.INSTALLED},
    PackageState.INSTALLED: {PackageState.REMOVING},
    PackageState.REMOVING: {PackageState.GONE},
    PackageState.GONE: set(),
    PackageState.FAILED: set(),
}


class OutcomeStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class Outcome:
    """What happened to one package of an operation."""

    name: str
    version: str
    action: ActionKind
    status: OutcomeStatus
    state: PackageState
    reason: str = ""
    detail: str = ""

    @property
    def label(self) -> str:
        return f"{self.name}@{self.version}"

    @property
    def ok(self) -> bool:
        return self.status is OutcomeStatus.SUCCEEDED


@dataclass
class OperationReport:
    """Per-package outcomes of one requested operation."""

    operation: str
    outcomes: list[Outcome] = field(default_factory=list)

    def __iter__(self):
        return iter(self.outcomes)

    def __len__(self) -> int:
        return len(self.outcomes)

    @property
    def ok(self) -> bool:
        return all(outcome.status is not OutcomeStatus.FAILED for outcome in self.outcomes)

    def by_status(self, status: OutcomeStatus) -> list[Outcome]:
        return [outcome for outcome in self.outcomes if outcome.status is status]

    def get(self, name: str) -> Outcome | None:
        for outcome in self.outcomes:
            if outcome.name == name:
                return outcome
        return None


@dataclass
class PackageTask:
    """State machine of one plan action."""

    action: PlanAction
    state: PackageState = PackageState.REQUESTED
    history: list[PackageState] = field(default_factory=lambda: [PackageState.REQUESTED])
    staged: Path | None = None

    @property
    def label(self) -> str:
        return self.action.label

    def advance(self, state: PackageState) -> None:
        if state is not PackageState.FAILED and state not in TRANSITIONS[self.state]:
            raise InvalidTransition(f"{self.label}: cannot go from {self.state.value} to {state.value}")
        if self.state in (PackageState.GONE, PackageState.FAILED):
            raise InvalidTransition(f"{self.label}: {self.state.value} is terminal")
        logger.debug("Package state changed", package=self.label, old=self.state.value, new=state.value)
        self.state = state
        self.history.append(state)


class InstallLock:
    """Global installation lock: a thread lock plus an flock on the lock file."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()

    @contextmanager
    def hold(self):
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a") as handle:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


class Engine:
    """Drives install, update, switch, remove and repair operations.

    Args:
        store: Package store
        layout: On-disk layout of the uhpm home
        symlinks: Symlink manager bound to the variable context
        fetcher: Fetcher for package archives
        repositories: Configured repositories
        concurrency: Size of the fetch/verify/extract worker pool
        update_policy: ``resolve`` or ``in-place``
    """

    def __init__(
        self,
        store: PackageStore,
        layout: Layout,
        symlinks: SymlinkManager,
        fetcher: Fetcher | None = None,
        repositories: RepositorySet | None = None,
        concurrency: int = 4,
        update_policy: str = "resolve",
    ) -> None:
        self.store = store
        self.layout = layout
        self.symlinks = symlinks
        self.fetcher = fetcher or Fetcher()
        self.repositories = repositories if repositories is not None else RepositorySet()
        self.concurrency = max(1, concurrency)
        self.update_policy = update_policy
        self.staging = StagingArea(layout.staging)
        self.lock = InstallLock(layout.lock)
        self.resolver = Resolver(store, self.repositories)

    @classmethod
    def from_config(cls, config: Config) -> "Engine":
        """Build an engine from the user configuration."""
        layout = config.layout
        layout.ensure()
        fetcher = Fetcher(retries=config.retries, backoff=config.backoff, timeout=config.timeout)
        repositories = RepositorySet(
            [open_repository(name, location, layout.cache, fetcher) for name, location in config.repositories.items()]
        )
        return cls(
            store=PackageStore(layout.database),
            layout=layout,
            symlinks=SymlinkManager(config.variable_context()),
            fetcher=fetcher,
            repositories=repositories,
            concurrency=config.concurrency,
            update_policy=config.update_policy,
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def install(
        self,
        names: Iterable[str] = (),
        files: Iterable[Path] = (),
        checksum: str | None = None,
        cancel: threading.Event | None = None,
        progress: ProgressCallback | None = None,
    ) -> OperationReport:
        """Install packages by name (``name`` or ``name@constraint``) or from local archives."""
        wanted = [parse_request(name) for name in names]
        packages = [self._local_package(Path(path), checksum) for path in files]
        plan = self.resolver.plan_install(wanted, packages)
        return self.execute(plan, cancel=cancel, progress=progress)

    def update(
        self,
        names: Iterable[str] = (),
        files: Iterable[Path] = (),
        checksum: str | None = None,
        policy: str | None = None,
        cancel: threading.Event | None = None,
        progress: ProgressCallback | None = None,
    ) -> OperationReport:
        """Update packages from the repositories or from local archives."""
        policy = policy or self.update_policy
        plans = []
        for path in files:
            package = self._local_package(Path(path), checksum)
            if self.store.find(package.name) is None:
                raise NotFound(package.name)
            plans.append((package.name, self.resolver.plan_install(packages=[package], operation="update")))
        for name in names:
            plans.append((name, self.resolver.plan_update(name, policy)))

        report = OperationReport("update")
        for name, plan in plans:
            if plan.actions:
                report.outcomes.extend(self.execute(plan, cancel=cancel, progress=progress).outcomes)
                continue
            current = self.store.find(name)
            report.outcomes.append(
                Outcome(
                    name,
                    current.version,
                    ActionKind.INSTALL,
                    OutcomeStatus.SKIPPED,
                    PackageState.INSTALLED,
                    reason="up to date",
                )
            )
        return report

    def switch(self, name: str, version: str) -> OperationReport:
        """Make an installed version current and point its links at it."""
        return self.execute(self.resolver.plan_switch(name, version))

    def remove(self, targets: Iterable[str], force: bool = False) -> OperationReport:
        """Remove packages given as ``name`` (every version) or ``name@version``."""
        pairs = []
        for target in targets:
            name, _, version = target.partition("@")
            pairs.append((name, version or None))
        return self.execute(self.resolver.plan_remove(pairs, force=force))

    def repair(self, names: Iterable[str] | None = None) -> OperationReport:
        """Re-create missing links of current versions from the store records."""
        return self.execute(self.resolver.plan_repair(names))

    def check_for_update(self, name: str) -> Package | None:
        """Return the newest repository version newer than the current one, if any."""
        current = self.store.find(name)
        if current is None:
            raise NotFound(name)
        candidates = self.repositories.candidates(name)
        if not candidates:
            return None
        newest = max(candidates, key=lambda p: parse_version(p.version))
        if parse_version(newest.version) > parse_version(current.version):
            logger.info("Update available", name=name, current=current.version, latest=newest.version)
            return newest
        return None

    def search(self, query: str) -> list[Package]:
        return self.repositories.search(query)

    def list_installed(self) -> list[Package]:
        return self.store.list_installed()

    def unpack(self, archive: Path | str, destination: Path, checksum: str | None = None) -> Package:
        """Extract an archive into ``destination`` without installing it."""
        data = self.fetcher.fetch(str(archive))
        if checksum:
            verify_checksum(str(archive), data, checksum)
        package = read_descriptor(data)
        extract_archive(data, Path(destination))
        logger.info("Package unpacked", package=package.label, destination=str(destination))
        return package

    def _local_package(self, path: Path, checksum: str | None) -> Package:
        try:
            data = path.read_bytes()
        except OSError as e:
            raise NotFound(str(path)) from e
        package = read_descriptor(data)
        if checksum:
            package.checksum = checksum
        else:
            package.checksum = digest(data)
            logger.warning("No checksum given for local archive, recording computed digest", path=str(path))
        package.source = Source(SourceKind.LOCAL, str(path.resolve()))
        return package

    # ------------------------------------------------------------------
    # Plan execution
    # ------------------------------------------------------------------

    def execute(
        self,
        plan: Plan,
        cancel: threading.Event | None = None,
        progress: ProgressCallback | None = None,
    ) -> OperationReport:
        """Run a plan and report one outcome per action."""
        cancel = cancel or threading.Event()
        report = OperationReport(plan.operation)
        tasks = [PackageTask(action) for action in plan]
        outcomes: dict[str, Outcome] = {}
        futures: dict[str, Future] = {}

        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="uhpm-fetch") as pool:
            for task in tasks:
                if task.action.kind is ActionKind.INSTALL and not cancel.is_set():
                    futures[task.label] = pool.submit(self._prepare, task, progress, cancel)

            try:
                for task in tasks:
                    outcome = self._run(task, futures.get(task.label), outcomes, cancel)
                    outcomes[task.label] = outcome
                    report.outcomes.append(outcome)
            finally:
                for future in futures.values():
                    future.cancel()
                for task in tasks:
                    if task.staged is not None:
                        self.staging.discard(task.staged)

        logger.info(
            "Operation finished",
            operation=plan.operation,
            succeeded=len(report.by_status(OutcomeStatus.SUCCEEDED)),
            failed=len(report.by_status(OutcomeStatus.FAILED)),
            skipped=len(report.by_status(OutcomeStatus.SKIPPED)),
        )
        return report

    def _outcome(self, task: PackageTask, status: OutcomeStatus, reason: str = "", detail: str = "") -> Outcome:
        action = task.action
        return Outcome(action.name, action.version, action.kind, status, task.state, reason, detail)

    def _run(
        self, task: PackageTask, future: Future | None, outcomes: dict[str, Outcome], cancel: threading.Event
    ) -> Outcome:
        action = task.action
        if cancel.is_set():
            if future is not None:
                future.cancel()
            logger.info("Skipping package, operation cancelled", package=task.label)
            return self._outcome(task, OutcomeStatus.SKIPPED, CANCELLED)

        failed = [label for label in action.depends_on if label in outcomes and not outcomes[label].ok]
        if failed:
            if future is not None and not future.cancel():
                future.exception()
            logger.warning("Skipping package, dependency failed", package=task.label, failed=failed)
            return self._outcome(task, OutcomeStatus.SKIPPED, SKIPPED_DEPENDENCY, ", ".join(failed))

        try:
            if future is not None:
                future.result()
            if cancel.is_set():
                return self._outcome(task, OutcomeStatus.SKIPPED, CANCELLED)
            with self.lock.hold():
                detail = self._commit(task)
        except UhpmError as e:
            logger.error("Package operation failed", package=task.label, action=action.kind.value, error=str(e))
            if cancel.is_set() and task.state is not PackageState.COMMITTING:
                return self._outcome(task, OutcomeStatus.SKIPPED, CANCELLED, str(e))
            reason = type(e).__name__
            task.advance(PackageState.FAILED)
            return self._outcome(task, OutcomeStatus.FAILED, reason, str(e))
        except OSError as e:
            logger.error("Package operation failed", package=task.label, action=action.kind.value, error=str(e))
            task.advance(PackageState.FAILED)
            return self._outcome(task, OutcomeStatus.FAILED, type(e).__name__, str(e))
        return self._outcome(task, OutcomeStatus.SUCCEEDED, detail=detail)

    def _prepare(self, task: PackageTask, progress: ProgressCallback | None, cancel: threading.Event) -> None:
        """Fetch, verify and extract one package into its staging directory."""
        package = task.action.package
        if cancel.is_set():
            return
        task.advance(PackageState.FETCHING)
        data = self.fetcher.fetch(package.source, package.name, progress, cancel)

        task.advance(PackageState.VERIFYING)
        if package.checksum:
            verify_checksum(package.name, data, package.checksum)
        inner = read_descriptor(data)
        if (inner.name, inner.version) != package.key:
            raise IntegrityError(package.name, package.label, inner.label)

        task.advance(PackageState.EXTRACTING)
        task.staged = self.staging.extract(package.label, data)
        task.advance(PackageState.STAGED)
        logger.info("Package staged", package=package.label)

    def _commit(self, task: PackageTask) -> str:
        kind = task.action.kind
        if kind is ActionKind.INSTALL:
            return self._commit_install(task)
        if kind is ActionKind.SWITCH:
            task.advance(PackageState.STAGED)
            return self._commit_switch(task)
        if kind is ActionKind.RELINK:
            task.advance(PackageState.STAGED)
            task.advance(PackageState.COMMITTING)
            created = self._relink(task.action.package)
            task.advance(PackageState.INSTALLED)
            return f"relinked {len(created)} link(s)"
        return self._commit_remove(task)

    # ------------------------------------------------------------------
    # Committing
    # ------------------------------------------------------------------

    def _links_of(self, package: Package) -> list[LinkSpec]:
        payload = self.layout.payload_dir(package.name, package.version)
        return [
            LinkSpec(source=payload / f.source_path, target=f.target_path)
            for f in self.store.installed_files_of(package.name, package.version)
            if f.kind is FileKind.LINK
        ]

    def _other_links(self, name: str, version: str) -> list[LinkSpec]:
        links = []
        for package in self.store.versions(name):
            if package.version != version:
                links.extend(self._links_of(package))
        return links

    def _commit_install(self, task: PackageTask) -> str:
        package = task.action.package
        if task.staged is None:
            raise MetadataError(f"{package.label} was not staged")

        if self.store.find(package.name, package.version) is not None:
            # Rows are already committed: only the links can be missing.
            task.advance(PackageState.COMMITTING)
            existing = self.store.find(package.name, package.version)
            if not existing.is_current:
                self.store.mark_current(package.name, package.version)
            created = self._relink(existing)
            task.advance(PackageState.INSTALLED)
            return f"already installed, relinked {len(created)} link(s)"

        final = self.layout.payload_dir(package.name, package.version)
        links = self.symlinks.resolve(load_symlist(task.staged), final)
        previous = self.store.find(package.name)
        previous_links = self._links_of(previous) if previous is not None else []

        task.advance(PackageState.COMMITTING)
        self.staging.promote(task.staged, final)
        task.staged = None
        files = [InstalledFile(package.name, package.version, ".", final, FileKind.FILE)]
        files += [
            InstalledFile(package.name, package.version, str(link.source.relative_to(final)), link.target)
            for link in links
        ]

        try:
            self.store.commit(self.store.begin_install(package, files))
        except UhpmError:
            shutil.rmtree(final, ignore_errors=True)
            raise

        try:
            created = self.symlinks.link_all(links, previous_links)
        except Exception:
            logger.error("Linking failed after commit, removing rows", package=package.label)
            self.store.remove(package.name, package.version, promote=previous.version if previous else None)
            shutil.rmtree(final, ignore_errors=True)
            raise

        task.advance(PackageState.INSTALLED)
        logger.info("Package installed", name=package.name, version=package.version, links=len(links))
        if previous is not None:
            return f"installed, replacing {previous.version}"
        return f"installed with {len(created)} link(s)"

    def _commit_switch(self, task: PackageTask) -> str:
        package = task.action.package
        previous = self.store.find(package.name)
        links = self._links_of(package)
        previous_links = self._links_of(previous) if previous is not None else []
        if not self.layout.payload_dir(package.name, package.version).is_dir():
            raise NotFound(package.name, package.version)

        task.advance(PackageState.COMMITTING)
        self.store.mark_current(package.name, package.version)
        try:
            self.symlinks.link_all(links, previous_links)
        except Exception:
            if previous is not None:
                self.store.mark_current(previous.name, previous.version)
            raise
        task.advance(PackageState.INSTALLED)
        logger.info("Package switched", name=package.name, version=package.version)
        return f"switched from {previous.version}" if previous is not None else "switched"

    def _relink(self, package: Package) -> list[Path]:
        """Create the missing links of an installed version; existing ones stay untouched."""
        payload = self.layout.payload_dir(package.name, package.version)
        if not payload.is_dir():
            raise MetadataError(f"Payload of {package.label} is missing at {payload}; reinstall it")
        links = self._links_of(package)
        missing = self.symlinks.missing(links)
        if not missing:
            return []
        logger.info("Completing missing links", package=package.label, missing=len(missing))
        return self.symlinks.link_all(links, self._other_links(package.name, package.version))

    def _commit_remove(self, task: PackageTask) -> str:
        package = task.action.package
        row = self.store.find(package.name, package.version)
        if row is None:
            raise NotFound(package.name, package.version)

        task.advance(PackageState.REMOVING)
        if row.is_current:
            links = self._links_of(row)
            try:
                self.symlinks.unlink_all([link.target for link in links], {link.target: link.source for link in links})
            except UnlinkError as e:
                self.store.forget_files(package.name, package.version, e.removed)
                raise

        promoted = self.store.remove(package.name, package.version)
        payload = self.layout.payload_dir(package.name, package.version)
        if payload.exists():
            try:
                shutil.rmtree(payload)
            except OSError as e:
                logger.warning("Failed to delete payload", path=str(payload), error=str(e))
        task.advance(PackageState.GONE)
        logger.info("Package removed", name=package.name, version=package.version, promoted=promoted)

        if promoted is None:
            return "removed"
        try:
            self._relink(self.store.find(package.name, promoted))
        except UhpmError as e:
            logger.error("Failed to link promoted version", name=package.name, version=promoted, error=str(e))
            return f"removed, {promoted} is now current but not linked ({e}); run repair"
        return f"removed, {promoted} is now current"
