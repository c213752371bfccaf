"""Dependency resolver: turns a requested operation into an ordered plan.

The resolver only reads the store. It builds a dependency graph over the
installed packages and the requested ones, picks the highest version of each
name that satisfies every constraint, rejects cycles and unsafe removals, and
orders the resulting actions so dependencies come first (installs) or last
(removals). Ties are broken by package name.
"""

import heapq
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

import structlog

from uhpm.errors import AlreadyCurrent, CyclicDependency, DependentsExist, NotFound, UnsatisfiableConstraint
from uhpm.models import Dependency, Package
from uhpm.store import PackageStore
from uhpm.versions import parse_version, satisfies

logger = structlog.get_logger()

REQUEST = "request"


class ActionKind(str, Enum):
    """Per-package action of a plan."""

    INSTALL = "install"
    SWITCH = "switch"
    REMOVE = "remove"
    RELINK = "relink"


@dataclass
class PlanAction:
    """One step of a plan.

    Attributes:
        kind: What to do with the package
        package: Descriptor to install, or the installed row to switch to/remove/relink
        depends_on: Labels of plan actions that must succeed before this one commits
    """

    kind: ActionKind
    package: Package
    depends_on: list[str] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.package.name

    @property
    def version(self) -> str:
        return self.package.version

    @property
    def label(self) -> str:
        return self.package.label


@dataclass
class Plan:
    """Ordered actions produced for one requested operation."""

    operation: str
    actions: list[PlanAction] = field(default_factory=list)

    def __iter__(self):
        return iter(self.actions)

    def __len__(self) -> int:
        return len(self.actions)

    def labels(self) -> list[str]:
        return [action.label for action in self.actions]

    def get(self, name: str) -> PlanAction | None:
        for action in self.actions:
            if action.name == name:
                return action
        return None


class Catalog(Protocol):
    """Source of available package descriptors."""

    def candidates(self, name: str) -> list[Package]: ...


def parse_request(text: str) -> Dependency:
    """Parse ``name`` or ``name@constraint`` (``hello@1.2.0``, ``hello@>=1.0``)."""
    name, _, constraint = text.partition("@")
    name = name.strip()
    if not name:
        raise NotFound(text)
    return Dependency(name=name, constraint=constraint.strip())


def find_cycle(graph: dict[str, list[str]]) -> list[str] | None:
    """Return one cycle of ``graph`` as a list of names, or None."""
    visiting: set[str] = set()
    done: set[str] = set()
    path: list[str] = []

    def visit(node: str) -> list[str] | None:
        visiting.add(node)
        path.append(node)
        for nxt in sorted(graph.get(node, [])):
            if nxt in visiting:
                return path[path.index(nxt) :]
            if nxt not in done:
                cycle = visit(nxt)
                if cycle:
                    return cycle
        visiting.discard(node)
        done.add(node)
        path.pop()
        return None

    for node in sorted(graph):
        if node not in done:
            cycle = visit(node)
            if cycle:
                return cycle
    return None


def topological_order(nodes: Iterable[str], graph: dict[str, list[str]]) -> list[str]:
    """Order ``nodes`` so that every node comes after the nodes it depends on.

    ``graph`` maps a node to the nodes it depends on; edges leaving ``nodes``
    are ignored. Ready nodes are taken in lexicographic order.
    """
    nodes = set(nodes)
    indegree = {node: 0 for node in nodes}
    dependents: dict[str, list[str]] = {node: [] for node in nodes}
    for node in nodes:
        for dep in set(graph.get(node, [])):
            if dep in nodes and dep != node:
                indegree[node] += 1
                dependents[dep].append(node)

    ready = [node for node, degree in indegree.items() if degree == 0]
    heapq.heapify(ready)
    order = []
    while ready:
        node = heapq.heappop(ready)
        order.append(node)
        for dependent in dependents[node]:
            indegree[dependent] -= 1
            if indegree[dependent] == 0:
                heapq.heappush(ready, dependent)

    if len(order) != len(nodes):
        raise CyclicDependency(find_cycle({n: [d for d in graph.get(n, []) if d in nodes] for n in nodes}) or [])
    return order


class Resolver:
    """Computes plans for install, update, switch, remove and repair.

    Args:
        store: Package store, read only
        catalog: Available descriptors (usually a RepositorySet); optional
    """

    def __init__(self, store: PackageStore, catalog: Catalog | None = None) -> None:
        self.store = store
        self.catalog = catalog

    # ------------------------------------------------------------------
    # Install / update / switch
    # ------------------------------------------------------------------

    def plan_install(
        self,
        requests: Iterable[Dependency] = (),
        packages: Iterable[Package] = (),
        upgrade: bool = False,
        follow_dependencies: bool = True,
        operation: str = "install",
    ) -> Plan:
        """Plan the installation of requested names and explicit descriptors.

        Args:
            requests: Names with optional constraints, resolved from the catalog
            packages: Descriptors whose version is fixed (local archives)
            upgrade: Prefer the highest version even when the current one qualifies
            follow_dependencies: Resolve missing dependencies; when False they
                must already be satisfied by the installed current versions
            operation: Name of the operation, for reporting

        Raises:
            NotFound: If a requested name has no candidate at all
            UnsatisfiableConstraint: If no version satisfies every requirer
            CyclicDependency: If the resulting graph has a cycle
        """
        state = _Resolution(self.store.list_installed(), self.catalog)
        requests = list(requests)
        for package in packages:
            state.fix(package)
        for request in requests:
            state.require(request.name, REQUEST, request.constraint)
            state.requested.add(request.name)
        state.upgrade = upgrade
        state.follow = follow_dependencies
        state.solve()

        graph = state.final_graph()
        cycle = find_cycle(graph)
        if cycle:
            logger.error("Dependency cycle detected", cycle=cycle)
            raise CyclicDependency(cycle)

        actions: dict[str, PlanAction] = {}
        for name, package in state.chosen.items():
            current = state.current.get(name)
            if current is not None and current.version == package.version:
                if name in state.requested and operation == "install":
                    actions[name] = PlanAction(ActionKind.RELINK, current)
                continue
            installed = state.installed_version(name, package.version)
            if installed is not None:
                actions[name] = PlanAction(ActionKind.SWITCH, installed)
            else:
                actions[name] = PlanAction(ActionKind.INSTALL, package)

        plan = Plan(operation)
        for name in topological_order(actions, graph):
            action = actions[name]
            action.depends_on = sorted(actions[dep].label for dep in graph.get(name, []) if dep in actions and dep != name)
            plan.actions.append(action)
        logger.info("Plan computed", operation=operation, actions=plan.labels())
        return plan

    def plan_update(self, name: str, policy: str = "resolve") -> Plan:
        """Plan an update of ``name`` to the newest available version.

        ``resolve`` re-resolves the dependencies of the new version; ``in-place``
        replaces only the named package and requires its dependencies to be
        satisfied already.
        """
        if self.store.find(name) is None:
            raise NotFound(name)
        return self.plan_install(
            [Dependency(name)], upgrade=True, follow_dependencies=policy != "in-place", operation="update"
        )

    def plan_switch(self, name: str, version: str) -> Plan:
        """Plan a switch of ``name`` to an installed ``version``."""
        target = self.store.find(name, version)
        if target is None:
            raise NotFound(name, version)
        if target.is_current:
            raise AlreadyCurrent(name, version)
        return self.plan_install(packages=[target], operation="switch")

    def plan_repair(self, names: Iterable[str] | None = None) -> Plan:
        """Plan a relink of the current version of each name (all by default)."""
        current = {p.name: p for p in self.store.list_installed() if p.is_current}
        if names is None:
            selected = sorted(current)
        else:
            selected = []
            for name in names:
                if name not in current:
                    raise NotFound(name)
                selected.append(name)
        return Plan("repair", [PlanAction(ActionKind.RELINK, current[name]) for name in selected])

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------

    def plan_remove(self, targets: Iterable[tuple[str, str | None]], force: bool = False) -> Plan:
        """Plan the removal of package versions.

        Every installed version left behind, current or inactive, must still
        find its dependencies satisfied by the versions that stay current.

        Args:
            targets: ``(name, version)`` pairs; a None version removes every version
            force: Remove even when installed dependents would lose their dependency

        Raises:
            NotFound: If a target is not installed
            DependentsExist: If a dependent would be left unsatisfied and not forced
        """
        installed = self.store.list_installed()
        by_name: dict[str, list[Package]] = {}
        for package in installed:
            by_name.setdefault(package.name, []).append(package)

        removing: dict[tuple[str, str], Package] = {}
        for name, version in targets:
            versions = by_name.get(name, [])
            if version is None:
                if not versions:
                    raise NotFound(name)
                chosen = versions
            else:
                chosen = [p for p in versions if p.version == version]
                if not chosen:
                    raise NotFound(name, version)
            for package in chosen:
                removing[package.key] = package

        # Current version of every name once the removals are done.
        final: dict[str, Package] = {}
        for name, versions in by_name.items():
            remaining = [p for p in versions if p.key not in removing]
            if not remaining:
                continue
            current = next((p for p in remaining if p.is_current), None)
            final[name] = current or max(remaining, key=lambda p: parse_version(p.version))

        affected = {name for name, _ in removing}
        blockers: dict[str, set[str]] = {}
        for versions in by_name.values():
            for package in versions:
                if package.key in removing:
                    continue
                # Inactive versions are named with their version.
                who = package.name if package.is_current else package.label
                for dep in package.dependencies:
                    if dep.name not in affected or dep.name == package.name:
                        continue
                    provider = final.get(dep.name)
                    if provider is None or not satisfies(provider.version, dep.constraint):
                        blockers.setdefault(dep.name, set()).add(who)

        if blockers and not force:
            logger.error("Removal blocked by dependents", blockers={k: sorted(v) for k, v in blockers.items()})
            raise DependentsExist({k: sorted(v) for k, v in blockers.items()})
        if blockers:
            logger.warning("Forcing removal despite dependents", blockers={k: sorted(v) for k, v in blockers.items()})

        # Dependents are removed before their dependencies.
        graph: dict[str, list[str]] = {}
        for package in removing.values():
            graph.setdefault(package.name, []).extend(dep.name for dep in package.dependencies)
        names = {name for name, _ in removing}
        order = list(reversed(topological_order(names, graph)))

        plan = Plan("remove")
        for name in order:
            versions = sorted(
                (p for p in removing.values() if p.name == name),
                key=lambda p: (p.is_current, parse_version(p.version)),
            )
            for package in versions:
                depends_on = sorted(
                    other.label
                    for other in removing.values()
                    if other.name != name and any(dep.name == name for dep in other.dependencies)
                )
                plan.actions.append(PlanAction(ActionKind.REMOVE, package, depends_on))
        logger.info("Plan computed", operation="remove", actions=plan.labels())
        return plan


class _Resolution:
    """Working state of one install/update/switch resolution."""

    def __init__(self, installed: list[Package], catalog: Catalog | None) -> None:
        self.catalog = catalog
        self.installed: dict[str, list[Package]] = {}
        self.current: dict[str, Package] = {}
        for package in installed:
            self.installed.setdefault(package.name, []).append(package)
            if package.is_current:
                self.current[package.name] = package

        self.fixed: dict[str, Package] = {}
        self.requested: set[str] = set()
        self.chosen: dict[str, Package] = {}
        # dependency name -> {requirer name: constraint}
        self.requirers: dict[str, dict[str, str]] = {}
        self.queue: deque[str] = deque()
        self.upgrade = False
        self.follow = True
        self._pool_cache: dict[str, list[Package]] = {}

    def fix(self, package: Package) -> None:
        self.fixed[package.name] = package
        self.requested.add(package.name)
        self.queue.append(package.name)

    def require(self, name: str, requirer: str, constraint: str) -> None:
        self.requirers.setdefault(name, {})[requirer] = constraint
        self.queue.append(name)

    def installed_version(self, name: str, version: str) -> Package | None:
        for package in self.installed.get(name, []):
            if package.version == version:
                return package
        return None

    def pool(self, name: str) -> list[Package]:
        if name not in self._pool_cache:
            pool = {p.version: p for p in self.installed.get(name, [])}
            if self.catalog is not None:
                for candidate in self.catalog.candidates(name):
                    pool.setdefault(candidate.version, candidate)
            self._pool_cache[name] = list(pool.values())
        return self._pool_cache[name]

    def effective(self, name: str) -> Package | None:
        return self.chosen.get(name) or self.current.get(name)

    def constraints(self, name: str) -> list[tuple[str, str]]:
        """Every (requirer, constraint) that applies to ``name``."""
        found = list(self.requirers.get(name, {}).items())
        for owner, package in self.current.items():
            if owner in self.chosen or owner == name:
                continue
            for dep in package.dependencies:
                if dep.name == name:
                    found.append((package.label, dep.constraint))
        return found

    def pick(self, name: str) -> Package:
        constraints = self.constraints(name)
        specs = [spec for _, spec in constraints]

        if name in self.fixed:
            package = self.fixed[name]
            if not all(satisfies(package.version, spec) for spec in specs):
                raise UnsatisfiableConstraint(name, constraints + [(package.label, package.version)])
            return package

        current = self.current.get(name)
        prefer_current = not (self.upgrade and name in self.requested)
        if prefer_current and current is not None and all(satisfies(current.version, s) for s in specs):
            return current

        pool = self.pool(name)
        if not pool:
            if name in self.requested:
                raise NotFound(name)
            raise UnsatisfiableConstraint(name, constraints)
        matching = [p for p in pool if all(satisfies(p.version, s) for s in specs)]
        if not matching:
            raise UnsatisfiableConstraint(name, constraints)
        return max(matching, key=lambda p: parse_version(p.version))

    def solve(self) -> None:
        budget = 50 * (len(self.queue) + 10)
        while self.queue:
            budget -= 1
            if budget < 0:
                name = self.queue[0]
                raise UnsatisfiableConstraint(name, self.constraints(name))
            name = self.queue.popleft()
            package = self.pick(name)
            previous = self.chosen.get(name)
            if previous is not None and previous.version == package.version:
                continue
            current = self.current.get(name)
            if previous is None and name not in self.requested and current and current.version == package.version:
                # An installed dependency that already qualifies stays as is.
                continue

            self.chosen[name] = package
            for requirements in self.requirers.values():
                requirements.pop(name, None)
            if self.follow:
                for dep in package.dependencies:
                    self.require(dep.name, name, dep.constraint)

        for package in self.chosen.values():
            self._check_dependencies(package)

    def _check_dependencies(self, package: Package) -> None:
        for dep in package.dependencies:
            provider = self.effective(dep.name)
            if provider is None or not satisfies(provider.version, dep.constraint):
                raise UnsatisfiableConstraint(dep.name, [(package.label, dep.constraint)] + self.constraints(dep.name))

    def final_graph(self) -> dict[str, list[str]]:
        names = set(self.current) | set(self.chosen)
        graph = {}
        for name in names:
            package = self.effective(name)
            graph[name] = [dep.name for dep in package.dependencies if dep.name in names]
        return graph
