"""CLI for uhpm."""

from pathlib import Path
from typing import Annotated, Literal

import structlog
from cyclopts import App, Parameter

from uhpm.config import get_config
from uhpm.config_commands import config_app
from uhpm.engine import Engine, OperationReport, OutcomeStatus
from uhpm.repo_commands import repo_app

logger = structlog.get_logger()

app = App(
    help="uhpm - a per-user package manager for your home directory",
)

app.command(config_app)
app.command(repo_app)

_MARKERS = {
    OutcomeStatus.SUCCEEDED: "✓",
    OutcomeStatus.FAILED: "✗",
    OutcomeStatus.SKIPPED: "-",
}


def configure_logging(log_level: str) -> None:
    """Configure structlog with the specified log level."""
    structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(min_level=log_level.lower()))


def get_engine() -> Engine:
    """Get an engine for the configured uhpm home."""
    return Engine.from_config(get_config())


def print_report(report: OperationReport) -> None:
    """Print one line per package and exit non-zero if any package failed."""
    if not report.outcomes:
        print(f"Nothing to {report.operation}")
        return
    for outcome in report:
        line = f"{_MARKERS[outcome.status]} {outcome.action.value} {outcome.label}: {outcome.status.value}"
        if outcome.status is OutcomeStatus.SUCCEEDED:
            line += f" ({outcome.detail})" if outcome.detail else ""
        else:
            line += f" [{outcome.reason}]"
            if outcome.detail:
                line += f" {outcome.detail}"
        print(line)
    if not report.ok:
        raise SystemExit(1)


@app.command
def install(*names: str, file: list[Path] | None = None, checksum: str | None = None) -> None:
    """Install packages from the repositories or from local archives.

    Args:
        names: Package names, optionally with a constraint (hello@1.2.0, hello@>=1.0)
        file: Local .uhp archive(s) to install
        checksum: Expected checksum of the local archive (algo:hex)
    """
    engine = get_engine()
    print_report(engine.install(names, files=file or [], checksum=checksum))


@app.command
def remove(*targets: str, force: bool = False) -> None:
    """Remove packages (name for every version, name@version for one).

    Args:
        targets: Packages to remove
        force: Remove even if installed packages depend on them
    """
    engine = get_engine()
    print_report(engine.remove(targets, force=force))


@app.command(name="list")
def list_packages() -> None:
    """List installed packages; the current version is marked with *."""
    engine = get_engine()
    packages = engine.list_installed()

    if not packages:
        print("No packages installed")
        return

    print(f"Installed {len(packages)} package version(s):\n")
    for package in packages:
        marker = "*" if package.is_current else " "
        print(f"{marker} {package.name} {package.version}")


@app.command
def switch(target: str) -> None:
    """Make an installed version current (name@version)."""
    name, _, version = target.partition("@")
    if not version:
        raise ValueError("Use name@version to choose the version to switch to")
    engine = get_engine()
    print_report(engine.switch(name, version))


@app.command
def update(
    *names: str,
    file: list[Path] | None = None,
    checksum: str | None = None,
    policy: Literal["resolve", "in-place"] | None = None,
) -> None:
    """Update installed packages.

    Args:
        names: Packages to update from the repositories
        file: Local .uhp archive(s) holding the new versions
        checksum: Expected checksum of the local archive (algo:hex)
        policy: Override update.policy for this run
    """
    engine = get_engine()
    print_report(engine.update(names, files=file or [], checksum=checksum, policy=policy))


@app.command(name="check-update")
def check_update(*names: str) -> None:
    """Check the repositories for newer versions of installed packages."""
    engine = get_engine()
    names = names or tuple(sorted({p.name for p in engine.list_installed()}))
    for name in names:
        newer = engine.check_for_update(name)
        current = engine.store.find(name)
        if newer is None:
            print(f"{name} {current.version} is up to date")
        else:
            print(f"{name} {current.version} -> {newer.version}")


@app.command
def search(query: str = "") -> None:
    """Search the repositories by package name."""
    engine = get_engine()
    packages = engine.search(query)

    if not packages:
        print(f"No packages matching {query!r}")
        return

    for package in packages:
        author = f" ({package.author})" if package.author else ""
        print(f"{package.name} {package.version}{author}")


@app.command
def repair(*names: str) -> None:
    """Re-create missing links of installed packages."""
    engine = get_engine()
    print_report(engine.repair(names or None))


@app.command
def unpack(archive: Path, destination: Path, checksum: str | None = None) -> None:
    """Extract a package archive without installing it."""
    engine = get_engine()
    package = engine.unpack(archive, destination, checksum=checksum)
    print(f"Unpacked {package.label} into {destination}")


@app.meta.default
def main(
    *tokens: Annotated[str, Parameter(show=False, allow_leading_hyphen=True)],
    log_level: Literal["debug", "info", "warning", "error", "critical"] = "critical",
) -> None:
    """Main entry point with global options."""
    configure_logging(log_level)
    app(tokens)


if __name__ == "__main__":
    app.meta()
