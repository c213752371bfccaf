"""Tests for the installation engine."""

import os
import threading
import time
from collections.abc import Callable
from pathlib import Path
from unittest.mock import patch

import pytest

from conftest import build_archive, tool_archive
from uhpm.engine import SKIPPED_DEPENDENCY, Engine, OutcomeStatus, PackageState, PackageTask
from uhpm.errors import (
    CyclicDependency,
    DependentsExist,
    InvalidTransition,
    MetadataError,
    StoreIO,
    TransportError,
    UnlinkError,
)
from uhpm.models import FileKind, Package
from uhpm.resolver import ActionKind, PlanAction


class Crash(BaseException):
    """Simulates the process dying mid-operation."""


def write(tmp_path: Path, name: str, version: str, data: bytes | None = None) -> Path:
    path = tmp_path / "archives" / f"{name}-{version}.uhp"
    path.parent.mkdir(exist_ok=True)
    path.write_bytes(data if data is not None else tool_archive(name, version))
    return path


def bin_link(home: Path, name: str) -> Path:
    return home / ".local" / "bin" / name


def assert_single_current(engine: Engine) -> None:
    current: dict[str, int] = {}
    for package in engine.store.list_installed():
        current.setdefault(package.name, 0)
        current[package.name] += int(package.is_current)
    assert all(count == 1 for count in current.values()), current


def test_install_from_file(engine: Engine, tmp_path: Path, home: Path) -> None:
    """Test a local archive goes through every state and is linked."""
    path = write(tmp_path, "hello", "1.0.0")
    report = engine.install(files=[path])

    outcome = report.get("hello")
    assert outcome.status is OutcomeStatus.SUCCEEDED
    assert outcome.state is PackageState.INSTALLED
    assert outcome.action is ActionKind.INSTALL

    payload = engine.layout.payload_dir("hello", "1.0.0")
    assert os.readlink(bin_link(home, "hello")) == str(payload / "bin" / "hello")
    assert engine.store.find("hello").version == "1.0.0"
    assert list(engine.layout.staging.iterdir()) == []
    kinds = sorted(f.kind.value for f in engine.store.installed_files_of("hello", "1.0.0"))
    assert kinds == [FileKind.FILE.value, FileKind.LINK.value]


def test_install_from_repository_with_dependencies(engine: Engine, publish: Callable[..., Path], home: Path) -> None:
    """Test dependencies are installed and committed before dependents."""
    publish("libgreet", "1.0.0")
    publish("libgreet", "1.1.0")
    publish("hello", "1.0.0", dependencies={"libgreet": ">=1.0,<2"})

    report = engine.install(["hello"])

    assert [(o.label, o.status) for o in report] == [
        ("libgreet@1.1.0", OutcomeStatus.SUCCEEDED),
        ("hello@1.0.0", OutcomeStatus.SUCCEEDED),
    ]
    assert bin_link(home, "libgreet").is_symlink()
    assert engine.store.dependents_of("libgreet")[0].name == "hello"


def test_switch_round_trip(engine: Engine, tmp_path: Path, home: Path) -> None:
    """Test links follow the current version back and forth."""
    engine.install(files=[write(tmp_path, "hello", "1.0.0")])
    engine.install(files=[write(tmp_path, "hello", "2.0.0")])
    link = bin_link(home, "hello")
    v1 = engine.layout.payload_dir("hello", "1.0.0")
    v2 = engine.layout.payload_dir("hello", "2.0.0")
    assert os.readlink(link) == str(v2 / "bin" / "hello")

    report = engine.switch("hello", "1.0.0")
    assert report.ok
    assert engine.store.find("hello").version == "1.0.0"
    assert os.readlink(link) == str(v1 / "bin" / "hello")
    assert link.read_text() == "#!/bin/sh\necho hello 1.0.0\n"

    engine.switch("hello", "2.0.0")
    assert os.readlink(link) == str(v2 / "bin" / "hello")
    assert_single_current(engine)


def test_install_inactive_version_switches(engine: Engine, tmp_path: Path, home: Path) -> None:
    """Test reinstalling an inactive version switches to it without a new store row."""
    v1 = write(tmp_path, "hello", "1.0.0")
    engine.install(files=[v1])
    engine.install(files=[write(tmp_path, "hello", "2.0.0")])

    report = engine.install(files=[v1])

    assert report.get("hello").action is ActionKind.SWITCH
    assert engine.store.find("hello").version == "1.0.0"
    assert len(engine.store.versions("hello")) == 2


def test_removal_guard(engine: Engine, publish: Callable[..., Path], home: Path) -> None:
    """Test a dependency cannot be removed without force."""
    publish("p", "1.0.0")
    publish("q", "1.0.0", dependencies={"p": ""})
    engine.install(["q"])

    with pytest.raises(DependentsExist) as exc:
        engine.remove(["p"])
    assert exc.value.blockers == ["q"]
    assert engine.store.find("p") is not None
    assert bin_link(home, "p").is_symlink()

    report = engine.remove(["p"], force=True)
    assert report.get("p").status is OutcomeStatus.SUCCEEDED
    assert report.get("p").state is PackageState.GONE
    assert engine.store.find("p") is None
    assert engine.store.installed_files_of("p", "1.0.0") == []
    assert not bin_link(home, "p").exists()
    assert not engine.layout.payload_dir("p", "1.0.0").exists()


def test_remove_current_promotes_previous(engine: Engine, tmp_path: Path, home: Path) -> None:
    """Test removing the current version links the highest remaining one."""
    engine.install(files=[write(tmp_path, "hello", "1.0.0")])
    engine.install(files=[write(tmp_path, "hello", "2.0.0")])

    report = engine.remove(["hello@2.0.0"])

    assert "1.0.0 is now current" in report.get("hello").detail
    assert engine.store.find("hello").version == "1.0.0"
    assert os.readlink(bin_link(home, "hello")) == str(engine.layout.payload_dir("hello", "1.0.0") / "bin" / "hello")


def test_remove_every_version(engine: Engine, tmp_path: Path, home: Path) -> None:
    """Test removing a name removes all its versions and links."""
    engine.install(files=[write(tmp_path, "hello", "1.0.0")])
    engine.install(files=[write(tmp_path, "hello", "2.0.0")])

    report = engine.remove(["hello"])

    assert [o.label for o in report] == ["hello@1.0.0", "hello@2.0.0"]
    assert report.ok
    assert engine.store.list_installed() == []
    assert not bin_link(home, "hello").is_symlink()


def test_crash_after_commit_is_completed_on_retry(engine: Engine, tmp_path: Path, home: Path) -> None:
    """Test a retry after a crash between commit and linking only completes links."""
    engine.install(files=[write(tmp_path, "hello", "1.0.0")])
    v2 = write(tmp_path, "hello", "2.0.0")

    with patch.object(engine.symlinks, "link_all", side_effect=Crash()):
        with pytest.raises(Crash):
            engine.install(files=[v2])

    # Rows are committed, links still point at the old version.
    assert engine.store.find("hello").version == "2.0.0"
    link = bin_link(home, "hello")
    assert os.readlink(link) == str(engine.layout.payload_dir("hello", "1.0.0") / "bin" / "hello")

    with patch.object(engine.store, "begin_install", wraps=engine.store.begin_install) as begin:
        report = engine.install(files=[v2])
        begin.assert_not_called()

    assert report.get("hello").status is OutcomeStatus.SUCCEEDED
    assert report.get("hello").action is ActionKind.RELINK
    assert os.readlink(link) == str(engine.layout.payload_dir("hello", "2.0.0") / "bin" / "hello")
    assert_single_current(engine)


def test_integrity_failure(engine: Engine, tmp_path: Path) -> None:
    """Test a checksum mismatch never reaches extraction or the store."""
    path = write(tmp_path, "hello", "1.0.0")
    report = engine.install(files=[path], checksum="sha256:" + "0" * 64)

    outcome = report.get("hello")
    assert outcome.status is OutcomeStatus.FAILED
    assert outcome.reason == "IntegrityError"
    assert outcome.state is PackageState.FAILED
    assert engine.store.list_installed() == []
    assert not engine.layout.payload_dir("hello", "1.0.0").exists()
    assert list(engine.layout.staging.iterdir()) == []


def test_dependency_failure_skips_dependents(engine: Engine, publish: Callable[..., Path]) -> None:
    """Test dependents of a failed package are skipped and siblings proceed."""
    publish("lib", "1.0.0")
    publish("app", "1.0.0", dependencies={"lib": ""})
    publish("other", "1.0.0")
    real_fetch = engine.fetcher.fetch

    def failing(source, name="", *args, **kwargs):
        if name == "lib":
            raise TransportError("connection reset")
        return real_fetch(source, name, *args, **kwargs)

    with patch.object(engine.fetcher, "fetch", side_effect=failing):
        report = engine.install(["app", "other"])

    assert report.get("lib").status is OutcomeStatus.FAILED
    assert report.get("lib").reason == "TransportError"
    assert report.get("app").status is OutcomeStatus.SKIPPED
    assert report.get("app").reason == SKIPPED_DEPENDENCY
    assert report.get("other").status is OutcomeStatus.SUCCEEDED
    assert [p.name for p in engine.store.list_installed()] == ["other"]
    assert not report.ok


def test_cycle_mutates_nothing(engine: Engine, publish: Callable[..., Path], home: Path) -> None:
    """Test a dependency cycle aborts before any mutation."""
    publish("a", "1.0.0", dependencies={"b": ""})
    publish("b", "1.0.0", dependencies={"a": ""})

    with pytest.raises(CyclicDependency):
        engine.install(["a"])
    assert engine.store.list_installed() == []
    assert not (home / ".local").exists()
    assert list(engine.layout.packages.iterdir()) == []


def test_link_conflict_rolls_back(engine: Engine, tmp_path: Path, home: Path) -> None:
    """Test a conflicting user file aborts the install and keeps the file."""
    target = bin_link(home, "hello")
    target.parent.mkdir(parents=True)
    target.write_text("user script")

    report = engine.install(files=[write(tmp_path, "hello", "1.0.0")])

    assert report.get("hello").reason == "LinkConflict"
    assert target.read_text() == "user script"
    assert engine.store.list_installed() == []
    assert not engine.layout.payload_dir("hello", "1.0.0").exists()


def test_store_failure_removes_payload(engine: Engine, tmp_path: Path) -> None:
    """Test a store that cannot open the install transaction leaves no payload behind."""
    path = write(tmp_path, "hello", "1.0.0")

    with patch.object(engine.store, "begin_install", side_effect=StoreIO("db down")):
        report = engine.install(files=[path])

    assert report.get("hello").status is OutcomeStatus.FAILED
    assert report.get("hello").reason == "StoreIO"
    assert engine.store.find("hello") is None
    assert not engine.layout.payload_dir("hello", "1.0.0").exists()


def test_undecodable_symlist_fails_only_its_package(engine: Engine, tmp_path: Path, home: Path) -> None:
    """Test a symlist that is not UTF-8 fails its package while siblings install."""
    bad = write(tmp_path, "aaa", "1.0.0", build_archive("aaa", "1.0.0", files={"symlist.yaml": b"\xff\xfe- x"}))
    good = write(tmp_path, "zzz", "1.0.0")

    report = engine.install(files=[bad, good])

    assert report.get("aaa").status is OutcomeStatus.FAILED
    assert report.get("aaa").reason == "MetadataError"
    assert report.get("zzz").status is OutcomeStatus.SUCCEEDED
    assert engine.store.find("aaa") is None
    assert engine.store.find("zzz").version == "1.0.0"
    assert bin_link(home, "zzz").is_symlink()


def test_undecodable_archive_in_repository_is_skipped(
    engine: Engine, publish: Callable[..., Path], home: Path
) -> None:
    """Test one corrupt archive in a repository does not break other installs."""
    publish("broken", "1.0.0", data=build_archive("broken", "1.0.0", files={"uhp.yaml": b"name: \xff\n"}))
    publish("hello", "1.0.0")

    report = engine.install(["hello"])

    assert report.ok
    assert bin_link(home, "hello").is_symlink()


def test_link_failure_on_upgrade_restores_previous(engine: Engine, tmp_path: Path, home: Path) -> None:
    """Test a failed upgrade leaves the old version current and linked."""
    engine.install(files=[write(tmp_path, "hello", "1.0.0")])
    (home / "extra").write_text("user file")
    data = build_archive(
        "hello",
        "2.0.0",
        files={"bin/hello": "v2", "bin/extra": "extra"},
        symlist=[
            {"source": "bin/hello", "target": "$XDG_BIN_HOME/hello"},
            {"source": "bin/extra", "target": "$HOME/extra"},
        ],
    )

    report = engine.install(files=[write(tmp_path, "hello", "2.0.0", data)])

    assert report.get("hello").status is OutcomeStatus.FAILED
    assert engine.store.find("hello").version == "1.0.0"
    assert [p.version for p in engine.store.versions("hello")] == ["1.0.0"]
    assert os.readlink(bin_link(home, "hello")) == str(engine.layout.payload_dir("hello", "1.0.0") / "bin" / "hello")
    assert (home / "extra").read_text() == "user file"
    assert_single_current(engine)


def test_unknown_variable_fails_package(engine: Engine, tmp_path: Path) -> None:
    """Test an unknown symlist token fails the package before any mutation."""
    data = build_archive("hello", "1.0.0", files={"x": "x"}, symlist=[{"source": "x", "target": "$NOPE/x"}])
    report = engine.install(files=[write(tmp_path, "hello", "1.0.0", data)])

    assert report.get("hello").reason == "UnknownVariable"
    assert engine.store.list_installed() == []
    assert list(engine.layout.staging.iterdir()) == []


def test_partial_unlink_keeps_remaining_rows(engine: Engine, tmp_path: Path, home: Path) -> None:
    """Test a partial unlink forgets only the links that are gone."""
    data = build_archive(
        "hello",
        "1.0.0",
        files={"a": "a", "b": "b"},
        symlist=[{"source": "a", "target": "$HOME/a"}, {"source": "b", "target": "$HOME/b"}],
    )
    engine.install(files=[write(tmp_path, "hello", "1.0.0", data)])
    (home / "a").unlink()
    error = UnlinkError("permission denied", removed=[home / "a"], remaining=[home / "b"])

    with patch.object(engine.symlinks, "unlink_all", side_effect=error):
        report = engine.remove(["hello"])

    assert report.get("hello").reason == "UnlinkError"
    assert engine.store.find("hello", "1.0.0") is not None
    links = [f.target_path for f in engine.store.installed_files_of("hello", "1.0.0") if f.kind is FileKind.LINK]
    assert links == [home / "b"]

    report = engine.remove(["hello"])
    assert report.ok
    assert engine.store.find("hello") is None
    assert not (home / "b").exists()


def test_concurrent_disjoint_installs(engine: Engine, tmp_path: Path, home: Path) -> None:
    """Test parallel installs of unrelated packages serialize only their commits."""
    paths = [write(tmp_path, name, "1.0.0") for name in ("alpha", "beta")]
    active: list[str] = []
    peak: list[int] = []
    real_commit = engine._commit

    def tracking(task: PackageTask) -> str:
        active.append(task.label)
        peak.append(len(active))
        try:
            time.sleep(0.05)
            return real_commit(task)
        finally:
            active.remove(task.label)

    reports = []
    with patch.object(engine, "_commit", side_effect=tracking):
        threads = [threading.Thread(target=lambda p=p: reports.append(engine.install(files=[p]))) for p in paths]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

    assert len(reports) == 2
    assert all(report.ok for report in reports)
    assert max(peak) == 1
    assert sorted(p.name for p in engine.store.list_installed()) == ["alpha", "beta"]
    assert bin_link(home, "alpha").is_symlink()
    assert bin_link(home, "beta").is_symlink()


def test_cancelled_operation(engine: Engine, tmp_path: Path) -> None:
    """Test a cancelled operation commits nothing."""
    cancel = threading.Event()
    cancel.set()
    report = engine.install(files=[write(tmp_path, "hello", "1.0.0")], cancel=cancel)

    assert report.get("hello").status is OutcomeStatus.SKIPPED
    assert report.get("hello").reason == "cancelled"
    assert engine.store.list_installed() == []


def test_update_and_check_for_update(engine: Engine, publish: Callable[..., Path], home: Path) -> None:
    """Test updating to a newly published version."""
    publish("hello", "1.0.0")
    engine.install(["hello"])
    assert engine.check_for_update("hello") is None

    publish("hello", "1.1.0")
    engine.repositories.refresh()
    assert engine.check_for_update("hello").version == "1.1.0"

    report = engine.update(["hello"])
    assert report.get("hello").status is OutcomeStatus.SUCCEEDED
    assert engine.store.find("hello").version == "1.1.0"
    assert "1.1.0" in os.readlink(bin_link(home, "hello"))

    report = engine.update(["hello"])
    assert report.get("hello").status is OutcomeStatus.SKIPPED
    assert report.get("hello").reason == "up to date"


def test_update_from_file(engine: Engine, tmp_path: Path) -> None:
    """Test update with a local archive."""
    engine.install(files=[write(tmp_path, "hello", "1.0.0")])
    report = engine.update(files=[write(tmp_path, "hello", "2.0.0")])
    assert report.ok
    assert engine.store.find("hello").version == "2.0.0"


def test_repair_restores_missing_links(engine: Engine, tmp_path: Path, home: Path) -> None:
    """Test repair recreates deleted links from the store records."""
    engine.install(files=[write(tmp_path, "hello", "1.0.0")])
    bin_link(home, "hello").unlink()

    report = engine.repair()

    assert report.get("hello").detail == "relinked 1 link(s)"
    assert bin_link(home, "hello").is_symlink()


def test_unpack(engine: Engine, tmp_path: Path) -> None:
    """Test extracting an archive without installing it."""
    destination = tmp_path / "out"
    package = engine.unpack(write(tmp_path, "hello", "1.0.0"), destination)

    assert package.label == "hello@1.0.0"
    assert (destination / "bin" / "hello").exists()
    assert engine.store.list_installed() == []


def test_unpack_rejects_path_traversal(engine: Engine, tmp_path: Path) -> None:
    """Test archives escaping the destination are refused."""
    data = build_archive("evil", "1.0.0", files={"../escape": "x"})
    with pytest.raises(MetadataError, match="Unsafe"):
        engine.unpack(write(tmp_path, "evil", "1.0.0", data), tmp_path / "out")
    assert not (tmp_path / "escape").exists()


def test_invalid_state_transition() -> None:
    """Test the package state machine rejects skipped phases."""
    task = PackageTask(PlanAction(ActionKind.INSTALL, Package("hello", "1.0.0")))
    task.advance(PackageState.FETCHING)
    with pytest.raises(InvalidTransition):
        task.advance(PackageState.COMMITTING)
    task.advance(PackageState.FAILED)
    with pytest.raises(InvalidTransition):
        task.advance(PackageState.FETCHING)
    assert task.history == [PackageState.REQUESTED, PackageState.FETCHING, PackageState.FAILED]
