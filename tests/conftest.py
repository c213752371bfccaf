"""Shared fixtures: a fake home directory, a uhpm home and an archive builder."""

import io
import tarfile
from collections.abc import Callable
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import yaml

from uhpm.config import Layout
from uhpm.engine import Engine
from uhpm.fetcher import Fetcher
from uhpm.repositories import DirectoryRepository
from uhpm.repository import RepositorySet
from uhpm.store import PackageStore
from uhpm.symlinks import SymlinkManager, VariableContext


def build_archive(
    name: str,
    version: str,
    files: dict[str, str | bytes] | None = None,
    symlist: list[dict[str, str]] | None = None,
    dependencies: dict[str, str] | None = None,
) -> bytes:
    """Build a .uhp archive in memory."""
    descriptor = {"name": name, "version": version, "author": "Test Author"}
    if dependencies:
        descriptor["dependencies"] = dependencies
    members = {"uhp.yaml": yaml.safe_dump(descriptor)}
    if symlist is not None:
        members["symlist.yaml"] = yaml.safe_dump(symlist)
    members.update(files or {})

    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for path, content in members.items():
            data = content if isinstance(content, bytes) else content.encode("utf-8")
            info = tarfile.TarInfo(path)
            info.size = len(data)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def tool_archive(name: str, version: str, dependencies: dict[str, str] | None = None) -> bytes:
    """Archive with one executable linked into $XDG_BIN_HOME."""
    return build_archive(
        name,
        version,
        files={f"bin/{name}": f"#!/bin/sh\necho {name} {version}\n"},
        symlist=[{"source": f"bin/{name}", "target": f"$XDG_BIN_HOME/{name}"}],
        dependencies=dependencies,
    )


@pytest.fixture
def home(tmp_path: Path) -> Path:
    path = tmp_path / "home"
    path.mkdir()
    return path


@pytest.fixture
def layout(tmp_path: Path) -> Layout:
    layout = Layout(tmp_path / "uhpm")
    layout.ensure()
    return layout


@pytest.fixture
def store(layout: Layout):
    store = PackageStore(layout.database)
    yield store
    store.close()


@pytest.fixture
def context(home: Path) -> VariableContext:
    return VariableContext.from_environment(home=home, environ={})


@pytest.fixture
def repo_dir(tmp_path: Path) -> Path:
    path = tmp_path / "repo"
    path.mkdir()
    return path


@pytest.fixture
def publish(repo_dir: Path) -> Callable[..., Path]:
    """Write a tool archive into the directory repository and return its path."""

    def publish(name: str, version: str, dependencies: dict[str, str] | None = None, data: bytes | None = None) -> Path:
        path = repo_dir / f"{name}-{version}.uhp"
        path.write_bytes(data if data is not None else tool_archive(name, version, dependencies))
        return path

    return publish


@pytest.fixture
def engine(store: PackageStore, layout: Layout, context: VariableContext, repo_dir: Path) -> Engine:
    fetcher = Fetcher(session=MagicMock(), sleep=lambda seconds: None)
    repositories = RepositorySet([DirectoryRepository("local", repo_dir)])
    return Engine(store, layout, SymlinkManager(context), fetcher, repositories, concurrency=4)


@pytest.fixture
def make_archive() -> Callable[..., bytes]:
    return build_archive
