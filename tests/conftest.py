"""Shared pytest fixtures."""
from __future__ import annotations

import shutil
from collections.abc import Callable
from pathlib import Path

import pytest
from fakes import FakeProvider, FakeRepository, SequentialPorts, WaiterRecorder

from apprunner.manager import AppManager


@pytest.fixture
def source_tree(tmp_path: Path) -> Path:
    """Return a working-copy-like directory with a ``.git`` folder to skip."""
    root = tmp_path / "repo"
    (root / "static").mkdir(parents=True)
    (root / ".git").mkdir()
    (root / ".git" / "HEAD").write_text("ref: refs/heads/main\n", encoding="utf-8")
    (root / "app.txt").write_text("hello\n", encoding="utf-8")
    (root / "static" / "logo.bin").write_bytes(bytes(range(256)))
    return root


@pytest.fixture
def repository(source_tree: Path) -> FakeRepository:
    """Return a fake repository rooted at :func:`source_tree`."""
    return FakeRepository(source_tree)


@pytest.fixture
def waiters() -> WaiterRecorder:
    """Return a recording readiness-waiter factory."""
    return WaiterRecorder()


@pytest.fixture
def provider() -> FakeProvider:
    """Return a fake runner provider."""
    return FakeProvider()


@pytest.fixture
def make_manager(
    tmp_path: Path,
    repository: FakeRepository,
    waiters: WaiterRecorder,
) -> Callable[..., AppManager]:
    """Return a factory building managers wired to the fakes."""

    def _make(**kwargs: object) -> AppManager:
        return AppManager(
            "demo",
            "https://example.com/org/demo.git",
            repository,
            tmp_path / "instances",
            ports=SequentialPorts(),  # type: ignore[arg-type]
            waiters=waiters,
            **kwargs,  # type: ignore[arg-type]
        )

    return _make


@pytest.fixture
def git_remote(tmp_path: Path) -> Path:
    """Create a local Git repository with one commit to clone from."""
    if shutil.which("git") is None:
        pytest.skip("git executable not available")
    from git import Actor, Repo

    path = tmp_path / "remote" / "my-app"
    path.mkdir(parents=True)
    repo = Repo.init(path)
    (path / "README.md").write_text("first\n", encoding="utf-8")
    repo.index.add(["README.md"])
    author = Actor("Test Author", "author@example.com")
    repo.index.commit("initial", author=author, committer=author)
    repo.close()
    return path
