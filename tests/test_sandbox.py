"""Tests for the per-application directory layout."""
from __future__ import annotations

from pathlib import Path

import pytest

from apprunner.sandbox import FileSandbox, dir_path


def test_app_dir_creates_nested_directories(tmp_path: Path) -> None:
    sandbox = FileSandbox(tmp_path / "data")

    repo_dir = sandbox.app_dir("shop", "repo")

    assert repo_dir == tmp_path / "data" / "apps" / "shop" / "repo"
    assert repo_dir.is_dir()


@pytest.mark.parametrize("name", ["", ".", "..", "a/b", "a\\b"])
def test_app_dir_rejects_unsafe_names(tmp_path: Path, name: str) -> None:
    with pytest.raises(ValueError):
        FileSandbox(tmp_path).app_dir(name)


def test_remove_app(tmp_path: Path) -> None:
    sandbox = FileSandbox(tmp_path)
    sandbox.app_dir("shop", "instances", "1")

    assert sandbox.remove_app("shop") is True
    assert not (tmp_path / "apps" / "shop").exists()
    assert sandbox.remove_app("shop") is False


def test_dir_path_is_absolute(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)

    assert dir_path(Path("relative")) == str(tmp_path.resolve() / "relative")
