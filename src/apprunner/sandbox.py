"""Directory layout for application working copies and instances.

Everything apprunner writes for an application lives below
``<data_dir>/apps/<name>``::

    apps/<name>/repo/         Git working copy
    apps/<name>/instances/    one timestamped directory per deployment
"""
from __future__ import annotations

import shutil
from dataclasses import dataclass
from pathlib import Path


def dir_path(path: Path) -> str:
    """Return the absolute, normalised string form of *path*."""
    return str(path.expanduser().resolve())


@dataclass(frozen=True)
class FileSandbox:
    """Resolve (and create) per-application directories under *root*."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", self.root.expanduser())

    def apps_root(self) -> Path:
        """Return the directory holding every application."""
        return self.root / "apps"

    def app_dir(self, name: str, *parts: str) -> Path:
        """Return ``apps/<name>/<parts...>``, creating it if necessary."""
        if not name or name in {".", ".."} or "/" in name or "\\" in name:
            raise ValueError(f"Invalid application name {name!r}.")
        path = self.apps_root() / name
        for part in parts:
            path /= part
        path.mkdir(parents=True, exist_ok=True)
        return path

    def remove_app(self, name: str) -> bool:
        """Delete everything stored for *name*; return whether anything existed."""
        path = self.apps_root() / name
        if not path.exists():
            return False
        shutil.rmtree(path)
        return True


__all__ = ["FileSandbox", "dir_path"]
