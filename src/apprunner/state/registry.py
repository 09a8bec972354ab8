"""YAML-backed persistent state for apprunner.

The registry directory (``<data_dir>/registry`` by default) holds one file
today, ``apps.yml``::

    apps:
      - name: shop
        git_url: https://github.com/example/shop.git
        added_at: "2024-05-01T12:00:00+00:00"

Files are replaced atomically, so readers never see a half-written document.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Iterable, Mapping
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any

try:  # PyYAML is a runtime dependency declared in pyproject.toml
    import yaml
except Exception as exc:  # pragma: no cover - import failure handled in tests
    raise RuntimeError(
        "PyYAML is required to manage apprunner state. Install with `pip install apprunner`."
    ) from exc

APPS_FILE = "apps.yml"
FILE_MODE = 0o640


class StateRegistryError(RuntimeError):
    """Raised when a registry file cannot be read or updated."""


@dataclass(frozen=True)
class StateRegistry:
    """Read and atomically rewrite the YAML files under *root*."""

    root: Path

    def __post_init__(self) -> None:
        """Expand ``~`` in the root path."""
        object.__setattr__(self, "root", self.root.expanduser())

    def path_for(self, name: str) -> Path:
        """Return the path of registry file *name*."""
        return self.root / name

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Return the parsed contents of *name*, or a copy of *default*."""
        path = self.path_for(name)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return deepcopy(default)
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise StateRegistryError(f"Registry file {path} is not valid YAML: {exc}") from exc
        return deepcopy(default) if data is None else data

    def write(self, name: str, payload: Mapping[str, object]) -> None:
        """Replace *name* with *payload* serialised as YAML."""
        self.root.mkdir(parents=True, exist_ok=True)
        _replace_file(self.path_for(name), yaml.safe_dump(dict(payload), sort_keys=False))

    # Apps ------------------------------------------------------------
    def read_apps(self) -> Mapping[str, object]:
        """Return the raw ``apps.yml`` document."""
        value = self.read(APPS_FILE, default={"apps": []})
        return value if isinstance(value, Mapping) else {"apps": []}

    def write_apps(self, apps: Iterable[Mapping[str, object]]) -> None:
        """Persist *apps* as the complete application list."""
        self.write(APPS_FILE, {"apps": [dict(entry) for entry in apps]})

    def list_apps(self) -> list[dict[str, Any]]:
        """Return registered apps in registration order.

        Hand-edited entries missing a name or Git URL are skipped rather than
        failing every command.
        """
        raw = self.read_apps().get("apps")
        if not isinstance(raw, list):
            return []
        entries = []
        for item in raw:
            entry = _normalise(item) if isinstance(item, Mapping) else None
            if entry is not None:
                entries.append(entry)
        return entries

    def get_app(self, name: str) -> dict[str, Any] | None:
        """Return the entry registered as *name*, if any."""
        return next((entry for entry in self.list_apps() if entry["name"] == name), None)

    def upsert_app(self, entry: Mapping[str, object]) -> None:
        """Store *entry*, replacing an existing app of the same name in place."""
        new = _normalise(entry)
        if new is None:
            raise StateRegistryError(f"App entry needs a 'name' and a 'git_url': {dict(entry)!r}")
        apps = self.list_apps()
        names = [app["name"] for app in apps]
        if new["name"] in names:
            apps[names.index(new["name"])] = new
        else:
            apps.append(new)
        self.write_apps(apps)

    def remove_app(self, name: str) -> None:
        """Drop *name* from ``apps.yml``."""
        apps = self.list_apps()
        kept = [entry for entry in apps if entry["name"] != name]
        if len(kept) == len(apps):
            raise StateRegistryError(f"App '{name}' not found in registry")
        self.write_apps(kept)


def _normalise(item: Mapping[Any, Any]) -> dict[str, Any] | None:
    name = str(item.get("name") or "").strip()
    git_url = str(item.get("git_url") or "").strip()
    if not name or not git_url:
        return None
    return {**item, "name": name, "git_url": git_url}


def _replace_file(path: Path, text: str) -> None:
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
        os.chmod(tmp_name, FILE_MODE)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


__all__ = ["StateRegistry", "StateRegistryError"]
