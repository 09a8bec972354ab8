"""Registry of managed applications.

:class:`AppRegistry` is the single owner of :class:`~apprunner.manager.AppManager`
objects: at most one manager exists per application name. Registered apps are
persisted to ``apps.yml`` so they can be reopened by a later process.
"""
from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from datetime import UTC, datetime

from .manager import AppChangeListener, AppManager, name_from_url
from .sandbox import FileSandbox
from .state import StateRegistry

ManagerFactory = Callable[[str, FileSandbox, str], AppManager]

_log = logging.getLogger(__name__)


class AppRegistryError(RuntimeError):
    """Raised when an application cannot be added, found, or removed."""


class AppRegistry:
    """Create, look up, and remove application managers."""

    def __init__(
        self,
        sandbox: FileSandbox,
        state: StateRegistry,
        factory: ManagerFactory | None = None,
    ) -> None:
        """Use *factory* (``AppManager.create`` by default) to build managers."""
        self._sandbox = sandbox
        self._state = state
        self._factory: ManagerFactory = factory or AppManager.create
        self._managers: dict[str, AppManager] = {}
        self._listeners: list[AppChangeListener] = []
        self._lock = threading.RLock()

    def load(self) -> list[str]:
        """Open a manager for every persisted app not loaded yet."""
        loaded: list[str] = []
        with self._lock:
            for entry in self._state.list_apps():
                name = entry["name"]
                if name in self._managers:
                    continue
                self._register(self._factory(entry["git_url"], self._sandbox, name))
                loaded.append(name)
        return loaded

    def add(self, git_url: str, name: str | None = None) -> AppManager:
        """Register the repository at *git_url* and return its manager."""
        url = git_url.strip()
        if not url:
            raise AppRegistryError("Git URL must be a non-empty string.")
        app_name = (name or name_from_url(url)).strip()
        if not app_name:
            raise AppRegistryError(f"Could not derive an application name from {url!r}.")
        if app_name in {".", ".."} or "/" in app_name or "\\" in app_name:
            raise AppRegistryError(f"Invalid application name {app_name!r}.")

        with self._lock:
            if app_name in self._managers or self._state.get_app(app_name) is not None:
                raise AppRegistryError(f"Application '{app_name}' is already registered.")
            manager = self._factory(url, self._sandbox, app_name)
            self._register(manager)
            self._state.upsert_app(
                {
                    "name": app_name,
                    "git_url": url,
                    "added_at": datetime.now(UTC).isoformat(),
                }
            )
        _log.info("Registered %s from %s", app_name, url)
        return manager

    def open(self, name: str) -> AppManager:
        """Return the manager for *name*, loading it from ``apps.yml`` if needed."""
        with self._lock:
            manager = self._managers.get(name)
            if manager is not None:
                return manager
            entry = self._state.get_app(name)
            if entry is None:
                raise AppRegistryError(f"Application '{name}' is not registered.")
            manager = self._factory(entry["git_url"], self._sandbox, name)
            self._register(manager)
            return manager

    def get(self, name: str) -> AppManager:
        """Return the manager for *name*."""
        with self._lock:
            manager = self._managers.get(name)
        if manager is None:
            raise AppRegistryError(f"Application '{name}' is not registered.")
        return manager

    def remove(self, name: str, *, purge: bool = False) -> None:
        """Stop *name* and forget it; with *purge* also delete its files."""
        with self._lock:
            manager = self._managers.get(name)
            if manager is None and self._state.get_app(name) is None:
                raise AppRegistryError(f"Application '{name}' is not registered.")
            if manager is not None:
                manager.stop_app()
                del self._managers[name]
            if self._state.get_app(name) is not None:
                self._state.remove_app(name)
            if purge:
                self._sandbox.remove_app(name)
        _log.info("Removed %s%s", name, " and its files" if purge else "")

    def add_listener(self, listener: AppChangeListener) -> None:
        """Attach *listener* to every current and future manager."""
        with self._lock:
            self._listeners.append(listener)
            for manager in self._managers.values():
                manager.add_listener(listener)

    def names(self) -> list[str]:
        """Return registered application names in sorted order."""
        with self._lock:
            return sorted(self._managers)

    def stop_all(self) -> None:
        """Stop every running application."""
        for manager in list(self):
            manager.stop_app()

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._managers

    def __iter__(self) -> Iterator[AppManager]:
        with self._lock:
            managers = [self._managers[name] for name in sorted(self._managers)]
        return iter(managers)

    def __len__(self) -> int:
        with self._lock:
            return len(self._managers)

    # ------------------------------------------------------------------
    def _register(self, manager: AppManager) -> None:
        for listener in self._listeners:
            manager.add_listener(listener)
        self._managers[manager.name] = manager


__all__ = ["AppRegistry", "AppRegistryError"]
