"""Cross-process locking primitives.

Locks are advisory ``flock`` locks on files under the runtime directory:

* ``<runtime_dir>/apprunner.lock`` guards the app registry as a whole;
* ``<runtime_dir>/apps/<name>.lock`` guards a single application.

Lock files are left in place after release so operators can inspect which
process last held them.
"""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterable, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import IO

GLOBAL_LOCK_NAME = "apprunner.lock"
POLL_INTERVAL = 0.05


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired before the timeout expires."""


@dataclass(slots=True)
class LockHandle:
    """A held lock."""

    path: Path
    wait_ms: int
    _handle: IO[str] = field(repr=False)


@dataclass(slots=True)
class LockBundle:
    """A set of locks acquired together."""

    handles: list[LockHandle]

    @property
    def wait_ms(self) -> int:
        """Total time spent waiting for every lock in the bundle."""
        return sum(handle.wait_ms for handle in self.handles)


class LockManager:
    """Hand out global and per-application locks."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        """Store the lock directory and default acquisition timeout."""
        self.runtime_dir = runtime_dir.expanduser()
        self.default_timeout = default_timeout

    def global_path(self) -> Path:
        """Return the global lock file path."""
        return self.runtime_dir / GLOBAL_LOCK_NAME

    def app_path(self, name: str) -> Path:
        """Return the lock file path for application *name*."""
        safe = name.strip().replace("/", "-")
        if not safe:
            raise ValueError("Application name must be a non-empty string.")
        return self.runtime_dir / "apps" / f"{safe}.lock"

    @contextmanager
    def global_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the global registry lock."""
        with self._acquire(self.global_path(), timeout) as handle:
            yield handle

    @contextmanager
    def app_lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock for a single application."""
        with self._acquire(self.app_path(name), timeout) as handle:
            yield handle

    @contextmanager
    def mutate_apps(
        self,
        names: Iterable[str],
        *,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Acquire the global lock followed by per-app locks in sorted order."""
        with ExitStack() as stack:
            handles = [stack.enter_context(self._acquire(self.global_path(), timeout))]
            for name in sorted(set(names)):
                handles.append(stack.enter_context(self._acquire(self.app_path(name), timeout)))
            yield LockBundle(handles)

    # ------------------------------------------------------------------
    @contextmanager
    def _acquire(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        limit = self.default_timeout if timeout is None else timeout
        path.parent.mkdir(parents=True, exist_ok=True)
        handle = path.open("a+", encoding="utf-8")
        started = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - started >= limit:
                        raise LockTimeoutError(
                            f"Timed out after {limit:.1f}s waiting for lock {path}."
                        ) from None
                    time.sleep(POLL_INTERVAL)
            wait_ms = int((time.monotonic() - started) * 1000)
            _write_metadata(handle, path)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms, _handle=handle)
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()


def _write_metadata(handle: IO[str], path: Path) -> None:
    payload = {
        "pid": os.getpid(),
        "path": str(path),
        "acquired_at": datetime.now(UTC).isoformat(),
    }
    handle.seek(0)
    handle.truncate()
    handle.write(json.dumps(payload))
    handle.flush()


__all__ = ["LockBundle", "LockHandle", "LockManager", "LockTimeoutError"]
