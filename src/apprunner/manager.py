"""Blue/green deployment of a single application.

An :class:`AppManager` owns the running instance of one application. Calling
:meth:`AppManager.update` pulls the latest source, copies it into a new
instance directory, starts that instance on a fresh port and waits for it to
answer. Only then does the new runner become current, listeners learn the new
URL, and the previous runner is shut down. Any failure before the swap leaves
the previous runner serving.
"""
from __future__ import annotations

import logging
import os
import threading
from collections.abc import Callable, Iterator, Mapping
from contextlib import AbstractContextManager, contextmanager
from enum import Enum
from pathlib import Path
from typing import Protocol

from .capture import DEFAULT_CONSOLE_CAPACITY, LineConsumer, LogCapture
from .ports import PortAllocator
from .provisioner import InstanceProvisioner
from .providers.base import ReadinessGate, Runner, RunnerProvider
from .readiness import waiter_factory
from .repository import DEFAULT_REMOTE, GitRepository
from .sandbox import FileSandbox, dir_path

APP_ENV = "prod"

_log = logging.getLogger(__name__)


class DeploymentPhase(str, Enum):
    """Where an application is in the update protocol."""

    IDLE = "idle"
    FETCHING = "fetching"
    PROVISIONING = "provisioning"
    STARTING_NEW = "starting_new"
    AWAITING_READY = "awaiting_ready"
    SWAPPED = "swapped"
    RETIRING_OLD = "retiring_old"


class DeploymentError(RuntimeError):
    """Raised when an update fails before the new instance became current."""

    def __init__(self, app_name: str, phase: DeploymentPhase, message: str) -> None:
        """Record which application and phase failed."""
        super().__init__(f"{app_name}: {phase.value} failed: {message}")
        self.app_name = app_name
        self.phase = phase


class AppChangeListener(Protocol):
    """Callback fired once a new instance is reachable."""

    def __call__(self, name: str, url: str) -> None:
        """Handle the application *name* now serving at *url*."""


class SourceRepository(Protocol):
    """The parts of :class:`~apprunner.repository.GitRepository` used here."""

    def fetch_and_merge(self, remote_name: str = DEFAULT_REMOTE) -> object:
        """Bring the working copy up to date."""

    def working_tree_root(self) -> Path:
        """Return the working copy root."""


WaiterFactory = Callable[[str, int], AbstractContextManager[ReadinessGate]]


def name_from_url(git_url: str) -> str:
    """Derive an application name from a repository URL or path."""
    name = git_url.removesuffix("/")
    if name.lower().endswith(".git"):
        name = name[: -len(".git")]
    return name[max(name.rfind("/"), name.rfind("\\")) + 1 :]


def create_app_env_vars(
    port: int,
    name: str,
    base_env: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Return the environment for a new instance of *name* listening on *port*."""
    env = dict(os.environ if base_env is None else base_env)
    env["APP_PORT"] = str(port)
    env["APP_NAME"] = name
    env["APP_ENV"] = APP_ENV
    return env


class AppManager:
    """Deploys and supervises one application."""

    @classmethod
    def create(
        cls,
        git_url: str,
        sandbox: FileSandbox,
        name: str,
        **kwargs: object,
    ) -> AppManager:
        """Open or clone the working copy for *name* and build its manager."""
        repo_dir = sandbox.app_dir(name, "repo")
        instance_dir = sandbox.app_dir(name, "instances")
        repository = GitRepository.open_or_clone(git_url, repo_dir)
        repository.set_remote(git_url, DEFAULT_REMOTE)
        _log.info("Created app manager for %s in %s", name, dir_path(sandbox.app_dir(name)))
        return cls(name, git_url, repository, instance_dir, **kwargs)  # type: ignore[arg-type]

    def __init__(
        self,
        name: str,
        git_url: str,
        repository: SourceRepository,
        instance_root: Path,
        *,
        ports: PortAllocator | None = None,
        waiters: WaiterFactory | None = None,
        host: str = "localhost",
        console_capacity: int = DEFAULT_CONSOLE_CAPACITY,
        keep_instances: int | None = None,
    ) -> None:
        """Wire the manager to its working copy and collaborators."""
        self._name = name
        self._git_url = git_url
        self._repository = repository
        self._provisioner = InstanceProvisioner(instance_root)
        self._ports = ports or PortAllocator()
        self._waiters: WaiterFactory = waiters or waiter_factory(host=host)
        self._host = host
        self._keep_instances = keep_instances
        self._logs = LogCapture(console_capacity)
        self._listeners: list[AppChangeListener] = []
        self._update_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._phase = DeploymentPhase.IDLE
        self._current: Runner | None = None
        self._current_url: str | None = None
        self._current_dir: Path | None = None

    # ------------------------------------------------------------------
    # Read accessors
    # ------------------------------------------------------------------
    @property
    def name(self) -> str:
        """The application name."""
        return self._name

    @property
    def git_url(self) -> str:
        """The remote the working copy tracks."""
        return self._git_url

    @property
    def phase(self) -> DeploymentPhase:
        """The current step of the update protocol."""
        return self._phase

    @property
    def current_runner(self) -> Runner | None:
        """The runner serving traffic, or ``None`` when stopped."""
        with self._state_lock:
            return self._current

    @property
    def current_url(self) -> str | None:
        """Where the current runner is reachable."""
        with self._state_lock:
            return self._current_url

    @property
    def instance_root(self) -> Path:
        """Directory holding this application's instance directories."""
        return self._provisioner.instance_root

    def latest_build_log(self) -> str:
        """Return the transcript of the most recent deployment."""
        return self._logs.build.text()

    def latest_console_log(self) -> str:
        """Return the buffered console output, safe to poll during an update."""
        return self._logs.console.text()

    def describe(self) -> dict[str, object]:
        """Return a status snapshot suitable for reporting."""
        with self._state_lock:
            running = self._current is not None
            url = self._current_url
            instance_dir = self._current_dir
        return {
            "name": self._name,
            "git_url": self._git_url,
            "phase": self._phase.value,
            "running": running,
            "url": url,
            "instance_dir": str(instance_dir) if instance_dir else None,
        }

    def add_listener(self, listener: AppChangeListener) -> None:
        """Register *listener* to be told about every successful deployment."""
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Mutators
    # ------------------------------------------------------------------
    def clear_logs(self) -> None:
        """Empty the build and console logs."""
        self._logs.clear()

    def stop_app(self) -> None:
        """Shut down the current runner, if any."""
        with self._update_lock:
            with self._state_lock:
                runner, self._current = self._current, None
                self._current_url = None
                self._current_dir = None
            if runner is not None:
                _log.info("Stopping %s", self._name)
                runner.shutdown()

    def update(self, runner_provider: RunnerProvider, output: LineConsumer) -> None:
        """Deploy the latest source as a new instance and retire the old one.

        Concurrent calls are serialised. Raises :class:`DeploymentError` when
        the new instance could not be brought up; the previous instance keeps
        serving in that case.
        """
        with self._update_lock:
            try:
                self._update(runner_provider, output)
            finally:
                self._phase = DeploymentPhase.IDLE

    def _update(self, runner_provider: RunnerProvider, output: LineConsumer) -> None:
        session = self._logs.begin(output)
        build_line = session.build_line

        with self._phase_step(DeploymentPhase.FETCHING):
            build_line("Fetching latest changes from git...")
            self._repository.fetch_and_merge(DEFAULT_REMOTE)

        with self._phase_step(DeploymentPhase.PROVISIONING):
            instance_dir = self._provisioner.provision(self._repository.working_tree_root())
            build_line(f"Created new instance in {dir_path(instance_dir)}")

        with self._phase_step(DeploymentPhase.STARTING_NEW):
            port = self._ports.allocate()
            env = create_app_env_vars(port, self._name)
            with self._state_lock:
                old_runner = self._current
                old_dir = self._current_dir
            runner = runner_provider.runner_for(self._name, instance_dir)

        try:
            with self._phase_step(DeploymentPhase.STARTING_NEW):
                with self._waiters(self._name, port) as waiter:
                    gate = _PhaseGate(self, waiter)
                    runner.start(build_line, session.console_line, env, gate)
        except DeploymentError:
            self._discard_failed(runner)
            raise
        finally:
            session.detach()

        url = f"http://{self._host}:{port}/{self._name}"
        with self._state_lock:
            self._current = runner
            self._current_url = url
            self._current_dir = instance_dir
        self._phase = DeploymentPhase.SWAPPED
        _log.info("%s now serving at %s", self._name, url)

        self._notify_listeners(url, build_line)

        self._phase = DeploymentPhase.RETIRING_OLD
        protect = [instance_dir]
        if old_runner is not None:
            build_line("Shutting down previous version")
            _log.info("Shutting down previous version of %s", self._name)
            try:
                old_runner.shutdown()
            except Exception as exc:
                _log.warning("Previous version of %s failed to stop: %s", self._name, exc)
                build_line(f"Warning: previous version did not shut down cleanly: {exc}")
                # It may still be running from its directory.
                if old_dir is not None:
                    protect.append(old_dir)
        build_line("Deployment complete.")
        self._apply_retention(protect)

    # ------------------------------------------------------------------
    @contextmanager
    def _phase_step(self, phase: DeploymentPhase) -> Iterator[None]:
        self._phase = phase
        try:
            yield
        except DeploymentError:
            raise
        except Exception as exc:
            # Report the phase reached, which may have advanced inside the step.
            failed = self._phase
            _log.warning("%s: %s failed: %s", self._name, failed.value, exc)
            raise DeploymentError(self._name, failed, str(exc)) from exc

    def _discard_failed(self, runner: Runner) -> None:
        try:
            runner.shutdown()
        except Exception as exc:
            _log.warning("Failed to clean up unready instance of %s: %s", self._name, exc)

    def _notify_listeners(self, url: str, build_line: LineConsumer) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._name, url)
            except Exception as exc:
                _log.exception("Listener %r failed for %s", listener, self._name)
                build_line(f"Warning: listener failed: {exc}")

    def _apply_retention(self, protect: list[Path]) -> None:
        if self._keep_instances is None:
            return
        try:
            self._provisioner.prune(self._keep_instances, protect=protect)
        except OSError as exc:
            _log.warning("Could not prune old instances of %s: %s", self._name, exc)


class _PhaseGate:
    """Readiness gate that marks the manager as awaiting readiness."""

    def __init__(self, manager: AppManager, waiter: ReadinessGate) -> None:
        self._manager = manager
        self._waiter = waiter

    def wait_until_ready(self, is_alive: Callable[[], bool] | None = None) -> None:
        self._manager._phase = DeploymentPhase.AWAITING_READY
        self._waiter.wait_until_ready(is_alive)


__all__ = [
    "APP_ENV",
    "AppChangeListener",
    "AppManager",
    "DeploymentError",
    "DeploymentPhase",
    "create_app_env_vars",
    "name_from_url",
]
