"""Run application instances as local subprocesses."""
from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
import threading
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import IO

from .base import LineConsumer, ReadinessGate

_log = logging.getLogger(__name__)


class RunnerError(RuntimeError):
    """Raised when an instance cannot be built, launched, or stopped."""


class ProcessRunner:
    """A single instance launched with :class:`subprocess.Popen`.

    The optional build command runs to completion first with its output sent
    to the build log. The start command is then launched in its own session
    so that shutdown can signal the whole process group (``npm start`` and
    friends spawn children). A daemon thread pumps its combined
    stdout/stderr into the console consumer. Output is decoded as UTF-8
    with undecodable bytes replaced, so arbitrary app output never stops the
    pump.
    """

    def __init__(
        self,
        name: str,
        instance_dir: Path,
        *,
        start_command: Sequence[str],
        build_command: Sequence[str] | None = None,
        shutdown_timeout: float = 10.0,
    ) -> None:
        """Describe how to build and start *name* from *instance_dir*."""
        if not start_command:
            raise RunnerError(f"No start command given for {name}.")
        self.name = name
        self.instance_dir = instance_dir
        self.start_command = list(start_command)
        self.build_command = list(build_command) if build_command else None
        self.shutdown_timeout = shutdown_timeout
        self._process: subprocess.Popen[str] | None = None
        self._pump: threading.Thread | None = None
        self._lock = threading.Lock()
        self._stopped = False

    @property
    def pid(self) -> int | None:
        """Process id of the running instance, if started."""
        return self._process.pid if self._process is not None else None

    def is_running(self) -> bool:
        """Whether the instance process is alive."""
        return self._process is not None and self._process.poll() is None

    def start(
        self,
        build_log: LineConsumer,
        console_log: LineConsumer,
        env: Mapping[str, str],
        waiter: ReadinessGate,
    ) -> None:
        """Build, launch and wait for the instance to become ready."""
        with self._lock:
            if self._process is not None or self._stopped:
                raise RunnerError(f"Runner for {self.name} was already started.")

            if self.build_command:
                self._run_build(build_log, env)

            build_log(f"Starting {self.name}: {shlex.join(self.start_command)}")
            try:
                process = subprocess.Popen(  # noqa: S603
                    self.start_command,
                    cwd=str(self.instance_dir),
                    env=dict(env),
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    text=True,
                    encoding="utf-8",
                    errors="replace",
                    bufsize=1,
                    start_new_session=True,
                )
            except OSError as exc:
                raise RunnerError(
                    f"Could not launch {shlex.join(self.start_command)} for {self.name}: {exc}"
                ) from exc
            self._process = process
            assert process.stdout is not None
            self._pump = threading.Thread(
                target=_pump_lines,
                args=(process.stdout, console_log),
                name=f"apprunner-{self.name}-{process.pid}",
                daemon=True,
            )
            self._pump.start()

        _log.info("Started %s (pid %s) in %s", self.name, process.pid, self.instance_dir)
        try:
            waiter.wait_until_ready(is_alive=lambda: process.poll() is None)
        except BaseException:
            self.shutdown()
            raise

    def shutdown(self) -> None:
        """Terminate the process group, escalating to SIGKILL after the timeout."""
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
            process = self._process
            pump = self._pump

        if process is None:
            return
        if process.poll() is None:
            _log.info("Stopping %s (pid %s)", self.name, process.pid)
            _signal_group(process, signal.SIGTERM)
            try:
                process.wait(timeout=self.shutdown_timeout)
            except subprocess.TimeoutExpired:
                _log.warning(
                    "%s (pid %s) ignored SIGTERM for %.1fs; killing",
                    self.name,
                    process.pid,
                    self.shutdown_timeout,
                )
                _signal_group(process, signal.SIGKILL)
                process.wait()
        if pump is not None:
            pump.join(timeout=self.shutdown_timeout)

    # ------------------------------------------------------------------
    def _run_build(self, build_log: LineConsumer, env: Mapping[str, str]) -> None:
        assert self.build_command is not None
        command_text = shlex.join(self.build_command)
        build_log(f"Running {command_text}")
        try:
            process = subprocess.Popen(  # noqa: S603
                self.build_command,
                cwd=str(self.instance_dir),
                env=dict(env),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except OSError as exc:
            raise RunnerError(f"Could not run {command_text} for {self.name}: {exc}") from exc

        assert process.stdout is not None
        with process.stdout:
            for line in process.stdout:
                build_log(line.rstrip("\r\n"))
        returncode = process.wait()
        if returncode != 0:
            raise RunnerError(f"{command_text} failed for {self.name} (exit {returncode}).")


class ProcessRunnerProvider:
    """Pick build and start commands for an instance directory.

    Explicit commands always win. Otherwise ``package.json`` means
    ``npm install`` then ``npm start``, and a ``Procfile`` ``web:`` entry is
    run through ``sh -c`` so ``$APP_PORT`` style references expand.
    """

    def __init__(
        self,
        *,
        build_command: str | None = None,
        start_command: str | None = None,
        shutdown_timeout: float = 10.0,
    ) -> None:
        """Store the configured command overrides."""
        self.build_command = build_command
        self.start_command = start_command
        self.shutdown_timeout = shutdown_timeout

    def runner_for(self, name: str, instance_dir: Path) -> ProcessRunner:
        """Return a runner for *name* deployed in *instance_dir*."""
        build, start = self.resolve_commands(instance_dir)
        return ProcessRunner(
            name,
            instance_dir,
            start_command=start,
            build_command=build,
            shutdown_timeout=self.shutdown_timeout,
        )

    def resolve_commands(self, instance_dir: Path) -> tuple[list[str] | None, list[str]]:
        """Return ``(build_command, start_command)`` for *instance_dir*."""
        build = shlex.split(self.build_command) if self.build_command else None
        if self.start_command:
            return build, shlex.split(self.start_command)

        if (instance_dir / "package.json").is_file():
            return build or ["npm", "install"], ["npm", "start"]

        procfile = instance_dir / "Procfile"
        if procfile.is_file():
            web = _procfile_web_command(procfile)
            if web:
                return build, ["sh", "-c", web]

        raise RunnerError(
            f"No start command configured and no package.json or Procfile found in "
            f"{instance_dir}."
        )


def _procfile_web_command(procfile: Path) -> str | None:
    for raw in procfile.read_text(encoding="utf-8").splitlines():
        process_type, sep, command = raw.partition(":")
        if sep and process_type.strip() == "web" and command.strip():
            return command.strip()
    return None


def _pump_lines(stream: IO[str], consumer: LineConsumer) -> None:
    with stream:
        for line in stream:
            try:
                consumer(line)
            except Exception:
                _log.exception("Console consumer failed; line dropped")


def _signal_group(process: subprocess.Popen[str], sig: signal.Signals) -> None:
    try:
        os.killpg(os.getpgid(process.pid), sig)
    except ProcessLookupError:
        return


__all__ = ["ProcessRunner", "ProcessRunnerProvider", "RunnerError"]
