"""Interfaces the deployment orchestrator expects from runner adapters."""
from __future__ import annotations

from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Protocol

LineConsumer = Callable[[str], None]


class ReadinessGate(Protocol):
    """Blocks until a started instance answers."""

    def wait_until_ready(self, is_alive: Callable[[], bool] | None = None) -> None:
        """Return once ready; raise when the instance never becomes ready."""


class Runner(Protocol):
    """One startable, stoppable instance of an application."""

    def start(
        self,
        build_log: LineConsumer,
        console_log: LineConsumer,
        env: Mapping[str, str],
        waiter: ReadinessGate,
    ) -> None:
        """Build and launch the instance, returning only once it is ready."""

    def shutdown(self) -> None:
        """Stop the instance. Safe to call more than once."""

    def is_running(self) -> bool:
        """Whether the instance is still alive."""


class RunnerProvider(Protocol):
    """Creates runners for instance directories."""

    def runner_for(self, name: str, instance_dir: Path) -> Runner:
        """Return a runner for application *name* deployed in *instance_dir*."""


__all__ = ["LineConsumer", "ReadinessGate", "Runner", "RunnerProvider"]
