"""Runner adapters for apprunner."""
from __future__ import annotations

from .base import LineConsumer, ReadinessGate, Runner, RunnerProvider
from .process_runner import ProcessRunner, ProcessRunnerProvider, RunnerError

__all__ = [
    "LineConsumer",
    "ProcessRunner",
    "ProcessRunnerProvider",
    "ReadinessGate",
    "Runner",
    "RunnerError",
    "RunnerProvider",
]
