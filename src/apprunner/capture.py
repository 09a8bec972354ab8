"""Capture of build-time and run-time output for a managed application.

Two logs are kept per application:

* the *console log*, a bounded ring buffer of raw output lines from the
  running instance, and
* the *build log*, the transcript of one deployment: progress lines written by
  the orchestrator plus the first lines printed by the new instance while it
  starts up.

Each deployment opens a :class:`CaptureSession`. Its console consumer mirrors
lines into the build log through a :class:`ForwardingSlot` until the session
is detached, after which console output only reaches the ring buffer. Every
session has its own slot, so a runner left over from an earlier deployment
can never write into a newer build log.
"""
from __future__ import annotations

import threading
from collections import deque
from collections.abc import Callable

LineConsumer = Callable[[str], None]

DEFAULT_CONSOLE_CAPACITY = 5000


class ConsoleLog:
    """Thread-safe FIFO of raw lines with a fixed capacity."""

    def __init__(self, capacity: int = DEFAULT_CONSOLE_CAPACITY) -> None:
        """Create an empty buffer holding at most *capacity* lines."""
        if capacity < 1:
            raise ValueError("Console log capacity must be at least 1.")
        self._lines: deque[str] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        """Maximum number of lines retained."""
        return self._lines.maxlen or 0

    def append(self, line: str) -> None:
        """Add *line*, evicting the oldest entry once full."""
        with self._lock:
            self._lines.append(line)

    def snapshot(self) -> list[str]:
        """Return a consistent copy of the buffered lines, oldest first."""
        with self._lock:
            return list(self._lines)

    def text(self) -> str:
        """Return the buffered lines concatenated as they were received."""
        return "".join(self.snapshot())

    def clear(self) -> None:
        """Drop every buffered line."""
        with self._lock:
            self._lines.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._lines)


class BuildLog:
    """Append-only text buffer for a deployment transcript."""

    def __init__(self) -> None:
        """Create an empty build log."""
        self._parts: list[str] = []
        self._lock = threading.Lock()

    def append_line(self, line: str) -> None:
        """Append *line* followed by a newline."""
        with self._lock:
            self._parts.append(line + "\n")

    def text(self) -> str:
        """Return the full transcript."""
        with self._lock:
            return "".join(self._parts)

    def clear(self) -> None:
        """Empty the transcript."""
        with self._lock:
            self._parts.clear()


class ForwardingSlot:
    """An optional line consumer that can be swapped out atomically."""

    def __init__(self, handler: LineConsumer | None = None) -> None:
        """Start with *handler* attached (or nothing)."""
        self._handler = handler
        self._lock = threading.Lock()

    def get(self) -> LineConsumer | None:
        """Return the attached handler, if any."""
        with self._lock:
            return self._handler

    def set(self, handler: LineConsumer | None) -> None:
        """Attach *handler*, replacing whatever was attached."""
        with self._lock:
            self._handler = handler

    def detach(self) -> LineConsumer | None:
        """Clear the slot and return the handler that was attached."""
        with self._lock:
            handler, self._handler = self._handler, None
            return handler

    def forward(self, line: str) -> bool:
        """Send *line* to the attached handler; return whether one was attached."""
        handler = self.get()
        if handler is None:
            return False
        handler(line)
        return True


class CaptureSession:
    """The pair of consumers wired into one deployment attempt."""

    def __init__(
        self,
        build_log: BuildLog,
        console_log: ConsoleLog,
        output: LineConsumer | None = None,
    ) -> None:
        """Bind the consumers to the shared logs and an optional output sink."""
        self._build_log = build_log
        self._console_log = console_log
        self._output = output
        self._slot = ForwardingSlot(self.build_line)

    @property
    def attached(self) -> bool:
        """Whether console output is still mirrored into the build log."""
        return self._slot.get() is not None

    def build_line(self, line: str) -> None:
        """Record a build-log line and pass it on to the output sink."""
        if self._output is not None:
            self._output(line)
        self._build_log.append_line(line)

    def console_line(self, line: str) -> None:
        """Record a raw console line, mirroring it while still attached."""
        try:
            self._slot.forward(line.rstrip("\r\n"))
        finally:
            self._console_log.append(line)

    def detach(self) -> None:
        """Stop mirroring console output into the build log."""
        self._slot.detach()


class LogCapture:
    """Owns the console and build logs of one application."""

    def __init__(self, capacity: int = DEFAULT_CONSOLE_CAPACITY) -> None:
        """Create empty logs; the console log keeps *capacity* lines."""
        self.console = ConsoleLog(capacity)
        self.build = BuildLog()

    def begin(self, output: LineConsumer | None = None) -> CaptureSession:
        """Clear both logs and open a session for a new deployment."""
        self.clear()
        return CaptureSession(self.build, self.console, output)

    def clear(self) -> None:
        """Empty both logs."""
        self.build.clear()
        self.console.clear()


__all__ = [
    "BuildLog",
    "CaptureSession",
    "ConsoleLog",
    "ForwardingSlot",
    "LineConsumer",
    "LogCapture",
]
