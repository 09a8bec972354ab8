"""Free-port allocation for new application instances."""
from __future__ import annotations

import socket
from dataclasses import dataclass

ALLOWED_STRATEGIES = ("ephemeral", "sequential")


class PortAllocationError(RuntimeError):
    """Raised when no free port can be found."""


@dataclass(slots=True)
class PortAllocator:
    """Find a TCP port nothing is currently listening on.

    ``ephemeral`` asks the kernel for any free port. ``sequential`` probes
    upwards from ``base_port`` and returns the first port that can be bound,
    which keeps instance ports inside a predictable range for firewalls.
    """

    strategy: str = "ephemeral"
    base_port: int = 5000
    host: str = "127.0.0.1"
    max_port: int = 65535

    def __post_init__(self) -> None:
        """Validate initialiser parameters."""
        if self.strategy not in ALLOWED_STRATEGIES:
            raise PortAllocationError(f"Unsupported port allocation strategy '{self.strategy}'.")
        if not 1 <= self.base_port <= self.max_port <= 65535:
            raise PortAllocationError(
                f"Invalid port range {self.base_port}-{self.max_port}."
            )

    def allocate(self) -> int:
        """Return a port that was free at the time of the call."""
        if self.strategy == "ephemeral":
            try:
                return _bind_probe(self.host, 0)
            except OSError as exc:
                raise PortAllocationError(f"Could not obtain an ephemeral port: {exc}") from exc

        for candidate in range(self.base_port, self.max_port + 1):
            try:
                return _bind_probe(self.host, candidate)
            except OSError:
                continue
        raise PortAllocationError(
            f"No free port between {self.base_port} and {self.max_port}."
        )


def _bind_probe(host: str, port: int) -> int:
    """Bind *port* (0 for any) on *host* and return the bound port number."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((host, port))
        return int(sock.getsockname()[1])


__all__ = ["PortAllocationError", "PortAllocator"]
