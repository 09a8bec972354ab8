"""Process exit codes returned by the ``apprunner`` CLI."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Map each failure class to a stable exit status.

    ``VALIDATION`` covers bad input (unknown app, invalid config),
    ``ENVIRONMENT`` a busy lock or exhausted port range, ``PROVIDER`` Git or
    state-file failures, and ``DEPLOYMENT`` an update that never reached the
    swap.
    """

    OK = 0
    VALIDATION = 2
    ENVIRONMENT = 3
    PROVIDER = 4
    DEPLOYMENT = 5
