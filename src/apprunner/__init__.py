"""apprunner: blue/green deployments for applications living in Git.

Only the version metadata lives here; import the submodules directly
(``apprunner.manager``, ``apprunner.apps``, ``apprunner.cli``).
"""
from __future__ import annotations

__all__ = ["__version__", "get_version"]

# Keep in sync with ``version`` in pyproject.toml.
__version__ = "0.1.0"


def get_version() -> str:
    """Return the installed apprunner version string."""
    return __version__
