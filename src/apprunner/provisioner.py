"""Materialise immutable instance directories from a working copy."""
from __future__ import annotations

import logging
import shutil
import time
from collections.abc import Iterable
from pathlib import Path

VCS_METADATA = ".git"

_log = logging.getLogger(__name__)


class ProvisionError(RuntimeError):
    """Raised when an instance directory cannot be created or populated."""


class InstanceProvisioner:
    """Create timestamped snapshots of a source tree under *instance_root*.

    Directory names are nanosecond creation timestamps, so sorting them
    numerically yields creation order.
    """

    def __init__(self, instance_root: Path) -> None:
        """Remember where instance directories are created."""
        self.instance_root = instance_root

    def provision(self, source: Path) -> Path:
        """Copy *source* (minus ``.git``) into a fresh instance directory."""
        if not source.is_dir():
            raise ProvisionError(f"Source directory {source} does not exist.")
        try:
            self.instance_root.mkdir(parents=True, exist_ok=True)
            dest = self._create_destination()
            shutil.copytree(
                source,
                dest,
                symlinks=True,
                ignore=_ignore_vcs_metadata,
                dirs_exist_ok=True,
            )
        except OSError as exc:
            raise ProvisionError(
                f"Could not copy {source} into a new instance under {self.instance_root}: {exc}"
            ) from exc
        _log.info("Provisioned instance %s from %s", dest, source)
        return dest

    def list_instances(self) -> list[Path]:
        """Return instance directories ordered oldest first."""
        if not self.instance_root.is_dir():
            return []
        stamped = [
            path
            for path in self.instance_root.iterdir()
            if path.is_dir() and path.name.isdigit()
        ]
        return sorted(stamped, key=lambda path: int(path.name))

    def prune(self, keep: int, *, protect: Iterable[Path] = ()) -> list[Path]:
        """Delete all but the newest *keep* instances, never touching *protect*."""
        if keep < 1:
            raise ProvisionError("Retention must keep at least one instance.")
        protected = {path.resolve() for path in protect}
        instances = self.list_instances()
        candidates = instances[: max(len(instances) - keep, 0)]
        removed: list[Path] = []
        for path in candidates:
            if path.resolve() in protected:
                continue
            shutil.rmtree(path, ignore_errors=True)
            removed.append(path)
        if removed:
            _log.info("Pruned %d old instance(s) under %s", len(removed), self.instance_root)
        return removed

    # ------------------------------------------------------------------
    def _create_destination(self) -> Path:
        stamp = time.time_ns()
        newest = self.list_instances()
        if newest:
            stamp = max(stamp, int(newest[-1].name) + 1)
        while True:
            dest = self.instance_root / str(stamp)
            try:
                dest.mkdir()
            except FileExistsError:
                stamp += 1
                continue
            return dest


def _ignore_vcs_metadata(directory: str, names: list[str]) -> set[str]:
    return {name for name in names if name == VCS_METADATA}


__all__ = ["InstanceProvisioner", "ProvisionError", "VCS_METADATA"]
