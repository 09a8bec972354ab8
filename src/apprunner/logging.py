"""Structured and human-readable logging for apprunner.

Every CLI command runs inside :meth:`StructuredLogger.operation`, which
appends exactly one JSON record to ``operations.jsonl`` describing the
command, its arguments, the steps it performed and the final result. Library
modules log through the standard :mod:`logging` hierarchy under ``apprunner``;
:func:`configure_logging` routes that hierarchy into a rotating
``apprunner.log`` next to the operations log.

Logging must never break a command. When the log directory cannot be created
or a write fails, the structured logger disables itself and carries on.
"""
from __future__ import annotations

import json
import logging
import logging.handlers
import os
import time
import uuid
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

OPERATIONS_LOG = "operations.jsonl"
HUMAN_LOG = "apprunner.log"
HUMAN_LOG_MAX_BYTES = 5 * 1024 * 1024
HUMAN_LOG_BACKUPS = 5
HUMAN_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_log = logging.getLogger(__name__)


def configure_logging(logs_dir: Path, *, level: int = logging.INFO) -> Path | None:
    """Attach a rotating file handler for the ``apprunner`` logger hierarchy.

    Returns the log file path, or ``None`` when the directory is unusable.
    Calling this repeatedly with the same directory does not add duplicate
    handlers.
    """
    root = logging.getLogger("apprunner")
    root.setLevel(level)
    path = logs_dir / HUMAN_LOG
    for handler in root.handlers:
        if isinstance(handler, logging.handlers.RotatingFileHandler):
            if Path(handler.baseFilename) == path.absolute():
                return path
    try:
        logs_dir.mkdir(parents=True, exist_ok=True)
        handler = logging.handlers.RotatingFileHandler(
            path,
            maxBytes=HUMAN_LOG_MAX_BYTES,
            backupCount=HUMAN_LOG_BACKUPS,
            encoding="utf-8",
        )
    except OSError:
        return None
    handler.setFormatter(logging.Formatter(HUMAN_LOG_FORMAT))
    root.addHandler(handler)
    return path


class OperationScope:
    """Collects steps and the result for a single logged operation."""

    def __init__(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Initialise an empty scope for *command*."""
        self.command = command
        self.op_id = uuid.uuid4().hex
        self.args = _sanitise(dict(args or {}))
        self.target = _sanitise(dict(target or {}))
        self.started_at = datetime.now(UTC)
        self._started_monotonic = time.monotonic()
        self.steps: list[dict[str, object]] = []
        self.lock_wait_ms: int | None = None
        self.result: dict[str, object] | None = None

    def add_step(self, name: str, *, status: str = "success", detail: object = None) -> None:
        """Record an intermediate step."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail is not None:
            step["detail"] = _sanitise(detail)
        self.steps.append(step)

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the operation waited for its locks."""
        self.lock_wait_ms = int(wait_ms)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result(
            "success",
            message,
            changed=changed,
            warnings=warnings,
            context=context,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            warnings=warnings if warnings is not None else [message],
            errors=errors,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            errors=errors if errors is not None else [message],
            rc=rc,
            context=context,
        )

    def to_record(self) -> dict[str, object]:
        """Return the JSON-safe record for this operation."""
        duration_ms = int((time.monotonic() - self._started_monotonic) * 1000)
        return {
            "timestamp": self.started_at.isoformat(),
            "op_id": self.op_id,
            "pid": os.getpid(),
            "command": self.command,
            "args": self.args,
            "target": self.target,
            "lock_wait_ms": self.lock_wait_ms,
            "steps": list(self.steps),
            "result": self.result,
            "duration_ms": duration_ms,
        }

    # ------------------------------------------------------------------
    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int = 0,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": [str(item) for item in warnings or []],
            "errors": [str(item) for item in errors or []],
        }
        if rc is not None:
            result["rc"] = rc
        if context:
            result["context"] = _sanitise(dict(context))
        self.result = result


class StructuredLogger:
    """Append operation records to ``operations.jsonl`` under *logs_dir*."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare the log directory, disabling the logger if unavailable."""
        self._logs_dir = logs_dir.expanduser()
        self._operations_log_path = self._logs_dir / OPERATIONS_LOG
        self._enabled = True
        try:
            self._logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            _log.warning("Structured logging disabled; cannot create %s: %s", self._logs_dir, exc)
            self._enabled = False

    @property
    def logs_dir(self) -> Path:
        """Directory holding the log files."""
        return self._logs_dir

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it on exit."""
        scope = OperationScope(command, args=args, target=target)
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(
                    f"Unhandled {type(exc).__name__}: {exc}",
                    errors=[str(exc) or type(exc).__name__],
                )
            raise
        finally:
            if scope.result is None:
                scope.success("Completed.")
            self._write(scope)

    def _write(self, scope: OperationScope) -> None:
        record = scope.to_record()
        result = record.get("result")
        status = result.get("status") if isinstance(result, Mapping) else "unknown"
        _log.info("%s -> %s", scope.command, status)
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
        except OSError as exc:
            _log.warning("Structured logging disabled after write failure: %s", exc)
            self._enabled = False


def _sanitise(value: object) -> object:
    """Return *value* converted into JSON-serialisable primitives."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _sanitise(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitise(item) for item in value]
    return str(value)


__all__ = ["OperationScope", "StructuredLogger", "configure_logging"]
