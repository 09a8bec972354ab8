"""Layered configuration for apprunner.

Sources are applied in order, each one overriding the previous:

1. the built-in :data:`DEFAULTS`;
2. the YAML file at ``/etc/apprunner/config.yml`` (``--config-file`` or
   ``APPRUNNER_CONFIG_FILE`` point elsewhere);
3. ``APPRUNNER_*`` environment variables;
4. overrides passed in by the CLI.

Nested keys are addressed from the environment with a double underscore::

    APPRUNNER_READINESS__TIMEOUT=120
    APPRUNNER_RUNNER__START_COMMAND="gunicorn app:app"

Environment values go through ``yaml.safe_load`` so ``120`` arrives as an
integer and ``null`` as ``None``.
"""
from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load apprunner configuration. Install with "
        "`pip install apprunner` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "APPRUNNER_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
PORT_STRATEGIES = ("ephemeral", "sequential")


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


class _Section:
    """Typed accessors over one mapping, naming keys as ``<section>.<key>``."""

    def __init__(self, values: Mapping[str, object], prefix: str = "") -> None:
        self._values = values
        self._prefix = prefix

    def label(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def raw(self, key: str) -> object | None:
        return self._values.get(key)

    def path(self, key: str) -> Path:
        value = self._values.get(key)
        if isinstance(value, (str, Path)) and str(value).strip():
            return Path(value).expanduser()
        raise ConfigError(f"{self.label(key)} must be a filesystem path. Got {value!r}.")

    def integer(self, key: str, *, minimum: int | None = None, maximum: int | None = None) -> int:
        value = self._values.get(key)
        label = self.label(key)
        if isinstance(value, bool) or not isinstance(value, (int, str)):
            raise ConfigError(f"{label} must be an integer. Got {value!r}.")
        try:
            number = int(value, 0) if isinstance(value, str) else value
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
        if minimum is not None and number < minimum:
            raise ConfigError(f"{label} must be at least {minimum}. Got {number}.")
        if maximum is not None and number > maximum:
            raise ConfigError(f"{label} must be at most {maximum}. Got {number}.")
        return number

    def seconds(self, key: str) -> float:
        value = self._values.get(key)
        label = self.label(key)
        if isinstance(value, bool) or not isinstance(value, (int, float, str)):
            raise ConfigError(f"{label} must be a number of seconds. Got {value!r}.")
        try:
            number = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
        if number <= 0:
            raise ConfigError(f"{label} must be greater than zero. Got {number}.")
        return number

    def text(self, key: str) -> str | None:
        value = self._values.get(key)
        if value is None:
            return None
        if not isinstance(value, str):
            raise ConfigError(f"{self.label(key)} must be a string. Got {value!r}.")
        return value.strip() or None

    def section(self, key: str) -> _Section:
        return _Section(_mapping(self._values.get(key), self.label(key)), f"{key}.")


@dataclass(frozen=True)
class PortsConfig:
    """How instance ports are chosen."""

    strategy: str = "ephemeral"
    base: int = 5000

    @classmethod
    def from_section(cls, section: _Section) -> PortsConfig:
        """Validate the ``ports`` section."""
        strategy = str(section.raw("strategy"))
        if strategy not in PORT_STRATEGIES:
            raise ConfigError(
                f"Unsupported port allocation strategy '{strategy}'. "
                f"Allowed: {', '.join(PORT_STRATEGIES)}."
            )
        return cls(strategy=strategy, base=section.integer("base", minimum=1, maximum=65535))

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"strategy": self.strategy, "base": self.base}


@dataclass(frozen=True)
class ReadinessConfig:
    """How long and how often to poll a freshly started instance."""

    timeout: float = 60.0
    interval: float = 0.5

    @classmethod
    def from_section(cls, section: _Section) -> ReadinessConfig:
        """Validate the ``readiness`` section."""
        return cls(timeout=section.seconds("timeout"), interval=section.seconds("interval"))

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"timeout": self.timeout, "interval": self.interval}


@dataclass(frozen=True)
class RunnerConfig:
    """Commands used to build and start an instance.

    Both commands are optional; without a start command the runner provider
    falls back to ``package.json`` or a ``Procfile`` found in the instance.
    """

    build_command: str | None = None
    start_command: str | None = None
    shutdown_timeout: float = 10.0

    @classmethod
    def from_section(cls, section: _Section) -> RunnerConfig:
        """Validate the ``runner`` section."""
        return cls(
            build_command=section.text("build_command"),
            start_command=section.text("start_command"),
            shutdown_timeout=section.seconds("shutdown_timeout"),
        )

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "build_command": self.build_command,
            "start_command": self.start_command,
            "shutdown_timeout": self.shutdown_timeout,
        }


@dataclass(frozen=True)
class InstancesConfig:
    """Retention policy for instance directories (``None`` keeps everything)."""

    keep: int | None = None

    @classmethod
    def from_section(cls, section: _Section) -> InstancesConfig:
        """Validate the ``instances`` section; a null ``keep`` disables pruning."""
        if section.raw("keep") is None:
            return cls()
        return cls(keep=section.integer("keep", minimum=1))

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"keep": self.keep}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for apprunner."""

    config_file: Path
    data_dir: Path
    registry_dir: Path
    logs_dir: Path
    runtime_dir: Path
    lock_timeout: float
    host: str
    console_log_capacity: int
    ports: PortsConfig
    readiness: ReadinessConfig
    runner: RunnerConfig
    instances: InstancesConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "data_dir": str(self.data_dir),
            "registry_dir": str(self.registry_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "lock_timeout": self.lock_timeout,
            "host": self.host,
            "console_log_capacity": self.console_log_capacity,
            "ports": self.ports.to_dict(),
            "readiness": self.readiness.to_dict(),
            "runner": self.runner.to_dict(),
            "instances": self.instances.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/apprunner/config.yml",
    "data_dir": "/var/lib/apprunner",
    "registry_dir": None,  # <data_dir>/registry
    "logs_dir": "/var/log/apprunner",
    "runtime_dir": "/run/apprunner",
    "lock_timeout": 30.0,
    "host": "localhost",
    "console_log_capacity": 5000,
    "ports": PortsConfig().to_dict(),
    "readiness": ReadinessConfig().to_dict(),
    "runner": RunnerConfig().to_dict(),
    "instances": InstancesConfig().to_dict(),
}

_SECTIONS = {
    name: set(value)
    for name, value in DEFAULTS.items()
    if isinstance(value, Mapping)
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    environ = os.environ if env is None else env
    if config_file:
        config_path = Path(config_file)
    else:
        config_path = Path(environ.get(CONFIG_ENV_VAR) or str(DEFAULTS["config_file"]))

    merged: dict[str, object] = dict(DEFAULTS)
    for layer in (_read_file(config_path), _env_layer(environ), dict(overrides or {})):
        merged = _merged(merged, layer)
    merged["config_file"] = str(config_path)

    _check_keys(merged)
    return _build(_Section(merged))


def _read_file(path: Path) -> dict[str, object]:
    if not path.is_file():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _mapping(data, str(path))


def _env_layer(environ: Mapping[str, str]) -> dict[str, object]:
    layer: dict[str, object] = {}
    for key, value in environ.items():
        if key == CONFIG_ENV_VAR or not key.startswith(ENV_PREFIX):
            continue
        parts = [part.lower() for part in key[len(ENV_PREFIX) :].split("__") if part]
        if not parts:
            continue
        *parents, leaf = parts
        node = layer
        for part in parents:
            child = node.setdefault(part, {})
            if not isinstance(child, dict):
                raise ConfigError(
                    f"Environment variable {key} conflicts with {ENV_PREFIX}{part.upper()}."
                )
            node = child
        node[leaf] = _parse_env_value(value)
    return layer


def _parse_env_value(raw: str) -> object:
    try:
        return yaml.safe_load(raw.strip())
    except yaml.YAMLError:
        return raw.strip()


def _merged(base: Mapping[str, object], layer: Mapping[str, object]) -> dict[str, object]:
    result = dict(base)
    for key, value in layer.items():
        current = result.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            result[key] = _merged(current, _mapping(value, key))
        else:
            result[key] = value
    return result


def _check_keys(raw: Mapping[str, object]) -> None:
    unknown = sorted(set(raw) - set(DEFAULTS))
    if unknown:
        raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)}.")
    for section, allowed in _SECTIONS.items():
        extra = sorted(set(_mapping(raw.get(section), section)) - allowed)
        if extra:
            raise ConfigError(f"Unknown {section} configuration keys: {', '.join(extra)}.")


def _build(root: _Section) -> AppConfig:
    data_dir = root.path("data_dir")
    registry_dir = root.path("registry_dir") if root.raw("registry_dir") else data_dir / "registry"
    host = root.text("host")
    if host is None:
        raise ConfigError("host must be a non-empty string.")

    return AppConfig(
        config_file=root.path("config_file"),
        data_dir=data_dir,
        registry_dir=registry_dir,
        logs_dir=root.path("logs_dir"),
        runtime_dir=root.path("runtime_dir"),
        lock_timeout=root.seconds("lock_timeout"),
        host=host,
        console_log_capacity=root.integer("console_log_capacity", minimum=1),
        ports=PortsConfig.from_section(root.section("ports")),
        readiness=ReadinessConfig.from_section(root.section("readiness")),
        runner=RunnerConfig.from_section(root.section("runner")),
        instances=InstancesConfig.from_section(root.section("instances")),
    )


def _mapping(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "InstancesConfig",
    "PortsConfig",
    "ReadinessConfig",
    "RunnerConfig",
    "load_config",
]
