"""Typer-powered command line interface for ``apprunner``.

The CLI is a thin front end over :class:`~apprunner.apps.AppRegistry`:
register Git repositories as applications and run them in the foreground
with blue/green deployments handled by :class:`~apprunner.manager.AppManager`.
"""
from __future__ import annotations

import textwrap
import threading
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import get_version
from .apps import AppRegistry, AppRegistryError
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger, configure_logging
from .manager import AppManager, DeploymentError
from .ports import PortAllocationError, PortAllocator
from .provisioner import InstanceProvisioner
from .providers import ProcessRunnerProvider, RunnerProvider
from .readiness import waiter_factory
from .repository import RepositoryError
from .sandbox import FileSandbox
from .state import StateRegistry, StateRegistryError

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to apprunner's YAML config file.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit output as JSON instead of a table.",
)

SUPERVISE_INTERVAL = 1.0

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Blue/green deployment runner for Git-hosted applications.

        Register a repository with `app add`, then `app run` it: every
        deployment starts a fresh instance on a new port and only retires the
        previous one once the new instance answers.
        """
    ).strip(),
)
apps_app = typer.Typer(help="Register, run and remove applications.")
config_app = typer.Typer(help="Inspect the effective configuration.")

app.add_typer(apps_app, name="app")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Objects shared by every command in one CLI invocation."""

    config: AppConfig
    state: StateRegistry
    sandbox: FileSandbox
    locks: LockManager
    logger: StructuredLogger
    apps: AppRegistry
    runner_provider: RunnerProvider


def build_runtime(config: AppConfig) -> RuntimeContext:
    """Construct the runtime collaborators described by *config*."""
    configure_logging(config.logs_dir)
    state = StateRegistry(config.registry_dir)
    sandbox = FileSandbox(config.data_dir)
    ports = PortAllocator(strategy=config.ports.strategy, base_port=config.ports.base)
    waiters = waiter_factory(
        host=config.host,
        timeout=config.readiness.timeout,
        interval=config.readiness.interval,
    )

    def make_manager(git_url: str, app_sandbox: FileSandbox, name: str) -> AppManager:
        return AppManager.create(
            git_url,
            app_sandbox,
            name,
            ports=ports,
            waiters=waiters,
            host=config.host,
            console_capacity=config.console_log_capacity,
            keep_instances=config.instances.keep,
        )

    return RuntimeContext(
        config=config,
        state=state,
        sandbox=sandbox,
        locks=LockManager(config.runtime_dir, config.lock_timeout),
        logger=StructuredLogger(config.logs_dir),
        apps=AppRegistry(sandbox, state, factory=make_manager),
        runner_provider=ProcessRunnerProvider(
            build_command=config.runner.build_command,
            start_command=config.runner.start_command,
            shutdown_timeout=config.runner.shutdown_timeout,
        ),
    )


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc
    runtime = build_runtime(config)
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


@app.callback(invoke_without_command=True)
def _root(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the apprunner version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Load configuration once; every subcommand shares the runtime."""
    runtime = _ensure_runtime(ctx, config_file, lock_timeout)
    if version:
        with runtime.logger.operation("root --version", target={"kind": "meta"}) as op:
            console.print(f"apprunner {get_version()}")
            op.success(f"apprunner {get_version()}")
        raise typer.Exit(code=ExitCode.OK)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Setting", style="bold")
        table.add_column("Value")
        for key, value in _flatten(data):
            table.add_row(key, "-" if value is None else str(value))
        console.print(table)
        op.success("Rendered configuration table.", context={"source": data["config_file"]})


@apps_app.command("add")
def app_add(
    ctx: typer.Context,
    git_url: str = typer.Argument(..., help="URL or path of the Git repository."),
    name: str | None = typer.Option(
        None,
        "--name",
        help="Application name (defaults to the repository name).",
    ),
) -> None:
    """Register a Git repository as an application and clone it."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "app add",
        args={"git_url": git_url, "name": name},
        target={"kind": "app", "name": name},
    ) as op:
        try:
            with runtime.locks.global_lock() as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                manager = runtime.apps.add(git_url, name)
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        except AppRegistryError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)
        except (RepositoryError, StateRegistryError) as exc:
            _command_error(op, f"Could not register {git_url}: {exc}", rc=ExitCode.PROVIDER)

        op.add_step("repository.clone", status="success", detail=manager.git_url)
        op.add_step("registry.update", status="success", detail=manager.name)
        console.print(f"[green]Registered '{manager.name}' from {manager.git_url}.[/green]")
        op.success("Application registered.", changed=1, context={"name": manager.name})


@apps_app.command("list")
def app_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List registered applications."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "app list",
        args={"json": json_output},
        target={"kind": "app", "scope": "registry"},
    ) as op:
        entries = []
        for entry in runtime.state.list_apps():
            name = entry["name"]
            instances = InstanceProvisioner(runtime.sandbox.apps_root() / name / "instances")
            entries.append(
                {
                    "name": name,
                    "git_url": entry["git_url"],
                    "instances": len(instances.list_instances()),
                    "status": _app_status(runtime, name),
                }
            )

        if json_output:
            console.print_json(data={"apps": entries})
            op.success("Reported application list as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Git URL")
        table.add_column("Instances")
        table.add_column("Status")
        if not entries:
            table.add_row("(none)", "", "", "")
        for item in entries:
            table.add_row(
                str(item["name"]),
                str(item["git_url"]),
                str(item["instances"]),
                str(item["status"]),
            )
        console.print(table)
        op.success("Reported application list.", changed=0)


@apps_app.command("remove")
def app_remove(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the application to remove."),
    purge: bool = typer.Option(
        False,
        "--purge",
        help="Also delete the working copy and every instance directory.",
    ),
) -> None:
    """Forget an application (it must not be running)."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "app remove",
        args={"name": name, "purge": purge},
        target={"kind": "app", "name": name},
    ) as op:
        try:
            with runtime.locks.mutate_apps([name], timeout=0) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                runtime.apps.remove(name, purge=purge)
        except LockTimeoutError:
            _command_error(
                op,
                f"Application '{name}' is running; stop it before removing.",
                rc=ExitCode.ENVIRONMENT,
            )
        except AppRegistryError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)

        op.add_step("registry.update", status="success", detail=f"removed={name}")
        if purge:
            op.add_step("sandbox.purge", status="success", detail=name)
        console.print(f"[yellow]Removed '{name}'.[/yellow]")
        op.success("Application removed.", changed=2 if purge else 1)


@apps_app.command("run")
def app_run(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the application to deploy."),
    once: bool = typer.Option(
        False,
        "--once",
        help="Stop the instance again right after a successful deployment.",
    ),
) -> None:
    """Deploy the latest source and keep it running until interrupted."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "app run",
        args={"name": name, "once": once},
        target={"kind": "app", "name": name},
    ) as op:
        try:
            with runtime.locks.app_lock(name) as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                manager = runtime.apps.open(name)
                op.add_step("registry.open", status="success", detail=name)
                _deploy(runtime, manager, op)
                if not once:
                    _supervise(manager)
                manager.stop_app()
                op.add_step("runner.stop", status="success", detail=name)
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        except AppRegistryError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)
        except RepositoryError as exc:
            _command_error(op, str(exc), rc=ExitCode.PROVIDER)

        console.print(f"[yellow]Stopped '{name}'.[/yellow]")
        op.success("Application run finished.", changed=1)


def _deploy(runtime: RuntimeContext, manager: AppManager, op: OperationScope) -> None:
    try:
        manager.update(
            runtime.runner_provider,
            lambda line: console.print(line, markup=False, highlight=False),
        )
    except DeploymentError as exc:
        op.add_step(f"deploy.{exc.phase.value}", status="error", detail=str(exc))
        _command_error(op, str(exc), rc=ExitCode.DEPLOYMENT)
    except PortAllocationError as exc:
        _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
    op.add_step("deploy", status="success", detail=manager.current_url)
    console.print(f"[green]'{manager.name}' is serving at {manager.current_url}[/green]")


def _supervise(manager: AppManager) -> None:
    """Block until Ctrl+C or until the instance process exits."""
    console.print("Press Ctrl+C to stop.")
    idle = threading.Event()
    try:
        while not idle.wait(SUPERVISE_INTERVAL):
            runner = manager.current_runner
            if runner is None or not runner.is_running():
                console.print(f"[red]'{manager.name}' exited unexpectedly.[/red]")
                console.print(manager.latest_console_log(), markup=False, highlight=False)
                return
    except KeyboardInterrupt:
        console.print("Interrupted; shutting down.")


def _flatten(data: Mapping[str, object], prefix: str = "") -> Iterator[tuple[str, object]]:
    """Yield ``section.key`` pairs for nested configuration sections."""
    for key, value in data.items():
        if isinstance(value, Mapping):
            yield from _flatten(value, f"{prefix}{key}.")
        else:
            yield f"{prefix}{key}", value


def _app_status(runtime: RuntimeContext, name: str) -> str:
    """Report ``running`` when another process holds the app's lock."""
    try:
        with runtime.locks.app_lock(name, timeout=0):
            return "stopped"
    except LockTimeoutError:
        return "running"


def main() -> None:  # pragma: no cover - thin wrapper for console_scripts
    """Run the Typer application."""
    app()


__all__ = ["RuntimeContext", "app", "build_runtime", "main"]
