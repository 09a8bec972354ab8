"""Tests for the blue/green deployment protocol in :mod:`apprunner.manager`."""
from __future__ import annotations

import threading
import time
from collections.abc import Callable
from pathlib import Path

import pytest
from fakes import FakeProvider, FakeRepository, FakeRunner, WaiterRecorder, commit_file

from apprunner.manager import (
    APP_ENV,
    AppManager,
    DeploymentError,
    DeploymentPhase,
    create_app_env_vars,
    name_from_url,
)
from apprunner.providers import RunnerError
from apprunner.sandbox import FileSandbox, dir_path

MakeManager = Callable[..., AppManager]


def test_update_builds_transcript_and_swaps(
    make_manager: MakeManager,
    provider: FakeProvider,
) -> None:
    manager = make_manager()
    output: list[str] = []

    manager.update(provider, output.append)

    runner = provider.runners[0]
    assert manager.current_runner is runner
    assert manager.current_url == "http://localhost:7000/demo"
    assert manager.phase is DeploymentPhase.IDLE

    build_log = manager.latest_build_log()
    lines = build_log.splitlines()
    assert lines[0] == "Fetching latest changes from git..."
    assert lines[1] == f"Created new instance in {dir_path(runner.instance_dir)}"
    assert lines[2:4] == ["Starting server", "Listening"]
    assert build_log.endswith("Deployment complete.\n")
    assert "Shutting down previous version" not in build_log

    assert output == lines
    assert manager.latest_console_log() == "Starting server\r\nListening\n"


def test_update_passes_instance_environment(
    make_manager: MakeManager,
    provider: FakeProvider,
) -> None:
    manager = make_manager()
    manager.update(provider, lambda line: None)

    env = provider.runners[0].env
    assert env["APP_PORT"] == "7000"
    assert env["APP_NAME"] == "demo"
    assert env["APP_ENV"] == APP_ENV


def test_readiness_waiter_is_closed_after_start(
    make_manager: MakeManager,
    provider: FakeProvider,
    waiters: WaiterRecorder,
) -> None:
    manager = make_manager()
    manager.update(provider, lambda line: None)

    (waiter,) = waiters.waiters
    assert waiter.app_name == "demo"
    assert waiter.port == 7000
    assert waiter.entered and waiter.closed
    assert waiter.waits == 1


def test_console_output_after_update_stays_out_of_build_log(
    make_manager: MakeManager,
    provider: FakeProvider,
) -> None:
    manager = make_manager()
    output: list[str] = []
    manager.update(provider, output.append)
    build_before = manager.latest_build_log()

    console = provider.runners[0].console_log
    assert console is not None
    console("GET /demo 200\n")

    assert manager.latest_build_log() == build_before
    assert "GET /demo 200" not in output
    assert manager.latest_console_log().endswith("GET /demo 200\n")


def test_old_runner_cannot_write_into_new_build_log(
    make_manager: MakeManager,
    provider: FakeProvider,
) -> None:
    manager = make_manager()
    manager.update(provider, lambda line: None)
    first = provider.runners[0]
    first_console = first.console_log
    assert first_console is not None

    def chatter(runner: FakeRunner) -> None:
        first_console("late line from old instance\n")

    provider.start_hook = chatter
    manager.update(provider, lambda line: None)

    assert "late line from old instance" not in manager.latest_build_log()
    assert "late line from old instance\n" in manager.latest_console_log()


def test_second_update_notifies_then_retires_previous(
    make_manager: MakeManager,
    provider: FakeProvider,
) -> None:
    manager = make_manager()
    manager.update(provider, lambda line: None)

    notified: list[tuple[str, str]] = []

    def listener(name: str, url: str) -> None:
        provider.events.append(("notify", url))
        notified.append((name, url))

    manager.add_listener(listener)
    manager.update(provider, lambda line: None)

    first, second = provider.runners
    assert manager.current_runner is second
    assert notified == [("demo", "http://localhost:7001/demo")]
    assert provider.events == [
        ("start", first),
        ("start", second),
        ("notify", "http://localhost:7001/demo"),
        ("shutdown", first),
    ]
    assert second.shutdowns == 0
    build_log = manager.latest_build_log()
    assert "Shutting down previous version\n" in build_log
    assert build_log.endswith("Deployment complete.\n")


def test_fetch_failure_keeps_current_instance(
    make_manager: MakeManager,
    provider: FakeProvider,
    repository: FakeRepository,
) -> None:
    manager = make_manager()
    manager.update(provider, lambda line: None)
    first = provider.runners[0]

    repository.fail = True
    with pytest.raises(DeploymentError) as excinfo:
        manager.update(provider, lambda line: None)

    assert excinfo.value.phase is DeploymentPhase.FETCHING
    assert excinfo.value.app_name == "demo"
    assert manager.current_runner is first
    assert manager.current_url == "http://localhost:7000/demo"
    assert len(provider.runners) == 1
    assert first.shutdowns == 0
    assert manager.phase is DeploymentPhase.IDLE


def test_start_failure_keeps_current_and_skips_listeners(
    make_manager: MakeManager,
    provider: FakeProvider,
    waiters: WaiterRecorder,
) -> None:
    manager = make_manager()
    manager.update(provider, lambda line: None)
    first = provider.runners[0]

    notified: list[str] = []
    manager.add_listener(lambda name, url: notified.append(url))
    provider.fail_ready = True

    with pytest.raises(DeploymentError) as excinfo:
        manager.update(provider, lambda line: None)

    failed = provider.runners[1]
    assert excinfo.value.phase is DeploymentPhase.AWAITING_READY
    assert manager.current_runner is first
    assert notified == []
    assert failed.shutdowns == 1
    assert first.shutdowns == 0
    assert "Deployment complete." not in manager.latest_build_log()
    assert waiters.waiters[-1].entered and waiters.waiters[-1].closed


def test_provisioning_failure_starts_nothing(
    make_manager: MakeManager,
    provider: FakeProvider,
    repository: FakeRepository,
    tmp_path: Path,
) -> None:
    manager = make_manager()
    manager.update(provider, lambda line: None)
    first = provider.runners[0]

    repository.root = tmp_path / "missing"
    with pytest.raises(DeploymentError) as excinfo:
        manager.update(provider, lambda line: None)

    assert excinfo.value.phase is DeploymentPhase.PROVISIONING
    assert "does not exist" in str(excinfo.value)
    assert manager.current_runner is first
    assert len(provider.runners) == 1
    assert first.shutdowns == 0


def test_runner_creation_failure_reports_starting_new(
    make_manager: MakeManager,
    provider: FakeProvider,
    waiters: WaiterRecorder,
) -> None:
    manager = make_manager()
    manager.update(provider, lambda line: None)
    first = provider.runners[0]

    provider.create_error = RunnerError("No start command configured")
    with pytest.raises(DeploymentError) as excinfo:
        manager.update(provider, lambda line: None)

    assert excinfo.value.phase is DeploymentPhase.STARTING_NEW
    assert manager.current_runner is first
    assert first.shutdowns == 0
    assert len(waiters.waiters) == 1
    assert manager.phase is DeploymentPhase.IDLE


def test_first_update_failure_leaves_nothing_running(
    make_manager: MakeManager,
    provider: FakeProvider,
) -> None:
    manager = make_manager()
    provider.fail_ready = True

    with pytest.raises(DeploymentError):
        manager.update(provider, lambda line: None)

    assert manager.current_runner is None
    assert manager.current_url is None
    assert manager.describe()["running"] is False


def test_failing_listener_does_not_stop_others(
    make_manager: MakeManager,
    provider: FakeProvider,
) -> None:
    manager = make_manager()
    calls: list[str] = []

    def broken(name: str, url: str) -> None:
        raise RuntimeError("proxy unreachable")

    manager.add_listener(broken)
    manager.add_listener(lambda name, url: calls.append(url))
    manager.update(provider, lambda line: None)

    assert calls == ["http://localhost:7000/demo"]
    build_log = manager.latest_build_log()
    assert "Warning: listener failed: proxy unreachable\n" in build_log
    assert build_log.endswith("Deployment complete.\n")


def test_old_runner_shutdown_failure_is_reported_not_raised(
    make_manager: MakeManager,
    provider: FakeProvider,
) -> None:
    manager = make_manager()
    provider.fail_shutdown = True
    manager.update(provider, lambda line: None)

    manager.update(provider, lambda line: None)

    assert manager.current_runner is provider.runners[1]
    build_log = manager.latest_build_log()
    assert "Warning: previous version did not shut down cleanly" in build_log
    assert build_log.endswith("Deployment complete.\n")


def test_concurrent_updates_are_serialised(
    make_manager: MakeManager,
    provider: FakeProvider,
) -> None:
    manager = make_manager()
    active = 0
    max_active = 0
    guard = threading.Lock()

    def slow_start(runner: FakeRunner) -> None:
        nonlocal active, max_active
        with guard:
            active += 1
            max_active = max(max_active, active)
        time.sleep(0.05)
        with guard:
            active -= 1

    provider.start_hook = slow_start
    errors: list[BaseException] = []

    def deploy() -> None:
        try:
            manager.update(provider, lambda line: None)
        except BaseException as exc:  # pragma: no cover - surfaced below
            errors.append(exc)

    threads = [threading.Thread(target=deploy) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    assert errors == []
    assert max_active == 1
    assert len(provider.runners) == 2
    live = [runner for runner in provider.runners if runner.shutdowns == 0]
    assert live == [manager.current_runner]


def test_console_log_is_readable_during_update(
    make_manager: MakeManager,
    provider: FakeProvider,
) -> None:
    manager = make_manager()
    started = threading.Event()
    release = threading.Event()

    def block(runner: FakeRunner) -> None:
        started.set()
        release.wait(timeout=5)

    provider.start_hook = block
    worker = threading.Thread(target=manager.update, args=(provider, lambda line: None))
    worker.start()
    try:
        assert started.wait(timeout=5)
        assert manager.latest_console_log() == "Starting server\r\nListening\n"
        assert manager.phase is DeploymentPhase.AWAITING_READY
        assert manager.current_runner is None
    finally:
        release.set()
        worker.join(timeout=5)

    assert manager.current_runner is provider.runners[0]


def test_stop_app_shuts_down_once(
    make_manager: MakeManager,
    provider: FakeProvider,
) -> None:
    manager = make_manager()
    manager.stop_app()

    manager.update(provider, lambda line: None)
    manager.stop_app()
    manager.stop_app()

    assert provider.runners[0].shutdowns == 1
    assert manager.current_runner is None
    assert manager.describe() == {
        "name": "demo",
        "git_url": "https://example.com/org/demo.git",
        "phase": "idle",
        "running": False,
        "url": None,
        "instance_dir": None,
    }


def test_clear_logs_empties_both_logs(
    make_manager: MakeManager,
    provider: FakeProvider,
) -> None:
    manager = make_manager()
    manager.update(provider, lambda line: None)

    manager.clear_logs()

    assert manager.latest_build_log() == ""
    assert manager.latest_console_log() == ""


def test_console_log_evicts_oldest_lines(
    make_manager: MakeManager,
    provider: FakeProvider,
) -> None:
    manager = make_manager(console_capacity=3)
    provider.startup_lines = [f"line {index}\n" for index in range(5)]

    manager.update(provider, lambda line: None)

    assert manager.latest_console_log() == "line 2\nline 3\nline 4\n"
    assert "line 0" in manager.latest_build_log()


def test_instance_excludes_git_metadata(
    make_manager: MakeManager,
    provider: FakeProvider,
) -> None:
    manager = make_manager()
    manager.update(provider, lambda line: None)

    instance = provider.runners[0].instance_dir
    assert instance.parent == manager.instance_root
    assert (instance / "app.txt").read_text(encoding="utf-8") == "hello\n"
    assert (instance / "static" / "logo.bin").read_bytes() == bytes(range(256))
    assert not (instance / ".git").exists()
    assert manager.describe()["instance_dir"] == str(instance)


def test_each_update_uses_a_fresh_instance(
    make_manager: MakeManager,
    provider: FakeProvider,
) -> None:
    manager = make_manager()
    manager.update(provider, lambda line: None)
    manager.update(provider, lambda line: None)

    first, second = (runner.instance_dir for runner in provider.runners)
    assert first != second
    assert int(second.name) > int(first.name)
    assert first.exists()


def test_retention_keeps_newest_instances(
    make_manager: MakeManager,
    provider: FakeProvider,
) -> None:
    manager = make_manager(keep_instances=1)
    for _ in range(3):
        manager.update(provider, lambda line: None)

    remaining = sorted(path for path in manager.instance_root.iterdir())
    assert remaining == [provider.runners[-1].instance_dir]


def test_retention_spares_instance_that_failed_to_stop(
    make_manager: MakeManager,
    provider: FakeProvider,
) -> None:
    manager = make_manager(keep_instances=1)
    provider.fail_shutdown = True
    manager.update(provider, lambda line: None)
    manager.update(provider, lambda line: None)

    first, second = provider.runners
    remaining = sorted(path for path in manager.instance_root.iterdir())
    assert remaining == [first.instance_dir, second.instance_dir]


@pytest.mark.parametrize(
    ("url", "expected"),
    [
        ("https://github.com/org/my-app.git", "my-app"),
        ("https://github.com/org/my-app", "my-app"),
        ("https://github.com/org/my-app/", "my-app"),
        ("git@github.com:org/Service.GIT", "Service"),
        ("/srv/git/local-repo", "local-repo"),
        ("C:\\repos\\win-app.git", "win-app"),
        ("plain", "plain"),
    ],
)
def test_name_from_url(url: str, expected: str) -> None:
    assert name_from_url(url) == expected


def test_create_app_env_vars_overlays_base_environment() -> None:
    env = create_app_env_vars(8123, "shop", {"PATH": "/usr/bin", "APP_PORT": "1"})

    assert env == {
        "PATH": "/usr/bin",
        "APP_PORT": "8123",
        "APP_NAME": "shop",
        "APP_ENV": "prod",
    }


def test_create_app_env_vars_defaults_to_process_environment(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("APPRUNNER_TEST_MARKER", "yes")

    env = create_app_env_vars(9000, "shop")

    assert env["APPRUNNER_TEST_MARKER"] == "yes"
    assert env["APP_PORT"] == "9000"


@pytest.mark.requires_git
def test_create_clones_and_deploys_from_git(
    tmp_path: Path,
    git_remote: Path,
    provider: FakeProvider,
    waiters: WaiterRecorder,
) -> None:
    sandbox = FileSandbox(tmp_path / "data")
    manager = AppManager.create(str(git_remote), sandbox, "my-app", waiters=waiters)

    assert (sandbox.app_dir("my-app", "repo") / "README.md").exists()

    commit_file(git_remote, "VERSION", "2\n")
    manager.update(provider, lambda line: None)

    instance = provider.runners[0].instance_dir
    assert (instance / "VERSION").read_text(encoding="utf-8") == "2\n"
    assert not (instance / ".git").exists()
    assert manager.current_url is not None
    assert manager.current_url.endswith("/my-app")
