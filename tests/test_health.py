"""Tests for health probing, the crash-loop guard and the monitor."""
from __future__ import annotations

from pathlib import Path

import pytest
import requests

from stackctl.config import AppConfig, HealthConfig
from stackctl.errors import PersistentFailure
from stackctl.health import (
    CrashLoopGuard,
    HealthMonitor,
    HealthProber,
    memory_usage_percent,
)
from stackctl.lifecycle import ServiceLifecycleController
from stackctl.locking import LockManager
from stackctl.models import DeploymentStrategy, HealthCheck, ServiceRole, ServiceSpec, ServiceState
from stackctl.services import build_service_specs
from stackctl.state import StateRegistry

from conftest import FakeAdapter

SETTINGS = HealthConfig(max_restarts=3, restart_window=900, restart_lock_timeout=0.1)


@pytest.fixture(autouse=True)
def _quiet_host(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("stackctl.health.disk_usage_percent", lambda path: 10.0)


@pytest.fixture()
def meminfo(tmp_path: Path) -> Path:
    path = tmp_path / "meminfo"
    path.write_text("MemTotal: 1000 kB\nMemAvailable: 600 kB\n", encoding="utf-8")
    return path


@pytest.fixture()
def locks(app_config: AppConfig) -> LockManager:
    return LockManager(app_config.runtime_dir, default_timeout=1.0)


@pytest.fixture()
def controller(
    app_config: AppConfig, fake_adapter: FakeAdapter, locks: LockManager
) -> ServiceLifecycleController:
    for role in ServiceRole:
        fake_adapter.alive[role] = True
    return ServiceLifecycleController(
        fake_adapter,
        build_service_specs(app_config, DeploymentStrategy.NATIVE),
        locks,
        grace_period=0.05,
        poll_interval=0.01,
        sleep=lambda _: None,
    )


def _monitor(
    controller: ServiceLifecycleController,
    meminfo: Path,
    *,
    clock: float = 1_000.0,
    registry: StateRegistry | None = None,
) -> HealthMonitor:
    guard = CrashLoopGuard(
        SETTINGS.max_restarts, SETTINGS.restart_window, clock=lambda: clock, registry=registry
    )
    return HealthMonitor(controller, SETTINGS, guard=guard, meminfo=meminfo)


def test_healthy_cycle_reports_running(
    controller: ServiceLifecycleController, meminfo: Path
) -> None:
    report = _monitor(controller, meminfo).run_once()

    assert report.healthy is True
    assert report.restarted == []
    assert report.memory_percent == 40.0
    assert report.to_dict()["services"] == {
        "database": "running",
        "app": "running",
        "proxy": "running",
    }


def test_crash_loop_stops_after_budget(
    controller: ServiceLifecycleController, fake_adapter: FakeAdapter, meminfo: Path
) -> None:
    """Five failing cycles give exactly three restarts, then a persistent failure."""
    fake_adapter.crashing.add(ServiceRole.APP)
    fake_adapter.alive[ServiceRole.APP] = False
    monitor = _monitor(controller, meminfo)

    reports = [monitor.run_once() for _ in range(5)]

    attempts = [call for call in fake_adapter.calls if call[1] == "app"]
    assert len(attempts) == 3
    assert [report.restarted for report in reports[:3]] == [["app"], ["app"], ["app"]]
    for report in reports[3:]:
        assert report.restarted == []
        assert len(report.failures) == 1
        assert isinstance(report.failures[0], PersistentFailure)
        assert report.failures[0].restarts == 3
    assert all(not report.healthy for report in reports)


def test_restart_budget_recovers_after_window(
    controller: ServiceLifecycleController, fake_adapter: FakeAdapter, meminfo: Path
) -> None:
    fake_adapter.crashing.add(ServiceRole.APP)
    fake_adapter.alive[ServiceRole.APP] = False
    now = [1_000.0]
    guard = CrashLoopGuard(3, 900, clock=lambda: now[0])
    monitor = HealthMonitor(controller, SETTINGS, guard=guard, meminfo=meminfo)

    for _ in range(4):
        monitor.run_once()
    assert guard.allow("app") is False

    now[0] += 901
    assert guard.allow("app") is True
    assert monitor.run_once().restarted == ["app"]


def test_restart_skipped_while_lock_held(
    controller: ServiceLifecycleController,
    fake_adapter: FakeAdapter,
    locks: LockManager,
    meminfo: Path,
) -> None:
    """A deploy holding the lock defers the restart instead of fighting it."""
    fake_adapter.alive[ServiceRole.APP] = False
    monitor = _monitor(controller, meminfo)

    with locks.exclusive("deploy"):
        report = monitor.run_once()

    assert report.skipped == ["app"]
    assert report.restarted == []
    assert monitor.guard.restarts("app") == 0
    assert any("deploy in progress" in warning for warning in report.warnings)
    assert ("start", "app") not in fake_adapter.calls


def test_degraded_service_is_restarted(
    controller: ServiceLifecycleController, fake_adapter: FakeAdapter, meminfo: Path
) -> None:
    fake_adapter.healthy[ServiceRole.PROXY] = False

    report = _monitor(controller, meminfo).run_once()

    assert report.services["proxy"] is ServiceState.DEGRADED
    assert report.restarted == ["proxy"]
    assert ("restart", "proxy") in fake_adapter.calls


def test_error_lines_and_resources_warn(
    controller: ServiceLifecycleController,
    fake_adapter: FakeAdapter,
    monkeypatch: pytest.MonkeyPatch,
    meminfo: Path,
) -> None:
    fake_adapter.error_lines = ["Error: boom", "Error: again"]
    monkeypatch.setattr("stackctl.health.disk_usage_percent", lambda path: 95.0)

    report = _monitor(controller, meminfo).run_once()

    assert report.error_lines == 2
    assert report.disk_percent == 95.0
    assert len(report.warnings) == 2
    assert report.healthy is False


def test_guard_history_shared_through_registry(tmp_path: Path) -> None:
    registry = StateRegistry(tmp_path / "registry")
    first = CrashLoopGuard(3, 900, clock=lambda: 500.0, registry=registry)
    first.record("app")
    first.record("app")

    second = CrashLoopGuard(3, 900, clock=lambda: 600.0, registry=registry)

    assert second.restarts("app") == 2
    assert CrashLoopGuard(3, 900, clock=lambda: 2_000.0, registry=registry).restarts("app") == 0


def test_command_checks_are_retried(tmp_path: Path) -> None:
    prober = HealthProber(retries=1, retry_delay=0)
    ok = ServiceSpec("ok", ServiceRole.APP, 0, HealthCheck.command(["true"]))
    missing = ServiceSpec(
        "missing", ServiceRole.APP, 0, HealthCheck.command([str(tmp_path / "nope")])
    )

    assert prober.check(ok) is True
    assert prober.check(missing) is False


def test_tcp_check_refused() -> None:
    prober = HealthProber(retries=0, retry_delay=0)
    spec = ServiceSpec("proxy", ServiceRole.PROXY, 1, HealthCheck.tcp("127.0.0.1", 1, timeout=0.2))

    assert prober.check(spec) is False


def test_memory_usage_percent_handles_missing_file(tmp_path: Path) -> None:
    assert memory_usage_percent(tmp_path / "absent") is None


def test_restart_touches_only_the_failed_service(
    controller: ServiceLifecycleController, fake_adapter: FakeAdapter, meminfo: Path
) -> None:
    """Recovering the app must not start a database the operator left down."""
    fake_adapter.alive[ServiceRole.APP] = False
    fake_adapter.alive[ServiceRole.DATABASE] = False
    controller._set_held(["database"])

    report = _monitor(controller, meminfo).run_once()

    assert report.restarted == ["app"]
    assert report.held == ["database"]
    assert ("start", "database") not in fake_adapter.calls
    assert fake_adapter.alive[ServiceRole.DATABASE] is False


def test_operator_stop_is_not_undone_by_monitor(
    controller: ServiceLifecycleController, fake_adapter: FakeAdapter, meminfo: Path
) -> None:
    controller.stop()
    fake_adapter.calls.clear()

    report = _monitor(controller, meminfo).run_once()

    assert fake_adapter.calls == []
    assert report.restarted == []
    assert sorted(report.held) == ["app", "database", "proxy"]
    assert report.healthy is True

    controller.start()
    assert controller.held_down() == set()


def test_unknown_state_warns_without_restarting(
    controller: ServiceLifecycleController,
    fake_adapter: FakeAdapter,
    monkeypatch: pytest.MonkeyPatch,
    meminfo: Path,
) -> None:
    original = fake_adapter.is_alive
    monkeypatch.setattr(
        fake_adapter,
        "is_alive",
        lambda spec: None if spec.role is ServiceRole.APP else original(spec),
    )

    report = _monitor(controller, meminfo).run_once()

    assert report.services["app"] is ServiceState.UNKNOWN
    assert report.restarted == []
    assert fake_adapter.calls == []
    assert any("unknown" in warning for warning in report.warnings)


class _Response:
    def __init__(self, status_code: int) -> None:
        self.status_code = status_code


def test_url_check_uses_requests(monkeypatch: pytest.MonkeyPatch) -> None:
    seen: list[tuple[str, float]] = []
    statuses = {"http://127.0.0.1:3000/health": 200, "http://127.0.0.1:3000/broken": 503}

    def fake_get(url: str, *, timeout: float) -> _Response:
        seen.append((url, timeout))
        return _Response(statuses[url])

    monkeypatch.setattr("stackctl.health.requests.get", fake_get)
    prober = HealthProber(retries=0, retry_delay=0)
    ok = ServiceSpec(
        "app", ServiceRole.APP, 1, HealthCheck.url("http://127.0.0.1:3000/health", timeout=2.0)
    )
    broken = ServiceSpec("app", ServiceRole.APP, 1, HealthCheck.url("http://127.0.0.1:3000/broken"))

    assert prober.check(ok) is True
    assert prober.check(broken) is False
    assert seen[0] == ("http://127.0.0.1:3000/health", 2.0)


def test_url_check_unreachable(monkeypatch: pytest.MonkeyPatch) -> None:
    def refuse(url: str, *, timeout: float) -> _Response:
        raise requests.exceptions.ConnectionError("connection refused")

    monkeypatch.setattr("stackctl.health.requests.get", refuse)
    prober = HealthProber(retries=1, retry_delay=0)
    spec = ServiceSpec("app", ServiceRole.APP, 1, HealthCheck.url("http://127.0.0.1:1/health"))

    assert prober.check(spec) is False
