"""Tests for the stackctl CLI."""
from __future__ import annotations

import json
import signal
from dataclasses import replace

import pytest
from typer.testing import CliRunner, Result

from stackctl import __version__
from stackctl.cli import RuntimeContext, _cancel_on_signals, app
from stackctl.lifecycle import CancellationToken
from stackctl.logging import StructuredLogger
from stackctl.models import DeploymentStrategy, ServiceSpec

from conftest import FakeAdapter, FakeStack

runner = CliRunner()


@pytest.fixture()
def runtime(stack: FakeStack) -> RuntimeContext:
    stack.locks.default_timeout = 0.1
    return RuntimeContext(
        config=stack.config,
        registry=stack.registry,
        locks=stack.locks,
        logger=StructuredLogger(stack.config.logs_dir),
        templates=stack.templates,
        credentials=stack.credentials,
        orchestrator=stack.orchestrator,
    )


def _invoke(runtime: RuntimeContext, *args: str) -> Result:
    return runner.invoke(app, list(args), obj=runtime)


def _last_operation(runtime: RuntimeContext) -> dict[str, object]:
    lines = (runtime.config.logs_dir / "operations.jsonl").read_text(encoding="utf-8").splitlines()
    return json.loads(lines[-1])


def test_version_flag(runtime: RuntimeContext) -> None:
    result = _invoke(runtime, "--version")

    assert result.exit_code == 0
    assert f"stackctl {__version__}" in result.stdout


def test_provision_json(runtime: RuntimeContext) -> None:
    result = _invoke(runtime, "provision", "native", "--json")

    assert result.exit_code == 0, result.stdout
    payload = json.loads(result.stdout)
    assert payload["strategy"] == "native"
    assert payload["touched"] == ["database", "proxy"]
    assert payload["credentials"] == ["database-password", "session-secret"]

    record = _last_operation(runtime)
    assert record["command"] == "provision"
    result_block = record["result"]
    assert isinstance(result_block, dict)
    assert result_block["status"] == "warning"
    assert [step["name"] for step in record["steps"]][:2] == ["preflight", "credentials"]


def test_provision_rejects_unknown_strategy(runtime: RuntimeContext) -> None:
    result = _invoke(runtime, "provision", "kubernetes")

    assert result.exit_code == 2
    assert runtime.registry.load_provisioning() is None


def test_provision_fails_preflight(runtime: RuntimeContext, stack: FakeStack) -> None:
    stack.host = replace(stack.host, euid=0)

    result = _invoke(runtime, "provision", "native")

    assert result.exit_code == 3
    assert "Running as root is not allowed." in result.stdout
    assert _last_operation(runtime)["result"]["rc"] == 3  # type: ignore[index]


def test_provision_blocked_by_lock(runtime: RuntimeContext) -> None:
    with runtime.locks.exclusive("deploy"):
        result = _invoke(runtime, "provision", "native")

    assert result.exit_code == 5
    assert "deploy" in result.stdout


def test_status_reports_stopped_app(runtime: RuntimeContext) -> None:
    _invoke(runtime, "provision", "native")

    result = _invoke(runtime, "status", "--json")

    assert result.exit_code == 6
    payload = json.loads(result.stdout)
    assert payload["strategy"] == "native"
    assert payload["release"] is None
    assert payload["services"] == {"database": "running", "app": "stopped", "proxy": "running"}


def test_status_requires_provisioning(runtime: RuntimeContext) -> None:
    result = _invoke(runtime, "status")

    assert result.exit_code == 2
    assert "not provisioned" in result.stdout


def test_deploy_then_status_is_healthy(runtime: RuntimeContext) -> None:
    _invoke(runtime, "provision", "native")

    deployed = _invoke(runtime, "deploy")
    status = _invoke(runtime, "status", "--json")

    assert deployed.exit_code == 0, deployed.stdout
    assert "is live and healthy" in deployed.stdout
    assert status.exit_code == 0
    payload = json.loads(status.stdout)
    assert payload["release"] is not None
    assert payload["last_deploy"]["status"] == "healthy"


def test_preflight_quick_dev_passes(runtime: RuntimeContext) -> None:
    result = _invoke(runtime, "preflight", "quick-dev", "--json")

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["strategy"] == "quick-dev"
    assert payload["ok"] is True


def test_preflight_failure_exit_code(runtime: RuntimeContext, stack: FakeStack) -> None:
    stack.host = replace(stack.host, memory_mb=64)

    result = _invoke(runtime, "preflight", "native")

    assert result.exit_code == 3
    assert _last_operation(runtime)["command"] == "preflight"


def test_credentials_list_hides_values(runtime: RuntimeContext) -> None:
    _invoke(runtime, "provision", "native")
    secret = runtime.credentials.get("session-secret")
    assert secret is not None

    result = _invoke(runtime, "credentials", "list", "--json")

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert [entry["name"] for entry in payload["credentials"]] == [
        "database-password",
        "session-secret",
    ]
    assert secret.value not in result.stdout


def test_credentials_rotate_unknown(runtime: RuntimeContext) -> None:
    _invoke(runtime, "provision", "native")

    result = _invoke(runtime, "credentials", "rotate", "api-key")

    assert result.exit_code == 2
    assert "Unknown credential 'api-key'" in result.stdout


def test_restart_unknown_service(runtime: RuntimeContext) -> None:
    _invoke(runtime, "provision", "native")

    result = _invoke(runtime, "restart", "redis")

    assert result.exit_code == 2


def test_config_show_json(runtime: RuntimeContext) -> None:
    result = _invoke(runtime, "config", "show", "--json")

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["project"] == "portfolio"
    assert payload["state_dir"] == str(runtime.config.state_dir)


def test_backup_list_empty(runtime: RuntimeContext) -> None:
    runtime.orchestrator.provision(DeploymentStrategy.NATIVE)

    result = _invoke(runtime, "backup", "list", "--json")

    assert result.exit_code == 0
    assert json.loads(result.stdout) == {"backups": []}


def test_logs_prints_service_output(
    runtime: RuntimeContext, monkeypatch: pytest.MonkeyPatch
) -> None:
    runtime.orchestrator.provision(DeploymentStrategy.NATIVE)
    requested: list[tuple[str, int]] = []

    def _logs(self: FakeAdapter, spec: ServiceSpec, lines: int) -> str:
        requested.append((spec.name, lines))
        return "GET / 200\n[error] upstream closed\n"

    monkeypatch.setattr(FakeAdapter, "logs", _logs)

    result = _invoke(runtime, "logs", "proxy", "--lines", "20")

    assert result.exit_code == 0, result.stdout
    assert "[error] upstream closed" in result.stdout
    assert requested == [("proxy", 20)]
    assert _last_operation(runtime)["command"] == "logs"


def test_logs_unknown_service(runtime: RuntimeContext) -> None:
    runtime.orchestrator.provision(DeploymentStrategy.NATIVE)

    result = _invoke(runtime, "logs", "redis")

    assert result.exit_code == 2


def test_sigterm_cancels_deploy_and_restores_handlers() -> None:
    token = CancellationToken()
    before = signal.getsignal(signal.SIGTERM)

    with _cancel_on_signals(token):
        signal.raise_signal(signal.SIGTERM)
        assert token.cancelled

    assert signal.getsignal(signal.SIGTERM) is before
