"""Tests for the firewall, pm2, compose and PostgreSQL providers."""
from __future__ import annotations

import json
import subprocess
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import pytest

from stackctl.config import DatabaseConfig
from stackctl.providers import (
    ComposeError,
    ComposePostgres,
    ComposeProvider,
    FileInstaller,
    Pm2Error,
    Pm2Provider,
    PostgresProvider,
    UfwProvider,
    run_command,
)
from stackctl.providers.postgres import ensure_database_sql, ensure_role_sql


class DummyResult:
    """Stand-in for ``subprocess.CompletedProcess``."""

    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class Recorder:
    """Record commands with their keyword arguments."""

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.kwargs: list[dict[str, Any]] = []
        self.results: list[DummyResult] = []

    def __call__(self, args: Sequence[str], **kwargs: Any) -> DummyResult:
        self.calls.append(list(args))
        self.kwargs.append(kwargs)
        stdout = kwargs.get("stdout")
        if stdout is not None and stdout is not subprocess.PIPE:
            stdout.write("-- dump\n")
        return self.results.pop(0) if self.results else DummyResult()


@pytest.fixture
def recorder(monkeypatch: pytest.MonkeyPatch) -> Recorder:
    fake = Recorder()
    monkeypatch.setattr(subprocess, "run", fake)
    return fake


def test_run_command_reports_timeout(monkeypatch: pytest.MonkeyPatch) -> None:
    def slow(args: Sequence[str], **kwargs: Any) -> DummyResult:
        raise subprocess.TimeoutExpired(args, kwargs["timeout"])

    monkeypatch.setattr(subprocess, "run", slow)

    with pytest.raises(Pm2Error, match="pm2 jlist timed out after 2.0s"):
        run_command(["pm2", "jlist"], error=Pm2Error, timeout=2.0)


def test_run_command_merges_environment(recorder: Recorder) -> None:
    run_command(["env"], error=RuntimeError, env={"PORT": "3000"})

    env = recorder.kwargs[0]["env"]
    assert env["PORT"] == "3000"
    assert "PATH" in env


def test_ufw_allows_rules_then_enables(recorder: Recorder) -> None:
    applied = UfwProvider(elevate=("sudo", "-n")).apply(["OpenSSH", "80/tcp", "443/tcp"])

    assert applied == ["OpenSSH", "80/tcp", "443/tcp"]
    assert recorder.calls == [
        ["sudo", "-n", "ufw", "allow", "OpenSSH"],
        ["sudo", "-n", "ufw", "allow", "80/tcp"],
        ["sudo", "-n", "ufw", "allow", "443/tcp"],
        ["sudo", "-n", "ufw", "--force", "enable"],
    ]


def test_pm2_process_status(recorder: Recorder) -> None:
    listing = [
        {"name": "portfolio", "pm2_env": {"status": "online"}},
        {"name": "worker", "pm2_env": {}},
    ]
    provider = Pm2Provider()

    recorder.results.append(DummyResult(stdout=json.dumps(listing)))
    assert provider.process_status("portfolio") == "online"
    recorder.results.append(DummyResult(stdout=json.dumps(listing)))
    assert provider.process_status("worker") == "unknown"
    recorder.results.append(DummyResult(stdout=""))
    assert provider.process_status("portfolio") is None


def test_pm2_rejects_garbage_listing(recorder: Recorder) -> None:
    recorder.results.append(DummyResult(stdout="[PM2] Spawning daemon"))

    with pytest.raises(Pm2Error, match="Unparseable"):
        Pm2Provider().jlist()


def test_pm2_restart_updates_env(recorder: Recorder) -> None:
    Pm2Provider().restart("portfolio", env={"NODE_ENV": "development"})

    assert recorder.calls == [["pm2", "restart", "portfolio", "--update-env"]]
    assert recorder.kwargs[0]["env"]["NODE_ENV"] == "development"


@pytest.mark.parametrize(
    "output",
    [
        json.dumps([{"Service": "app", "State": "running", "Health": "healthy"}]),
        json.dumps({"Service": "app", "State": "running", "Health": "healthy"}),
    ],
)
def test_compose_ps_formats(recorder: Recorder, tmp_path: Path, output: str) -> None:
    recorder.results.append(DummyResult(stdout=output))
    compose = ComposeProvider("portfolio", tmp_path / "compose.yml")

    statuses = compose.ps()

    assert statuses["app"].running is True
    assert statuses["app"].healthy is True
    compose_file = str(tmp_path / "compose.yml")
    assert recorder.calls[0][:6] == ["docker", "compose", "-p", "portfolio", "-f", compose_file]


def test_compose_ps_line_per_container(recorder: Recorder, tmp_path: Path) -> None:
    lines = "\n".join(
        json.dumps(entry)
        for entry in (
            {"Service": "db", "State": "running", "Health": "starting"},
            {"Service": "nginx", "State": "exited", "Health": ""},
        )
    )
    recorder.results.append(DummyResult(stdout=lines))

    statuses = ComposeProvider("portfolio", tmp_path / "compose.yml").ps()

    assert statuses["db"].healthy is False
    assert statuses["nginx"].running is False
    assert statuses["nginx"].healthy is None


def test_compose_validate_candidate(recorder: Recorder, tmp_path: Path) -> None:
    candidate = tmp_path / "staged" / "compose.yml"

    ComposeProvider("portfolio", tmp_path / "compose.yml").validate(candidate)

    assert recorder.calls[0][5:] == [str(candidate), "config", "--quiet"]


def test_compose_proxy_check_mounts_site(recorder: Recorder, tmp_path: Path) -> None:
    site = tmp_path / "nginx.conf"

    ComposeProvider("portfolio", tmp_path / "compose.yml").test_proxy_config(
        "nginx:1.27-alpine", site, hosts=["app"]
    )

    command = recorder.calls[0]
    assert command[:3] == ["docker", "run", "--rm"]
    assert f"{site.resolve()}:/etc/nginx/conf.d/default.conf:ro" in command
    assert command[-4:] == ["nginx:1.27-alpine", "nginx", "-t", "-q"]
    assert "app:127.0.0.1" in command


def test_role_sql_quotes_password() -> None:
    sql = ensure_role_sql("portfolio_user", "it's")

    assert "CREATE ROLE \"portfolio_user\" LOGIN PASSWORD 'it''s';" in sql
    assert "ALTER ROLE \"portfolio_user\" WITH LOGIN PASSWORD 'it''s';" in sql


def test_database_sql_is_conditional() -> None:
    sql = ensure_database_sql("portfolio", "portfolio_user")

    assert "WHERE NOT EXISTS (SELECT FROM pg_database WHERE datname = 'portfolio')\\gexec" in sql


def test_postgres_dump_runs_as_superuser(recorder: Recorder, tmp_path: Path) -> None:
    provider = PostgresProvider(DatabaseConfig())
    destination = tmp_path / "dumps" / "database.sql"

    size = provider.dump(destination)

    assert size == len("-- dump\n")
    assert destination.stat().st_mode & 0o777 == 0o600
    assert recorder.calls[0][:5] == ["sudo", "-n", "-u", "postgres", "pg_dump"]


def test_postgres_ensure_role_feeds_sql_on_stdin(recorder: Recorder) -> None:
    PostgresProvider(DatabaseConfig()).ensure_role("s3cret")

    assert recorder.calls[0][-2:] == ["-d", "postgres"]
    assert "PASSWORD 's3cret'" in recorder.kwargs[0]["input"]
    assert "s3cret" not in " ".join(recorder.calls[0])


def test_postgres_readiness(recorder: Recorder) -> None:
    provider = PostgresProvider(DatabaseConfig())

    recorder.results.append(DummyResult(returncode=2))
    assert provider.is_ready(timeout=1) is False
    assert provider.is_ready(timeout=1) is True
    assert recorder.calls[0][:5] == ["pg_isready", "-h", "127.0.0.1", "-p", "5432"]


def test_compose_postgres_wraps_errors(recorder: Recorder, tmp_path: Path) -> None:
    compose = ComposeProvider("portfolio", tmp_path / "compose.yml")
    database = ComposePostgres(compose, DatabaseConfig())

    recorder.results.append(DummyResult(returncode=1, stderr="container not running"))
    assert database.is_ready() is False

    database.set_password("n3w")
    assert recorder.calls[-1][-11:-7] == ["exec", "-T", "db", "psql"]
    assert "ALTER ROLE \"portfolio_user\" WITH PASSWORD 'n3w';" in recorder.kwargs[-1]["input"]


def test_compose_errors_carry_stderr(recorder: Recorder, tmp_path: Path) -> None:
    recorder.results.append(DummyResult(returncode=1, stderr="no such service: web"))

    with pytest.raises(ComposeError, match="no such service: web"):
        ComposeProvider("portfolio", tmp_path / "compose.yml").restart(["web"])


def test_file_installer_symlink_is_idempotent(tmp_path: Path) -> None:
    installer = FileInstaller()
    target = tmp_path / "releases" / "one"
    target.mkdir(parents=True)
    link = tmp_path / "current"

    assert installer.symlink(target, link) is True
    assert installer.symlink(target, link) is False
    assert link.resolve() == target.resolve()
    assert installer.remove(link) is True
    assert installer.remove(link) is False
