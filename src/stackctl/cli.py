"""Typer-powered command line interface for ``stackctl``.

Every command runs inside a :class:`~stackctl.logging.StructuredLogger`
operation scope so the operations log records what was attempted, how long the
run lock was awaited and how the command ended.
"""
from __future__ import annotations

import json
import logging
import signal
import textwrap
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from types import FrameType
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .adapters import ADAPTER_ERRORS
from .backups import BackupError
from .certificates import CertificateError
from .config import AppConfig, ConfigError, load_config
from .credentials import CredentialError, CredentialStore
from .errors import StackError
from .exit_codes import ExitCode
from .generator import GeneratorError
from .lifecycle import BuildError, CancellationToken
from .locking import LockManager
from .logging import OperationScope, StructuredLogger
from .models import DeploymentStrategy, ServiceState
from .orchestrator import Orchestrator
from .state import StateRegistry, StateRegistryError
from .templates import TemplateEngine

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    help="Path to an alternate configuration file.",
    dir_okay=False,
    file_okay=True,
    resolve_path=True,
)
JSON_OPTION = typer.Option(False, "--json", help="Emit machine-readable JSON.")
CANCEL_SIGNALS = (signal.SIGINT, signal.SIGTERM)

# Failures raised by providers and stores that are not StackError subclasses.
PROVIDER_FAILURES: tuple[type[Exception], ...] = (
    BackupError,
    BuildError,
    CertificateError,
    CredentialError,
    GeneratorError,
    StateRegistryError,
    *ADAPTER_ERRORS,
)

_STATE_STYLE = {
    ServiceState.RUNNING: "green",
    ServiceState.DEGRADED: "yellow",
    ServiceState.STOPPED: "red",
    ServiceState.UNKNOWN: "magenta",
}

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Single-host orchestrator for an nginx + Node.js + PostgreSQL stack.

        Provision the host with one of the containerized, native or quick-dev
        strategies, deploy releases, and keep the stack healthy, backed up and
        served over TLS.
        """
    ).strip(),
)
backup_app = typer.Typer(help="Create, list, prune and restore backups.")
certificate_app = typer.Typer(help="Obtain, renew and inspect the TLS certificate.")
credentials_app = typer.Typer(help="Inspect and rotate generated credentials.")
scheduler_app = typer.Typer(help="Run the recurring health, backup and certificate tasks.")
config_app = typer.Typer(help="Inspect the effective configuration.")

app.add_typer(backup_app, name="backup")
app.add_typer(certificate_app, name="certificate")
app.add_typer(credentials_app, name="credentials")
app.add_typer(scheduler_app, name="scheduler")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    registry: StateRegistry
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    credentials: CredentialStore
    orchestrator: Orchestrator


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
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc

    registry = StateRegistry(config.registry_dir)
    locks = LockManager(config.runtime_dir, config.lock_timeout)
    logger = StructuredLogger(config.logs_dir)
    templates = TemplateEngine.with_overrides(config.templates_dir)
    credentials = CredentialStore(config.credentials_dir)
    orchestrator = Orchestrator(
        config,
        registry=registry,
        locks=locks,
        credentials=credentials,
        templates=templates,
    )
    runtime = RuntimeContext(
        config=config,
        registry=registry,
        locks=locks,
        logger=logger,
        templates=templates,
        credentials=credentials,
        orchestrator=orchestrator,
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the stackctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override run-lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"stackctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = 2,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _stack_error(op: OperationScope, exc: StackError) -> NoReturn:
    details = exc.details()
    rc = int(exc.exit_code)
    console.print(f"[red]{exc.message}[/red]")
    if details != [exc.message]:
        for line in details:
            console.print(f"  - {line}")
    op.error(exc.message, errors=details, rc=rc, context=exc.to_dict())
    raise typer.Exit(code=rc)


def _provider_error(op: OperationScope, message: str) -> NoReturn:
    _command_error(op, message, rc=int(ExitCode.PROVIDER))


@contextmanager
def _handle_failures(op: OperationScope, action: str) -> Iterator[None]:
    """Translate domain failures into exit codes for the surrounding command."""
    try:
        yield
    except StackError as exc:
        _stack_error(op, exc)
    except PROVIDER_FAILURES as exc:
        _provider_error(op, f"{action} failed: {exc}")


def _parse_strategy(op: OperationScope, value: str) -> DeploymentStrategy:
    try:
        return DeploymentStrategy.parse(value)
    except ValueError as exc:
        _command_error(op, str(exc), rc=int(ExitCode.VALIDATION))


def _print_warnings(warnings: Sequence[str]) -> None:
    for warning in warnings:
        console.print(f"[yellow]warning:[/yellow] {warning}")


def _render_states(states: Mapping[str, ServiceState]) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Service", style="bold")
    table.add_column("State")
    for name, state in states.items():
        style = _STATE_STYLE.get(state, "white")
        table.add_row(name, f"[{style}]{state.value}[/{style}]")
    console.print(table)


@contextmanager
def _cancel_on_signals(token: CancellationToken) -> Iterator[None]:
    """Turn SIGINT and SIGTERM into cancellation requests on *token*."""

    def _interrupt(signum: int, frame: FrameType | None) -> None:
        if token.cancel():
            console.print("[yellow]Cancelling deploy before the swap...[/yellow]")
        else:
            console.print("[yellow]Swap in progress; finishing the deploy.[/yellow]")

    previous = {signum: signal.signal(signum, _interrupt) for signum in CANCEL_SIGNALS}
    try:
        yield
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


# ----------------------------------------------------------------------
# Provision and deploy
# ----------------------------------------------------------------------
@app.command()
def provision(
    ctx: typer.Context,
    strategy: str | None = typer.Argument(
        None,
        help="containerized, native or quick-dev (defaults to the provisioned or configured one).",
    ),
    reprovision: bool = typer.Option(
        False,
        "--reprovision",
        help="Allow switching a host to a different strategy.",
    ),
    no_start: bool = typer.Option(
        False,
        "--no-start",
        help="Generate and install configuration without starting services.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Prepare the host: credentials, database, firewall, configuration and services."""
    runtime = _get_runtime(ctx)
    orchestrator = runtime.orchestrator
    with runtime.logger.operation(
        "provision",
        args={"strategy": strategy, "reprovision": reprovision, "no_start": no_start},
        target={"kind": "host", "project": runtime.config.project},
    ) as op:
        with _handle_failures(op, "Provision"):
            selected = orchestrator.select_strategy(strategy, reprovision=reprovision)
            result = orchestrator.provision(
                selected,
                reprovision=reprovision,
                start=not no_start,
                scope=op,
            )

        if json_output:
            console.print_json(data=result.to_dict())
        else:
            console.print(
                f"[green]Provisioned {runtime.config.project} with the "
                f"{result.strategy.value} strategy.[/green]"
            )
            console.print(f"bundle: {result.bundle.checksum[:16]}  tls: {result.bundle.tls_ready}")
            if result.touched:
                console.print(f"started/restarted: {', '.join(result.touched)}")
            _print_warnings(result.warnings)
        if result.warnings:
            op.warning("Provisioned with warnings.", warnings=result.warnings, changed=1)
        else:
            op.success("Provisioned host.", changed=1, context=result.to_dict())


@app.command()
def deploy(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Build a release, validate its configuration and swap it in."""
    runtime = _get_runtime(ctx)
    token = CancellationToken()

    with runtime.logger.operation(
        "deploy",
        args={"json": json_output},
        target={"kind": "release", "project": runtime.config.project},
    ) as op:
        with _cancel_on_signals(token), _handle_failures(op, "Deploy"):
            result = runtime.orchestrator.deploy(token=token, scope=op)

        if json_output:
            console.print_json(data=result.to_dict())
        else:
            console.print(f"[green]Release {result.release.id} is live and healthy.[/green]")
            if result.restarted:
                console.print(f"restarted: {', '.join(result.restarted)}")
            if result.pruned_releases:
                console.print(f"pruned releases: {', '.join(result.pruned_releases)}")
        op.success("Deployed release.", changed=1, context=result.to_dict())


# ----------------------------------------------------------------------
# Service control
# ----------------------------------------------------------------------
@app.command()
def start(ctx: typer.Context) -> None:
    """Start every stopped service in dependency order."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("start", target={"kind": "services"}) as op:
        with _handle_failures(op, "Start"):
            started = runtime.orchestrator.controller().start()
        console.print(f"[green]Started: {', '.join(started) or 'nothing to start'}[/green]")
        op.success("Services started.", changed=len(started))


@app.command()
def stop(ctx: typer.Context) -> None:
    """Stop every service in reverse dependency order."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("stop", target={"kind": "services"}) as op:
        with _handle_failures(op, "Stop"):
            stopped = runtime.orchestrator.controller().stop()
        console.print(f"[green]Stopped: {', '.join(stopped)}[/green]")
        op.success("Services stopped.", changed=len(stopped))


@app.command()
def restart(
    ctx: typer.Context,
    services: list[str] | None = typer.Argument(
        None,
        help="Services to restart (database, app, proxy); all when omitted.",
    ),
) -> None:
    """Restart services in dependency order."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "restart",
        args={"services": services or []},
        target={"kind": "services"},
    ) as op:
        with _handle_failures(op, "Restart"):
            touched = runtime.orchestrator.controller().restart(services or None)
        console.print(f"[green]Restarted: {', '.join(touched)}[/green]")
        op.success("Services restarted.", changed=len(touched))


@app.command()
def logs(
    ctx: typer.Context,
    service: str = typer.Argument("app", help="Service to show (database, app, proxy)."),
    lines: int = typer.Option(100, "--lines", "-n", min=1, help="Number of lines to show."),
) -> None:
    """Print the recent output of one managed service."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "logs",
        args={"service": service, "lines": lines},
        target={"kind": "services"},
    ) as op:
        with _handle_failures(op, "Logs"):
            output = runtime.orchestrator.controller().logs(service, lines=lines)
        console.print(output.rstrip("\n"), markup=False, highlight=False, soft_wrap=True)
        op.success("Printed service logs.", changed=0)


@app.command()
def status(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Report the state of every managed service."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "status",
        args={"json": json_output},
        target={"kind": "services"},
    ) as op:
        with _handle_failures(op, "Status"):
            states = runtime.orchestrator.controller().status()
            state = runtime.orchestrator.state()

        payload: dict[str, object] = {
            "strategy": state.strategy.value if state else None,
            "release": state.release if state else None,
            "last_deploy": state.last_deploy if state else None,
            "services": {name: value.value for name, value in states.items()},
        }
        if json_output:
            console.print_json(data=payload)
        else:
            if state is not None:
                console.print(
                    f"strategy: {state.strategy.value}  release: {state.release or '-'}"
                )
            _render_states(states)

        unhealthy = [name for name, value in states.items() if value is not ServiceState.RUNNING]
        if unhealthy:
            op.warning(
                "Some services are not running.",
                warnings=[f"{name}: {states[name].value}" for name in unhealthy],
                rc=int(ExitCode.DEGRADED),
            )
            raise typer.Exit(code=int(ExitCode.DEGRADED))
        op.success("All services running.", changed=0)


@app.command()
def monitor(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Run one health-monitor cycle (restarting failed services within budget)."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "monitor",
        args={"json": json_output},
        target={"kind": "services"},
    ) as op:
        with _handle_failures(op, "Monitor"):
            report = runtime.orchestrator.monitor()

        if json_output:
            console.print_json(data=report.to_dict())
        else:
            _render_states(report.services)
            if report.restarted:
                console.print(f"restarted: {', '.join(report.restarted)}")
            if report.held:
                console.print(f"left stopped by operator: {', '.join(report.held)}")
            for failure in report.failures:
                console.print(f"[red]{failure.message}[/red]")
            _print_warnings(report.warnings)

        if report.healthy:
            op.success("Stack healthy.", changed=len(report.restarted))
            return
        op.warning(
            "Health cycle reported problems.",
            warnings=[*report.warnings, *(failure.message for failure in report.failures)],
            changed=len(report.restarted),
            rc=int(ExitCode.DEGRADED),
        )
        raise typer.Exit(code=int(ExitCode.DEGRADED))


@app.command()
def preflight(
    ctx: typer.Context,
    strategy: str | None = typer.Argument(None, help="Strategy to check the host against."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Check the host against a strategy's requirements without changing anything."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "preflight",
        args={"strategy": strategy, "json": json_output},
        target={"kind": "host"},
    ) as op:
        with _handle_failures(op, "Preflight"):
            selected = (
                _parse_strategy(op, strategy)
                if strategy
                else runtime.orchestrator.current_strategy()
            )
            report = runtime.orchestrator.preflight(selected)

        if json_output:
            console.print_json(data=report.to_dict())
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Check", style="bold")
            table.add_column("Severity")
            table.add_column("Detail")
            for finding in report.findings:
                table.add_row(finding.check, finding.severity.value, finding.message)
            console.print(table)

        if not report.ok:
            op.error(
                "Host does not meet requirements.",
                errors=report.failures,
                rc=int(ExitCode.ENVIRONMENT),
            )
            raise typer.Exit(code=int(ExitCode.ENVIRONMENT))
        if report.warnings:
            op.warning("Host meets requirements with warnings.", warnings=report.warnings)
            return
        op.success("Host meets requirements.", changed=0)


# ----------------------------------------------------------------------
# Backups
# ----------------------------------------------------------------------
@backup_app.command("create")
def backup_create(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Dump the database and archive application state now."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup create",
        args={"json": json_output},
        target={"kind": "backup"},
    ) as op:
        with _handle_failures(op, "Backup"):
            record = runtime.orchestrator.backup()
        if json_output:
            console.print_json(data=record.to_dict())
        else:
            console.print(f"[green]Backup {record.id} created.[/green]")
            console.print(f"database: {record.database_dump}")
            console.print(f"archive:  {record.archive}")
        op.success(
            "Backup created.",
            changed=1,
            backups=[str(record.database_dump), str(record.archive)],
        )


@backup_app.command("list")
def backup_list(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """List available backups, oldest first."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup list",
        args={"json": json_output},
        target={"kind": "backup"},
    ) as op:
        with _handle_failures(op, "Backup listing"):
            records = runtime.orchestrator.backup_manager().list_records()
        if json_output:
            console.print_json(data={"backups": [record.to_dict() for record in records]})
            op.success("Reported backups as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("ID", style="bold")
        table.add_column("Created")
        table.add_column("Size")
        table.add_column("Archive")
        if not records:
            table.add_row("(none)", "", "", "")
        for record in records:
            table.add_row(
                record.id,
                record.timestamp.isoformat(timespec="seconds"),
                str(record.size_bytes),
                str(record.archive),
            )
        console.print(table)
        op.success("Reported backups.", changed=0)


@backup_app.command("prune")
def backup_prune(
    ctx: typer.Context,
    retention_days: int | None = typer.Option(
        None,
        "--retention-days",
        min=0,
        help="Override the configured retention window.",
    ),
) -> None:
    """Delete backups older than the retention window."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup prune",
        args={"retention_days": retention_days},
        target={"kind": "backup"},
    ) as op:
        with _handle_failures(op, "Backup prune"):
            pruned = runtime.orchestrator.backup_manager().prune(retention_days)
        if pruned:
            console.print(f"[green]Pruned {len(pruned)} backup(s):[/green]")
            for record in pruned:
                console.print(f"  - {record.id}")
        else:
            console.print("Nothing to prune.")
        op.success("Pruned backups.", changed=len(pruned))


@backup_app.command("restore")
def backup_restore(
    ctx: typer.Context,
    backup_id: str = typer.Argument(..., help="Identifier of the backup to restore."),
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Restore without asking for confirmation.",
    ),
) -> None:
    """Restore the database and shared state from a backup."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup restore",
        args={"backup_id": backup_id},
        target={"kind": "backup", "id": backup_id},
    ) as op:
        if not yes and not typer.confirm(
            f"Restore backup {backup_id}? The application is stopped meanwhile.",
            default=False,
        ):
            _command_error(op, "Restore aborted.", rc=int(ExitCode.VALIDATION))
        with _handle_failures(op, "Restore"):
            orchestrator = runtime.orchestrator
            record = orchestrator.backup_manager().restore(backup_id, orchestrator.controller())
        console.print(f"[green]Restored backup {record.id}.[/green]")
        op.success("Backup restored.", changed=1)


# ----------------------------------------------------------------------
# Certificates
# ----------------------------------------------------------------------
@certificate_app.command("renew")
def certificate_renew(
    ctx: typer.Context,
    domain: str | None = typer.Argument(None, help="Domain (defaults to the public hostname)."),
    force: bool = typer.Option(False, "--force", help="Renew even when not yet due."),
) -> None:
    """Obtain or renew the certificate and reload the proxy."""
    runtime = _get_runtime(ctx)
    target = domain or runtime.config.hostnames.public
    with runtime.logger.operation(
        "certificate renew",
        args={"domain": target, "force": force},
        target={"kind": "certificate", "domain": target},
    ) as op:
        manager = runtime.orchestrator.certificate_manager()
        with _handle_failures(op, "Certificate renewal"):
            before = manager.load(target) if not force else None
            record = runtime.orchestrator.renew_certificate(target, force=force)
        console.print(
            f"{record.domain}: valid until {record.expires_at.isoformat(timespec='seconds')}"
        )
        if not force and before is not None and before.expires_at == record.expires_at:
            if manager.needs_renewal(record):
                message = "Renewal failed; previous certificate still served."
                console.print(f"[yellow]warning:[/yellow] {message}")
                op.warning(message)
                return
            op.success("Certificate not due for renewal.", changed=0)
            return
        op.success("Certificate issued.", changed=1, context=record.to_dict())


@certificate_app.command("status")
def certificate_status(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the validity window of the served certificate."""
    runtime = _get_runtime(ctx)
    domain = runtime.config.hostnames.public
    with runtime.logger.operation(
        "certificate status",
        args={"json": json_output},
        target={"kind": "certificate", "domain": domain},
    ) as op:
        manager = runtime.orchestrator.certificate_manager()
        with _handle_failures(op, "Certificate inspection"):
            record = manager.load(domain)
        if record is None:
            _command_error(
                op,
                f"No certificate found for {domain}.",
                rc=int(ExitCode.PROVIDER),
            )
        now = manager.clock()
        payload = {
            **record.to_dict(),
            "remaining_days": round(record.remaining(now).total_seconds() / 86400, 1),
            "expired": record.is_expired(now),
            "renewal_due": manager.needs_renewal(record, now),
        }
        if json_output:
            console.print_json(data=payload)
        else:
            for key, value in payload.items():
                console.print(f"{key}: {value}")
        op.success("Reported certificate status.", changed=0)


# ----------------------------------------------------------------------
# Credentials
# ----------------------------------------------------------------------
@credentials_app.command("list")
def credentials_list(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """List generated credentials (values are never printed)."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "credentials list",
        args={"json": json_output},
        target={"kind": "credentials"},
    ) as op:
        with _handle_failures(op, "Credential listing"):
            credentials = runtime.credentials.list_credentials()
        entries = [credential.to_dict() for credential in credentials]
        if json_output:
            console.print_json(data={"credentials": entries})
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Name", style="bold")
            table.add_column("Created")
            table.add_column("Consumers")
            if not entries:
                table.add_row("(none)", "", "")
            for credential in credentials:
                table.add_row(
                    credential.name, credential.created_at, ", ".join(credential.consumers)
                )
            console.print(table)
        op.success("Reported credentials.", changed=0)


@credentials_app.command("rotate")
def credentials_rotate(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Credential to rotate."),
) -> None:
    """Generate a new value and restart the services that consume it."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "credentials rotate",
        args={"name": name},
        target={"kind": "credential", "name": name},
    ) as op:
        with _handle_failures(op, "Credential rotation"):
            rotated = runtime.orchestrator.rotate_credential(name, scope=op)
        console.print(
            f"[green]Rotated {rotated.name}; consumers: {', '.join(rotated.consumers)}.[/green]"
        )
        op.success("Credential rotated.", changed=1)


# ----------------------------------------------------------------------
# Scheduler and configuration
# ----------------------------------------------------------------------
@scheduler_app.command("run")
def scheduler_run(ctx: typer.Context) -> None:
    """Run the recurring tasks in the foreground until interrupted."""
    runtime = _get_runtime(ctx)
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    with runtime.logger.operation("scheduler run", target={"kind": "scheduler"}) as op:
        with _handle_failures(op, "Scheduler"):
            scheduler = runtime.orchestrator.scheduler()

        def _shutdown(signum: int, frame: FrameType | None) -> None:
            scheduler.stop()

        signal.signal(signal.SIGTERM, _shutdown)
        signal.signal(signal.SIGINT, _shutdown)
        scheduler.start()
        console.print(
            "Running: "
            + ", ".join(f"{task.name} every {task.interval:.0f}s" for task in scheduler.tasks)
        )
        scheduler.wait()
        op.success(
            "Scheduler stopped.",
            context={task.name: {"runs": task.runs, "failures": task.failures} for task in scheduler.tasks},
        )


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
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
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["RuntimeContext", "app", "main"]
