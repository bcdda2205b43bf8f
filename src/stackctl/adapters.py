"""Strategy adapters behind the uniform lifecycle interface.

The adapter for a host is chosen once, from the strategy recorded at
provisioning time, by :func:`adapter_for`. Every adapter speaks in terms of
:class:`~stackctl.models.ServiceSpec` objects so the controller never needs
to know whether a service is a systemd unit, a compose service or a PM2
process.
"""
from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path

from .config import AppConfig
from .generator import (
    APP_ENV,
    APP_UNIT,
    COMPOSE_MANIFEST,
    COMPOSE_SERVICE_NAMES,
    LOGROTATE,
    NGINX_SITE,
    PM2_ECOSYSTEM,
    SCHEDULER_UNIT,
    app_image,
    app_unit_name,
    installed_env_path,
    scheduler_unit_name,
)
from .models import ArtifactBundle, DeploymentStrategy, ServiceRole, ServiceSpec
from .providers import (
    PROVIDER_ERRORS,
    ComposeError,
    ComposePostgres,
    ComposeProvider,
    DatabaseBackend,
    FileInstaller,
    NginxError,
    NginxProvider,
    Pm2Error,
    Pm2Provider,
    PostgresProvider,
    SystemdProvider,
    run_command,
)

LOGGER = logging.getLogger(__name__)

_ENV_LINE = re.compile(r"^[A-Z_][A-Z0-9_]*=.*$")
_ERROR_LINE = re.compile(r"error\b", re.IGNORECASE)
MIGRATION_TIMEOUT = 1800


class AdapterError(RuntimeError):
    """Raised when an adapter cannot satisfy a lifecycle request."""


@dataclass(frozen=True)
class Release:
    """A built application version ready to be swapped in."""

    id: str
    path: Path | None = None
    image: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "id": self.id,
            "path": str(self.path) if self.path else None,
            "image": self.image,
        }


def parse_env_file(text: str) -> dict[str, str]:
    """Return the variables defined in a rendered env file."""
    variables: dict[str, str] = {}
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        key, _, value = stripped.partition("=")
        variables[key] = value
    return variables


def check_env_file(path: Path) -> list[str]:
    """Return syntax problems found in the env file at *path*."""
    findings: list[str] = []
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        return [f"{path.name}: unreadable ({exc})"]
    for number, line in enumerate(text.splitlines(), start=1):
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        if not _ENV_LINE.match(stripped):
            findings.append(f"{path.name}:{number}: expected KEY=VALUE")
    return findings


class LifecycleAdapter(ABC):
    """Uniform control surface over one strategy's process mechanism."""

    strategy: DeploymentStrategy

    def __init__(self, config: AppConfig, artifacts_dir: Path) -> None:
        self.config = config
        self.artifacts_dir = Path(artifacts_dir)

    @property
    def active_dir(self) -> Path:
        """Return the stable path of the active bundle."""
        return self.artifacts_dir / "active"

    @abstractmethod
    def validate(self, bundle_dir: Path, bundle: ArtifactBundle) -> list[str]:
        """Syntax-check a staged candidate bundle; return every problem found."""

    @abstractmethod
    def install(self, bundle: ArtifactBundle) -> set[ServiceRole]:
        """Copy the active bundle to where its consumers read it.

        Returns the roles whose installed configuration changed.
        """

    @abstractmethod
    def is_alive(self, spec: ServiceSpec) -> bool | None:
        """Return whether *spec* is running; ``None`` when that cannot be told."""

    @abstractmethod
    def start(self, spec: ServiceSpec) -> None:
        """Start *spec*."""

    @abstractmethod
    def stop(self, spec: ServiceSpec) -> None:
        """Stop *spec*."""

    @abstractmethod
    def restart(self, spec: ServiceSpec) -> None:
        """Restart *spec*."""

    def reload(self, spec: ServiceSpec, *, config_changed: bool = True) -> None:
        """Apply new configuration to *spec* with minimal disruption."""
        self.restart(spec)

    def check_health(self, spec: ServiceSpec) -> bool | None:
        """Return a strategy-specific health verdict, or ``None`` to use the probe."""
        return None

    def database_ready(self, *, timeout: float) -> bool:
        """Return ``True`` when the database accepts connections."""
        return True

    def database(self) -> DatabaseBackend | None:
        """Return the database backend used for backups and role management."""
        return None

    def activate_release(self, release: Release) -> None:
        """Make *release* the one the app runs."""

    def error_log_tail(self, lines: int) -> list[str]:
        """Return error entries among the last *lines* lines of application output."""
        return []

    @abstractmethod
    def logs(self, spec: ServiceSpec, lines: int) -> str:
        """Return the last *lines* lines of output of *spec*."""

    def app_environment(self) -> dict[str, str]:
        """Return the variables of the active bundle's app env file."""
        path = self.active_dir / APP_ENV
        try:
            return parse_env_file(path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise AdapterError(f"Environment file {path} is unreadable: {exc}") from exc

    def run_migrations(self, release: Release, argv: Sequence[str]) -> None:
        """Run the migration command of *release* against the live database."""
        run_command(
            list(argv),
            error=AdapterError,
            error_prefix=" ".join(argv),
            cwd=release.path,
            env=self.app_environment(),
            timeout=MIGRATION_TIMEOUT,
        )


def _tail_file(path: Path, lines: int) -> list[str]:
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return []
    if lines <= 0:
        return []
    return text.splitlines()[-lines:]


def _error_lines(lines: Iterable[str]) -> list[str]:
    return [line for line in lines if _ERROR_LINE.search(line)]


class NativeAdapter(LifecycleAdapter):
    """Systemd units for PostgreSQL, the PM2 runtime and nginx."""

    strategy = DeploymentStrategy.NATIVE

    def __init__(
        self,
        config: AppConfig,
        artifacts_dir: Path,
        *,
        systemd: SystemdProvider,
        nginx: NginxProvider,
        postgres: PostgresProvider,
        files: FileInstaller,
    ) -> None:
        super().__init__(config, artifacts_dir)
        self.systemd = systemd
        self.nginx = nginx
        self.postgres = postgres
        self.files = files
        self.units = {
            ServiceRole.DATABASE: "postgresql.service",
            ServiceRole.APP: app_unit_name(config),
            ServiceRole.PROXY: "nginx.service",
        }

    def validate(self, bundle_dir: Path, bundle: ArtifactBundle) -> list[str]:
        findings: list[str] = []
        try:
            self.nginx.test_config(bundle_dir / NGINX_SITE)
        except NginxError as exc:
            findings.append(f"{NGINX_SITE}: {exc}")
        try:
            run_command(
                [self.config.tools.node_bin, "--check", str(bundle_dir / PM2_ECOSYSTEM)],
                error=AdapterError,
                error_prefix="node --check",
                timeout=30,
            )
        except AdapterError as exc:
            findings.append(f"{PM2_ECOSYSTEM}: {exc}")
        findings.extend(check_env_file(bundle_dir / APP_ENV))
        return findings

    def install(self, bundle: ArtifactBundle) -> set[ServiceRole]:
        config = self.config
        changed: set[ServiceRole] = set()
        if self.nginx.install_site(config.project, bundle.get(NGINX_SITE).content):
            changed.add(ServiceRole.PROXY)
        app_changes = [
            self.files.install(
                bundle.get(PM2_ECOSYSTEM).content,
                config.app.root / "ecosystem.config.js",
                mode=0o644,
            ),
            self.files.install(
                bundle.get(APP_ENV).content,
                installed_env_path(config),
                mode=0o600,
            ),
            self.systemd.install_unit(app_unit_name(config), bundle.get(APP_UNIT).content),
        ]
        if any(app_changes):
            changed.add(ServiceRole.APP)
        self.files.install(
            bundle.get(LOGROTATE).content,
            config.logrotate_dir / config.project,
            mode=0o644,
        )
        scheduler_unit = scheduler_unit_name(config)
        if self.systemd.install_unit(scheduler_unit, bundle.get(SCHEDULER_UNIT).content):
            self.systemd.enable(scheduler_unit)
            self.systemd.restart(scheduler_unit)
        self.systemd.enable(app_unit_name(config))
        return changed

    def is_alive(self, spec: ServiceSpec) -> bool | None:
        return self.systemd.is_active(self.units[spec.role])

    def start(self, spec: ServiceSpec) -> None:
        self.systemd.start(self.units[spec.role])

    def stop(self, spec: ServiceSpec) -> None:
        self.systemd.stop(self.units[spec.role])

    def restart(self, spec: ServiceSpec) -> None:
        self.systemd.restart(self.units[spec.role])

    def reload(self, spec: ServiceSpec, *, config_changed: bool = True) -> None:
        if spec.role is ServiceRole.PROXY:
            self.nginx.reload()
            return
        self.restart(spec)

    def database_ready(self, *, timeout: float) -> bool:
        return self.postgres.is_ready(timeout=timeout)

    def database(self) -> DatabaseBackend:
        return self.postgres

    def activate_release(self, release: Release) -> None:
        if release.path is None:
            raise AdapterError(f"Release {release.id} has no directory to activate.")
        self.files.symlink(release.path, self.config.app.current_link)

    def error_log_tail(self, lines: int) -> list[str]:
        return _error_lines(_tail_file(self.config.app.logs_dir / "err.log", lines))

    def logs(self, spec: ServiceSpec, lines: int) -> str:
        return self.systemd.logs(self.units[spec.role], lines=lines).stdout


class ContainerizedAdapter(LifecycleAdapter):
    """Docker Compose services ``db``, ``app`` and ``nginx``."""

    strategy = DeploymentStrategy.CONTAINERIZED

    def __init__(
        self,
        config: AppConfig,
        artifacts_dir: Path,
        *,
        compose: ComposeProvider,
    ) -> None:
        super().__init__(config, artifacts_dir)
        self.compose = compose
        self.postgres = ComposePostgres(compose, config.database)

    def _service(self, spec: ServiceSpec) -> str:
        return COMPOSE_SERVICE_NAMES[spec.role]

    def validate(self, bundle_dir: Path, bundle: ArtifactBundle) -> list[str]:
        findings: list[str] = []
        try:
            self.compose.validate(bundle_dir / COMPOSE_MANIFEST)
        except ComposeError as exc:
            findings.append(f"{COMPOSE_MANIFEST}: {exc}")
        tls = self.config.tls
        try:
            self.compose.test_proxy_config(
                self.config.proxy.image,
                bundle_dir / NGINX_SITE,
                mounts=[f"{tls.live_dir.parent}:{tls.live_dir.parent}:ro"],
                hosts=[COMPOSE_SERVICE_NAMES[ServiceRole.APP]],
            )
        except ComposeError as exc:
            findings.append(f"{NGINX_SITE}: {exc}")
        findings.extend(check_env_file(bundle_dir / APP_ENV))
        return findings

    def install(self, bundle: ArtifactBundle) -> set[ServiceRole]:
        # Compose reads the bundle in place through the active link.
        return set()

    def is_alive(self, spec: ServiceSpec) -> bool | None:
        try:
            statuses = self.compose.ps()
        except ComposeError:
            return None
        status = statuses.get(self._service(spec))
        if status is None:
            return False
        return status.running

    def check_health(self, spec: ServiceSpec) -> bool | None:
        if spec.role is ServiceRole.DATABASE:
            return self.postgres.is_ready(timeout=spec.health_check.timeout)
        return None

    def start(self, spec: ServiceSpec) -> None:
        self.compose.up([self._service(spec)])

    def stop(self, spec: ServiceSpec) -> None:
        self.compose.stop([self._service(spec)])

    def restart(self, spec: ServiceSpec) -> None:
        self.compose.recreate([self._service(spec)])

    def reload(self, spec: ServiceSpec, *, config_changed: bool = True) -> None:
        if spec.role is ServiceRole.PROXY and not config_changed:
            self.compose.reload_proxy(self._service(spec))
            return
        # The site file is bind-mounted when the container is created, so a
        # changed file needs a fresh container.
        self.compose.recreate([self._service(spec)])

    def database_ready(self, *, timeout: float) -> bool:
        return self.postgres.is_ready(timeout=timeout)

    def database(self) -> DatabaseBackend:
        return self.postgres

    def activate_release(self, release: Release) -> None:
        if release.image is None:
            raise AdapterError(f"Release {release.id} has no image to activate.")
        self.compose.tag(release.image, app_image(self.config, "current"))

    def error_log_tail(self, lines: int) -> list[str]:
        try:
            output = self.compose.logs(COMPOSE_SERVICE_NAMES[ServiceRole.APP], tail=lines)
        except ComposeError:
            return []
        return _error_lines(output.splitlines())

    def logs(self, spec: ServiceSpec, lines: int) -> str:
        return self.compose.logs(self._service(spec), tail=lines)

    def run_migrations(self, release: Release, argv: Sequence[str]) -> None:
        # One-off container from the image just tagged current.
        self.compose.run_once(
            COMPOSE_SERVICE_NAMES[ServiceRole.APP], argv, timeout=MIGRATION_TIMEOUT
        )


class QuickDevAdapter(LifecycleAdapter):
    """A single PM2-managed development process."""

    strategy = DeploymentStrategy.QUICK_DEV

    def __init__(self, config: AppConfig, artifacts_dir: Path, *, pm2: Pm2Provider) -> None:
        super().__init__(config, artifacts_dir)
        self.pm2 = pm2

    @property
    def process_name(self) -> str:
        return self.config.project

    def validate(self, bundle_dir: Path, bundle: ArtifactBundle) -> list[str]:
        findings: list[str] = []
        try:
            run_command(
                [self.config.tools.node_bin, "--check", str(bundle_dir / PM2_ECOSYSTEM)],
                error=AdapterError,
                error_prefix="node --check",
                timeout=30,
            )
        except AdapterError as exc:
            findings.append(f"{PM2_ECOSYSTEM}: {exc}")
        findings.extend(check_env_file(bundle_dir / APP_ENV))
        return findings

    def install(self, bundle: ArtifactBundle) -> set[ServiceRole]:
        return set()

    def is_alive(self, spec: ServiceSpec) -> bool | None:
        try:
            status = self.pm2.process_status(self.process_name)
        except Pm2Error:
            return None
        if status is None:
            return False
        return status == "online"

    def start(self, spec: ServiceSpec) -> None:
        try:
            status = self.pm2.process_status(self.process_name)
        except Pm2Error:
            status = None
        if status is not None:
            self.pm2.restart(self.process_name, env=self.app_environment())
            return
        self.pm2.start(self.active_dir / PM2_ECOSYSTEM, env=self.app_environment())

    def stop(self, spec: ServiceSpec) -> None:
        self.pm2.stop(self.process_name)

    def restart(self, spec: ServiceSpec) -> None:
        self.start(spec)

    def error_log_tail(self, lines: int) -> list[str]:
        return _error_lines(_tail_file(self.config.app.logs_dir / "err.log", lines))

    def logs(self, spec: ServiceSpec, lines: int) -> str:
        return self.pm2.logs(self.process_name, lines=lines)


def adapter_for(
    strategy: DeploymentStrategy,
    config: AppConfig,
    *,
    elevate: tuple[str, ...] = (),
) -> LifecycleAdapter:
    """Return the adapter implementing *strategy* on this host."""
    tools = config.tools
    files = FileInstaller(elevate=elevate)
    if strategy is DeploymentStrategy.NATIVE:
        unit_dir = config.systemd.unit_dir or Path("/etc/systemd/system")
        return NativeAdapter(
            config,
            config.artifacts_dir,
            systemd=SystemdProvider(
                systemd_dir=unit_dir,
                systemctl_bin=config.systemd.systemctl_bin,
                journalctl_bin=config.systemd.journalctl_bin,
                elevate=elevate,
                files=files,
            ),
            nginx=NginxProvider(
                sites_available=config.nginx.sites_available,
                sites_enabled=config.nginx.sites_enabled,
                nginx_bin=config.nginx.nginx_bin,
                elevate=elevate,
                files=files,
            ),
            postgres=PostgresProvider(
                config.database,
                sudo_bin=tools.sudo_bin,
                psql_bin=tools.psql_bin,
                pg_dump_bin=tools.pg_dump_bin,
                pg_isready_bin=tools.pg_isready_bin,
            ),
            files=files,
        )
    if strategy is DeploymentStrategy.CONTAINERIZED:
        compose = ComposeProvider(
            project=config.project,
            compose_file=config.artifacts_dir / "active" / COMPOSE_MANIFEST,
            docker_bin=tools.docker_bin,
            elevate=elevate,
        )
        return ContainerizedAdapter(config, config.artifacts_dir, compose=compose)
    return QuickDevAdapter(config, config.artifacts_dir, pm2=Pm2Provider(pm2_bin=tools.pm2_bin))


ADAPTER_ERRORS: tuple[type[RuntimeError], ...] = (AdapterError, *PROVIDER_ERRORS)


__all__ = [
    "ADAPTER_ERRORS",
    "AdapterError",
    "ContainerizedAdapter",
    "LifecycleAdapter",
    "NativeAdapter",
    "QuickDevAdapter",
    "Release",
    "adapter_for",
    "check_env_file",
    "parse_env_file",
]
