"""Render per-strategy configuration bundles.

:meth:`ConfigGenerator.render` is a pure function of its arguments and the
immutable configuration: the same strategy, services, credentials and
certificate always produce byte-identical artifacts and the same bundle
checksum. Only ``generated_at`` reflects the wall clock.

:class:`ArtifactWriter` materialises a bundle on disk under a
content-addressed directory and atomically repoints the ``active`` symlink.
"""
from __future__ import annotations

import logging
import os
import re
import shutil
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from pathlib import Path
from urllib.parse import quote

import yaml

from .config import AppConfig
from .credentials import DATABASE_PASSWORD, SESSION_SECRET
from .models import (
    Artifact,
    ArtifactBundle,
    CertificateRecord,
    Credential,
    DeploymentStrategy,
    ServiceRole,
    ServiceSpec,
    bundle_checksum,
)
from .templates import TemplateEngine

LOGGER = logging.getLogger(__name__)

NGINX_SITE = "nginx/site.conf"
PM2_ECOSYSTEM = "pm2/ecosystem.config.js"
APP_UNIT = "systemd/app.service"
SCHEDULER_UNIT = "systemd/scheduler.service"
LOGROTATE = "logrotate/app"
APP_ENV = "env/app.env"
DATABASE_ENV = "env/database.env"
COMPOSE_MANIFEST = "compose/docker-compose.yml"

CONTENT_SECURITY_POLICY = "default-src 'self' http: https: data: blob: 'unsafe-inline'"
COMPOSE_SERVICE_NAMES = {
    ServiceRole.DATABASE: "db",
    ServiceRole.APP: "app",
    ServiceRole.PROXY: "nginx",
}


class GeneratorError(RuntimeError):
    """Raised when a bundle cannot be rendered from the given inputs."""


class ConfigGenerator:
    """Produce an :class:`ArtifactBundle` for a deployment strategy."""

    def __init__(self, templates: TemplateEngine, config: AppConfig) -> None:
        self.templates = templates
        self.config = config

    def render(
        self,
        strategy: DeploymentStrategy,
        services: Sequence[ServiceSpec],
        credentials: Mapping[str, Credential],
        certificate: CertificateRecord | None = None,
        *,
        now: datetime | None = None,
    ) -> ArtifactBundle:
        """Render every artifact *strategy* needs."""
        moment = now or datetime.now(tz=UTC)
        by_role = {spec.role: spec for spec in services}
        if ServiceRole.APP not in by_role:
            raise GeneratorError("An app service is required to render a bundle.")

        warnings: list[str] = []
        tls_ready = False
        if self.config.tls.enabled and certificate is not None:
            if certificate.is_expired(moment):
                warnings.append(
                    f"Certificate for {certificate.domain} expired at "
                    f"{certificate.expires_at.isoformat()}; serving plain HTTP until renewed."
                )
            else:
                tls_ready = True

        artifacts: list[Artifact] = []
        if strategy is DeploymentStrategy.NATIVE:
            artifacts.extend(self._render_native(by_role, credentials, certificate, tls_ready))
        elif strategy is DeploymentStrategy.CONTAINERIZED:
            artifacts.extend(
                self._render_containerized(by_role, credentials, certificate, tls_ready)
            )
        else:
            artifacts.extend(self._render_quick_dev(by_role, credentials))

        artifacts.sort(key=lambda item: item.path)
        return ArtifactBundle(
            strategy=strategy,
            artifacts=tuple(artifacts),
            checksum=bundle_checksum(artifacts),
            tls_ready=tls_ready,
            warnings=tuple(warnings),
            generated_at=moment.isoformat(),
        )

    # ------------------------------------------------------------------
    # Strategy renderers
    # ------------------------------------------------------------------
    def _render_native(
        self,
        services: Mapping[ServiceRole, ServiceSpec],
        credentials: Mapping[str, Credential],
        certificate: CertificateRecord | None,
        tls_ready: bool,
    ) -> list[Artifact]:
        config = self.config
        app = services[ServiceRole.APP]
        upstream = f"127.0.0.1:{app.port}"
        env = self._app_environment(
            app, credentials, database_host=config.database.host, include_database=True
        )
        return [
            Artifact(
                NGINX_SITE,
                self._render_site(upstream, certificate, tls_ready),
                mode=0o644,
                role=ServiceRole.PROXY,
            ),
            Artifact(
                PM2_ECOSYSTEM,
                self._render_ecosystem(app, cluster=True),
                mode=0o644,
                role=ServiceRole.APP,
            ),
            Artifact(APP_UNIT, self._render_app_unit(), mode=0o644, role=ServiceRole.APP),
            Artifact(SCHEDULER_UNIT, self._render_scheduler_unit(), mode=0o644),
            Artifact(
                LOGROTATE,
                self.templates.render_to_string(
                    "logrotate/app.j2",
                    {
                        "project": config.project,
                        "log_dir": str(config.app.logs_dir),
                        "rotate": 14,
                        "service_user": config.service_user,
                    },
                ),
                mode=0o644,
                role=ServiceRole.APP,
            ),
            self._env_artifact(APP_ENV, env, ServiceRole.APP),
        ]

    def _render_containerized(
        self,
        services: Mapping[ServiceRole, ServiceSpec],
        credentials: Mapping[str, Credential],
        certificate: CertificateRecord | None,
        tls_ready: bool,
    ) -> list[Artifact]:
        config = self.config
        app = services[ServiceRole.APP]
        app_name = COMPOSE_SERVICE_NAMES[ServiceRole.APP]
        env = self._app_environment(
            app,
            credentials,
            database_host=COMPOSE_SERVICE_NAMES[ServiceRole.DATABASE],
            include_database=True,
            database_port=5432,
        )
        database_env = {
            "POSTGRES_DB": config.database.name,
            "POSTGRES_USER": config.database.user,
            "POSTGRES_PASSWORD": _require(credentials, DATABASE_PASSWORD).value,
        }
        return [
            Artifact(
                NGINX_SITE,
                self._render_site(f"{app_name}:{app.port}", certificate, tls_ready),
                mode=0o644,
                role=ServiceRole.PROXY,
            ),
            Artifact(COMPOSE_MANIFEST, self._render_compose(services, tls_ready), mode=0o644),
            self._env_artifact(APP_ENV, env, ServiceRole.APP),
            self._env_artifact(DATABASE_ENV, database_env, ServiceRole.DATABASE),
        ]

    def _render_quick_dev(
        self,
        services: Mapping[ServiceRole, ServiceSpec],
        credentials: Mapping[str, Credential],
    ) -> list[Artifact]:
        app = services[ServiceRole.APP]
        env = self._app_environment(app, credentials, database_host=None, include_database=False)
        env["NODE_ENV"] = "development"
        return [
            Artifact(
                PM2_ECOSYSTEM,
                self._render_ecosystem(app, cluster=False),
                mode=0o644,
                role=ServiceRole.APP,
            ),
            self._env_artifact(APP_ENV, env, ServiceRole.APP),
        ]

    # ------------------------------------------------------------------
    # Individual artifacts
    # ------------------------------------------------------------------
    def _render_site(
        self,
        upstream: str,
        certificate: CertificateRecord | None,
        tls_ready: bool,
    ) -> str:
        config = self.config
        ident = config.project.replace("-", "_")
        tls_context: dict[str, object] = {"ready": tls_ready, "cert_path": "", "key_path": ""}
        if tls_ready and certificate is not None:
            tls_context["cert_path"] = str(certificate.cert_path)
            tls_context["key_path"] = str(certificate.key_path)
        proxy = config.proxy
        context = {
            "project": config.project,
            "ident": ident,
            "upstream": upstream,
            "upstream_name": f"{ident}_app",
            "zones": {"public": f"{ident}_public", "admin": f"{ident}_admin"},
            "rates": {
                "public_rate": proxy.public_rate,
                "public_burst": proxy.public_burst,
                "admin_rate": proxy.admin_rate,
                "admin_burst": proxy.admin_burst,
                "admin_api_burst": proxy.admin_api_burst,
            },
            "public_names": list(config.hostnames.public_names),
            "admin_name": config.hostnames.admin,
            "admin_pattern": admin_location_pattern(proxy.admin_paths),
            "client_max_body_size": proxy.client_max_body_size,
            "static_expires": proxy.static_expires,
            "acme_webroot": str(config.tls.webroot),
            "csp": CONTENT_SECURITY_POLICY,
            "tls": tls_context,
        }
        return self.templates.render_to_string("nginx/site.conf.j2", context)

    def _render_ecosystem(self, app: ServiceSpec, *, cluster: bool) -> str:
        config = self.config
        if cluster:
            script = config.app.entrypoint
            args = ""
            cwd = str(config.app.current_link)
            instances: object = (
                int(app.limits.replicas) if app.limits.replicas.isdigit() else app.limits.replicas
            )
            exec_mode = "cluster"
        else:
            script = "npm"
            args = "run dev"
            cwd = str(config.app.source_dir or config.app.root)
            instances = 1
            exec_mode = "fork"
        context = {
            "project": config.project,
            "name": config.project,
            "script": script,
            "args": args,
            "cwd": cwd,
            "instances": instances,
            "exec_mode": exec_mode,
            "memory_limit": app.limits.memory,
            "restart_delay_ms": app.restart_policy.backoff_ms,
            "max_restarts": app.restart_policy.max_restarts,
            "min_uptime": f"{app.restart_policy.min_uptime_s}s",
            "log_dir": str(config.app.logs_dir),
            "environment": {
                "NODE_ENV": config.app.node_env if cluster else "development",
                "PORT": app.port,
            },
        }
        return self.templates.render_to_string("pm2/ecosystem.config.js.j2", context)

    def _render_app_unit(self) -> str:
        config = self.config
        pm2_runtime = f"{config.tools.pm2_bin}-runtime"
        return self.templates.render_to_string(
            "systemd/service.j2",
            {
                "project": config.project,
                "description": f"{config.project} application (PM2 runtime)",
                "after": ["postgresql.service"],
                "requires": [],
                "service_user": config.service_user,
                "working_directory": str(config.app.current_link),
                "environment_file": str(installed_env_path(config)),
                "environment": [f"PM2_HOME={config.app.root / '.pm2'}"],
                "exec_start": (
                    f"/usr/bin/env {pm2_runtime} start {config.app.root / 'ecosystem.config.js'}"
                ),
                "exec_reload": "",
                "restart": "always",
                "restart_sec": 5,
            },
        )

    def _render_scheduler_unit(self) -> str:
        config = self.config
        return self.templates.render_to_string(
            "systemd/service.j2",
            {
                "project": config.project,
                "description": f"{config.project} recurring tasks (health, backups, certificates)",
                "after": [f"{app_unit_name(config)}"],
                "requires": [],
                "service_user": config.service_user,
                "working_directory": str(config.state_dir),
                "environment_file": "",
                "environment": [f"STACKCTL_CONFIG_FILE={config.config_file}"],
                "exec_start": "/usr/bin/env stackctl scheduler run",
                "exec_reload": "",
                "restart": "on-failure",
                "restart_sec": 30,
            },
        )

    def _render_compose(
        self,
        services: Mapping[ServiceRole, ServiceSpec],
        tls_ready: bool,
    ) -> str:
        config = self.config
        app = services[ServiceRole.APP]
        database = config.database
        logging_options = {"driver": "json-file", "options": {"max-size": "10m", "max-file": "3"}}
        health_url = f"http://127.0.0.1:{app.port}{config.app.health_path}"
        manifest: dict[str, object] = {
            "name": config.project,
            "services": {
                "db": {
                    "image": database.image,
                    "restart": "unless-stopped",
                    "env_file": ["../env/database.env"],
                    "volumes": ["db-data:/var/lib/postgresql/data"],
                    "healthcheck": {
                        "test": [
                            "CMD-SHELL",
                            f"pg_isready -U {database.user} -d {database.name}",
                        ],
                        "interval": "10s",
                        "timeout": "5s",
                        "retries": 5,
                    },
                    "logging": logging_options,
                },
                "app": {
                    "image": app_image(config, "current"),
                    "restart": "unless-stopped",
                    "env_file": ["../env/app.env"],
                    "depends_on": {"db": {"condition": "service_healthy"}},
                    "ports": [f"127.0.0.1:{app.port}:{app.port}"],
                    "mem_limit": app.limits.memory.lower(),
                    "healthcheck": {
                        "test": [
                            "CMD",
                            "node",
                            "-e",
                            (
                                f"fetch('{health_url}')"
                                ".then(r=>process.exit(r.ok?0:1))"
                                ".catch(()=>process.exit(1))"
                            ),
                        ],
                        "interval": "30s",
                        "timeout": "10s",
                        "retries": 3,
                        "start_period": "40s",
                    },
                    "logging": logging_options,
                },
                "nginx": {
                    "image": config.proxy.image,
                    "restart": "unless-stopped",
                    "depends_on": {"app": {"condition": "service_started"}},
                    "ports": ["80:80", "443:443"] if tls_ready else ["80:80"],
                    "volumes": [
                        "../nginx/site.conf:/etc/nginx/conf.d/default.conf:ro",
                        f"{config.tls.live_dir.parent}:{config.tls.live_dir.parent}:ro",
                        f"{config.tls.webroot}:{config.tls.webroot}:ro",
                    ],
                    "healthcheck": {
                        "test": ["CMD", "nginx", "-t", "-q"],
                        "interval": "30s",
                        "timeout": "5s",
                        "retries": 3,
                    },
                    "logging": logging_options,
                },
            },
            "volumes": {"db-data": {}},
        }
        header = f"# Managed by stackctl for {config.project}. Local edits are overwritten.\n"
        return header + yaml.safe_dump(manifest, sort_keys=False, default_flow_style=False)

    def _app_environment(
        self,
        app: ServiceSpec,
        credentials: Mapping[str, Credential],
        *,
        database_host: str | None,
        include_database: bool,
        database_port: int | None = None,
    ) -> dict[str, object]:
        config = self.config
        env: dict[str, object] = {
            "NODE_ENV": config.app.node_env,
            "PORT": app.port,
            "SESSION_SECRET": _require(credentials, SESSION_SECRET).value,
        }
        if include_database:
            password = quote(_require(credentials, DATABASE_PASSWORD).value, safe="")
            database = config.database
            port = database_port or database.port
            env["DATABASE_URL"] = (
                f"postgresql://{database.user}:{password}@{database_host}:{port}/{database.name}"
            )
        return env

    def _env_artifact(
        self, path: str, variables: Mapping[str, object], role: ServiceRole
    ) -> Artifact:
        content = self.templates.render_to_string(
            "env/dotenv.j2", {"project": self.config.project, "variables": dict(variables)}
        )
        return Artifact(path, content, mode=0o600, role=role, secret=True)


def installed_env_path(config: AppConfig) -> Path:
    """Return where the native strategy installs the app environment file."""
    return config.app.shared_dir / ".env"


def app_unit_name(config: AppConfig) -> str:
    """Return the systemd unit name for the native app service."""
    return f"{config.project}.service"


def scheduler_unit_name(config: AppConfig) -> str:
    """Return the systemd unit name for the recurring task runner."""
    return f"{config.project}-scheduler.service"


def admin_location_pattern(paths: Sequence[str]) -> str:
    """Return the nginx regex matching *paths* as prefixes, e.g. ``^/(admin|api/admin)``."""
    stems = [re.escape(path.strip("/")) for path in paths if path.strip("/")]
    if not stems:
        return ""
    return f"^/({'|'.join(stems)})"


def app_image(config: AppConfig, tag: str) -> str:
    """Return the container image reference for the app at *tag*."""
    return f"{config.project}-app:{tag}"


def _require(credentials: Mapping[str, Credential], name: str) -> Credential:
    try:
        return credentials[name]
    except KeyError as exc:
        raise GeneratorError(f"Credential {name} is required to render this bundle.") from exc


class ArtifactWriter:
    """Write bundles under ``<root>/bundles`` and maintain the ``active`` link."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    @property
    def active_link(self) -> Path:
        return self.root / "active"

    def bundle_dir(self, bundle: ArtifactBundle) -> Path:
        """Return the content-addressed directory for *bundle*."""
        return self.root / "bundles" / bundle.checksum[:16]

    def active_dir(self) -> Path | None:
        """Return the directory the ``active`` link points at, if any."""
        link = self.active_link
        if not link.is_symlink():
            return None
        return link.resolve()

    def stage(self, bundle: ArtifactBundle) -> Path:
        """Write *bundle* to its directory (no-op when already complete)."""
        target = self.bundle_dir(bundle)
        marker = target / ".complete"
        if marker.exists():
            return target
        staging = target.with_name(f".{target.name}.staging")
        if staging.exists():
            shutil.rmtree(staging)
        try:
            for artifact in bundle.artifacts:
                destination = staging / artifact.path
                destination.parent.mkdir(parents=True, exist_ok=True)
                destination.write_text(artifact.content, encoding="utf-8")
                destination.chmod(artifact.mode)
            (staging / ".complete").write_text(bundle.checksum + "\n", encoding="utf-8")
            if target.exists():
                shutil.rmtree(target)
            os.replace(staging, target)
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)
        return target

    def activate(self, bundle: ArtifactBundle) -> tuple[Path, bool]:
        """Point ``active`` at *bundle*; return its directory and whether it changed."""
        target = self.stage(bundle)
        current = self.active_dir()
        if current is not None and current == target.resolve():
            return target, False
        swap_symlink(self.active_link, target)
        LOGGER.info("Activated artifact bundle %s", bundle.checksum[:16])
        return target, True

    def prune(self, keep: int = 3) -> list[Path]:
        """Remove old bundle directories, never the active one."""
        bundles_root = self.root / "bundles"
        if not bundles_root.exists():
            return []
        active = self.active_dir()
        candidates = sorted(
            (path for path in bundles_root.iterdir() if path.is_dir() and not path.name.startswith(".")),
            key=lambda path: path.stat().st_mtime,
            reverse=True,
        )
        removed: list[Path] = []
        for path in candidates[keep:]:
            if active is not None and path.resolve() == active:
                continue
            shutil.rmtree(path, ignore_errors=True)
            removed.append(path)
        return removed


def swap_symlink(link: Path, target: Path) -> None:
    """Atomically point *link* at *target* via a temporary symlink and rename."""
    link.parent.mkdir(parents=True, exist_ok=True)
    temp_link = link.with_name(f".{link.name}.swap")
    if temp_link.is_symlink() or temp_link.exists():
        temp_link.unlink()
    temp_link.symlink_to(target)
    os.replace(temp_link, link)


__all__ = [
    "APP_ENV",
    "APP_UNIT",
    "COMPOSE_MANIFEST",
    "COMPOSE_SERVICE_NAMES",
    "DATABASE_ENV",
    "LOGROTATE",
    "NGINX_SITE",
    "PM2_ECOSYSTEM",
    "SCHEDULER_UNIT",
    "ArtifactWriter",
    "ConfigGenerator",
    "GeneratorError",
    "app_image",
    "app_unit_name",
    "installed_env_path",
    "scheduler_unit_name",
    "swap_symlink",
]
