"""Configuration loader for stackctl.

Values are read from multiple sources, later sources winning:

1. Built-in defaults.
2. ``/etc/stackctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``STACKCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export STACKCTL_HOSTNAMES__PUBLIC=example.org
    export STACKCTL_BACKUPS__RETENTION_DAYS=14

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``. Every operational input (strategy, hostnames, retention,
health interval, crash-loop thresholds) lives here; nothing is inferred from
the host implicitly.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

ENV_PREFIX = "STACKCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}
DEFAULT_MIGRATE_COMMAND = "./scripts/migrate.sh"


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class HostnamesConfig:
    """The single public hostname (plus aliases) and the admin hostname."""

    public: str = "example.com"
    aliases: tuple[str, ...] = ("www.example.com",)
    admin: str = "admin.example.com"

    @property
    def public_names(self) -> tuple[str, ...]:
        """Return the public hostname followed by its aliases."""
        return (self.public, *self.aliases)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"public": self.public, "aliases": list(self.aliases), "admin": self.admin}


@dataclass(frozen=True)
class AppServiceConfig:
    """Application process settings."""

    root: Path = Path("/var/www/portfolio")
    port: int = 3000
    instances: str = "max"
    memory_limit: str = "1G"
    entrypoint: str = "dist/index.js"
    health_path: str = "/health"
    node_env: str = "production"
    repository: str | None = None
    branch: str = "main"
    source_dir: Path | None = None
    install_command: str = "npm ci"
    build_command: str = "npm run build"
    restart_delay_ms: int = 5000
    max_restarts: int = 10
    min_uptime: str = "10s"

    @property
    def releases_dir(self) -> Path:
        """Return the directory holding built releases."""
        return self.root / "releases"

    @property
    def current_link(self) -> Path:
        """Return the symlink pointing at the running release."""
        return self.root / "current"

    @property
    def shared_dir(self) -> Path:
        """Return the directory for state shared across releases."""
        return self.root / "shared"

    @property
    def logs_dir(self) -> Path:
        """Return the application log directory."""
        return self.root / "logs"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "root": str(self.root),
            "port": self.port,
            "instances": self.instances,
            "memory_limit": self.memory_limit,
            "entrypoint": self.entrypoint,
            "health_path": self.health_path,
            "node_env": self.node_env,
            "repository": self.repository,
            "branch": self.branch,
            "source_dir": str(self.source_dir) if self.source_dir else None,
            "install_command": self.install_command,
            "build_command": self.build_command,
            "restart_delay_ms": self.restart_delay_ms,
            "max_restarts": self.max_restarts,
            "min_uptime": self.min_uptime,
        }


@dataclass(frozen=True)
class DatabaseConfig:
    """PostgreSQL database settings."""

    name: str = "portfolio"
    user: str = "portfolio_user"
    host: str = "127.0.0.1"
    port: int = 5432
    superuser: str = "postgres"
    image: str = "postgres:16-alpine"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "user": self.user,
            "host": self.host,
            "port": self.port,
            "superuser": self.superuser,
            "image": self.image,
        }


@dataclass(frozen=True)
class ProxyConfig:
    """Reverse proxy policy: rate limits, caching and administration paths."""

    public_rate: str = "10r/s"
    public_burst: int = 20
    admin_rate: str = "5r/s"
    admin_burst: int = 10
    admin_api_burst: int = 5
    client_max_body_size: str = "16m"
    static_expires: str = "1y"
    admin_paths: tuple[str, ...] = ("/admin", "/api/admin")
    image: str = "nginx:1.27-alpine"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "public_rate": self.public_rate,
            "public_burst": self.public_burst,
            "admin_rate": self.admin_rate,
            "admin_burst": self.admin_burst,
            "admin_api_burst": self.admin_api_burst,
            "client_max_body_size": self.client_max_body_size,
            "static_expires": self.static_expires,
            "admin_paths": list(self.admin_paths),
            "image": self.image,
        }


@dataclass(frozen=True)
class HealthConfig:
    """Health monitor cadence and crash-loop thresholds."""

    interval: float = 300.0
    probe_timeout: float = 5.0
    probe_retries: int = 2
    max_restarts: int = 3
    restart_window: float = 900.0
    restart_lock_timeout: float = 2.0
    disk_warn_percent: int = 80
    memory_warn_percent: int = 90
    error_log_lines: int = 100
    error_threshold: int = 0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "interval": self.interval,
            "probe_timeout": self.probe_timeout,
            "probe_retries": self.probe_retries,
            "max_restarts": self.max_restarts,
            "restart_window": self.restart_window,
            "restart_lock_timeout": self.restart_lock_timeout,
            "disk_warn_percent": self.disk_warn_percent,
            "memory_warn_percent": self.memory_warn_percent,
            "error_log_lines": self.error_log_lines,
            "error_threshold": self.error_threshold,
        }


@dataclass(frozen=True)
class BackupConfig:
    """Backup storage, retention and compression defaults."""

    root: Path
    index: Path
    retention_days: int = 7
    interval: float = 86400.0
    defer_seconds: float = 60.0
    compression: str = "auto"
    compression_level: int | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "root": str(self.root),
            "index": str(self.index),
            "retention_days": self.retention_days,
            "interval": self.interval,
            "defer_seconds": self.defer_seconds,
            "compression": {
                "algorithm": self.compression,
                "level": self.compression_level,
            },
        }


@dataclass(frozen=True)
class TLSConfig:
    """Certificate issuance and renewal settings."""

    enabled: bool = True
    email: str | None = None
    live_dir: Path = Path("/etc/letsencrypt/live")
    webroot: Path = Path("/var/www/letsencrypt")
    renewal_fraction: float = 1 / 3
    check_interval: float = 43200.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "enabled": self.enabled,
            "email": self.email,
            "live_dir": str(self.live_dir),
            "webroot": str(self.webroot),
            "renewal_fraction": self.renewal_fraction,
            "check_interval": self.check_interval,
        }


@dataclass(frozen=True)
class PreflightConfig:
    """Host requirements checked before any mutation."""

    supported_os: tuple[str, ...] = ("ubuntu", "debian")
    min_memory_mb: int = 256
    recommended_memory_mb: int = 1024
    min_disk_mb: int = 512
    recommended_disk_mb: int = 5120

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "supported_os": list(self.supported_os),
            "min_memory_mb": self.min_memory_mb,
            "recommended_memory_mb": self.recommended_memory_mb,
            "min_disk_mb": self.min_disk_mb,
            "recommended_disk_mb": self.recommended_disk_mb,
        }


@dataclass(frozen=True)
class DeployConfig:
    """Deploy grace period, migration hook and release retention."""

    grace_period: float = 60.0
    poll_interval: float = 2.0
    keep_releases: int = 5
    migrate_command: str = DEFAULT_MIGRATE_COMMAND

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "grace_period": self.grace_period,
            "poll_interval": self.poll_interval,
            "keep_releases": self.keep_releases,
            "migrate_command": self.migrate_command,
        }


@dataclass(frozen=True)
class FirewallConfig:
    """Host firewall rules applied during provisioning."""

    enabled: bool = True
    allow: tuple[str, ...] = ("OpenSSH", "80/tcp", "443/tcp")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"enabled": self.enabled, "allow": list(self.allow)}


@dataclass(frozen=True)
class SystemdConfig:
    """Systemd integration configuration values."""

    unit_dir: Path | None = None
    systemctl_bin: str = "systemctl"
    journalctl_bin: str = "journalctl"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "unit_dir": str(self.unit_dir) if self.unit_dir is not None else None,
            "systemctl_bin": self.systemctl_bin,
            "journalctl_bin": self.journalctl_bin,
        }


@dataclass(frozen=True)
class NginxConfig:
    """Nginx site locations and binary."""

    sites_available: Path = Path("/etc/nginx/sites-available")
    sites_enabled: Path = Path("/etc/nginx/sites-enabled")
    nginx_bin: str = "nginx"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "sites_available": str(self.sites_available),
            "sites_enabled": str(self.sites_enabled),
            "nginx_bin": self.nginx_bin,
        }


@dataclass(frozen=True)
class ToolsConfig:
    """Names (or paths) of the external binaries stackctl drives."""

    docker_bin: str = "docker"
    pm2_bin: str = "pm2"
    certbot_bin: str = "certbot"
    ufw_bin: str = "ufw"
    git_bin: str = "git"
    node_bin: str = "node"
    psql_bin: str = "psql"
    pg_dump_bin: str = "pg_dump"
    pg_isready_bin: str = "pg_isready"
    sudo_bin: str = "sudo"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "docker_bin": self.docker_bin,
            "pm2_bin": self.pm2_bin,
            "certbot_bin": self.certbot_bin,
            "ufw_bin": self.ufw_bin,
            "git_bin": self.git_bin,
            "node_bin": self.node_bin,
            "psql_bin": self.psql_bin,
            "pg_dump_bin": self.pg_dump_bin,
            "pg_isready_bin": self.pg_isready_bin,
            "sudo_bin": self.sudo_bin,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for stackctl."""

    config_file: Path
    project: str
    strategy: str | None
    service_user: str
    state_dir: Path
    registry_dir: Path
    credentials_dir: Path
    artifacts_dir: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    logrotate_dir: Path
    lock_timeout: float
    hostnames: HostnamesConfig
    app: AppServiceConfig
    database: DatabaseConfig
    proxy: ProxyConfig
    health: HealthConfig
    backups: BackupConfig
    tls: TLSConfig
    preflight: PreflightConfig
    deploy: DeployConfig
    firewall: FirewallConfig
    systemd: SystemdConfig
    nginx: NginxConfig
    tools: ToolsConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "project": self.project,
            "strategy": self.strategy,
            "service_user": self.service_user,
            "state_dir": str(self.state_dir),
            "registry_dir": str(self.registry_dir),
            "credentials_dir": str(self.credentials_dir),
            "artifacts_dir": str(self.artifacts_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "logrotate_dir": str(self.logrotate_dir),
            "lock_timeout": self.lock_timeout,
            "hostnames": self.hostnames.to_dict(),
            "app": self.app.to_dict(),
            "database": self.database.to_dict(),
            "proxy": self.proxy.to_dict(),
            "health": self.health.to_dict(),
            "backups": self.backups.to_dict(),
            "tls": self.tls.to_dict(),
            "preflight": self.preflight.to_dict(),
            "deploy": self.deploy.to_dict(),
            "firewall": self.firewall.to_dict(),
            "systemd": self.systemd.to_dict(),
            "nginx": self.nginx.to_dict(),
            "tools": self.tools.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/stackctl/config.yml",
    "project": "portfolio",
    "strategy": None,
    "service_user": "www-data",
    "state_dir": "/var/lib/stackctl",
    "registry_dir": None,  # derived from state_dir when absent
    "credentials_dir": None,
    "artifacts_dir": None,
    "logs_dir": "/var/log/stackctl",
    "runtime_dir": "/run/stackctl",
    "templates_dir": "/etc/stackctl/templates",
    "logrotate_dir": "/etc/logrotate.d",
    "lock_timeout": 30.0,
    "hostnames": {
        "public": "example.com",
        "aliases": ["www.example.com"],
        "admin": "admin.example.com",
    },
    "app": {
        "root": "/var/www/portfolio",
        "port": 3000,
        "instances": "max",
        "memory_limit": "1G",
        "entrypoint": "dist/index.js",
        "health_path": "/health",
        "node_env": "production",
        "repository": None,
        "branch": "main",
        "source_dir": None,
        "install_command": "npm ci",
        "build_command": "npm run build",
        "restart_delay_ms": 5000,
        "max_restarts": 10,
        "min_uptime": "10s",
    },
    "database": {
        "name": "portfolio",
        "user": "portfolio_user",
        "host": "127.0.0.1",
        "port": 5432,
        "superuser": "postgres",
        "image": "postgres:16-alpine",
    },
    "proxy": {
        "public_rate": "10r/s",
        "public_burst": 20,
        "admin_rate": "5r/s",
        "admin_burst": 10,
        "admin_api_burst": 5,
        "client_max_body_size": "16m",
        "static_expires": "1y",
        "admin_paths": ["/admin", "/api/admin"],
        "image": "nginx:1.27-alpine",
    },
    "health": {
        "interval": 300,
        "probe_timeout": 5.0,
        "probe_retries": 2,
        "max_restarts": 3,
        "restart_window": 900,
        "restart_lock_timeout": 2.0,
        "disk_warn_percent": 80,
        "memory_warn_percent": 90,
        "error_log_lines": 100,
        "error_threshold": 0,
    },
    "backups": {
        "root": "/var/backups/stackctl",
        "index": None,
        "retention_days": 7,
        "interval": 86400,
        "defer_seconds": 60,
        "compression": {
            "algorithm": "auto",
            "level": None,
        },
    },
    "tls": {
        "enabled": True,
        "email": None,
        "live_dir": "/etc/letsencrypt/live",
        "webroot": "/var/www/letsencrypt",
        "renewal_fraction": 1 / 3,
        "check_interval": 43200,
    },
    "preflight": {
        "supported_os": ["ubuntu", "debian"],
        "min_memory_mb": 256,
        "recommended_memory_mb": 1024,
        "min_disk_mb": 512,
        "recommended_disk_mb": 5120,
    },
    "deploy": {
        "grace_period": 60,
        "poll_interval": 2,
        "keep_releases": 5,
        "migrate_command": DEFAULT_MIGRATE_COMMAND,
    },
    "firewall": {
        "enabled": True,
        "allow": ["OpenSSH", "80/tcp", "443/tcp"],
    },
    "systemd": {
        "unit_dir": None,
        "systemctl_bin": "systemctl",
        "journalctl_bin": "journalctl",
    },
    "nginx": {
        "sites_available": "/etc/nginx/sites-available",
        "sites_enabled": "/etc/nginx/sites-enabled",
        "nginx_bin": "nginx",
    },
    "tools": {
        "docker_bin": "docker",
        "pm2_bin": "pm2",
        "certbot_bin": "certbot",
        "ufw_bin": "ufw",
        "git_bin": "git",
        "node_bin": "node",
        "psql_bin": "psql",
        "pg_dump_bin": "pg_dump",
        "pg_isready_bin": "pg_isready",
        "sudo_bin": "sudo",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
SECTION_KEYS: dict[str, set[str]] = {
    key: set(cast(Mapping[str, object], value).keys())
    for key, value in DEFAULTS.items()
    if isinstance(value, Mapping)
}
ALLOWED_STRATEGIES = {"containerized", "native", "quick-dev"}
ALLOWED_BACKUP_COMPRESSION = {"auto", "zstd", "gzip", "none"}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in SECTION_KEYS.items():
        value = raw.get(section)
        if value is None:
            continue
        mapping = _as_dict(value, section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    strategy = raw.get("strategy")
    if strategy is not None and str(strategy) not in ALLOWED_STRATEGIES:
        allowed_text = ", ".join(sorted(ALLOWED_STRATEGIES))
        raise ConfigError(
            f"Unsupported deployment strategy '{strategy}'. Allowed: {allowed_text}."
        )

    backups_map = _as_dict(raw.get("backups"), "backups")
    compression_map = _as_dict(backups_map.get("compression"), "backups.compression")
    unknown_comp = set(compression_map.keys()) - {"algorithm", "level"}
    if unknown_comp:
        joined = ", ".join(sorted(unknown_comp))
        raise ConfigError(f"Unknown backups compression keys: {joined}.")
    algorithm = str(compression_map.get("algorithm", "auto"))
    if algorithm not in ALLOWED_BACKUP_COMPRESSION:
        allowed_text = ", ".join(sorted(ALLOWED_BACKUP_COMPRESSION))
        raise ConfigError(
            f"Unsupported backup compression '{algorithm}'. Allowed: {allowed_text}."
        )


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    state_dir = _to_path(raw.get("state_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    strategy_value = raw.get("strategy")
    strategy = str(strategy_value) if strategy_value not in (None, "") else None

    project = _expect_str(raw.get("project"), "project").strip()
    if not project or not project.replace("-", "").replace("_", "").isalnum():
        raise ConfigError(
            "project must be a non-empty slug of letters, digits, '-' or '_'."
        )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        project=project,
        strategy=strategy,
        service_user=_expect_str(raw.get("service_user"), "service_user"),
        state_dir=state_dir,
        registry_dir=_optional_path(raw.get("registry_dir")) or state_dir / "registry",
        credentials_dir=_optional_path(raw.get("credentials_dir")) or state_dir / "credentials",
        artifacts_dir=_optional_path(raw.get("artifacts_dir")) or state_dir / "artifacts",
        logs_dir=_to_path(raw.get("logs_dir")),
        runtime_dir=_to_path(raw.get("runtime_dir")),
        templates_dir=_to_path(raw.get("templates_dir")),
        logrotate_dir=_to_path(raw.get("logrotate_dir")),
        lock_timeout=lock_timeout,
        hostnames=_build_hostnames(_as_dict(raw.get("hostnames"), "hostnames")),
        app=_build_app_service(_as_dict(raw.get("app"), "app")),
        database=_build_database(_as_dict(raw.get("database"), "database")),
        proxy=_build_proxy(_as_dict(raw.get("proxy"), "proxy")),
        health=_build_health(_as_dict(raw.get("health"), "health")),
        backups=_build_backups(_as_dict(raw.get("backups"), "backups")),
        tls=_build_tls(_as_dict(raw.get("tls"), "tls")),
        preflight=_build_preflight(_as_dict(raw.get("preflight"), "preflight")),
        deploy=_build_deploy(_as_dict(raw.get("deploy"), "deploy")),
        firewall=_build_firewall(_as_dict(raw.get("firewall"), "firewall")),
        systemd=_build_systemd(_as_dict(raw.get("systemd"), "systemd")),
        nginx=_build_nginx(_as_dict(raw.get("nginx"), "nginx")),
        tools=_build_tools(_as_dict(raw.get("tools"), "tools")),
    )


def _build_hostnames(mapping: Mapping[str, object]) -> HostnamesConfig:
    public = _expect_str(mapping.get("public"), "hostnames.public").strip().lower()
    admin = _expect_str(mapping.get("admin"), "hostnames.admin").strip().lower()
    if not public or not admin:
        raise ConfigError("hostnames.public and hostnames.admin must be non-empty.")
    if public == admin:
        raise ConfigError("hostnames.admin must differ from hostnames.public.")
    aliases = tuple(
        str(alias).strip().lower()
        for alias in _as_sequence(mapping.get("aliases", []), "hostnames.aliases")
        if str(alias).strip()
    )
    if admin in aliases:
        raise ConfigError("hostnames.admin cannot also be a public alias.")
    return HostnamesConfig(public=public, aliases=aliases, admin=admin)


def _build_app_service(mapping: Mapping[str, object]) -> AppServiceConfig:
    port = _expect_int(mapping.get("port"), "app.port", default=3000)
    _check_port(port, "app.port")
    instances = str(mapping.get("instances", "max"))
    if instances != "max":
        count = _expect_int(instances, "app.instances", default=1)
        if count <= 0:
            raise ConfigError("app.instances must be 'max' or a positive integer.")
        instances = str(count)
    health_path = str(mapping.get("health_path", "/health"))
    if not health_path.startswith("/"):
        raise ConfigError("app.health_path must start with '/'.")
    repository = mapping.get("repository")
    return AppServiceConfig(
        root=_to_path(mapping.get("root")),
        port=port,
        instances=instances,
        memory_limit=str(mapping.get("memory_limit", "1G")),
        entrypoint=str(mapping.get("entrypoint", "dist/index.js")),
        health_path=health_path,
        node_env=str(mapping.get("node_env", "production")),
        repository=str(repository) if repository else None,
        branch=str(mapping.get("branch", "main")),
        source_dir=_optional_path(mapping.get("source_dir")),
        install_command=str(mapping.get("install_command", "npm ci")),
        build_command=str(mapping.get("build_command", "npm run build")),
        restart_delay_ms=_expect_int(
            mapping.get("restart_delay_ms"), "app.restart_delay_ms", default=5000
        ),
        max_restarts=_expect_int(mapping.get("max_restarts"), "app.max_restarts", default=10),
        min_uptime=str(mapping.get("min_uptime", "10s")),
    )


def _build_database(mapping: Mapping[str, object]) -> DatabaseConfig:
    port = _expect_int(mapping.get("port"), "database.port", default=5432)
    _check_port(port, "database.port")
    for key in ("name", "user"):
        value = _expect_str(mapping.get(key), f"database.{key}")
        if not value.replace("_", "").isalnum():
            raise ConfigError(
                f"database.{key} must contain only letters, digits and underscores."
            )
    return DatabaseConfig(
        name=str(mapping.get("name")),
        user=str(mapping.get("user")),
        host=str(mapping.get("host", "127.0.0.1")),
        port=port,
        superuser=str(mapping.get("superuser", "postgres")),
        image=str(mapping.get("image", "postgres:16-alpine")),
    )


def _build_proxy(mapping: Mapping[str, object]) -> ProxyConfig:
    proxy = ProxyConfig(
        public_rate=str(mapping.get("public_rate", "10r/s")),
        public_burst=_expect_int(mapping.get("public_burst"), "proxy.public_burst", default=20),
        admin_rate=str(mapping.get("admin_rate", "5r/s")),
        admin_burst=_expect_int(mapping.get("admin_burst"), "proxy.admin_burst", default=10),
        admin_api_burst=_expect_int(
            mapping.get("admin_api_burst"), "proxy.admin_api_burst", default=5
        ),
        client_max_body_size=str(mapping.get("client_max_body_size", "16m")),
        static_expires=str(mapping.get("static_expires", "1y")),
        admin_paths=tuple(
            str(path) for path in _as_sequence(mapping.get("admin_paths", []), "proxy.admin_paths")
        ),
        image=str(mapping.get("image", "nginx:1.27-alpine")),
    )
    if _rate_per_second(proxy.admin_rate, "proxy.admin_rate") >= _rate_per_second(
        proxy.public_rate, "proxy.public_rate"
    ):
        raise ConfigError("proxy.admin_rate must be stricter than proxy.public_rate.")
    if proxy.admin_api_burst > proxy.admin_burst:
        raise ConfigError("proxy.admin_api_burst must not exceed proxy.admin_burst.")
    for path in proxy.admin_paths:
        if not path.startswith("/"):
            raise ConfigError(f"proxy.admin_paths entries must start with '/'. Got {path!r}.")
    return proxy


def _build_health(mapping: Mapping[str, object]) -> HealthConfig:
    health = HealthConfig(
        interval=_expect_positive_float(mapping.get("interval"), "health.interval", default=300),
        probe_timeout=_expect_positive_float(
            mapping.get("probe_timeout"), "health.probe_timeout", default=5.0
        ),
        probe_retries=_expect_int(mapping.get("probe_retries"), "health.probe_retries", default=2),
        max_restarts=_expect_int(mapping.get("max_restarts"), "health.max_restarts", default=3),
        restart_window=_expect_positive_float(
            mapping.get("restart_window"), "health.restart_window", default=900
        ),
        restart_lock_timeout=_expect_positive_float(
            mapping.get("restart_lock_timeout"), "health.restart_lock_timeout", default=2.0
        ),
        disk_warn_percent=_expect_int(
            mapping.get("disk_warn_percent"), "health.disk_warn_percent", default=80
        ),
        memory_warn_percent=_expect_int(
            mapping.get("memory_warn_percent"), "health.memory_warn_percent", default=90
        ),
        error_log_lines=_expect_int(
            mapping.get("error_log_lines"), "health.error_log_lines", default=100
        ),
        error_threshold=_expect_int(
            mapping.get("error_threshold"), "health.error_threshold", default=0
        ),
    )
    if health.probe_retries < 0 or health.max_restarts < 0:
        raise ConfigError("health.probe_retries and health.max_restarts must be non-negative.")
    for label, percent in (
        ("health.disk_warn_percent", health.disk_warn_percent),
        ("health.memory_warn_percent", health.memory_warn_percent),
    ):
        if not 0 < percent <= 100:
            raise ConfigError(f"{label} must be between 1 and 100.")
    return health


def _build_backups(mapping: Mapping[str, object]) -> BackupConfig:
    root = _to_path(mapping.get("root", "/var/backups/stackctl"))
    index = _optional_path(mapping.get("index")) or root / "backups.json"
    retention_days = _expect_int(
        mapping.get("retention_days"), "backups.retention_days", default=7
    )
    if retention_days < 0:
        raise ConfigError("backups.retention_days must be non-negative.")

    compression_mapping = _as_dict(mapping.get("compression"), "backups.compression")
    compression_level_raw = compression_mapping.get("level")
    compression_level: int | None = None
    if compression_level_raw is not None:
        parsed_level = _expect_int(
            compression_level_raw, "backups.compression.level", default=1
        )
        if parsed_level <= 0:
            raise ConfigError(
                "backups.compression.level must be greater than zero when specified."
            )
        compression_level = parsed_level

    return BackupConfig(
        root=root,
        index=index,
        retention_days=retention_days,
        interval=_expect_positive_float(mapping.get("interval"), "backups.interval", default=86400),
        defer_seconds=_expect_positive_float(
            mapping.get("defer_seconds"), "backups.defer_seconds", default=60
        ),
        compression=str(compression_mapping.get("algorithm", "auto")),
        compression_level=compression_level,
    )


def _build_tls(mapping: Mapping[str, object]) -> TLSConfig:
    fraction = _expect_positive_float(
        mapping.get("renewal_fraction"), "tls.renewal_fraction", default=1 / 3
    )
    if fraction >= 1:
        raise ConfigError("tls.renewal_fraction must be below 1.")
    email = mapping.get("email")
    return TLSConfig(
        enabled=bool(mapping.get("enabled", True)),
        email=str(email) if email else None,
        live_dir=_to_path(mapping.get("live_dir", "/etc/letsencrypt/live")),
        webroot=_to_path(mapping.get("webroot", "/var/www/letsencrypt")),
        renewal_fraction=fraction,
        check_interval=_expect_positive_float(
            mapping.get("check_interval"), "tls.check_interval", default=43200
        ),
    )


def _build_preflight(mapping: Mapping[str, object]) -> PreflightConfig:
    preflight = PreflightConfig(
        supported_os=tuple(
            str(item).lower()
            for item in _as_sequence(mapping.get("supported_os", []), "preflight.supported_os")
        ),
        min_memory_mb=_expect_int(
            mapping.get("min_memory_mb"), "preflight.min_memory_mb", default=256
        ),
        recommended_memory_mb=_expect_int(
            mapping.get("recommended_memory_mb"), "preflight.recommended_memory_mb", default=1024
        ),
        min_disk_mb=_expect_int(mapping.get("min_disk_mb"), "preflight.min_disk_mb", default=512),
        recommended_disk_mb=_expect_int(
            mapping.get("recommended_disk_mb"), "preflight.recommended_disk_mb", default=5120
        ),
    )
    if preflight.min_memory_mb > preflight.recommended_memory_mb:
        raise ConfigError("preflight.min_memory_mb cannot exceed recommended_memory_mb.")
    if preflight.min_disk_mb > preflight.recommended_disk_mb:
        raise ConfigError("preflight.min_disk_mb cannot exceed recommended_disk_mb.")
    return preflight


def _build_deploy(mapping: Mapping[str, object]) -> DeployConfig:
    keep = _expect_int(mapping.get("keep_releases"), "deploy.keep_releases", default=5)
    if keep < 2:
        raise ConfigError("deploy.keep_releases must be at least 2.")
    return DeployConfig(
        grace_period=_expect_positive_float(
            mapping.get("grace_period"), "deploy.grace_period", default=60
        ),
        poll_interval=_expect_positive_float(
            mapping.get("poll_interval"), "deploy.poll_interval", default=2
        ),
        keep_releases=keep,
        migrate_command=str(mapping.get("migrate_command") or "").strip(),
    )


def _build_firewall(mapping: Mapping[str, object]) -> FirewallConfig:
    return FirewallConfig(
        enabled=bool(mapping.get("enabled", True)),
        allow=tuple(str(rule) for rule in _as_sequence(mapping.get("allow", []), "firewall.allow")),
    )


def _build_systemd(mapping: Mapping[str, object]) -> SystemdConfig:
    return SystemdConfig(
        unit_dir=_optional_path(mapping.get("unit_dir")),
        systemctl_bin=str(mapping.get("systemctl_bin", "systemctl")),
        journalctl_bin=str(mapping.get("journalctl_bin", "journalctl")),
    )


def _build_nginx(mapping: Mapping[str, object]) -> NginxConfig:
    return NginxConfig(
        sites_available=_to_path(mapping.get("sites_available")),
        sites_enabled=_to_path(mapping.get("sites_enabled")),
        nginx_bin=str(mapping.get("nginx_bin", "nginx")),
    )


def _build_tools(mapping: Mapping[str, object]) -> ToolsConfig:
    defaults = ToolsConfig()
    values = {
        key: str(mapping.get(key, getattr(defaults, key)))
        for key in ToolsConfig.__dataclass_fields__
    }
    return ToolsConfig(**values)


def _rate_per_second(rate: str, label: str) -> float:
    text = rate.strip()
    for suffix, divisor in (("r/s", 1.0), ("r/m", 60.0)):
        if text.endswith(suffix):
            try:
                value = float(text[: -len(suffix)])
            except ValueError as exc:
                raise ConfigError(f"Invalid rate for {label}: {rate!r}.") from exc
            if value <= 0:
                raise ConfigError(f"{label} must be greater than zero.")
            return value / divisor
    raise ConfigError(f"{label} must end with 'r/s' or 'r/m'. Got {rate!r}.")


def _check_port(port: int, label: str) -> None:
    if not 0 < port < 65536:
        raise ConfigError(f"{label} must be between 1 and 65535. Got {port}.")


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if value is None:
        return []
    if isinstance(value, str):
        # A comma-separated string is accepted so env overrides stay ergonomic.
        return [item.strip() for item in value.split(",") if item.strip()]
    if isinstance(value, bytes) or not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _optional_path(value: object) -> Path | None:
    if value in (None, ""):
        return None
    return _to_path(value)


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
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
    "AppServiceConfig",
    "BackupConfig",
    "ConfigError",
    "DatabaseConfig",
    "DeployConfig",
    "FirewallConfig",
    "HealthConfig",
    "HostnamesConfig",
    "NginxConfig",
    "PreflightConfig",
    "ProxyConfig",
    "SystemdConfig",
    "TLSConfig",
    "ToolsConfig",
    "load_config",
]
