"""Providers wrapping the external tools stackctl drives."""
from __future__ import annotations

from .certbot import CertbotError, CertbotProvider
from .compose import ComposeError, ComposeProvider, ContainerStatus
from .files import FileInstaller, FileInstallError
from .firewall import FirewallError, UfwProvider
from .nginx import NginxError, NginxProvider
from .pm2 import Pm2Error, Pm2Provider
from .postgres import ComposePostgres, DatabaseBackend, DatabaseError, PostgresProvider
from .process import elevation_prefix, run_command
from .systemd import SystemdError, SystemdProvider

PROVIDER_ERRORS: tuple[type[RuntimeError], ...] = (
    CertbotError,
    ComposeError,
    DatabaseError,
    FileInstallError,
    FirewallError,
    NginxError,
    Pm2Error,
    SystemdError,
)

__all__ = [
    "PROVIDER_ERRORS",
    "CertbotError",
    "CertbotProvider",
    "ComposeError",
    "ComposePostgres",
    "ComposeProvider",
    "ContainerStatus",
    "DatabaseBackend",
    "DatabaseError",
    "FileInstallError",
    "FileInstaller",
    "FirewallError",
    "NginxError",
    "NginxProvider",
    "Pm2Error",
    "Pm2Provider",
    "PostgresProvider",
    "SystemdError",
    "SystemdProvider",
    "UfwProvider",
    "elevation_prefix",
    "run_command",
]
