"""Nginx provider for installing and validating the site configuration."""
from __future__ import annotations

import logging
import subprocess
import tempfile
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from .files import FileInstaller
from .process import run_command

LOGGER = logging.getLogger(__name__)

_WRAPPER = """\
pid {workdir}/nginx.pid;
error_log {workdir}/error.log;
events {{}}
http {{
    include {site};
}}
"""


class NginxError(RuntimeError):
    """Raised when nginx operations fail."""


@dataclass(slots=True)
class NginxProvider:
    """Install and manage the nginx site for a project."""

    sites_available: Path = Path("/etc/nginx/sites-available")
    sites_enabled: Path = Path("/etc/nginx/sites-enabled")
    nginx_bin: str = "nginx"
    elevate: tuple[str, ...] = ()
    files: FileInstaller = field(default_factory=FileInstaller)

    def site_name(self, project: str) -> str:
        """Return the canonical site file name for *project*."""
        safe = project.replace("/", "-")
        return f"{safe}.conf"

    def site_path(self, project: str) -> Path:
        """Return the path to the nginx site configuration file."""
        return self.sites_available / self.site_name(project)

    def enabled_path(self, project: str) -> Path:
        """Return the path of the symlink in sites-enabled for *project*."""
        return self.sites_enabled / self.site_name(project)

    def install_site(self, project: str, content: str) -> bool:
        """Install *content* as the site for *project* and enable it.

        Returns ``True`` when either the file or the enable link changed.
        Validation is the caller's job and must happen before this call.
        """
        changed = self.files.install(content, self.site_path(project), mode=0o644)
        linked = self.enable(project)
        return changed or linked

    def enable(self, project: str) -> bool:
        """Enable the site by creating a symlink in sites-enabled."""
        return self.files.symlink(self.site_path(project), self.enabled_path(project))

    def disable(self, project: str) -> bool:
        """Disable the site by removing the symlink."""
        return self.files.remove(self.enabled_path(project))

    def is_enabled(self, project: str) -> bool:
        """Return True when the site is enabled via sites-enabled symlink."""
        target = self.enabled_path(project)
        if not target.is_symlink():
            return False
        try:
            return target.resolve() == self.site_path(project).resolve()
        except FileNotFoundError:
            return False

    def diagnostics(self, project: str) -> dict[str, object]:
        """Return diagnostic metadata for *project*."""
        site_path = self.site_path(project)
        return {
            "site_path": str(site_path),
            "site_exists": site_path.exists(),
            "enabled_path": str(self.enabled_path(project)),
            "enabled": self.is_enabled(project),
        }

    def test_config(self, candidate: Path | None = None) -> subprocess.CompletedProcess[str]:
        """Run ``nginx -t``.

        With *candidate* only that site file is checked, wrapped in a minimal
        top-level configuration, so a bad candidate never has to be installed
        to be rejected.
        """
        if candidate is None:
            return self._run_nginx(["-t", "-q"])
        with tempfile.TemporaryDirectory(prefix="stackctl-nginx-") as workdir:
            wrapper = Path(workdir) / "nginx.conf"
            wrapper.write_text(
                _WRAPPER.format(workdir=workdir, site=Path(candidate).resolve()),
                encoding="utf-8",
            )
            return self._run_nginx(["-t", "-q", "-c", str(wrapper)])

    def reload(self) -> subprocess.CompletedProcess[str]:
        """Reload nginx to apply configuration changes without dropping connections."""
        return self._run_nginx(["-s", "reload"])

    # ------------------------------------------------------------------
    def _run_nginx(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        command = [*self.elevate, self.nginx_bin, *args]
        return run_command(
            command,
            error=NginxError,
            error_prefix=f"{self.nginx_bin} {' '.join(args)}",
        )


__all__ = ["NginxError", "NginxProvider"]
