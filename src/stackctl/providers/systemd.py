"""Systemd provider for managing service units."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from .files import FileInstaller
from .process import run_command


class SystemdError(RuntimeError):
    """Raised when systemd operations fail."""


@dataclass(slots=True)
class SystemdProvider:
    """Install unit files and drive ``systemctl``."""

    systemd_dir: Path = Path("/etc/systemd/system")
    systemctl_bin: str = "systemctl"
    journalctl_bin: str = "journalctl"
    elevate: tuple[str, ...] = ()
    files: FileInstaller = field(default_factory=FileInstaller)

    def unit_path(self, unit: str) -> Path:
        """Return the full path for *unit*."""
        return self.systemd_dir / unit

    def install_unit(self, unit: str, content: str) -> bool:
        """Install the unit file and reload the daemon when it changed."""
        changed = self.files.install(content, self.unit_path(unit), mode=0o644)
        if changed:
            self._reload_daemon()
        return changed

    def enable(self, unit: str, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        """Enable *unit* so it starts on boot."""
        return self._systemctl("enable", unit, dry_run=dry_run)

    def start(self, unit: str, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        """Start *unit*."""
        return self._systemctl("start", unit, dry_run=dry_run)

    def stop(self, unit: str, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        """Stop *unit*."""
        return self._systemctl("stop", unit, dry_run=dry_run)

    def restart(self, unit: str, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        """Restart *unit*."""
        return self._systemctl("restart", unit, dry_run=dry_run)

    def reload(self, unit: str, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        """Reload *unit* in place."""
        return self._systemctl("reload", unit, dry_run=dry_run)

    def is_active(self, unit: str) -> bool | None:
        """Return whether *unit* is active; ``None`` when systemd cannot answer."""
        try:
            result = self._run_command(
                [self.systemctl_bin, "is-active", unit],
                check=False,
                error_prefix=f"{self.systemctl_bin} is-active",
                elevated=False,
            )
        except SystemdError:
            return None
        state = (result.stdout or "").strip()
        if result.returncode == 0:
            return True
        if state in {"inactive", "failed", "activating", "deactivating"}:
            return False
        return None

    def logs(self, unit: str, *, lines: int | None = None) -> subprocess.CompletedProcess[str]:
        """Return journalctl output for *unit*."""
        args: list[str] = ["--unit", unit, "--no-pager", "--output", "cat"]
        if lines is not None:
            args.extend(["--lines", str(lines)])
        return self._run_command(
            [self.journalctl_bin, *args],
            check=True,
            error_prefix=f"{self.journalctl_bin} --unit {unit}",
            elevated=True,
        )

    # ------------------------------------------------------------------
    def _reload_daemon(self) -> None:
        self._systemctl("daemon-reload")

    def _systemctl(
        self,
        command: str,
        unit: str | None = None,
        *,
        check: bool = True,
        dry_run: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        args: list[str] = [self.systemctl_bin, command]
        if unit is not None:
            args.append(unit)
        if dry_run:
            return subprocess.CompletedProcess(args, returncode=0, stdout="", stderr="")
        return self._run_command(
            args,
            check=check,
            error_prefix=f"{self.systemctl_bin} {command}",
            elevated=True,
        )

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
        elevated: bool,
    ) -> subprocess.CompletedProcess[str]:
        command = [*self.elevate, *args] if elevated else list(args)
        return run_command(command, error=SystemdError, error_prefix=error_prefix, check=check)


__all__ = ["SystemdError", "SystemdProvider"]
