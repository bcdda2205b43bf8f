"""PM2 provider for the quick-dev strategy."""
from __future__ import annotations

import json
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from .process import run_command


class Pm2Error(RuntimeError):
    """Raised when pm2 operations fail."""


@dataclass(slots=True)
class Pm2Provider:
    """Run the app under the invoking user's PM2 daemon."""

    pm2_bin: str = "pm2"
    timeout: float = 120.0

    def start(
        self,
        ecosystem: Path,
        *,
        env: Mapping[str, str] | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Start every app declared in *ecosystem*."""
        return self._run_pm2(["start", str(ecosystem)], env=env)

    def stop(self, name: str) -> subprocess.CompletedProcess[str]:
        """Stop the process named *name*."""
        return self._run_pm2(["stop", name])

    def restart(
        self,
        name: str,
        *,
        env: Mapping[str, str] | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Restart *name*, refreshing its environment."""
        return self._run_pm2(["restart", name, "--update-env"], env=env)

    def delete(self, name: str) -> subprocess.CompletedProcess[str]:
        """Remove *name* from the process list."""
        return self._run_pm2(["delete", name])

    def logs(self, name: str, *, lines: int = 100) -> str:
        """Return the last *lines* lines of output logged by *name*."""
        result = self._run_pm2(["logs", name, "--lines", str(lines), "--nostream", "--raw"])
        return result.stdout or ""

    def jlist(self) -> list[dict[str, object]]:
        """Return the PM2 process list."""
        result = self._run_pm2(["jlist"])
        text = (result.stdout or "").strip()
        if not text:
            return []
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise Pm2Error(f"Unparseable pm2 jlist output: {exc}") from exc
        if not isinstance(payload, list):
            return []
        return [item for item in payload if isinstance(item, dict)]

    def process_status(self, name: str) -> str | None:
        """Return the pm2 status of *name* (``online``, ``stopped``...) or ``None``."""
        for entry in self.jlist():
            if entry.get("name") != name:
                continue
            env = entry.get("pm2_env")
            if isinstance(env, Mapping):
                status = env.get("status")
                if isinstance(status, str):
                    return status
            return "unknown"
        return None

    # ------------------------------------------------------------------
    def _run_pm2(
        self,
        args: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
    ) -> subprocess.CompletedProcess[str]:
        return run_command(
            [self.pm2_bin, *args],
            error=Pm2Error,
            error_prefix=f"{self.pm2_bin} {args[0]}",
            env=env,
            timeout=self.timeout,
        )


__all__ = ["Pm2Error", "Pm2Provider"]
