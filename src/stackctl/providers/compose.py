"""Docker Compose provider for the containerized strategy."""
from __future__ import annotations

import json
import subprocess
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .process import run_command


class ComposeError(RuntimeError):
    """Raised when docker or docker compose operations fail."""


@dataclass(frozen=True, slots=True)
class ContainerStatus:
    """State of one compose service as reported by ``docker compose ps``."""

    service: str
    state: str
    health: str = ""

    @property
    def running(self) -> bool:
        return self.state == "running"

    @property
    def healthy(self) -> bool | None:
        if not self.health:
            return None
        return self.health == "healthy"


@dataclass(slots=True)
class ComposeProvider:
    """Drive ``docker compose`` for one project."""

    project: str
    compose_file: Path
    docker_bin: str = "docker"
    elevate: tuple[str, ...] = ()
    timeout: float = 600.0

    def up(self, services: Iterable[str] = ()) -> subprocess.CompletedProcess[str]:
        """Create and start *services* (all when empty) in the background."""
        return self._compose(["up", "-d", "--remove-orphans", *services])

    def stop(self, services: Iterable[str] = ()) -> subprocess.CompletedProcess[str]:
        """Stop *services* (all when empty)."""
        return self._compose(["stop", *services])

    def restart(self, services: Iterable[str] = ()) -> subprocess.CompletedProcess[str]:
        """Restart *services* (all when empty)."""
        return self._compose(["restart", *services])

    def recreate(self, services: Iterable[str]) -> subprocess.CompletedProcess[str]:
        """Recreate *services* so new images and env files take effect."""
        return self._compose(["up", "-d", "--no-deps", "--force-recreate", *services])

    def ps(self) -> dict[str, ContainerStatus]:
        """Return the status of every service container, keyed by service name."""
        result = self._compose(["ps", "--all", "--format", "json"])
        statuses: dict[str, ContainerStatus] = {}
        for entry in _parse_ps_output(result.stdout or ""):
            service = str(entry.get("Service") or entry.get("Name") or "")
            if not service:
                continue
            statuses[service] = ContainerStatus(
                service=service,
                state=str(entry.get("State") or "").lower(),
                health=str(entry.get("Health") or "").lower(),
            )
        return statuses

    def validate(self, candidate: Path | None = None) -> subprocess.CompletedProcess[str]:
        """Run ``docker compose config --quiet`` against *candidate* or the active file."""
        return self._compose(["config", "--quiet"], compose_file=candidate)

    def exec(
        self,
        service: str,
        args: Sequence[str],
        *,
        input_text: str | None = None,
        stdout: Any = None,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run *args* inside the running *service* container."""
        return self._compose(
            ["exec", "-T", service, *args],
            input_text=input_text,
            stdout=stdout,
            timeout=timeout,
        )

    def run_once(
        self,
        service: str,
        args: Sequence[str],
        *,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run *args* in a throw-away *service* container without its dependencies."""
        return self._compose(["run", "--rm", "--no-deps", "-T", service, *args], timeout=timeout)

    def logs(self, service: str, *, tail: int = 100) -> str:
        """Return the last *tail* log lines of *service*."""
        result = self._compose(["logs", "--no-color", "--tail", str(tail), service])
        return result.stdout or ""

    def build(self, context_dir: Path, tag: str) -> subprocess.CompletedProcess[str]:
        """Build an image from *context_dir* tagged *tag*."""
        return self._docker(["build", "-t", tag, str(context_dir)])

    def tag(self, source: str, target: str) -> subprocess.CompletedProcess[str]:
        """Point image tag *target* at *source*."""
        return self._docker(["tag", source, target])

    def test_proxy_config(
        self,
        image: str,
        site: Path,
        *,
        mounts: Iterable[str] = (),
        hosts: Iterable[str] = (),
    ) -> subprocess.CompletedProcess[str]:
        """Run ``nginx -t`` on *site* in a throw-away proxy container."""
        args = ["run", "--rm", "-v", f"{Path(site).resolve()}:/etc/nginx/conf.d/default.conf:ro"]
        for mount in mounts:
            args.extend(["-v", mount])
        for host in hosts:
            args.extend(["--add-host", f"{host}:127.0.0.1"])
        args.extend([image, "nginx", "-t", "-q"])
        return self._docker(args)

    def reload_proxy(self, service: str = "nginx") -> subprocess.CompletedProcess[str]:
        """Reload nginx inside its container."""
        return self.exec(service, ["nginx", "-s", "reload"])

    # ------------------------------------------------------------------
    def _compose(
        self,
        args: Sequence[str],
        *,
        compose_file: Path | None = None,
        input_text: str | None = None,
        stdout: Any = None,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        target = compose_file or self.compose_file
        command = [
            *self.elevate,
            self.docker_bin,
            "compose",
            "-p",
            self.project,
            "-f",
            str(target),
            *args,
        ]
        return run_command(
            command,
            error=ComposeError,
            error_prefix=f"{self.docker_bin} compose {args[0]}",
            input_text=input_text,
            stdout=stdout,
            timeout=timeout or self.timeout,
        )

    def _docker(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        return run_command(
            [*self.elevate, self.docker_bin, *args],
            error=ComposeError,
            error_prefix=f"{self.docker_bin} {args[0]}",
            timeout=self.timeout,
        )


def _parse_ps_output(text: str) -> list[dict[str, object]]:
    """Accept both the JSON array and the one-object-per-line formats."""
    stripped = text.strip()
    if not stripped:
        return []
    try:
        payload = json.loads(stripped)
    except json.JSONDecodeError:
        entries: list[dict[str, object]] = []
        for line in stripped.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                item = json.loads(line)
            except json.JSONDecodeError as exc:
                raise ComposeError(f"Unparseable docker compose ps output: {exc}") from exc
            if isinstance(item, dict):
                entries.append(item)
        return entries
    if isinstance(payload, dict):
        return [payload]
    if isinstance(payload, list):
        return [item for item in payload if isinstance(item, dict)]
    return []


__all__ = ["ComposeError", "ComposeProvider", "ContainerStatus"]
