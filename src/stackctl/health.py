"""Health probes, the crash-loop guard and the recurring health monitor.

Probes never take the run lock. The monitor's only mutating action is to
restart a service that is already failing, and it does that through the
lifecycle controller under the exclusive lock with a short timeout: when a
deploy holds the lock the restart is skipped for this cycle instead of
fighting the deploy.
"""
from __future__ import annotations

import logging
import shutil
import socket
import subprocess
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

import requests

from .adapters import ADAPTER_ERRORS
from .config import HealthConfig
from .errors import PersistentFailure, StackError, TransientProbeFailure
from .locking import LockTimeoutError
from .models import HealthCheck, ServiceSpec, ServiceState
from .state import StateRegistry, StateRegistryError

if TYPE_CHECKING:
    from .lifecycle import ServiceLifecycleController

LOGGER = logging.getLogger(__name__)

GUARD_STATE = "health.yml"
MEMINFO = Path("/proc/meminfo")


class HealthProber:
    """Run a service's health check with bounded retries."""

    def __init__(self, *, retries: int = 2, retry_delay: float = 1.0) -> None:
        self.retries = max(0, retries)
        self.retry_delay = retry_delay

    def probe_once(self, check: HealthCheck) -> None:
        """Run *check* once; raise :class:`TransientProbeFailure` on any miss."""
        if check.kind == "url":
            self._probe_url(str(check.target), check.timeout)
        elif check.kind == "command":
            self._probe_command(tuple(check.target), check.timeout)
        elif check.kind == "tcp":
            self._probe_tcp(str(check.target), check.timeout)
        else:
            raise TransientProbeFailure(f"Unsupported health check kind {check.kind!r}.")

    def check(self, spec: ServiceSpec) -> bool:
        """Return ``True`` once a probe of *spec* passes within the retry budget."""
        attempts = self.retries + 1
        for attempt in range(1, attempts + 1):
            try:
                self.probe_once(spec.health_check)
                return True
            except TransientProbeFailure as exc:
                LOGGER.debug(
                    "Probe %d/%d for %s failed: %s", attempt, attempts, spec.name, exc.message
                )
                if attempt < attempts and self.retry_delay > 0:
                    time.sleep(self.retry_delay)
        return False

    # ------------------------------------------------------------------
    def _probe_url(self, url: str, timeout: float) -> None:
        try:
            response = requests.get(url, timeout=timeout)
        except requests.exceptions.RequestException as exc:
            raise TransientProbeFailure(f"{url} unreachable: {exc}", check="url") from exc
        if response.status_code >= 400:
            raise TransientProbeFailure(f"{url} answered {response.status_code}", check="url")

    def _probe_command(self, argv: tuple[str, ...], timeout: float) -> None:
        try:
            result = subprocess.run(  # noqa: S603
                list(argv),
                capture_output=True,
                text=True,
                check=False,
                timeout=timeout,
            )
        except FileNotFoundError as exc:
            raise TransientProbeFailure(f"{argv[0]} not found", check="command") from exc
        except subprocess.TimeoutExpired as exc:
            raise TransientProbeFailure(
                f"{argv[0]} timed out after {timeout}s", check="command"
            ) from exc
        if result.returncode != 0:
            raise TransientProbeFailure(
                f"{argv[0]} exited {result.returncode}", check="command"
            )

    def _probe_tcp(self, target: str, timeout: float) -> None:
        host, _, port = target.rpartition(":")
        try:
            with socket.create_connection((host, int(port)), timeout=timeout):
                return
        except OSError as exc:
            raise TransientProbeFailure(f"{target} refused: {exc}", check="tcp") from exc


class CrashLoopGuard:
    """Allow at most ``max_restarts`` restarts per service in a rolling window.

    Restart times are wall-clock seconds. With a registry the history is
    persisted so separate ``stackctl monitor`` invocations share one budget.
    """

    def __init__(
        self,
        max_restarts: int,
        window: float,
        *,
        clock: Callable[[], float] = time.time,
        registry: StateRegistry | None = None,
    ) -> None:
        self.max_restarts = max_restarts
        self.window = window
        self.clock = clock
        self.registry = registry
        self._history: dict[str, list[float]] = self._load()

    def restarts(self, service: str) -> int:
        """Return how many restarts of *service* fall inside the window."""
        return len(self._recent(service))

    def allow(self, service: str) -> bool:
        """Return whether another restart of *service* is permitted now."""
        return self.restarts(service) < self.max_restarts

    def record(self, service: str) -> None:
        """Record a restart of *service* at the current time."""
        history = self._recent(service)
        history.append(self.clock())
        self._history[service] = history
        self._save()

    def _recent(self, service: str) -> list[float]:
        cutoff = self.clock() - self.window
        return [stamp for stamp in self._history.get(service, []) if stamp > cutoff]

    def _load(self) -> dict[str, list[float]]:
        if self.registry is None:
            return {}
        try:
            payload = self.registry.read(GUARD_STATE, default={})
        except StateRegistryError as exc:
            LOGGER.warning("Ignoring unreadable restart history: %s", exc)
            return {}
        restarts = payload.get("restarts") if isinstance(payload, Mapping) else None
        if not isinstance(restarts, Mapping):
            return {}
        history: dict[str, list[float]] = {}
        for name, stamps in restarts.items():
            if isinstance(stamps, list):
                history[str(name)] = [float(item) for item in stamps if isinstance(item, (int, float))]
        return history

    def _save(self) -> None:
        if self.registry is None:
            return
        cutoff = self.clock() - self.window
        payload = {
            "restarts": {
                name: [stamp for stamp in stamps if stamp > cutoff]
                for name, stamps in sorted(self._history.items())
            }
        }
        try:
            self.registry.write(GUARD_STATE, payload)
        except StateRegistryError as exc:
            LOGGER.warning("Could not persist restart history: %s", exc)


@dataclass
class HealthReport:
    """Outcome of one monitor cycle."""

    checked_at: str
    services: dict[str, ServiceState] = field(default_factory=dict)
    restarted: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    held: list[str] = field(default_factory=list)
    failures: list[PersistentFailure] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    disk_percent: float | None = None
    memory_percent: float | None = None
    error_lines: int = 0

    @property
    def healthy(self) -> bool:
        return not self.failures and not self.warnings and all(
            state is ServiceState.RUNNING
            for name, state in self.services.items()
            if name not in self.held
        )

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "checked_at": self.checked_at,
            "healthy": self.healthy,
            "services": {name: state.value for name, state in self.services.items()},
            "restarted": list(self.restarted),
            "skipped": list(self.skipped),
            "held": list(self.held),
            "failures": [failure.to_dict() for failure in self.failures],
            "warnings": list(self.warnings),
            "disk_percent": self.disk_percent,
            "memory_percent": self.memory_percent,
            "error_lines": self.error_lines,
        }


def disk_usage_percent(path: Path) -> float | None:
    """Return the used percentage of the filesystem holding *path*."""
    candidate = Path(path)
    while not candidate.exists() and candidate != candidate.parent:
        candidate = candidate.parent
    try:
        usage = shutil.disk_usage(candidate)
    except OSError:
        return None
    if usage.total <= 0:
        return None
    return round(usage.used * 100 / usage.total, 1)


def memory_usage_percent(meminfo: Path = MEMINFO) -> float | None:
    """Return used memory percentage computed from MemTotal and MemAvailable."""
    try:
        text = meminfo.read_text(encoding="utf-8")
    except OSError:
        return None
    values: dict[str, int] = {}
    for line in text.splitlines():
        key, _, rest = line.partition(":")
        parts = rest.split()
        if parts and parts[0].isdigit():
            values[key.strip()] = int(parts[0])
    total = values.get("MemTotal")
    available = values.get("MemAvailable")
    if not total or available is None:
        return None
    return round((total - available) * 100 / total, 1)


class HealthMonitor:
    """Probe every service, restart failures within budget and sample the host."""

    def __init__(
        self,
        controller: ServiceLifecycleController,
        settings: HealthConfig,
        *,
        guard: CrashLoopGuard | None = None,
        disk_path: Path = Path("/"),
        meminfo: Path = MEMINFO,
    ) -> None:
        self.controller = controller
        self.settings = settings
        self.guard = guard or CrashLoopGuard(settings.max_restarts, settings.restart_window)
        self.disk_path = disk_path
        self.meminfo = meminfo

    def run_once(self, services: Iterable[ServiceSpec] | None = None) -> HealthReport:
        """Run one monitoring cycle and return its report."""
        report = HealthReport(checked_at=datetime.now(tz=UTC).isoformat(timespec="seconds"))
        held = self._held_down()
        for spec in services or self.controller.services:
            state = self.controller.service_state(spec)
            report.services[spec.name] = state
            if state is ServiceState.RUNNING:
                continue
            if spec.name in held:
                report.held.append(spec.name)
                LOGGER.info("%s was stopped by an operator; leaving it down.", spec.name)
                continue
            if state is ServiceState.UNKNOWN:
                # The process manager could not be queried; restarting blind
                # could start a second copy.
                report.warnings.append(f"State of {spec.name} is unknown; not restarting it.")
                continue
            self._recover(spec, report)
        self._sample_host(report)
        self._scan_errors(report)
        for warning in report.warnings:
            LOGGER.warning("%s", warning)
        return report

    def _held_down(self) -> set[str]:
        try:
            return self.controller.held_down()
        except StateRegistryError as exc:
            LOGGER.warning("Ignoring unreadable operator stop marks: %s", exc)
            return set()

    def _recover(self, spec: ServiceSpec, report: HealthReport) -> None:
        if not self.guard.allow(spec.name):
            failure = PersistentFailure(spec.name, restarts=self.guard.restarts(spec.name))
            LOGGER.error("%s", failure.message)
            report.failures.append(failure)
            return
        try:
            self.controller.restart(
                [spec.name],
                lock_timeout=self.settings.restart_lock_timeout,
                operation="health-restart",
            )
        except LockTimeoutError:
            report.skipped.append(spec.name)
            report.warnings.append(
                f"{spec.name} is unhealthy but the run lock is held (deploy in progress); "
                "restart deferred to the next cycle."
            )
            return
        except (StackError, *ADAPTER_ERRORS) as exc:
            self.guard.record(spec.name)
            report.warnings.append(f"Restart of {spec.name} failed: {exc}")
            return
        self.guard.record(spec.name)
        report.restarted.append(spec.name)
        LOGGER.warning(
            "Restarted %s (%d/%d in window)",
            spec.name,
            self.guard.restarts(spec.name),
            self.guard.max_restarts,
        )

    def _sample_host(self, report: HealthReport) -> None:
        report.disk_percent = disk_usage_percent(self.disk_path)
        if report.disk_percent is not None and report.disk_percent >= self.settings.disk_warn_percent:
            report.warnings.append(
                f"Disk usage {report.disk_percent}% is above {self.settings.disk_warn_percent}%."
            )
        report.memory_percent = memory_usage_percent(self.meminfo)
        if (
            report.memory_percent is not None
            and report.memory_percent >= self.settings.memory_warn_percent
        ):
            report.warnings.append(
                f"Memory usage {report.memory_percent}% is above "
                f"{self.settings.memory_warn_percent}%."
            )

    def _scan_errors(self, report: HealthReport) -> None:
        try:
            lines = self.controller.adapter.error_log_tail(self.settings.error_log_lines)
        except ADAPTER_ERRORS as exc:
            LOGGER.debug("Error log unavailable: %s", exc)
            return
        report.error_lines = len(lines)
        if report.error_lines > self.settings.error_threshold:
            report.warnings.append(
                f"{report.error_lines} error line(s) in the last "
                f"{self.settings.error_log_lines} log lines."
            )


__all__ = [
    "CrashLoopGuard",
    "HealthMonitor",
    "HealthProber",
    "HealthReport",
    "disk_usage_percent",
    "memory_usage_percent",
]
