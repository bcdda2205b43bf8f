"""Host preflight checks executed before any mutation.

Every check runs and every finding is collected, so the operator receives
the full remediation list in a single pass instead of fixing one problem per
attempt.
"""
from __future__ import annotations

import os
import shutil
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .config import PreflightConfig, ToolsConfig
from .models import DeploymentStrategy

OS_RELEASE = Path("/etc/os-release")
MEMINFO = Path("/proc/meminfo")


class FindingSeverity(str, Enum):
    """Severity attached to a preflight finding."""

    OK = "ok"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class PreflightFinding:
    """Outcome of a single preflight check."""

    check: str
    severity: FindingSeverity
    message: str
    remediation: str | None = None

    def describe(self) -> str:
        """Return the message with its remediation hint appended."""
        if self.remediation:
            return f"{self.message} ({self.remediation})"
        return self.message

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "check": self.check,
            "severity": self.severity.value,
            "message": self.message,
            "remediation": self.remediation,
        }


@dataclass
class PreflightReport:
    """All findings from a preflight run."""

    strategy: DeploymentStrategy
    findings: list[PreflightFinding] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not any(item.severity is FindingSeverity.ERROR for item in self.findings)

    @property
    def failures(self) -> list[str]:
        return [
            f"{item.check}: {item.describe()}"
            for item in self.findings
            if item.severity is FindingSeverity.ERROR
        ]

    @property
    def warnings(self) -> list[str]:
        return [
            f"{item.check}: {item.describe()}"
            for item in self.findings
            if item.severity is FindingSeverity.WARNING
        ]

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "strategy": self.strategy.value,
            "ok": self.ok,
            "findings": [item.to_dict() for item in self.findings],
        }


@dataclass(frozen=True)
class HostInfo:
    """Facts about the host gathered before validation."""

    euid: int
    sudo_available: bool
    os_id: str | None
    os_like: tuple[str, ...] = ()
    memory_mb: int | None = None
    disk_free_mb: int | None = None
    binaries: Mapping[str, bool] = field(default_factory=dict)


def required_binaries(strategy: DeploymentStrategy, tools: ToolsConfig) -> tuple[str, ...]:
    """Return the external tools a strategy depends on."""
    if strategy is DeploymentStrategy.CONTAINERIZED:
        return (tools.docker_bin,)
    if strategy is DeploymentStrategy.NATIVE:
        return (
            "nginx",
            tools.node_bin,
            tools.pm2_bin,
            tools.psql_bin,
            tools.pg_dump_bin,
            "systemctl",
        )
    return (tools.node_bin, tools.pm2_bin)


def collect_host_info(
    state_dir: Path,
    binaries: Iterable[str] = (),
    *,
    sudo_bin: str = "sudo",
    os_release: Path = OS_RELEASE,
    meminfo: Path = MEMINFO,
) -> HostInfo:
    """Gather :class:`HostInfo` from the running system."""
    os_id, os_like = _read_os_release(os_release)
    return HostInfo(
        euid=os.geteuid(),
        sudo_available=shutil.which(sudo_bin) is not None,
        os_id=os_id,
        os_like=os_like,
        memory_mb=_read_memory_mb(meminfo),
        disk_free_mb=_free_disk_mb(state_dir),
        binaries={name: shutil.which(name) is not None for name in binaries},
    )


class PreflightValidator:
    """Evaluate :class:`HostInfo` against the configured requirements."""

    def __init__(self, settings: PreflightConfig) -> None:
        self.settings = settings

    def validate(self, host: HostInfo, strategy: DeploymentStrategy) -> PreflightReport:
        """Run every check and return the collected findings."""
        report = PreflightReport(strategy=strategy)
        report.findings.append(self._check_privilege(host))
        report.findings.append(self._check_elevation(host, strategy))
        report.findings.append(self._check_os(host))
        report.findings.append(self._check_memory(host))
        report.findings.append(self._check_disk(host))
        report.findings.extend(self._check_binaries(host))
        return report

    def _check_privilege(self, host: HostInfo) -> PreflightFinding:
        if host.euid == 0:
            return PreflightFinding(
                "privilege",
                FindingSeverity.ERROR,
                "Running as root is not allowed.",
                "run as a regular user with sudo rights; privileged steps elevate explicitly",
            )
        return PreflightFinding("privilege", FindingSeverity.OK, "Running as an unprivileged user.")

    def _check_elevation(self, host: HostInfo, strategy: DeploymentStrategy) -> PreflightFinding:
        if host.sudo_available:
            return PreflightFinding("elevation", FindingSeverity.OK, "sudo is available.")
        severity = (
            FindingSeverity.WARNING
            if strategy is DeploymentStrategy.QUICK_DEV
            else FindingSeverity.ERROR
        )
        return PreflightFinding(
            "elevation",
            severity,
            "sudo is not installed.",
            "install sudo and grant the deploying user access",
        )

    def _check_os(self, host: HostInfo) -> PreflightFinding:
        if host.os_id is None:
            return PreflightFinding(
                "os-family",
                FindingSeverity.WARNING,
                "Could not identify the operating system (no /etc/os-release).",
            )
        families = {host.os_id, *host.os_like}
        if families & set(self.settings.supported_os):
            return PreflightFinding(
                "os-family", FindingSeverity.OK, f"Operating system '{host.os_id}' is supported."
            )
        supported = ", ".join(self.settings.supported_os)
        return PreflightFinding(
            "os-family",
            FindingSeverity.WARNING,
            f"Operating system '{host.os_id}' is untested (supported: {supported}).",
        )

    def _check_memory(self, host: HostInfo) -> PreflightFinding:
        return _threshold_finding(
            "memory",
            host.memory_mb,
            floor=self.settings.min_memory_mb,
            recommended=self.settings.recommended_memory_mb,
            unit_label="memory",
            remediation="add memory or swap",
        )

    def _check_disk(self, host: HostInfo) -> PreflightFinding:
        return _threshold_finding(
            "disk",
            host.disk_free_mb,
            floor=self.settings.min_disk_mb,
            recommended=self.settings.recommended_disk_mb,
            unit_label="free disk space",
            remediation="free space on the state volume",
        )

    def _check_binaries(self, host: HostInfo) -> list[PreflightFinding]:
        findings: list[PreflightFinding] = []
        for name, present in sorted(host.binaries.items()):
            if present:
                continue
            findings.append(
                PreflightFinding(
                    "binaries",
                    FindingSeverity.WARNING,
                    f"Required tool '{name}' was not found on PATH.",
                    f"install {name} before starting services",
                )
            )
        return findings


def _threshold_finding(
    check: str,
    value_mb: int | None,
    *,
    floor: int,
    recommended: int,
    unit_label: str,
    remediation: str,
) -> PreflightFinding:
    if value_mb is None:
        return PreflightFinding(check, FindingSeverity.WARNING, f"Could not determine {unit_label}.")
    if value_mb < floor:
        return PreflightFinding(
            check,
            FindingSeverity.ERROR,
            f"Only {value_mb}MB of {unit_label}; at least {floor}MB is required.",
            remediation,
        )
    if value_mb < recommended:
        return PreflightFinding(
            check,
            FindingSeverity.WARNING,
            f"{value_mb}MB of {unit_label} is below the recommended {recommended}MB.",
        )
    return PreflightFinding(check, FindingSeverity.OK, f"{value_mb}MB of {unit_label} available.")


def _read_os_release(path: Path) -> tuple[str | None, tuple[str, ...]]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError:
        return None, ()
    values: dict[str, str] = {}
    for line in text.splitlines():
        key, sep, value = line.partition("=")
        if sep:
            values[key.strip()] = value.strip().strip('"').strip("'")
    os_id = values.get("ID")
    like = tuple(item.lower() for item in values.get("ID_LIKE", "").split() if item)
    return (os_id.lower() if os_id else None), like


def _read_memory_mb(path: Path) -> int | None:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError:
        return None
    for line in text.splitlines():
        if line.startswith("MemTotal:"):
            parts = line.split()
            if len(parts) >= 2 and parts[1].isdigit():
                return int(parts[1]) // 1024
    return None


def _free_disk_mb(path: Path) -> int | None:
    candidate = Path(path)
    while not candidate.exists() and candidate != candidate.parent:
        candidate = candidate.parent
    try:
        usage = shutil.disk_usage(candidate)
    except OSError:
        return None
    return usage.free // (1024 * 1024)


__all__ = [
    "FindingSeverity",
    "HostInfo",
    "PreflightFinding",
    "PreflightReport",
    "PreflightValidator",
    "collect_host_info",
    "required_binaries",
]
