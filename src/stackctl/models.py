"""Core data records shared across stackctl components."""
from __future__ import annotations

import hashlib
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path


class DeploymentStrategy(str, Enum):
    """How the three services are run on the host."""

    CONTAINERIZED = "containerized"
    NATIVE = "native"
    QUICK_DEV = "quick-dev"

    @classmethod
    def parse(cls, value: str | DeploymentStrategy) -> DeploymentStrategy:
        """Return the strategy named by *value* (raises ``ValueError``)."""
        if isinstance(value, DeploymentStrategy):
            return value
        normalised = str(value).strip().lower().replace("_", "-")
        aliases = {"docker": "containerized", "traditional": "native", "quick": "quick-dev"}
        normalised = aliases.get(normalised, normalised)
        for member in cls:
            if member.value == normalised:
                return member
        allowed = ", ".join(member.value for member in cls)
        raise ValueError(f"Unknown deployment strategy '{value}'. Choose one of: {allowed}.")


class ServiceRole(str, Enum):
    """Role a service plays in the stack."""

    PROXY = "proxy"
    APP = "app"
    DATABASE = "database"


class ServiceState(str, Enum):
    """Observed state of a service."""

    RUNNING = "running"
    STOPPED = "stopped"
    DEGRADED = "degraded"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class HealthCheck:
    """Probe definition attached to a service."""

    kind: str
    target: str | tuple[str, ...]
    timeout: float = 5.0

    @classmethod
    def url(cls, url: str, *, timeout: float = 5.0) -> HealthCheck:
        return cls(kind="url", target=url, timeout=timeout)

    @classmethod
    def command(cls, argv: Iterable[str], *, timeout: float = 5.0) -> HealthCheck:
        return cls(kind="command", target=tuple(argv), timeout=timeout)

    @classmethod
    def tcp(cls, host: str, port: int, *, timeout: float = 5.0) -> HealthCheck:
        return cls(kind="tcp", target=f"{host}:{port}", timeout=timeout)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        target = list(self.target) if isinstance(self.target, tuple) else self.target
        return {"kind": self.kind, "target": target, "timeout": self.timeout}


@dataclass(frozen=True)
class RestartPolicy:
    """Supervisor restart behaviour for a service."""

    mode: str = "always"
    max_restarts: int = 10
    backoff_ms: int = 5000
    min_uptime_s: int = 10

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "mode": self.mode,
            "max_restarts": self.max_restarts,
            "backoff_ms": self.backoff_ms,
            "min_uptime_s": self.min_uptime_s,
        }


@dataclass(frozen=True)
class ResourceLimits:
    """Memory ceiling and replica count."""

    memory: str = "1G"
    replicas: str = "1"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"memory": self.memory, "replicas": self.replicas}


@dataclass(frozen=True)
class ServiceSpec:
    """Declarative description of one service in the stack."""

    name: str
    role: ServiceRole
    port: int
    health_check: HealthCheck
    restart_policy: RestartPolicy = RestartPolicy()
    limits: ResourceLimits = ResourceLimits()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "role": self.role.value,
            "port": self.port,
            "health_check": self.health_check.to_dict(),
            "restart_policy": self.restart_policy.to_dict(),
            "limits": self.limits.to_dict(),
        }


@dataclass(frozen=True)
class Artifact:
    """A single generated configuration file."""

    path: str
    content: str
    mode: int = 0o644
    role: ServiceRole | None = None
    secret: bool = False

    @property
    def sha256(self) -> str:
        """Return the checksum of the artifact content."""
        return hashlib.sha256(self.content.encode("utf-8")).hexdigest()

    def to_dict(self) -> dict[str, object]:
        """Return metadata only; content is never serialised here."""
        return {
            "path": self.path,
            "mode": f"{self.mode:04o}",
            "role": self.role.value if self.role else None,
            "secret": self.secret,
            "sha256": self.sha256,
        }


def bundle_checksum(artifacts: Iterable[Artifact]) -> str:
    """Return a stable checksum over artifact paths, modes and contents."""
    digest = hashlib.sha256()
    for artifact in sorted(artifacts, key=lambda item: item.path):
        digest.update(artifact.path.encode("utf-8"))
        digest.update(b"\0")
        digest.update(f"{artifact.mode:04o}".encode("ascii"))
        digest.update(b"\0")
        digest.update(artifact.content.encode("utf-8"))
        digest.update(b"\0")
    return digest.hexdigest()


@dataclass(frozen=True)
class ArtifactBundle:
    """The full set of artifacts rendered for one strategy."""

    strategy: DeploymentStrategy
    artifacts: tuple[Artifact, ...]
    checksum: str
    tls_ready: bool = False
    warnings: tuple[str, ...] = ()
    generated_at: str = ""

    @property
    def paths(self) -> list[str]:
        return [artifact.path for artifact in self.artifacts]

    def get(self, path: str) -> Artifact:
        """Return the artifact stored at *path* (raises ``KeyError``)."""
        for artifact in self.artifacts:
            if artifact.path == path:
                return artifact
        raise KeyError(path)

    def find(self, prefix: str) -> list[Artifact]:
        """Return artifacts whose path starts with *prefix*."""
        return [artifact for artifact in self.artifacts if artifact.path.startswith(prefix)]

    def checksums(self) -> dict[str, str]:
        """Return a mapping of artifact path to content checksum."""
        return {artifact.path: artifact.sha256 for artifact in self.artifacts}

    def roles_changed(self, previous: Mapping[str, str] | None) -> set[ServiceRole]:
        """Return roles affected by differences against *previous* checksums.

        Artifacts without a role (shared manifests) affect every role.
        """
        previous = dict(previous or {})
        roles: set[ServiceRole] = set()
        current = self.checksums()
        for artifact in self.artifacts:
            if previous.get(artifact.path) == current[artifact.path]:
                continue
            if artifact.role is None:
                return set(ServiceRole)
            roles.add(artifact.role)
        return roles

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation without artifact contents."""
        return {
            "strategy": self.strategy.value,
            "checksum": self.checksum,
            "tls_ready": self.tls_ready,
            "warnings": list(self.warnings),
            "generated_at": self.generated_at,
            "artifacts": [artifact.to_dict() for artifact in self.artifacts],
        }


@dataclass(frozen=True)
class Credential:
    """A generated secret and the services that consume it."""

    name: str
    value: str = field(repr=False)
    created_at: str
    consumers: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return metadata only; the value never leaves the credential store."""
        return {
            "name": self.name,
            "created_at": self.created_at,
            "consumers": list(self.consumers),
        }


@dataclass(frozen=True)
class CertificateRecord:
    """Validity window and material locations for the public certificate."""

    domain: str
    issued_at: datetime
    expires_at: datetime
    cert_path: Path
    key_path: Path

    @property
    def lifetime(self) -> timedelta:
        return self.expires_at - self.issued_at

    def remaining(self, now: datetime) -> timedelta:
        """Return the time left before expiry (negative once expired)."""
        return self.expires_at - now

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def in_renewal_window(self, now: datetime, fraction: float) -> bool:
        """Return ``True`` once less than *fraction* of the lifetime remains."""
        lifetime = self.lifetime.total_seconds()
        if lifetime <= 0:
            return True
        return self.remaining(now).total_seconds() <= lifetime * fraction

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "domain": self.domain,
            "issued_at": self.issued_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "cert_path": str(self.cert_path),
            "key_path": str(self.key_path),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> CertificateRecord:
        """Rebuild a record produced by :meth:`to_dict`."""
        return cls(
            domain=str(data["domain"]),
            issued_at=datetime.fromisoformat(str(data["issued_at"])),
            expires_at=datetime.fromisoformat(str(data["expires_at"])),
            cert_path=Path(str(data["cert_path"])),
            key_path=Path(str(data["key_path"])),
        )


@dataclass(frozen=True)
class BackupRecord:
    """A completed (or removed) backup."""

    id: str
    timestamp: datetime
    database_dump: Path
    archive: Path
    size_bytes: int
    checksum: str
    status: str = "available"

    def age(self, now: datetime) -> timedelta:
        return now - self.timestamp

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "database_dump": str(self.database_dump),
            "archive": str(self.archive),
            "size_bytes": self.size_bytes,
            "checksum": self.checksum,
            "status": self.status,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> BackupRecord:
        """Rebuild a record produced by :meth:`to_dict`."""
        size = data.get("size_bytes", 0)
        return cls(
            id=str(data["id"]),
            timestamp=datetime.fromisoformat(str(data["timestamp"])),
            database_dump=Path(str(data["database_dump"])),
            archive=Path(str(data["archive"])),
            size_bytes=int(size) if isinstance(size, (int, str)) else 0,
            checksum=str(data.get("checksum", "")),
            status=str(data.get("status", "available")),
        )


__all__ = [
    "Artifact",
    "ArtifactBundle",
    "BackupRecord",
    "CertificateRecord",
    "Credential",
    "DeploymentStrategy",
    "HealthCheck",
    "ResourceLimits",
    "RestartPolicy",
    "ServiceRole",
    "ServiceSpec",
    "ServiceState",
    "bundle_checksum",
]
