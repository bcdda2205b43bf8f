"""Helpers for interacting with the stackctl state registry.

The registry directory (``/var/lib/stackctl/registry`` by default) stores YAML
documents, most importantly ``provisioning.yml`` which records the chosen
deployment strategy, the names of provisioned credentials, the checksums of
the active artifacts, the last deploy and the current certificate. Writes are
atomic (temp file in the same directory, then ``os.replace``) so a crash never
leaves a half-written record behind.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Callable, Mapping
from copy import deepcopy
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from ..locking import LockManager
from ..models import CertificateRecord, DeploymentStrategy

PROVISIONING_FILE = "provisioning.yml"
SCHEMA_VERSION = 1
UPDATE_LOCK_FILENAME = ".provisioning.lock"
UPDATE_LOCK_TIMEOUT = 10.0


class StateRegistryError(RuntimeError):
    """Raised when state registry operations fail."""


@dataclass
class ProvisioningState:
    """Durable record of what has been provisioned on this host."""

    strategy: DeploymentStrategy
    provisioned_at: str
    updated_at: str
    credentials: list[str] = field(default_factory=list)
    bundle_checksum: str | None = None
    artifact_checksums: dict[str, str] = field(default_factory=dict)
    release: str | None = None
    last_deploy: dict[str, object] | None = None
    certificate: CertificateRecord | None = None
    reload_pending: bool = False
    schema_version: int = SCHEMA_VERSION

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "schema_version": self.schema_version,
            "strategy": self.strategy.value,
            "provisioned_at": self.provisioned_at,
            "updated_at": self.updated_at,
            "credentials": sorted(self.credentials),
            "bundle_checksum": self.bundle_checksum,
            "artifact_checksums": dict(sorted(self.artifact_checksums.items())),
            "release": self.release,
            "last_deploy": dict(self.last_deploy) if self.last_deploy else None,
            "certificate": self.certificate.to_dict() if self.certificate else None,
            "reload_pending": self.reload_pending,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> ProvisioningState:
        """Rebuild a state record, rejecting unknown schema versions."""
        version = data.get("schema_version", SCHEMA_VERSION)
        if version != SCHEMA_VERSION:
            raise StateRegistryError(
                f"Unsupported provisioning schema version {version!r} "
                f"(expected {SCHEMA_VERSION})."
            )
        try:
            strategy = DeploymentStrategy.parse(str(data["strategy"]))
        except (KeyError, ValueError) as exc:
            raise StateRegistryError(f"Provisioning record has an invalid strategy: {exc}") from exc

        credentials_raw = data.get("credentials") or []
        checksums_raw = data.get("artifact_checksums") or {}
        last_deploy_raw = data.get("last_deploy")
        certificate_raw = data.get("certificate")
        if not isinstance(credentials_raw, list) or not isinstance(checksums_raw, Mapping):
            raise StateRegistryError("Provisioning record is malformed.")

        certificate = None
        if isinstance(certificate_raw, Mapping):
            try:
                certificate = CertificateRecord.from_dict(certificate_raw)
            except (KeyError, ValueError) as exc:
                raise StateRegistryError(f"Invalid certificate record: {exc}") from exc

        release = data.get("release")
        bundle_checksum = data.get("bundle_checksum")
        return cls(
            strategy=strategy,
            provisioned_at=str(data.get("provisioned_at", "")),
            updated_at=str(data.get("updated_at", "")),
            credentials=[str(name) for name in credentials_raw],
            bundle_checksum=str(bundle_checksum) if bundle_checksum else None,
            artifact_checksums={str(key): str(value) for key, value in checksums_raw.items()},
            release=str(release) if release else None,
            last_deploy=dict(last_deploy_raw) if isinstance(last_deploy_raw, Mapping) else None,
            certificate=certificate,
            reload_pending=bool(data.get("reload_pending", False)),
        )


@dataclass(frozen=True)
class StateRegistry:
    """High-level interface to the YAML registry."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", Path(self.root).expanduser())

    def ensure_root(self) -> None:
        """Create the registry directory if it does not yet exist."""
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, name: str) -> Path:
        """Return the filesystem path for a named registry file."""
        return self.root / name

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Read a registry file, returning *default* when missing."""
        path = self.path_for(name)
        if not path.exists():
            return deepcopy(default)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:  # pragma: no cover - delegated to PyYAML
            raise StateRegistryError(f"Failed to parse registry file {path}: {exc}") from exc
        return data if data is not None else deepcopy(default)

    def write(self, name: str, payload: Mapping[str, object]) -> None:
        """Atomically write *payload* to the given registry file."""
        self.ensure_root()
        path = self.path_for(name)

        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(dict(payload), handle, sort_keys=False)
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(tmp_path, 0o640)
            os.replace(tmp_path, path)
        finally:
            tmp_path.unlink(missing_ok=True)

    # Provisioning helpers ---------------------------------------------
    def load_provisioning(self) -> ProvisioningState | None:
        """Return the provisioning record, or ``None`` before first provision."""
        raw = self.read(PROVISIONING_FILE)
        if raw is None:
            return None
        if not isinstance(raw, Mapping):
            raise StateRegistryError(f"{PROVISIONING_FILE} must contain a mapping.")
        return ProvisioningState.from_dict(raw)

    def save_provisioning(self, state: ProvisioningState) -> None:
        """Persist *state* to ``provisioning.yml``."""
        self.write(PROVISIONING_FILE, state.to_dict())

    def update_provisioning(
        self, apply: Callable[[ProvisioningState], None]
    ) -> ProvisioningState | None:
        """Re-read the provisioning record, pass it to *apply* and save it.

        The read-modify-write runs under a lock file in the registry directory
        so writers that do not hold the run lock (certificate renewal) cannot
        lose each other's fields. Returns ``None`` before first provision.
        """
        self.ensure_root()
        locks = LockManager(self.root, UPDATE_LOCK_TIMEOUT, filename=UPDATE_LOCK_FILENAME)
        with locks.exclusive("registry-update"):
            state = self.load_provisioning()
            if state is None:
                return None
            apply(state)
            self.save_provisioning(state)
        return state


__all__ = [
    "PROVISIONING_FILE",
    "SCHEMA_VERSION",
    "ProvisioningState",
    "StateRegistry",
    "StateRegistryError",
]
