"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from datetime import datetime
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from stackctl.adapters import AdapterError, LifecycleAdapter, Release
from stackctl.config import AppConfig, load_config
from stackctl.credentials import CredentialStore
from stackctl.locking import LockManager
from stackctl.models import ArtifactBundle, DeploymentStrategy, ServiceRole, ServiceSpec
from stackctl.orchestrator import Orchestrator
from stackctl.preflight import HostInfo
from stackctl.state import StateRegistry
from stackctl.templates import TemplateEngine


def _merge(base: dict[str, object], extra: Mapping[str, object]) -> dict[str, object]:
    merged = dict(base)
    for key, value in extra.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            merged[key] = _merge(current, value)
        else:
            merged[key] = value
    return merged


@pytest.fixture()
def config_factory(tmp_path: Path) -> Callable[..., AppConfig]:
    """Return a factory building configs whose paths all live under ``tmp_path``."""

    def _factory(**overrides: object) -> AppConfig:
        base: dict[str, object] = {
            "state_dir": str(tmp_path / "state"),
            "logs_dir": str(tmp_path / "logs"),
            "runtime_dir": str(tmp_path / "run"),
            "templates_dir": str(tmp_path / "templates"),
            "logrotate_dir": str(tmp_path / "logrotate"),
            "app": {"root": str(tmp_path / "www")},
            "backups": {"root": str(tmp_path / "backups")},
            "tls": {
                "live_dir": str(tmp_path / "letsencrypt" / "live"),
                "webroot": str(tmp_path / "acme"),
            },
            "systemd": {"unit_dir": str(tmp_path / "systemd")},
            "nginx": {
                "sites_available": str(tmp_path / "nginx" / "sites-available"),
                "sites_enabled": str(tmp_path / "nginx" / "sites-enabled"),
            },
            "deploy": {"grace_period": 0.2, "poll_interval": 0.01},
        }
        return load_config(
            config_file=tmp_path / "absent.yml",
            env={},
            overrides=_merge(base, overrides),
        )

    return _factory


@pytest.fixture()
def app_config(config_factory: Callable[..., AppConfig]) -> AppConfig:
    """Return the default test configuration."""
    return config_factory()


def write_certificate(
    directory: Path,
    domain: str,
    *,
    not_before: datetime,
    not_after: datetime,
    key: ec.EllipticCurvePrivateKey | None = None,
) -> tuple[Path, Path]:
    """Write a self-signed ``fullchain.pem``/``privkey.pem`` pair into *directory*."""
    private_key = key or ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)])
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(domain)]), critical=False)
        .sign(private_key, hashes.SHA256())
    )
    directory.mkdir(parents=True, exist_ok=True)
    cert_path = directory / "fullchain.pem"
    key_path = directory / "privkey.pem"
    cert_path.write_bytes(certificate.public_bytes(serialization.Encoding.PEM))
    key_path.write_bytes(
        private_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    )
    return cert_path, key_path


@pytest.fixture()
def certificate_writer() -> Callable[..., tuple[Path, Path]]:
    """Expose :func:`write_certificate` to tests."""
    return write_certificate


class FakeAdapter(LifecycleAdapter):
    """In-memory adapter recording every control call."""

    strategy = DeploymentStrategy.NATIVE

    def __init__(self, config: AppConfig, artifacts_dir: Path) -> None:
        super().__init__(config, artifacts_dir)
        self.alive: dict[ServiceRole, bool] = {role: False for role in ServiceRole}
        self.healthy: dict[ServiceRole, bool] = {role: True for role in ServiceRole}
        self.findings: list[str] = []
        self.calls: list[tuple[str, str]] = []
        self.installed: list[str] = []
        self.releases: list[str] = []
        self.crashing: set[ServiceRole] = set()
        self.error_lines: list[str] = []
        self.log_lines: dict[ServiceRole, list[str]] = {}
        self.migration_error: str | None = None
        self.database_backend: object | None = None

    def validate(self, bundle_dir: Path, bundle: ArtifactBundle) -> list[str]:
        self.calls.append(("validate", bundle.checksum[:8]))
        return list(self.findings)

    def install(self, bundle: ArtifactBundle) -> set[ServiceRole]:
        self.installed.append(bundle.checksum)
        return set()

    def is_alive(self, spec: ServiceSpec) -> bool | None:
        return self.alive[spec.role]

    def start(self, spec: ServiceSpec) -> None:
        self.calls.append(("start", spec.name))
        # Crashing services die straight after every start.
        self.alive[spec.role] = spec.role not in self.crashing

    def stop(self, spec: ServiceSpec) -> None:
        self.calls.append(("stop", spec.name))
        self.alive[spec.role] = False

    def restart(self, spec: ServiceSpec) -> None:
        self.calls.append(("restart", spec.name))
        self.alive[spec.role] = spec.role not in self.crashing

    def reload(self, spec: ServiceSpec, *, config_changed: bool = True) -> None:
        self.calls.append(("reload", spec.name))

    def check_health(self, spec: ServiceSpec) -> bool | None:
        return self.healthy[spec.role]

    def database_ready(self, *, timeout: float) -> bool:
        return self.alive[ServiceRole.DATABASE]

    def activate_release(self, release: Release) -> None:
        self.releases.append(release.id)

    def error_log_tail(self, lines: int) -> list[str]:
        return list(self.error_lines[-lines:])

    def logs(self, spec: ServiceSpec, lines: int) -> str:
        return "\n".join(self.log_lines.get(spec.role, [])[-lines:])

    def database(self):  # type: ignore[override]
        return self.database_backend

    def run_migrations(self, release: Release, argv: Sequence[str]) -> None:
        self.calls.append(("migrate", release.id))
        if self.migration_error is not None:
            raise AdapterError(self.migration_error)


@pytest.fixture()
def fake_adapter(app_config: AppConfig) -> FakeAdapter:
    """Return a :class:`FakeAdapter` writing bundles under the config's artifacts dir."""
    return FakeAdapter(app_config, app_config.artifacts_dir)


HEALTHY_HOST = HostInfo(
    euid=1000,
    sudo_available=True,
    os_id="ubuntu",
    os_like=("debian",),
    memory_mb=4096,
    disk_free_mb=50_000,
)


class FakeStack:
    """Orchestrator wired to one :class:`FakeAdapter` per strategy."""

    def __init__(self, config: AppConfig, *, host: HostInfo = HEALTHY_HOST) -> None:
        self.config = config
        self.host = host
        self.adapters: dict[DeploymentStrategy, FakeAdapter] = {}
        self.registry = StateRegistry(config.registry_dir)
        self.locks = LockManager(config.runtime_dir, default_timeout=1.0)
        self.credentials = CredentialStore(config.credentials_dir)
        self.templates = TemplateEngine.with_overrides(None)
        self.orchestrator = Orchestrator(
            config,
            registry=self.registry,
            locks=self.locks,
            credentials=self.credentials,
            templates=self.templates,
            elevate=(),
            adapter_factory=self._adapter,
            host_info=lambda *args, **kwargs: self.host,
        )

    def _adapter(
        self, strategy: DeploymentStrategy, config: AppConfig, *, elevate: tuple[str, ...]
    ) -> FakeAdapter:
        adapter = FakeAdapter(config, config.artifacts_dir)
        adapter.strategy = strategy
        self.adapters[strategy] = adapter
        return adapter


@pytest.fixture()
def stack_config(config_factory: Callable[..., AppConfig], tmp_path: Path) -> AppConfig:
    """Return a config able to build releases from a local source tree."""
    source = tmp_path / "source"
    source.mkdir()
    (source / "server.js").write_text("require('http').createServer().listen(3000)\n")
    return config_factory(
        firewall={"enabled": False},
        app={"source_dir": str(source), "install_command": "", "build_command": ""},
    )


@pytest.fixture()
def stack(stack_config: AppConfig) -> FakeStack:
    """Return an orchestrator backed by fake adapters."""
    return FakeStack(stack_config)
